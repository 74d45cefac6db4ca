#!/usr/bin/env python3
"""Data models for checkpoints and reference points."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

RECOVERY_SYSTEM_TYPE_SUFFIX = "Snapshot:Recovery"


class ConsistencyLevel(Enum):
    """How the guest was quiesced when the checkpoint was taken."""

    APPLICATION_CONSISTENT = "application"
    CRASH_CONSISTENT = "crash"

    @property
    def vendor_value(self) -> int:
        return 1 if self is ConsistencyLevel.APPLICATION_CONSISTENT else 2

    @classmethod
    def from_vendor(cls, value: Any) -> "ConsistencyLevel":
        if value is not None and int(value) == 1:
            return cls.APPLICATION_CONSISTENT
        return cls.CRASH_CONSISTENT


class CheckpointKind(Enum):
    """Recovery checkpoints are the ones taken for backup."""

    RECOVERY = "recovery"
    OTHER = "other"

    @classmethod
    def from_system_type(cls, system_type: Optional[str]) -> "CheckpointKind":
        if system_type and system_type.endswith(RECOVERY_SYSTEM_TYPE_SUFFIX):
            return cls.RECOVERY
        return cls.OTHER


@dataclass(frozen=True)
class Checkpoint:
    """Handle to a VM checkpoint.

    Identity is the vendor object path; the other fields describe it.
    """

    path: str
    vm_id: str
    consistency: ConsistencyLevel = field(compare=False)
    kind: CheckpointKind = field(compare=False)
    vm_name: Optional[str] = field(default=None, compare=False)
    name: Optional[str] = field(default=None, compare=False)
    created_at: Optional[datetime] = field(default=None, compare=False)

    @property
    def is_recovery(self) -> bool:
        return self.kind is CheckpointKind.RECOVERY

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": self.path,
            "vm_id": self.vm_id,
            "vm_name": self.vm_name,
            "name": self.name,
            "consistency": self.consistency.value,
            "kind": self.kind.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class ReferencePoint:
    """Durable anchor usable as the base of a differential export."""

    path: str
    vm_id: str
    vm_name: Optional[str] = field(default=None, compare=False)
    name: Optional[str] = field(default=None, compare=False)
    created_at: Optional[datetime] = field(default=None, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "path": self.path,
            "vm_id": self.vm_id,
            "vm_name": self.vm_name,
            "name": self.name,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
