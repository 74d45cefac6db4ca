#!/usr/bin/env python3
"""Data models for VM export."""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from ..checkpoints.models import Checkpoint, ReferencePoint
from ..vm import VirtualMachineRef


@dataclass(frozen=True)
class ExportRequest:
    """What to export, where to, and whether to wait for it.

    With a ``base`` the export is differential relative to that reference
    point; without one it is a full export.
    """

    vm: Union[VirtualMachineRef, str]
    checkpoint: Checkpoint
    destination: str
    base: Optional[ReferencePoint] = None
    wait: bool = True

    def __post_init__(self):
        object.__setattr__(self, "vm", VirtualMachineRef.coerce(self.vm))
        if not str(self.destination).strip():
            raise ValueError("Export destination cannot be empty")
        object.__setattr__(self, "destination", str(self.destination))

    @property
    def is_differential(self) -> bool:
        return self.base is not None


@dataclass(frozen=True)
class ExportOutcome:
    """A finished export."""

    path: str
    succeeded: bool
    vm_id: Optional[str] = None
    differential: bool = False
    job_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "succeeded": self.succeeded,
            "vm_id": self.vm_id,
            "differential": self.differential,
            "job_id": self.job_id,
        }


@dataclass(frozen=True)
class BackupResult:
    """Everything a backup cycle produced."""

    outcome: ExportOutcome
    checkpoint: Checkpoint
    reference_point: ReferencePoint

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.to_dict(),
            "checkpoint": self.checkpoint.to_dict(),
            "reference_point": self.reference_point.to_dict(),
        }
