"""Checkpoint management for Hyper-V VMs."""

from .models import Checkpoint, CheckpointKind, ConsistencyLevel, ReferencePoint
from .manager import CheckpointManager

__all__ = [
    "Checkpoint",
    "CheckpointKind",
    "ConsistencyLevel",
    "ReferencePoint",
    "CheckpointManager",
]
