"""
HvBackup - Checkpoint and differential export coordination for Hyper-V VMs.

Takes recovery checkpoints, turns them into reference points and exports VMs
in full or relative to a previous reference point.
"""

__version__ = "0.1.0"
__author__ = "HvBackup Team"

from hvbackup.checkpoints import Checkpoint, CheckpointKind, CheckpointManager, ConsistencyLevel
from hvbackup.export import ExportCoordinator, ExportOutcome, ExportRequest
from hvbackup.jobs import JobMonitor
from hvbackup.reference_points import ReferencePoint, ReferencePointManager
from hvbackup.vm import VirtualMachineRef

__all__ = [
    "Checkpoint",
    "CheckpointKind",
    "CheckpointManager",
    "ConsistencyLevel",
    "ExportCoordinator",
    "ExportOutcome",
    "ExportRequest",
    "JobMonitor",
    "ReferencePoint",
    "ReferencePointManager",
    "VirtualMachineRef",
    "__version__",
]
