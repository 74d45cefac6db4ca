"""Full and differential VM export."""

from .models import BackupResult, ExportOutcome, ExportRequest
from .coordinator import ExportCoordinator, ExportHandle, build_export_settings

__all__ = [
    "BackupResult",
    "ExportOutcome",
    "ExportRequest",
    "ExportCoordinator",
    "ExportHandle",
    "build_export_settings",
]
