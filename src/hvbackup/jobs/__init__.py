"""Waiting on asynchronous hypervisor jobs."""

from ..interfaces.management import JobHandle, JobState, JobStatus
from .monitor import JobMonitor

__all__ = [
    "JobHandle",
    "JobState",
    "JobStatus",
    "JobMonitor",
]
