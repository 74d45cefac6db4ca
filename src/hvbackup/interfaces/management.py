"""Interfaces for the hypervisor management-instrumentation capability."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

# Vendor method return values
RETURN_COMPLETED = 0
RETURN_JOB_STARTED = 4096

RETURN_CODES: Dict[int, str] = {
    0: "Completed with no error",
    4096: "Method parameters checked, job started",
    32768: "Failed",
    32769: "Access denied",
    32770: "Not supported",
    32771: "Status is unknown",
    32772: "Timeout",
    32773: "Invalid parameter",
    32774: "System is in use",
    32775: "Invalid state for this operation",
    32776: "Incorrect data type",
    32777: "System is not available",
    32778: "Out of memory",
    32779: "File not found",
}

CODE_SYSTEM_IN_USE = 32774


def describe_return_code(code: Optional[int]) -> str:
    """Human-readable description of a vendor return code."""
    if code is None:
        return "Unknown error"
    return RETURN_CODES.get(code, f"Unknown return code {code}")


class JobState(Enum):
    """Lifecycle of an asynchronous vendor job."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobState.RUNNING

    @classmethod
    def from_cim(cls, value: int) -> "JobState":
        """Map a CIM ``JobState`` value onto the engine's job states."""
        if value == 7:
            return cls.SUCCEEDED
        if value in (8, 9):
            return cls.CANCELLED
        if value == 10:
            return cls.FAILED
        # 2 New, 3 Starting, 4 Running, 5 Suspended, 6 Shutting Down, 11 Service
        return cls.RUNNING


@dataclass(frozen=True)
class JobHandle:
    """Reference to an in-flight vendor job."""

    job_id: str
    method: str
    path: Optional[str] = None


@dataclass(frozen=True)
class JobStatus:
    """A single observation of a job."""

    state: JobState
    error_code: Optional[int] = None
    error_description: Optional[str] = None
    percent_complete: int = 0


@dataclass(frozen=True)
class ManagedInstance:
    """A vendor object, addressed by its object path."""

    class_name: str
    path: str
    properties: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of invoking a vendor method."""

    return_value: int
    outputs: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    job: Optional[JobHandle] = None

    @property
    def started_job(self) -> bool:
        return self.return_value == RETURN_JOB_STARTED and self.job is not None

    @property
    def completed(self) -> bool:
        return self.return_value == RETURN_COMPLETED


class TransportError(Exception):
    """Communication with the management service failed."""

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class InstanceNotFound(TransportError):
    """A query or object path matched no instance."""


class InstanceAmbiguous(TransportError):
    """A query expected to match one instance matched several."""

    def __init__(self, message: str, count: int):
        super().__init__(message)
        self.count = count


class ManagementService(ABC):
    """Abstract interface for the hypervisor management capability."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'wmi', 'fake')."""
        pass

    @abstractmethod
    def invoke_method(self, service_class: str, method: str, **args: Any) -> InvocationResult:
        """Invoke ``method`` on the singleton instance of ``service_class``."""
        pass

    @abstractmethod
    def get_associated(
        self,
        instance_path: str,
        result_class: str,
        assoc_class: str,
    ) -> List[ManagedInstance]:
        """Instances of ``result_class`` associated with ``instance_path``."""
        pass

    @abstractmethod
    def query_instance(self, class_name: str, **filters: Any) -> ManagedInstance:
        """Exactly one instance of ``class_name`` matching ``filters``.

        Raises InstanceNotFound or InstanceAmbiguous otherwise.
        """
        pass

    @abstractmethod
    def get_job(self, job: JobHandle) -> JobStatus:
        """Observe the current state of a job."""
        pass

    def close(self) -> None:
        """Release any connection held by the backend."""
        pass
