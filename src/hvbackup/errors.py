"""
Error taxonomy for HvBackup operations.

Every failure raised by the engine names the operation that produced it and
the VM or handle it was acting on, so an operator can diagnose it without
digging through logs.
"""

from typing import Optional


class HvBackupError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.target = target

    def __str__(self) -> str:
        prefix = []
        if self.operation:
            prefix.append(self.operation)
        if self.target:
            prefix.append(f"'{self.target}'")
        if prefix:
            return f"{' '.join(prefix)}: {self.message}"
        return self.message


class VmNotFound(HvBackupError):
    pass


class VmAmbiguous(VmNotFound):
    """The selector matched more than one VM."""

    def __init__(self, message: str, count: int, operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, operation=operation, target=target)
        self.count = count


class NotFound(HvBackupError):
    """A checkpoint or reference point no longer exists."""


class ReferencePointBusy(HvBackupError):
    """The reference point is still in use as an export base."""


class ExportInProgress(HvBackupError):
    """Another export for the same VM has not finished yet."""


class IntegrityError(HvBackupError):
    """The vendor returned an unexpected number of associated results."""

    def __init__(self, message: str, count: int, operation: Optional[str] = None, target: Optional[str] = None):
        super().__init__(message, operation=operation, target=target)
        self.count = count


class JobError(HvBackupError):
    """A vendor job finished in a failed or cancelled state.

    ``cancelled`` is True when the vendor itself cancelled the job.
    """

    def __init__(
        self,
        message: str,
        code: Optional[int] = None,
        operation: Optional[str] = None,
        target: Optional[str] = None,
        cancelled: bool = False,
    ):
        super().__init__(message, operation=operation, target=target)
        self.code = code
        self.cancelled = cancelled

    @property
    def reason(self) -> str:
        if self.code is not None:
            return f"{self.message} (code {self.code})"
        return self.message

    def __str__(self) -> str:
        text = super().__str__()
        if self.code is not None:
            return f"{text} (code {self.code})"
        return text


class Cancelled(HvBackupError):
    """The caller stopped waiting on a job that had not finished.

    The vendor operation may still complete on its own, so
    ``job_still_running`` is always True. When a blocking export is
    abandoned, ``handle`` is the ExportHandle that can finish the wait later.
    """

    def __init__(
        self,
        message: str,
        job_still_running: bool = True,
        operation: Optional[str] = None,
        target: Optional[str] = None,
    ):
        super().__init__(message, operation=operation, target=target)
        self.job_still_running = job_still_running
        self.handle = None


class SnapshotFailed(JobError):
    pass


class ConversionFailed(JobError):
    pass


class ExportFailed(JobError):
    pass
