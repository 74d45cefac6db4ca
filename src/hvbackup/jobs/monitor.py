#!/usr/bin/env python3
"""Job monitor: waits for vendor jobs and turns their outcome into errors."""

import threading
import time
from typing import Optional

from ..errors import Cancelled, JobError
from ..interfaces.management import (
    InvocationResult,
    JobHandle,
    JobState,
    JobStatus,
    ManagementService,
    TransportError,
    describe_return_code,
)
from ..logging import get_logger
from ..models import EngineConfig, PollingSettings

log = get_logger(__name__)


class JobMonitor:
    """Poll vendor jobs until they reach a terminal state.

    The polling loop is the only place the engine suspends. Delays grow
    geometrically from ``initial_interval`` up to ``max_interval``.
    """

    def __init__(self, service: ManagementService, config: Optional[EngineConfig] = None):
        self.service = service
        self.settings: PollingSettings = (config or EngineConfig()).polling

    def complete(
        self,
        result: InvocationResult,
        operation: str,
        target: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobStatus:
        """Finish a method invocation, awaiting its job when one was started.

        Raises JobError when the vendor rejected the call outright.
        """
        if result.completed:
            return JobStatus(state=JobState.SUCCEEDED, percent_complete=100)
        if result.started_job:
            return self.await_job(result.job, operation, target=target, cancel_event=cancel_event)
        raise JobError(
            describe_return_code(result.return_value),
            code=result.return_value,
            operation=operation,
            target=target,
        )

    def await_job(
        self,
        job: JobHandle,
        operation: str = "await_job",
        target: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> JobStatus:
        """Wait for ``job`` to finish.

        Args:
            job: Handle of the job to observe
            operation: Name of the administrative operation, for errors and logs
            target: VM or handle the job acts on
            cancel_event: When set, stop waiting and raise Cancelled

        Returns:
            The terminal JobStatus of a successful job

        Raises:
            JobError: The job failed or was cancelled by the vendor
                (``cancelled`` is set then), or polling kept failing
            Cancelled: The wait was cancelled or timed out while the job
                was still running
        """
        settings = self.settings
        delay = settings.initial_interval
        deadline = (
            time.monotonic() + settings.timeout_seconds if settings.timeout_seconds else None
        )
        transient_errors = 0

        while True:
            try:
                status = self.service.get_job(job)
                transient_errors = 0
            except TransportError as e:
                if not e.transient:
                    raise JobError(
                        f"cannot observe job {job.job_id}: {e}",
                        operation=operation,
                        target=target,
                    )
                transient_errors += 1
                if transient_errors > settings.max_transient_retries:
                    raise JobError(
                        f"polling job {job.job_id} failed after "
                        f"{settings.max_transient_retries} retries: {e}",
                        operation=operation,
                        target=target,
                    )
                log.warning(
                    "job.poll_retry",
                    job_id=job.job_id,
                    attempt=transient_errors,
                    error=str(e),
                )
                status = None

            if status is not None:
                if status.state == JobState.SUCCEEDED:
                    log.debug("job.succeeded", job_id=job.job_id, method=job.method)
                    return status
                if status.state == JobState.FAILED:
                    message = status.error_description or describe_return_code(status.error_code)
                    raise JobError(
                        message, code=status.error_code, operation=operation, target=target
                    )
                if status.state == JobState.CANCELLED:
                    raise JobError(
                        f"job {job.job_id} was cancelled by the hypervisor",
                        code=status.error_code,
                        operation=operation,
                        target=target,
                        cancelled=True,
                    )

            if cancel_event is not None and cancel_event.is_set():
                raise Cancelled(
                    f"wait for job {job.job_id} cancelled",
                    job_still_running=True,
                    operation=operation,
                    target=target,
                )
            if deadline is not None and time.monotonic() >= deadline:
                raise Cancelled(
                    f"job {job.job_id} still running after {settings.timeout_seconds}s",
                    job_still_running=True,
                    operation=operation,
                    target=target,
                )

            self._sleep(delay, cancel_event)
            delay = min(delay * settings.backoff_factor, settings.max_interval)

    @staticmethod
    def _sleep(delay: float, cancel_event: Optional[threading.Event]) -> None:
        if cancel_event is not None:
            cancel_event.wait(delay)
        else:
            time.sleep(delay)
