#!/usr/bin/env python3
"""Export coordinator: full and differential exports, one per VM at a time."""

import threading
from typing import Any, Dict, List, Optional, Union

from ..checkpoints import CheckpointManager
from ..checkpoints.models import Checkpoint, ConsistencyLevel, ReferencePoint
from ..errors import Cancelled, ExportFailed, ExportInProgress, HvBackupError, JobError, NotFound
from ..interfaces.management import InvocationResult, JobHandle, ManagementService
from ..jobs import JobMonitor
from ..logging import get_logger, log_operation
from ..reference_points import ReferencePointManager
from ..vendor import invoke
from ..vm import ResolvedVm, VirtualMachineRef, resolve_vm
from .models import BackupResult, ExportOutcome, ExportRequest

log = get_logger(__name__)

MANAGEMENT_SERVICE = "Msvm_VirtualSystemManagementService"

# Msvm_VirtualSystemExportSettingData.CopySnapshotConfiguration
EXPORT_ONE_SNAPSHOT_USE_VM_ID = 3
# Msvm_VirtualSystemExportSettingData.BackupIntent: exported VHDs point at the base VHD
BACKUP_INTENT_BASE_VHD = 1


def build_export_settings(checkpoint: Checkpoint, base: Optional[ReferencePoint]) -> Dict[str, Any]:
    """Export setting data for exporting ``checkpoint``.

    Only the "one snapshot, addressed by VM id" mode accepts a differential
    base. ``DifferentialBackupBase`` is set only for a real reference point.
    """
    settings: Dict[str, Any] = {
        "CopyVmStorage": True,
        "CopyVmRuntimeInformation": False,
        "CreateVmExportSubdirectory": False,
        "CopySnapshotConfiguration": EXPORT_ONE_SNAPSHOT_USE_VM_ID,
        "SnapshotVirtualSystem": checkpoint.path,
        "BackupIntent": BACKUP_INTENT_BASE_VHD,
    }
    if base is not None:
        settings["DifferentialBackupBase"] = base.path
    return settings


class ExportHandle:
    """An export whose vendor job was submitted but not yet awaited.

    The VM's export slot stays taken until the job is seen to finish, either
    by ``wait`` or by ``poll``. A handle may be shared between threads;
    concurrent waits are serialized.
    """

    def __init__(
        self,
        coordinator: "ExportCoordinator",
        vm: ResolvedVm,
        request: ExportRequest,
        result: InvocationResult,
    ):
        self._coordinator = coordinator
        self.vm = vm
        self.request = request
        self._result = result
        self._outcome: Optional[ExportOutcome] = None
        self._finished = False
        self._lock = threading.Lock()

    @property
    def job(self) -> Optional[JobHandle]:
        return self._result.job

    @property
    def destination(self) -> str:
        return self.request.destination

    @property
    def done(self) -> bool:
        return self._finished

    def wait(self, cancel_event: Optional[threading.Event] = None) -> ExportOutcome:
        """Block until the export job finishes.

        Raises:
            ExportFailed: The vendor job failed or was cancelled by the vendor
            Cancelled: The wait was abandoned while the job was still
                running; the export keeps its slot and ``wait`` may be
                called again
        """
        with self._lock:
            return self._wait(cancel_event)

    def poll(self) -> bool:
        """Check the job once without blocking; True once the export has finished.

        Returns False while another thread is waiting on this handle.
        """
        if not self._lock.acquire(blocking=False):
            return False
        try:
            stop = threading.Event()
            stop.set()
            self._wait(stop)
        except Cancelled:
            return False
        except HvBackupError as e:
            log.warning("export.failed", vm=self.vm.name, error=str(e))
        finally:
            self._lock.release()
        return True

    def _wait(self, cancel_event: Optional[threading.Event]) -> ExportOutcome:
        if self._outcome is not None:
            return self._outcome

        operation = "export_vm"
        target = self.vm.name
        try:
            self._coordinator.monitor.complete(
                self._result, operation, target=target, cancel_event=cancel_event
            )
        except Cancelled:
            raise
        except JobError as e:
            self._finish()
            raise ExportFailed(
                e.message, code=e.code, operation=operation, target=target, cancelled=e.cancelled
            )
        except Exception:
            self._finish()
            raise

        self._outcome = ExportOutcome(
            path=self.request.destination,
            succeeded=True,
            vm_id=self.vm.vm_id,
            differential=self.request.is_differential,
            job_id=self.job.job_id if self.job else None,
        )
        self._finish()
        log.info(
            "export.finished",
            vm=self.vm.name,
            path=self.request.destination,
            differential=self.request.is_differential,
        )
        return self._outcome

    def _finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._coordinator._release(self.vm.vm_id, self)


class ExportCoordinator:
    """Export a VM checkpoint, in full or relative to a reference point."""

    def __init__(
        self,
        service: ManagementService,
        monitor: JobMonitor,
        checkpoints: CheckpointManager,
        reference_points: ReferencePointManager,
    ):
        self.service = service
        self.monitor = monitor
        self.checkpoints = checkpoints
        self.reference_points = reference_points
        self._lock = threading.Lock()
        self._in_flight: Dict[str, str] = {}
        self._handles: Dict[str, ExportHandle] = {}

    def in_flight(self) -> List[str]:
        """Ids of VMs with an outstanding export."""
        with self._lock:
            return list(self._in_flight)

    def export(
        self,
        request: ExportRequest,
        cancel_event: Optional[threading.Event] = None,
    ) -> Union[ExportOutcome, ExportHandle]:
        """Export per ``request``.

        Returns an ExportOutcome when ``request.wait`` is set, otherwise the
        ExportHandle of the running job. When a blocking wait is cancelled or
        times out, the raised Cancelled carries the handle in ``handle``.
        """
        handle = self.start(request)
        if not request.wait:
            return handle
        try:
            return handle.wait(cancel_event=cancel_event)
        except Cancelled as e:
            e.handle = handle
            raise

    def start(self, request: ExportRequest) -> ExportHandle:
        """Submit the export job and return without waiting for it.

        Raises:
            VmNotFound / VmAmbiguous: The selector did not match one VM
            ExportInProgress: Another export of this VM is outstanding
            NotFound: The checkpoint or base belongs elsewhere or is gone
            ExportFailed: The vendor rejected the export outright
        """
        operation = "export_vm"
        resolved = resolve_vm(self.service, request.vm, operation)
        self._acquire(resolved, request.destination)

        try:
            with log_operation(
                log,
                "export_submit",
                vm=resolved.name,
                destination=request.destination,
                differential=request.is_differential,
            ):
                if request.checkpoint.vm_id != resolved.vm_id:
                    raise NotFound(
                        f"checkpoint belongs to VM {request.checkpoint.vm_id}",
                        operation=operation,
                        target=request.checkpoint.path,
                    )
                if request.base is not None:
                    self.reference_points.ensure_usable(
                        VirtualMachineRef.by_id(resolved.vm_id), request.base
                    )

                settings = build_export_settings(request.checkpoint, request.base)
                result = invoke(
                    self.service,
                    MANAGEMENT_SERVICE,
                    "ExportSystemDefinition",
                    operation,
                    resolved.name,
                    ComputerSystem=resolved.path,
                    ExportDirectory=request.destination,
                    ExportSettingData=settings,
                )
                if not (result.completed or result.started_job):
                    try:
                        self.monitor.complete(result, operation, target=resolved.name)
                    except JobError as e:
                        raise ExportFailed(e.message, code=e.code, operation=operation, target=resolved.name)
        except Exception:
            self._release(resolved.vm_id)
            raise

        handle = ExportHandle(self, resolved, request, result)
        with self._lock:
            self._handles[resolved.vm_id] = handle
        return handle

    def run_backup(
        self,
        vm: Union[VirtualMachineRef, str],
        destination: str,
        base: Optional[ReferencePoint] = None,
        consistency: ConsistencyLevel = ConsistencyLevel.APPLICATION_CONSISTENT,
        cancel_event: Optional[threading.Event] = None,
    ) -> BackupResult:
        """Run one backup cycle.

        Takes a recovery checkpoint, exports it (differential when ``base``
        is given) and converts the checkpoint into the reference point for
        the next cycle.
        """
        ref = VirtualMachineRef.coerce(vm)
        with log_operation(log, "run_backup", vm=str(ref), destination=destination):
            checkpoint = self.checkpoints.create(ref, consistency, cancel_event=cancel_event)
            request = ExportRequest(
                vm=VirtualMachineRef.by_id(checkpoint.vm_id),
                checkpoint=checkpoint,
                destination=destination,
                base=base,
                wait=True,
            )
            outcome = self.export(request, cancel_event=cancel_event)
            reference_point = self.reference_points.convert(checkpoint, cancel_event=cancel_event)
            return BackupResult(outcome=outcome, checkpoint=checkpoint, reference_point=reference_point)

    def _acquire(self, vm: ResolvedVm, destination: str) -> None:
        # An abandoned wait leaves the slot taken; free it once the job is over
        with self._lock:
            pending = self._handles.get(vm.vm_id)
        if pending is not None and pending.poll():
            log.info("export.slot_reclaimed", vm=vm.name, destination=pending.destination)

        with self._lock:
            if vm.vm_id in self._in_flight:
                raise ExportInProgress(
                    f"export to {self._in_flight[vm.vm_id]} is still running",
                    operation="export_vm",
                    target=vm.name,
                )
            self._in_flight[vm.vm_id] = destination

    def _release(self, vm_id: str, handle: Optional[ExportHandle] = None) -> None:
        with self._lock:
            if handle is not None and self._handles.get(vm_id) is not handle:
                return
            self._in_flight.pop(vm_id, None)
            self._handles.pop(vm_id, None)
