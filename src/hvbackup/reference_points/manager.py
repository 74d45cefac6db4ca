#!/usr/bin/env python3
"""Reference point manager for Hyper-V VMs."""

import threading
from typing import List, Optional, Set, Union

from ..checkpoints.manager import SETTING_DATA_CLASS, SNAPSHOT_OF_SYSTEM
from ..checkpoints.models import Checkpoint, ReferencePoint
from ..errors import Cancelled, ConversionFailed, JobError, NotFound, ReferencePointBusy
from ..interfaces.management import CODE_SYSTEM_IN_USE, ManagedInstance, ManagementService
from ..jobs import JobMonitor
from ..logging import get_logger, log_operation
from ..vendor import associated, invoke, parse_cim_datetime, resulting_instance
from ..vm import VirtualMachineRef, resolve_vm

log = get_logger(__name__)

REFERENCE_POINT_SERVICE = "Msvm_VirtualSystemReferencePointService"
REFERENCE_POINT_CLASS = "Msvm_VirtualSystemReferencePoint"
REFERENCE_POINT_OF_SYSTEM = "Msvm_ReferencePointOfVirtualSystem"


def _reference_point(instance: ManagedInstance, vm_id: str, vm_name: Optional[str]) -> ReferencePoint:
    return ReferencePoint(
        path=instance.path,
        vm_id=vm_id,
        vm_name=vm_name,
        name=instance.get("ElementName"),
        created_at=parse_cim_datetime(instance.get("CreationTime")),
    )


class ReferencePointManager:
    """Convert checkpoints into reference points and manage their lifecycle."""

    def __init__(self, service: ManagementService, monitor: JobMonitor):
        self.service = service
        self.monitor = monitor

    def convert(
        self,
        checkpoint: Checkpoint,
        cancel_event: Optional[threading.Event] = None,
    ) -> ReferencePoint:
        """Turn a checkpoint into a reference point.

        The vendor consumes the checkpoint; exactly one reference point must
        come out of the job.

        Raises:
            ConversionFailed: The vendor job failed
            IntegrityError: The job produced zero or several reference points
            NotFound: The checkpoint no longer exists
        """
        operation = "convert_to_reference_point"
        target = checkpoint.path

        with log_operation(log, operation, vm_id=checkpoint.vm_id, checkpoint=checkpoint.path):
            self._require_checkpoint(checkpoint, operation)
            try:
                result = invoke(
                    self.service,
                    REFERENCE_POINT_SERVICE,
                    "ConvertToReferencePoint",
                    operation,
                    target,
                    AffectedSnapshot=checkpoint.path,
                )
                self.monitor.complete(result, operation, target=target, cancel_event=cancel_event)
            except (Cancelled, NotFound):
                raise
            except JobError as e:
                raise ConversionFailed(
                    e.message, code=e.code, operation=operation, target=target, cancelled=e.cancelled
                )

            instance = resulting_instance(
                self.service,
                result,
                "ResultingReferencePoint",
                REFERENCE_POINT_CLASS,
                operation,
                target,
            )
            return _reference_point(instance, checkpoint.vm_id, checkpoint.vm_name)

    def list(self, vm: Union[VirtualMachineRef, str]) -> List[ReferencePoint]:
        """List the reference points of a VM as the vendor currently reports them."""
        ref = VirtualMachineRef.coerce(vm)
        operation = "list_reference_points"
        resolved = resolve_vm(self.service, ref, operation)

        instances = associated(
            self.service,
            resolved.path,
            REFERENCE_POINT_CLASS,
            REFERENCE_POINT_OF_SYSTEM,
            operation,
            resolved.name,
        )
        return [_reference_point(i, resolved.vm_id, resolved.name) for i in instances]

    def get(self, vm: Union[VirtualMachineRef, str], path: str) -> ReferencePoint:
        """Look up one reference point of a VM by its path."""
        for reference_point in self.list(vm):
            if reference_point.path == path:
                return reference_point
        raise NotFound("reference point does not exist", operation="get_reference_point", target=path)

    def ensure_usable(self, vm: Union[VirtualMachineRef, str], reference_point: ReferencePoint) -> None:
        """Fail with NotFound unless ``reference_point`` still exists for ``vm``."""
        ref = VirtualMachineRef.coerce(vm)
        operation = "check_reference_point"
        resolved = resolve_vm(self.service, ref, operation)

        if reference_point.vm_id != resolved.vm_id:
            raise NotFound(
                f"reference point belongs to VM {reference_point.vm_id}, not {resolved.vm_id}",
                operation=operation,
                target=reference_point.path,
            )
        current = self._current_paths(resolved.vm_id, operation)
        if reference_point.path not in current:
            raise NotFound(
                "reference point has been destroyed",
                operation=operation,
                target=reference_point.path,
            )

    def destroy(
        self,
        reference_point: ReferencePoint,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Destroy a reference point.

        Destroying twice is an error: the second call fails with NotFound.

        Raises:
            ReferencePointBusy: It is still the base of an export
            NotFound: It was already destroyed
            JobError: Any other vendor failure
        """
        operation = "destroy_reference_point"
        target = reference_point.path

        with log_operation(log, operation, vm_id=reference_point.vm_id, reference_point=target):
            if target not in self._current_paths(reference_point.vm_id, operation):
                raise NotFound("reference point does not exist", operation=operation, target=target)
            result = invoke(
                self.service,
                REFERENCE_POINT_SERVICE,
                "DestroyReferencePoint",
                operation,
                target,
                AffectedReferencePoint=reference_point.path,
            )
            try:
                self.monitor.complete(result, operation, target=target, cancel_event=cancel_event)
            except Cancelled:
                raise
            except JobError as e:
                if e.code == CODE_SYSTEM_IN_USE:
                    raise ReferencePointBusy(
                        "reference point is in use as an export base",
                        operation=operation,
                        target=target,
                    )
                raise

    def _current_paths(self, vm_id: str, operation: str) -> Set[str]:
        resolved = resolve_vm(self.service, VirtualMachineRef.by_id(vm_id), operation)
        instances = associated(
            self.service,
            resolved.path,
            REFERENCE_POINT_CLASS,
            REFERENCE_POINT_OF_SYSTEM,
            operation,
            resolved.name,
        )
        return {i.path for i in instances}

    def _require_checkpoint(self, checkpoint: Checkpoint, operation: str) -> None:
        # A consumed checkpoint is not always reported as a missing object path
        resolved = resolve_vm(self.service, VirtualMachineRef.by_id(checkpoint.vm_id), operation)
        instances = associated(
            self.service, resolved.path, SETTING_DATA_CLASS, SNAPSHOT_OF_SYSTEM, operation, resolved.name
        )
        if checkpoint.path not in {i.path for i in instances}:
            raise NotFound("checkpoint does not exist", operation=operation, target=checkpoint.path)
