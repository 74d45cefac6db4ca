#!/usr/bin/env python3
"""Checkpoint manager for Hyper-V VMs."""

import threading
from dataclasses import replace
from typing import List, Optional, Union

from ..errors import Cancelled, JobError, NotFound, SnapshotFailed
from ..interfaces.management import ManagedInstance, ManagementService
from ..jobs import JobMonitor
from ..logging import get_logger, log_operation
from ..vendor import invoke, associated, parse_cim_datetime, resulting_instance
from ..vm import ResolvedVm, VirtualMachineRef, resolve_vm
from .models import Checkpoint, CheckpointKind, ConsistencyLevel

log = get_logger(__name__)

SNAPSHOT_SERVICE = "Msvm_VirtualSystemSnapshotService"
SETTING_DATA_CLASS = "Msvm_VirtualSystemSettingData"
SNAPSHOT_OF_SYSTEM = "Msvm_SnapshotOfVirtualSystem"
RECOVERY_SNAPSHOT_TYPE = 32768


def checkpoint_from_instance(instance: ManagedInstance, vm: ResolvedVm) -> Checkpoint:
    """Build a Checkpoint from a snapshot setting-data instance."""
    return Checkpoint(
        path=instance.path,
        vm_id=vm.vm_id,
        vm_name=vm.name,
        name=instance.get("ElementName"),
        consistency=ConsistencyLevel.from_vendor(instance.get("ConsistencyLevel")),
        kind=CheckpointKind.from_system_type(instance.get("VirtualSystemType")),
        created_at=parse_cim_datetime(instance.get("CreationTime")),
    )


class CheckpointManager:
    """Create and enumerate VM checkpoints."""

    def __init__(self, service: ManagementService, monitor: JobMonitor):
        self.service = service
        self.monitor = monitor

    def create(
        self,
        vm: Union[VirtualMachineRef, str],
        consistency: ConsistencyLevel = ConsistencyLevel.APPLICATION_CONSISTENT,
        cancel_event: Optional[threading.Event] = None,
    ) -> Checkpoint:
        """Take a recovery checkpoint of a VM.

        Args:
            vm: VM selector (a bare string is treated as the VM name)
            consistency: Application- or crash-consistent
            cancel_event: Abandons the wait when set

        Raises:
            VmNotFound / VmAmbiguous: The selector did not match one VM
            SnapshotFailed: The vendor job failed
        """
        ref = VirtualMachineRef.coerce(vm)
        operation = "create_checkpoint"

        with log_operation(log, operation, vm=str(ref), consistency=consistency.value):
            resolved = resolve_vm(self.service, ref, operation)
            target = resolved.name

            # Disks that cannot be snapshotted are skipped instead of failing
            settings = {
                "ConsistencyLevel": consistency.vendor_value,
                "IgnoreNonSnapshottableDisks": True,
            }
            try:
                result = invoke(
                    self.service,
                    SNAPSHOT_SERVICE,
                    "CreateSnapshot",
                    operation,
                    target,
                    AffectedSystem=resolved.path,
                    SnapshotSettings=settings,
                    SnapshotType=RECOVERY_SNAPSHOT_TYPE,
                )
                self.monitor.complete(result, operation, target=target, cancel_event=cancel_event)
            except (Cancelled, NotFound):
                raise
            except JobError as e:
                raise SnapshotFailed(
                    e.message, code=e.code, operation=operation, target=target, cancelled=e.cancelled
                )

            instance = resulting_instance(
                self.service, result, "ResultingSnapshot", SETTING_DATA_CLASS, operation, target
            )
            checkpoint = checkpoint_from_instance(instance, resolved)
            if instance.get("ConsistencyLevel") is None:
                checkpoint = replace(checkpoint, consistency=consistency)
            log.info("checkpoint.created", path=checkpoint.path, kind=checkpoint.kind.value)
            return checkpoint

    def list(
        self,
        vm: Union[VirtualMachineRef, str],
        include_all: bool = False,
    ) -> List[Checkpoint]:
        """List checkpoints of a VM, oldest first.

        Only recovery checkpoints are returned unless ``include_all`` is set.
        Every call re-reads the current state from the vendor.
        """
        ref = VirtualMachineRef.coerce(vm)
        operation = "list_checkpoints"
        resolved = resolve_vm(self.service, ref, operation)

        instances = associated(
            self.service, resolved.path, SETTING_DATA_CLASS, SNAPSHOT_OF_SYSTEM, operation, resolved.name
        )
        checkpoints = [checkpoint_from_instance(i, resolved) for i in instances]
        if not include_all:
            checkpoints = [c for c in checkpoints if c.is_recovery]

        return sorted(checkpoints, key=_creation_key)

    def get(self, vm: Union[VirtualMachineRef, str], path: str) -> Checkpoint:
        """Look up one checkpoint of any kind by its path."""
        for checkpoint in self.list(vm, include_all=True):
            if checkpoint.path == path:
                return checkpoint
        raise NotFound("checkpoint does not exist", operation="get_checkpoint", target=path)


def _creation_key(checkpoint: Checkpoint):
    if checkpoint.created_at is None:
        return (1, 0.0)
    return (0, checkpoint.created_at.timestamp())
