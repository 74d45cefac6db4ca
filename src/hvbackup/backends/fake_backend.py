"""In-memory hypervisor backend.

Behaves like the Hyper-V management service closely enough to exercise the
engine without a host: methods start jobs, jobs finish when observed, and
associations reflect the current state. Knobs on the instance inject
failures, slow or blocked jobs, and bad result cardinalities.
"""

import itertools
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..interfaces.management import (
    CODE_SYSTEM_IN_USE,
    RETURN_JOB_STARTED,
    InstanceAmbiguous,
    InstanceNotFound,
    InvocationResult,
    JobHandle,
    JobState,
    JobStatus,
    ManagedInstance,
    ManagementService,
    TransportError,
    describe_return_code,
)
from ..vendor import format_cim_datetime

RECOVERY_SNAPSHOT_TYPE = 32768
CODE_INVALID_PARAMETER = 32773
CODE_NOT_SUPPORTED = 32770


@dataclass
class _FakeJob:
    handle: JobHandle
    final_state: JobState
    error_code: Optional[int] = None
    error_description: Optional[str] = None
    affected: List[ManagedInstance] = field(default_factory=list)
    remaining_polls: int = 0
    gate: Optional[threading.Event] = None


class FakeManagementService(ManagementService):
    """Simulated management service holding VMs, checkpoints and reference points."""

    name = "fake"

    def __init__(self):
        self._lock = threading.RLock()
        self._clock = itertools.count()
        self._epoch = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._instances: Dict[str, ManagedInstance] = {}
        self._owner: Dict[str, str] = {}  # checkpoint/reference point path -> VM path
        self._jobs: Dict[str, _FakeJob] = {}

        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self.exports: List[Dict[str, Any]] = []

        # Failure injection
        self.job_failures: Dict[str, Tuple[int, str]] = {}
        self.job_cancellations: set = set()
        self.rejections: Dict[str, int] = {}
        self.gates: Dict[str, threading.Event] = {}
        self.polls_before_done = 0
        self.transient_poll_errors = 0
        self.conversion_result_count = 1
        self.busy_reference_points: set = set()

        self._add_instance(
            "Msvm_ComputerSystem",
            'Msvm_ComputerSystem.CreationClassName="Msvm_ComputerSystem",Name="HOST"',
            {"Name": "HOST", "ElementName": "HOST", "Caption": "Hosting Computer System"},
        )

    @classmethod
    def with_vms(cls, *names: str) -> "FakeManagementService":
        service = cls()
        for vm_name in names:
            service.add_vm(vm_name)
        return service

    # Seeding and inspection

    def add_vm(self, vm_name: str, vm_id: Optional[str] = None) -> str:
        """Register a VM and return its id."""
        vm_id = vm_id or str(uuid.uuid4()).upper()
        path = f'Msvm_ComputerSystem.CreationClassName="Msvm_ComputerSystem",Name="{vm_id}"'
        self._add_instance(
            "Msvm_ComputerSystem",
            path,
            {"Name": vm_id, "ElementName": vm_name, "Caption": "Virtual Machine", "EnabledState": 2},
        )
        return vm_id

    def add_snapshot(self, vm_id: str, recovery: bool = False, consistency: int = 2) -> str:
        """Create a checkpoint directly, outside any job."""
        with self._lock:
            vm_path = self._vm_path(vm_id)
            return self._create_snapshot(vm_path, recovery, consistency).path

    def calls_to(self, method: str) -> List[Dict[str, Any]]:
        return [args for _, m, args in self.calls if m == method]

    @property
    def mutating_calls(self) -> List[str]:
        return [method for _, method, _ in self.calls]

    # ManagementService

    def invoke_method(self, service_class: str, method: str, **args: Any) -> InvocationResult:
        with self._lock:
            self.calls.append((service_class, method, dict(args)))

            if method in self.rejections:
                return InvocationResult(return_value=self.rejections.pop(method))

            handler = getattr(self, f"_do_{method}", None)
            if handler is None:
                return InvocationResult(return_value=CODE_NOT_SUPPORTED)

            failure = self.job_failures.pop(method, None)
            if failure is not None:
                code, description = failure
                return self._start_job(method, JobState.FAILED, code, description)
            if method in self.job_cancellations:
                self.job_cancellations.discard(method)
                return self._start_job(method, JobState.CANCELLED)

            return handler(**args)

    def get_associated(
        self,
        instance_path: str,
        result_class: str,
        assoc_class: str,
    ) -> List[ManagedInstance]:
        with self._lock:
            if assoc_class == "Msvm_AffectedJobElement":
                job = self._job_by_path(instance_path)
                return [i for i in job.affected if i.class_name == result_class]

            self._require(instance_path)
            return [
                self._instances[path]
                for path, owner in self._owner.items()
                if owner == instance_path and self._instances[path].class_name == result_class
            ]

    def query_instance(self, class_name: str, **filters: Any) -> ManagedInstance:
        with self._lock:
            matches = [
                instance
                for instance in self._instances.values()
                if instance.class_name == class_name
                and all(instance.get(k) == v for k, v in filters.items())
            ]
        if not matches:
            raise InstanceNotFound(f"No {class_name} matches {filters}")
        if len(matches) > 1:
            raise InstanceAmbiguous(f"{len(matches)} {class_name} match {filters}", count=len(matches))
        return matches[0]

    def get_job(self, job: JobHandle) -> JobStatus:
        with self._lock:
            if self.transient_poll_errors > 0:
                self.transient_poll_errors -= 1
                raise TransportError("RPC server is unavailable", transient=True)

            fake = self._jobs.get(job.job_id)
            if fake is None:
                raise InstanceNotFound(f"No job {job.job_id}")

            if fake.gate is not None and not fake.gate.is_set():
                return JobStatus(state=JobState.RUNNING, percent_complete=50)
            if fake.remaining_polls > 0:
                fake.remaining_polls -= 1
                return JobStatus(state=JobState.RUNNING, percent_complete=10)
            return JobStatus(
                state=fake.final_state,
                error_code=fake.error_code,
                error_description=fake.error_description,
                percent_complete=100,
            )

    # Vendor methods

    def _do_CreateSnapshot(self, AffectedSystem: str, SnapshotSettings=None, SnapshotType=2, **_):
        vm = self._require(AffectedSystem)
        consistency = (SnapshotSettings or {}).get("ConsistencyLevel", 1)
        snapshot = self._create_snapshot(vm.path, SnapshotType == RECOVERY_SNAPSHOT_TYPE, consistency)
        return self._start_job("CreateSnapshot", affected=[snapshot])

    def _do_ConvertToReferencePoint(self, AffectedSnapshot: str, **_):
        snapshot = self._require(AffectedSnapshot)
        vm_path = self._owner.pop(snapshot.path)
        del self._instances[snapshot.path]

        produced = [
            self._create_reference_point(vm_path, snapshot)
            for _ in range(self.conversion_result_count)
        ]
        return self._start_job("ConvertToReferencePoint", affected=produced)

    def _do_DestroyReferencePoint(self, AffectedReferencePoint: str, **_):
        self._require(AffectedReferencePoint)
        if AffectedReferencePoint in self.busy_reference_points:
            return self._start_job(
                "DestroyReferencePoint",
                JobState.FAILED,
                CODE_SYSTEM_IN_USE,
                describe_return_code(CODE_SYSTEM_IN_USE),
            )
        del self._instances[AffectedReferencePoint]
        del self._owner[AffectedReferencePoint]
        return self._start_job("DestroyReferencePoint")

    def _do_ExportSystemDefinition(self, ComputerSystem: str, ExportDirectory: str, ExportSettingData=None, **_):
        vm = self._require(ComputerSystem)
        settings = dict(ExportSettingData or {})
        base = settings.get("DifferentialBackupBase")
        if base is not None and base not in self._instances:
            return self._start_job(
                "ExportSystemDefinition",
                JobState.FAILED,
                CODE_INVALID_PARAMETER,
                "Differential backup base does not exist",
            )
        self.exports.append({"vm_id": vm.get("Name"), "directory": ExportDirectory, "settings": settings})
        return self._start_job("ExportSystemDefinition")

    # Internals

    def _add_instance(self, class_name: str, path: str, properties: Dict[str, Any]) -> ManagedInstance:
        instance = ManagedInstance(class_name=class_name, path=path, properties=properties)
        self._instances[path] = instance
        return instance

    def _require(self, path: str) -> ManagedInstance:
        instance = self._instances.get(path)
        if instance is None:
            raise InstanceNotFound(f"Object path not found: {path}")
        return instance

    def _vm_path(self, vm_id: str) -> str:
        return self.query_instance("Msvm_ComputerSystem", Name=vm_id).path

    def _now(self) -> str:
        return format_cim_datetime(self._epoch + timedelta(seconds=next(self._clock)))

    def _create_snapshot(self, vm_path: str, recovery: bool, consistency: int) -> ManagedInstance:
        vm = self._instances[vm_path]
        kind = "Recovery" if recovery else "Realized"
        path = f'Msvm_VirtualSystemSettingData.InstanceID="Microsoft:{uuid.uuid4()}"'
        instance = self._add_instance(
            "Msvm_VirtualSystemSettingData",
            path,
            {
                "ElementName": f"{vm.get('ElementName')} - Backup",
                "VirtualSystemType": f"Microsoft:Hyper-V:Snapshot:{kind}",
                "ConsistencyLevel": consistency,
                "CreationTime": self._now(),
            },
        )
        self._owner[path] = vm_path
        return instance

    def _create_reference_point(self, vm_path: str, snapshot: ManagedInstance) -> ManagedInstance:
        path = f'Msvm_VirtualSystemReferencePoint.InstanceID="Microsoft:{uuid.uuid4()}"'
        instance = self._add_instance(
            "Msvm_VirtualSystemReferencePoint",
            path,
            {
                "ElementName": snapshot.get("ElementName"),
                "ReferencePointType": 1,
                "CreationTime": self._now(),
            },
        )
        self._owner[path] = vm_path
        return instance

    def _start_job(
        self,
        method: str,
        state: JobState = JobState.SUCCEEDED,
        error_code: Optional[int] = None,
        error_description: Optional[str] = None,
        affected: Optional[List[ManagedInstance]] = None,
    ) -> InvocationResult:
        job_id = str(uuid.uuid4()).upper()
        handle = JobHandle(
            job_id=job_id,
            method=method,
            path=f'Msvm_ConcreteJob.InstanceID="{job_id}"',
        )
        self._jobs[job_id] = _FakeJob(
            handle=handle,
            final_state=state,
            error_code=error_code,
            error_description=error_description,
            affected=list(affected or []),
            remaining_polls=self.polls_before_done,
            gate=self.gates.get(method),
        )
        return InvocationResult(
            return_value=RETURN_JOB_STARTED,
            outputs={"Job": handle.path},
            job=handle,
        )

    def _job_by_path(self, path: str) -> _FakeJob:
        for job in self._jobs.values():
            if job.handle.path == path:
                return job
        raise InstanceNotFound(f"Object path not found: {path}")
