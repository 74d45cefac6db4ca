"""Tests for the export coordinator."""
import threading
import time

import pytest

from hvbackup.checkpoints import ConsistencyLevel
from hvbackup.errors import (
    Cancelled,
    ExportFailed,
    ExportInProgress,
    NotFound,
    VmAmbiguous,
    VmNotFound,
)
from hvbackup.export import (
    ExportCoordinator,
    ExportHandle,
    ExportOutcome,
    ExportRequest,
    build_export_settings,
)
from hvbackup.export.coordinator import BACKUP_INTENT_BASE_VHD, EXPORT_ONE_SNAPSHOT_USE_VM_ID
from hvbackup.jobs import JobMonitor
from hvbackup.models import EngineConfig, PollingSettings


class TestExportSettings:
    """Test construction of export setting data."""

    def test_full_export_leaves_base_unset(self, checkpoints):
        checkpoint = checkpoints.create("demo")

        settings = build_export_settings(checkpoint, None)

        assert "DifferentialBackupBase" not in settings
        assert settings == {
            "CopyVmStorage": True,
            "CopyVmRuntimeInformation": False,
            "CreateVmExportSubdirectory": False,
            "CopySnapshotConfiguration": EXPORT_ONE_SNAPSHOT_USE_VM_ID,
            "SnapshotVirtualSystem": checkpoint.path,
            "BackupIntent": BACKUP_INTENT_BASE_VHD,
        }

    def test_differential_export_sets_base(self, checkpoints, reference_points):
        base = reference_points.convert(checkpoints.create("demo"))
        checkpoint = checkpoints.create("demo")

        settings = build_export_settings(checkpoint, base)

        assert settings["DifferentialBackupBase"] == base.path
        assert settings["SnapshotVirtualSystem"] == checkpoint.path


class TestExportRequest:
    """Test ExportRequest validation."""

    def test_string_vm_is_coerced(self, checkpoints):
        request = ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        assert request.vm.name == "demo"
        assert request.is_differential is False

    def test_empty_destination(self, checkpoints):
        with pytest.raises(ValueError):
            ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="  ")


class TestExport:
    """Test ExportCoordinator.export."""

    def test_full_export_waits_for_completion(self, checkpoints, coordinator, fake_service, demo_id):
        checkpoint = checkpoints.create("demo", ConsistencyLevel.APPLICATION_CONSISTENT)

        outcome = coordinator.export(
            ExportRequest(vm="demo", checkpoint=checkpoint, base=None, destination="C:/out", wait=True)
        )

        assert isinstance(outcome, ExportOutcome)
        assert outcome.succeeded is True
        assert outcome.path == "C:/out"
        assert outcome.differential is False
        (export,) = fake_service.exports
        assert export["vm_id"] == demo_id
        assert export["directory"] == "C:/out"
        assert coordinator.in_flight() == []

    def test_differential_export(self, checkpoints, reference_points, coordinator, fake_service):
        base = reference_points.convert(checkpoints.create("demo"))
        checkpoint = checkpoints.create("demo")

        outcome = coordinator.export(
            ExportRequest(vm="demo", checkpoint=checkpoint, base=base, destination="C:/out")
        )

        assert outcome.differential is True
        assert fake_service.exports[0]["settings"]["DifferentialBackupBase"] == base.path

    def test_destroyed_base_is_rejected_before_submission(
        self, checkpoints, reference_points, coordinator, fake_service
    ):
        base = reference_points.convert(checkpoints.create("demo"))
        reference_points.destroy(base)
        checkpoint = checkpoints.create("demo")

        with pytest.raises(NotFound):
            coordinator.export(ExportRequest(vm="demo", checkpoint=checkpoint, base=base, destination="C:/out"))

        assert fake_service.calls_to("ExportSystemDefinition") == []
        assert coordinator.in_flight() == []

    def test_checkpoint_of_another_vm(self, checkpoints, coordinator):
        checkpoint = checkpoints.create("other")

        with pytest.raises(NotFound, match="belongs to VM"):
            coordinator.export(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))

    def test_unknown_vm(self, checkpoints, coordinator, fake_service):
        checkpoint = checkpoints.create("demo")
        fake_service.calls.clear()

        with pytest.raises(VmNotFound):
            coordinator.export(ExportRequest(vm="missing", checkpoint=checkpoint, destination="C:/out"))

        assert fake_service.mutating_calls == []

    def test_ambiguous_vm(self, checkpoints, coordinator, fake_service):
        checkpoint = checkpoints.create("demo")
        fake_service.add_vm("demo")
        fake_service.calls.clear()

        with pytest.raises(VmAmbiguous):
            coordinator.export(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))

        assert fake_service.mutating_calls == []

    def test_job_failure_becomes_export_failed(self, checkpoints, coordinator, fake_service):
        checkpoint = checkpoints.create("demo")
        fake_service.job_failures["ExportSystemDefinition"] = (32768, "Disk full")

        with pytest.raises(ExportFailed) as exc_info:
            coordinator.export(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))

        assert exc_info.value.code == 32768
        assert exc_info.value.operation == "export_vm"
        assert coordinator.in_flight() == []

    def test_immediate_rejection_releases_vm(self, checkpoints, coordinator, fake_service):
        checkpoint = checkpoints.create("demo")
        fake_service.rejections["ExportSystemDefinition"] = 32773

        with pytest.raises(ExportFailed):
            coordinator.export(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))

        assert coordinator.in_flight() == []


class TestExportConcurrency:
    """Test the one-export-per-VM rule."""

    def test_second_export_fails_while_first_outstanding(self, checkpoints, coordinator, demo_id):
        checkpoint = checkpoints.create("demo")
        request = ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out", wait=False)

        handle = coordinator.export(request)
        assert isinstance(handle, ExportHandle)
        assert coordinator.in_flight() == [demo_id]

        with pytest.raises(ExportInProgress) as exc_info:
            coordinator.export(request)
        assert exc_info.value.target == "demo"

        outcome = handle.wait()
        assert outcome.succeeded is True
        assert handle.done is True

        second = coordinator.export(request)
        assert second.wait().succeeded is True

    def test_wait_is_idempotent(self, checkpoints, coordinator):
        checkpoint = checkpoints.create("demo")
        handle = coordinator.start(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))

        assert handle.wait() is handle.wait()

    def test_different_vms_export_independently(self, checkpoints, coordinator):
        demo = coordinator.start(
            ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/a")
        )
        other = coordinator.start(
            ExportRequest(vm="other", checkpoint=checkpoints.create("other"), destination="C:/b")
        )

        assert len(coordinator.in_flight()) == 2
        demo.wait()
        other.wait()
        assert coordinator.in_flight() == []

    def test_concurrent_threads(self, checkpoints, coordinator, fake_service):
        checkpoint = checkpoints.create("demo")
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        request = ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out")
        results = []

        worker = threading.Thread(target=lambda: results.append(coordinator.export(request)))
        worker.start()
        deadline = time.monotonic() + 5
        while not coordinator.in_flight() and time.monotonic() < deadline:
            time.sleep(0.01)

        with pytest.raises(ExportInProgress):
            coordinator.export(request)

        gate.set()
        worker.join(timeout=5)
        assert results and results[0].succeeded

        del fake_service.gates["ExportSystemDefinition"]
        assert coordinator.export(request).succeeded

    def test_cancelled_wait_keeps_vm_busy(self, checkpoints, coordinator, fake_service, demo_id):
        checkpoint = checkpoints.create("demo")
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        handle = coordinator.start(ExportRequest(vm="demo", checkpoint=checkpoint, destination="C:/out"))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled) as exc_info:
            handle.wait(cancel_event=cancel)

        assert exc_info.value.job_still_running is True
        assert coordinator.in_flight() == [demo_id]

        gate.set()
        assert handle.wait().succeeded
        assert coordinator.in_flight() == []


class TestAbandonedBlockingExport:
    """Test exports whose blocking wait was cancelled or timed out."""

    def test_cancelled_wait_carries_handle(self, checkpoints, coordinator, fake_service, demo_id):
        fake_service.gates["ExportSystemDefinition"] = threading.Event()
        request = ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled) as exc_info:
            coordinator.export(request, cancel_event=cancel)

        handle = exc_info.value.handle
        assert isinstance(handle, ExportHandle)
        assert coordinator.in_flight() == [demo_id]

        fake_service.gates["ExportSystemDefinition"].set()
        assert handle.wait().succeeded
        assert coordinator.in_flight() == []

    def test_reexport_after_cancelled_wait(self, checkpoints, coordinator, fake_service):
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        request = ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled):
            coordinator.export(request, cancel_event=cancel)

        with pytest.raises(ExportInProgress):
            coordinator.export(request)

        gate.set()
        del fake_service.gates["ExportSystemDefinition"]

        outcome = coordinator.export(request)
        assert outcome.succeeded
        assert len(fake_service.calls_to("ExportSystemDefinition")) == 2
        assert coordinator.in_flight() == []

    def test_reexport_after_timeout(self, checkpoints, reference_points, fake_service):
        monitor = JobMonitor(
            fake_service,
            EngineConfig(
                polling=PollingSettings(initial_interval=0.01, max_interval=0.01, timeout_seconds=0.05)
            ),
        )
        coordinator = ExportCoordinator(fake_service, monitor, checkpoints, reference_points)
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate

        with pytest.raises(Cancelled):
            coordinator.run_backup("demo", "C:/full")

        gate.set()
        del fake_service.gates["ExportSystemDefinition"]

        result = coordinator.run_backup("demo", "C:/full")
        assert result.outcome.succeeded

    def test_failed_job_frees_slot_for_next_export(self, checkpoints, coordinator, fake_service):
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        fake_service.job_failures["ExportSystemDefinition"] = (32768, "Disk full")
        request = ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(Cancelled):
            coordinator.export(request, cancel_event=cancel)

        gate.set()
        del fake_service.gates["ExportSystemDefinition"]
        assert coordinator.export(request).succeeded

    def test_poll_reports_running_job(self, checkpoints, coordinator, fake_service):
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        handle = coordinator.start(
            ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        )

        assert handle.poll() is False
        assert handle.done is False

        gate.set()
        assert handle.poll() is True
        assert handle.done is True
        assert coordinator.in_flight() == []


class TestSharedHandle:
    """Test waiting on one handle from several threads."""

    def test_concurrent_waits_share_one_outcome(self, checkpoints, coordinator, fake_service):
        gate = threading.Event()
        fake_service.gates["ExportSystemDefinition"] = gate
        handle = coordinator.start(
            ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")
        )
        outcomes = []
        waiters = [threading.Thread(target=lambda: outcomes.append(handle.wait())) for _ in range(4)]
        for waiter in waiters:
            waiter.start()

        gate.set()
        for waiter in waiters:
            waiter.join(timeout=5)

        assert len(outcomes) == 4
        assert all(outcome is outcomes[0] for outcome in outcomes)
        assert coordinator.in_flight() == []

    def test_vendor_cancelled_export(self, checkpoints, coordinator, fake_service):
        fake_service.job_cancellations.add("ExportSystemDefinition")
        request = ExportRequest(vm="demo", checkpoint=checkpoints.create("demo"), destination="C:/out")

        with pytest.raises(ExportFailed) as exc_info:
            coordinator.export(request)

        assert exc_info.value.cancelled is True
        assert coordinator.in_flight() == []


class TestRunBackup:
    """Test the full backup cycle."""

    def test_full_then_differential(self, coordinator, checkpoints, reference_points, fake_service):
        first = coordinator.run_backup("demo", "C:/full")

        assert first.outcome.differential is False
        assert reference_points.list("demo") == [first.reference_point]
        assert checkpoints.list("demo") == []

        second = coordinator.run_backup("demo", "C:/diff", base=first.reference_point)

        assert second.outcome.differential is True
        assert fake_service.exports[1]["settings"]["DifferentialBackupBase"] == first.reference_point.path
        assert set(reference_points.list("demo")) == {first.reference_point, second.reference_point}

    def test_failed_export_keeps_checkpoint(self, coordinator, checkpoints, reference_points, fake_service):
        fake_service.job_failures["ExportSystemDefinition"] = (32768, "Failed")

        with pytest.raises(ExportFailed):
            coordinator.run_backup("demo", "C:/out")

        assert len(checkpoints.list("demo")) == 1
        assert reference_points.list("demo") == []
