"""
Pytest fixtures and configuration for HvBackup tests.
"""
import pytest

from hvbackup.backends.fake_backend import FakeManagementService
from hvbackup.checkpoints import CheckpointManager
from hvbackup.export import ExportCoordinator
from hvbackup.jobs import JobMonitor
from hvbackup.models import EngineConfig, PollingSettings
from hvbackup.reference_points import ReferencePointManager


@pytest.fixture
def fast_config():
    """Config that polls without delay."""
    return EngineConfig(
        polling=PollingSettings(
            initial_interval=0.0,
            max_interval=0.0,
            max_transient_retries=3,
        )
    )


@pytest.fixture
def fake_service():
    """Fake hypervisor with two VMs, 'demo' and 'other'."""
    return FakeManagementService.with_vms("demo", "other")


@pytest.fixture
def monitor(fake_service, fast_config):
    return JobMonitor(fake_service, fast_config)


@pytest.fixture
def checkpoints(fake_service, monitor):
    return CheckpointManager(fake_service, monitor)


@pytest.fixture
def reference_points(fake_service, monitor):
    return ReferencePointManager(fake_service, monitor)


@pytest.fixture
def coordinator(fake_service, monitor, checkpoints, reference_points):
    return ExportCoordinator(fake_service, monitor, checkpoints, reference_points)


@pytest.fixture
def demo_id(fake_service):
    return fake_service.query_instance("Msvm_ComputerSystem", ElementName="demo").get("Name")


# Markers for test categories
def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "e2e: End-to-end workflow tests")
    config.addinivalue_line("markers", "slow: Slow tests")
