"""Tests for CLI commands."""
import argparse
from unittest.mock import patch

import pytest

from hvbackup.cli import build_parser, main
from hvbackup.cli.checkpoint_commands import cmd_checkpoint_create, cmd_checkpoint_list
from hvbackup.cli.export_commands import cmd_export
from hvbackup.cli.refpoint_commands import cmd_refpoint_destroy, cmd_refpoint_list
from hvbackup.cli.utils import vm_selector
from hvbackup.di import DependencyContainer, set_container
from hvbackup.interfaces.management import ManagementService
from hvbackup.models import EngineConfig


@pytest.fixture
def cli_container(fake_service, fast_config):
    """Install a container around the shared fake service."""
    container = DependencyContainer()
    container.register(ManagementService, instance=fake_service)
    container.register(EngineConfig, instance=fast_config)
    set_container(container)
    yield container
    set_container(None)


def _args(**kwargs):
    defaults = {"vm": "demo", "id": None}
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


class TestParser:
    """Test argument parsing."""

    def test_backup_arguments(self):
        args = build_parser().parse_args(["--fake", "backup", "demo", "-o", "C:/out"])
        assert args.fake is True
        assert args.vm == "demo"
        assert args.destination == "C:/out"
        assert args.consistency == "application"

    def test_vm_is_required(self):
        with pytest.raises(SystemExit):
            main(["checkpoint", "list"])

    def test_name_and_id_are_exclusive(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["--fake", "checkpoint", "list", "demo", "--id", "ABC"])

        assert exc_info.value.code == 2
        assert "not both" in capsys.readouterr().err

    def test_vm_selector_rejects_both(self):
        with pytest.raises(ValueError, match="not both"):
            vm_selector(_args(vm="demo", id="ABC"))

    def test_vm_selector_by_id(self):
        assert vm_selector(_args(vm=None, id="ABC")).vm_id == "ABC"


class TestCheckpointCommands:
    """Test checkpoint commands."""

    def test_create_and_list(self, cli_container, fake_service, capsys):
        cmd_checkpoint_create(_args(consistency="crash"))
        cmd_checkpoint_list(_args(all=False))

        out = capsys.readouterr().out
        assert "Checkpoint created" in out
        assert "crash" in out
        assert len(fake_service.calls_to("CreateSnapshot")) == 1

    def test_list_empty(self, cli_container, capsys):
        cmd_checkpoint_list(_args(all=False))
        assert "No checkpoints found" in capsys.readouterr().out


class TestReferencePointCommands:
    """Test reference point commands."""

    def test_destroy_asks_for_confirmation(self, cli_container, checkpoints, reference_points, capsys):
        reference_point = reference_points.convert(checkpoints.create("demo"))

        with patch("hvbackup.cli.refpoint_commands.questionary.confirm") as mock_confirm:
            mock_confirm.return_value.ask.return_value = False
            cmd_refpoint_destroy(_args(reference_point=reference_point.path, yes=False))

        assert reference_points.list("demo") == [reference_point]
        assert "Cancelled" in capsys.readouterr().out

    def test_destroy_with_yes(self, cli_container, checkpoints, reference_points):
        reference_point = reference_points.convert(checkpoints.create("demo"))

        with patch("hvbackup.cli.refpoint_commands.questionary.confirm") as mock_confirm:
            cmd_refpoint_destroy(_args(reference_point=reference_point.path, yes=True))
            mock_confirm.assert_not_called()

        assert reference_points.list("demo") == []

    def test_list_empty(self, cli_container, capsys):
        cmd_refpoint_list(_args())
        assert "No reference points found" in capsys.readouterr().out


class TestExportCommand:
    """Test export command."""

    def test_exports_newest_recovery_checkpoint(self, cli_container, checkpoints, fake_service, capsys):
        checkpoints.create("demo")
        newest = checkpoints.create("demo")

        cmd_export(_args(destination="C:/out", checkpoint=None, base=None, no_wait=False))

        assert fake_service.exports[0]["settings"]["SnapshotVirtualSystem"] == newest.path
        assert "VM exported to" in capsys.readouterr().out

    def test_no_checkpoint(self, cli_container):
        from hvbackup.errors import NotFound

        with pytest.raises(NotFound):
            cmd_export(_args(destination="C:/out", checkpoint=None, base=None, no_wait=False))


class TestMain:
    """Test the main entry point against the in-memory hypervisor."""

    def test_backup_with_fake_backend(self, capsys):
        with patch("hvbackup.cli.parsers.configure_logging"):
            main(["--fake", "backup", "demo", "-o", "C:/out"])
        set_container(None)

        out = capsys.readouterr().out
        assert "Full backup written to" in out

    def test_engine_error_exits_with_status_1(self, capsys):
        with patch("hvbackup.cli.parsers.configure_logging"):
            with pytest.raises(SystemExit) as exc_info:
                main(["--fake", "checkpoint", "list", "missing"])
        set_container(None)

        assert exc_info.value.code == 1
        assert "no VM matches" in capsys.readouterr().out
