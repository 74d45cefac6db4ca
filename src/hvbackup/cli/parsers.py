#!/usr/bin/env python3
"""
Argument parsers for HvBackup CLI.
"""

import argparse
import sys

from hvbackup import __version__
from hvbackup.cli.checkpoint_commands import cmd_checkpoint_create, cmd_checkpoint_list
from hvbackup.cli.export_commands import cmd_backup, cmd_export
from hvbackup.cli.refpoint_commands import (
    cmd_refpoint_convert,
    cmd_refpoint_destroy,
    cmd_refpoint_list,
)
from hvbackup.cli.utils import console, init_container
from hvbackup.errors import HvBackupError
from hvbackup.logging import configure_logging

CONSISTENCY_CHOICES = ["application", "crash"]


def _add_vm_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("vm", nargs="?", default=None, help="VM name")
    parser.add_argument("--id", help="Select the VM by id instead of name")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="hvbackup", description="Checkpoint and differential export coordination for Hyper-V"
    )
    parser.add_argument("--version", action="version", version=f"hvbackup {__version__}")
    parser.add_argument("--config", "-c", help="Config file (default: ./.hvbackup.yaml)")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument("--json-logs", action="store_true", help="Emit logs as JSON")
    parser.add_argument("--fake", action="store_true", help="Use the in-memory hypervisor")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Checkpoint commands
    checkpoint_parser = subparsers.add_parser("checkpoint", help="Manage checkpoints")
    checkpoint_sub = checkpoint_parser.add_subparsers(dest="checkpoint_command")

    cp_create = checkpoint_sub.add_parser("create", help="Create a recovery checkpoint")
    _add_vm_arguments(cp_create)
    cp_create.add_argument(
        "--consistency", choices=CONSISTENCY_CHOICES, default="application", help="Consistency level"
    )
    cp_create.set_defaults(func=cmd_checkpoint_create)

    cp_list = checkpoint_sub.add_parser("list", help="List recovery checkpoints")
    _add_vm_arguments(cp_list)
    cp_list.add_argument("--all", action="store_true", help="Include non-recovery checkpoints")
    cp_list.set_defaults(func=cmd_checkpoint_list)

    # Reference point commands
    refpoint_parser = subparsers.add_parser("refpoint", help="Manage reference points")
    refpoint_sub = refpoint_parser.add_subparsers(dest="refpoint_command")

    rp_convert = refpoint_sub.add_parser("convert", help="Convert a checkpoint to a reference point")
    _add_vm_arguments(rp_convert)
    rp_convert.add_argument("--checkpoint", required=True, help="Checkpoint path")
    rp_convert.set_defaults(func=cmd_refpoint_convert)

    rp_list = refpoint_sub.add_parser("list", help="List reference points")
    _add_vm_arguments(rp_list)
    rp_list.set_defaults(func=cmd_refpoint_list)

    rp_destroy = refpoint_sub.add_parser("destroy", help="Destroy a reference point")
    _add_vm_arguments(rp_destroy)
    rp_destroy.add_argument("--reference-point", required=True, help="Reference point path")
    rp_destroy.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")
    rp_destroy.set_defaults(func=cmd_refpoint_destroy)

    # Export command
    export_parser = subparsers.add_parser("export", help="Export a checkpoint")
    _add_vm_arguments(export_parser)
    export_parser.add_argument("--destination", "-o", required=True, help="Export directory")
    export_parser.add_argument("--checkpoint", help="Checkpoint path (default: newest recovery)")
    export_parser.add_argument("--base", help="Reference point path for a differential export")
    export_parser.add_argument("--no-wait", action="store_true", help="Return once the job is submitted")
    export_parser.set_defaults(func=cmd_export)

    # Backup command
    backup_parser = subparsers.add_parser("backup", help="Checkpoint, export and convert")
    _add_vm_arguments(backup_parser)
    backup_parser.add_argument("--destination", "-o", required=True, help="Export directory")
    backup_parser.add_argument("--base", help="Reference point path for a differential backup")
    backup_parser.add_argument(
        "--consistency", choices=CONSISTENCY_CHOICES, default="application", help="Consistency level"
    )
    backup_parser.set_defaults(func=cmd_backup)

    return parser


def main(argv=None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return

    if getattr(args, "vm", None) is None and getattr(args, "id", None) is None:
        parser.error("a VM name or --id is required")
    if getattr(args, "vm", None) is not None and getattr(args, "id", None) is not None:
        parser.error("give either a VM name or --id, not both")

    configure_logging(level=args.log_level, json_output=args.json_logs)

    try:
        init_container(args)
        args.func(args)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/]")
        sys.exit(1)
    except (HvBackupError, FileNotFoundError, ValueError) as e:
        console.print(f"[red]❌ {e}[/]")
        sys.exit(1)
