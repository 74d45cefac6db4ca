#!/usr/bin/env python3
"""
Shared utilities for HvBackup CLI.
"""

from pathlib import Path
from typing import Optional

from questionary import Style
from rich.console import Console
from rich.table import Table

from hvbackup.checkpoints.models import Checkpoint, ReferencePoint
from hvbackup.di import create_default_container, get_container, set_container
from hvbackup.models import HVBACKUP_CONFIG_FILE, EngineConfig
from hvbackup.vm import VirtualMachineRef

custom_style = Style(
    [
        ("qmark", "fg:cyan bold"),
        ("question", "bold"),
        ("answer", "fg:green"),
        ("pointer", "fg:cyan bold"),
    ]
)

console = Console()


def load_engine_config(path: Optional[str]) -> EngineConfig:
    """Load the config named on the command line, else ./.hvbackup.yaml, else defaults."""
    if path:
        return EngineConfig.load(Path(path).expanduser())
    default = Path.cwd() / HVBACKUP_CONFIG_FILE
    if default.exists():
        return EngineConfig.load(default)
    return EngineConfig()


def init_container(args) -> None:
    """Install the process-wide container for this invocation."""
    config = load_engine_config(getattr(args, "config", None))
    set_container(create_default_container(config, fake=getattr(args, "fake", False)))


def resolve(component):
    return get_container().resolve(component)


def vm_selector(args) -> VirtualMachineRef:
    """VM selector from ``--id`` or the positional VM name."""
    vm_id = getattr(args, "id", None)
    name = getattr(args, "vm", None)
    if vm_id and name:
        raise ValueError("give either a VM name or --id, not both")
    if vm_id:
        return VirtualMachineRef.by_id(vm_id)
    return VirtualMachineRef.by_name(name)


def checkpoint_table(title: str, checkpoints: list) -> Table:
    table = Table(title=title)
    table.add_column("Path", style="cyan", overflow="fold")
    table.add_column("Name", style="green")
    table.add_column("Kind", style="yellow")
    table.add_column("Consistency", style="magenta")
    table.add_column("Created", style="blue")

    for checkpoint in checkpoints:
        table.add_row(
            checkpoint.path,
            checkpoint.name or "",
            checkpoint.kind.value,
            checkpoint.consistency.value,
            checkpoint.created_at.isoformat() if checkpoint.created_at else "",
        )
    return table


def reference_point_table(title: str, reference_points: list) -> Table:
    table = Table(title=title)
    table.add_column("Path", style="cyan", overflow="fold")
    table.add_column("Name", style="green")
    table.add_column("Created", style="blue")

    for reference_point in reference_points:
        table.add_row(
            reference_point.path,
            reference_point.name or "",
            reference_point.created_at.isoformat() if reference_point.created_at else "",
        )
    return table


def describe_checkpoint(checkpoint: Checkpoint) -> str:
    return f"{checkpoint.path} ({checkpoint.kind.value}, {checkpoint.consistency.value})"


def describe_reference_point(reference_point: ReferencePoint) -> str:
    return reference_point.path
