#!/usr/bin/env python3
"""
Checkpoint commands for HvBackup CLI.
"""

from hvbackup.checkpoints import CheckpointManager, ConsistencyLevel
from hvbackup.cli.utils import checkpoint_table, console, describe_checkpoint, resolve, vm_selector


def cmd_checkpoint_create(args):
    """Create a recovery checkpoint."""
    vm = vm_selector(args)
    consistency = ConsistencyLevel(args.consistency)

    manager = resolve(CheckpointManager)
    with console.status(f"Creating checkpoint of {vm}..."):
        checkpoint = manager.create(vm, consistency)

    console.print(f"[green]✅ Checkpoint created: {describe_checkpoint(checkpoint)}[/]")


def cmd_checkpoint_list(args):
    """List checkpoints of a VM."""
    vm = vm_selector(args)
    manager = resolve(CheckpointManager)
    checkpoints = manager.list(vm, include_all=args.all)

    if not checkpoints:
        console.print(f"[dim]No checkpoints found for VM '{vm}'[/]")
        return

    console.print(checkpoint_table(f"Checkpoints for {vm}", checkpoints))
