#!/usr/bin/env python3
"""
Reference point commands for HvBackup CLI.
"""

import questionary

from hvbackup.checkpoints import CheckpointManager
from hvbackup.cli.utils import (
    console,
    custom_style,
    describe_reference_point,
    reference_point_table,
    resolve,
    vm_selector,
)
from hvbackup.reference_points import ReferencePointManager


def cmd_refpoint_convert(args):
    """Convert a checkpoint into a reference point."""
    vm = vm_selector(args)
    checkpoint = resolve(CheckpointManager).get(vm, args.checkpoint)

    with console.status("Converting checkpoint..."):
        reference_point = resolve(ReferencePointManager).convert(checkpoint)

    console.print(f"[green]✅ Reference point created: {describe_reference_point(reference_point)}[/]")


def cmd_refpoint_list(args):
    """List reference points of a VM."""
    vm = vm_selector(args)
    reference_points = resolve(ReferencePointManager).list(vm)

    if not reference_points:
        console.print(f"[dim]No reference points found for VM '{vm}'[/]")
        return

    console.print(reference_point_table(f"Reference points for {vm}", reference_points))


def cmd_refpoint_destroy(args):
    """Destroy a reference point."""
    vm = vm_selector(args)
    manager = resolve(ReferencePointManager)
    reference_point = manager.get(vm, args.reference_point)

    if not args.yes:
        confirmed = questionary.confirm(
            f"Destroy reference point {reference_point.path}?",
            default=False,
            style=custom_style,
        ).ask()
        if not confirmed:
            console.print("[yellow]Cancelled.[/]")
            return

    manager.destroy(reference_point)
    console.print(f"[green]✅ Reference point destroyed: {reference_point.path}[/]")
