#!/usr/bin/env python3
"""
Export and backup commands for HvBackup CLI.
"""

from hvbackup.checkpoints import CheckpointManager, ConsistencyLevel
from hvbackup.cli.utils import console, resolve, vm_selector
from hvbackup.errors import NotFound
from hvbackup.export import ExportCoordinator, ExportRequest
from hvbackup.reference_points import ReferencePointManager


def cmd_export(args):
    """Export a checkpoint, in full or relative to a reference point."""
    vm = vm_selector(args)
    checkpoints = resolve(CheckpointManager)

    if args.checkpoint:
        checkpoint = checkpoints.get(vm, args.checkpoint)
    else:
        recovery = checkpoints.list(vm)
        if not recovery:
            raise NotFound("VM has no recovery checkpoint to export", operation="export_vm", target=str(vm))
        checkpoint = recovery[-1]

    base = None
    if args.base:
        base = resolve(ReferencePointManager).get(vm, args.base)

    request = ExportRequest(
        vm=vm,
        checkpoint=checkpoint,
        destination=args.destination,
        base=base,
        wait=not args.no_wait,
    )
    coordinator = resolve(ExportCoordinator)

    if args.no_wait:
        handle = coordinator.start(request)
        job_id = handle.job.job_id if handle.job else "-"
        console.print(f"[cyan]Export submitted, job {job_id}[/]")
        return

    kind = "differential" if base is not None else "full"
    with console.status(f"Running {kind} export of {vm}..."):
        outcome = coordinator.export(request)
    console.print(f"[green]✅ VM exported to: {outcome.path}[/]")


def cmd_backup(args):
    """Checkpoint, export and convert in one go."""
    vm = vm_selector(args)
    base = None
    if args.base:
        base = resolve(ReferencePointManager).get(vm, args.base)

    with console.status(f"Backing up {vm}..."):
        result = resolve(ExportCoordinator).run_backup(
            vm,
            args.destination,
            base=base,
            consistency=ConsistencyLevel(args.consistency),
        )

    kind = "Differential" if result.outcome.differential else "Full"
    console.print(f"[green]✅ {kind} backup written to: {result.outcome.path}[/]")
    console.print(f"   Next base reference point: [cyan]{result.reference_point.path}[/]")
