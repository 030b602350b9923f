"""Implementation for the ``rigfleet worker`` commands."""

from __future__ import annotations

from rich import box
from rich.console import Console
from rich.table import Table

from ..io import confirm, die, say
from ..services.errors import ServiceFailure
from ..worker.lifecycle import summarize_workers
from ..worker.nuke import NukeRequest, NukeService, parse_worker_ref, worker_refs_for_rig
from ..worker.stale import DEFAULT_BEHIND_THRESHOLD, cleanup_stale, detect_stale
from .resolve import fail, resolve_context


def nuke(args: object) -> None:
    """Destroy workers after safety checks."""
    ctx = resolve_context(args)
    force = bool(getattr(args, "force", False))
    dry_run = bool(getattr(args, "dry_run", False))
    try:
        targets = [parse_worker_ref(value) for value in getattr(args, "workers", None) or []]
        all_rig = getattr(args, "all", None)
        if all_rig:
            targets.extend(worker_refs_for_rig(ctx, all_rig))
        if not targets:
            die("no workers given", hint="pass <rig>/<name>... or --all <rig>")
        if force and not dry_run and not bool(getattr(args, "yes", False)):
            labels = ", ".join(ref.label for ref in targets)
            if not confirm(f"Force-nuke {labels} and discard their work?", default=False):
                die("aborted")
        outcome = NukeService(ctx)(NukeRequest(targets=tuple(targets), force=force, dry_run=dry_run))
    except ServiceFailure as exc:
        fail(exc)
    if dry_run:
        for line in outcome.planned:
            say(f"would {line}")
        return
    say(f"Nuked {len(outcome.nuked)} worker(s)")


def stale(args: object) -> None:
    """Report (and optionally clean up) stale workers in a rig."""
    ctx = resolve_context(args)
    rig = str(getattr(args, "rig", "") or "")
    threshold = getattr(args, "threshold", None)
    try:
        reports = detect_stale(
            ctx,
            rig,
            threshold=DEFAULT_BEHIND_THRESHOLD if threshold is None else int(threshold),
        )
    except ServiceFailure as exc:
        fail(exc)
    stale_reports = [report for report in reports if report.stale]
    for report in reports:
        marker = "stale" if report.stale else "ok"
        say(f"{report.ref.label}: {marker} ({report.reason})")
    if not stale_reports:
        say(f"No stale workers in {rig}")
        return
    if not bool(getattr(args, "cleanup", False)):
        return
    if bool(getattr(args, "dry_run", False)):
        for report in stale_reports:
            say(f"would nuke {report.ref.label}")
        return
    nuked, failures = cleanup_stale(ctx, stale_reports)
    say(f"Cleaned up {len(nuked)} stale worker(s)")
    if failures:
        die(f"{len(failures)} stale worker(s) could not be cleaned up")


def list_workers(args: object) -> None:
    """Show workers in a rig with their derived lifecycle state."""
    ctx = resolve_context(args)
    rig = str(getattr(args, "rig", "") or "")
    try:
        summaries = summarize_workers(ctx, rig)
    except ServiceFailure as exc:
        fail(exc)
    if not summaries:
        say(f"No workers in {rig}")
        return
    table = Table(box=box.SIMPLE)
    table.add_column("Worker")
    table.add_column("State")
    table.add_column("Session")
    table.add_column("Hook")
    table.add_column("Branch")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.state,
            "running" if summary.session_running else "-",
            summary.issue or "-",
            summary.branch or "-",
        )
    Console().print(table)
