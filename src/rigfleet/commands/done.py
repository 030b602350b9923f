"""Implementation for the ``rigfleet done`` command."""

from __future__ import annotations

from pathlib import Path

from ..identity import detect_self_identity
from ..io import say
from ..services.errors import ServiceFailure
from ..worker.completion import DoneRequest, DoneService
from .resolve import fail, resolve_context


def done(args: object) -> None:
    """Signal work completion and tear down the caller's session."""
    ctx = resolve_context(args)
    try:
        identity = detect_self_identity(
            explicit=getattr(args, "actor", None),
            env=ctx.env,
            cwd=Path.cwd(),
            town_root=ctx.root,
        )
        outcome = DoneService(ctx, identity=identity)(
            DoneRequest(
                exit_type=str(getattr(args, "exit_type", None) or "COMPLETED"),
                issue=getattr(args, "issue", None),
                gate=getattr(args, "gate", None),
                priority=getattr(args, "priority", None),
            )
        )
    except ServiceFailure as exc:
        fail(exc)
    if outcome.closed_without_changes:
        say(f"Closed {outcome.issue}: no changes to merge")
    elif outcome.mr_id:
        say(f"Submitted {outcome.mr_id} for {outcome.branch}")
    say(f"Exit: {outcome.exit_type} (cleanup: {outcome.cleanup_status})")
