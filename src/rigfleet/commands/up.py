"""Implementation for the ``rigfleet up`` command."""

from __future__ import annotations

from ..io import die, say
from ..services.errors import ServiceFailure
from ..startup import start_services
from .resolve import fail, resolve_context


def up(args: object) -> None:
    """Start every rig's witness and refinery sessions."""
    ctx = resolve_context(args)
    rigs = list(getattr(args, "rigs", None) or [])
    try:
        results = start_services(ctx, rigs or None)
    except ServiceFailure as exc:
        fail(exc)
    started = [result.agent_id for result in results if result.started]
    failed = [result for result in results if not result.ok]
    say(f"Started {len(started)} session(s); {len(results) - len(started) - len(failed)} already running")
    if failed:
        die(f"{len(failed)} session(s) failed to start: {', '.join(r.agent_id for r in failed)}")
