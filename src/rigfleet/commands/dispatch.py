"""Implementation for the ``rigfleet dispatch`` command."""

from __future__ import annotations

from ..dispatch.batch import BatchDispatchService, BatchRequest
from ..dispatch.orchestrator import (
    DispatchOptions,
    DispatchOutcome,
    DispatchRequest,
    DispatchService,
)
from ..io import die, say
from ..services.errors import ServiceFailure
from .resolve import fail, resolve_context


def split_arguments(values: list[str]) -> tuple[list[str], str | None]:
    """Split positional arguments into subjects and an optional target.

    One argument dispatches to self; with more, the last one is the target.

    Example:
        >>> split_arguments(["wb-1"])
        (['wb-1'], None)
        >>> split_arguments(["wb-1", "wb-2", "web"])
        (['wb-1', 'wb-2'], 'web')
    """
    if len(values) <= 1:
        return list(values), None
    return list(values[:-1]), values[-1]


def _options(args: object) -> DispatchOptions:
    return DispatchOptions(
        force=bool(getattr(args, "force", False)),
        create=bool(getattr(args, "create", False)),
        account=getattr(args, "account", None),
        agent=getattr(args, "agent", None),
        formula=getattr(args, "formula", None),
        hook_raw=bool(getattr(args, "hook_raw", False)),
        args=getattr(args, "args", None),
        no_convoy=bool(getattr(args, "no_convoy", False)),
        no_merge=bool(getattr(args, "no_merge", False)),
        no_boot=bool(getattr(args, "no_boot", False)),
        dry_run=bool(getattr(args, "dry_run", False)),
    )


def _report(outcome: DispatchOutcome) -> None:
    if outcome.dry_run:
        say(f"Dry run: {len(outcome.steps)} step(s), nothing written")
        for index, step in enumerate(outcome.steps, start=1):
            say(f"  {index}. {step}")
        return
    say(f"Dispatched {outcome.hooked_id} to {outcome.agent_id}")
    if outcome.convoy_id:
        say(f"  convoy: {outcome.convoy_id}")
    if outcome.molecule_id:
        say(f"  molecule: {outcome.molecule_id}")
    if outcome.warnings:
        say(f"  {len(outcome.warnings)} warning(s); see above")


def dispatch(args: object) -> None:
    """Dispatch work items (or a formula) to a target."""
    values = list(getattr(args, "items", None) or [])
    if not values:
        die("at least one work item or formula is required")
    subjects, target = split_arguments(values)
    options = _options(args)
    max_concurrent = getattr(args, "max_concurrent", None)
    ctx = resolve_context(args)

    if len(subjects) == 1:
        try:
            outcome = DispatchService(ctx)(DispatchRequest(subjects[0], target, options))
        except ServiceFailure as exc:
            fail(exc)
        _report(outcome)
        return

    if target is None:
        die("batch dispatch needs a target rig")
    request = BatchRequest(subjects=tuple(subjects), rig=target, options=options)
    if max_concurrent is not None:
        request = BatchRequest(
            subjects=request.subjects,
            rig=request.rig,
            options=options,
            max_concurrent=int(max_concurrent),
        )
    try:
        batch = BatchDispatchService(ctx)(request)
    except ServiceFailure as exc:
        fail(exc)
    for outcome in batch.dispatched:
        _report(outcome)
    if batch.failures:
        for failure in batch.failures:
            say(f"failed: {failure.subject}: {failure.error}")
        die(f"{len(batch.failures)} of {len(subjects)} dispatch(es) failed")
