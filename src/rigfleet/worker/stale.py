"""Stale worker detection and cleanup."""

from __future__ import annotations

from dataclasses import dataclass

from .. import log
from ..context import FleetContext
from ..identity import worker_address
from ..services.errors import ServiceFailure
from .nuke import NukeRequest, NukeService, WorkerRef

DEFAULT_BEHIND_THRESHOLD = 20


@dataclass(frozen=True)
class StaleReport:
    ref: WorkerRef
    stale: bool
    reason: str
    behind: int | None = None


def assess_worker(ctx: FleetContext, ref: WorkerRef, *, threshold: int) -> StaleReport:
    """Classify one worker.

    Stale means: no live session, and either far behind the default branch
    or missing its agent bead, and no uncommitted work.
    """
    address = worker_address(ref.rig, ref.name)
    if ctx.sessions.has_session(address.session_name):
        return StaleReport(ref=ref, stale=False, reason="session running")
    sandbox = ctx.workers.sandbox_path(ref.rig, ref.name)
    base_branch = ctx.town.rig(ref.rig).default_branch
    if not (sandbox.exists() and ctx.sandboxes.is_worktree(sandbox)):
        return StaleReport(ref=ref, stale=True, reason="sandbox removed")
    status = ctx.sandboxes.status(sandbox, base_branch=base_branch)
    if status.uncommitted:
        return StaleReport(ref=ref, stale=False, reason="has uncommitted work")
    behind = ctx.sandboxes.behind_count(sandbox, base_branch=base_branch)
    bead = ctx.store.find_agent(address.agent_id)
    if bead is None or bead.is_closed:
        return StaleReport(ref=ref, stale=True, reason="no agent bead", behind=behind)
    if behind is not None and behind >= threshold:
        return StaleReport(
            ref=ref, stale=True, reason=f"{behind} commits behind {base_branch}", behind=behind
        )
    return StaleReport(ref=ref, stale=False, reason="recent", behind=behind)


def detect_stale(
    ctx: FleetContext, rig: str, *, threshold: int = DEFAULT_BEHIND_THRESHOLD
) -> list[StaleReport]:
    ctx.town.rig(rig)
    return [
        assess_worker(ctx, WorkerRef(rig=rig, name=name), threshold=threshold)
        for name in ctx.workers.names(rig)
    ]


def cleanup_stale(ctx: FleetContext, reports: list[StaleReport]) -> tuple[list[str], list[str]]:
    """Nuke stale workers one at a time (never forced).

    Returns ``(nuked, failures)``; a worker refused by the safety checks
    is reported as a failure and skipped.
    """
    nuked: list[str] = []
    failures: list[str] = []
    service = NukeService(ctx)
    for report in reports:
        if not report.stale:
            continue
        try:
            outcome = service(NukeRequest(targets=(report.ref,)))
        except ServiceFailure as exc:
            log.warning(f"skipping {report.ref.label}: {exc}")
            failures.append(f"{report.ref.label}: {exc}")
            continue
        nuked.extend(outcome.nuked)
    return nuked, failures
