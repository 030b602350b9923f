"""Safety-checked worker teardown."""

from __future__ import annotations

from dataclasses import dataclass

from .. import log
from ..context import FleetContext
from ..identity import worker_address
from ..services.base import BaseService
from ..services.errors import (
    ExternalCommandFailedError,
    PreconditionFailedError,
    ServiceFailure,
    ValidationFailedError,
)
from .lifecycle import find_open_merge_request, hooked_work
from .names import worker_branch

NUKE_REASON = "nuked"


@dataclass(frozen=True)
class WorkerRef:
    rig: str
    name: str

    @property
    def agent_id(self) -> str:
        return worker_address(self.rig, self.name).agent_id

    @property
    def label(self) -> str:
        return f"{self.rig}/{self.name}"


def parse_worker_ref(value: str) -> WorkerRef:
    """Parse ``<rig>/<name>`` or ``<rig>/polecats/<name>``.

    Example:
        >>> parse_worker_ref("web/polecats/nux")
        WorkerRef(rig='web', name='nux')
    """
    parts = [part for part in value.strip().split("/") if part]
    if len(parts) == 2:
        return WorkerRef(rig=parts[0], name=parts[1])
    if len(parts) == 3 and parts[1] == "polecats":
        return WorkerRef(rig=parts[0], name=parts[2])
    raise ValidationFailedError(
        f"invalid worker address: {value!r}",
        recovery_hint="expected <rig>/<name>",
    )


def safety_blockers(ctx: FleetContext, ref: WorkerRef) -> list[str]:
    """List reasons destroying ``ref`` would lose work (empty when safe)."""
    reasons: list[str] = []
    sandbox = ctx.workers.sandbox_path(ref.rig, ref.name)
    if sandbox.exists() and ctx.sandboxes.is_worktree(sandbox):
        status = ctx.sandboxes.status(sandbox, base_branch=ctx.town.rig(ref.rig).default_branch)
        if not status.is_clean:
            reasons.append(status.describe())
    open_mr = find_open_merge_request(ctx.store, ref.rig, ref.name)
    if open_mr is not None:
        reasons.append(f"open merge request {open_mr.id}")
    work = hooked_work(ctx.store, ctx.store.find_agent(ref.agent_id))
    if work is not None:
        reasons.append(f"{work.status} work {work.id} on hook")
    return reasons


class WorkerTeardown:
    """Individual, re-runnable teardown steps for one worker."""

    def __init__(self, ctx: FleetContext, ref: WorkerRef) -> None:
        self._ctx = ctx
        self.ref = ref

    def kill_session(self) -> None:
        name = worker_address(self.ref.rig, self.ref.name).session_name
        if self._ctx.sessions.has_session(name):
            self._ctx.sessions.kill_session(name)

    def remove_sandbox(self) -> None:
        sandbox = self._ctx.workers.sandbox_path(self.ref.rig, self.ref.name)
        self._ctx.sandboxes.remove(self.ref.rig, sandbox, force=True)

    def delete_branches(self) -> list[str]:
        """Delete the git and database branches; returns warnings."""
        ctx = self._ctx
        warnings: list[str] = []
        record = ctx.workers.load(self.ref.rig, self.ref.name)
        branch = record.branch if record else worker_branch(self.ref.name)
        try:
            ctx.sandboxes.delete_branch(self.ref.rig, branch)
        except ServiceFailure as exc:
            warnings.append(f"delete branch {branch}: {exc}")
        if record is not None and record.db_branch:
            try:
                ctx.db.delete_branch(ctx.town.rig_db_name(self.ref.rig), record.db_branch)
            except ServiceFailure as exc:
                warnings.append(f"delete database branch {record.db_branch}: {exc}")
        return warnings

    def close_identity(self) -> None:
        store = self._ctx.store
        bead = store.find_agent(self.ref.agent_id)
        if bead is not None and not bead.is_closed:
            if bead.field("hook_bead"):
                store.clear_agent_hook(bead.id)
            store.set_agent_fields(bead.id, {"agent_state": "nuked"})
            store.close(bead.id, reason=NUKE_REASON)
        self._ctx.workers.delete(self.ref.rig, self.ref.name)


@dataclass(frozen=True)
class NukeRequest:
    targets: tuple[WorkerRef, ...]
    force: bool = False
    dry_run: bool = False


@dataclass(frozen=True)
class NukeOutcome:
    nuked: tuple[str, ...]
    planned: tuple[str, ...] = ()
    warnings: tuple[str, ...] = ()


class NukeService(BaseService[NukeRequest, NukeOutcome]):
    """Destroy workers: session, sandbox, branches, then identity."""

    def __init__(self, ctx: FleetContext) -> None:
        self._ctx = ctx

    def _run(self, request: NukeRequest) -> NukeOutcome:
        if not request.targets:
            raise ValidationFailedError("no workers to nuke")
        for ref in request.targets:
            self._ctx.town.rig(ref.rig)

        blocked: list[str] = []
        for ref in request.targets:
            reasons = safety_blockers(self._ctx, ref)
            if not reasons:
                continue
            if request.force:
                log.warning(f"force-nuking {ref.label}: discarding {'; '.join(reasons)}")
            else:
                blocked.append(f"{ref.label}: {'; '.join(reasons)}")
        if blocked:
            raise PreconditionFailedError(
                f"blocked: {len(blocked)} worker(s) have active work\n  " + "\n  ".join(blocked),
                recovery_hint="finish or push the work first, or pass --force to discard it",
            )

        if request.dry_run:
            planned = tuple(
                f"nuke {ref.label}: kill session, remove sandbox, delete branches, close identity"
                for ref in request.targets
            )
            return NukeOutcome(nuked=(), planned=planned)

        nuked: list[str] = []
        warnings: list[str] = []
        failures: list[str] = []
        for ref in request.targets:
            try:
                warnings.extend(self._destroy(ref))
            except ServiceFailure as exc:
                log.error(f"nuke {ref.label} failed: {exc}")
                failures.append(f"{ref.label}: {exc}")
                continue
            nuked.append(ref.label)
            log.success(f"nuked {ref.label}")
        if failures:
            raise ExternalCommandFailedError(
                f"{len(failures)} nuke(s) failed\n  " + "\n  ".join(failures)
            )
        return NukeOutcome(nuked=tuple(nuked), warnings=tuple(warnings))

    def _destroy(self, ref: WorkerRef) -> list[str]:
        teardown = WorkerTeardown(self._ctx, ref)
        warnings: list[str] = []
        try:
            teardown.kill_session()
        except ServiceFailure as exc:
            warnings.append(f"kill session: {exc}")
            log.warning(f"{ref.label}: failed to kill session: {exc}")
        teardown.remove_sandbox()
        warnings.extend(teardown.delete_branches())
        try:
            teardown.close_identity()
        except ServiceFailure as exc:
            warnings.append(f"close identity: {exc}")
            log.warning(f"{ref.label}: failed to close agent bead: {exc}")
        return warnings


def worker_refs_for_rig(ctx: FleetContext, rig: str) -> tuple[WorkerRef, ...]:
    ctx.town.rig(rig)
    return tuple(WorkerRef(rig=rig, name=name) for name in ctx.workers.names(rig))
