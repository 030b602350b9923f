"""Worker spawning: admission checks, sandbox provisioning, branch and session.

The phases are separate so the dispatcher can interleave them with its own
writes::

    spawn()          health -> capacity -> allocate -> provision
    create_branch()  commit working set -> fork database branch
    start_session()  tmux session -> readiness wait -> agent_state: working

Admission checks run before anything is allocated, so an unreachable or
saturated server never leaves an orphaned sandbox behind.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path

from .. import log
from ..context import FleetContext
from ..dbserver import worker_db_branch
from ..identity import session_env, worker_address
from ..services.errors import (
    DependencyMissingError,
    PreconditionFailedError,
    ServiceFailure,
    UnexpectedStateError,
)
from .lifecycle import find_open_merge_request
from .models import SpawnedWorker, WorkerRecord
from .names import DEFAULT_NAMES, allocate_name, worker_branch

READY_TIMEOUT_SECONDS = 30.0
WORKER_ROLE = "polecat"


@dataclass(frozen=True)
class SpawnOptions:
    name: str | None = None
    hook_bead: str | None = None
    agent: str | None = None
    account: str | None = None
    force: bool = False


def startup_prompt(agent_id: str, issue: str | None) -> str:
    """Initial instruction typed into a new worker's agent.

    Example:
        >>> startup_prompt("web/polecats/nux", "wb-1")[:31]
        'You are web/polecats/nux. Work '
    """
    work = f"Work {issue} is on your hook." if issue else "Check your hook for work."
    return (
        f"You are {agent_id}. {work} Run `bd show <id>` to read it, do the work, "
        "commit, then run `rigfleet done`."
    )


class WorkerSpawner:
    """Allocate and provision workers for one town."""

    def __init__(self, ctx: FleetContext, *, ready_timeout: float = READY_TIMEOUT_SECONDS) -> None:
        self._ctx = ctx
        self._ready_timeout = ready_timeout

    def _name_pool(self) -> tuple[str, ...]:
        configured = tuple(self._ctx.town.config.worker_names)
        return configured or DEFAULT_NAMES

    def allocate(self, rig: str) -> str:
        """Pick the first free name for ``rig``; pure, nothing is reserved."""
        return allocate_name(self._ctx.workers.names(rig), pool=self._name_pool())

    def allocate_many(self, rig: str, count: int) -> list[str]:
        """Pick ``count`` distinct free names, for spawns that run concurrently."""
        taken = list(self._ctx.workers.names(rig))
        chosen: list[str] = []
        for _ in range(count):
            name = allocate_name(taken, pool=self._name_pool())
            taken.append(name)
            chosen.append(name)
        return chosen

    def check_health(self, rig: str) -> None:
        if self._ctx.db.is_reachable():
            return
        server = self._ctx.town.config.db_server
        raise DependencyMissingError(
            f"database server unreachable at {server.host}:{server.port} (rig {rig})",
            recovery_hint="start it with `rigfleet server run -- <command>` or check db_server in town.json",
        )

    def check_capacity(self, rig: str) -> None:
        report = self._ctx.db.capacity()
        if not report.has_capacity:
            detail = "unknown" if report.active < 0 else f"{report.active}/{report.max_connections}"
            raise PreconditionFailedError(
                f"database server at connection capacity ({detail})",
                recovery_hint="wait for running workers to finish, then retry",
            )
        ceiling = self._ctx.town.rig(rig).max_workers
        if ceiling:
            live = len(self._ctx.workers.names(rig))
            if live >= ceiling:
                raise PreconditionFailedError(
                    f"rig {rig} is at its worker ceiling ({live}/{ceiling})",
                    recovery_hint=f"run `rigfleet worker stale {rig} --cleanup` or raise max_workers",
                )

    def _verify_repairable(self, rig: str, name: str, options: SpawnOptions) -> None:
        ctx = self._ctx
        agent_id = worker_address(rig, name).agent_id
        sandbox = ctx.workers.sandbox_path(rig, name)
        if sandbox.exists() and ctx.sandboxes.is_worktree(sandbox):
            status = ctx.sandboxes.status(sandbox, base_branch=ctx.town.rig(rig).default_branch)
            if status.uncommitted:
                if not options.force:
                    raise PreconditionFailedError(
                        f"existing worker {agent_id} has uncommitted work",
                        recovery_hint=f"rigfleet worker nuke {rig}/{name} --force",
                    )
                log.warning(f"repairing {agent_id}: discarding {status.describe()}")
        open_mr = find_open_merge_request(ctx.store, rig, name)
        if open_mr is not None:
            if not options.force:
                raise PreconditionFailedError(
                    f"existing worker {agent_id} has an open merge request {open_mr.id}",
                    recovery_hint="let the refinery merge it, or pass --force",
                )
            log.warning(f"repairing {agent_id} despite open merge request {open_mr.id}")

    def provision(self, rig: str, name: str, options: SpawnOptions) -> SpawnedWorker:
        """Create (or repair) the sandbox, record and agent bead for ``name``."""
        ctx = self._ctx
        rig_config = ctx.town.rig(rig)
        address = worker_address(rig, name)
        existing_bead = ctx.store.find_agent(address.agent_id)
        repaired = False
        if ctx.workers.exists(rig, name) or (existing_bead is not None and not existing_bead.is_closed):
            self._verify_repairable(rig, name, options)
            repaired = True
            log.info(f"repairing stale worker {address.agent_id}")
        branch = worker_branch(name)
        sandbox = ctx.sandboxes.add(rig, name, branch=branch, base_branch=rig_config.default_branch)
        if not ctx.sandboxes.is_worktree(sandbox):
            ctx.sandboxes.remove(rig, sandbox, force=True)
            raise UnexpectedStateError(
                f"sandbox for {address.agent_id} is not a git worktree; removed it",
                recovery_hint=f"rigfleet worker nuke {rig}/{name} --force",
            )
        try:
            ctx.workers.save(
                WorkerRecord(
                    name=name,
                    rig=rig,
                    state="working",
                    clone_path=str(sandbox),
                    branch=branch,
                    issue=options.hook_bead,
                )
            )
            bead, hook_set = ctx.store.ensure_agent(
                address.agent_id, role=WORKER_ROLE, rig=rig, hook_bead=options.hook_bead
            )
        except Exception:
            if not repaired:
                self._discard(rig, name, sandbox)
            raise
        log.debug(f"provisioned {address.agent_id} at {sandbox}")
        return SpawnedWorker(
            rig=rig,
            name=name,
            agent_id=address.agent_id,
            agent_bead_id=bead.id,
            clone_path=sandbox,
            branch=branch,
            session_name=address.session_name,
            hook_set_atomically=hook_set,
            repaired=repaired,
        )

    def _discard(self, rig: str, name: str, sandbox: Path) -> None:
        """Remove a half-provisioned sandbox and record so the name is reusable."""
        ctx = self._ctx
        try:
            ctx.sandboxes.remove(rig, sandbox, force=True)
        except ServiceFailure as exc:
            log.warning(f"failed to remove sandbox {sandbox}: {exc}")
        try:
            ctx.workers.delete(rig, name)
        except ServiceFailure as exc:
            log.warning(f"failed to delete worker record {rig}/{name}: {exc}")

    def spawn(self, rig: str, options: SpawnOptions) -> SpawnedWorker:
        self._ctx.town.rig(rig)
        self.check_health(rig)
        self.check_capacity(rig)
        name = options.name or self.allocate(rig)
        return self.provision(rig, name, options)

    def create_branch(self, worker: SpawnedWorker) -> SpawnedWorker:
        """Commit the server working set, then fork the worker's branch from it."""
        ctx = self._ctx
        database = ctx.town.rig_db_name(worker.rig)
        branch = worker_db_branch(worker.name, int(ctx.clock()))
        ctx.db.commit_working_set(database, f"dispatch to {worker.agent_id}")
        ctx.db.create_branch(database, branch)
        try:
            ctx.workers.update(worker.rig, worker.name, db_branch=branch)
        except Exception:
            # Unrecorded branches are invisible to rollback and nuke.
            try:
                ctx.db.delete_branch(database, branch)
            except ServiceFailure as exc:
                log.warning(f"failed to delete unrecorded branch {branch}: {exc}")
            raise
        log.debug(f"created database branch {branch} for {worker.agent_id}")
        return replace(worker, db_branch=branch)

    def start_session(self, worker: SpawnedWorker, options: SpawnOptions) -> str:
        """Start the worker's session; returns the pane id. Idempotent."""
        ctx = self._ctx
        sessions = ctx.sessions
        name = worker.session_name
        if sessions.has_session(name):
            pane = sessions.pane_id(name)
            if pane:
                log.debug(f"session {name} already running")
                return pane
        rig_config = ctx.town.rig(worker.rig)
        command = ctx.town.config.agent_command(options.agent or rig_config.agent)
        command.append(startup_prompt(worker.agent_id, options.hook_bead))
        env = session_env(
            worker_address(worker.rig, worker.name),
            beads_dir=ctx.town.beads_dir(),
            db_branch=worker.db_branch,
            account=options.account,
        )
        sessions.new_session(name, work_dir=worker.clone_path, command=command, env=env)
        if not sessions.wait_for_ready(name, timeout_seconds=self._ready_timeout):
            log.warning(f"agent in {name} not ready after {self._ready_timeout:.0f}s; continuing")
        try:
            ctx.store.set_agent_fields(worker.agent_bead_id, {"agent_state": "working"})
        except ServiceFailure as exc:
            log.warning(f"failed to set agent_state on {worker.agent_bead_id}: {exc}")
        pane = sessions.pane_id(name)
        if pane is None:
            sessions.kill_session(name)
            raise UnexpectedStateError(f"session {name} started but has no pane")
        log.info(f"started session {name}")
        return pane
