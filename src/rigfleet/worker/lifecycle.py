"""Worker lifecycle state derivation.

States are never stored authoritatively; they are derived from what can be
observed: sandbox presence, session liveness, the agent bead's state and hook,
and the done-intent marker left by the completion protocol.

``working -> {done, stalled, zombie} -> nuked``; ``idle`` is a sandbox with
no session and nothing on its hook.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..beads import parse_done_intent
from ..boundary import MERGE_REQUEST_TYPE, WorkItem
from ..context import FleetContext
from ..identity import worker_address
from ..ports import WorkStore
from .models import WorkerState, WorkerSummary

DONE_INTENT_GRACE_SECONDS = 60
PARKED_AGENT_STATES = frozenset({"awaiting-gate", "stuck"})


@dataclass(frozen=True)
class LifecycleInputs:
    sandbox_exists: bool
    session_alive: bool
    agent_bead: WorkItem | None
    now: int

    @property
    def agent_state(self) -> str | None:
        return self.agent_bead.field("agent_state") if self.agent_bead else None

    @property
    def hook_bead(self) -> str | None:
        return self.agent_bead.field("hook_bead") if self.agent_bead else None

    @property
    def done_intent(self) -> tuple[str, int] | None:
        return parse_done_intent(self.agent_bead.labels) if self.agent_bead else None


def derive_state(inputs: LifecycleInputs) -> WorkerState:
    """Derive a worker's lifecycle state.

    Example:
        >>> derive_state(LifecycleInputs(False, False, None, now=0))
        'nuked'
    """
    bead = inputs.agent_bead
    if not inputs.sandbox_exists and (bead is None or bead.is_closed):
        return "nuked"
    intent = inputs.done_intent
    if intent is not None:
        _exit_type, started = intent
        if not inputs.session_alive or inputs.now - started >= DONE_INTENT_GRACE_SECONDS:
            return "zombie"
        return "done"
    if not inputs.sandbox_exists:
        return "done"
    if inputs.agent_state in PARKED_AGENT_STATES:
        return "done"
    if inputs.session_alive:
        return "working"
    if inputs.hook_bead:
        return "stalled"
    if bead is not None and bead.field("cleanup_status"):
        return "done"
    return "idle"


def find_open_merge_request(store: WorkStore, rig: str, name: str) -> WorkItem | None:
    """Return an open merge request created by worker ``rig/name``."""
    agent_id = worker_address(rig, name).agent_id
    for item in store.list_items(issue_type=MERGE_REQUEST_TYPE):
        if item.is_closed:
            continue
        worker = item.field("worker")
        if worker not in (name, agent_id):
            continue
        mr_rig = item.field("rig")
        if mr_rig and mr_rig != rig:
            continue
        return item
    return None


def hooked_work(store: WorkStore, agent_bead: WorkItem | None) -> WorkItem | None:
    """Return the item on the agent's hook while it is still hooked or pinned."""
    if agent_bead is None:
        return None
    hook = agent_bead.field("hook_bead")
    if not hook:
        return None
    item = store.show(hook)
    if item is None or not item.is_assigned:
        return None
    return item


def summarize_workers(ctx: FleetContext, rig: str) -> list[WorkerSummary]:
    """Derive the lifecycle state of every worker recorded for ``rig``."""
    ctx.town.rig(rig)
    now = int(ctx.clock())
    summaries: list[WorkerSummary] = []
    for name in ctx.workers.names(rig):
        address = worker_address(rig, name)
        record = ctx.workers.load(rig, name)
        sandbox = ctx.workers.sandbox_path(rig, name)
        alive = ctx.sessions.has_session(address.session_name)
        bead = ctx.store.find_agent(address.agent_id)
        state = derive_state(
            LifecycleInputs(
                sandbox_exists=sandbox.exists(),
                session_alive=alive,
                agent_bead=bead,
                now=now,
            )
        )
        issue = bead.field("hook_bead") if bead is not None else None
        summaries.append(
            WorkerSummary(
                rig=rig,
                name=name,
                state=state,
                session_running=alive,
                issue=issue or (record.issue if record else None),
                branch=record.branch if record else None,
                clone_path=sandbox,
            )
        )
    return summaries
