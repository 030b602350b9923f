"""Worker completion protocol (``rigfleet done``).

Completion implies termination: once the caller is confirmed to be a
worker, its session is killed on every exit path, including failures.

A ``done-intent`` label is written on the agent bead before any risky step
and cleared only after the agent bead is updated. A worker whose session is
gone while the label lingers is a zombie for its rig supervisor to clean up.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from .. import log, mail
from ..beads import DONE_INTENT_PREFIX, done_intent_label
from ..boundary import MERGE_REQUEST_TYPE, WorkItem
from ..context import FleetContext
from ..identity import DB_BRANCH_ENV, AgentAddress, refinery_address, witness_address
from ..ports import SandboxStatus
from ..services.base import BaseService
from ..services.errors import PreconditionFailedError, ServiceFailure, ValidationFailedError
from .guard import SessionBackstop
from .models import EXIT_TYPES, ExitType
from .names import issue_from_branch, worker_branch

NO_CHANGES_REASON = "Completed with no code changes (already fixed or pushed directly to main)"
CLOSE_ATTEMPTS = 3
PROTECTED_BRANCHES = frozenset({"master"})
REVIEW_SUBJECT_PREFIX = "READY_FOR_REVIEW"


@dataclass(frozen=True)
class DoneRequest:
    exit_type: str = "COMPLETED"
    issue: str | None = None
    gate: str | None = None
    priority: int | None = None


@dataclass(frozen=True)
class DoneOutcome:
    exit_type: ExitType
    issue: str | None
    branch: str
    cleanup_status: str
    mr_id: str | None = None
    closed_without_changes: bool = False
    sandbox_removed: bool = False
    session_terminated: bool = False
    warnings: tuple[str, ...] = ()


def parse_exit_type(value: str) -> ExitType:
    """Normalize an exit type name.

    Example:
        >>> parse_exit_type("phase-complete")
        'PHASE_COMPLETE'
    """
    normalized = value.strip().upper().replace("-", "_")
    for exit_type in EXIT_TYPES:
        if exit_type == normalized:
            return exit_type
    raise ValidationFailedError(
        f"unknown exit type: {value}",
        recovery_hint=f"expected one of: {', '.join(EXIT_TYPES)}",
    )


def cleanup_status_for(status: SandboxStatus | None) -> str:
    """Summarize sandbox state for the agent bead's ``cleanup_status``.

    Example:
        >>> cleanup_status_for(SandboxStatus(stash_count=1))
        'stash'
        >>> cleanup_status_for(None)
        'unknown'
    """
    if status is None:
        return "unknown"
    if status.uncommitted:
        return "uncommitted"
    if status.stash_count:
        return "stash"
    if status.unpushed_commits:
        return "unpushed"
    return "clean"


def merge_request_description(
    *,
    branch: str,
    target: str,
    issue: str,
    rig: str,
    worker: str,
    agent_bead: str | None,
) -> str:
    lines = [
        f"branch: {branch}",
        f"target: {target}",
        f"source_issue: {issue}",
        f"rig: {rig}",
        f"worker: {worker}",
    ]
    if agent_bead:
        lines.append(f"agent_bead: {agent_bead}")
    lines.extend(["retry_count: 0", "last_conflict_sha: null"])
    return "\n".join(lines) + "\n"


class DoneService(BaseService[DoneRequest, DoneOutcome]):
    """Run the completion protocol for the calling worker."""

    def __init__(
        self,
        ctx: FleetContext,
        *,
        identity: AgentAddress,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._ctx = ctx
        self._identity = identity
        self._sleep = sleep
        self._warnings: list[str] = []

    def _warn(self, message: str) -> None:
        log.warning(message)
        self._warnings.append(message)

    def _run(self, request: DoneRequest) -> DoneOutcome:
        exit_type = parse_exit_type(request.exit_type)
        if exit_type == "PHASE_COMPLETE" and not request.gate:
            raise ValidationFailedError(
                "PHASE_COMPLETE requires a gate",
                recovery_hint="pass --gate <gate-id>",
            )
        identity = self._identity
        if not identity.is_worker or not identity.rig or not identity.name:
            raise PreconditionFailedError(
                f"only workers can run done (caller is {identity.agent_id})",
            )
        self._ctx.town.rig(identity.rig)
        with SessionBackstop(self._ctx.sessions, identity.session_name) as backstop:
            backstop.arm()
            outcome = self._complete(exit_type, request, identity.rig, identity.name)
            terminated = backstop.terminate()
        return DoneOutcome(
            exit_type=outcome.exit_type,
            issue=outcome.issue,
            branch=outcome.branch,
            cleanup_status=outcome.cleanup_status,
            mr_id=outcome.mr_id,
            closed_without_changes=outcome.closed_without_changes,
            sandbox_removed=outcome.sandbox_removed,
            session_terminated=terminated,
            warnings=tuple(self._warnings),
        )

    def _complete(
        self, exit_type: ExitType, request: DoneRequest, rig: str, name: str
    ) -> DoneOutcome:
        ctx = self._ctx
        store = ctx.store
        agent_id = self._identity.agent_id
        default_branch = ctx.town.rig(rig).default_branch
        sandbox = ctx.workers.sandbox_path(rig, name)
        record = ctx.workers.load(rig, name)
        available = sandbox.exists() and ctx.sandboxes.is_worktree(sandbox)

        branch = ctx.sandboxes.current_branch(sandbox) if available else None
        branch = branch or (record.branch if record else None) or worker_branch(name)
        status = ctx.sandboxes.status(sandbox, base_branch=default_branch) if available else None
        cleanup_status = cleanup_status_for(status)

        agent_bead = store.find_agent(agent_id)
        bead_id = agent_bead.id if agent_bead else None
        issue = request.issue or issue_from_branch(branch)
        if not issue and agent_bead is not None:
            issue = agent_bead.field("hook_bead")

        if bead_id:
            try:
                store.add_label(bead_id, done_intent_label(exit_type, int(ctx.clock())))
            except ServiceFailure as exc:
                self._warn(f"could not set done-intent on {bead_id}: {exc}")

        mr_id: str | None = None
        push_failed = False
        closed_without_changes = False
        errors: list[str] = []
        if exit_type == "COMPLETED":
            if branch == default_branch or branch in PROTECTED_BRANCHES:
                raise PreconditionFailedError(
                    f"cannot submit {branch} to the merge queue",
                    recovery_hint="work on your polecat/<name> branch",
                )
            if status is None:
                raise PreconditionFailedError(
                    f"cannot complete: sandbox not available at {sandbox}",
                    recovery_hint="use --exit DEFERRED to exit without completing",
                )
            if status.uncommitted:
                raise PreconditionFailedError(
                    "cannot complete: uncommitted changes would be lost "
                    f"({status.describe()})",
                    recovery_hint="commit your changes first, or use --exit DEFERRED",
                )
            ahead = ctx.sandboxes.commits_ahead(sandbox, base_branch=default_branch)
            if ahead is None:
                self._warn(f"could not count commits ahead of {default_branch}; assuming work exists")
                ahead = 1
            if ahead == 0:
                log.info(f"branch has no commits ahead of {default_branch}; skipping merge request")
                if issue:
                    closed_without_changes = self._close_unchanged(issue)
            else:
                try:
                    ctx.sandboxes.push(sandbox, branch)
                except ServiceFailure as exc:
                    push_failed = True
                    message = f"push failed for branch {branch}: {exc}"
                    errors.append(message)
                    self._warn(message)
                else:
                    if cleanup_status == "unpushed":
                        cleanup_status = "clean"
                    mr_id = self._submit(issue, branch, rig, name, bead_id, request, default_branch)
        elif exit_type == "PHASE_COMPLETE" and request.gate:
            try:
                store.add_gate_waiter(request.gate, agent_id)
            except ServiceFailure as exc:
                self._warn(f"could not register as waiter on gate {request.gate}: {exc}")
        else:
            log.info(f"signaling {exit_type} for {issue or branch}")

        merge_failed = self._merge_db_branch(rig, record.db_branch if record else None)
        if mr_id and not merge_failed:
            self._nudge(refinery_address(rig).session_name, f"MR submitted: {mr_id} branch={branch}")
        self._notify_witness(rig, name, exit_type, issue, mr_id, request.gate, branch, errors)
        if bead_id:
            self._update_agent(bead_id, exit_type, cleanup_status)

        sandbox_removed = False
        if exit_type == "COMPLETED" and not push_failed and available:
            try:
                ctx.sandboxes.remove(rig, sandbox, force=False)
                ctx.workers.update(rig, name, state="done")
                sandbox_removed = True
            except ServiceFailure as exc:
                self._warn(f"sandbox removal failed: {exc} (rig supervisor will clean up)")

        return DoneOutcome(
            exit_type=exit_type,
            issue=issue,
            branch=branch,
            cleanup_status=cleanup_status,
            mr_id=mr_id,
            closed_without_changes=closed_without_changes,
            sandbox_removed=sandbox_removed,
        )

    def _close_unchanged(self, issue: str) -> bool:
        for attempt in range(1, CLOSE_ATTEMPTS + 1):
            try:
                self._ctx.store.close(issue, reason=NO_CHANGES_REASON, force=True)
                log.success(f"closed {issue} (no merge request needed)")
                return True
            except ServiceFailure as exc:
                if attempt == CLOSE_ATTEMPTS:
                    self._warn(f"could not close {issue} after {CLOSE_ATTEMPTS} attempts: {exc}")
                    return False
                log.warning(f"close attempt {attempt}/{CLOSE_ATTEMPTS} failed: {exc}")
                self._sleep(attempt * 2)
        return False

    def _submit(
        self,
        issue: str | None,
        branch: str,
        rig: str,
        name: str,
        bead_id: str | None,
        request: DoneRequest,
        target: str,
    ) -> str | None:
        store = self._ctx.store
        if not issue:
            raise ValidationFailedError(
                f"cannot determine source issue from branch {branch}",
                recovery_hint="use --issue to specify it",
            )
        source = store.show(issue)
        if source is not None and (source.field("no_merge") or "").lower() == "true":
            self._request_review(source, branch)
            return None
        existing = store.find_merge_request(branch)
        if existing is not None:
            log.info(f"merge request {existing.id} already exists for {branch}")
            return existing.id
        priority = request.priority
        if priority is None:
            priority = source.priority if source is not None else None
        try:
            mr_id = store.create(
                f"Merge: {issue}",
                issue_type=MERGE_REQUEST_TYPE,
                priority=priority,
                description=merge_request_description(
                    branch=branch,
                    target=target,
                    issue=issue,
                    rig=rig,
                    worker=name,
                    agent_bead=bead_id,
                ),
            )
        except ServiceFailure as exc:
            self._warn(f"merge request creation failed: {exc}")
            return None
        log.success(f"submitted {mr_id} to the merge queue")
        if bead_id:
            try:
                store.set_agent_fields(bead_id, {"active_mr": mr_id})
            except ServiceFailure as exc:
                self._warn(f"could not record active_mr on {bead_id}: {exc}")
        return mr_id

    def _request_review(self, source: WorkItem, branch: str) -> None:
        log.info(f"no-merge mode: {branch} stays on its branch for review")
        dispatcher = source.field("dispatched_by")
        if not dispatcher:
            return
        try:
            mail.send_message(
                self._ctx.store,
                to=dispatcher,
                subject=f"{REVIEW_SUBJECT_PREFIX}: {source.id}",
                body=f"Branch: {branch}\nIssue: {source.id}\nReady for review.",
                sender=self._identity.agent_id,
            )
        except ServiceFailure as exc:
            self._warn(f"could not notify dispatcher {dispatcher}: {exc}")

    def _merge_db_branch(self, rig: str, recorded: str | None) -> bool:
        """Merge the worker's database branch; returns ``True`` on failure."""
        branch = self._ctx.env.get(DB_BRANCH_ENV) or recorded
        if not branch:
            return False
        try:
            self._ctx.db.merge_branch(self._ctx.town.rig_db_name(rig), branch)
        except ServiceFailure as exc:
            self._warn(f"could not merge database branch {branch}: {exc}")
            return True
        log.debug(f"merged database branch {branch}")
        return False

    def _nudge(self, session_name: str, text: str) -> None:
        sessions = self._ctx.sessions
        try:
            if sessions.has_session(session_name):
                sessions.send_keys(session_name, text)
        except ServiceFailure as exc:
            self._warn(f"could not nudge {session_name}: {exc}")

    def _notify_witness(
        self,
        rig: str,
        name: str,
        exit_type: ExitType,
        issue: str | None,
        mr_id: str | None,
        gate: str | None,
        branch: str,
        errors: list[str],
    ) -> None:
        body = [f"Exit: {exit_type}"]
        if issue:
            body.append(f"Issue: {issue}")
        if mr_id:
            body.append(f"MR: {mr_id}")
        if gate:
            body.append(f"Gate: {gate}")
        body.append(f"Branch: {branch}")
        if errors:
            body.append(f"Errors: {'; '.join(errors)}")
        try:
            mail.send_message(
                self._ctx.store,
                to=witness_address(rig).agent_id,
                subject=mail.done_subject(name),
                body="\n".join(body),
                sender=self._identity.agent_id,
            )
        except ServiceFailure as exc:
            self._warn(f"could not notify witness: {exc}")

    def _update_agent(self, bead_id: str, exit_type: ExitType, cleanup_status: str) -> None:
        store = self._ctx.store
        try:
            store.clear_agent_hook(bead_id)
        except ServiceFailure as exc:
            self._warn(f"could not clear hook on {bead_id}: {exc}")
        fields: dict[str, str | None] = {}
        if exit_type == "ESCALATED":
            fields["agent_state"] = "stuck"
        elif exit_type == "PHASE_COMPLETE":
            fields["agent_state"] = "awaiting-gate"
        if cleanup_status != "unknown":
            fields["cleanup_status"] = cleanup_status
        if fields:
            try:
                store.set_agent_fields(bead_id, fields)
            except ServiceFailure as exc:
                self._warn(f"could not update agent bead {bead_id}: {exc}")
                return
        self._clear_done_intent(bead_id)

    def _clear_done_intent(self, bead_id: str) -> None:
        store = self._ctx.store
        bead = store.show(bead_id)
        if bead is None:
            return
        for label in bead.labels:
            if label.startswith(DONE_INTENT_PREFIX):
                try:
                    store.remove_label(bead_id, label)
                except ServiceFailure as exc:
                    self._warn(f"could not clear {label}: {exc}")
