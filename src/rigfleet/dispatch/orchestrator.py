"""Dispatch orchestration ("sling").

One dispatch runs these steps, each logged and recorded on the outcome:

1. refuse inside a worker session
2. classify the subject (work item, else formula)
3. classify and resolve the target (may spawn a worker)
4. cross-rig guard
5. reject assigned or closed items unless forced
6. forced re-dispatch: shut the previous worker down and unhook
7. auto-convoy
8. formula instantiation
9. hook the item to the resolved agent
10. mirror the hook onto the agent bead
11. record provenance fields in one read-modify-write
12. start a delayed pooled helper
13. fresh spawn: create the write-branch, then start the session
14. nudge the agent

The hook is always written before the write-branch is forked, the branch
before the session starts, and the session before any nudge. Any failure
after a spawn runs the rollback compensation list before surfacing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import NoReturn

from .. import log, mail
from ..boundary import ASSIGNED_STATUSES, WorkItem
from ..config import utc_now
from ..context import FleetContext
from ..identity import (
    WORKER_ENV,
    detect_self_identity,
    parse_agent_id,
    refinery_address,
    witness_address,
)
from ..resolver import (
    DispatchResolution,
    PoolTarget,
    ResolveOptions,
    RigTarget,
    SelfTarget,
    Target,
    TargetResolver,
    WorkerTarget,
    classify_target,
    start_helper,
    target_rig,
)
from ..services.base import BaseService
from ..services.errors import (
    AlreadyAssignedError,
    DispatchRolledBackError,
    PreconditionFailedError,
    ServiceFailure,
    UnexpectedStateError,
    ValidationFailedError,
)
from ..startup import start_agent_session
from ..worker.models import SpawnedWorker
from ..worker.nuke import WorkerRef, WorkerTeardown
from ..worker.rollback import Compensation
from ..worker.spawner import SpawnOptions
from .convoy import ensure_convoy
from .formula import FormulaPlan, check_formula, choose_formula, instantiate

HUMAN_DISPATCHER = "overseer"


@dataclass(frozen=True)
class DispatchOptions:
    """Per-invocation dispatch flags, threaded explicitly through every step."""

    force: bool = False
    create: bool = False
    account: str | None = None
    agent: str | None = None
    formula: str | None = None
    hook_raw: bool = False
    args: str | None = None
    no_convoy: bool = False
    no_merge: bool = False
    no_boot: bool = False
    dry_run: bool = False
    worker_name: str | None = None


@dataclass(frozen=True)
class DispatchRequest:
    subject: str
    target: str | None = None
    options: DispatchOptions = field(default_factory=DispatchOptions)


@dataclass(frozen=True)
class DispatchOutcome:
    item_id: str | None
    hooked_id: str | None
    agent_id: str
    steps: tuple[str, ...]
    warnings: tuple[str, ...] = ()
    convoy_id: str | None = None
    molecule_id: str | None = None
    worker: str | None = None
    spawned: bool = False
    nudged: bool = False
    dry_run: bool = False


def nudge_text(item_id: str) -> str:
    """Text typed into an agent session to start assigned work.

    Example:
        >>> nudge_text("wb-1")
        'Work slung: wb-1. Run `bd show wb-1` and start now.'
    """
    return f"Work slung: {item_id}. Run `bd show {item_id}` and start now."


def describe_target(target: Target) -> str:
    """Human-readable target kind.

    Example:
        >>> describe_target(RigTarget(rig="web"))
        'rig web (spawn a new worker)'
    """
    if isinstance(target, SelfTarget):
        return "self"
    if isinstance(target, PoolTarget):
        return f"helper {target.name}" if target.name else "idle helper"
    if isinstance(target, RigTarget):
        return f"rig {target.rig} (spawn a new worker)"
    if isinstance(target, WorkerTarget):
        return f"worker {target.rig}/{target.name}"
    return target.address.agent_id


def _unhook_if_ours(ctx: FleetContext, item_id: str, agent_id: str) -> None:
    item = ctx.store.show(item_id)
    if item is None or item.is_closed:
        return
    if item.assignee == agent_id:
        ctx.store.unhook(item_id)


def _delete_write_branch(ctx: FleetContext, spawned: SpawnedWorker) -> None:
    branch = spawned.db_branch
    if branch is None:
        record = ctx.workers.load(spawned.rig, spawned.name)
        branch = record.db_branch if record else None
    if branch:
        ctx.db.delete_branch(ctx.town.rig_db_name(spawned.rig), branch)


def rollback_steps(
    ctx: FleetContext,
    spawned: SpawnedWorker,
    hooked_id: str | None,
) -> Compensation:
    """Compensation list for a dispatch that failed after spawning.

    Order: unhook the item, delete the write-branch, then destroy the worker
    (session, sandbox, branches, identity). Every step tolerates state that
    is already gone, so running the list twice is harmless.
    """
    undo = Compensation()
    if hooked_id:
        undo.add(f"unhook {hooked_id}", lambda: _unhook_if_ours(ctx, hooked_id, spawned.agent_id))
    undo.add("delete write-branch", lambda: _delete_write_branch(ctx, spawned))
    teardown = WorkerTeardown(ctx, WorkerRef(rig=spawned.rig, name=spawned.name))

    def delete_branches() -> None:
        warnings = teardown.delete_branches()
        if warnings:
            raise UnexpectedStateError("; ".join(warnings))

    undo.add("kill session", teardown.kill_session)
    undo.add("remove sandbox", teardown.remove_sandbox)
    undo.add("delete branches", delete_branches)
    undo.add("close identity", teardown.close_identity)
    return undo


class DispatchService(BaseService[DispatchRequest, DispatchOutcome]):
    """Assign one work item (or formula) to one target."""

    def __init__(self, ctx: FleetContext, *, resolver: TargetResolver | None = None) -> None:
        self._ctx = ctx
        self._resolver = resolver or TargetResolver(ctx)
        self._reset()

    def _reset(self) -> None:
        self._steps: list[str] = []
        self._warnings: list[str] = []
        self._spawned: SpawnedWorker | None = None
        self._hooked_id: str | None = None
        self._dispatcher: str | None = None

    def _step(self, text: str) -> None:
        log.debug(f"dispatch: {text}")
        self._steps.append(text)

    def _warn(self, text: str) -> None:
        log.warning(text)
        self._warnings.append(text)

    def __call__(self, request: DispatchRequest) -> DispatchOutcome:
        try:
            return super().__call__(request)
        except ServiceFailure:
            raise
        except Exception as exc:
            if self._spawned is None:
                raise
            self._roll_back(self._spawned, exc)

    def _handle_failure(self, error: ServiceFailure) -> DispatchOutcome:
        if self._spawned is None:
            raise error
        self._roll_back(self._spawned, error)

    def _roll_back(self, spawned: SpawnedWorker, error: Exception) -> NoReturn:
        log.error(f"dispatch to {spawned.agent_id} failed: {error}; rolling back")
        warnings = rollback_steps(self._ctx, spawned, self._hooked_id).run()
        raise DispatchRolledBackError(error, rollback_warnings=warnings) from error

    # -- classification and guards ----------------------------------------

    def _classify_subject(self, subject: str) -> WorkItem | None:
        """Return the work item, or ``None`` when ``subject`` names a formula."""
        item = self._ctx.store.show(subject)
        if item is not None:
            return item
        if self._ctx.store.formula_exists(subject):
            return None
        raise ValidationFailedError(
            f"not a work item or formula: {subject}",
            recovery_hint="check the id with `bd show`, or list formulas with `bd formula list`",
        )

    def _check_rig(self, item: WorkItem, target: Target, options: DispatchOptions) -> None:
        if options.force or not isinstance(target, (RigTarget, WorkerTarget)):
            return
        rig = target_rig(target)
        item_rig = self._ctx.town.rig_for_item(item.id)
        if item_rig and rig and item_rig != rig:
            raise ValidationFailedError(
                f"cross-rig dispatch: {item.id} belongs to rig {item_rig}, target is in rig {rig}",
                recovery_hint=f"dispatch to {item_rig}, or pass --force",
            )

    def _check_assignable(self, item: WorkItem, options: DispatchOptions) -> None:
        if item.is_closed:
            raise PreconditionFailedError(f"work item {item.id} is closed")
        if item.status in ASSIGNED_STATUSES and not options.force:
            raise AlreadyAssignedError(item.id, item.status, item.assignee)

    def _dispatched_by(self) -> str:
        if self._dispatcher is None:
            ctx = self._ctx
            try:
                address = detect_self_identity(env=ctx.env, cwd=ctx.cwd, town_root=ctx.root)
            except ValidationFailedError:
                self._dispatcher = HUMAN_DISPATCHER
            else:
                self._dispatcher = address.agent_id
        return self._dispatcher

    def _formula_plan(
        self, item: WorkItem | None, subject: str, target: Target, options: DispatchOptions
    ) -> FormulaPlan:
        plan = choose_formula(
            explicit=subject if item is None else options.formula,
            worker_target=isinstance(target, (RigTarget, WorkerTarget)),
            hook_raw=options.hook_raw,
            formula_only=item is None,
        )
        return check_formula(self._ctx.store, plan)

    # -- run -----------------------------------------------------------------

    def _run(self, request: DispatchRequest) -> DispatchOutcome:
        self._reset()
        ctx = self._ctx
        options = request.options
        if ctx.env.get(WORKER_ENV):
            raise PreconditionFailedError(
                "workers cannot dispatch work",
                recovery_hint="finish with `rigfleet done`, or ask your witness to dispatch it",
            )
        item = self._classify_subject(request.subject)
        target = classify_target(request.target, ctx.town)
        if item is not None:
            self._check_rig(item, target, options)
            self._check_assignable(item, options)
        plan = self._formula_plan(item, request.subject, target, options)
        resolve_options = ResolveOptions(
            force=options.force,
            create=options.create,
            account=options.account,
            agent=options.agent,
            hook_bead=item.id if item else None,
            name=options.worker_name,
            dry_run=options.dry_run,
        )
        if options.dry_run:
            return self._plan(item, target, plan, resolve_options, options)

        resolution = self._resolver.resolve(target, resolve_options)
        self._spawned = resolution.spawned
        self._step(f"resolve {describe_target(target)} -> {resolution.agent_id}")

        if item is not None and options.force and item.status in ASSIGNED_STATUSES:
            self._release_previous(item)

        convoy_id = None
        if item is not None and not options.no_convoy:
            convoy_id = self._auto_convoy(item)

        hooked_id = item.id if item is not None else None
        molecule_id = None
        if plan.name:
            made = instantiate(ctx.store, plan.name, item_id=hooked_id, args=options.args)
            molecule_id = made.molecule_id or made.wisp_id
            if hooked_id is None:
                hooked_id = made.wisp_id
            self._step(f"instantiate formula {plan.name} as {molecule_id}")
        if hooked_id is None:
            raise UnexpectedStateError(f"nothing to hook for {request.subject}")

        self._hooked_id = hooked_id
        ctx.store.hook(hooked_id, resolution.agent_id)
        self._step(f"hook {hooked_id} -> {resolution.agent_id}")
        self._mirror_hook(resolution, hooked_id)
        self._record_provenance(hooked_id, molecule_id, options)

        helper_started = False
        if resolution.delayed_start is not None:
            helper_started = start_helper(ctx, resolution.delayed_start, issue=hooked_id)
            if helper_started:
                self._step(f"start helper session {resolution.delayed_start.address.session_name}")

        spawned = resolution.spawned
        if spawned is not None:
            spawner = self._resolver.spawner
            spawned = spawner.create_branch(spawned)
            self._spawned = spawned
            self._step(f"create write-branch {spawned.db_branch}")
            spawner.start_session(
                spawned,
                SpawnOptions(agent=options.agent, account=options.account, hook_bead=hooked_id),
            )
            self._step(f"start session {spawned.session_name}")
            if not options.no_boot:
                self._wake_rig(spawned.rig)

        nudged = False
        if spawned is None and not helper_started:
            nudged = self._nudge(resolution, hooked_id)

        log.success(f"dispatched {hooked_id} to {resolution.agent_id}")
        return DispatchOutcome(
            item_id=item.id if item else None,
            hooked_id=hooked_id,
            agent_id=resolution.agent_id,
            steps=tuple(self._steps),
            warnings=tuple(self._warnings),
            convoy_id=convoy_id,
            molecule_id=molecule_id,
            worker=spawned.name if spawned else None,
            spawned=spawned is not None,
            nudged=nudged,
        )

    # -- steps ---------------------------------------------------------------

    def _release_previous(self, item: WorkItem) -> None:
        ctx = self._ctx
        previous = item.assignee
        address = parse_agent_id(previous) if previous else None
        if address is not None and address.is_worker and address.rig and address.name:
            if ctx.sessions.has_session(address.session_name):
                try:
                    mail.send_message(
                        ctx.store,
                        to=witness_address(address.rig).agent_id,
                        subject=mail.shutdown_subject(address.name),
                        body=f"Re-dispatched {item.id} with --force.",
                        sender=self._dispatched_by(),
                    )
                    self._step(f"request shutdown of {address.agent_id}")
                except ServiceFailure as exc:
                    self._warn(f"could not request shutdown of {address.agent_id}: {exc}")
        ctx.store.unhook(item.id)
        self._step(f"unhook {item.id} from {previous or '(unknown)'}")
        if previous:
            try:
                bead = ctx.store.find_agent(previous)
                if bead is not None and bead.field("hook_bead") == item.id:
                    ctx.store.clear_agent_hook(bead.id)
            except ServiceFailure as exc:
                self._warn(f"could not clear hook on {previous}: {exc}")

    def _auto_convoy(self, item: WorkItem) -> str | None:
        try:
            convoy_id, created = ensure_convoy(self._ctx.store, item)
        except ServiceFailure as exc:
            self._warn(f"could not create convoy for {item.id}: {exc}")
            return None
        self._step(f"{'create' if created else 'reuse'} convoy {convoy_id}")
        return convoy_id

    def _mirror_hook(self, resolution: DispatchResolution, hooked_id: str) -> None:
        if resolution.hook_set_atomically:
            return
        store = self._ctx.store
        try:
            bead = store.find_agent(resolution.agent_id)
            if bead is None:
                log.debug(f"no agent bead for {resolution.agent_id}; hook lives on the item only")
                return
            store.set_agent_hook(bead.id, hooked_id)
        except ServiceFailure as exc:
            self._warn(f"could not mirror hook onto {resolution.agent_id}: {exc}")
            return
        self._step(f"mirror hook onto {bead.id}")

    def _record_provenance(
        self, hooked_id: str, molecule_id: str | None, options: DispatchOptions
    ) -> None:
        fields: dict[str, str | None] = {
            "dispatched_by": self._dispatched_by(),
            "attached_at": utc_now(),
        }
        if options.args:
            fields["attached_args"] = options.args
        if molecule_id:
            fields["attached_molecule"] = molecule_id
        if options.no_merge:
            fields["no_merge"] = "true"
        try:
            self._ctx.store.update_fields(hooked_id, fields)
        except ServiceFailure as exc:
            self._warn(f"could not record dispatch fields on {hooked_id}: {exc}")
            return
        self._step(f"record provenance on {hooked_id}")

    def _wake_rig(self, rig: str) -> None:
        for address in (witness_address(rig), refinery_address(rig)):
            try:
                if start_agent_session(self._ctx, address):
                    self._step(f"wake {address.agent_id}")
            except ServiceFailure as exc:
                self._warn(f"could not start {address.agent_id}: {exc}")

    def _nudge(self, resolution: DispatchResolution, hooked_id: str) -> bool:
        if resolution.is_self:
            log.debug("self-dispatch; the hook is picked up on the next turn")
            return False
        channel = resolution.delivery_channel
        if channel is None:
            return False
        try:
            self._ctx.sessions.send_keys(channel, nudge_text(hooked_id))
        except ServiceFailure as exc:
            self._warn(f"could not nudge {resolution.agent_id}: {exc}")
            return False
        self._step(f"nudge {channel}")
        return True

    # -- dry run -------------------------------------------------------------

    def _plan(
        self,
        item: WorkItem | None,
        target: Target,
        plan: FormulaPlan,
        resolve_options: ResolveOptions,
        options: DispatchOptions,
    ) -> DispatchOutcome:
        resolution = self._resolver.resolve(target, resolve_options)
        subject = item.id if item is not None else "<formula wisp>"
        steps = [f"resolve {describe_target(target)} -> {resolution.agent_id}"]
        fresh = resolution.planned_name is not None
        if fresh:
            steps.append(f"spawn worker {resolution.agent_id}")
        if item is not None and options.force and item.status in ASSIGNED_STATUSES:
            steps.append(f"unhook {item.id} from {item.assignee or '(unknown)'}")
        if item is not None and not options.no_convoy:
            existing = self._ctx.store.tracking_convoy(item.id)
            steps.append(f"reuse convoy {existing}" if existing else f"create convoy for {item.id}")
        if plan.name:
            steps.append(f"instantiate formula {plan.name}")
        steps.append(f"hook {subject} -> {resolution.agent_id}")
        if not resolution.hook_set_atomically and not fresh:
            steps.append(f"mirror hook onto {resolution.agent_id}")
        steps.append(f"record provenance on {subject}")
        if resolution.delayed_start is not None:
            steps.append(f"start helper session {resolution.delayed_start.address.session_name}")
        if fresh:
            steps.append("create write-branch")
            steps.append(f"start session {resolution.delivery_channel}")
        elif not resolution.is_self and resolution.delivery_channel and resolution.delayed_start is None:
            steps.append(f"nudge {resolution.delivery_channel}")
        for step in steps:
            log.info(f"would {step}")
        return DispatchOutcome(
            item_id=item.id if item else None,
            hooked_id=item.id if item else None,
            agent_id=resolution.agent_id,
            steps=tuple(steps),
            worker=resolution.planned_name,
            dry_run=True,
        )
