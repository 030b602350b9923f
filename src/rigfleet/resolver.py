"""Dispatch target classification and resolution.

A raw target string is classified by an ordered list of matchers, each
returning a typed variant or ``None``:

1. ``""`` / ``"."``                     -> :class:`SelfTarget`
2. ``deacon/dogs[/<name>]``              -> :class:`PoolTarget`
3. a registered rig name                 -> :class:`RigTarget` (spawns)
4. ``mayor``, ``<rig>/witness``, ...     -> :class:`RoleTarget`
5. ``<rig>/polecats/<name>``, ``<rig>/<name>`` -> :class:`WorkerTarget`

Classification has no side effects; :meth:`TargetResolver.resolve` turns a
variant into a :class:`DispatchResolution`, spawning a worker for rig
targets. Pooled helpers are started later, after the hook is visible.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Union

from . import log, paths
from .config import Town
from .context import FleetContext
from .identity import (
    RIG_ROLES,
    TOWN_ROLE_ALIASES,
    AgentAddress,
    detect_self_identity,
    parse_agent_id,
    session_env,
    worker_address,
)
from .services.errors import PreconditionFailedError, ValidationFailedError
from .worker.models import SpawnedWorker
from .worker.spawner import SpawnOptions, WorkerSpawner, startup_prompt

POOL_SENTINEL = "deacon/dogs"
HELPER_READY_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class SelfTarget:
    pass


@dataclass(frozen=True)
class PoolTarget:
    name: str | None = None


@dataclass(frozen=True)
class RigTarget:
    rig: str


@dataclass(frozen=True)
class RoleTarget:
    address: AgentAddress


@dataclass(frozen=True)
class WorkerTarget:
    rig: str
    name: str


Target = Union[SelfTarget, PoolTarget, RigTarget, RoleTarget, WorkerTarget]
Matcher = Callable[[str, Town], Union[Target, None]]


def _require_rig(town: Town, rig: str, raw: str) -> None:
    if not town.is_rig(rig):
        raise ValidationFailedError(
            f"rig not found: {rig} (target {raw!r})",
            recovery_hint=f"known rigs: {', '.join(sorted(town.config.rigs)) or '(none)'}",
        )


def match_self(raw: str, town: Town) -> Target | None:
    if raw in ("", "."):
        return SelfTarget()
    return None


def match_pool(raw: str, town: Town) -> Target | None:
    if raw == POOL_SENTINEL:
        return PoolTarget()
    prefix = f"{POOL_SENTINEL}/"
    if raw.startswith(prefix):
        name = raw[len(prefix):]
        if not name or "/" in name:
            raise ValidationFailedError(f"invalid helper target: {raw!r}")
        return PoolTarget(name=name)
    return None


def match_rig(raw: str, town: Town) -> Target | None:
    if "/" in raw or raw in TOWN_ROLE_ALIASES:
        return None
    if town.is_rig(raw):
        return RigTarget(rig=raw)
    return None


def match_role(raw: str, town: Town) -> Target | None:
    if raw in TOWN_ROLE_ALIASES:
        return RoleTarget(address=AgentAddress(TOWN_ROLE_ALIASES[raw]))
    parts = raw.split("/")
    is_rig_role = len(parts) == 2 and parts[1] in RIG_ROLES
    is_crew = len(parts) == 3 and parts[1] == "crew"
    if not (is_rig_role or is_crew):
        return None
    _require_rig(town, parts[0], raw)
    address = parse_agent_id(raw)
    if address is None:
        return None
    return RoleTarget(address=address)


def match_worker(raw: str, town: Town) -> Target | None:
    parts = raw.split("/")
    if len(parts) == 3 and parts[1] == "polecats" and parts[0] and parts[2]:
        rig, name = parts[0], parts[2]
    elif len(parts) == 2 and parts[0] and parts[1]:
        rig, name = parts
    else:
        return None
    _require_rig(town, rig, raw)
    return WorkerTarget(rig=rig, name=name)


MATCHERS: tuple[tuple[str, Matcher], ...] = (
    ("self", match_self),
    ("pool", match_pool),
    ("rig", match_rig),
    ("role", match_role),
    ("worker", match_worker),
)


def classify_target(raw: str | None, town: Town) -> Target:
    """Classify ``raw`` using the first matcher that accepts it."""
    text = (raw or "").strip().rstrip("/")
    for name, matcher in MATCHERS:
        target = matcher(text, town)
        if target is not None:
            log.trace(f"target {text!r} matched {name}")
            return target
    raise ValidationFailedError(
        f"unknown target: {raw!r}",
        recovery_hint="use a rig name, <rig>/<worker>, <rig>/witness, mayor or deacon/dogs",
    )


def target_rig(target: Target) -> str | None:
    """Rig a target belongs to, when it has one."""
    if isinstance(target, (RigTarget, WorkerTarget)):
        return target.rig
    if isinstance(target, RoleTarget):
        return target.address.rig
    return None


def agent_work_dir(town_root: Path, address: AgentAddress) -> Path:
    """Working directory an agent's session starts in.

    Example:
        >>> agent_work_dir(Path("/t"), AgentAddress("witness", rig="web")).as_posix()
        '/t/web/witness'
    """
    if address.role in ("mayor", "deacon"):
        return town_root / address.role
    if address.role == "dog":
        return paths.dogs_dir(town_root) / str(address.name)
    if address.role == "polecat":
        return paths.worker_dir(town_root, str(address.rig), str(address.name))
    if address.role == "crew":
        return paths.rig_dir(town_root, str(address.rig)) / "crew" / str(address.name)
    return paths.rig_dir(town_root, str(address.rig)) / address.role


@dataclass(frozen=True)
class DelayedStart:
    """A helper session to start once the hook is visible."""

    address: AgentAddress
    work_dir: Path


@dataclass(frozen=True)
class DispatchResolution:
    agent_id: str
    delivery_channel: str | None
    work_dir: Path | None
    target: Target
    hook_set_atomically: bool = False
    delayed_start: DelayedStart | None = None
    is_self: bool = False
    spawned: SpawnedWorker | None = None
    planned_name: str | None = None

    @property
    def rig(self) -> str | None:
        if self.spawned is not None:
            return self.spawned.rig
        return target_rig(self.target)


@dataclass(frozen=True)
class ResolveOptions:
    force: bool = False
    create: bool = False
    account: str | None = None
    agent: str | None = None
    hook_bead: str | None = None
    name: str | None = None
    dry_run: bool = False


class TargetResolver:
    """Turn classified targets into dispatch resolutions."""

    def __init__(self, ctx: FleetContext, spawner: WorkerSpawner | None = None) -> None:
        self._ctx = ctx
        self._spawner = spawner or WorkerSpawner(ctx)

    @property
    def spawner(self) -> WorkerSpawner:
        return self._spawner

    def resolve(self, target: Target, options: ResolveOptions) -> DispatchResolution:
        if isinstance(target, SelfTarget):
            return self._resolve_self(target)
        if isinstance(target, PoolTarget):
            return self._resolve_pool(target, options)
        if isinstance(target, RigTarget):
            return self._resolve_rig(target, options)
        if isinstance(target, RoleTarget):
            return self._resolve_role(target)
        return self._resolve_worker(target, options)

    def _resolve_self(self, target: SelfTarget) -> DispatchResolution:
        ctx = self._ctx
        address = detect_self_identity(env=ctx.env, cwd=ctx.cwd, town_root=ctx.root)
        return DispatchResolution(
            agent_id=address.agent_id,
            delivery_channel=None,
            work_dir=ctx.cwd,
            target=target,
            is_self=True,
        )

    def _helper_busy(self, address: AgentAddress) -> bool:
        if self._ctx.sessions.has_session(address.session_name):
            return True
        bead = self._ctx.store.find_agent(address.agent_id)
        return bool(bead is not None and bead.field("hook_bead"))

    def _resolve_pool(self, target: PoolTarget, options: ResolveOptions) -> DispatchResolution:
        root = paths.dogs_dir(self._ctx.root)
        if target.name is not None:
            if not (root / target.name).is_dir():
                raise ValidationFailedError(f"helper not found: {POOL_SENTINEL}/{target.name}")
            address = AgentAddress("dog", name=target.name)
            if self._helper_busy(address) and not options.force:
                raise PreconditionFailedError(
                    f"helper {address.agent_id} is busy",
                    recovery_hint=f"dispatch to {POOL_SENTINEL} for any idle helper, or pass --force",
                )
        else:
            names = sorted(entry.name for entry in root.iterdir() if entry.is_dir()) if root.is_dir() else []
            idle = [name for name in names if not self._helper_busy(AgentAddress("dog", name=name))]
            if not idle:
                raise PreconditionFailedError(
                    f"no idle helper in {POOL_SENTINEL} ({len(names)} total)",
                    recovery_hint="wait for a helper to finish or dispatch to a rig",
                )
            address = AgentAddress("dog", name=idle[0])
        work_dir = agent_work_dir(self._ctx.root, address)
        return DispatchResolution(
            agent_id=address.agent_id,
            delivery_channel=address.session_name,
            work_dir=work_dir,
            target=target,
            delayed_start=DelayedStart(address=address, work_dir=work_dir),
        )

    def _spawn_options(self, options: ResolveOptions, name: str | None) -> SpawnOptions:
        return SpawnOptions(
            name=name,
            hook_bead=options.hook_bead,
            agent=options.agent,
            account=options.account,
            force=options.force,
        )

    def _resolve_rig(self, target: RigTarget, options: ResolveOptions) -> DispatchResolution:
        if options.dry_run:
            name = options.name or self._spawner.allocate(target.rig)
            address = worker_address(target.rig, name)
            return DispatchResolution(
                agent_id=address.agent_id,
                delivery_channel=address.session_name,
                work_dir=self._ctx.workers.sandbox_path(target.rig, name),
                target=target,
                planned_name=name,
            )
        spawned = self._spawner.spawn(target.rig, self._spawn_options(options, options.name))
        return self._spawned_resolution(target, spawned)

    def _spawned_resolution(self, target: Target, spawned: SpawnedWorker) -> DispatchResolution:
        log.info(f"allocated worker {spawned.agent_id}")
        return DispatchResolution(
            agent_id=spawned.agent_id,
            delivery_channel=spawned.session_name,
            work_dir=spawned.clone_path,
            target=target,
            hook_set_atomically=spawned.hook_set_atomically,
            spawned=spawned,
        )

    def _resolve_role(self, target: RoleTarget) -> DispatchResolution:
        address = target.address
        channel: str | None = address.session_name
        if not self._ctx.sessions.has_session(address.session_name):
            log.warning(f"{address.agent_id} has no running session; it will find the work on its hook")
            channel = None
        return DispatchResolution(
            agent_id=address.agent_id,
            delivery_channel=channel,
            work_dir=agent_work_dir(self._ctx.root, address),
            target=target,
        )

    def _resolve_worker(self, target: WorkerTarget, options: ResolveOptions) -> DispatchResolution:
        ctx = self._ctx
        address = worker_address(target.rig, target.name)
        sandbox = ctx.workers.sandbox_path(target.rig, target.name)
        if not ctx.workers.exists(target.rig, target.name) and not sandbox.exists():
            if not options.create:
                raise ValidationFailedError(
                    f"worker not found: {address.agent_id}",
                    recovery_hint="pass --create to spawn it",
                )
            if options.dry_run:
                return DispatchResolution(
                    agent_id=address.agent_id,
                    delivery_channel=address.session_name,
                    work_dir=sandbox,
                    target=target,
                    planned_name=target.name,
                )
            spawned = self._spawner.spawn(target.rig, self._spawn_options(options, target.name))
            return self._spawned_resolution(target, spawned)
        channel: str | None = address.session_name
        if not ctx.sessions.has_session(address.session_name):
            log.warning(f"{address.agent_id} has no running session; it will find the work on its hook")
            channel = None
        return DispatchResolution(
            agent_id=address.agent_id,
            delivery_channel=channel,
            work_dir=sandbox,
            target=target,
        )


def start_helper(ctx: FleetContext, delayed: DelayedStart, *, issue: str | None) -> bool:
    """Start a pooled helper's session after its hook is set.

    Returns ``False`` when the helper was already running.
    """
    address = delayed.address
    sessions = ctx.sessions
    if sessions.has_session(address.session_name):
        return False
    command = ctx.town.config.agent_command(None)
    command.append(startup_prompt(address.agent_id, issue))
    env = session_env(address, beads_dir=ctx.town.beads_dir())
    sessions.new_session(address.session_name, work_dir=delayed.work_dir, command=command, env=env)
    if not sessions.wait_for_ready(address.session_name, timeout_seconds=HELPER_READY_TIMEOUT_SECONDS):
        log.warning(f"helper {address.agent_id} not ready after {HELPER_READY_TIMEOUT_SECONDS:.0f}s")
    return True
