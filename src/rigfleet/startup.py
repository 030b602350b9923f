"""Bring up each rig's supervisor and merge-processor sessions."""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass

from . import log
from .context import FleetContext
from .identity import AgentAddress, refinery_address, session_env, witness_address
from .resolver import agent_work_dir
from .services.errors import ServiceFailure

MAX_CONCURRENT_STARTS = 10
READY_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class StartResult:
    agent_id: str
    started: bool
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def role_prompt(address: AgentAddress) -> str:
    """Initial instruction for a rig service agent.

    Example:
        >>> role_prompt(witness_address("web"))
        'You are web/witness. Check your mail and hook, then start your patrol.'
    """
    return f"You are {address.agent_id}. Check your mail and hook, then start your patrol."


def start_agent_session(
    ctx: FleetContext,
    address: AgentAddress,
    *,
    ready_timeout: float = READY_TIMEOUT_SECONDS,
) -> bool:
    """Start ``address``'s session if it is not running; returns ``True`` if started."""
    sessions = ctx.sessions
    if sessions.has_session(address.session_name):
        log.debug(f"{address.session_name} already running")
        return False
    agent = ctx.town.rig(address.rig).agent if address.rig else None
    command = ctx.town.config.agent_command(agent)
    command.append(role_prompt(address))
    work_dir = agent_work_dir(ctx.root, address)
    work_dir.mkdir(parents=True, exist_ok=True)
    env = session_env(address, beads_dir=ctx.town.beads_dir())
    sessions.new_session(address.session_name, work_dir=work_dir, command=command, env=env)
    if not sessions.wait_for_ready(address.session_name, timeout_seconds=ready_timeout):
        log.warning(f"{address.agent_id} not ready after {ready_timeout:.0f}s; continuing")
    log.info(f"started {address.session_name}")
    return True


def rig_service_addresses(rigs: list[str]) -> list[AgentAddress]:
    addresses: list[AgentAddress] = []
    for rig in rigs:
        addresses.append(witness_address(rig))
        addresses.append(refinery_address(rig))
    return addresses


def start_services(
    ctx: FleetContext,
    rigs: list[str] | None = None,
    *,
    max_workers: int = MAX_CONCURRENT_STARTS,
) -> list[StartResult]:
    """Start every rig's witness and refinery through a bounded pool.

    The pool never exceeds :data:`MAX_CONCURRENT_STARTS` so a cold start does
    not open a burst of connections against the database server. One
    failed start does not stop the others.
    """
    selected = list(rigs) if rigs else sorted(ctx.town.config.rigs)
    for rig in selected:
        ctx.town.rig(rig)
    addresses = rig_service_addresses(selected)
    if not addresses:
        return []
    pool_size = max(1, min(max_workers, MAX_CONCURRENT_STARTS, len(addresses)))

    def start(address: AgentAddress) -> StartResult:
        try:
            started = start_agent_session(ctx, address)
        except ServiceFailure as exc:
            log.warning(f"failed to start {address.agent_id}: {exc}")
            return StartResult(agent_id=address.agent_id, started=False, error=str(exc))
        return StartResult(agent_id=address.agent_id, started=started)

    with concurrent.futures.ThreadPoolExecutor(max_workers=pool_size) as executor:
        return list(executor.map(start, addresses))
