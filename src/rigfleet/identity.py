"""Agent addresses, session naming and caller identity detection.

Every agent has an address that renders to an agent id (the work-item
assignee) and a tmux session name:

=========  ==========================  ========================
role       agent id                    session
=========  ==========================  ========================
mayor      ``mayor``                   ``rf-mayor``
deacon     ``deacon``                  ``rf-deacon``
dog        ``deacon/dogs/<name>``      ``rf-dog-<name>``
witness    ``<rig>/witness``           ``rf-<rig>-witness``
refinery   ``<rig>/refinery``          ``rf-<rig>-refinery``
crew       ``<rig>/crew/<name>``       ``rf-<rig>-crew-<name>``
polecat    ``<rig>/polecats/<name>``   ``rf-<rig>-<name>``
=========  ==========================  ========================
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping

from .services.errors import ValidationFailedError

Role = Literal["mayor", "deacon", "dog", "witness", "refinery", "crew", "polecat"]

SESSION_PREFIX = "rf"
ROLE_ENV = "RIGFLEET_ROLE"
ACTOR_ENV = "BD_ACTOR"
RIG_ENV = "RIGFLEET_RIG"
WORKER_ENV = "RIGFLEET_WORKER"
DB_BRANCH_ENV = "RIGFLEET_DB_BRANCH"
ACCOUNT_ENV = "RIGFLEET_ACCOUNT"

TOWN_ROLE_ALIASES: dict[str, Role] = {
    "mayor": "mayor",
    "may": "mayor",
    "deacon": "deacon",
    "dea": "deacon",
}
RIG_ROLES: frozenset[str] = frozenset({"witness", "refinery"})
_WORKERS_SEGMENT = "polecats"
_CREW_SEGMENT = "crew"
_DOGS_PATH = ("deacon", "dogs")


@dataclass(frozen=True)
class AgentAddress:
    """A parsed agent identity."""

    role: Role
    rig: str | None = None
    name: str | None = None

    @property
    def agent_id(self) -> str:
        """Render the canonical agent id.

        Example:
            >>> AgentAddress("polecat", rig="web", name="nux").agent_id
            'web/polecats/nux'
        """
        if self.role in ("mayor", "deacon"):
            return self.role
        if self.role == "dog":
            return f"deacon/dogs/{self.name}"
        if self.role in ("witness", "refinery"):
            return f"{self.rig}/{self.role}"
        if self.role == "crew":
            return f"{self.rig}/crew/{self.name}"
        return f"{self.rig}/polecats/{self.name}"

    @property
    def session_name(self) -> str:
        """Render the tmux session name.

        Example:
            >>> AgentAddress("crew", rig="web", name="joe").session_name
            'rf-web-crew-joe'
            >>> AgentAddress("dog", name="rex").session_name
            'rf-dog-rex'
        """
        if self.role in ("mayor", "deacon"):
            return f"{SESSION_PREFIX}-{self.role}"
        if self.role == "dog":
            return f"{SESSION_PREFIX}-dog-{self.name}"
        if self.role in ("witness", "refinery"):
            return f"{SESSION_PREFIX}-{self.rig}-{self.role}"
        if self.role == "crew":
            return f"{SESSION_PREFIX}-{self.rig}-crew-{self.name}"
        return f"{SESSION_PREFIX}-{self.rig}-{self.name}"

    @property
    def is_worker(self) -> bool:
        return self.role == "polecat"


def worker_address(rig: str, name: str) -> AgentAddress:
    return AgentAddress("polecat", rig=rig, name=name)


def witness_address(rig: str) -> AgentAddress:
    return AgentAddress("witness", rig=rig)


def refinery_address(rig: str) -> AgentAddress:
    return AgentAddress("refinery", rig=rig)


def parse_agent_id(value: str) -> AgentAddress | None:
    """Parse a canonical agent id; returns ``None`` for anything else.

    Example:
        >>> parse_agent_id("web/polecats/nux")
        AgentAddress(role='polecat', rig='web', name='nux')
        >>> parse_agent_id("dea").role
        'deacon'
        >>> parse_agent_id("web/nux") is None
        True
    """
    text = value.strip().strip("/")
    if not text:
        return None
    if text in TOWN_ROLE_ALIASES:
        return AgentAddress(TOWN_ROLE_ALIASES[text])
    parts = text.split("/")
    if len(parts) == 3 and tuple(parts[:2]) == _DOGS_PATH and parts[2]:
        return AgentAddress("dog", name=parts[2])
    if len(parts) == 2 and parts[1] in RIG_ROLES and parts[0]:
        return AgentAddress("witness" if parts[1] == "witness" else "refinery", rig=parts[0])
    if len(parts) == 3 and parts[0] and parts[2]:
        if parts[1] == _WORKERS_SEGMENT:
            return AgentAddress("polecat", rig=parts[0], name=parts[2])
        if parts[1] == _CREW_SEGMENT:
            return AgentAddress("crew", rig=parts[0], name=parts[2])
    return None


def infer_from_path(cwd: Path, town_root: Path) -> AgentAddress | None:
    """Infer an identity from a directory inside the town layout.

    Example:
        >>> infer_from_path(Path("/t/web/polecats/nux/src"), Path("/t")).agent_id
        'web/polecats/nux'
        >>> infer_from_path(Path("/elsewhere"), Path("/t")) is None
        True
    """
    try:
        relative = cwd.relative_to(town_root)
    except ValueError:
        return None
    parts = relative.parts
    if not parts:
        return None
    if parts[0] == "mayor":
        return AgentAddress("mayor")
    if parts[0] == "deacon":
        if len(parts) >= 3 and tuple(parts[:2]) == _DOGS_PATH:
            return AgentAddress("dog", name=parts[2])
        return AgentAddress("deacon")
    if len(parts) < 2:
        return None
    rig, segment = parts[0], parts[1]
    if segment in RIG_ROLES:
        return AgentAddress("witness" if segment == "witness" else "refinery", rig=rig)
    if len(parts) >= 3 and segment == _WORKERS_SEGMENT and not parts[2].startswith("."):
        return AgentAddress("polecat", rig=rig, name=parts[2])
    if len(parts) >= 3 and segment == _CREW_SEGMENT:
        return AgentAddress("crew", rig=rig, name=parts[2])
    return None


def detect_self_identity(
    *,
    explicit: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
    town_root: Path | None = None,
) -> AgentAddress:
    """Return the caller's identity.

    Precedence is fixed: an explicit override, then ``RIGFLEET_ROLE``, then
    ``BD_ACTOR``, then inference from ``cwd`` relative to ``town_root``.
    A source that is set but unparseable is an error rather than a reason
    to fall through, so a typo never silently picks up another identity.
    """
    environ = os.environ if env is None else env
    sources = (
        ("--actor", explicit),
        (ROLE_ENV, environ.get(ROLE_ENV)),
        (ACTOR_ENV, environ.get(ACTOR_ENV)),
    )
    for source, raw in sources:
        if raw is None or not raw.strip():
            continue
        address = parse_agent_id(raw)
        if address is None:
            raise ValidationFailedError(
                f"invalid agent id from {source}: {raw!r}",
                recovery_hint="expected e.g. mayor, <rig>/witness or <rig>/polecats/<name>",
            )
        return address
    if town_root is not None:
        address = infer_from_path((cwd or Path.cwd()).resolve(), town_root.resolve())
        if address is not None:
            return address
    raise ValidationFailedError(
        "cannot determine caller identity",
        recovery_hint=f"set {ROLE_ENV} or run from inside an agent directory",
    )


def session_env(
    address: AgentAddress,
    *,
    beads_dir: Path,
    db_branch: str | None = None,
    account: str | None = None,
) -> dict[str, str]:
    """Environment exported into an agent's session.

    Example:
        >>> env = session_env(worker_address("web", "nux"), beads_dir=Path("/t/.beads"))
        >>> env["RIGFLEET_ROLE"], env["RIGFLEET_WORKER"]
        ('web/polecats/nux', 'nux')
    """
    env = {
        ROLE_ENV: address.agent_id,
        ACTOR_ENV: address.agent_id,
        "BEADS_DIR": str(beads_dir),
    }
    if address.rig:
        env[RIG_ENV] = address.rig
    if address.is_worker and address.name:
        env[WORKER_ENV] = address.name
    if db_branch:
        env[DB_BRANCH_ENV] = db_branch
    if account:
        env[ACCOUNT_ENV] = account
    return env
