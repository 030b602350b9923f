"""Typed runtime context shared by dispatch and worker services."""

from __future__ import annotations

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from .beads import BeadsStore
from .config import Town
from .dbserver import DoltServer
from .identity import ROLE_ENV
from .ports import DatabaseServer, SandboxManager, SessionHost, WorkStore
from .term.tmux import TmuxSessionHost
from .worker.manager import WorkerManager
from .worker.sandbox import GitSandboxes


@dataclass(frozen=True)
class FleetContext:
    """Town configuration plus the adapters every service talks through."""

    town: Town
    store: WorkStore
    db: DatabaseServer
    sessions: SessionHost
    sandboxes: SandboxManager
    workers: WorkerManager
    env: Mapping[str, str] = field(default_factory=dict)
    clock: Callable[[], float] = field(default=time.time, repr=False)
    cwd: Path | None = None

    @property
    def root(self) -> Path:
        return self.town.root


def build_context(
    town: Town,
    *,
    actor: str | None = None,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> FleetContext:
    """Wire the production adapters (bd, dolt, tmux, git) for ``town``."""
    environ = dict(os.environ if env is None else env)
    if actor:
        environ[ROLE_ENV] = actor
    server = town.config.db_server
    return FleetContext(
        town=town,
        store=BeadsStore(beads_root=town.beads_dir(), cwd=town.root, actor=actor),
        db=DoltServer(
            data_dir=town.db_data_dir(),
            host=server.host,
            port=server.port,
            max_connections=server.max_connections,
        ),
        sessions=TmuxSessionHost(),
        sandboxes=GitSandboxes(town_root=town.root),
        workers=WorkerManager(town_root=town.root),
        env=environ,
        cwd=cwd,
    )
