"""Typed runtime ports used by dispatch and worker lifecycle services."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from .boundary import WorkItem


@dataclass(frozen=True)
class CapacityReport:
    """Server admission snapshot."""

    active: int
    max_connections: int
    has_capacity: bool


@dataclass(frozen=True)
class SandboxStatus:
    """Git safety snapshot for one worker sandbox."""

    uncommitted: tuple[str, ...] = ()
    stash_count: int = 0
    unpushed_commits: int = 0

    @property
    def is_clean(self) -> bool:
        return not self.uncommitted and self.stash_count == 0 and self.unpushed_commits == 0

    def describe(self) -> str:
        reasons: list[str] = []
        if self.uncommitted:
            reasons.append(f"{len(self.uncommitted)} uncommitted change(s)")
        if self.stash_count:
            reasons.append(f"{self.stash_count} stash(es)")
        if self.unpushed_commits:
            reasons.append(f"{self.unpushed_commits} unpushed commit(s)")
        return ", ".join(reasons) or "clean"


class WorkStore(Protocol):
    """Work-item store operations required by the orchestrator."""

    def show(self, item_id: str) -> WorkItem | None: ...

    def list_items(
        self,
        *,
        status: str | None = None,
        issue_type: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
        title: str | None = None,
    ) -> list[WorkItem]: ...

    def ready_merge_requests(self) -> list[WorkItem]: ...

    def find_merge_request(self, branch: str) -> WorkItem | None: ...

    def create(
        self,
        title: str,
        *,
        issue_type: str = "task",
        description: str = "",
        priority: int | None = None,
        labels: tuple[str, ...] = (),
        assignee: str | None = None,
    ) -> str: ...

    def update(
        self, item_id: str, *, status: str | None = None, assignee: str | None = None
    ) -> None: ...

    def hook(self, item_id: str, assignee: str) -> None: ...

    def unhook(self, item_id: str) -> None: ...

    def close(self, item_id: str, *, reason: str | None = None, force: bool = False) -> None: ...

    def add_label(self, item_id: str, label: str) -> None: ...

    def remove_label(self, item_id: str, label: str) -> None: ...

    def add_dependency(self, from_id: str, to_id: str, *, dependency_type: str) -> None: ...

    def update_fields(self, item_id: str, fields: Mapping[str, str | None]) -> WorkItem: ...

    def tracking_convoy(self, item_id: str) -> str | None: ...

    def find_agent(self, agent_id: str) -> WorkItem | None: ...

    def ensure_agent(
        self,
        agent_id: str,
        *,
        role: str,
        rig: str | None = None,
        hook_bead: str | None = None,
    ) -> tuple[WorkItem, bool]: ...

    def set_agent_hook(self, agent_bead_id: str, item_id: str) -> None: ...

    def clear_agent_hook(self, agent_bead_id: str) -> None: ...

    def set_agent_fields(self, agent_bead_id: str, fields: Mapping[str, str | None]) -> None: ...

    def formula_exists(self, name: str) -> bool: ...

    def cook(self, formula: str) -> None: ...

    def wisp(self, formula: str, variables: Mapping[str, str]) -> str: ...

    def bond(self, molecule_id: str, item_id: str) -> str: ...

    def add_gate_waiter(self, gate_id: str, waiter: str) -> None: ...


class DatabaseServer(Protocol):
    """Branching SQL server operations (health, capacity, branches)."""

    def is_reachable(self) -> bool: ...

    def capacity(self) -> CapacityReport: ...

    def commit_working_set(self, database: str, message: str) -> None: ...

    def create_branch(self, database: str, branch: str) -> None: ...

    def merge_branch(self, database: str, branch: str) -> None: ...

    def delete_branch(self, database: str, branch: str) -> None: ...


class SessionHost(Protocol):
    """Terminal multiplexer operations keyed by session name."""

    def has_session(self, name: str) -> bool: ...

    def new_session(
        self,
        name: str,
        *,
        work_dir: Path,
        command: list[str],
        env: Mapping[str, str],
    ) -> None: ...

    def kill_session(self, name: str) -> None: ...

    def pane_id(self, name: str) -> str | None: ...

    def send_keys(self, name: str, text: str) -> None: ...

    def capture(self, name: str, *, lines: int = 50) -> str: ...

    def set_environment(self, name: str, key: str, value: str) -> None: ...

    def wait_for_ready(self, name: str, *, timeout_seconds: float) -> bool: ...


class SandboxManager(Protocol):
    """Git sandbox operations for worker worktrees."""

    def add(self, rig: str, name: str, *, branch: str, base_branch: str) -> Path: ...

    def remove(self, rig: str, path: Path, *, force: bool = False) -> None: ...

    def is_worktree(self, path: Path) -> bool: ...

    def status(self, path: Path, *, base_branch: str) -> SandboxStatus: ...

    def current_branch(self, path: Path) -> str | None: ...

    def commits_ahead(self, path: Path, *, base_branch: str) -> int | None: ...

    def behind_count(self, path: Path, *, base_branch: str) -> int | None: ...

    def push(self, path: Path, branch: str) -> None: ...

    def delete_branch(self, rig: str, branch: str) -> None: ...
