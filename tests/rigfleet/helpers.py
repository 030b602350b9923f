# ruff: noqa: E402

from __future__ import annotations

import datetime as dt
import shutil
import sys
import threading
from pathlib import Path
from typing import Mapping

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import rigfleet.config as config
import rigfleet.paths as paths
from rigfleet.beads import AGENT_LABEL
from rigfleet.boundary import (
    CONVOY_TYPE,
    MERGE_REQUEST_TYPE,
    WorkItem,
    update_description_field,
)
from rigfleet.context import FleetContext
from rigfleet.identity import worker_address
from rigfleet.models import TownConfig
from rigfleet.ports import CapacityReport, SandboxStatus
from rigfleet.services.errors import ExternalCommandFailedError, ServiceFailure
from rigfleet.worker.manager import WorkerManager
from rigfleet.worker.models import WorkerRecord

NOW_TS = 1_700_000_000
BASE_TIME = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)


class FakeStore:
    """In-memory ``WorkStore`` with call recording and failure injection."""

    def __init__(self, events: list[str] | None = None) -> None:
        self.items: dict[str, WorkItem] = {}
        self.dependencies: list[tuple[str, str, str]] = []
        self.formulas: set[str] = set()
        self.cooked: list[str] = []
        self.wisps: list[tuple[str, dict[str, str]]] = []
        self.bonds: list[tuple[str, str]] = []
        self.gate_waiters: list[tuple[str, str]] = []
        self.close_reasons: dict[str, tuple[str | None, bool]] = {}
        self.writes: list[str] = []
        self.failures: dict[str, list[ServiceFailure]] = {}
        self.events = events if events is not None else []
        self._counter = 0
        self._lock = threading.RLock()

    # -- helpers -----------------------------------------------------------

    def add_item(
        self,
        item_id: str,
        *,
        title: str = "",
        issue_type: str = "task",
        status: str = "open",
        assignee: str | None = None,
        priority: int = 2,
        labels: tuple[str, ...] = (),
        description: str = "",
        created_at: dt.datetime | None = None,
    ) -> WorkItem:
        item = WorkItem(
            id=item_id,
            title=title or item_id,
            type=issue_type,
            status=status,
            assignee=assignee,
            priority=priority,
            labels=labels,
            description=description,
            created_at=created_at or BASE_TIME,
        )
        with self._lock:
            self.items[item_id] = item
        return item

    def fail(self, method: str, error: ServiceFailure | None = None, *, times: int = 1) -> None:
        failure = error or ExternalCommandFailedError(f"injected {method} failure")
        self.failures.setdefault(method, []).extend([failure] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _write(self, method: str) -> None:
        self._maybe_fail(method)
        self.writes.append(method)

    def _require(self, item_id: str) -> WorkItem:
        item = self.items.get(item_id)
        if item is None:
            raise ExternalCommandFailedError(f"work item not found: {item_id}")
        return item

    def _replace(self, item_id: str, **changes: object) -> WorkItem:
        with self._lock:
            updated = self._require(item_id).model_copy(update=changes)
            self.items[item_id] = updated
            return updated

    def by_title(self, title: str) -> list[WorkItem]:
        return [item for item in self.items.values() if item.title == title]

    # -- reads -------------------------------------------------------------

    def show(self, item_id: str) -> WorkItem | None:
        self._maybe_fail("show")
        return self.items.get(item_id)

    def list_items(
        self,
        *,
        status: str | None = None,
        issue_type: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
        title: str | None = None,
    ) -> list[WorkItem]:
        found = []
        for item in list(self.items.values()):
            if status and item.status != status:
                continue
            if issue_type and item.type != issue_type:
                continue
            if label and label not in item.labels:
                continue
            if assignee and item.assignee != assignee:
                continue
            if title and title not in item.title:
                continue
            found.append(item)
        return found

    def ready_merge_requests(self) -> list[WorkItem]:
        return [
            item
            for item in self.list_items(status="open", issue_type=MERGE_REQUEST_TYPE)
            if not item.blocked_by
        ]

    def find_merge_request(self, branch: str) -> WorkItem | None:
        for item in self.list_items(issue_type=MERGE_REQUEST_TYPE):
            if not item.is_closed and item.field("branch") == branch:
                return item
        return None

    # -- writes ------------------------------------------------------------

    def create(
        self,
        title: str,
        *,
        issue_type: str = "task",
        description: str = "",
        priority: int | None = None,
        labels: tuple[str, ...] = (),
        assignee: str | None = None,
    ) -> str:
        self._write("create")
        with self._lock:
            self._counter += 1
            item_id = f"hq-{self._counter}"
            self.add_item(
                item_id,
                title=title,
                issue_type=issue_type,
                description=description,
                priority=2 if priority is None else priority,
                labels=tuple(labels),
                assignee=assignee,
                created_at=BASE_TIME + dt.timedelta(minutes=self._counter),
            )
        return item_id

    def update(self, item_id: str, *, status: str | None = None, assignee: str | None = None) -> None:
        self._write("update")
        changes: dict[str, object] = {}
        if status is not None:
            changes["status"] = status
        if assignee is not None:
            changes["assignee"] = assignee or None
        self._replace(item_id, **changes)

    def hook(self, item_id: str, assignee: str) -> None:
        self._write("hook")
        self._replace(item_id, status="hooked", assignee=assignee)
        self.events.append(f"hook {item_id}")

    def unhook(self, item_id: str) -> None:
        self._write("unhook")
        self._replace(item_id, status="open", assignee=None)
        self.events.append(f"unhook {item_id}")

    def close(self, item_id: str, *, reason: str | None = None, force: bool = False) -> None:
        self._write("close")
        self._replace(item_id, status="closed")
        self.close_reasons[item_id] = (reason, force)

    def add_label(self, item_id: str, label: str) -> None:
        self._write("add_label")
        item = self._require(item_id)
        if label not in item.labels:
            self._replace(item_id, labels=(*item.labels, label))

    def remove_label(self, item_id: str, label: str) -> None:
        self._write("remove_label")
        item = self._require(item_id)
        self._replace(item_id, labels=tuple(entry for entry in item.labels if entry != label))

    def add_dependency(self, from_id: str, to_id: str, *, dependency_type: str) -> None:
        self._write("add_dependency")
        self.dependencies.append((from_id, to_id, dependency_type))

    def update_fields(self, item_id: str, fields: Mapping[str, str | None]) -> WorkItem:
        self._write("update_fields")
        description = self._require(item_id).description
        for key, value in fields.items():
            description = update_description_field(description, key=key, value=value)
        return self._replace(item_id, description=description)

    def tracking_convoy(self, item_id: str) -> str | None:
        for from_id, to_id, kind in self.dependencies:
            if to_id != item_id or kind != "tracks":
                continue
            convoy = self.items.get(from_id)
            if convoy is not None and convoy.type == CONVOY_TYPE and convoy.status == "open":
                return convoy.id
        return None

    # -- agents ------------------------------------------------------------

    def find_agent(self, agent_id: str) -> WorkItem | None:
        matches = [item for item in self.list_items(label=AGENT_LABEL) if item.title == agent_id]
        open_matches = [item for item in matches if not item.is_closed]
        return (open_matches or matches or [None])[0]

    def ensure_agent(
        self,
        agent_id: str,
        *,
        role: str,
        rig: str | None = None,
        hook_bead: str | None = None,
    ) -> tuple[WorkItem, bool]:
        existing = self.find_agent(agent_id)
        if existing is not None:
            if existing.is_closed:
                self.update(existing.id, status="open")
            fields: dict[str, str | None] = {"agent_state": "spawning", "cleanup_status": None}
            if hook_bead:
                fields["hook_bead"] = hook_bead
            return self.update_fields(existing.id, fields), bool(hook_bead)
        lines = [f"agent_id: {agent_id}", f"role_type: {role}"]
        if rig:
            lines.append(f"rig: {rig}")
        lines.extend(["agent_state: spawning", f"hook_bead: {hook_bead or 'null'}"])
        bead_id = self.create(
            agent_id,
            issue_type="agent",
            description="\n".join(lines) + "\n",
            labels=(AGENT_LABEL,),
        )
        return self.items[bead_id], bool(hook_bead)

    def set_agent_hook(self, agent_bead_id: str, item_id: str) -> None:
        self.update_fields(agent_bead_id, {"hook_bead": item_id})

    def clear_agent_hook(self, agent_bead_id: str) -> None:
        self.update_fields(agent_bead_id, {"hook_bead": None})

    def set_agent_fields(self, agent_bead_id: str, fields: Mapping[str, str | None]) -> None:
        self.update_fields(agent_bead_id, fields)

    # -- formulas and gates ------------------------------------------------

    def formula_exists(self, name: str) -> bool:
        return name in self.formulas or f"mol-{name}" in self.formulas

    def cook(self, formula: str) -> None:
        self._write("cook")
        self.cooked.append(formula)

    def wisp(self, formula: str, variables: Mapping[str, str]) -> str:
        self.wisps.append((formula, dict(variables)))
        return self.create(f"wisp: {formula}", issue_type="molecule")

    def bond(self, molecule_id: str, item_id: str) -> str:
        self._write("bond")
        self.bonds.append((molecule_id, item_id))
        return f"{molecule_id}.bond"

    def add_gate_waiter(self, gate_id: str, waiter: str) -> None:
        self._write("add_gate_waiter")
        self.gate_waiters.append((gate_id, waiter))


class FakeDb:
    """In-memory ``DatabaseServer``."""

    def __init__(self, events: list[str] | None = None) -> None:
        self.reachable = True
        self.report = CapacityReport(active=3, max_connections=50, has_capacity=True)
        self.branches: set[str] = set()
        self.commits: list[tuple[str, str]] = []
        self.merged: list[str] = []
        self.deleted: list[str] = []
        self.fail_merge = False
        self.events = events if events is not None else []

    def is_reachable(self) -> bool:
        return self.reachable

    def capacity(self) -> CapacityReport:
        return self.report

    def commit_working_set(self, database: str, message: str) -> None:
        self.commits.append((database, message))
        self.events.append(f"commit {database}")

    def create_branch(self, database: str, branch: str) -> None:
        self.branches.add(branch)
        self.events.append(f"create_branch {branch}")

    def merge_branch(self, database: str, branch: str) -> None:
        if self.fail_merge:
            raise ExternalCommandFailedError(f"merge of {branch} failed")
        self.merged.append(branch)

    def delete_branch(self, database: str, branch: str) -> None:
        self.branches.discard(branch)
        self.deleted.append(branch)


class FakeSessions:
    """In-memory ``SessionHost``."""

    def __init__(self, events: list[str] | None = None) -> None:
        self.live: set[str] = set()
        self.started: list[tuple[str, Path, list[str], dict[str, str]]] = []
        self.sent: list[tuple[str, str]] = []
        self.killed: list[str] = []
        self.fail_new: set[str] = set()
        self.events = events if events is not None else []
        self._lock = threading.Lock()

    def has_session(self, name: str) -> bool:
        return name in self.live

    def new_session(
        self,
        name: str,
        *,
        work_dir: Path,
        command: list[str],
        env: Mapping[str, str],
    ) -> None:
        if name in self.fail_new:
            raise ExternalCommandFailedError(f"tmux new-session failed for {name}")
        with self._lock:
            self.live.add(name)
            self.started.append((name, work_dir, list(command), dict(env)))
            self.events.append(f"new_session {name}")

    def kill_session(self, name: str) -> None:
        with self._lock:
            self.live.discard(name)
            self.killed.append(name)

    def pane_id(self, name: str) -> str | None:
        return f"%{name}" if name in self.live else None

    def send_keys(self, name: str, text: str) -> None:
        self.sent.append((name, text))
        self.events.append(f"send_keys {name}")

    def capture(self, name: str, *, lines: int = 50) -> str:
        return ""

    def set_environment(self, name: str, key: str, value: str) -> None:
        return None

    def wait_for_ready(self, name: str, *, timeout_seconds: float) -> bool:
        return name in self.live


class FakeSandboxes:
    """``SandboxManager`` that creates plain directories under the town."""

    def __init__(self, town_root: Path, events: list[str] | None = None) -> None:
        self.town_root = town_root
        self.statuses: dict[str, SandboxStatus] = {}
        self.current: dict[str, str] = {}
        self.ahead: dict[str, int | None] = {}
        self.behind: dict[str, int | None] = {}
        self.fail_push: set[str] = set()
        self.added: list[tuple[str, str, str]] = []
        self.removed: list[Path] = []
        self.pushed: list[str] = []
        self.deleted_branches: list[str] = []
        self.events = events if events is not None else []

    def add(self, rig: str, name: str, *, branch: str, base_branch: str) -> Path:
        target = paths.worker_dir(self.town_root, rig, name)
        target.mkdir(parents=True, exist_ok=True)
        (target / ".git").write_text("gitdir: fake\n", encoding="utf-8")
        self.added.append((rig, name, branch))
        self.events.append(f"sandbox {rig}/{name}")
        return target

    def remove(self, rig: str, path: Path, *, force: bool = False) -> None:
        shutil.rmtree(path, ignore_errors=True)
        self.removed.append(path)

    def is_worktree(self, path: Path) -> bool:
        return (path / ".git").exists()

    def status(self, path: Path, *, base_branch: str) -> SandboxStatus:
        return self.statuses.get(path.name, SandboxStatus())

    def current_branch(self, path: Path) -> str | None:
        return self.current.get(path.name, f"polecat/{path.name}")

    def commits_ahead(self, path: Path, *, base_branch: str) -> int | None:
        return self.ahead.get(path.name, 1)

    def behind_count(self, path: Path, *, base_branch: str) -> int | None:
        return self.behind.get(path.name, 0)

    def push(self, path: Path, branch: str) -> None:
        if path.name in self.fail_push:
            raise ExternalCommandFailedError(f"git push {branch} rejected")
        self.pushed.append(branch)

    def delete_branch(self, rig: str, branch: str) -> None:
        self.deleted_branches.append(branch)


def make_town(root: Path, *, max_workers: int = 0) -> config.Town:
    town_config = TownConfig.model_validate(
        {
            "rigs": {
                "web": {"prefix": "wb", "max_workers": max_workers},
                "api": {"prefix": "ap"},
            }
        }
    )
    config.write_town_config(root, town_config)
    return config.Town(root=root, config=town_config)


def make_ctx(
    root: Path,
    *,
    env: Mapping[str, str] | None = None,
    max_workers: int = 0,
    now: int = NOW_TS,
) -> FleetContext:
    events: list[str] = []
    town = make_town(root, max_workers=max_workers)
    return FleetContext(
        town=town,
        store=FakeStore(events),
        db=FakeDb(events),
        sessions=FakeSessions(events),
        sandboxes=FakeSandboxes(root, events),
        workers=WorkerManager(town_root=root),
        env=dict(env or {}),
        clock=lambda: float(now),
        cwd=root,
    )


def events_of(ctx: FleetContext) -> list[str]:
    return ctx.store.events  # type: ignore[attr-defined]


def add_worker(
    ctx: FleetContext,
    rig: str,
    name: str,
    *,
    session: bool = False,
    hook: str | None = None,
    db_branch: str | None = None,
) -> Path:
    """Seed an existing worker: sandbox, record, agent bead and optional session."""
    address = worker_address(rig, name)
    sandbox = ctx.sandboxes.add(rig, name, branch=f"polecat/{name}", base_branch="main")
    ctx.workers.save(
        WorkerRecord(
            name=name,
            rig=rig,
            clone_path=str(sandbox),
            branch=f"polecat/{name}",
            issue=hook,
            db_branch=db_branch,
        )
    )
    bead, _ = ctx.store.ensure_agent(address.agent_id, role="polecat", rig=rig, hook_bead=hook)
    ctx.store.set_agent_fields(bead.id, {"agent_state": "working"})
    if session:
        ctx.sessions.live.add(address.session_name)  # type: ignore[attr-defined]
    ctx.store.writes.clear()  # type: ignore[attr-defined]
    ctx.sandboxes.added.clear()  # type: ignore[attr-defined]
    ctx.store.events.clear()  # type: ignore[attr-defined]
    return sandbox
