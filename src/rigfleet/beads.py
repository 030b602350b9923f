"""Work-item store adapter backed by the ``bd`` CLI.

Every write the orchestrator makes to the store goes through ``BeadsStore``.
Callers check state before acting (read, then update) so a retried write
never blindly overwrites a newer value.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass
from pathlib import Path
from tempfile import NamedTemporaryFile
from typing import Mapping

from . import exec as exec_util
from . import log
from .boundary import (
    CONVOY_TYPE,
    MERGE_REQUEST_TYPE,
    WorkItem,
    parse_description_fields,
    parse_work_item,
    update_description_field,
)
from .services.errors import DependencyMissingError, ExternalCommandFailedError

AGENT_LABEL = "rf:agent"
MESSAGE_LABEL = "rf:message"
UNREAD_LABEL = "rf:unread"
DONE_INTENT_PREFIX = "done-intent:"
HOOK_SLOT_NAME = "hook"
_AGENT_ISSUE_TYPE = "agent"
_NOT_FOUND_MARKERS = ("not found", "no issue", "does not exist")
_HOOK_RETRY_ATTEMPTS = 3
_HOOK_RETRY_BACKOFF_SECONDS = 0.5


def beads_env(beads_root: Path, *, actor: str | None = None) -> dict[str, str]:
    """Return an environment mapping pointing ``bd`` at ``beads_root``.

    Example:
        >>> env = beads_env(Path("/t/.beads"), actor="web/polecats/nux")
        >>> env["BEADS_DIR"], env["BD_ACTOR"]
        ('/t/.beads', 'web/polecats/nux')
    """
    env = os.environ.copy()
    env["BEADS_DIR"] = str(beads_root)
    if actor:
        env["BD_ACTOR"] = actor
    return env


def _is_not_found(detail: str) -> bool:
    normalized = detail.lower()
    return any(marker in normalized for marker in _NOT_FOUND_MARKERS)


@dataclass(frozen=True)
class BeadsStore:
    """Typed ``bd`` command boundary for one store directory."""

    beads_root: Path
    cwd: Path
    actor: str | None = None
    runner: exec_util.CommandRunner | None = None

    # -- raw command layer -------------------------------------------------

    def run(self, args: list[str], *, allow_failure: bool = False) -> exec_util.CommandResult:
        """Run ``bd <args>``; raise on a missing binary or, unless allowed, failure."""
        argv = ["bd", *args]
        log.trace(f"bd {' '.join(args)}")
        result = exec_util.run_with_runner(
            exec_util.CommandRequest(
                argv=tuple(argv),
                cwd=self.cwd,
                env=beads_env(self.beads_root, actor=self.actor),
            ),
            runner=self.runner,
        )
        if result is None:
            raise DependencyMissingError(
                "missing required command: bd",
                recovery_hint="install beads (bd) and make sure it is on PATH",
            )
        if not result.ok and not allow_failure:
            raise ExternalCommandFailedError(exec_util.failure_detail(result))
        return result

    def run_json(self, args: list[str]) -> list[dict[str, object]]:
        """Run a bd command with --json and return parsed objects."""
        cmd = list(args)
        if "--json" not in cmd:
            cmd.append("--json")
        payload = exec_util.parse_json_payload(self.run(cmd), context=f"bd {cmd[0]}")
        if isinstance(payload, list):
            return [item for item in payload if isinstance(item, dict)]
        if isinstance(payload, dict):
            return [payload]
        return []

    def _items(self, args: list[str]) -> list[WorkItem]:
        source = f"bd {args[0]}"
        return [parse_work_item(raw, source=source) for raw in self.run_json(args)]

    # -- reads -------------------------------------------------------------

    def show(self, item_id: str) -> WorkItem | None:
        """Return the item, or ``None`` when the store does not know it."""
        result = self.run(["show", item_id, "--json"], allow_failure=True)
        if not result.ok:
            if _is_not_found(result.detail):
                return None
            raise ExternalCommandFailedError(exec_util.failure_detail(result))
        payload = exec_util.parse_json_payload(result, context="bd show")
        if isinstance(payload, list):
            payload = payload[0] if payload else None
        if not isinstance(payload, dict):
            return None
        return parse_work_item(payload, source="bd show")

    def list_items(
        self,
        *,
        status: str | None = None,
        issue_type: str | None = None,
        label: str | None = None,
        assignee: str | None = None,
        title: str | None = None,
    ) -> list[WorkItem]:
        args = ["list"]
        if status:
            args.append(f"--status={status}")
        if issue_type:
            args.append(f"--type={issue_type}")
        if label:
            args.extend(["--label", label])
        if assignee:
            args.append(f"--assignee={assignee}")
        if title:
            args.extend(["--title", title])
        return self._items(args)

    def ready_merge_requests(self) -> list[WorkItem]:
        """Open merge requests with no open blockers."""
        items = self.list_items(status="open", issue_type=MERGE_REQUEST_TYPE)
        return [item for item in items if not item.blocked_by]

    def find_merge_request(self, branch: str) -> WorkItem | None:
        """Find an open merge request for ``branch`` (create-or-find support)."""
        for item in self.list_items(issue_type=MERGE_REQUEST_TYPE):
            if item.is_closed:
                continue
            if item.field("branch") == branch:
                return item
        return None

    def trackers(self, item_id: str, *, dependency_type: str = "tracks") -> list[WorkItem]:
        result = self.run(
            ["dep", "list", item_id, "--direction=up", f"--type={dependency_type}", "--json"],
            allow_failure=True,
        )
        if not result.ok:
            return []
        payload = exec_util.parse_json_payload(result, context="bd dep list")
        if not isinstance(payload, list):
            return []
        return [parse_work_item(raw, source="bd dep list") for raw in payload if isinstance(raw, dict)]

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
        """Create an item with a body file and return its id."""
        args = ["create", "--type", issue_type, "--title", title]
        if priority is not None:
            args.append(f"--priority={priority}")
        if labels:
            args.extend(["--labels", ",".join(labels)])
        if assignee:
            args.extend(["--assignee", assignee])
        with NamedTemporaryFile("w", encoding="utf-8", delete=False) as handle:
            handle.write(description)
            temp_path = Path(handle.name)
        try:
            result = self.run([*args, "--body-file", str(temp_path), "--silent"])
        finally:
            temp_path.unlink(missing_ok=True)
        item_id = result.stdout.strip()
        if not item_id:
            raise ExternalCommandFailedError(f"bd create returned no id for {title!r}")
        return item_id

    def update(self, item_id: str, *, status: str | None = None, assignee: str | None = None) -> None:
        args = ["update", item_id]
        if status is not None:
            args.append(f"--status={status}")
        if assignee is not None:
            args.append(f"--assignee={assignee}")
        self.run(args)

    def hook(self, item_id: str, assignee: str) -> None:
        """Mark an item hooked to ``assignee``, retrying transient failures."""
        for attempt in range(1, _HOOK_RETRY_ATTEMPTS + 1):
            try:
                self.update(item_id, status="hooked", assignee=assignee)
                return
            except ExternalCommandFailedError as exc:
                log.debug(f"hook attempt {attempt} for {item_id} failed: {exc}")
                if attempt == _HOOK_RETRY_ATTEMPTS:
                    raise
                time.sleep(_HOOK_RETRY_BACKOFF_SECONDS * attempt)

    def unhook(self, item_id: str) -> None:
        """Return an item to ``open`` with no assignee."""
        self.update(item_id, status="open", assignee="")

    def close(self, item_id: str, *, reason: str | None = None, force: bool = False) -> None:
        args = ["close", item_id]
        if reason:
            args.append(f"--reason={reason}")
        if force:
            args.append("--force")
        self.run(args)

    def add_label(self, item_id: str, label: str) -> None:
        self.run(["label", "add", item_id, label])

    def remove_label(self, item_id: str, label: str) -> None:
        self.run(["label", "remove", item_id, label], allow_failure=True)

    def add_dependency(self, from_id: str, to_id: str, *, dependency_type: str) -> None:
        self.run(["dep", "add", from_id, to_id, f"--type={dependency_type}"])

    def _write_description(self, item_id: str, description: str) -> None:
        with NamedTemporaryFile("w", encoding="utf-8", delete=False) as handle:
            handle.write(description)
            temp_path = Path(handle.name)
        try:
            self.run(["update", item_id, "--body-file", str(temp_path)])
        finally:
            temp_path.unlink(missing_ok=True)

    def update_fields(self, item_id: str, fields: Mapping[str, str | None]) -> WorkItem:
        """Upsert several description fields in one read-modify-write.

        Writing all fields together means two independent updates can never
        overwrite each other's half of the description.
        """
        item = self.show(item_id)
        if item is None:
            raise ExternalCommandFailedError(f"work item not found: {item_id}")
        updated = item.description
        for key, value in fields.items():
            updated = update_description_field(updated, key=key, value=value)
        if updated != item.description:
            self._write_description(item_id, updated)
        return self.show(item_id) or item

    # -- agent identity beads ---------------------------------------------

    def find_agent(self, agent_id: str) -> WorkItem | None:
        for item in self.list_items(label=AGENT_LABEL, title=agent_id):
            if item.title == agent_id:
                return item
            if item.field("agent_id") == agent_id:
                return item
        return None

    def ensure_agent(
        self,
        agent_id: str,
        *,
        role: str,
        rig: str | None = None,
        hook_bead: str | None = None,
    ) -> tuple[WorkItem, bool]:
        """Find or create the agent bead; reopen a closed one.

        Returns the bead and whether ``hook_bead`` was recorded as part of
        this call (so callers can skip a separate hook write).
        """
        existing = self.find_agent(agent_id)
        if existing is not None:
            if existing.is_closed:
                self.update(existing.id, status="open")
            fields: dict[str, str | None] = {"agent_state": "spawning", "cleanup_status": None}
            if hook_bead:
                fields["hook_bead"] = hook_bead
            refreshed = self.update_fields(existing.id, fields)
            if hook_bead:
                self.run(["slot", "set", existing.id, HOOK_SLOT_NAME, hook_bead], allow_failure=True)
            return refreshed, bool(hook_bead)
        lines = [f"agent_id: {agent_id}", f"role_type: {role}"]
        if rig:
            lines.append(f"rig: {rig}")
        lines.append("agent_state: spawning")
        lines.append(f"hook_bead: {hook_bead or 'null'}")
        bead_id = self.create(
            agent_id,
            issue_type=_AGENT_ISSUE_TYPE,
            description="\n".join(lines) + "\n",
            labels=(AGENT_LABEL,),
        )
        if hook_bead:
            self.run(["slot", "set", bead_id, HOOK_SLOT_NAME, hook_bead], allow_failure=True)
        created = self.show(bead_id)
        if created is None:
            raise ExternalCommandFailedError(f"agent bead vanished after create: {bead_id}")
        return created, bool(hook_bead)

    def set_agent_hook(self, agent_bead_id: str, item_id: str) -> None:
        self.run(["slot", "set", agent_bead_id, HOOK_SLOT_NAME, item_id], allow_failure=True)
        self.update_fields(agent_bead_id, {"hook_bead": item_id})

    def clear_agent_hook(self, agent_bead_id: str) -> None:
        self.run(["slot", "clear", agent_bead_id, HOOK_SLOT_NAME], allow_failure=True)
        self.update_fields(agent_bead_id, {"hook_bead": None})

    def set_agent_fields(self, agent_bead_id: str, fields: Mapping[str, str | None]) -> None:
        self.update_fields(agent_bead_id, fields)

    # -- convoys -----------------------------------------------------------

    def tracking_convoy(self, item_id: str) -> str | None:
        """Return an open convoy already tracking ``item_id``."""
        for tracker in self.trackers(item_id):
            if tracker.type == CONVOY_TYPE and tracker.status == "open":
                return tracker.id
        marker = f"Auto-created convoy tracking {item_id}"
        for convoy in self.list_items(status="open", issue_type=CONVOY_TYPE):
            if marker in convoy.description:
                return convoy.id
        return None

    # -- formulas ----------------------------------------------------------

    def formula_exists(self, name: str) -> bool:
        for candidate in (name, f"mol-{name}"):
            result = self.run(["formula", "show", candidate], allow_failure=True)
            if result.ok and result.stdout.strip():
                return True
        return False

    def cook(self, formula: str) -> None:
        self.run(["cook", formula])

    def wisp(self, formula: str, variables: Mapping[str, str]) -> str:
        args = ["mol", "wisp", formula]
        for key, value in variables.items():
            args.extend(["--var", f"{key}={value}"])
        payload = exec_util.parse_json_payload(self.run([*args, "--json"]), context="bd mol wisp")
        return _molecule_id(payload, context="bd mol wisp")

    def bond(self, molecule_id: str, item_id: str) -> str:
        payload = exec_util.parse_json_payload(
            self.run(["mol", "bond", molecule_id, item_id, "--json"]), context="bd mol bond"
        )
        return _molecule_id(payload, context="bd mol bond")

    # -- gates -------------------------------------------------------------

    def add_gate_waiter(self, gate_id: str, waiter: str) -> None:
        self.run(["gate", "add-waiter", gate_id, waiter])


def _molecule_id(payload: object, *, context: str) -> str:
    if isinstance(payload, dict):
        for key in ("new_epic_id", "root_id", "result_id", "id"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    raise ExternalCommandFailedError(
        f"{context} output missing id field (expected one of new_epic_id, root_id, result_id)"
    )


def done_intent_label(exit_type: str, timestamp: int) -> str:
    """Build the marker label left before risky completion steps.

    Example:
        >>> done_intent_label("COMPLETED", 1700000000)
        'done-intent:COMPLETED:1700000000'
    """
    return f"{DONE_INTENT_PREFIX}{exit_type}:{timestamp}"


def parse_done_intent(labels: tuple[str, ...]) -> tuple[str, int] | None:
    """Return ``(exit_type, unix_ts)`` from the first done-intent label.

    Example:
        >>> parse_done_intent(("rf:agent", "done-intent:DEFERRED:42"))
        ('DEFERRED', 42)
        >>> parse_done_intent(("done-intent:bad",)) is None
        True
    """
    for label in labels:
        if not label.startswith(DONE_INTENT_PREFIX):
            continue
        exit_type, sep, raw_ts = label[len(DONE_INTENT_PREFIX) :].partition(":")
        if not sep:
            continue
        try:
            return exit_type, int(raw_ts)
        except ValueError:
            continue
    return None

