"""Pydantic models for work-item store payloads.

The store reports issues as JSON; these models normalize the shapes the
``bd`` CLI emits (string or numeric priorities, ``issue_type`` vs ``type``,
dependency objects vs bare ids) into one typed view.
"""

from __future__ import annotations

import datetime as dt
import re
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from .services.errors import ExternalCommandFailedError

WORK_ITEM_STATUSES = ("open", "hooked", "pinned", "in_progress", "blocked", "closed")
ASSIGNED_STATUSES = frozenset({"hooked", "pinned"})
MERGE_REQUEST_TYPE = "merge-request"
CONVOY_TYPE = "convoy"
DEFAULT_PRIORITY = 2

_PRIORITY_PATTERN = re.compile(r"^[Pp]?([0-9]+)$")
_DEPENDENCY_ID_PATTERN = re.compile(r"^([A-Za-z0-9][A-Za-z0-9._-]*)\b")
_CLOSED_DEPENDENCY_STATUSES = frozenset({"closed", "done"})


def _clean_str(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _as_utc(value: dt.datetime | None) -> dt.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)


def clamp_priority(value: int) -> int:
    """Clamp a priority into the 0–4 band.

    Example:
        >>> clamp_priority(9), clamp_priority(-1), clamp_priority(3)
        (4, 0, 3)
    """
    return max(0, min(4, value))


def parse_description_fields(description: str | None) -> dict[str, str]:
    """Parse ``key: value`` lines from an issue description.

    Example:
        >>> parse_description_fields("branch: polecat/nux\\nnoise\\nretry_count: 2")
        {'branch': 'polecat/nux', 'retry_count': '2'}
    """
    fields: dict[str, str] = {}
    if not description:
        return fields
    for line in description.splitlines():
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        key = key.strip()
        if not key or " " in key:
            continue
        fields[key] = value.strip()
    return fields


def update_description_field(description: str | None, *, key: str, value: str | None) -> str:
    """Upsert one ``key: value`` line; ``None`` stores ``null``.

    Example:
        >>> update_description_field("a: 1\\n", key="b", value=None)
        'a: 1\\nb: null\\n'
    """
    target = (description or "").rstrip("\n")
    lines = target.splitlines() if target else []
    updated: list[str] = []
    needle = f"{key}:"
    replacement = value if value is not None else "null"
    found = False
    for line in lines:
        if line.strip().startswith(needle):
            if not found:
                updated.append(f"{key}: {replacement}")
                found = True
            continue
        updated.append(line)
    if not found:
        updated.append(f"{key}: {replacement}")
    return "\n".join(updated).rstrip("\n") + "\n"


def field_value(fields: dict[str, str], key: str) -> str | None:
    """Return a description field, treating ``null`` and blanks as missing."""
    value = fields.get(key)
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned or cleaned.lower() == "null":
        return None
    return cleaned


def _dependency_blocker(entry: object) -> str | None:
    if isinstance(entry, dict):
        relation = entry.get("dependency_type") or entry.get("type") or "blocks"
        if str(relation).strip().lower() != "blocks":
            return None
        status = _clean_str(entry.get("status"))
        if status and status.lower() in _CLOSED_DEPENDENCY_STATUSES:
            return None
        return _clean_str(entry.get("id"))
    if isinstance(entry, str):
        match = _DEPENDENCY_ID_PATTERN.match(entry.strip())
        return match.group(1) if match else None
    return None


class WorkItem(BaseModel):
    """Validated work-item payload."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str
    title: str = ""
    type: str = Field(default="task", validation_alias=AliasChoices("issue_type", "type"))
    status: str = "open"
    assignee: str | None = None
    priority: int = DEFAULT_PRIORITY
    labels: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = Field(
        default=(), validation_alias=AliasChoices("blocked_by", "dependencies")
    )
    created_at: dt.datetime | None = None
    description: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _normalize_id(cls, value: object) -> object:
        normalized = _clean_str(value)
        if normalized is None:
            raise ValueError("missing issue id")
        return normalized

    @field_validator("title", "description", mode="before")
    @classmethod
    def _normalize_text(cls, value: object) -> object:
        if value is None:
            return ""
        return value

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: object) -> object:
        return (_clean_str(value) or "task").lower()

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value: object) -> object:
        return (_clean_str(value) or "open").lower()

    @field_validator("assignee", mode="before")
    @classmethod
    def _normalize_assignee(cls, value: object) -> object:
        return _clean_str(value)

    @field_validator("priority", mode="before")
    @classmethod
    def _normalize_priority(cls, value: object) -> object:
        if value is None:
            return DEFAULT_PRIORITY
        if isinstance(value, bool):
            return DEFAULT_PRIORITY
        if isinstance(value, (int, float)):
            return clamp_priority(int(value))
        if isinstance(value, str):
            match = _PRIORITY_PATTERN.match(value.strip())
            if match:
                return clamp_priority(int(match.group(1)))
        return DEFAULT_PRIORITY

    @field_validator("labels", mode="before")
    @classmethod
    def _normalize_labels(cls, value: object) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        seen: list[str] = []
        for entry in value:
            label = _clean_str(entry)
            if label and label not in seen:
                seen.append(label)
        return tuple(seen)

    @field_validator("blocked_by", mode="before")
    @classmethod
    def _normalize_blockers(cls, value: object) -> tuple[str, ...]:
        if not isinstance(value, (list, tuple)):
            return ()
        blockers: list[str] = []
        for entry in value:
            blocker = _dependency_blocker(entry)
            if blocker and blocker not in blockers:
                blockers.append(blocker)
        return tuple(blockers)

    @field_validator("created_at", mode="before")
    @classmethod
    def _normalize_created_at(cls, value: object) -> object:
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return None
            if text.endswith("Z"):
                return text[:-1] + "+00:00"
        return value

    @field_validator("created_at", mode="after")
    @classmethod
    def _ensure_aware(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)

    @property
    def fields(self) -> dict[str, str]:
        return parse_description_fields(self.description)

    def field(self, key: str) -> str | None:
        return field_value(self.fields, key)

    @property
    def is_assigned(self) -> bool:
        return self.status in ASSIGNED_STATUSES

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"


class MergeRequestFields(BaseModel):
    """Merge-request metadata stored in a merge-request description."""

    model_config = ConfigDict(extra="ignore")

    branch: str | None = None
    target: str | None = None
    source_issue: str | None = None
    rig: str | None = None
    worker: str | None = None
    agent_bead: str | None = None
    retry_count: int = 0
    last_conflict_sha: str | None = None
    convoy_id: str | None = None
    convoy_created_at: dt.datetime | None = None

    @field_validator(
        "branch",
        "target",
        "source_issue",
        "rig",
        "worker",
        "agent_bead",
        "last_conflict_sha",
        "convoy_id",
        mode="before",
    )
    @classmethod
    def _normalize_optional(cls, value: object) -> object:
        cleaned = _clean_str(value)
        if cleaned is None or cleaned.lower() == "null":
            return None
        return cleaned

    @field_validator("retry_count", mode="before")
    @classmethod
    def _normalize_retry(cls, value: object) -> object:
        if isinstance(value, str):
            try:
                return max(0, int(value.strip()))
            except ValueError:
                return 0
        if isinstance(value, int):
            return max(0, value)
        return 0

    @field_validator("convoy_created_at", mode="before")
    @classmethod
    def _normalize_convoy_created(cls, value: object) -> object:
        cleaned = _clean_str(value)
        if cleaned is None or cleaned.lower() == "null":
            return None
        if cleaned.endswith("Z"):
            return cleaned[:-1] + "+00:00"
        return cleaned

    @field_validator("convoy_created_at", mode="after")
    @classmethod
    def _ensure_aware(cls, value: dt.datetime | None) -> dt.datetime | None:
        return _as_utc(value)

    @classmethod
    def from_item(cls, item: WorkItem) -> MergeRequestFields:
        return cls.model_validate(item.fields)


def parse_work_item(payload: dict[str, Any], *, source: str) -> WorkItem:
    """Validate one store payload, raising a service failure on bad data."""
    try:
        return WorkItem.model_validate(payload)
    except ValidationError as exc:
        raise ExternalCommandFailedError(f"invalid work item payload from {source}: {exc}") from exc
