"""Worker data models."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, field_validator

WorkerState = Literal["working", "done", "stalled", "zombie", "nuked", "idle"]
ExitType = Literal["COMPLETED", "ESCALATED", "DEFERRED", "PHASE_COMPLETE"]
EXIT_TYPES: tuple[ExitType, ...] = ("COMPLETED", "ESCALATED", "DEFERRED", "PHASE_COMPLETE")


class WorkerRecord(BaseModel):
    """Persisted worker state kept beside (not inside) the sandbox."""

    model_config = ConfigDict(extra="allow")

    name: str
    rig: str
    state: str = "working"
    clone_path: str
    branch: str
    issue: str | None = None
    db_branch: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @field_validator("issue", "db_branch", mode="before")
    @classmethod
    def _normalize_optional(cls, value: object) -> object:
        if isinstance(value, str):
            cleaned = value.strip()
            return cleaned or None
        return value


@dataclass(frozen=True)
class SpawnedWorker:
    """Result of provisioning a worker for one dispatch."""

    rig: str
    name: str
    agent_id: str
    agent_bead_id: str
    clone_path: Path
    branch: str
    session_name: str
    hook_set_atomically: bool = False
    repaired: bool = False
    db_branch: str | None = None


@dataclass(frozen=True)
class WorkerSummary:
    """One row of ``worker list``."""

    rig: str
    name: str
    state: WorkerState
    session_running: bool
    issue: str | None
    branch: str | None
    clone_path: Path
