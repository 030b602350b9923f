"""Pydantic models for rigfleet town configuration."""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_DB_PORT = 3307
DEFAULT_MAX_CONNECTIONS = 50
DEFAULT_AGENT = "claude"

_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9]*$")


def _clean_optional(value: object) -> object:
    if isinstance(value, str):
        cleaned = value.strip()
        return cleaned or None
    return value


class RigConfig(BaseModel):
    """Per-rig settings.

    Attributes:
        prefix: Work-item id prefix owned by this rig (``wb`` in ``wb-123``).
        default_branch: Branch merge requests target.
        max_workers: Ceiling on live workers; ``0`` means unlimited.
        agent: Agent preset name used for new workers.
        db_name: Database name on the shared server.

    Example:
        >>> RigConfig(prefix="WB").prefix
        'wb'
    """

    model_config = ConfigDict(extra="allow")

    prefix: str
    default_branch: str = "main"
    max_workers: int = Field(default=0, ge=0)
    agent: str | None = None
    db_name: str | None = None

    @field_validator("prefix", mode="before")
    @classmethod
    def normalize_prefix(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip().lower().rstrip("-")
            if not _PREFIX_PATTERN.match(normalized):
                raise ValueError(f"invalid rig prefix: {value!r}")
            return normalized
        return value

    @field_validator("default_branch", mode="before")
    @classmethod
    def normalize_default_branch(cls, value: object) -> object:
        if value is None:
            return "main"
        if isinstance(value, str):
            return value.strip() or "main"
        return value

    @field_validator("agent", "db_name", mode="before")
    @classmethod
    def normalize_optional(cls, value: object) -> object:
        return _clean_optional(value)


class DbServerConfig(BaseModel):
    """Connection settings for the shared branching database server."""

    model_config = ConfigDict(extra="allow")

    host: str = "127.0.0.1"
    port: int = Field(default=DEFAULT_DB_PORT, gt=0, lt=65536)
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    data_dir: str | None = None

    @field_validator("data_dir", mode="before")
    @classmethod
    def normalize_data_dir(cls, value: object) -> object:
        return _clean_optional(value)


class ScoringSection(BaseModel):
    """Optional overrides for merge-queue score weights."""

    model_config = ConfigDict(extra="ignore")

    base: float | None = None
    priority_weight: float | None = None
    convoy_age_weight: float | None = None
    convoy_age_cap: float | None = None
    mr_age_weight: float | None = None
    mr_age_cap: float | None = None
    retry_penalty: float | None = None
    retry_penalty_cap: float | None = None

    def overrides(self) -> dict[str, float]:
        return {key: value for key, value in self.model_dump().items() if value is not None}


class TownConfig(BaseModel):
    """Top-level ``town.json`` payload.

    Example:
        >>> cfg = TownConfig.model_validate({"rigs": {"web": {"prefix": "wb"}}})
        >>> cfg.rig_for_prefix("wb")
        'web'
    """

    model_config = ConfigDict(extra="allow")

    name: str = "town"
    rigs: dict[str, RigConfig] = Field(default_factory=dict)
    db_server: DbServerConfig = Field(default_factory=DbServerConfig)
    scoring: ScoringSection = Field(default_factory=ScoringSection)
    default_agent: str = DEFAULT_AGENT
    agents: dict[str, list[str]] = Field(
        default_factory=lambda: {
            "claude": ["claude", "--dangerously-skip-permissions"],
            "codex": ["codex"],
        }
    )
    worker_names: list[str] = Field(default_factory=list)

    @field_validator("rigs", mode="before")
    @classmethod
    def normalize_rigs(cls, value: object) -> object:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(name).strip(): entry for name, entry in value.items()}
        return value

    def rig_for_prefix(self, prefix: str) -> str | None:
        wanted = prefix.strip().lower()
        for name, rig in self.rigs.items():
            if rig.prefix == wanted:
                return name
        return None

    def agent_command(self, name: str | None) -> list[str]:
        key = name or self.default_agent
        command = self.agents.get(key)
        if command:
            return list(command)
        return [key]
