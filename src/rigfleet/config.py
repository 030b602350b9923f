"""Configuration helpers for rigfleet towns.

This module reads and writes ``town.json``, validates it with Pydantic
models, and resolves per-rig locations.

Example:
    >>> from rigfleet.config import utc_now
    >>> utc_now().endswith("Z")
    True
"""

from __future__ import annotations

import datetime as dt
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from pydantic import ValidationError

from . import paths
from .models import RigConfig, TownConfig
from .services.errors import IoFailedError, ValidationFailedError


def utc_now() -> str:
    """Return the current UTC timestamp in ISO-8601 format.

    Example:
        >>> timestamp = utc_now()
        >>> timestamp.endswith("Z")
        True
    """
    now = dt.datetime.now(tz=dt.timezone.utc).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> dt.datetime | None:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into aware UTC.

    Example:
        >>> parse_timestamp("2026-01-18T12:00:00Z").hour
        12
        >>> parse_timestamp("not a time") is None
        True
    """
    if isinstance(value, dt.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def load_json(path: Path) -> dict | None:
    """Load a JSON object from ``path``; ``None`` when the file is missing."""
    if not path.exists():
        return None
    try:
        with path.open("r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as exc:
        raise IoFailedError(f"failed to read {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise IoFailedError(f"expected a JSON object in {path}")
    return payload


def write_json(path: Path, payload: dict) -> None:
    """Write ``payload`` as indented JSON, creating parent directories."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2)
            fh.write("\n")
    except OSError as exc:
        raise IoFailedError(f"failed to write {path}: {exc}") from exc


def load_town_config(town_root: Path) -> TownConfig:
    """Load ``town.json``; a missing file yields an empty town."""
    path = paths.town_config_path(town_root)
    payload = load_json(path)
    if payload is None:
        return TownConfig()
    try:
        return TownConfig.model_validate(payload)
    except ValidationError as exc:
        raise IoFailedError(
            f"invalid town config {path}: {exc}",
            recovery_hint="fix town.json (see `rigs.<name>.prefix`)",
        ) from exc


def write_town_config(town_root: Path, config: TownConfig) -> None:
    write_json(paths.town_config_path(town_root), config.model_dump(exclude_none=True))


@dataclass(frozen=True)
class Town:
    """Resolved town root plus its validated configuration."""

    root: Path
    config: TownConfig

    def is_rig(self, name: str) -> bool:
        return name in self.config.rigs

    def rig(self, name: str) -> RigConfig:
        rig = self.config.rigs.get(name)
        if rig is None:
            known = ", ".join(sorted(self.config.rigs)) or "(none)"
            raise ValidationFailedError(
                f"rig not found: {name}",
                recovery_hint=f"known rigs: {known}",
            )
        return rig

    def beads_dir(self) -> Path:
        return paths.town_beads_dir(self.root)

    def rig_db_name(self, name: str) -> str:
        rig = self.rig(name)
        return rig.db_name or name.replace("-", "_")

    def rig_for_item(self, item_id: str) -> str | None:
        """Map a work-item id to its owning rig via the id prefix."""
        prefix, sep, _rest = item_id.partition("-")
        if not sep:
            return None
        return self.config.rig_for_prefix(prefix)

    def db_data_dir(self) -> Path:
        configured = self.config.db_server.data_dir
        if configured:
            return Path(configured).expanduser()
        return self.root / ".dolt-data"


def load_town(
    start: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Town:
    """Find the town root and load its configuration."""
    root = paths.find_town_root(start, env=env)
    return Town(root=root, config=load_town_config(root))
