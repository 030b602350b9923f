"""Worker record storage.

Records live at ``<rig>/polecats/.state/<name>.json`` so they survive the
sandbox being removed and never show up in the worker's own checkout.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from .. import config, log, paths
from ..services.errors import IoFailedError
from .models import WorkerRecord


@dataclass(frozen=True)
class WorkerManager:
    """Load, save and enumerate worker records for a town."""

    town_root: Path

    def record_path(self, rig: str, name: str) -> Path:
        return paths.worker_state_path(self.town_root, rig, name)

    def sandbox_path(self, rig: str, name: str) -> Path:
        return paths.worker_dir(self.town_root, rig, name)

    def load(self, rig: str, name: str) -> WorkerRecord | None:
        path = self.record_path(rig, name)
        payload = config.load_json(path)
        if payload is None:
            return None
        try:
            return WorkerRecord.model_validate(payload)
        except ValidationError as exc:
            raise IoFailedError(f"invalid worker record {path}: {exc}") from exc

    def save(self, record: WorkerRecord) -> WorkerRecord:
        now = config.utc_now()
        updated = record.model_copy(
            update={"updated_at": now, "created_at": record.created_at or now}
        )
        config.write_json(self.record_path(record.rig, record.name), updated.model_dump())
        return updated

    def update(self, rig: str, name: str, **changes: object) -> WorkerRecord | None:
        record = self.load(rig, name)
        if record is None:
            return None
        return self.save(record.model_copy(update=changes))

    def delete(self, rig: str, name: str) -> bool:
        path = self.record_path(rig, name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise IoFailedError(f"failed to delete worker record {path}: {exc}") from exc
        return True

    def exists(self, rig: str, name: str) -> bool:
        return self.record_path(rig, name).exists() or self.sandbox_path(rig, name).exists()

    def names(self, rig: str) -> list[str]:
        """Names with a record or a sandbox directory, sorted."""
        found: set[str] = set()
        workers = paths.workers_dir(self.town_root, rig)
        if workers.is_dir():
            for entry in workers.iterdir():
                if entry.is_dir() and not entry.name.startswith("."):
                    found.add(entry.name)
        state_dir = workers / paths.WORKER_STATE_DIRNAME
        if state_dir.is_dir():
            for entry in state_dir.glob("*.json"):
                found.add(entry.stem)
        return sorted(found)

    def records(self, rig: str) -> list[WorkerRecord]:
        records: list[WorkerRecord] = []
        for name in self.names(rig):
            try:
                record = self.load(rig, name)
            except IoFailedError as exc:
                log.warning(str(exc))
                continue
            if record is not None:
                records.append(record)
        return records
