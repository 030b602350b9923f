"""Merge-queue views over ready merge requests."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Literal

from . import log
from .boundary import MergeRequestFields, WorkItem
from .ports import WorkStore
from .scoring import DEFAULT_WEIGHTS, ScoreInput, ScoreWeights, order_by_priority, order_fifo, score
from .services.errors import ValidationFailedError

QueueStrategy = Literal["priority", "fifo"]
QUEUE_STRATEGIES: tuple[QueueStrategy, ...] = ("priority", "fifo")


@dataclass(frozen=True)
class QueueEntry:
    """One ready merge request with its computed score."""

    item: WorkItem
    fields: MergeRequestFields
    score: float
    created_at: dt.datetime

    def as_json(self) -> dict[str, object]:
        return {
            "id": self.item.id,
            "title": self.item.title,
            "priority": self.item.priority,
            "branch": self.fields.branch,
            "worker": self.fields.worker,
            "source_issue": self.fields.source_issue,
            "retry_count": self.fields.retry_count,
            "convoy_id": self.fields.convoy_id,
            "created_at": self.created_at.isoformat(),
            "score": self.score,
        }


def parse_strategy(value: str) -> QueueStrategy:
    """Validate a strategy name.

    Example:
        >>> parse_strategy("FIFO")
        'fifo'
    """
    normalized = value.strip().lower()
    for strategy in QUEUE_STRATEGIES:
        if strategy == normalized:
            return strategy
    raise ValidationFailedError(
        f"unknown queue strategy: {value}",
        recovery_hint=f"expected one of: {', '.join(QUEUE_STRATEGIES)}",
    )


def _score_input(entry: QueueEntry, now: dt.datetime) -> ScoreInput:
    return ScoreInput(
        priority=entry.item.priority,
        mr_created_at=entry.created_at,
        now=now,
        retry_count=entry.fields.retry_count,
        convoy_created_at=entry.fields.convoy_created_at,
    )


def build_entries(
    items: list[WorkItem],
    *,
    rig: str,
    now: dt.datetime,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> list[QueueEntry]:
    """Score merge requests that belong to ``rig``.

    A merge request without ``rig:`` metadata is kept; one naming a
    different rig is skipped.
    """
    entries: list[QueueEntry] = []
    for item in items:
        mr_fields = MergeRequestFields.from_item(item)
        if mr_fields.rig and mr_fields.rig != rig:
            continue
        created_at = item.created_at or now
        placeholder = QueueEntry(item=item, fields=mr_fields, score=0.0, created_at=created_at)
        entries.append(
            QueueEntry(
                item=item,
                fields=mr_fields,
                score=score(_score_input(placeholder, now), weights),
                created_at=created_at,
            )
        )
    return entries


def ordered(
    entries: list[QueueEntry],
    *,
    strategy: QueueStrategy,
    now: dt.datetime,
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> list[QueueEntry]:
    if strategy == "fifo":
        return order_fifo(entries, created_at=lambda e: e.created_at, item_id=lambda e: e.item.id)
    return order_by_priority(
        entries,
        to_input=lambda e: _score_input(e, now),
        item_id=lambda e: e.item.id,
        weights=weights,
    )


@dataclass(frozen=True)
class MergeQueue:
    """Ready merge requests for one rig, in dispatch order."""

    store: WorkStore
    rig: str
    weights: ScoreWeights = DEFAULT_WEIGHTS

    def entries(self, *, strategy: QueueStrategy, now: dt.datetime) -> list[QueueEntry]:
        items = self.store.ready_merge_requests()
        entries = build_entries(items, rig=self.rig, now=now, weights=self.weights)
        log.debug(f"merge queue {self.rig}: {len(entries)} ready of {len(items)}")
        return ordered(entries, strategy=strategy, now=now, weights=self.weights)

    def next(self, *, strategy: QueueStrategy, now: dt.datetime) -> QueueEntry | None:
        entries = self.entries(strategy=strategy, now=now)
        return entries[0] if entries else None
