from __future__ import annotations

import datetime as dt

import pytest

from rigfleet.boundary import MERGE_REQUEST_TYPE
from rigfleet.queue import MergeQueue, parse_strategy
from rigfleet.services.errors import ValidationFailedError
from tests.rigfleet.helpers import FakeStore

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)


def _mr(
    store: FakeStore,
    item_id: str,
    *,
    priority: int = 2,
    hours_old: float = 0,
    rig: str | None = "web",
    retries: int = 0,
    status: str = "open",
) -> None:
    lines = [f"branch: polecat/{item_id}", "target: main"]
    if rig:
        lines.append(f"rig: {rig}")
    lines.append(f"retry_count: {retries}")
    store.add_item(
        item_id,
        issue_type=MERGE_REQUEST_TYPE,
        priority=priority,
        status=status,
        description="\n".join(lines) + "\n",
        created_at=NOW - dt.timedelta(hours=hours_old),
    )


def test_next_prefers_higher_priority_over_age() -> None:
    store = FakeStore()
    _mr(store, "mr-old", priority=2, hours_old=400)
    _mr(store, "mr-urgent", priority=0, hours_old=0)

    entry = MergeQueue(store=store, rig="web").next(strategy="priority", now=NOW)

    assert entry is not None
    assert entry.item.id == "mr-urgent"


def test_fifo_strategy_uses_creation_order() -> None:
    store = FakeStore()
    _mr(store, "mr-old", priority=4, hours_old=10)
    _mr(store, "mr-urgent", priority=0, hours_old=1)

    entries = MergeQueue(store=store, rig="web").entries(strategy="fifo", now=NOW)

    assert [entry.item.id for entry in entries] == ["mr-old", "mr-urgent"]


def test_entries_skip_other_rigs_and_closed_requests() -> None:
    store = FakeStore()
    _mr(store, "mr-web")
    _mr(store, "mr-api", rig="api")
    _mr(store, "mr-unscoped", rig=None)
    _mr(store, "mr-done", status="closed")

    entries = MergeQueue(store=store, rig="web").entries(strategy="priority", now=NOW)

    assert sorted(entry.item.id for entry in entries) == ["mr-unscoped", "mr-web"]


def test_retry_penalty_lowers_rank_within_priority() -> None:
    store = FakeStore()
    _mr(store, "mr-flaky", retries=4)
    _mr(store, "mr-fresh", retries=0)

    entries = MergeQueue(store=store, rig="web").entries(strategy="priority", now=NOW)

    assert [entry.item.id for entry in entries] == ["mr-fresh", "mr-flaky"]
    assert entries[1].score == entries[0].score - 200


def test_empty_queue_returns_none() -> None:
    assert MergeQueue(store=FakeStore(), rig="web").next(strategy="priority", now=NOW) is None


def test_as_json_includes_score_and_branch() -> None:
    store = FakeStore()
    _mr(store, "mr-1", priority=1)

    entry = MergeQueue(store=store, rig="web").next(strategy="priority", now=NOW)

    assert entry is not None
    payload = entry.as_json()
    assert payload["branch"] == "polecat/mr-1"
    assert payload["score"] == 31000.0


def test_parse_strategy_rejects_unknown_values() -> None:
    with pytest.raises(ValidationFailedError, match="unknown queue strategy"):
        parse_strategy("random")
