from __future__ import annotations

import datetime as dt

import pytest
from hypothesis import given
from hypothesis import strategies as st

from rigfleet import scoring
from rigfleet.scoring import DEFAULT_WEIGHTS, ScoreInput, ScoreWeights

NOW = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.timezone.utc)

hours_strategy = st.floats(min_value=0, max_value=24 * 365, allow_nan=False, allow_infinity=False)
retry_strategy = st.integers(min_value=0, max_value=1000)


@st.composite
def score_inputs(draw: st.DrawFn, priority: int | None = None) -> ScoreInput:
    mr_hours = draw(hours_strategy)
    convoy_hours = draw(st.one_of(st.none(), hours_strategy))
    return ScoreInput(
        priority=draw(st.integers(min_value=0, max_value=4)) if priority is None else priority,
        mr_created_at=NOW - dt.timedelta(hours=mr_hours),
        now=NOW,
        retry_count=draw(retry_strategy),
        convoy_created_at=None if convoy_hours is None else NOW - dt.timedelta(hours=convoy_hours),
    )


@given(st.integers(min_value=0, max_value=3), st.data())
def test_higher_priority_always_outranks_lower(priority: int, data: st.DataObject) -> None:
    urgent = data.draw(score_inputs(priority=priority))
    relaxed = data.draw(score_inputs(priority=priority + 1))

    assert scoring.score(urgent) > scoring.score(relaxed)


@given(score_inputs())
def test_score_is_pure(item: ScoreInput) -> None:
    assert scoring.score(item) == scoring.score(item)


@given(score_inputs())
def test_score_stays_within_priority_band(item: ScoreInput) -> None:
    value = scoring.score(item)
    floor = DEFAULT_WEIGHTS.base + (4 - item.priority) * DEFAULT_WEIGHTS.priority_weight
    assert floor - DEFAULT_WEIGHTS.retry_penalty_cap <= value
    assert value <= floor + DEFAULT_WEIGHTS.convoy_age_cap + DEFAULT_WEIGHTS.mr_age_cap


def test_default_weights_keep_priority_dominant() -> None:
    assert DEFAULT_WEIGHTS.priority_weight > DEFAULT_WEIGHTS.bounded_range


@pytest.mark.parametrize(
    ("retries", "penalty"),
    [(0, 0), (1, 50), (6, 300), (50, 300)],
)
def test_retry_penalty_is_capped(retries: int, penalty: float) -> None:
    item = ScoreInput(priority=2, mr_created_at=NOW, now=NOW, retry_count=retries)

    assert scoring.score(item) == 21000 - penalty


def test_convoy_age_is_capped_at_two_thousand() -> None:
    ancient = NOW - dt.timedelta(days=400)
    item = ScoreInput(priority=4, mr_created_at=NOW, now=NOW, convoy_created_at=ancient)

    assert scoring.score(item) == 1000 + 2000


def test_future_timestamps_do_not_add_age() -> None:
    future = NOW + dt.timedelta(hours=5)
    item = ScoreInput(priority=4, mr_created_at=future, now=NOW, convoy_created_at=future)

    assert scoring.score(item) == 1000


def test_order_by_priority_breaks_ties_by_age_then_id() -> None:
    older = NOW - dt.timedelta(hours=1)
    entries = [
        ("mr-b", ScoreInput(priority=1, mr_created_at=NOW, now=NOW)),
        ("mr-a", ScoreInput(priority=1, mr_created_at=NOW, now=NOW)),
        ("mr-c", ScoreInput(priority=1, mr_created_at=older, now=NOW, retry_count=0)),
        ("mr-z", ScoreInput(priority=0, mr_created_at=NOW, now=NOW)),
    ]
    weights = ScoreWeights(mr_age_weight=0.0)

    ordered = scoring.order_by_priority(
        entries, to_input=lambda pair: pair[1], item_id=lambda pair: pair[0], weights=weights
    )

    assert [name for name, _ in ordered] == ["mr-z", "mr-c", "mr-a", "mr-b"]


def test_order_fifo_ignores_priority() -> None:
    entries = [
        ("mr-1", 0, NOW),
        ("mr-2", 4, NOW - dt.timedelta(hours=2)),
        ("mr-3", 2, NOW - dt.timedelta(hours=1)),
    ]

    ordered = scoring.order_fifo(entries, created_at=lambda e: e[2], item_id=lambda e: e[0])

    assert [entry[0] for entry in ordered] == ["mr-2", "mr-3", "mr-1"]


def test_with_overrides_ignores_unknown_keys() -> None:
    weights = DEFAULT_WEIGHTS.with_overrides({"priority_weight": 5000, "surprise": 3})

    assert weights.priority_weight == 5000.0
    assert weights.base == DEFAULT_WEIGHTS.base
