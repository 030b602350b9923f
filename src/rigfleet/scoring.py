"""Merge-queue priority scoring.

Scores are pure functions of their inputs: no clock reads and no I/O. The
caller supplies ``now``.

Example:
    >>> import datetime as dt
    >>> now = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)
    >>> score(ScoreInput(priority=0, mr_created_at=now, now=now))
    41000.0
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, fields, replace
from typing import Callable, Iterable, Mapping, TypeVar

from .boundary import clamp_priority

T = TypeVar("T")

_SECONDS_PER_HOUR = 3600.0


@dataclass(frozen=True)
class ScoreWeights:
    """Tunable score weights.

    ``priority_weight`` must exceed the combined range of the bounded terms
    (``convoy_age_cap + mr_age_cap + retry_penalty_cap``) for priority to
    dominate age and retries.
    """

    base: float = 1000.0
    priority_weight: float = 10_000.0
    convoy_age_weight: float = 10.0
    convoy_age_cap: float = 2000.0
    mr_age_weight: float = 1.0
    mr_age_cap: float = 500.0
    retry_penalty: float = 50.0
    retry_penalty_cap: float = 300.0

    @property
    def bounded_range(self) -> float:
        return self.convoy_age_cap + self.mr_age_cap + self.retry_penalty_cap

    def with_overrides(self, overrides: Mapping[str, float]) -> ScoreWeights:
        """Return weights with known keys replaced; unknown keys are ignored.

        Example:
            >>> ScoreWeights().with_overrides({"base": 0, "bogus": 1}).base
            0.0
        """
        known = {item.name for item in fields(self)}
        changes = {key: float(value) for key, value in overrides.items() if key in known}
        return replace(self, **changes)


DEFAULT_WEIGHTS = ScoreWeights()


@dataclass(frozen=True)
class ScoreInput:
    priority: int
    mr_created_at: dt.datetime
    now: dt.datetime
    retry_count: int = 0
    convoy_created_at: dt.datetime | None = None


def _age_hours(start: dt.datetime, now: dt.datetime) -> float:
    hours = (now - start).total_seconds() / _SECONDS_PER_HOUR
    return max(0.0, hours)


def score(item: ScoreInput, weights: ScoreWeights = DEFAULT_WEIGHTS) -> float:
    """Compute the dispatch score for one merge request; higher goes first.

    Example:
        >>> import datetime as dt
        >>> now = dt.datetime(2026, 1, 2, tzinfo=dt.timezone.utc)
        >>> day_old = now - dt.timedelta(hours=24)
        >>> score(ScoreInput(priority=2, mr_created_at=day_old, now=now,
        ...                  retry_count=2, convoy_created_at=day_old))
        21164.0
    """
    total = weights.base
    total += (4 - clamp_priority(item.priority)) * weights.priority_weight
    if item.convoy_created_at is not None:
        convoy_hours = _age_hours(item.convoy_created_at, item.now)
        total += min(convoy_hours * weights.convoy_age_weight, weights.convoy_age_cap)
    mr_hours = _age_hours(item.mr_created_at, item.now)
    total += min(mr_hours * weights.mr_age_weight, weights.mr_age_cap)
    retries = max(0, item.retry_count)
    total -= min(retries * weights.retry_penalty, weights.retry_penalty_cap)
    return total


def order_by_priority(
    items: Iterable[T],
    *,
    to_input: Callable[[T], ScoreInput],
    item_id: Callable[[T], str],
    weights: ScoreWeights = DEFAULT_WEIGHTS,
) -> list[T]:
    """Sort by score descending, then older ``mr_created_at``, then id."""
    decorated = []
    for entry in items:
        scored = to_input(entry)
        decorated.append(((-score(scored, weights), scored.mr_created_at, item_id(entry)), entry))
    decorated.sort(key=lambda pair: pair[0])
    return [entry for _, entry in decorated]


def order_fifo(
    items: Iterable[T],
    *,
    created_at: Callable[[T], dt.datetime],
    item_id: Callable[[T], str],
) -> list[T]:
    """Sort by creation time, then id; scores are ignored."""
    return sorted(items, key=lambda entry: (created_at(entry), item_id(entry)))

