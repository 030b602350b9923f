"""Implementation for the ``rigfleet queue`` commands."""

from __future__ import annotations

import datetime as dt
import json

from rich import box
from rich.console import Console
from rich.table import Table

from ..io import say
from ..queue import MergeQueue, parse_strategy
from ..scoring import DEFAULT_WEIGHTS
from ..services.errors import ServiceFailure
from .resolve import fail, resolve_context


def _queue(args: object) -> MergeQueue:
    ctx = resolve_context(args)
    rig = str(getattr(args, "rig", "") or "")
    try:
        ctx.town.rig(rig)
    except ServiceFailure as exc:
        fail(exc)
    weights = DEFAULT_WEIGHTS.with_overrides(ctx.town.config.scoring.overrides())
    return MergeQueue(store=ctx.store, rig=rig, weights=weights)


def next_entry(args: object) -> None:
    """Print the merge request the refinery should process next."""
    queue = _queue(args)
    try:
        strategy = parse_strategy(str(getattr(args, "strategy", "priority") or "priority"))
        entry = queue.next(strategy=strategy, now=dt.datetime.now(dt.timezone.utc))
    except ServiceFailure as exc:
        fail(exc)
    if bool(getattr(args, "json", False)):
        say(json.dumps(entry.as_json() if entry else None, indent=2, sort_keys=True))
        return
    if entry is None:
        if not bool(getattr(args, "quiet", False)):
            say(f"Merge queue for {queue.rig} is empty")
        return
    if bool(getattr(args, "quiet", False)):
        say(entry.item.id)
        return
    say(f"{entry.item.id}  {entry.fields.branch or '-'}  P{entry.item.priority}  score={entry.score:.1f}")


def list_entries(args: object) -> None:
    """Show every ready merge request in dispatch order."""
    queue = _queue(args)
    try:
        strategy = parse_strategy(str(getattr(args, "strategy", "priority") or "priority"))
        entries = queue.entries(strategy=strategy, now=dt.datetime.now(dt.timezone.utc))
    except ServiceFailure as exc:
        fail(exc)
    if bool(getattr(args, "json", False)):
        say(json.dumps([entry.as_json() for entry in entries], indent=2, sort_keys=True))
        return
    if not entries:
        say(f"Merge queue for {queue.rig} is empty")
        return
    table = Table(box=box.SIMPLE)
    table.add_column("#", justify="right")
    table.add_column("MR")
    table.add_column("Pri")
    table.add_column("Branch")
    table.add_column("Retries", justify="right")
    table.add_column("Score", justify="right")
    for index, entry in enumerate(entries, start=1):
        table.add_row(
            str(index),
            entry.item.id,
            f"P{entry.item.priority}",
            entry.fields.branch or "-",
            str(entry.fields.retry_count),
            f"{entry.score:.1f}",
        )
    Console().print(table)
