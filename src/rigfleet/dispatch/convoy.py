"""Auto-convoy creation for dispatched work."""

from __future__ import annotations

from .. import log
from ..boundary import CONVOY_TYPE, WorkItem
from ..ports import WorkStore
from ..services.errors import ServiceFailure

TRACKS_DEPENDENCY = "tracks"


def convoy_title(item: WorkItem) -> str:
    """Title of an auto-created convoy.

    Example:
        >>> convoy_title(WorkItem(id="wb-1", title="Fix login"))
        'Work: Fix login'
    """
    return f"Work: {item.title or item.id}"


def convoy_description(item_id: str) -> str:
    return f"Auto-created convoy tracking {item_id}"


def ensure_convoy(store: WorkStore, item: WorkItem) -> tuple[str, bool]:
    """Return ``(convoy_id, created)`` for the convoy tracking ``item``.

    A convoy whose ``tracks`` dependency cannot be added is closed again
    so no orphan is left behind, and the failure propagates.
    """
    existing = store.tracking_convoy(item.id)
    if existing:
        return existing, False
    convoy_id = store.create(
        convoy_title(item),
        issue_type=CONVOY_TYPE,
        description=convoy_description(item.id),
    )
    try:
        store.add_dependency(convoy_id, item.id, dependency_type=TRACKS_DEPENDENCY)
    except ServiceFailure:
        try:
            store.close(convoy_id, reason="orphaned: tracking dependency failed")
        except ServiceFailure as exc:
            log.warning(f"could not close orphan convoy {convoy_id}: {exc}")
        raise
    log.debug(f"created convoy {convoy_id} tracking {item.id}")
    return convoy_id, True
