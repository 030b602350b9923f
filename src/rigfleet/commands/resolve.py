"""Shared helpers for resolving the current town in commands."""

from __future__ import annotations

from pathlib import Path
from typing import NoReturn

from .. import config, log
from ..context import FleetContext, build_context
from ..io import die
from ..services.errors import DispatchRolledBackError, ServiceFailure


def resolve_town() -> config.Town:
    """Load the town for the current directory or exit with an error."""
    try:
        return config.load_town(Path.cwd())
    except ServiceFailure as exc:
        fail(exc)


def resolve_context(args: object) -> FleetContext:
    """Build the runtime context for the current town."""
    town = resolve_town()
    return build_context(town, actor=getattr(args, "actor", None), cwd=Path.cwd())


def fail(exc: ServiceFailure) -> NoReturn:
    """Report a service failure and exit non-zero."""
    if isinstance(exc, DispatchRolledBackError):
        for warning in exc.rollback_warnings:
            log.warning(f"rollback: {warning}")
        log.info("rolled back the partial dispatch")
    die(str(exc), hint=exc.recovery_hint)
    raise SystemExit(1)
