"""Service failure contracts.

Services return typed outcomes on success and raise ServiceFailure on expected
validation, precondition, or runtime failures. Programmer bugs raise normal
exceptions. Non-critical side-effect failures are never raised: they are
logged as warnings and reported on the outcome instead.
"""

from __future__ import annotations

from typing import Literal

ServiceFailureCode = Literal[
    "validation_failed",
    "precondition_failed",
    "dependency_missing",
    "external_command_failed",
    "io_failed",
    "unexpected_state",
    "rolled_back",
]


class ServiceFailure(Exception):
    """Expected service failure carrying a stable code and optional hint.

    Use ``raise ServiceFailure(...) from exc`` to chain a causing exception;
    it is available as ``__cause__``. The CLI converts these into
    ``error: ...`` output with a non-zero exit code.
    """

    def __init__(
        self,
        code: ServiceFailureCode,
        message: str,
        *,
        recovery_hint: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.recovery_hint = recovery_hint


class ValidationFailedError(ServiceFailure):
    """Bad input: target syntax, unknown rig, conflicting flags."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("validation_failed", message, recovery_hint=recovery_hint)


class PreconditionFailedError(ServiceFailure):
    """A safety or admission check refused the operation before any mutation."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("precondition_failed", message, recovery_hint=recovery_hint)


class AlreadyAssignedError(PreconditionFailedError):
    """Work item is already hooked or pinned to another agent."""

    def __init__(self, item_id: str, status: str, assignee: str | None) -> None:
        owner = assignee or "(unknown)"
        super().__init__(
            f"work item {item_id} is already assigned ({status}) to {owner}",
            recovery_hint="use --force to re-dispatch",
        )
        self.item_id = item_id
        self.status = status
        self.assignee = assignee


class DependencyMissingError(ServiceFailure):
    """Required tool or server is missing or unreachable."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("dependency_missing", message, recovery_hint=recovery_hint)


class ExternalCommandFailedError(ServiceFailure):
    """External command (bd, git, tmux, dolt) failed."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("external_command_failed", message, recovery_hint=recovery_hint)


class IoFailedError(ServiceFailure):
    """I/O operation failed (read, write, config)."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("io_failed", message, recovery_hint=recovery_hint)


class UnexpectedStateError(ServiceFailure):
    """Unexpected or inconsistent state."""

    def __init__(self, message: str, *, recovery_hint: str | None = None) -> None:
        super().__init__("unexpected_state", message, recovery_hint=recovery_hint)


class DispatchRolledBackError(ServiceFailure):
    """A dispatch failed after spawning and was rolled back.

    ``cause`` is the original failure; ``rollback_warnings`` lists any
    compensation steps that did not complete.
    """

    def __init__(
        self,
        cause: Exception,
        *,
        rollback_warnings: tuple[str, ...] = (),
    ) -> None:
        hint = getattr(cause, "recovery_hint", None)
        super().__init__("rolled_back", str(cause), recovery_hint=hint)
        self.cause = cause
        self.rollback_warnings = rollback_warnings
