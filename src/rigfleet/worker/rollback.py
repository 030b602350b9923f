"""Best-effort compensation lists."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable

from .. import log


@dataclass
class Compensation:
    """Ordered ``(name, action)`` undo steps run in full regardless of failures.

    Each step must be safe to run again; :meth:`run` can be called any number
    of times.

    Example:
        >>> undo = Compensation()
        >>> undo.add("first", lambda: None)
        >>> undo.add("second", lambda: 1 / 0)
        >>> undo.run()
        ('second: division by zero',)
    """

    steps: list[tuple[str, Callable[[], None]]] = field(default_factory=list)

    def add(self, name: str, action: Callable[[], None]) -> None:
        self.steps.append((name, action))

    def __bool__(self) -> bool:
        return bool(self.steps)

    def names(self) -> tuple[str, ...]:
        return tuple(name for name, _ in self.steps)

    def run(self) -> tuple[str, ...]:
        """Run every step in order; return warnings for those that failed."""
        warnings: list[str] = []
        for name, action in self.steps:
            try:
                action()
            except Exception as exc:
                message = f"{name}: {exc}"
                log.warning(f"rollback step failed: {message}")
                warnings.append(message)
            else:
                log.debug(f"rollback step done: {name}")
        return tuple(warnings)
