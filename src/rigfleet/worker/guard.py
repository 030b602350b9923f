"""Scoped guard that terminates a worker's own session exactly once."""

from __future__ import annotations

from types import TracebackType

from .. import log
from ..ports import SessionHost


class SessionBackstop:
    """Kill the hosting session on every exit path once armed.

    The guard does nothing until :meth:`arm` is called (the caller's role
    has been confirmed). :meth:`terminate` runs the kill immediately; after
    that, or after :meth:`mark_cleaned`, leaving the ``with`` block is a
    no-op. Exceptions propagate unchanged.

    Example:
        >>> class Host:
        ...     killed = []
        ...     def has_session(self, name): return True
        ...     def kill_session(self, name): self.killed.append(name)
        >>> host = Host()
        >>> with SessionBackstop(host, "rf-web-nux") as guard:
        ...     guard.arm()
        >>> host.killed
        ['rf-web-nux']
    """

    def __init__(self, sessions: SessionHost, session_name: str | None) -> None:
        self._sessions = sessions
        self._session_name = session_name
        self._armed = False
        self._fired = False

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def fired(self) -> bool:
        return self._fired

    def arm(self) -> None:
        self._armed = True

    def mark_cleaned(self) -> None:
        """Record that the session is already gone; nothing left to do."""
        self._fired = True

    def terminate(self) -> bool:
        """Kill the session now if armed and not yet fired."""
        if not self._armed or self._fired:
            return False
        self._fired = True
        name = self._session_name
        if not name:
            return False
        try:
            if self._sessions.has_session(name):
                log.debug(f"terminating own session {name}")
                self._sessions.kill_session(name)
                return True
        except Exception as exc:
            log.warning(f"failed to terminate session {name}: {exc}")
        return False

    def __enter__(self) -> SessionBackstop:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.terminate()
