"""tmux session host adapter."""

from __future__ import annotations

import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

from .. import exec as exec_util
from .. import log
from ..services.errors import DependencyMissingError, ExternalCommandFailedError

READY_POLL_SECONDS = 0.5
PROMPT_MARKERS = ("❯", "> ", "$ ")


def _has_prompt(capture: str) -> bool:
    """Return whether the last non-empty captured line looks like a prompt.

    Example:
        >>> _has_prompt("loading...\\n❯ \\n\\n")
        True
        >>> _has_prompt("loading...")
        False
    """
    lines = [line for line in capture.splitlines() if line.strip()]
    if not lines:
        return False
    last = lines[-1].rstrip() + " "
    return any(marker in last for marker in PROMPT_MARKERS)


@dataclass(frozen=True)
class TmuxSessionHost:
    """``SessionHost`` implementation driving the ``tmux`` CLI."""

    runner: exec_util.CommandRunner | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def _run(self, args: list[str]) -> exec_util.CommandResult:
        result = exec_util.try_run(["tmux", *args], runner=self.runner)
        if result is None:
            raise DependencyMissingError("missing required command: tmux")
        return result

    def has_session(self, name: str) -> bool:
        return self._run(["has-session", "-t", f"={name}"]).ok

    def new_session(
        self,
        name: str,
        *,
        work_dir: Path,
        command: list[str],
        env: Mapping[str, str],
    ) -> None:
        args = ["new-session", "-d", "-s", name, "-c", str(work_dir)]
        for key, value in env.items():
            args.extend(["-e", f"{key}={value}"])
        args.append(shlex.join(command))
        result = self._run(args)
        if not result.ok:
            raise ExternalCommandFailedError(exec_util.failure_detail(result))
        for key, value in env.items():
            self.set_environment(name, key, value)

    def kill_session(self, name: str) -> None:
        if not self.has_session(name):
            return
        result = self._run(["kill-session", "-t", f"={name}"])
        if not result.ok and self.has_session(name):
            raise ExternalCommandFailedError(exec_util.failure_detail(result))

    def pane_id(self, name: str) -> str | None:
        result = self._run(["display-message", "-p", "-t", f"={name}", "#{pane_id}"])
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def send_keys(self, name: str, text: str) -> None:
        """Type ``text`` into the session and press Enter."""
        result = self._run(["send-keys", "-t", f"={name}", "-l", text])
        if not result.ok:
            raise ExternalCommandFailedError(exec_util.failure_detail(result))
        self._run(["send-keys", "-t", f"={name}", "Enter"])

    def capture(self, name: str, *, lines: int = 50) -> str:
        result = self._run(["capture-pane", "-p", "-t", f"={name}", "-S", f"-{lines}"])
        return result.stdout if result.ok else ""

    def set_environment(self, name: str, key: str, value: str) -> None:
        result = self._run(["set-environment", "-t", f"={name}", key, value])
        if not result.ok:
            log.warning(f"failed to set {key} on session {name}: {result.detail}")

    def wait_for_ready(self, name: str, *, timeout_seconds: float) -> bool:
        """Poll the pane for an agent prompt; ``False`` after the timeout."""
        deadline = self.clock() + timeout_seconds
        while True:
            if not self.has_session(name):
                return False
            if _has_prompt(self.capture(name, lines=20)):
                return True
            if self.clock() >= deadline:
                return False
            self.sleep(READY_POLL_SECONDS)
