"""Subprocess helpers for running external commands (bd, git, tmux, dolt)."""

from __future__ import annotations

import json
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol

from .services.errors import DependencyMissingError, ExternalCommandFailedError

TIMEOUT_RETURNCODE = 124


@dataclass(frozen=True)
class CommandRequest:
    """Typed command invocation request."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = None
    stdin: int | None = subprocess.DEVNULL
    input_text: str | None = None


@dataclass(frozen=True)
class CommandResult:
    """Typed command execution result."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout or "").strip()


class CommandRunner(Protocol):
    """Runtime command-execution interface."""

    def run(self, request: CommandRequest) -> CommandResult | None: ...


class SubprocessCommandRunner:
    """Default command-runner adapter backed by subprocess.

    Returns ``None`` when the executable is missing; a timeout is reported
    as return code 124 with ``timed_out`` set.
    """

    def run(self, request: CommandRequest) -> CommandResult | None:
        run_kwargs: dict[str, object] = {
            "cwd": request.cwd,
            "env": request.env,
            "check": False,
            "capture_output": True,
            "text": True,
        }
        if request.timeout_seconds is not None:
            run_kwargs["timeout"] = request.timeout_seconds
        if request.input_text is not None:
            run_kwargs["input"] = request.input_text
        elif request.stdin is not None:
            run_kwargs["stdin"] = request.stdin
        try:
            completed = subprocess.run(list(request.argv), **run_kwargs)
        except FileNotFoundError:
            return None
        except subprocess.TimeoutExpired as exc:
            stdout = exc.stdout if isinstance(exc.stdout, str) else ""
            stderr = exc.stderr if isinstance(exc.stderr, str) else ""
            return CommandResult(
                argv=request.argv,
                returncode=TIMEOUT_RETURNCODE,
                stdout=stdout,
                stderr=stderr or f"timed out after {request.timeout_seconds}s",
                timed_out=True,
            )
        return CommandResult(
            argv=request.argv,
            returncode=completed.returncode,
            stdout=completed.stdout if isinstance(completed.stdout, str) else "",
            stderr=completed.stderr if isinstance(completed.stderr, str) else "",
        )


_DEFAULT_COMMAND_RUNNER: CommandRunner = SubprocessCommandRunner()


def run_with_runner(
    request: CommandRequest, *, runner: CommandRunner | None = None
) -> CommandResult | None:
    """Execute a typed command request with the given runner."""
    active_runner = runner or _DEFAULT_COMMAND_RUNNER
    return active_runner.run(request)


def failure_detail(result: CommandResult) -> str:
    command_text = " ".join(result.argv)
    if result.detail:
        return f"command failed: {command_text}\n{result.detail}"
    return f"command failed: {command_text}"


def try_run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
    runner: CommandRunner | None = None,
) -> CommandResult | None:
    """Run a command and return ``None`` if the executable is missing.

    Example:
        >>> try_run(["true"]).ok
        True
    """
    return run_with_runner(
        CommandRequest(
            argv=tuple(argv),
            cwd=cwd,
            env=env,
            timeout_seconds=timeout_seconds,
        ),
        runner=runner,
    )


def run_checked(
    argv: list[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = None,
    input_text: str | None = None,
    runner: CommandRunner | None = None,
) -> CommandResult:
    """Run a command and raise a service failure on a missing tool or non-zero exit."""
    request = CommandRequest(
        argv=tuple(argv),
        cwd=cwd,
        env=env,
        timeout_seconds=timeout_seconds,
        input_text=input_text,
    )
    result = run_with_runner(request, runner=runner)
    if result is None:
        raise DependencyMissingError(
            f"missing required command: {argv[0]}",
            recovery_hint=f"install {argv[0]} and make sure it is on PATH",
        )
    if not result.ok:
        raise ExternalCommandFailedError(failure_detail(result))
    return result


def parse_json_payload(result: CommandResult, *, context: str) -> object:
    """Parse stdout as JSON, treating empty output as ``None``."""
    raw = (result.stdout or "").strip()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ExternalCommandFailedError(
            f"failed to parse command output ({context}): {exc}"
        ) from exc

