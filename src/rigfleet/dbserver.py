"""Dolt SQL server adapter: health, admission capacity and branches.

Every worker gets its own database branch so the metadata it writes stays
isolated until completion merges it back into ``main``.
"""

from __future__ import annotations

import re
import socket
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from . import exec as exec_util
from . import log
from .models import DEFAULT_DB_PORT, DEFAULT_MAX_CONNECTIONS
from .ports import CapacityReport
from .services.errors import DependencyMissingError, ExternalCommandFailedError, ValidationFailedError

MAIN_BRANCH = "main"
CAPACITY_RATIO = 0.8
FALLBACK_MAX_CONNECTIONS = 1000
REACHABILITY_TIMEOUT_SECONDS = 2.0
SQL_TIMEOUT_SECONDS = 15.0
RETRY_ATTEMPTS = 5
RETRY_INITIAL_BACKOFF_SECONDS = 0.5
RETRY_MAX_BACKOFF_SECONDS = 15.0
PROCESSLIST_QUERY = "SELECT COUNT(*) AS cnt FROM information_schema.PROCESSLIST"
MERGE_CONFLICT_MARKER = "merge conflict"

_BRANCH_NAME_PATTERN = re.compile(r"^[A-Za-z0-9._/-]+$")
_DATABASE_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_]+$")
_RETRYABLE_MARKERS = (
    "database is read only",
    "cannot update manifest",
    "optimistic lock",
    "serialization failure",
    "lock wait timeout",
    "try restarting transaction",
)
_MISSING_BRANCH_MARKERS = ("not found", "does not exist", "no such branch")


def worker_db_branch(name: str, timestamp: int) -> str:
    """Return the database branch for a worker spawn.

    Example:
        >>> worker_db_branch("Nux", 1700000000)
        'polecat-nux-1700000000'
    """
    return f"polecat-{name.lower()}-{timestamp}"


def validate_branch_name(branch: str) -> str:
    """Reject names that could break out of a quoted SQL string.

    Example:
        >>> validate_branch_name("polecat-nux-1")
        'polecat-nux-1'
    """
    if not _BRANCH_NAME_PATTERN.match(branch):
        raise ValidationFailedError(f"invalid database branch name: {branch!r}")
    return branch


def validate_database_name(database: str) -> str:
    if not _DATABASE_NAME_PATTERN.match(database):
        raise ValidationFailedError(f"invalid database name: {database!r}")
    return database


def is_retryable(detail: str) -> bool:
    """Return whether a server error is transient.

    Example:
        >>> is_retryable("Error 1213: serialization failure")
        True
        >>> is_retryable("syntax error")
        False
    """
    normalized = detail.lower()
    return any(marker in normalized for marker in _RETRYABLE_MARKERS)


def capacity_threshold(max_connections: int) -> int:
    """Connections allowed before admission is refused (80% of max).

    Example:
        >>> capacity_threshold(50), capacity_threshold(0)
        (40, 800)
    """
    ceiling = max_connections if max_connections > 0 else FALLBACK_MAX_CONNECTIONS
    return int(ceiling * CAPACITY_RATIO)


def _sql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "''") + "'"


def tcp_reachable(host: str, port: int, *, timeout: float = REACHABILITY_TIMEOUT_SECONDS) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@dataclass(frozen=True)
class DoltServer:
    """``DatabaseServer`` implementation that shells out to ``dolt sql``."""

    data_dir: Path
    host: str = "127.0.0.1"
    port: int = DEFAULT_DB_PORT
    max_connections: int = DEFAULT_MAX_CONNECTIONS
    runner: exec_util.CommandRunner | None = None
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def is_reachable(self) -> bool:
        return tcp_reachable(self.host, self.port)

    def _run_sql(self, argv: list[str]) -> exec_util.CommandResult:
        result = exec_util.run_with_runner(
            exec_util.CommandRequest(
                argv=tuple(argv),
                cwd=self.data_dir,
                timeout_seconds=SQL_TIMEOUT_SECONDS,
            ),
            runner=self.runner,
        )
        if result is None:
            raise DependencyMissingError(
                "missing required command: dolt",
                recovery_hint="install dolt and make sure it is on PATH",
            )
        return result

    def sql(self, script: str, *, database: str | None = None) -> exec_util.CommandResult:
        """Run a SQL script, retrying transient failures with capped backoff."""
        if database:
            script = f"USE `{validate_database_name(database)}`; {script}"
        argv = ["dolt", "sql", "-q", script]
        backoff = RETRY_INITIAL_BACKOFF_SECONDS
        for attempt in range(1, RETRY_ATTEMPTS + 1):
            result = self._run_sql(argv)
            if result.ok:
                return result
            if attempt == RETRY_ATTEMPTS or not is_retryable(result.detail):
                raise ExternalCommandFailedError(exec_util.failure_detail(result))
            log.debug(f"dolt sql transient failure (attempt {attempt}); retrying in {backoff}s")
            self.sleep(backoff)
            backoff = min(backoff * 2, RETRY_MAX_BACKOFF_SECONDS)
        raise AssertionError("unreachable")

    def connection_count(self) -> int:
        result = self._run_sql(["dolt", "sql", "-r", "csv", "-q", PROCESSLIST_QUERY])
        if not result.ok:
            raise ExternalCommandFailedError(exec_util.failure_detail(result))
        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if len(lines) < 2:
            raise ExternalCommandFailedError(f"unexpected PROCESSLIST output: {result.stdout!r}")
        try:
            return int(lines[-1])
        except ValueError as exc:
            raise ExternalCommandFailedError(
                f"unexpected PROCESSLIST output: {result.stdout!r}"
            ) from exc

    def capacity(self) -> CapacityReport:
        """Admission check; any failure to measure counts as no capacity."""
        try:
            active = self.connection_count()
        except (ExternalCommandFailedError, DependencyMissingError) as exc:
            log.warning(f"could not measure database connections: {exc}")
            return CapacityReport(active=-1, max_connections=self.max_connections, has_capacity=False)
        threshold = capacity_threshold(self.max_connections)
        return CapacityReport(
            active=active,
            max_connections=self.max_connections,
            has_capacity=active < threshold,
        )

    def commit_working_set(self, database: str, message: str) -> None:
        self.sql(
            "CALL DOLT_ADD('-A'); "
            f"CALL DOLT_COMMIT('--allow-empty', '-m', {_sql_quote(message)});",
            database=database,
        )

    def create_branch(self, database: str, branch: str) -> None:
        validate_branch_name(branch)
        self.sql(f"CALL DOLT_BRANCH({_sql_quote(branch)});", database=database)

    def merge_branch(self, database: str, branch: str) -> None:
        """Commit the branch's working set and merge it into main.

        Conflicts are resolved in favour of the branch.
        """
        validate_branch_name(branch)
        quoted = _sql_quote(branch)
        message = _sql_quote(f"worker changes from {branch}")
        script = (
            f"CALL DOLT_CHECKOUT({quoted}); "
            "CALL DOLT_ADD('-A'); "
            f"CALL DOLT_COMMIT('--allow-empty', '-m', {message}); "
            f"CALL DOLT_CHECKOUT('{MAIN_BRANCH}'); "
            f"CALL DOLT_MERGE({quoted});"
        )
        try:
            self.sql(script, database=database)
            return
        except ExternalCommandFailedError as exc:
            if MERGE_CONFLICT_MARKER not in str(exc).lower():
                raise
            log.warning(f"merge conflict on {branch}; resolving with --theirs")
        resolve = (
            "SET @@autocommit = 0; "
            f"CALL DOLT_MERGE({quoted}); "
            "CALL DOLT_CONFLICTS_RESOLVE('--theirs', '.'); "
            f"CALL DOLT_COMMIT('-m', {_sql_quote(f'merge {branch} (auto-resolved conflicts)')});"
        )
        self.sql(resolve, database=database)

    def delete_branch(self, database: str, branch: str) -> None:
        """Delete a branch; an already-missing branch is not an error."""
        validate_branch_name(branch)
        try:
            self.sql(f"CALL DOLT_BRANCH('-D', {_sql_quote(branch)});", database=database)
        except ExternalCommandFailedError as exc:
            detail = str(exc).lower()
            if any(marker in detail for marker in _MISSING_BRANCH_MARKERS):
                log.debug(f"database branch {branch} already gone")
                return
            raise
