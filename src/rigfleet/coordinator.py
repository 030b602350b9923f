"""Reader/writer lease on the shared database server process.

Any number of independent processes may use one server. The protocol uses a
single ``flock`` on a lock file:

1. Take the lock shared. If the server port already answers, join it.
2. Otherwise swap to an exclusive lock and check the port again. Still down:
   launch the server, record ``PID\\nDATA_DIR\\n`` in a side file and wait
   (bounded) for the port. Then downgrade to shared and hold it for the
   lease lifetime.
3. On release, try a non-blocking upgrade to exclusive. Success proves no
   other holder remains, so this process tears the server down (kill the
   recorded PID, remove its data directory). Failure means another holder is
   still using the server: just drop the shared lock.

A server started by something else (no side file) is never killed.
"""

from __future__ import annotations

import fcntl
import os
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Protocol, TextIO

from . import log
from .services.errors import DependencyMissingError, IoFailedError

READY_TIMEOUT_SECONDS = 30.0
READY_POLL_SECONDS = 0.5


class ServerProcess(Protocol):
    pid: int

    def poll(self) -> int | None: ...

    def terminate(self) -> None: ...


@dataclass(frozen=True)
class ServerRecord:
    pid: int
    data_dir: Path | None


def write_server_record(path: Path, pid: int, data_dir: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid}\n{data_dir}\n", encoding="utf-8")


def read_server_record(path: Path) -> ServerRecord | None:
    """Parse the ``PID\\nDATA_DIR\\n`` side file; ``None`` if absent or garbled."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise IoFailedError(f"failed to read {path}: {exc}") from exc
    if not lines:
        return None
    try:
        pid = int(lines[0].strip())
    except ValueError:
        return None
    data_dir = Path(lines[1].strip()) if len(lines) > 1 and lines[1].strip() else None
    return ServerRecord(pid=pid, data_dir=data_dir)


def launch_dolt_server(data_dir: Path, host: str, port: int) -> ServerProcess:
    """Start ``dolt sql-server`` detached from this process group."""
    data_dir.mkdir(parents=True, exist_ok=True)
    try:
        return subprocess.Popen(
            [
                "dolt",
                "sql-server",
                "--host",
                host,
                "--port",
                str(port),
                "--data-dir",
                str(data_dir),
            ],
            cwd=data_dir,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise DependencyMissingError(
            "missing required command: dolt",
            recovery_hint="install dolt and make sure it is on PATH",
        ) from exc


def _kill_pid(pid: int) -> None:
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass


class ServerLease:
    """Context manager implementing the shared-server lease."""

    def __init__(
        self,
        lock_path: Path,
        pid_path: Path,
        data_dir: Path,
        *,
        port_ready: Callable[[], bool],
        launch: Callable[[Path], ServerProcess],
        remove_data_dir: bool = True,
        ready_timeout: float = READY_TIMEOUT_SECONDS,
        poll_interval: float = READY_POLL_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        kill: Callable[[int], None] = _kill_pid,
    ) -> None:
        self.lock_path = lock_path
        self.pid_path = pid_path
        self.data_dir = data_dir
        self._port_ready = port_ready
        self._launch = launch
        self._remove_data_dir = remove_data_dir
        self._ready_timeout = ready_timeout
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._kill = kill
        self._handle: TextIO | None = None
        self.started = False

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> ServerLease:
        if self._handle is not None:
            return self
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_SH)
            if self._port_ready():
                log.debug("database server already running; joining")
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
                if self._port_ready():
                    log.debug("database server started by another holder; joining")
                else:
                    self._start_server()
                fcntl.flock(handle.fileno(), fcntl.LOCK_SH)
        except BaseException:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            raise
        self._handle = handle
        return self

    def _start_server(self) -> None:
        process = self._launch(self.data_dir)
        write_server_record(self.pid_path, process.pid, self.data_dir)
        log.info(f"started database server (pid {process.pid})")
        deadline = self._clock() + self._ready_timeout
        while not self._port_ready():
            if process.poll() is not None:
                self._discard_record()
                raise DependencyMissingError(
                    "database server exited during startup",
                    recovery_hint=f"check the server data directory {self.data_dir}",
                )
            if self._clock() >= deadline:
                process.terminate()
                self._discard_record()
                raise DependencyMissingError(
                    f"database server not ready after {self._ready_timeout:.0f}s"
                )
            self._sleep(self._poll_interval)
        self.started = True

    def _discard_record(self) -> None:
        self.pid_path.unlink(missing_ok=True)

    def release(self) -> bool:
        """Drop the lease; returns ``True`` when this call tore the server down."""
        handle = self._handle
        if handle is None:
            return False
        self._handle = None
        torn_down = False
        try:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except OSError:
                log.debug("database server still leased by another process")
                return False
            record = read_server_record(self.pid_path)
            if record is None:
                log.debug("no server record; leaving external server running")
                return False
            self._kill(record.pid)
            if self._remove_data_dir and record.data_dir is not None:
                shutil.rmtree(record.data_dir, ignore_errors=True)
            self._discard_record()
            torn_down = True
            log.info(f"stopped database server (pid {record.pid})")
            return True
        finally:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
            handle.close()
            if not torn_down:
                log.trace("released shared server lease")

    def __enter__(self) -> ServerLease:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
