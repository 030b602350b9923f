"""Implementation for the ``rigfleet server`` commands."""

from __future__ import annotations

import os
import subprocess
import sys
import tempfile
from pathlib import Path

from .. import log, paths
from ..coordinator import ServerLease, launch_dolt_server, read_server_record
from ..dbserver import DoltServer, tcp_reachable
from ..io import die, say
from ..services.errors import ServiceFailure
from .resolve import fail, resolve_town


def status(args: object) -> None:
    """Show database server reachability, capacity and lease record."""
    town = resolve_town()
    server = town.config.db_server
    say(f"Server: {server.host}:{server.port}")
    dolt = DoltServer(
        data_dir=town.db_data_dir(),
        host=server.host,
        port=server.port,
        max_connections=server.max_connections,
    )
    if not dolt.is_reachable():
        say("State: unreachable")
    else:
        report = dolt.capacity()
        active = "unknown" if report.active < 0 else str(report.active)
        say(f"State: running ({active}/{report.max_connections} connections)")
        if not report.has_capacity:
            say("Admission: closed (at capacity)")
    try:
        record = read_server_record(paths.dbserver_pid_path(town.root))
    except ServiceFailure as exc:
        fail(exc)
    if record is None:
        say("Lease record: none")
    else:
        say(f"Lease record: pid {record.pid}, data dir {record.data_dir or '-'}")


def run(args: object) -> None:
    """Run a command while holding a lease on the database server."""
    command = list(getattr(args, "command", None) or [])
    if not command:
        die("a command to run is required", hint="rigfleet server run -- <command>...")
    town = resolve_town()
    server = town.config.db_server
    ephemeral = bool(getattr(args, "ephemeral", False))
    data_dir = Path(tempfile.mkdtemp(prefix="rigfleet-dolt-")) if ephemeral else town.db_data_dir()
    lease = ServerLease(
        paths.dbserver_lock_path(town.root),
        paths.dbserver_pid_path(town.root),
        data_dir,
        port_ready=lambda: tcp_reachable(server.host, server.port),
        launch=lambda directory: launch_dolt_server(directory, server.host, server.port),
        remove_data_dir=ephemeral,
    )
    try:
        lease.acquire()
    except ServiceFailure as exc:
        fail(exc)
    try:
        log.debug(f"running {' '.join(command)} under the server lease")
        env = dict(os.environ)
        env.setdefault("BEADS_DIR", str(town.beads_dir()))
        try:
            result = subprocess.run(command, env=env, check=False)
        except FileNotFoundError:
            die(f"command not found: {command[0]}")
    finally:
        lease.release()
    if result.returncode != 0:
        sys.exit(result.returncode)
