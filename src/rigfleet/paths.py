"""Path helpers for locating the town root and per-rig directories.

A *town* is the directory that holds ``town.json`` and one directory per
rig::

    <town>/town.json
    <town>/.beads/                      work-item store (routes by id prefix)
    <town>/.runtime/dbserver.lock       server lease lock
    <town>/deacon/dogs/<name>/          pooled helpers
    <town>/<rig>/mayor/rig/             canonical clone
    <town>/<rig>/polecats/<name>/       worker sandboxes (git worktrees)
    <town>/<rig>/polecats/.state/       worker records
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from platformdirs import user_data_dir

APP_NAME = "rigfleet"
TOWN_ROOT_ENV = "RIGFLEET_TOWN_ROOT"
TOWN_CONFIG_FILENAME = "town.json"
BEADS_DIRNAME = ".beads"
RUNTIME_DIRNAME = ".runtime"
WORKERS_DIRNAME = "polecats"
WORKER_STATE_DIRNAME = ".state"
CANONICAL_CLONE_PARTS = ("mayor", "rig")
DOGS_PARTS = ("deacon", "dogs")
DBSERVER_LOCK_FILENAME = "dbserver.lock"
DBSERVER_PID_FILENAME = "dbserver.pid"


def default_town_root() -> Path:
    """Return the per-user fallback town directory.

    Example:
        >>> default_town_root().name == APP_NAME
        True
    """
    return Path(user_data_dir(APP_NAME))


def find_town_root(
    start: Path | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Locate the town root.

    Precedence: ``RIGFLEET_TOWN_ROOT``, then the nearest ancestor of
    ``start`` (default: cwd) containing ``town.json``, then the per-user
    data directory.

    Example:
        >>> find_town_root(env={TOWN_ROOT_ENV: "/srv/town"})
        PosixPath('/srv/town')
    """
    environ = os.environ if env is None else env
    override = environ.get(TOWN_ROOT_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / TOWN_CONFIG_FILENAME).is_file():
            return candidate
    return default_town_root()


def town_config_path(town_root: Path) -> Path:
    return town_root / TOWN_CONFIG_FILENAME


def town_beads_dir(town_root: Path) -> Path:
    return town_root / BEADS_DIRNAME


def runtime_dir(town_root: Path) -> Path:
    return town_root / RUNTIME_DIRNAME


def dbserver_lock_path(town_root: Path) -> Path:
    return runtime_dir(town_root) / DBSERVER_LOCK_FILENAME


def dbserver_pid_path(town_root: Path) -> Path:
    return runtime_dir(town_root) / DBSERVER_PID_FILENAME


def rig_dir(town_root: Path, rig: str) -> Path:
    return town_root / rig


def canonical_clone_dir(town_root: Path, rig: str) -> Path:
    """Return the rig clone that worker worktrees are forked from.

    Example:
        >>> canonical_clone_dir(Path("/t"), "web").as_posix()
        '/t/web/mayor/rig'
    """
    return rig_dir(town_root, rig).joinpath(*CANONICAL_CLONE_PARTS)


def workers_dir(town_root: Path, rig: str) -> Path:
    return rig_dir(town_root, rig) / WORKERS_DIRNAME


def worker_dir(town_root: Path, rig: str, name: str) -> Path:
    return workers_dir(town_root, rig) / name


def worker_state_path(town_root: Path, rig: str, name: str) -> Path:
    return workers_dir(town_root, rig) / WORKER_STATE_DIRNAME / f"{name}.json"


def dogs_dir(town_root: Path) -> Path:
    return town_root.joinpath(*DOGS_PARTS)
