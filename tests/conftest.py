# ruff: noqa: E402

import builtins
import sys
from pathlib import Path

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import rigfleet.io as io
import rigfleet.log as log

PACKAGE = ROOT / "src" / "rigfleet"
DOCTEST_MODULES = {
    PACKAGE / "__init__.py",
    PACKAGE / "beads.py",
    PACKAGE / "boundary.py",
    PACKAGE / "config.py",
    PACKAGE / "dbserver.py",
    PACKAGE / "exec.py",
    PACKAGE / "identity.py",
    PACKAGE / "io.py",
    PACKAGE / "log.py",
    PACKAGE / "mail.py",
    PACKAGE / "models.py",
    PACKAGE / "paths.py",
    PACKAGE / "queue.py",
    PACKAGE / "resolver.py",
    PACKAGE / "scoring.py",
    PACKAGE / "startup.py",
    PACKAGE / "commands" / "dispatch.py",
    PACKAGE / "dispatch" / "convoy.py",
    PACKAGE / "dispatch" / "formula.py",
    PACKAGE / "dispatch" / "orchestrator.py",
    PACKAGE / "term" / "tmux.py",
    PACKAGE / "worker" / "completion.py",
    PACKAGE / "worker" / "guard.py",
    PACKAGE / "worker" / "lifecycle.py",
    PACKAGE / "worker" / "names.py",
    PACKAGE / "worker" / "nuke.py",
    PACKAGE / "worker" / "rollback.py",
    PACKAGE / "worker" / "spawner.py",
}


@pytest.fixture(autouse=True)
def _default_patches(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(io, "_use_questionary", lambda: False)
    monkeypatch.setattr(log, "_configured_level", None)
    monkeypatch.setattr(log, "_no_color_override", None)
    monkeypatch.delenv("RIGFLEET_TOWN_ROOT", raising=False)
    monkeypatch.delenv("RIGFLEET_ROLE", raising=False)
    monkeypatch.delenv("RIGFLEET_WORKER", raising=False)
    monkeypatch.delenv("BD_ACTOR", raising=False)

    def fail_input(prompt: str = "") -> str:
        raise AssertionError("prompted unexpectedly")

    monkeypatch.setattr(builtins, "input", fail_input)


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
