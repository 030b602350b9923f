from __future__ import annotations

from rigfleet.services.errors import ExternalCommandFailedError
from rigfleet.worker.rollback import Compensation


def test_every_step_runs_even_after_a_failure() -> None:
    calls: list[str] = []

    def failing() -> None:
        calls.append("branch")
        raise ExternalCommandFailedError("dolt unreachable")

    undo = Compensation()
    undo.add("unhook", lambda: calls.append("unhook"))
    undo.add("delete branch", failing)
    undo.add("remove sandbox", lambda: calls.append("sandbox"))

    warnings = undo.run()

    assert calls == ["unhook", "branch", "sandbox"]
    assert warnings == ("delete branch: dolt unreachable",)


def test_empty_compensation_is_falsy() -> None:
    undo = Compensation()

    assert not undo
    assert undo.run() == ()
    undo.add("noop", lambda: None)
    assert undo
    assert undo.names() == ("noop",)
