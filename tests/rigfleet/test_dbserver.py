from __future__ import annotations

from pathlib import Path

import pytest

from rigfleet.dbserver import DoltServer, capacity_threshold, validate_branch_name
from rigfleet.exec import CommandRequest, CommandResult
from rigfleet.services.errors import ExternalCommandFailedError, ValidationFailedError


class ScriptedRunner:
    """Return queued results in order; the last one repeats."""

    def __init__(self, *results: tuple[int, str, str]) -> None:
        self.results = list(results)
        self.requests: list[CommandRequest] = []

    def run(self, request: CommandRequest) -> CommandResult | None:
        self.requests.append(request)
        code, stdout, stderr = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return CommandResult(argv=request.argv, returncode=code, stdout=stdout, stderr=stderr)

    def scripts(self) -> list[str]:
        return [request.argv[-1] for request in self.requests]


def _server(tmp_path: Path, runner: ScriptedRunner, sleeps: list[float] | None = None) -> DoltServer:
    return DoltServer(
        data_dir=tmp_path,
        runner=runner,
        sleep=(sleeps.append if sleeps is not None else (lambda seconds: None)),
    )


def test_transient_failures_are_retried_with_backoff(tmp_path: Path) -> None:
    runner = ScriptedRunner(
        (1, "", "Error: serialization failure"),
        (1, "", "database is read only"),
        (0, "", ""),
    )
    sleeps: list[float] = []

    _server(tmp_path, runner, sleeps).create_branch("web", "polecat-nux-1")

    assert len(runner.requests) == 3
    assert sleeps == [0.5, 1.0]
    assert "DOLT_BRANCH('polecat-nux-1')" in runner.scripts()[-1]
    assert runner.scripts()[-1].startswith("USE `web`;")


def test_permanent_failure_is_not_retried(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "syntax error near CALL"))

    with pytest.raises(ExternalCommandFailedError, match="syntax error"):
        _server(tmp_path, runner).commit_working_set("web", "dispatch")

    assert len(runner.requests) == 1


def test_retries_give_up_after_five_attempts(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "lock wait timeout exceeded"))
    sleeps: list[float] = []

    with pytest.raises(ExternalCommandFailedError):
        _server(tmp_path, runner, sleeps).create_branch("web", "b1")

    assert len(runner.requests) == 5
    assert sleeps == [0.5, 1.0, 2.0, 4.0]


def test_commit_message_is_quoted(tmp_path: Path) -> None:
    runner = ScriptedRunner((0, "", ""))

    _server(tmp_path, runner).commit_working_set("web", "dispatch to o'brien")

    assert "'dispatch to o''brien'" in runner.scripts()[0]


def test_delete_branch_tolerates_missing_branch(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "branch not found: polecat-nux-1"))

    _server(tmp_path, runner).delete_branch("web", "polecat-nux-1")

    assert len(runner.requests) == 1


def test_delete_branch_surfaces_other_errors(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "permission denied"))

    with pytest.raises(ExternalCommandFailedError):
        _server(tmp_path, runner).delete_branch("web", "polecat-nux-1")


def test_merge_conflict_resolves_with_theirs(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "Merge conflict in issues"), (0, "", ""))

    _server(tmp_path, runner).merge_branch("web", "polecat-nux-1")

    assert len(runner.requests) == 2
    assert "DOLT_CONFLICTS_RESOLVE('--theirs', '.')" in runner.scripts()[1]


def test_capacity_below_threshold(tmp_path: Path) -> None:
    runner = ScriptedRunner((0, "cnt\n12\n", ""))

    report = _server(tmp_path, runner).capacity()

    assert report.active == 12
    assert report.has_capacity


def test_capacity_at_threshold_refuses(tmp_path: Path) -> None:
    runner = ScriptedRunner((0, f"cnt\n{capacity_threshold(50)}\n", ""))

    assert not _server(tmp_path, runner).capacity().has_capacity


def test_capacity_unknown_when_query_fails(tmp_path: Path) -> None:
    runner = ScriptedRunner((1, "", "connection refused"))

    report = _server(tmp_path, runner).capacity()

    assert report.active == -1
    assert not report.has_capacity


@pytest.mark.parametrize("branch", ["x'; DROP TABLE issues; --", "a b", ""])
def test_unsafe_branch_names_are_rejected(branch: str) -> None:
    with pytest.raises(ValidationFailedError):
        validate_branch_name(branch)
