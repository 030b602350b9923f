from __future__ import annotations

from pathlib import Path
from unittest.mock import patch

import pytest

from rigfleet.boundary import MERGE_REQUEST_TYPE
from rigfleet.ports import CapacityReport, SandboxStatus
from rigfleet.services.errors import (
    DependencyMissingError,
    ExternalCommandFailedError,
    IoFailedError,
    PreconditionFailedError,
)
from rigfleet.worker.manager import WorkerManager
from rigfleet.worker.spawner import SpawnOptions, WorkerSpawner
from tests.rigfleet.helpers import NOW_TS, add_worker, events_of, make_ctx


def test_unreachable_server_refuses_before_allocating(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    ctx.db.reachable = False

    with pytest.raises(DependencyMissingError, match="unreachable"):
        WorkerSpawner(ctx).spawn("web", SpawnOptions())

    assert ctx.sandboxes.added == []
    assert ctx.workers.names("web") == []


def test_saturated_server_refuses(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    ctx.db.report = CapacityReport(active=50, max_connections=50, has_capacity=False)

    with pytest.raises(PreconditionFailedError, match="50/50"):
        WorkerSpawner(ctx).spawn("web", SpawnOptions())

    assert ctx.sandboxes.added == []


def test_rig_ceiling_refuses_extra_workers(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path, max_workers=1)
    add_worker(ctx, "web", "nux")

    with pytest.raises(PreconditionFailedError, match="worker ceiling"):
        WorkerSpawner(ctx).spawn("web", SpawnOptions())


def test_spawn_provisions_sandbox_record_and_agent(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    spawned = WorkerSpawner(ctx).spawn("web", SpawnOptions(hook_bead="wb-1"))

    assert spawned.name == "furiosa"
    assert spawned.agent_id == "web/polecats/furiosa"
    assert spawned.branch == "polecat/furiosa"
    assert spawned.hook_set_atomically
    assert not spawned.repaired
    record = ctx.workers.load("web", "furiosa")
    assert record is not None
    assert record.issue == "wb-1"
    bead = ctx.store.items[spawned.agent_bead_id]
    assert bead.field("hook_bead") == "wb-1"
    assert bead.field("agent_state") == "spawning"


def test_allocation_skips_names_in_use(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "furiosa")

    assert WorkerSpawner(ctx).allocate("web") == "nux"


def test_allocate_many_returns_distinct_names(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")

    names = WorkerSpawner(ctx).allocate_many("web", 3)

    assert names == ["furiosa", "slit", "rictus"]


def test_repair_refuses_uncommitted_work_unless_forced(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.sandboxes.statuses["nux"] = SandboxStatus(uncommitted=("app.py",))
    spawner = WorkerSpawner(ctx)

    with pytest.raises(PreconditionFailedError, match="uncommitted work"):
        spawner.spawn("web", SpawnOptions(name="nux"))
    repaired = spawner.spawn("web", SpawnOptions(name="nux", force=True))

    assert repaired.repaired


def test_repair_refuses_open_merge_request_unless_forced(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.store.add_item(
        "hq-mr",
        issue_type=MERGE_REQUEST_TYPE,
        description="branch: polecat/nux\nworker: nux\nrig: web\n",
    )
    spawner = WorkerSpawner(ctx)

    with pytest.raises(PreconditionFailedError, match="hq-mr"):
        spawner.spawn("web", SpawnOptions(name="nux"))

    assert spawner.spawn("web", SpawnOptions(name="nux", force=True)).repaired


def test_repair_reuses_the_existing_agent_bead(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    before = ctx.store.find_agent("web/polecats/nux")
    assert before is not None

    repaired = WorkerSpawner(ctx).spawn("web", SpawnOptions(name="nux"))

    assert repaired.agent_bead_id == before.id
    assert len(ctx.store.by_title("web/polecats/nux")) == 1


def test_create_branch_commits_first_and_records_branch(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    spawner = WorkerSpawner(ctx)
    spawned = spawner.spawn("web", SpawnOptions())
    events_of(ctx).clear()

    with_branch = spawner.create_branch(spawned)

    expected = f"polecat-furiosa-{NOW_TS}"
    assert with_branch.db_branch == expected
    assert events_of(ctx) == ["commit web", f"create_branch {expected}"]
    record = ctx.workers.load("web", "furiosa")
    assert record is not None
    assert record.db_branch == expected


def test_start_session_sets_env_and_marks_working(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    spawner = WorkerSpawner(ctx)
    spawned = spawner.create_branch(spawner.spawn("web", SpawnOptions(hook_bead="wb-1")))

    pane = spawner.start_session(spawned, SpawnOptions(hook_bead="wb-1", account="work"))

    assert pane == "%rf-web-furiosa"
    name, work_dir, command, env = ctx.sessions.started[0]
    assert name == "rf-web-furiosa"
    assert work_dir == spawned.clone_path
    assert "wb-1" in command[-1]
    assert env["RIGFLEET_DB_BRANCH"] == spawned.db_branch
    assert env["RIGFLEET_ACCOUNT"] == "work"
    assert ctx.store.items[spawned.agent_bead_id].field("agent_state") == "working"


def test_start_session_is_idempotent(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    spawner = WorkerSpawner(ctx)
    spawned = spawner.spawn("web", SpawnOptions())

    spawner.start_session(spawned, SpawnOptions())
    spawner.start_session(spawned, SpawnOptions())

    assert len(ctx.sessions.started) == 1


def test_failed_provision_discards_fresh_sandbox_and_record(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    ctx.store.fail("create")
    spawner = WorkerSpawner(ctx)

    with pytest.raises(ExternalCommandFailedError):
        spawner.spawn("web", SpawnOptions(hook_bead="wb-1"))

    assert ctx.workers.load("web", "furiosa") is None
    assert ctx.workers.names("web") == []
    assert ctx.sandboxes.removed == [ctx.workers.sandbox_path("web", "furiosa")]
    assert spawner.allocate("web") == "furiosa"


def test_failed_repair_keeps_existing_worker(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.store.fail("update_fields")

    with pytest.raises(ExternalCommandFailedError):
        WorkerSpawner(ctx).spawn("web", SpawnOptions(name="nux"))

    assert ctx.workers.load("web", "nux") is not None
    assert ctx.sandboxes.removed == []


def test_unrecorded_branch_is_deleted_when_record_write_fails(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    spawner = WorkerSpawner(ctx)
    spawned = spawner.spawn("web", SpawnOptions())

    with patch.object(
        WorkerManager, "update", side_effect=IoFailedError("failed to write record")
    ):
        with pytest.raises(IoFailedError):
            spawner.create_branch(spawned)

    assert ctx.db.branches == set()
    assert ctx.db.deleted == [f"polecat-furiosa-{NOW_TS}"]
