from __future__ import annotations

import shutil
from pathlib import Path

from rigfleet.ports import SandboxStatus
from rigfleet.worker.nuke import WorkerRef
from rigfleet.worker.stale import assess_worker, cleanup_stale, detect_stale
from tests.rigfleet.helpers import add_worker, make_ctx

NUX = WorkerRef(rig="web", name="nux")


def test_running_session_is_never_stale(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux", session=True)
    ctx.sandboxes.behind["nux"] = 500

    report = assess_worker(ctx, NUX, threshold=20)

    assert not report.stale
    assert report.reason == "session running"


def test_removed_sandbox_is_stale(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    shutil.rmtree(add_worker(ctx, "web", "nux"))

    report = assess_worker(ctx, NUX, threshold=20)

    assert report.stale
    assert report.reason == "sandbox removed"


def test_uncommitted_work_is_never_stale(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.sandboxes.behind["nux"] = 500
    ctx.sandboxes.statuses["nux"] = SandboxStatus(uncommitted=("notes.md",))

    assert not assess_worker(ctx, NUX, threshold=20).stale


def test_missing_agent_bead_is_stale(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    bead = ctx.store.find_agent("web/polecats/nux")
    assert bead is not None
    ctx.store.close(bead.id)

    report = assess_worker(ctx, NUX, threshold=20)

    assert report.stale
    assert report.reason == "no agent bead"


def test_far_behind_is_stale_at_threshold(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.sandboxes.behind["nux"] = 20

    report = assess_worker(ctx, NUX, threshold=20)

    assert report.stale
    assert report.behind == 20
    assert "20 commits behind main" in report.reason


def test_recent_worker_is_kept(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    add_worker(ctx, "web", "nux")
    ctx.sandboxes.behind["nux"] = 19

    report = assess_worker(ctx, NUX, threshold=20)

    assert not report.stale
    assert report.reason == "recent"


def test_cleanup_only_nukes_stale_workers(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    old = add_worker(ctx, "web", "nux")
    fresh = add_worker(ctx, "web", "slit")
    ctx.sandboxes.behind["nux"] = 40

    reports = detect_stale(ctx, "web")
    nuked, failures = cleanup_stale(ctx, reports)

    assert [report.ref.name for report in reports if report.stale] == ["nux"]
    assert nuked == ["web/nux"]
    assert failures == []
    assert not old.exists()
    assert fresh.exists()


def test_cleanup_skips_workers_with_an_open_hook(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    sandbox = add_worker(ctx, "web", "nux", hook="wb-1")
    ctx.store.add_item("wb-1", status="hooked", assignee="web/polecats/nux")
    ctx.sandboxes.behind["nux"] = 40

    nuked, failures = cleanup_stale(ctx, detect_stale(ctx, "web"))

    assert nuked == []
    assert len(failures) == 1
    assert failures[0].startswith("web/nux:")
    assert sandbox.exists()
