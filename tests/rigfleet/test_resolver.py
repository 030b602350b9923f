from __future__ import annotations

from pathlib import Path

import pytest

from rigfleet import paths
from rigfleet.identity import AgentAddress
from rigfleet.resolver import (
    PoolTarget,
    ResolveOptions,
    RigTarget,
    RoleTarget,
    SelfTarget,
    TargetResolver,
    WorkerTarget,
    classify_target,
    start_helper,
    target_rig,
)
from rigfleet.services.errors import PreconditionFailedError, ValidationFailedError
from tests.rigfleet.helpers import add_worker, make_ctx, make_town


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, SelfTarget()),
        ("", SelfTarget()),
        (".", SelfTarget()),
        ("deacon/dogs", PoolTarget()),
        ("deacon/dogs/rex", PoolTarget(name="rex")),
        ("web", RigTarget(rig="web")),
        ("web/", RigTarget(rig="web")),
        ("mayor", RoleTarget(address=AgentAddress("mayor"))),
        ("deacon", RoleTarget(address=AgentAddress("deacon"))),
        ("web/witness", RoleTarget(address=AgentAddress("witness", rig="web"))),
        ("api/refinery", RoleTarget(address=AgentAddress("refinery", rig="api"))),
        ("web/crew/joe", RoleTarget(address=AgentAddress("crew", rig="web", name="joe"))),
        ("web/polecats/nux", WorkerTarget(rig="web", name="nux")),
        ("web/nux", WorkerTarget(rig="web", name="nux")),
    ],
)
def test_classify_target(tmp_path: Path, raw: str | None, expected: object) -> None:
    town = make_town(tmp_path)

    assert classify_target(raw, town) == expected


@pytest.mark.parametrize(
    ("raw", "message"),
    [
        ("nowhere", "unknown target"),
        ("ghost/witness", "rig not found: ghost"),
        ("ghost/nux", "rig not found: ghost"),
        ("deacon/dogs/a/b", "invalid helper target"),
    ],
)
def test_classify_target_errors(tmp_path: Path, raw: str, message: str) -> None:
    town = make_town(tmp_path)

    with pytest.raises(ValidationFailedError, match=message):
        classify_target(raw, town)


def test_target_rig_for_each_variant() -> None:
    assert target_rig(RigTarget(rig="web")) == "web"
    assert target_rig(WorkerTarget(rig="api", name="nux")) == "api"
    assert target_rig(RoleTarget(address=AgentAddress("witness", rig="web"))) == "web"
    assert target_rig(RoleTarget(address=AgentAddress("mayor"))) is None
    assert target_rig(SelfTarget()) is None


def test_resolve_self_uses_detected_identity(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path, env={"RIGFLEET_ROLE": "web/crew/joe"})

    resolution = TargetResolver(ctx).resolve(SelfTarget(), ResolveOptions())

    assert resolution.agent_id == "web/crew/joe"
    assert resolution.is_self
    assert resolution.delivery_channel is None


def test_resolve_role_without_session_has_no_channel(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    resolution = TargetResolver(ctx).resolve(
        RoleTarget(address=AgentAddress("witness", rig="web")), ResolveOptions()
    )

    assert resolution.agent_id == "web/witness"
    assert resolution.delivery_channel is None
    assert resolution.work_dir == tmp_path / "web" / "witness"


def test_resolve_role_with_session_delivers_to_it(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    ctx.sessions.live.add("rf-mayor")

    resolution = TargetResolver(ctx).resolve(
        RoleTarget(address=AgentAddress("mayor")), ResolveOptions()
    )

    assert resolution.delivery_channel == "rf-mayor"


def test_resolve_existing_worker(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    sandbox = add_worker(ctx, "web", "nux", session=True)

    resolution = TargetResolver(ctx).resolve(WorkerTarget(rig="web", name="nux"), ResolveOptions())

    assert resolution.agent_id == "web/polecats/nux"
    assert resolution.delivery_channel == "rf-web-nux"
    assert resolution.work_dir == sandbox
    assert resolution.spawned is None


def test_resolve_missing_worker_requires_create(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    with pytest.raises(ValidationFailedError) as excinfo:
        TargetResolver(ctx).resolve(WorkerTarget(rig="web", name="ghost"), ResolveOptions())

    assert "--create" in (excinfo.value.recovery_hint or "")
    assert ctx.sandboxes.added == []


def test_resolve_missing_worker_with_create_spawns_that_name(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    resolution = TargetResolver(ctx).resolve(
        WorkerTarget(rig="web", name="toast"), ResolveOptions(create=True, hook_bead="wb-1")
    )

    assert resolution.spawned is not None
    assert resolution.spawned.name == "toast"
    assert resolution.hook_set_atomically


def test_resolve_rig_dry_run_plans_without_spawning(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    resolution = TargetResolver(ctx).resolve(RigTarget(rig="web"), ResolveOptions(dry_run=True))

    assert resolution.planned_name == "furiosa"
    assert resolution.agent_id == "web/polecats/furiosa"
    assert resolution.spawned is None
    assert ctx.sandboxes.added == []
    assert ctx.store.writes == []


def _make_dogs(root: Path, *names: str) -> None:
    for name in names:
        (paths.dogs_dir(root) / name).mkdir(parents=True)


def test_pool_picks_first_idle_helper(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    _make_dogs(tmp_path, "ace", "rex", "bolt")
    ctx.sessions.live.add("rf-dog-ace")
    ctx.store.ensure_agent("deacon/dogs/bolt", role="dog", hook_bead="hq-99")

    resolution = TargetResolver(ctx).resolve(PoolTarget(), ResolveOptions())

    assert resolution.agent_id == "deacon/dogs/rex"
    assert resolution.delayed_start is not None
    assert resolution.delayed_start.work_dir == paths.dogs_dir(tmp_path) / "rex"
    assert ctx.sessions.started == []


def test_pool_without_idle_helper_fails(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    _make_dogs(tmp_path, "ace")
    ctx.sessions.live.add("rf-dog-ace")

    with pytest.raises(PreconditionFailedError, match="no idle helper"):
        TargetResolver(ctx).resolve(PoolTarget(), ResolveOptions())


def test_named_busy_helper_needs_force(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    _make_dogs(tmp_path, "rex")
    ctx.sessions.live.add("rf-dog-rex")
    resolver = TargetResolver(ctx)

    with pytest.raises(PreconditionFailedError, match="busy"):
        resolver.resolve(PoolTarget(name="rex"), ResolveOptions())
    forced = resolver.resolve(PoolTarget(name="rex"), ResolveOptions(force=True))

    assert forced.agent_id == "deacon/dogs/rex"


def test_named_missing_helper_is_validation_error(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)

    with pytest.raises(ValidationFailedError, match="helper not found"):
        TargetResolver(ctx).resolve(PoolTarget(name="rex"), ResolveOptions())


def test_start_helper_skips_running_session(tmp_path: Path) -> None:
    ctx = make_ctx(tmp_path)
    _make_dogs(tmp_path, "rex")
    resolution = TargetResolver(ctx).resolve(PoolTarget(name="rex"), ResolveOptions())
    assert resolution.delayed_start is not None

    assert start_helper(ctx, resolution.delayed_start, issue="wb-1") is True
    assert start_helper(ctx, resolution.delayed_start, issue="wb-1") is False

    name, _work_dir, command, env = ctx.sessions.started[0]
    assert name == "rf-dog-rex"
    assert "wb-1" in command[-1]
    assert env["RIGFLEET_ROLE"] == "deacon/dogs/rex"
