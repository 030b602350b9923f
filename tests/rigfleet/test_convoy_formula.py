from __future__ import annotations

import pytest

from rigfleet.dispatch.convoy import ensure_convoy
from rigfleet.dispatch.formula import (
    DEFAULT_WORK_FORMULA,
    FormulaPlan,
    check_formula,
    choose_formula,
    instantiate,
)
from rigfleet.services.errors import ExternalCommandFailedError, ValidationFailedError
from tests.rigfleet.helpers import FakeStore


def test_convoy_is_created_once_and_then_reused() -> None:
    store = FakeStore()
    item = store.add_item("wb-1", title="Fix login")

    first, created = ensure_convoy(store, item)
    second, created_again = ensure_convoy(store, item)

    assert created
    assert not created_again
    assert first == second
    assert store.dependencies == [(first, "wb-1", "tracks")]


def test_orphan_convoy_is_closed_when_tracking_fails() -> None:
    store = FakeStore()
    item = store.add_item("wb-1")
    store.fail("add_dependency")

    with pytest.raises(ExternalCommandFailedError, match="injected add_dependency failure"):
        ensure_convoy(store, item)

    [convoy] = store.by_title("Work: wb-1")
    assert convoy.is_closed


@pytest.mark.parametrize(
    ("kwargs", "expected"),
    [
        ({"explicit": "mol-x", "worker_target": False, "hook_raw": True, "formula_only": False}, FormulaPlan("mol-x", explicit=True)),
        ({"explicit": None, "worker_target": True, "hook_raw": False, "formula_only": False}, FormulaPlan(DEFAULT_WORK_FORMULA)),
        ({"explicit": None, "worker_target": False, "hook_raw": False, "formula_only": False}, FormulaPlan(None)),
        ({"explicit": None, "worker_target": True, "hook_raw": True, "formula_only": False}, FormulaPlan(None)),
    ],
)
def test_choose_formula(kwargs: dict[str, object], expected: FormulaPlan) -> None:
    assert choose_formula(**kwargs) == expected


def test_missing_default_formula_is_dropped() -> None:
    assert check_formula(FakeStore(), FormulaPlan(DEFAULT_WORK_FORMULA)) == FormulaPlan(None)


def test_missing_explicit_formula_is_an_error() -> None:
    with pytest.raises(ValidationFailedError, match="formula not found: mol-x"):
        check_formula(FakeStore(), FormulaPlan("mol-x", explicit=True))


def test_instantiate_cooks_wisps_and_bonds() -> None:
    store = FakeStore()
    store.add_item("wb-1")

    made = instantiate(store, "mol-polecat-work", item_id="wb-1", args="be brief")

    assert store.cooked == ["mol-polecat-work"]
    assert store.wisps == [("mol-polecat-work", {"issue": "wb-1", "args": "be brief"})]
    assert store.bonds == [(made.wisp_id, "wb-1")]
    assert made.molecule_id == f"{made.wisp_id}.bond"


def test_instantiate_without_item_skips_bond() -> None:
    store = FakeStore()

    made = instantiate(store, "mol-patrol", item_id=None)

    assert made.molecule_id is None
    assert store.bonds == []
