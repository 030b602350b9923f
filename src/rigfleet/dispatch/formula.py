"""Formula instantiation: cook, wisp, then bond onto a work item."""

from __future__ import annotations

from dataclasses import dataclass

from .. import log
from ..ports import WorkStore
from ..services.errors import ValidationFailedError

DEFAULT_WORK_FORMULA = "mol-polecat-work"


@dataclass(frozen=True)
class FormulaPlan:
    """Which formula (if any) to instantiate for one dispatch."""

    name: str | None
    explicit: bool = False


@dataclass(frozen=True)
class Instantiated:
    formula: str
    wisp_id: str
    molecule_id: str | None = None


def choose_formula(
    *,
    explicit: str | None,
    worker_target: bool,
    hook_raw: bool,
    formula_only: bool,
) -> FormulaPlan:
    """Decide the formula for a dispatch.

    Example:
        >>> choose_formula(explicit=None, worker_target=True, hook_raw=False, formula_only=False)
        FormulaPlan(name='mol-polecat-work', explicit=False)
        >>> choose_formula(explicit=None, worker_target=True, hook_raw=True, formula_only=False).name is None
        True
    """
    if explicit:
        return FormulaPlan(name=explicit, explicit=True)
    if worker_target and not hook_raw and not formula_only:
        return FormulaPlan(name=DEFAULT_WORK_FORMULA)
    return FormulaPlan(name=None)


def check_formula(store: WorkStore, plan: FormulaPlan) -> FormulaPlan:
    """Verify the planned formula exists.

    A missing explicit formula is a validation error; a missing default
    formula only drops the instantiation step.
    """
    if plan.name is None or store.formula_exists(plan.name):
        return plan
    if plan.explicit:
        raise ValidationFailedError(
            f"formula not found: {plan.name}",
            recovery_hint="list formulas with `bd formula list`",
        )
    log.debug(f"default formula {plan.name} not installed; hooking the raw item")
    return FormulaPlan(name=None)


def formula_variables(item_id: str | None, args: str | None) -> dict[str, str]:
    """Variables passed to `bd mol wisp`.

    Example:
        >>> formula_variables("wb-1", "focus on tests")
        {'issue': 'wb-1', 'args': 'focus on tests'}
    """
    variables: dict[str, str] = {}
    if item_id:
        variables["issue"] = item_id
    if args:
        variables["args"] = args
    return variables


def instantiate(
    store: WorkStore,
    formula: str,
    *,
    item_id: str | None,
    args: str | None = None,
) -> Instantiated:
    """Cook ``formula``, create a wisp, and bond it to ``item_id`` if given."""
    store.cook(formula)
    wisp_id = store.wisp(formula, formula_variables(item_id, args))
    log.debug(f"instantiated {formula} as {wisp_id}")
    if item_id is None:
        return Instantiated(formula=formula, wisp_id=wisp_id)
    molecule_id = store.bond(wisp_id, item_id)
    log.debug(f"bonded {wisp_id} to {item_id} as {molecule_id}")
    return Instantiated(formula=formula, wisp_id=wisp_id, molecule_id=molecule_id)
