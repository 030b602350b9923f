"""Batch dispatch: several work items to fresh workers in one rig.

Every item is validated and cross-rig checked before the first spawn, so a
bad id in the list never leaves half the batch dispatched. Worker names are
reserved up front because the spawns run concurrently.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field, replace

from .. import log
from ..boundary import ASSIGNED_STATUSES
from ..context import FleetContext
from ..identity import WORKER_ENV
from ..resolver import RigTarget, classify_target
from ..services.base import BaseService
from ..services.errors import PreconditionFailedError, ServiceFailure, ValidationFailedError
from ..worker.spawner import WorkerSpawner
from .orchestrator import DispatchOptions, DispatchOutcome, DispatchRequest, DispatchService

DEFAULT_MAX_CONCURRENT = 4


@dataclass(frozen=True)
class BatchRequest:
    subjects: tuple[str, ...]
    rig: str
    options: DispatchOptions = field(default_factory=DispatchOptions)
    max_concurrent: int = DEFAULT_MAX_CONCURRENT


@dataclass(frozen=True)
class BatchFailure:
    subject: str
    error: str


@dataclass(frozen=True)
class BatchOutcome:
    dispatched: tuple[DispatchOutcome, ...]
    failures: tuple[BatchFailure, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures


class BatchDispatchService(BaseService[BatchRequest, BatchOutcome]):
    def __init__(self, ctx: FleetContext) -> None:
        self._ctx = ctx

    def _validate(self, request: BatchRequest) -> None:
        ctx = self._ctx
        if not request.subjects:
            raise ValidationFailedError("no work items to dispatch")
        if request.max_concurrent < 1:
            raise ValidationFailedError("--max-concurrent must be at least 1")
        if ctx.env.get(WORKER_ENV):
            raise PreconditionFailedError("workers cannot dispatch work")
        if len(set(request.subjects)) != len(request.subjects):
            raise ValidationFailedError("duplicate work items in batch")
        target = classify_target(request.rig, ctx.town)
        if not isinstance(target, RigTarget):
            raise ValidationFailedError(
                f"batch dispatch needs a rig target, got {request.rig!r}",
                recovery_hint="dispatch to <rig> to spawn one worker per item",
            )
        force = request.options.force
        problems: list[str] = []
        for subject in request.subjects:
            item = ctx.store.show(subject)
            if item is None:
                problems.append(f"{subject}: not found")
                continue
            if item.is_closed:
                problems.append(f"{subject}: closed")
            elif item.status in ASSIGNED_STATUSES and not force:
                problems.append(f"{subject}: already {item.status} to {item.assignee or '(unknown)'}")
            item_rig = ctx.town.rig_for_item(item.id)
            if item_rig and item_rig != request.rig and not force:
                problems.append(f"{subject}: belongs to rig {item_rig}")
        if problems:
            raise ValidationFailedError(
                f"batch rejected: {len(problems)} item(s) invalid\n  " + "\n  ".join(problems),
                recovery_hint="fix or drop the listed items; --force overrides assignment and rig checks",
            )

    def _run(self, request: BatchRequest) -> BatchOutcome:
        self._validate(request)
        ctx = self._ctx
        names = WorkerSpawner(ctx).allocate_many(request.rig, len(request.subjects))
        jobs = list(zip(request.subjects, names))
        log.info(
            f"dispatching {len(jobs)} item(s) to {request.rig} "
            f"(max {request.max_concurrent} at a time)"
        )

        def run_one(job: tuple[str, str]) -> tuple[str, DispatchOutcome | None, str | None]:
            subject, name = job
            options = replace(request.options, worker_name=name)
            try:
                outcome = DispatchService(ctx)(DispatchRequest(subject, request.rig, options))
            except ServiceFailure as exc:
                log.error(f"{subject}: {exc}")
                return subject, None, str(exc)
            return subject, outcome, None

        pool_size = min(request.max_concurrent, len(jobs))
        with concurrent.futures.ThreadPoolExecutor(max_workers=pool_size) as executor:
            results = list(executor.map(run_one, jobs))

        dispatched = tuple(outcome for _, outcome, _ in results if outcome is not None)
        failures = tuple(
            BatchFailure(subject=subject, error=error)
            for subject, _, error in results
            if error is not None
        )
        return BatchOutcome(dispatched=dispatched, failures=failures)
