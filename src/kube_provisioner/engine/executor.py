"""Plan executor.

Terraform runs apply by walking a graph of operations. This module does the
same with a scheduler loop and a pool of worker threads:

- provider calls run on workers;
- the scheduler thread alone writes the state store, and a resource counts
  as succeeded only once its new state is on disk, so a dependent never
  starts before its dependencies are durable;
- a failed resource marks its transitive dependents skipped while unrelated
  branches keep running;
- cancellation stops scheduling new operations and lets in-flight ones
  finish (a multi-step replacement is finished as a whole).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Literal

from kube_provisioner.core.state import (
    ResourceState,
    ResourceStatus,
    fingerprint_dependencies,
    reference_outputs,
)
from kube_provisioner.engine.graph import DependencyGraph
from kube_provisioner.engine.retry import RetryPolicy, call_with_retry
from kube_provisioner.engine.types import (
    Action,
    ApplyResult,
    ResourceChange,
    ResourceOutcome,
    RunStatus,
)
from kube_provisioner.resources.base import ResourceSpec
from kube_provisioner.resources.references import UnresolvedReferenceError, resolve_refs

if TYPE_CHECKING:
    from kube_provisioner.engine.handlers import AppliedResource
    from kube_provisioner.engine.provider import ProviderAdapter
    from kube_provisioner.engine.store import StateStore
    from kube_provisioner.engine.types import Plan

logger = logging.getLogger(__name__)

ProgressEvent = Literal["start", "done", "failed", "skipped"]
ProgressCallback = Callable[[ResourceChange, ProgressEvent], None]


class CancelToken:
    """Cooperative cancellation flag shared between the caller and a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def canceled(self) -> bool:
        return self._event.is_set()


class _Step(str, Enum):
    APPLY_NEW = "apply-new"
    APPLY_EXISTING = "apply-existing"
    DELETE_CURRENT = "delete-current"
    DELETE_DEPOSED = "delete-deposed"


def _steps_for(change: ResourceChange) -> list[_Step]:
    match change.action:
        case Action.CREATE:
            return [_Step.APPLY_NEW]
        case Action.UPDATE:
            return [_Step.APPLY_EXISTING, _Step.DELETE_DEPOSED]
        case Action.REPLACE if change.delete_before_create:
            return [_Step.DELETE_CURRENT, _Step.APPLY_NEW]
        case Action.REPLACE:
            return [_Step.APPLY_NEW, _Step.DELETE_DEPOSED]
        case Action.DELETE:
            return [_Step.DELETE_CURRENT]
        case _:
            raise ValueError(f"No operation for action: {change.action}")


@dataclass
class _Operation:
    change: ResourceChange
    index: int
    steps: list[_Step]
    deps: set[str] = field(default_factory=set)
    status: RunStatus = RunStatus.PENDING
    attempts: int = 0
    reason: str | None = None
    blocked_by: str | None = None
    # Set when an apply step is submitted; persisted with the new state.
    spec: ResourceSpec | None = None
    fingerprint: str = ""

    @property
    def name(self) -> str:
        return self.change.name


@dataclass
class _StepResult:
    step: _Step
    attempts: int = 0
    applied: AppliedResource | None = None
    remaining: list[str] = field(default_factory=list)
    error: Exception | None = None


def _waits_on(ops: dict[str, _Operation], start: str, target: str) -> bool:
    """Whether *start* already (transitively) waits for *target*."""
    seen: set[str] = set()
    stack = [start]
    while stack:
        name = stack.pop()
        if name == target:
            return True
        if name in seen:
            continue
        seen.add(name)
        stack.extend(ops[name].deps)
    return False


def _error_text(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


class PlanExecutor:
    """Executes a plan's operations in dependency order."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        store: StateStore,
        *,
        parallelism: int = 4,
        retry: RetryPolicy | None = None,
        cancel: CancelToken | None = None,
        progress: ProgressCallback | None = None,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be >= 1")
        self._adapter = adapter
        self._store = store
        self._parallelism = parallelism
        self._retry = retry or RetryPolicy()
        self._cancel = cancel or CancelToken()
        self._progress = progress
        self._ops: dict[str, _Operation] = {}
        self._graph = DependencyGraph([], {})

    # ------------------------------------------------------------------
    # Operation graph
    # ------------------------------------------------------------------

    def build_operations(self, plan: Plan) -> dict[str, _Operation]:
        """Build the operation graph for the non-noop changes of *plan*."""
        ops: dict[str, _Operation] = {}
        for i, c in enumerate(plan.changes):
            if c.action == Action.NOOP:
                continue
            if c.name in ops:
                raise ValueError(f"Duplicate operation in plan: {c.name}")
            ops[c.name] = _Operation(change=c, index=i, steps=_steps_for(c))

        stored = self._store.state.resources
        for name, op in ops.items():
            # create/update/replace: dependencies must run before dependents
            if op.change.action != Action.DELETE:
                op.deps.update(d for d in op.change.depends_on if d in ops and d != name)
                continue
            # delete: everything that still depends on this resource goes first
            for other_name, other in ops.items():
                if other_name == name:
                    continue
                prior = stored.get(other_name)
                if prior is not None and name in prior.dependencies:
                    op.deps.add(other_name)

        # A replacement tears its old object down too: removed resources still
        # recorded as depending on it must be deleted first.
        for name, op in ops.items():
            record = stored.get(name)
            tears_down = op.change.action == Action.REPLACE or (
                op.change.action == Action.UPDATE and record is not None and record.deposed
            )
            if not tears_down:
                continue
            for other_name, other in ops.items():
                if other.change.action != Action.DELETE or other_name == name:
                    continue
                prior = stored.get(other_name)
                if prior is None or name not in prior.dependencies:
                    continue
                if _waits_on(ops, other_name, name):
                    logger.warning(
                        "%s: cannot wait for removal of %s without a cycle; "
                        "its old object may be deleted first",
                        name,
                        other_name,
                    )
                    continue
                op.deps.add(other_name)

        DependencyGraph(ops.keys(), {n: op.deps for n, op in ops.items()}).topological_order()
        return ops

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def run(self, plan: Plan) -> ApplyResult:
        self._ops = self.build_operations(plan)
        self._graph = DependencyGraph(
            self._ops.keys(), {n: op.deps for n, op in self._ops.items()}
        )
        logger.info("Applying %d operations (parallelism=%d)", len(self._ops), self._parallelism)

        running: dict[Future[_StepResult], _Operation] = {}
        with ThreadPoolExecutor(
            max_workers=self._parallelism, thread_name_prefix="kube-provisioner"
        ) as pool:
            while True:
                try:
                    if not self._cancel.canceled:
                        for op in self._ready():
                            if len(running) >= self._parallelism:
                                break
                            self._start(op, pool, running)
                    if not running:
                        break
                    done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                    for fut in sorted(done, key=lambda f: running[f].index):
                        op = running.pop(fut)
                        self._finish_step(op, fut.result(), pool, running)
                except KeyboardInterrupt:
                    logger.warning("Interrupted; waiting for in-flight operations to finish")
                    self._cancel.cancel()

        canceled = False
        for op in self._ops.values():
            if op.status == RunStatus.IN_PROGRESS:
                # Interrupted between steps, with nothing left running for it.
                canceled = True
                op.status = RunStatus.FAILED
                op.reason = "apply interrupted"
                self._notify(op.change, "failed")
            elif op.status == RunStatus.PENDING:
                canceled = True
                op.status = RunStatus.SKIPPED
                op.reason = "apply canceled"
                self._notify(op.change, "skipped")

        return self._result(plan, canceled=canceled)

    def _ready(self) -> list[_Operation]:
        ready = [
            op
            for op in self._ops.values()
            if op.status == RunStatus.PENDING
            and all(self._ops[d].status == RunStatus.SUCCEEDED for d in op.deps)
        ]
        return sorted(ready, key=lambda op: op.index)

    def _start(
        self,
        op: _Operation,
        pool: ThreadPoolExecutor,
        running: dict[Future[_StepResult], _Operation],
    ) -> None:
        op.status = RunStatus.IN_PROGRESS
        logger.debug("Starting %s: %s", op.name, op.change.action.value)
        self._notify(op.change, "start")
        self._submit_next(op, pool, running)

    def _submit_next(
        self,
        op: _Operation,
        pool: ThreadPoolExecutor,
        running: dict[Future[_StepResult], _Operation],
    ) -> None:
        """Submit the next step of *op*, or mark it succeeded when none remain."""
        while op.steps:
            step = op.steps[0]
            if step in (_Step.APPLY_NEW, _Step.APPLY_EXISTING):
                try:
                    spec = self._resolved_spec(op)
                except UnresolvedReferenceError as e:
                    self._fail(op, _error_text(e))
                    return
                prior = self._store.get(op.name) if step == _Step.APPLY_EXISTING else None
                if prior is not None:
                    prior = prior.model_copy(deep=True)
                running[pool.submit(self._run_apply, step, spec, prior)] = op
                return

            record = self._store.get(op.name)
            if record is None:
                op.steps.pop(0)
                continue
            if step == _Step.DELETE_CURRENT:
                ids = [*record.deposed, record.physical_id]
            else:
                ids = list(record.deposed)
            if not ids:
                op.steps.pop(0)
                continue
            running[pool.submit(self._run_delete, step, record.resource_type, ids)] = op
            return

        op.status = RunStatus.SUCCEEDED
        logger.info("%s: %s complete", op.name, op.change.action.value)
        self._notify(op.change, "done")

    def _resolved_spec(self, op: _Operation) -> ResourceSpec:
        """Build the spec to apply, with output references resolved from stored state."""
        if op.change.desired is None:
            raise ValueError(f"Missing desired config for {op.change.action.value}: {op.name}")
        spec = ResourceSpec.model_validate(op.change.desired)
        if spec.name != op.name:
            raise ValueError(f"Desired name mismatch: {op.name} != {spec.name}")

        stored = self._store.state.resources
        outputs = {
            d: reference_outputs(stored[d]) for d in op.change.depends_on if d in stored
        }
        op.spec = spec
        op.fingerprint = fingerprint_dependencies(op.change.depends_on, stored)
        return spec.model_copy(update={"inputs": resolve_refs(spec.inputs, outputs)})

    # ------------------------------------------------------------------
    # Worker side: provider calls only, no state access
    # ------------------------------------------------------------------

    def _run_apply(
        self, step: _Step, spec: ResourceSpec, prior: ResourceState | None
    ) -> _StepResult:
        result = _StepResult(step=step)

        def _call() -> AppliedResource:
            result.attempts += 1
            return self._adapter.apply(spec, prior)

        try:
            result.applied = call_with_retry(self._retry, _call)
        except Exception as e:  # isolated to this resource; reported in the outcome
            result.error = e
        return result

    def _run_delete(self, step: _Step, resource_type: str, ids: list[str]) -> _StepResult:
        result = _StepResult(step=step, remaining=list(ids))
        while result.remaining:
            physical_id = result.remaining[0]

            def _call(pid: str = physical_id) -> None:
                result.attempts += 1
                self._adapter.delete(resource_type, pid)

            try:
                call_with_retry(self._retry, _call)
            except Exception as e:  # isolated to this resource; reported in the outcome
                result.error = e
                break
            result.remaining.pop(0)
        return result

    # ------------------------------------------------------------------
    # Scheduler side: persist, then release dependents
    # ------------------------------------------------------------------

    def _finish_step(
        self,
        op: _Operation,
        result: _StepResult,
        pool: ThreadPoolExecutor,
        running: dict[Future[_StepResult], _Operation],
    ) -> None:
        op.attempts += result.attempts
        op.steps.pop(0)
        record = self._store.get(op.name)

        if result.step in (_Step.APPLY_NEW, _Step.APPLY_EXISTING):
            if result.error is not None:
                self._mark_record_failed(record)
                self._fail(op, _error_text(result.error))
            else:
                assert result.applied is not None
                self._store.put(self._applied_state(op, result, record))
        elif result.step == _Step.DELETE_CURRENT:
            if result.error is not None:
                if record is not None:
                    pid = record.physical_id
                    self._store.put(
                        record.model_copy(
                            update={
                                "status": ResourceStatus.FAILED,
                                "deposed": [r for r in result.remaining if r != pid],
                            }
                        )
                    )
                self._fail(op, _error_text(result.error))
            else:
                self._store.delete(op.name)
        elif record is not None:
            update: dict[str, object] = {"deposed": result.remaining}
            if result.error is not None:
                update["status"] = ResourceStatus.FAILED
            self._store.put(record.model_copy(update=update))
            if result.error is not None:
                self._fail(
                    op,
                    f"failed to delete previous object(s) {', '.join(result.remaining)}: "
                    f"{_error_text(result.error)}",
                )

        if op.status != RunStatus.FAILED:
            self._submit_next(op, pool, running)

    def _applied_state(
        self, op: _Operation, result: _StepResult, record: ResourceState | None
    ) -> ResourceState:
        assert op.spec is not None and result.applied is not None
        now = datetime.now(UTC)
        deposed: list[str] = []
        created_at = now
        if record is not None:
            created_at = record.created_at
            deposed = list(record.deposed)
            if result.step == _Step.APPLY_NEW:
                # The previous object stays until the replacement is confirmed.
                deposed.append(record.physical_id)
                created_at = now
        existing = result.step == _Step.APPLY_EXISTING
        status = ResourceStatus.UPDATED if existing else ResourceStatus.CREATED
        return ResourceState(
            name=op.name,
            resource_type=op.spec.resource_type,
            physical_id=result.applied.physical_id,
            inputs=dict(op.spec.inputs),
            outputs=dict(result.applied.outputs),
            dependencies=list(op.change.depends_on),
            dependency_fingerprint=op.fingerprint,
            status=status,
            deposed=deposed,
            created_at=created_at,
            updated_at=now,
        )

    def _mark_record_failed(self, record: ResourceState | None) -> None:
        if record is not None:
            self._store.put(record.model_copy(update={"status": ResourceStatus.FAILED}))

    def _fail(self, op: _Operation, reason: str) -> None:
        op.status = RunStatus.FAILED
        op.reason = reason
        op.steps.clear()
        logger.error("%s: %s failed: %s", op.name, op.change.action.value, reason)
        self._notify(op.change, "failed")
        self._skip_dependents(op)

    def _skip_dependents(self, failed: _Operation) -> None:
        for name in self._graph.transitive_dependents(failed.name):
            dep_op = self._ops[name]
            if dep_op.status != RunStatus.PENDING:
                continue
            dep_op.status = RunStatus.SKIPPED
            dep_op.blocked_by = failed.name
            logger.warning("%s: skipped, blocked by failed %s", name, failed.name)
            self._notify(dep_op.change, "skipped")

    def _notify(self, change: ResourceChange, event: ProgressEvent) -> None:
        if self._progress is not None:
            self._progress(change, event)

    def _result(self, plan: Plan, *, canceled: bool) -> ApplyResult:
        outcomes: list[ResourceOutcome] = []
        for c in plan.changes:
            op = self._ops.get(c.name)
            if op is None or c.action == Action.NOOP:
                outcomes.append(
                    ResourceOutcome(
                        name=c.name,
                        resource_type=c.resource_type,
                        action=c.action,
                        status=RunStatus.NOOP,
                    )
                )
                continue
            outcomes.append(
                ResourceOutcome(
                    name=c.name,
                    resource_type=c.resource_type,
                    action=c.action,
                    status=op.status,
                    reason=op.reason,
                    blocked_by=op.blocked_by,
                    attempts=op.attempts,
                )
            )
        return ApplyResult(outcomes=outcomes, canceled=canceled)
