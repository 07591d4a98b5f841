"""Plan/apply engine."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from kube_provisioner import __version__
from kube_provisioner.core.state import compute_state_digest
from kube_provisioner.engine.diff import plan_changes
from kube_provisioner.engine.errors import StalePlanError
from kube_provisioner.engine.executor import CancelToken, PlanExecutor, ProgressCallback
from kube_provisioner.engine.graph import build_graph
from kube_provisioner.engine.provider import ProviderAdapter
from kube_provisioner.engine.retry import RetryPolicy
from kube_provisioner.engine.store import StateStore, load_state
from kube_provisioner.engine.types import ApplyResult, Plan, PlanMetadata

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from kube_provisioner.core.state import State
    from kube_provisioner.engine.graph import ResourceGraph
    from kube_provisioner.engine.registry import ResourceTypeRegistry
    from kube_provisioner.resources.base import ResourceSpec

logger = logging.getLogger(__name__)


def _canonical_json(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


def _sha256_hex(payload: str) -> str:
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _compute_config_digest(specs: Sequence[ResourceSpec]) -> str:
    items: list[dict[str, Any]] = [s.model_dump(mode="json") for s in specs]
    items.sort(key=lambda x: x["name"])
    return _sha256_hex(_canonical_json(items))


class ReconcileEngine:
    """Terraform-like plan/apply engine for declared resources."""

    def __init__(
        self,
        *,
        provider: Any,
        registry: ResourceTypeRegistry,
        state_path: Path,
        parallelism: int = 4,
        retry: RetryPolicy | None = None,
        blocking_lock: bool = False,
    ) -> None:
        self._adapter = ProviderAdapter(provider, registry)
        self._registry = registry
        self._state_path = state_path
        self._parallelism = parallelism
        self._retry = retry or RetryPolicy()
        self._blocking_lock = blocking_lock

    @property
    def state_path(self) -> Path:
        return self._state_path

    @property
    def adapter(self) -> ProviderAdapter:
        return self._adapter

    def load_state(self) -> State:
        state = load_state(self._state_path)
        logger.debug("State loaded: serial=%d, %d resources", state.serial, len(state.resources))
        return state

    def graph(self, specs: Sequence[ResourceSpec]) -> ResourceGraph:
        """Validate *specs* and build their dependency graph."""
        return build_graph(specs, self._registry)

    def plan(self, specs: Sequence[ResourceSpec], *, destroy: bool = False) -> Plan:
        """Compute a plan moving the stored state toward *specs*.

        Planning reads state without taking the lock and makes no provider
        calls. Against an existing state file the result is identical for
        identical inputs apart from ``metadata.created_at``; with no state file
        each plan also gets a fresh lineage, and so a different state digest.
        """
        logger.info("Planning %d resources (destroy=%s)", len(specs), destroy)
        # Destroy plans come from stored state alone.
        graph = None if destroy else self.graph(specs)
        state = self.load_state()

        changes = plan_changes(graph, state, self._adapter)

        metadata = PlanMetadata(
            created_at=datetime.now(UTC),
            destroy=destroy,
            state_lineage=state.lineage,
            state_serial=state.serial,
            state_digest=compute_state_digest(state),
            config_digest=_compute_config_digest([] if destroy else specs),
            engine_version=__version__,
        )
        return Plan(metadata=metadata, changes=changes)

    def apply(
        self,
        plan: Plan,
        *,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ApplyResult:
        """Execute *plan* while holding the state lock.

        Raises:
            StateLockError: Another run holds the state.
            StalePlanError: State changed since the plan was computed.
        """
        store = StateStore(self._state_path, blocking_lock=self._blocking_lock)
        with store.open_for_write():
            state = store.state
            if not self._state_path.exists():
                # No state yet: adopt the identity the plan was computed against.
                state.lineage = plan.metadata.state_lineage
                state.serial = plan.metadata.state_serial

            # Stale plan detection
            if state.lineage != plan.metadata.state_lineage:
                raise StalePlanError("State lineage changed; re-run plan")
            if state.serial != plan.metadata.state_serial:
                raise StalePlanError("State serial changed; re-run plan")
            if compute_state_digest(state) != plan.metadata.state_digest:
                raise StalePlanError("State digest changed; re-run plan")

            executor = PlanExecutor(
                self._adapter,
                store,
                parallelism=self._parallelism,
                retry=self._retry,
                cancel=cancel,
                progress=progress,
            )
            result = executor.run(plan)

        counts = result.status_counts()
        logger.info(
            "Apply finished: %d succeeded, %d failed, %d skipped",
            counts["succeeded"],
            counts["failed"],
            counts["skipped"],
        )
        return result

    def plan_and_apply(
        self,
        specs: Sequence[ResourceSpec],
        *,
        destroy: bool = False,
        progress: ProgressCallback | None = None,
        cancel: CancelToken | None = None,
    ) -> ApplyResult:
        return self.apply(self.plan(specs, destroy=destroy), progress=progress, cancel=cancel)
