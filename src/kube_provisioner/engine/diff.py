"""Diff engine: classify desired specs against stored state."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from kube_provisioner.core.state import ResourceStatus, fingerprint_dependencies
from kube_provisioner.engine.graph import DependencyGraph
from kube_provisioner.engine.handlers import ChangeKind, diff_values
from kube_provisioner.engine.types import Action, ResourceChange

if TYPE_CHECKING:
    from kube_provisioner.core.state import ResourceState, State
    from kube_provisioner.engine.graph import ResourceGraph
    from kube_provisioner.engine.provider import ProviderAdapter
    from kube_provisioner.resources.base import ResourceSpec

logger = logging.getLogger(__name__)

_CHANGING = frozenset({Action.CREATE, Action.UPDATE, Action.REPLACE})


def _desired_dump(spec: ResourceSpec) -> dict:
    return spec.model_dump(mode="json")


def classify(
    spec: ResourceSpec,
    prior: ResourceState | None,
    deps: list[str],
    planned: dict[str, ResourceChange],
    state: State,
    adapter: ProviderAdapter,
) -> ResourceChange:
    """Classify a single desired resource as CREATE, UPDATE, REPLACE or NOOP.

    *planned* holds the changes already classified for the resource's
    dependencies (callers walk the graph in topological order).
    """
    base = {
        "name": spec.name,
        "resource_type": spec.resource_type,
        "desired": _desired_dump(spec),
        "depends_on": deps,
    }
    if prior is None:
        logger.debug("Classified %s as create", spec.name)
        return ResourceChange(action=Action.CREATE, **base)

    diff = diff_values(prior.inputs, spec.inputs) or None
    delete_first = adapter.delete_before_replace(spec.resource_type)

    if prior.resource_type != spec.resource_type:
        # The old object belongs to another handler; tear it down first.
        delete_first = True
        action, reason = Action.REPLACE, f"resource type changed from {prior.resource_type}"
    else:
        kind = adapter.classify_change(spec.resource_type, prior.inputs, spec.inputs)
        if kind == ChangeKind.REPLACE:
            action, reason = Action.REPLACE, "inputs require replacement"
        elif kind == ChangeKind.UPDATE:
            action, reason = Action.UPDATE, "inputs changed"
        else:
            action, reason = _classify_unchanged_inputs(prior, deps, planned, state)

    logger.debug("Classified %s as %s", spec.name, action.value)
    return ResourceChange(
        action=action,
        prior=dict(prior.inputs),
        diff=diff,
        reason=reason,
        delete_before_create=delete_first if action == Action.REPLACE else False,
        **base,
    )


def _classify_unchanged_inputs(
    prior: ResourceState,
    deps: list[str],
    planned: dict[str, ResourceChange],
    state: State,
) -> tuple[Action, str | None]:
    changing = [d for d in deps if d in planned and planned[d].action in _CHANGING]
    if changing:
        return Action.UPDATE, f"dependency changes: {', '.join(changing)}"
    if fingerprint_dependencies(deps, state.resources) != prior.dependency_fingerprint:
        return Action.UPDATE, "dependency outputs changed"
    if prior.deposed:
        return Action.UPDATE, f"{len(prior.deposed)} deposed object(s) pending cleanup"
    if prior.status == ResourceStatus.FAILED:
        return Action.UPDATE, "last apply failed"
    return Action.NOOP, None


def delete_order(state: State, names: set[str]) -> list[str]:
    """Order *names* so that dependents are deleted before their dependencies."""
    dep_map = {n: [d for d in state.resources[n].dependencies if d in names] for n in names}
    return DependencyGraph(names, dep_map).reverse_topological_order()


def plan_deletes(state: State, names: set[str], adapter: ProviderAdapter) -> list[ResourceChange]:
    changes: list[ResourceChange] = []
    for name in delete_order(state, names):
        rs = state.resources[name]
        adapter.registry.get(rs.resource_type)  # fail early if unknown
        changes.append(
            ResourceChange(
                name=name,
                resource_type=rs.resource_type,
                action=Action.DELETE,
                prior=dict(rs.inputs),
                depends_on=sorted(rs.dependencies),
            )
        )
    return changes


def plan_changes(
    graph: ResourceGraph | None,
    state: State,
    adapter: ProviderAdapter,
) -> list[ResourceChange]:
    """Emit exactly one change per desired resource and per orphaned state record.

    Desired resources come first in topological order, followed by deletes
    in reverse dependency order. ``graph=None`` plans a full teardown.
    """
    if graph is None:
        return plan_deletes(state, set(state.resources), adapter)

    planned: dict[str, ResourceChange] = {}
    specs = graph.specs
    for name in graph.topological_order():
        planned[name] = classify(
            specs[name],
            state.resources.get(name),
            graph.dependencies_of(name),
            planned,
            state,
            adapter,
        )

    changes = list(planned.values())
    changes.extend(plan_deletes(state, set(state.resources) - set(specs), adapter))
    return changes
