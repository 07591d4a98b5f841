"""Dependency graph utilities and the resource graph builder."""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kube_provisioner.engine.errors import CycleError, DuplicateNameError, ValidationError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping, Sequence

    from kube_provisioner.engine.registry import ResourceTypeRegistry
    from kube_provisioner.resources.base import ResourceSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True, order=True)
class DependencyEdge:
    """``source`` depends on ``target``: target must be applied first."""

    source: str
    target: str


class DependencyGraph:
    """A directed graph where nodes depend on other nodes."""

    def __init__(self, nodes: Iterable[str], dependencies: Mapping[str, Iterable[str]]) -> None:
        self._nodes = set(nodes)
        # node -> filtered deps within graph
        self._deps: dict[str, set[str]] = {}
        for node in self._nodes:
            deps = set(dependencies.get(node, []))
            self._deps[node] = {d for d in deps if d in self._nodes}
        self._dependents: dict[str, set[str]] = {n: set() for n in self._nodes}
        for node, deps in self._deps.items():
            for dep in deps:
                self._dependents[dep].add(node)

    @property
    def nodes(self) -> set[str]:
        return set(self._nodes)

    def dependencies_of(self, node: str) -> list[str]:
        return sorted(self._deps.get(node, ()))

    def dependents_of(self, node: str) -> list[str]:
        return sorted(self._dependents.get(node, ()))

    def transitive_dependents(self, node: str) -> list[str]:
        """Every node depending on *node* directly or transitively."""
        seen: set[str] = set()
        stack = list(self._dependents.get(node, ()))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current] - seen)
        return sorted(seen)

    def topological_order(self) -> list[str]:
        """Return deterministic topo order (lexicographic tie-break)."""
        indegree: dict[str, int] = {n: len(deps) for n, deps in self._deps.items()}

        ready: list[str] = [n for n, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)

        order: list[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for child in sorted(self._dependents[node]):
                indegree[child] -= 1
                if indegree[child] == 0:
                    heapq.heappush(ready, child)

        if len(order) != len(self._nodes):
            raise CycleError(self._find_cycle(self._nodes - set(order)))

        return order

    def reverse_topological_order(self) -> list[str]:
        order = self.topological_order()
        order.reverse()
        return order

    def _find_cycle(self, remaining: set[str]) -> list[str]:
        """Walk dependencies inside *remaining* until a node repeats.

        Every node left over by Kahn's algorithm has at least one dependency
        that is also left over, so the walk always closes a cycle.
        """
        path: list[str] = []
        position: dict[str, int] = {}
        node = min(remaining)
        while node not in position:
            position[node] = len(path)
            path.append(node)
            node = min(d for d in self._deps[node] if d in remaining)
        return [*path[position[node] :], node]


class ResourceGraph(DependencyGraph):
    """DAG of declared resources with the edges it was built from."""

    def __init__(self, specs: Mapping[str, ResourceSpec], edges: Iterable[DependencyEdge]) -> None:
        self._edges = sorted(set(edges))
        deps: dict[str, list[str]] = {}
        for e in self._edges:
            deps.setdefault(e.source, []).append(e.target)
        super().__init__(specs.keys(), deps)
        self._specs = dict(specs)

    @property
    def specs(self) -> dict[str, ResourceSpec]:
        return dict(self._specs)

    @property
    def edges(self) -> list[DependencyEdge]:
        return list(self._edges)


def build_graph(specs: Sequence[ResourceSpec], registry: ResourceTypeRegistry) -> ResourceGraph:
    """Build the dependency DAG for *specs*.

    Edges come from explicit ``depends_on`` entries, output references in
    inputs, and prerequisites reported by each type's handler.

    Raises:
        DuplicateNameError: Two specs share a logical name.
        UnknownResourceTypeError: A spec has no registered handler.
        ValidationError: Unknown dependency targets or handler validation failures.
        CycleError: The dependency graph is not acyclic.
    """
    by_name: dict[str, ResourceSpec] = {}
    for spec in specs:
        if spec.name in by_name:
            raise DuplicateNameError(spec.name)
        by_name[spec.name] = spec

    errors: list[str] = []
    edges: set[DependencyEdge] = set()
    for name, spec in sorted(by_name.items()):
        handler = registry.get(spec.resource_type).handler
        errors.extend(handler.validate(spec))

        for dep in spec.depends_on:
            if dep not in by_name:
                errors.append(f"Resource '{name}' depends on unknown resource '{dep}'")
            else:
                edges.add(DependencyEdge(name, dep))
        for ref in spec.references():
            if ref not in by_name:
                errors.append(f"Resource '{name}' references outputs of unknown resource '{ref}'")
            else:
                edges.add(DependencyEdge(name, ref))
        for pre in handler.prerequisites(spec, by_name):
            if pre != name and pre in by_name:
                edges.add(DependencyEdge(name, pre))

    if errors:
        raise ValidationError(errors)

    graph = ResourceGraph(by_name, edges)
    # Reject cycles at build time, before any provider call.
    graph.topological_order()
    logger.debug("Built resource graph: %d resources, %d edges", len(by_name), len(edges))
    return graph
