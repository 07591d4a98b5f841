"""Provider adapter: the boundary between the engine and cluster APIs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from kube_provisioner.engine.handlers import EngineContext

if TYPE_CHECKING:
    from kube_provisioner.core.state import ResourceState
    from kube_provisioner.engine.handlers import AppliedResource, ChangeKind, ResourceHandler
    from kube_provisioner.engine.registry import ResourceTypeRegistry
    from kube_provisioner.resources.base import ResourceSpec

logger = logging.getLogger(__name__)


class ProviderAdapter:
    """Dispatches provider operations to the handler registered for each type.

    The provider (connection settings and client) is passed in explicitly and
    handed to handlers through an ``EngineContext``.
    """

    def __init__(self, provider: Any, registry: ResourceTypeRegistry) -> None:
        self._ctx = EngineContext(provider=provider)
        self._registry = registry

    @property
    def registry(self) -> ResourceTypeRegistry:
        return self._registry

    def _handler(self, resource_type: str) -> ResourceHandler:
        return self._registry.get(resource_type).handler

    def apply(self, spec: ResourceSpec, prior: ResourceState | None = None) -> AppliedResource:
        logger.debug("Provider apply %s (%s)", spec.name, spec.resource_type)
        return self._handler(spec.resource_type).apply(self._ctx, spec, prior)

    def delete(self, resource_type: str, physical_id: str) -> None:
        logger.debug("Provider delete %s (%s)", physical_id, resource_type)
        self._handler(resource_type).delete(self._ctx, physical_id)

    def classify_change(
        self, resource_type: str, old_inputs: dict[str, Any], new_inputs: dict[str, Any]
    ) -> ChangeKind:
        return self._handler(resource_type).classify_change(old_inputs, new_inputs)

    def delete_before_replace(self, resource_type: str) -> bool:
        return self._handler(resource_type).delete_before_replace
