"""Mapping of resource type names to the handlers that reconcile them."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kube_provisioner.engine.errors import UnknownResourceTypeError

if TYPE_CHECKING:
    from kube_provisioner.engine.handlers import ResourceHandler


@dataclass(frozen=True)
class ResourceTypeRegistration:
    resource_type: str
    handler: ResourceHandler


class ResourceTypeRegistry:
    """Per-engine handler table. Types are registered once and never replaced."""

    def __init__(self, entries: Iterable[tuple[str, ResourceHandler]] = ()) -> None:
        self._by_type: dict[str, ResourceTypeRegistration] = {}
        for resource_type, handler in entries:
            self.register(resource_type, handler)

    def register(self, resource_type: str, handler: ResourceHandler) -> None:
        if not resource_type or not isinstance(resource_type, str):
            raise ValueError(f"Invalid resource type: {resource_type!r}")
        if resource_type in self._by_type:
            raise ValueError(f"Resource type already registered: {resource_type}")
        self._by_type[resource_type] = ResourceTypeRegistration(resource_type, handler)

    def get(self, resource_type: str) -> ResourceTypeRegistration:
        registration = self._by_type.get(resource_type)
        if registration is None:
            raise UnknownResourceTypeError(resource_type)
        return registration

    def types(self) -> list[str]:
        return sorted(self._by_type)

    def __contains__(self, resource_type: object) -> bool:
        return resource_type in self._by_type

    def __iter__(self) -> Iterator[ResourceTypeRegistration]:
        return (self._by_type[t] for t in self.types())
