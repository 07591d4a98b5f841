"""Engine-facing handler interfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from collections.abc import Mapping

    from kube_provisioner.core.state import ResourceState
    from kube_provisioner.resources.base import ResourceSpec


@dataclass(frozen=True)
class EngineContext:
    """Context passed to handlers."""

    provider: Any


@dataclass(frozen=True)
class AppliedResource:
    """What a provider reports back after a successful apply."""

    physical_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class ChangeKind(str, Enum):
    NOOP = "no-op"
    UPDATE = "update"
    REPLACE = "replace"


def diff_values(old: Any, new: Any, prefix: str = "") -> dict[str, dict[str, Any]]:
    """Return ``{dotted.path: {"from": old, "to": new}}`` for every differing leaf.

    Dicts are compared key by key; any other values (lists included) are
    compared as a whole.
    """
    if isinstance(old, dict) and isinstance(new, dict):
        out: dict[str, dict[str, Any]] = {}
        for key in sorted(set(old) | set(new), key=str):
            path = f"{prefix}.{key}" if prefix else str(key)
            out.update(diff_values(old.get(key), new.get(key), path))
        return out
    if old != new:
        return {prefix: {"from": old, "to": new}}
    return {}


def _path_within(path: str, root: str) -> bool:
    return path == root or path.startswith(root + ".") or root.startswith(path + ".")


class ResourceHandler:
    """Base class for resource handlers.

    Handlers translate declared resources into provider API calls. Subclass
    and override ``apply``/``delete``; validation, prerequisite and change
    classification hooks are optional.

    Class attributes:
        replace_on: Dotted input paths that cannot change in place.
        delete_before_replace: Tear the old object down before creating its
            replacement (needed when both cannot coexist, e.g. same name).
    """

    replace_on: ClassVar[tuple[str, ...]] = ()
    delete_before_replace: ClassVar[bool] = False

    def validate(self, desired: ResourceSpec) -> list[str]:
        """Single-resource validation. Return list of error messages (empty = valid)."""
        _ = desired
        return []

    def prerequisites(
        self, desired: ResourceSpec, declared: Mapping[str, ResourceSpec]
    ) -> list[str]:
        """Names of declared resources that must exist before *desired*.

        These become implicit dependency edges.
        """
        _ = desired, declared
        return []

    def classify_change(self, old_inputs: dict[str, Any], new_inputs: dict[str, Any]) -> ChangeKind:
        """Classify an input change as no-op, in-place update or replacement."""
        changed = diff_values(old_inputs, new_inputs)
        if not changed:
            return ChangeKind.NOOP
        if any(_path_within(p, root) for p in changed for root in self.replace_on):
            return ChangeKind.REPLACE
        return ChangeKind.UPDATE

    def apply(
        self, ctx: EngineContext, desired: ResourceSpec, prior: ResourceState | None
    ) -> AppliedResource:
        """Create (``prior`` is None) or update the resource. Return its id and outputs."""
        raise NotImplementedError

    def delete(self, ctx: EngineContext, physical_id: str) -> None:
        """Delete the object identified by *physical_id*."""
        raise NotImplementedError
