"""Output references between resources.

A string input may reference another resource's outputs with
``${<name>.<path>}``, e.g. ``${nginx-service.metadata.name}``. The path is
dot-separated; numeric segments index into lists. ``${<name>.id}`` resolves to
the physical id when the outputs carry no ``id`` key.

A string that consists of exactly one reference is replaced by the referenced
value as-is (so ports stay integers); references embedded in longer strings
are interpolated as text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

_REF_PATTERN = re.compile(r"\$\{([A-Za-z0-9][A-Za-z0-9_-]*)\.([A-Za-z0-9_./-]+)\}")


class UnresolvedReferenceError(ValueError):
    """Raised when an output reference cannot be resolved from dependency outputs."""

    def __init__(self, reference: str, reason: str) -> None:
        super().__init__(f"Cannot resolve {reference}: {reason}")
        self.reference = reference


@dataclass(frozen=True, slots=True)
class OutputRef:
    """A reference to an output of another resource."""

    name: str
    path: str

    def __str__(self) -> str:
        return f"${{{self.name}.{self.path}}}"


def iter_refs(value: Any) -> Iterator[OutputRef]:
    """Yield every output reference found in *value*, recursively."""
    if isinstance(value, str):
        for m in _REF_PATTERN.finditer(value):
            yield OutputRef(name=m.group(1), path=m.group(2))
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_refs(v)
    elif isinstance(value, list | tuple):
        for v in value:
            yield from iter_refs(v)


def referenced_names(value: Any) -> list[str]:
    """Sorted, de-duplicated names of the resources referenced by *value*."""
    return sorted({ref.name for ref in iter_refs(value)})


def lookup_output(outputs: Mapping[str, Any], path: str) -> Any:
    """Resolve a dot-separated *path* in nested outputs. Raises ``KeyError`` if absent."""
    current: Any = outputs
    for segment in path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
            current = current[int(segment)]
        else:
            raise KeyError(segment)
    return current


def _resolve_one(ref: OutputRef, outputs_by_name: Mapping[str, Mapping[str, Any]]) -> Any:
    outputs = outputs_by_name.get(ref.name)
    if outputs is None:
        raise UnresolvedReferenceError(str(ref), f"no outputs recorded for '{ref.name}'")
    try:
        return lookup_output(outputs, ref.path)
    except KeyError as e:
        raise UnresolvedReferenceError(str(ref), f"missing output segment '{e.args[0]}'") from e


def resolve_refs(value: Any, outputs_by_name: Mapping[str, Mapping[str, Any]]) -> Any:
    """Replace output references in *value*, recursively.

    *outputs_by_name* maps logical names to their recorded outputs.
    """
    if isinstance(value, str):
        whole = _REF_PATTERN.fullmatch(value)
        if whole is not None:
            return _resolve_one(OutputRef(whole.group(1), whole.group(2)), outputs_by_name)
        return _REF_PATTERN.sub(
            lambda m: str(_resolve_one(OutputRef(m.group(1), m.group(2)), outputs_by_name)),
            value,
        )
    if isinstance(value, dict):
        return {k: resolve_refs(v, outputs_by_name) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_refs(v, outputs_by_name) for v in value]
    return value
