"""Engine error types."""

from __future__ import annotations


class EngineError(Exception):
    """Base exception for engine errors."""


class UnknownResourceTypeError(EngineError):
    """Raised when a resource type has no registration/handler."""

    def __init__(self, resource_type: str) -> None:
        super().__init__(f"Unknown resource type: {resource_type}")
        self.resource_type = resource_type


class DuplicateNameError(EngineError):
    """Raised when multiple desired resources share the same logical name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Duplicate resource name: {name}")
        self.name = name


class CycleError(EngineError):
    """Raised when dependencies contain a cycle."""

    def __init__(self, members: list[str]) -> None:
        msg = "Dependency cycle detected"
        if members:
            msg += f": {' -> '.join(members)}"
        super().__init__(msg)
        self.members = members


class ProviderError(EngineError):
    """Base class for errors raised by provider handlers."""


class TransientProviderError(ProviderError):
    """A provider call failed but is likely to succeed on retry (rate limit, conflict)."""


class PermanentProviderError(ProviderError):
    """A provider call failed and will not succeed without a config or environment change."""


class StateCorruptionError(EngineError):
    """Raised when the state file fails validation. Requires manual recovery."""


class StalePlanError(EngineError):
    """Raised when applying a plan against a different state than planned."""


class StateLockError(EngineError):
    """Raised when the state lock cannot be acquired or released."""


class ValidationError(EngineError):
    """One or more resources failed plan validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        msg = "Validation failed:\n" + "\n".join(f"  - {e}" for e in errors)
        super().__init__(msg)
