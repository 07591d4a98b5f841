"""Turn engine and config exceptions into one-line stderr reports."""

from __future__ import annotations

import typer


def _prefixes() -> list[tuple[tuple[type[Exception], ...], str]]:
    from kube_provisioner.config.loader import ConfigError
    from kube_provisioner.engine.errors import (
        CycleError,
        DuplicateNameError,
        StalePlanError,
        StateCorruptionError,
        StateLockError,
        UnknownResourceTypeError,
    )

    return [
        ((ConfigError,), "Configuration error"),
        ((CycleError, DuplicateNameError, UnknownResourceTypeError), "Invalid resource graph"),
        ((StalePlanError,), "Plan is stale"),
        ((StateLockError,), "State is locked"),
        ((StateCorruptionError,), "State is corrupt"),
    ]


def error_lines(exc: Exception) -> list[str]:
    """Lines describing ``exc`` for a user; never a traceback."""
    from kube_provisioner.engine.errors import StateCorruptionError, ValidationError

    if isinstance(exc, ValidationError):
        return ["Validation failed:", *(f"  - {e}" for e in exc.errors)]

    prefix = next((p for types, p in _prefixes() if isinstance(exc, types)), "Error")
    lines = [f"{prefix}: {exc}"]
    if isinstance(exc, StateCorruptionError):
        lines.append("  Restore the state file (a .backup copy sits next to it) and retry.")
    return lines


def handle_error(exc: Exception, *, color: bool = True) -> int:
    """Report ``exc`` on stderr and return the process exit code (always 1)."""
    fg = typer.colors.RED if color else None
    for line in error_lines(exc):
        typer.echo(typer.style(line, fg=fg), err=True)
    return 1
