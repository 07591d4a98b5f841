"""Durable, single-writer store for resource state."""

from __future__ import annotations

import contextlib
import json
import logging
import threading
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import pydantic

from kube_provisioner.core.state import ResourceState, State
from kube_provisioner.engine.errors import StateCorruptionError, StateLockError
from kube_provisioner.engine.lock import StateLock

if TYPE_CHECKING:
    from collections.abc import Iterator
    from pathlib import Path

logger = logging.getLogger(__name__)


def load_state(path: Path) -> State:
    """Load and validate the state file at *path* (empty state if absent).

    Raises:
        StateCorruptionError: If the file is unreadable or fails validation.
    """
    try:
        state = State.load_or_create(path)
    except (pydantic.ValidationError, json.JSONDecodeError, UnicodeDecodeError) as e:
        raise StateCorruptionError(f"State file {path} failed validation: {e}") from e

    mismatched = sorted(k for k, rs in state.resources.items() if rs.name != k)
    if mismatched:
        raise StateCorruptionError(
            f"State file {path} has records stored under the wrong name: {', '.join(mismatched)}"
        )
    return state


class StateStore:
    """Persists the last-known state of every resource.

    Reads (``get``/``snapshot``) work on a loaded store; writes require the
    store to be opened with :meth:`open_for_write`, which holds the advisory
    state lock. Every write is flushed to disk before it returns.
    """

    def __init__(self, path: Path, *, blocking_lock: bool = False) -> None:
        self._path = path
        self._blocking_lock = blocking_lock
        self._state: State | None = None
        self._writable = False
        self._mutex = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def state(self) -> State:
        if self._state is None:
            self._state = load_state(self._path)
        return self._state

    def reload(self) -> State:
        self._state = load_state(self._path)
        return self._state

    @contextlib.contextmanager
    def open_for_write(self) -> Iterator[StateStore]:
        """Hold the state lock and (re)load state for the duration of a run."""
        with StateLock(self._path, blocking=self._blocking_lock):
            self.reload()
            self._writable = True
            try:
                yield self
            finally:
                self._writable = False

    def get(self, name: str) -> ResourceState | None:
        return self.state.resources.get(name)

    def snapshot(self) -> list[ResourceState]:
        """All stored records, ordered by logical name (deep copies)."""
        return [
            rs.model_copy(deep=True)
            for _, rs in sorted(self.state.resources.items(), key=lambda kv: kv[0])
        ]

    def put(self, resource: ResourceState) -> None:
        with self._mutex:
            self._require_writable()
            resource.updated_at = datetime.now(UTC)
            self.state.resources[resource.name] = resource
            self._persist()
        logger.debug("Stored state for %s (status=%s)", resource.name, resource.status.value)

    def delete(self, name: str) -> None:
        with self._mutex:
            self._require_writable()
            if self.state.resources.pop(name, None) is None:
                return
            self._persist()
        logger.debug("Removed state for %s", name)

    def _require_writable(self) -> None:
        if not self._writable:
            raise StateLockError("State store is not open for writing")

    def _persist(self) -> None:
        state = self.state
        state.serial += 1
        state.save(self._path)
