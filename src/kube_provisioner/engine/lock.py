"""Advisory lock guarding a state file against concurrent writers."""

from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import IO, TYPE_CHECKING

from kube_provisioner.engine.errors import StateLockError

if TYPE_CHECKING:
    from types import TracebackType


class StateLock:
    """Exclusive ``flock`` on ``<state>.lock``, held while the context is open.

    The holder writes its pid into the lock file so a refused run can say who
    has the state. With ``blocking=False`` (the default) a second writer fails
    immediately with ``StateLockError``.
    """

    def __init__(self, state_path: Path, *, blocking: bool = False) -> None:
        self.lock_path = Path(f"{state_path}.lock")
        self.blocking = blocking
        self._handle: IO[str] | None = None

    def __enter__(self) -> StateLock:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.lock_path.open("a+", encoding="utf-8")
        mode = fcntl.LOCK_EX if self.blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
        try:
            fcntl.flock(handle.fileno(), mode)
        except OSError as e:
            holder = _read_holder(handle)
            handle.close()
            owner = f" (pid {holder})" if holder else ""
            raise StateLockError(
                f"State is locked by another run{owner}: {self.lock_path}"
            ) from e

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.truncate(0)
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    @property
    def held(self) -> bool:
        return self._handle is not None


def _read_holder(handle: IO[str]) -> str:
    handle.seek(0)
    return handle.read().strip()
