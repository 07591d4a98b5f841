"""Engine types (plan, changes, metadata, apply outcomes)."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "no-op"


class RunStatus(str, Enum):
    """Per-resource status across one apply run."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOOP = "no-op"


class PlanMetadata(BaseModel):
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    destroy: bool
    state_lineage: str
    state_serial: int
    state_digest: str
    config_digest: str
    engine_version: str


class ResourceChange(BaseModel):
    name: str
    resource_type: str
    action: Action
    desired: dict[str, Any] | None = None
    prior: dict[str, Any] | None = None
    diff: dict[str, Any] | None = None
    depends_on: list[str] = Field(default_factory=list)
    reason: str | None = None
    delete_before_create: bool = False


class Plan(BaseModel):
    metadata: PlanMetadata
    changes: list[ResourceChange]

    def summary(self) -> dict[str, int]:
        counts = {a.value: 0 for a in Action}
        for c in self.changes:
            counts[c.action.value] += 1
        return counts

    def change(self, name: str) -> ResourceChange:
        for c in self.changes:
            if c.name == name:
                return c
        raise KeyError(name)

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json")
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> Plan:
        path = Path(path)
        return cls.model_validate_json(path.read_text(encoding="utf-8"))


class ResourceOutcome(BaseModel):
    name: str
    resource_type: str
    action: Action
    status: RunStatus
    reason: str | None = None
    blocked_by: str | None = None
    attempts: int = 0

    def describe(self) -> str:
        """Human-readable outcome, e.g. ``Failed: quota exceeded``."""
        match self.status:
            case RunStatus.SUCCEEDED:
                return "Succeeded"
            case RunStatus.FAILED:
                return f"Failed: {self.reason}"
            case RunStatus.SKIPPED:
                return f"Skipped: {self.blocked_by or self.reason}"
            case RunStatus.NOOP:
                return "NoOp"
            case _:
                return self.status.value


class ApplyResult(BaseModel):
    outcomes: list[ResourceOutcome] = Field(default_factory=list)
    canceled: bool = False

    @property
    def ok(self) -> bool:
        """True when no resource ended ``failed`` and the run was not canceled."""
        return not self.canceled and all(o.status != RunStatus.FAILED for o in self.outcomes)

    def outcome(self, name: str) -> ResourceOutcome:
        for o in self.outcomes:
            if o.name == name:
                return o
        raise KeyError(name)

    def statuses(self) -> dict[str, RunStatus]:
        return {o.name: o.status for o in self.outcomes}

    def summary(self) -> dict[str, int]:
        """Count succeeded operations by action."""
        counts = {a.value: 0 for a in Action}
        for o in self.outcomes:
            if o.status == RunStatus.SUCCEEDED:
                counts[o.action.value] += 1
        return counts

    def status_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in RunStatus}
        for o in self.outcomes:
            counts[o.status.value] += 1
        return counts
