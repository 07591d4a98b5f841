"""State models for tracking applied resources."""

import contextlib
import hashlib
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _sha256_of(obj: Any) -> str:
    """sha256 of the sorted, whitespace-free JSON encoding of *obj*."""
    encoded = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def compute_inputs_hash(inputs: Mapping[str, Any]) -> str:
    """Compute a stable hash for a resource's inputs or outputs."""
    return _sha256_of(dict(inputs))


def _write_atomically(path: Path, content: str) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(content)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def compute_dependency_fingerprint(outputs_by_name: Mapping[str, Mapping[str, Any]]) -> str:
    """Hash the outputs of a resource's dependencies, keyed by logical name.

    A resource without dependencies has an empty fingerprint.
    """
    if not outputs_by_name:
        return ""
    return compute_inputs_hash({name: dict(outs) for name, outs in outputs_by_name.items()})


class ResourceStatus(str, Enum):
    """Outcome of the last operation on a record.

    ``DELETED`` is reserved: a torn-down resource loses its record instead.
    """

    CREATED = "created"
    UPDATED = "updated"
    FAILED = "failed"
    DELETED = "deleted"


class ResourceState(BaseModel):
    """Last-confirmed state of one resource.

    Attributes:
        name: Logical resource name (e.g., "nginx-deployment")
        resource_type: Type of the resource (e.g., "kubernetes:apps/v1:Deployment")
        physical_id: Provider-assigned identifier
        inputs: Inputs as last applied (unresolved output references kept verbatim)
        outputs: Outputs observed after the last apply
        dependencies: Logical names this resource depended on at last apply
        dependency_fingerprint: Hash of the dependencies' outputs at last apply
        status: Result of the last operation touching this record
        deposed: Physical ids of replaced objects whose teardown failed
    """

    # Records written by newer versions may carry fields we do not know about;
    # keep them so a re-save does not drop them.
    model_config = ConfigDict(extra="allow")

    name: str
    resource_type: str
    physical_id: str
    inputs: dict[str, Any] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    dependency_fingerprint: str = ""
    status: ResourceStatus = ResourceStatus.CREATED
    deposed: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class State(BaseModel):
    """Terraform-style state file keyed by logical resource name.

    Attributes:
        version: State file format version
        serial: Incremented on every persisted write
        lineage: Identity of this state file across its lifetime
        resources: Mapping of logical names to resource records
    """

    model_config = ConfigDict(extra="allow")

    version: int = 1
    serial: int = 0
    lineage: str = Field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceState] = Field(default_factory=dict)

    def save(self, path: Path) -> None:
        """Write the state to *path* via a fsynced temp file and a rename.

        The file being replaced is first copied to ``<path>.backup``; readers
        never observe a half-written state.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            previous = path.read_bytes()
        except FileNotFoundError:
            previous = None
        if previous is not None:
            path.with_name(f"{path.name}.backup").write_bytes(previous)

        body = json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True)
        _write_atomically(path, body + "\n")
        logger.debug(
            "Wrote state serial %d (%d resources) to %s", self.serial, len(self.resources), path
        )

    @classmethod
    def load(cls, path: Path) -> "State":
        """Load state from a JSON file."""
        state = cls.model_validate_json(path.read_text(encoding="utf-8"))
        logger.debug("State loaded from %s", path)
        return state

    @classmethod
    def load_or_create(cls, path: Path) -> "State":
        """Load existing state or create a new one."""
        if path.exists():
            return cls.load(path)
        logger.debug("Created new state for %s", path)
        return cls()


def compute_state_digest(state: State) -> str:
    """Compute a stable digest of state content (excluding timestamps).

    Used for stale-plan detection. Timestamps and status are left out so that
    they never force a re-plan.
    """
    volatile = {"status", "created_at", "updated_at"}
    return _sha256_of(
        {
            "version": state.version,
            "lineage": state.lineage,
            "serial": state.serial,
            "resources": {
                name: record.model_dump(mode="json", exclude=volatile)
                for name, record in state.resources.items()
            },
        }
    )


def reference_outputs(resource: ResourceState) -> dict[str, Any]:
    """Outputs visible to output references; ``id`` defaults to the physical id."""
    return {"id": resource.physical_id, **resource.outputs}


def fingerprint_dependencies(
    names: list[str], resources: Mapping[str, ResourceState]
) -> str:
    """Dependency fingerprint of *names* computed from stored *resources*.

    Dependencies without a stored record are left out.
    """
    return compute_dependency_fingerprint(
        {n: reference_outputs(resources[n]) for n in sorted(names) if n in resources}
    )
