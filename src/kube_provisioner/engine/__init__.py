"""Plan and apply engine for declared resources."""

from kube_provisioner.engine.engine import ReconcileEngine
from kube_provisioner.engine.errors import (
    CycleError,
    DuplicateNameError,
    EngineError,
    PermanentProviderError,
    ProviderError,
    StalePlanError,
    StateCorruptionError,
    StateLockError,
    TransientProviderError,
    UnknownResourceTypeError,
    ValidationError,
)
from kube_provisioner.engine.executor import CancelToken, PlanExecutor
from kube_provisioner.engine.graph import DependencyEdge, ResourceGraph, build_graph
from kube_provisioner.engine.handlers import (
    AppliedResource,
    ChangeKind,
    EngineContext,
    ResourceHandler,
)
from kube_provisioner.engine.provider import ProviderAdapter
from kube_provisioner.engine.registry import ResourceTypeRegistration, ResourceTypeRegistry
from kube_provisioner.engine.retry import RetryPolicy
from kube_provisioner.engine.store import StateStore
from kube_provisioner.engine.types import (
    Action,
    ApplyResult,
    Plan,
    PlanMetadata,
    ResourceChange,
    ResourceOutcome,
    RunStatus,
)

__all__ = [
    "Action",
    "AppliedResource",
    "ApplyResult",
    "CancelToken",
    "ChangeKind",
    "CycleError",
    "DependencyEdge",
    "DuplicateNameError",
    "EngineContext",
    "EngineError",
    "PermanentProviderError",
    "Plan",
    "PlanExecutor",
    "PlanMetadata",
    "ProviderAdapter",
    "ProviderError",
    "ReconcileEngine",
    "ResourceChange",
    "ResourceGraph",
    "ResourceHandler",
    "ResourceOutcome",
    "ResourceTypeRegistration",
    "ResourceTypeRegistry",
    "RetryPolicy",
    "RunStatus",
    "StalePlanError",
    "StateCorruptionError",
    "StateLockError",
    "StateStore",
    "TransientProviderError",
    "UnknownResourceTypeError",
    "ValidationError",
    "build_graph",
]
