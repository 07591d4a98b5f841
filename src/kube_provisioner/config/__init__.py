"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from kube_provisioner.config.loader import ConfigError, load_config
from kube_provisioner.config.registry import default_registry
from kube_provisioner.config.schema import Config, ProviderConfig, RetryConfig
from kube_provisioner.core.provider import KubeProvider
from kube_provisioner.engine.engine import ReconcileEngine

if TYPE_CHECKING:
    from pathlib import Path

    from kube_provisioner.engine.executor import CancelToken, ProgressCallback
    from kube_provisioner.engine.types import ApplyResult, Plan

__all__ = [
    "Config",
    "ConfigError",
    "ProviderConfig",
    "RetryConfig",
    "apply",
    "engine_from_config",
    "load",
    "load_config",
    "plan",
    "plan_and_apply",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def engine_from_config(config: Config) -> ReconcileEngine:
    """Build a ``ReconcileEngine`` from a ``Config`` instance."""
    provider = KubeProvider(**config.provider.model_dump())
    return ReconcileEngine(
        provider=provider,
        registry=default_registry(),
        state_path=config.state_path,
        parallelism=config.parallelism,
        retry=config.retry.policy(),
    )


def plan(config: Config, *, destroy: bool = False) -> Plan:
    """Plan changes for the given configuration."""
    return engine_from_config(config).plan(config.resources, destroy=destroy)


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    progress: ProgressCallback | None = None,
    cancel: CancelToken | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    return engine_from_config(config).apply(plan_obj, progress=progress, cancel=cancel)


def plan_and_apply(config: Config, *, destroy: bool = False) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy)
    return apply(plan_obj, config)
