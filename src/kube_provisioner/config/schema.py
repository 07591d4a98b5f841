"""Configuration models for YAML-based provisioning."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from kube_provisioner.engine.manifest_handler import (
    CUSTOM_RESOURCE_TYPE,
    DEPLOYMENT_TYPE,
    INGRESS_TYPE,
    NAMESPACE_TYPE,
    SERVICE_TYPE,
)
from kube_provisioner.engine.retry import RetryPolicy
from kube_provisioner.resources.base import ResourceSpec  # noqa: TC001 (needed at runtime)

TYPE_ALIASES: dict[str, str] = {
    "namespace": NAMESPACE_TYPE,
    "deployment": DEPLOYMENT_TYPE,
    "service": SERVICE_TYPE,
    "ingress": INGRESS_TYPE,
    "custom_resource": CUSTOM_RESOURCE_TYPE,
}


class ProviderConfig(BaseSettings):
    """Kubernetes provider connection settings.

    Fields can be set via YAML (constructor kwargs) or environment variables
    with the ``KUBE_`` prefix (``KUBECONFIG`` for the kubeconfig path).
    Constructor kwargs take precedence.
    """

    model_config = SettingsConfigDict(env_prefix="KUBE_", populate_by_name=True)

    kubeconfig: Path | None = Field(
        default=None, validation_alias=AliasChoices("kubeconfig", "KUBECONFIG")
    )
    context: str | None = None
    namespace: str = "default"
    in_cluster: bool = False
    field_manager: str = "kube-provisioner"


class RetryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=5, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    max_backoff: float = Field(default=30.0, ge=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
        )


def _none_to_list(v: Any) -> Any:
    return v if v is not None else []


def _normalize_type(v: Any) -> Any:
    """Map short YAML aliases (``deployment``) to full resource types."""
    if isinstance(v, dict) and isinstance(v.get("type"), str):
        v = {**v, "type": TYPE_ALIASES.get(v["type"], v["type"])}
    return v


_ResourceEntry = Annotated[ResourceSpec, BeforeValidator(_normalize_type)]


class Config(BaseModel):
    """Provisioning configuration, validated straight from YAML."""

    model_config = ConfigDict(extra="forbid")

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    state_path: Path = Path(".kube-state.json")
    parallelism: int = Field(default=4, ge=1)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    resources: Annotated[list[_ResourceEntry], BeforeValidator(_none_to_list)] = []
    config_dir: Path = Path()
