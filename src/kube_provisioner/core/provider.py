"""Kubernetes provider - connection configuration for a cluster."""

from functools import cached_property
from pathlib import Path
from typing import Any, Self

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.dynamic import DynamicClient
from pydantic import BaseModel, ConfigDict


class KubeProvider(BaseModel):
    """Connection configuration for a Kubernetes cluster.

    The provider is an explicit object handed to the provider adapter; no
    process-wide client configuration is touched. For tests, use
    `from_client` to inject a (mock) dynamic client.

    Examples:
        # From a kubeconfig context
        provider = KubeProvider(context="do-sfo3-test-cluster")

        # Inside a pod
        provider = KubeProvider(in_cluster=True)
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    kubeconfig: Path | None = None
    context: str | None = None
    namespace: str = "default"
    in_cluster: bool = False
    field_manager: str = "kube-provisioner"

    # Injected client (for internal use / testing)
    _injected_client: Any = None

    @classmethod
    def from_client(cls, client: Any, **kwargs: Any) -> Self:
        """Create a provider with an injected dynamic client.

        Args:
            client: A pre-configured ``DynamicClient`` (or a stand-in for tests)
            **kwargs: Provider fields such as ``namespace``
        """
        provider = cls(**kwargs)
        provider._injected_client = client
        return provider

    @cached_property
    def client(self) -> DynamicClient:
        """Get the dynamic Kubernetes client."""
        if self._injected_client is not None:
            return self._injected_client

        if self.in_cluster:
            configuration = k8s_client.Configuration()
            k8s_config.load_incluster_config(client_configuration=configuration)
            api_client = k8s_client.ApiClient(configuration=configuration)
        else:
            api_client = k8s_config.new_client_from_config(
                config_file=str(self.kubeconfig) if self.kubeconfig else None,
                context=self.context,
                persist_config=False,
            )
        return DynamicClient(api_client)
