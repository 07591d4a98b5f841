"""Pytest fixtures for integration tests against a throwaway k3s cluster."""

from collections.abc import Generator
from pathlib import Path

import pytest
from testcontainers.k3s import K3SContainer

from kube_provisioner.config.registry import default_registry
from kube_provisioner.core import KubeProvider
from kube_provisioner.engine import ReconcileEngine, RetryPolicy


@pytest.fixture(scope="session")
def k3s_container() -> Generator[K3SContainer]:
    """Start a k3s container for the test session."""
    with K3SContainer() as container:
        yield container


@pytest.fixture(scope="session")
def kube_provider(
    k3s_container: K3SContainer, tmp_path_factory: pytest.TempPathFactory
) -> KubeProvider:
    """Provide a KubeProvider connected to the k3s container."""
    kubeconfig = tmp_path_factory.mktemp("k3s") / "kubeconfig.yaml"
    kubeconfig.write_text(k3s_container.config_yaml())
    return KubeProvider(kubeconfig=kubeconfig, namespace="default")


@pytest.fixture
def engine(kube_provider: KubeProvider, tmp_path: Path) -> ReconcileEngine:
    # Fresh CRD/namespace discovery can lag behind the API server; retry it.
    return ReconcileEngine(
        provider=kube_provider,
        registry=default_registry(),
        state_path=tmp_path / "state.json",
        parallelism=4,
        retry=RetryPolicy(max_attempts=10, initial_backoff=1, max_backoff=5),
    )
