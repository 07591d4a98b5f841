"""Tests for the YAML configuration loader."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from kube_provisioner.config import engine_from_config
from kube_provisioner.config.loader import ConfigError, load_config
from kube_provisioner.config.schema import TYPE_ALIASES, Config, ProviderConfig
from kube_provisioner.engine.manifest_handler import (
    CUSTOM_RESOURCE_TYPE,
    DEPLOYMENT_TYPE,
    NAMESPACE_TYPE,
)

if TYPE_CHECKING:
    from collections.abc import Callable

_FULL_YAML = """\
provider:
  context: do-sfo3-test-cluster
  namespace: web

state_path: state/kube.json
parallelism: 2
retry:
  max_attempts: 3
  initial_backoff: 0.5

resources:
  - name: nginx-ns
    type: namespace
    inputs:
      metadata:
        name: nginx-ingress

  - name: nginx-deployment
    type: deployment
    inputs:
      metadata:
        name: nginx
        namespace: nginx-ingress
      spec:
        selector:
          matchLabels:
            app: nginx

  - name: letsencrypt
    type: custom_resource
    depends_on: [nginx-ns]
    inputs:
      apiVersion: cert-manager.io/v1
      kind: ClusterIssuer
      metadata:
        name: letsencrypt

  - name: raw
    type: "kubernetes:core/v1:Service"
    inputs:
      metadata:
        name: "${nginx-deployment.metadata.name}"
"""


class TestLoadConfig:
    def test_full_config(self, make_config: Callable[..., Config], tmp_path: Path) -> None:
        config = make_config(_FULL_YAML)

        assert config.provider.context == "do-sfo3-test-cluster"
        assert config.provider.namespace == "web"
        assert config.provider.in_cluster is False
        assert config.parallelism == 2
        assert config.retry.policy().max_attempts == 3
        assert config.retry.policy().initial_backoff == 0.5
        assert config.state_path == tmp_path / "state" / "kube.json"
        assert config.config_dir == tmp_path

        assert [r.name for r in config.resources] == [
            "nginx-ns",
            "nginx-deployment",
            "letsencrypt",
            "raw",
        ]
        assert config.resources[0].resource_type == NAMESPACE_TYPE
        assert config.resources[1].resource_type == DEPLOYMENT_TYPE
        assert config.resources[2].resource_type == CUSTOM_RESOURCE_TYPE
        assert config.resources[2].depends_on == ("nginx-ns",)
        assert config.resources[3].resource_type == "kubernetes:core/v1:Service"
        assert config.resources[3].references() == ["nginx-deployment"]

    def test_defaults(self, make_config: Callable[..., Config], tmp_path: Path) -> None:
        config = make_config("")

        assert config.resources == []
        assert config.parallelism == 4
        assert config.provider.namespace == "default"
        assert config.provider.field_manager == "kube-provisioner"
        assert config.state_path == tmp_path / ".kube-state.json"

    def test_null_resources(self, make_config: Callable[..., Config]) -> None:
        assert make_config("resources:\n").resources == []

    def test_aliases_cover_builtin_types(self) -> None:
        assert sorted(TYPE_ALIASES) == [
            "custom_resource",
            "deployment",
            "ingress",
            "namespace",
            "service",
        ]

    def test_absolute_state_path_kept(
        self, make_config: Callable[..., Config], tmp_path: Path
    ) -> None:
        target = tmp_path / "elsewhere" / "s.json"
        config = make_config(f"state_path: {target}\n")
        assert config.state_path == target

    def test_kubeconfig_relative_to_config(
        self, make_config: Callable[..., Config], tmp_path: Path
    ) -> None:
        config = make_config("provider:\n  kubeconfig: kube/config\n")
        assert config.provider.kubeconfig == tmp_path / "kube" / "config"


class TestProviderResolution:
    def test_env_fills_missing_fields(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("KUBE_CONTEXT", "from-env")
        monkeypatch.setenv("KUBE_IN_CLUSTER", "true")
        config = make_config("provider:\n  namespace: yaml-ns\n")

        assert config.provider.context == "from-env"
        assert config.provider.in_cluster is True
        assert config.provider.namespace == "yaml-ns"

    def test_yaml_beats_env_beats_dotenv(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("KUBE_NAMESPACE", "env-ns")
        config = make_config(
            "provider:\n  context: yaml-ctx\n",
            dotenv="KUBE_CONTEXT=dotenv-ctx\nKUBE_NAMESPACE=dotenv-ns\n"
            "KUBE_FIELD_MANAGER=dotenv-manager\n",
        )

        assert config.provider.context == "yaml-ctx"
        assert config.provider.namespace == "env-ns"
        assert config.provider.field_manager == "dotenv-manager"

    def test_invalid_boolean(
        self, make_config: Callable[..., Config], monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("KUBE_IN_CLUSTER", "maybe")
        with pytest.raises(ConfigError, match="Invalid boolean for KUBE_IN_CLUSTER"):
            make_config("")

    def test_unknown_provider_field(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="Unknown provider field"):
            make_config("provider:\n  host: https://example.com\n")

    def test_provider_settings_read_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("KUBE_NAMESPACE", "settings-ns")
        monkeypatch.setenv("KUBECONFIG", "/tmp/kubeconfig")
        settings = ProviderConfig()
        assert settings.namespace == "settings-ns"
        assert settings.kubeconfig == Path("/tmp/kubeconfig")
        assert ProviderConfig(namespace="explicit").namespace == "explicit"


class TestErrors:
    def test_duplicate_names(self, make_config: Callable[..., Config]) -> None:
        yaml_str = """\
resources:
  - name: web
    type: namespace
    inputs: {metadata: {name: a}}
  - name: other
    type: namespace
    inputs: {metadata: {name: b}}
  - name: web
    type: service
    inputs: {metadata: {name: c}}
"""
        with pytest.raises(
            ConfigError,
            match=r"Duplicate resource name 'web': found at resources\[0\] and resources\[2\]",
        ):
            make_config(yaml_str)

    def test_invalid_yaml(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="Failed to read"):
            make_config("resources: [unclosed\n")

    def test_top_level_must_be_mapping(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigError, match="expected a mapping"):
            make_config("- just\n- a list\n")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Failed to read"):
            load_config(tmp_path / "missing.yaml")

    @pytest.mark.parametrize(
        "yaml_str",
        [
            "unknown_key: 1\n",
            "parallelism: 0\n",
            "retry:\n  max_attempts: 0\n",
            "resources:\n  - name: x\n    type: namespace\n    extra: 1\n",
            "resources:\n  - name: 'bad name'\n    type: namespace\n",
            "resources:\n  - type: namespace\n",
        ],
    )
    def test_schema_errors(self, make_config: Callable[..., Config], yaml_str: str) -> None:
        with pytest.raises(ConfigError):
            make_config(yaml_str)


def test_example_config_builds_graph() -> None:
    example = Path(__file__).parents[2] / "examples" / "nginx-tls" / "kube-provisioner.yaml"
    config = load_config(example)

    graph = engine_from_config(config).graph(config.resources)

    assert graph.dependencies_of("cert") == ["letsencrypt-cluster-issuer"]
    assert graph.dependencies_of("next-ingress") == [
        "cert",
        "letsencrypt-cluster-issuer",
        "nginx-service",
    ]
    order = graph.topological_order()
    assert order.index("nginx-deployment") < order.index("nginx-service") < order.index(
        "next-ingress"
    )
