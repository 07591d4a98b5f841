"""Shared fixtures for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fakes import FakeEnv

from kube_provisioner.config import load

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from kube_provisioner.config.schema import Config

_KUBE_ENV_VARS = (
    "KUBECONFIG",
    "KUBE_CONTEXT",
    "KUBE_NAMESPACE",
    "KUBE_IN_CLUSTER",
    "KUBE_FIELD_MANAGER",
    "KUBE_PROVISIONER_LOG",
)


@pytest.fixture(autouse=True)
def _clean_kube_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove KUBE* env vars so unit tests don't leak cluster config."""
    for var in _KUBE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "config.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "config.yaml")

    return _make


@pytest.fixture
def env(tmp_path: Path) -> FakeEnv:
    return FakeEnv(tmp_path / "state.json")


@pytest.fixture
def serial_env(tmp_path: Path) -> FakeEnv:
    """Single worker, so provider calls happen in a deterministic order."""
    return FakeEnv(tmp_path / "state.json", parallelism=1)
