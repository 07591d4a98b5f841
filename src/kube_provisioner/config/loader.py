"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.constructor import SafeConstructor

from kube_provisioner.config.schema import Config

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised for configuration loading / validation errors."""


# Field name → environment variable.
_PROVIDER_ENV_MAP: dict[str, str] = {
    "kubeconfig": "KUBECONFIG",
    "context": "KUBE_CONTEXT",
    "namespace": "KUBE_NAMESPACE",
    "in_cluster": "KUBE_IN_CLUSTER",
    "field_manager": "KUBE_FIELD_MANAGER",
}

_PROVIDER_BOOL_FIELDS: frozenset[str] = frozenset({"in_cluster"})


def _resolve_provider(raw_provider: dict[str, Any], config_dir: Path) -> dict[str, Any]:
    """Resolve provider fields from YAML, env vars, and ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file.
    """
    unknown = sorted(set(raw_provider) - set(_PROVIDER_ENV_MAP))
    if unknown:
        raise ConfigError(f"Unknown provider field(s): {', '.join(unknown)}")

    env_file = config_dir / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    resolved: dict[str, Any] = {}
    for field, env_key in _PROVIDER_ENV_MAP.items():
        val = raw_provider.get(field)
        if val is None:
            val = os.environ.get(env_key)
        if val is None:
            val = dotenv_vals.get(env_key)
        if val is not None:
            if field in _PROVIDER_BOOL_FIELDS and isinstance(val, str):
                if val.lower() not in SafeConstructor.bool_values:
                    raise ConfigError(f"Invalid boolean for {env_key}: {val!r}")
                val = SafeConstructor.bool_values[val.lower()]
            resolved[field] = val

    return resolved


def _duplicate_names(raw_resources: Any) -> list[str]:
    """Report logical names declared more than once, with their positions."""
    if not isinstance(raw_resources, list):
        return []
    first_seen: dict[str, int] = {}
    errors: list[str] = []
    for i, entry in enumerate(raw_resources):
        name = entry.get("name") if isinstance(entry, dict) else None
        if not isinstance(name, str):
            continue
        if name in first_seen:
            errors.append(
                f"Duplicate resource name '{name}': found at resources[{first_seen[name]}] "
                f"and resources[{i}]"
            )
        else:
            first_seen[name] = i
    return errors


def _resolve_path(value: Path, config_dir: Path) -> Path:
    value = value.expanduser()
    return value if value.is_absolute() else config_dir / value


def load_config(path: Path | str) -> Config:
    """Load a YAML configuration file and return a ``Config`` object.

    Relative ``state_path`` and ``provider.kubeconfig`` values are resolved
    against the directory holding the file.

    Raises:
        ConfigError: On YAML parse errors, duplicate names, or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: expected a mapping at the top level")

    errors = _duplicate_names(raw.get("resources"))
    if errors:
        raise ConfigError("\n".join(errors))

    config_dir = path.parent
    try:
        raw["provider"] = _resolve_provider(raw.get("provider") or {}, config_dir)
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = config_dir
    config.state_path = _resolve_path(config.state_path, config_dir)
    if config.provider.kubeconfig is not None:
        config.provider.kubeconfig = _resolve_path(config.provider.kubeconfig, config_dir)

    logger.info("Loaded config from %s (%d resources)", path, len(config.resources))
    return config
