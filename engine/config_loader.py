"""
Adaptive Control Plane — Configuration Loader

Three layers, each merged over the one before it:

  base       control_plane.yaml at the project root
  overlay    config/{env}.yaml for the active environment (CP_ENV, default "dev")
  env vars   CP_* variables, either from the fixed mapping below or the
             generic CP_CONFIG__section__key=value form

The merged mapping is plain data; controlplane.config turns it into
typed component settings.

Usage:
    from engine.config_loader import load_config, get_config

    loader = load_config(env="prod", project_root=".")
    sensitivity = loader.get("anomaly.sensitivity", 0.95)

    loader = get_config()          # process-wide, cached
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Iterator, Mapping

import yaml

logger = logging.getLogger("control_plane.config")

DEFAULT_BASE_FILE = "control_plane.yaml"
OVERLAY_DIR = "config"
META_KEY = "_config_meta"


class ConfigLoader:
    """Merges the base, overlay and environment layers into one mapping."""

    def __init__(
        self,
        env: str = "dev",
        project_root: str = ".",
        base_files: list[str] | None = None,
        environ: Mapping[str, str] | None = None,
    ):
        self.env = env
        self.project_root = Path(project_root)
        self.base_files = list(base_files) if base_files else [DEFAULT_BASE_FILE]
        self._environ = environ
        self._merged: dict[str, Any] | None = None
        self._sources: list[str] = []

    def _layers(self) -> Iterator[tuple[str, dict[str, Any]]]:
        for name in self.base_files:
            path = self.project_root / name
            if path.is_file():
                yield f"base:{name}", _read_yaml(path)

        overlay = Path(OVERLAY_DIR) / f"{self.env}.yaml"
        if (self.project_root / overlay).is_file():
            yield f"overlay:{overlay.as_posix()}", _read_yaml(self.project_root / overlay)

        environ = os.environ if self._environ is None else self._environ
        overrides = _load_env_overrides(environ)
        if overrides:
            yield f"env_vars({len(overrides)} sections)", overrides

    def load(self) -> dict[str, Any]:
        """Read every layer from scratch and return the merged mapping."""
        merged: dict[str, Any] = {}
        sources: list[str] = []
        for source, layer in self._layers():
            merged = _deep_merge(merged, layer)
            sources.append(source)

        merged[META_KEY] = {
            "env": self.env,
            "sources": list(sources),
            "project_root": str(self.project_root),
        }
        self._merged = merged
        self._sources = sources
        logger.info("Config loaded for env=%s from %s", self.env, sources or "defaults only")
        return merged

    def _data(self) -> dict[str, Any]:
        if self._merged is None:
            return self.load()
        return self._merged

    def get(self, dotted_key: str, default: Any = None) -> Any:
        """Look up ``"section.key.subkey"``; ``default`` if any part is missing."""
        node: Any = self._data()
        for part in dotted_key.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def section(self, name: str) -> dict[str, Any]:
        """Copy of a top-level section, or {} when absent."""
        value = self.get(name)
        return copy.deepcopy(value) if isinstance(value, dict) else {}

    def get_all(self) -> dict[str, Any]:
        return copy.deepcopy(self._data())

    @property
    def sources(self) -> list[str]:
        return list(self._sources)

    def reload(self) -> dict[str, Any]:
        return self.load()


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def _deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """New mapping with ``overlay`` merged over ``base``; nested dicts merge, the rest replaces."""
    merged = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


# ═══════════════════════════════════════════════════════════════════
# Environment Variables
# ═══════════════════════════════════════════════════════════════════

GENERIC_PREFIX = "CP_CONFIG__"

_ENV_MAPPINGS: dict[str, str] = {
    "CP_BATCH_ENABLED": "batch_optimizer.enabled",
    "CP_BATCH_MIN_SIZE": "batch_optimizer.min_batch",
    "CP_BATCH_MAX_SIZE": "batch_optimizer.max_batch",
    "CP_BATCH_DEFAULT_SIZE": "batch_optimizer.default_batch",
    "CP_BATCH_TARGET_TPS": "batch_optimizer.target_tps",
    "CP_BATCH_ADAPTATION_INTERVAL": "batch_optimizer.adaptation_interval",
    "CP_ANOMALY_ENABLED": "anomaly.enabled",
    "CP_ANOMALY_SENSITIVITY": "anomaly.sensitivity",
    "CP_ORDERING_ENABLED": "ordering.enabled",
    "CP_ORDERING_LEARNING_INTERVAL": "ordering.learning_interval",
    "CP_LB_ENABLED": "load_balancer.enabled",
    "CP_LB_LOAD_THRESHOLD": "load_balancer.load_threshold",
    "CP_LB_LEARNING_RATE": "load_balancer.learning_rate",
    "CP_LIFECYCLE_ENABLED": "lifecycle.enabled",
    "CP_LIFECYCLE_UPDATE_INTERVAL": "lifecycle.update_interval",
    "CP_LIFECYCLE_ACCURACY_THRESHOLD": "lifecycle.accuracy_threshold",
    "CP_LIFECYCLE_AB_FRACTION": "lifecycle.ab_fraction",
    "CP_CONSENSUS_ENABLED": "consensus.enabled",
    "CP_CONSENSUS_PARTITION_THRESHOLD": "consensus.partition_threshold",
    "CP_LOG_LEVEL": "logging.level",
}


def _load_env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Nested overrides built from the mapped and the generic CP_* variables."""
    overrides: dict[str, Any] = {}
    for name, path in _ENV_MAPPINGS.items():
        if name in environ:
            _set_path(overrides, path, _auto_convert(environ[name]))

    for name, raw in environ.items():
        if name.startswith(GENERIC_PREFIX):
            # CP_CONFIG__ORDERING__WEIGHTS__FEE -> ordering.weights.fee
            path = name[len(GENERIC_PREFIX):].lower().replace("__", ".")
            _set_path(overrides, path, _auto_convert(raw))
    return overrides


def _set_path(target: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = target
    for part in parents:
        node = node.setdefault(part, {})
    node[leaf] = value


def _auto_convert(value: str) -> Any:
    """Map true/yes and false/no to bools, then try int, then float."""
    lowered = value.strip().lower()
    if lowered in ("true", "yes"):
        return True
    if lowered in ("false", "no"):
        return False
    for convert in (int, float):
        try:
            return convert(value)
        except ValueError:
            continue
    return value


# ═══════════════════════════════════════════════════════════════════
# Process-wide Loader
# ═══════════════════════════════════════════════════════════════════

_instance: ConfigLoader | None = None


def get_config(env: str | None = None, project_root: str | None = None) -> ConfigLoader:
    """
    Cached loader for the process. Arguments only matter on the first
    call; CP_ENV and CP_PROJECT_ROOT fill in whatever is omitted.
    """
    global _instance
    if _instance is None:
        loader = ConfigLoader(
            env=env or os.environ.get("CP_ENV", "dev"),
            project_root=project_root or os.environ.get("CP_PROJECT_ROOT", "."),
        )
        loader.load()
        _instance = loader
    return _instance


def load_config(
    env: str = "dev",
    project_root: str = ".",
    base_files: list[str] | None = None,
    environ: Mapping[str, str] | None = None,
) -> ConfigLoader:
    """Fresh loader, independent of the cached one."""
    loader = ConfigLoader(env, project_root, base_files, environ)
    loader.load()
    return loader


def reset_config() -> None:
    global _instance
    _instance = None
