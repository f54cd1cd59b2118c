from __future__ import annotations

import logging
from pathlib import Path

import yaml

from reconciler.src.errors import ConfigError, ContextMismatchError
from reconciler.src.kube import ClusterClient

LOGGER = logging.getLogger(__name__)


def load_local_context_name(path: Path) -> str:
    """Read ``cluster_name`` from the local cluster's ``cluster-config.yaml``."""
    if not path.is_file():
        raise ConfigError(
            f"cluster-config.yaml not found at {path}. "
            "Make sure the local cluster config exists and is named correctly."
        )
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc

    name = data.get("cluster_name") if isinstance(data, dict) else None
    if not isinstance(name, str) or not name.strip():
        raise ConfigError(
            f"{path} is missing a valid 'cluster_name' field, e.g. cluster_name: podman-local"
        )
    return name.strip()


def ensure_context(cluster: ClusterClient, expected: str, switch: bool = True) -> str:
    """Make sure *expected* is the active kube context before anything is mutated.

    When the active context differs and *switch* is set, one
    ``use-context`` is attempted and the result re-read. Any remaining
    mismatch raises :class:`ContextMismatchError`.
    """
    current = cluster.current_context()
    if current == expected:
        return current

    if switch:
        LOGGER.info("Switching kubectl context to '%s' (was '%s')", expected, current)
        result = cluster.use_context(expected)
        if not result.ok:
            LOGGER.error("Failed to switch kubectl context to '%s': %s", expected, result.detail)
            raise ContextMismatchError(expected, current)
        current = cluster.current_context()

    if current != expected:
        raise ContextMismatchError(expected, current)
    return current
