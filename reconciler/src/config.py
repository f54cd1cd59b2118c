from __future__ import annotations

import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from reconciler.src.errors import ConfigError

DEFAULT_PRUNE_SELECTOR = "app.kubernetes.io/managed-by=kustomize"
DEFAULT_LOCAL_CLUSTER_CONFIG = "infra/k8s/podman/local/cluster/cluster-config.yaml"


@dataclass(frozen=True)
class Settings:
    """Runtime settings for one CLI invocation.

    Attributes:
        repo_root: Directory holding ``infra/k8s/{provider}/{environment}``.
        kubectl: kubectl executable.
        kustomize: kustomize executable.
        namespace: Namespace for manifests that do not set ``metadata.namespace``.
        prune_selector: Label selector for ``kubectl apply --prune``; empty disables pruning.
        request_timeout_seconds: Upper bound for every kubectl call.
        poll_interval_seconds: Delay between rollout status polls.
        max_workers: Fan-out for rollout and rollback checks (1 = sequential).
        policy_path: deploy-control YAML file, or ``None`` to skip policy gating.
        local_cluster_config: ``cluster-config.yaml`` naming the local kube context.
        metrics_textfile: Where to write Prometheus metrics after the run, if anywhere.
    """

    repo_root: Path
    kubectl: str = "kubectl"
    kustomize: str = "kustomize"
    namespace: str = "default"
    prune_selector: str = DEFAULT_PRUNE_SELECTOR
    request_timeout_seconds: int = 120
    poll_interval_seconds: float = 2.0
    max_workers: int = 1
    policy_path: Path | None = None
    local_cluster_config: Path | None = None
    metrics_textfile: Path | None = None


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def env_float(values: Mapping[str, str], name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    return value


def _optional_path(values: Mapping[str, str], name: str) -> Path | None:
    raw = values.get(name)
    if raw is None or not raw.strip():
        return None
    return Path(raw.strip())


def load_settings(env: Mapping[str, str] | None = None) -> Settings:
    """Load settings from environment variables.

    Every variable is optional. Invalid values raise :class:`ConfigError`
    naming the variable.
    """
    values = env if env is not None else os.environ

    repo_root = Path(values.get("RECONCILE_REPO_ROOT", ".") or ".")
    namespace = values.get("RECONCILE_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("RECONCILE_NAMESPACE must be a non-empty string")

    local_cluster_config = _optional_path(values, "LOCAL_CLUSTER_CONFIG")
    if local_cluster_config is None:
        local_cluster_config = repo_root / DEFAULT_LOCAL_CLUSTER_CONFIG

    return Settings(
        repo_root=repo_root,
        kubectl=values.get("KUBECTL_BIN", "kubectl") or "kubectl",
        kustomize=values.get("KUSTOMIZE_BIN", "kustomize") or "kustomize",
        namespace=namespace.strip(),
        prune_selector=values.get("RECONCILE_PRUNE_SELECTOR", DEFAULT_PRUNE_SELECTOR).strip(),
        request_timeout_seconds=env_int(values, "KUBECTL_REQUEST_TIMEOUT_SECONDS", 120, minimum=1),
        poll_interval_seconds=env_float(values, "ROLLOUT_POLL_INTERVAL_SECONDS", 2.0),
        max_workers=env_int(values, "ROLLOUT_MAX_WORKERS", 1, minimum=1, maximum=64),
        policy_path=_optional_path(values, "DEPLOY_CONTROL_PATH"),
        local_cluster_config=local_cluster_config,
        metrics_textfile=_optional_path(values, "METRICS_TEXTFILE"),
    )


def require_binaries(*names: str) -> None:
    """Fail fast when a required executable is not on ``PATH``."""
    missing = [name for name in names if shutil.which(name) is None]
    if missing:
        raise ConfigError(
            "required tools not found in PATH: "
            + ", ".join(missing)
            + ". Install them and make sure they are accessible."
        )
