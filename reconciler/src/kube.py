from __future__ import annotations

import logging
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api
from kubernetes.config.config_exception import ConfigException

from reconciler.src.errors import ConfigError
from reconciler.src.kinds import CascadePolicy, ResourceDescriptor, WorkloadKind, spec_for
from reconciler.src.manifests import ManifestSet

LOGGER = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess[str]]


@dataclass(frozen=True)
class ClusterResult:
    """Outcome of one cluster call; ``detail`` carries stdout on success, error text otherwise."""

    ok: bool
    detail: str = ""


class ClusterClient(Protocol):
    def apply(self, manifests: ManifestSet) -> ClusterResult: ...

    def delete(self, resource: ResourceDescriptor, cascade: CascadePolicy) -> ClusterResult: ...

    def rollout_status(self, resource: ResourceDescriptor, timeout: float) -> ClusterResult: ...

    def rollout_undo(self, resource: ResourceDescriptor) -> ClusterResult: ...

    def current_context(self) -> str | None: ...

    def use_context(self, name: str) -> ClusterResult: ...


def load_kube_configuration(context: str | None = None) -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a CI runner pod),
    falling back to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        try:
            config.load_kube_config(context=context)
        except ConfigException as exc:
            raise ConfigError(f"unable to load kubeconfig: {exc}") from exc
        LOGGER.info("Loaded local kubeconfig (context=%s)", context or "<current>")


def build_apps_api() -> AppsV1Api:
    """Return an AppsV1 API client using the active kube configuration."""
    return client.AppsV1Api()


def _int(value: Any) -> int:
    return value if isinstance(value, int) else 0


def _generation_observed(obj: Any) -> bool:
    generation = _int(getattr(getattr(obj, "metadata", None), "generation", None))
    observed = _int(getattr(getattr(obj, "status", None), "observed_generation", None))
    return generation <= observed


def deployment_progress(obj: Any) -> tuple[bool, str]:
    """Return ``(done, message)`` using the same checks as ``kubectl rollout status``.

    Raises :class:`RuntimeError` when the deployment exceeded its progress
    deadline, since further polling cannot succeed.
    """
    name = getattr(getattr(obj, "metadata", None), "name", "")
    spec = getattr(obj, "spec", None)
    status = getattr(obj, "status", None)
    if not _generation_observed(obj):
        return False, f"waiting for deployment {name!r} spec update to be observed"

    for condition in getattr(status, "conditions", None) or []:
        if (
            getattr(condition, "type", None) == "Progressing"
            and getattr(condition, "reason", None) == "ProgressDeadlineExceeded"
        ):
            raise RuntimeError(f"deployment {name!r} exceeded its progress deadline")

    desired = _int(getattr(spec, "replicas", None))
    updated = _int(getattr(status, "updated_replicas", None))
    replicas = _int(getattr(status, "replicas", None))
    available = _int(getattr(status, "available_replicas", None))
    if updated < desired:
        return False, f"{updated} out of {desired} new replicas have been updated"
    if replicas > updated:
        return False, f"{replicas - updated} old replicas are pending termination"
    if available < updated:
        return False, f"{available} of {updated} updated replicas are available"
    return True, f"deployment {name!r} successfully rolled out"


def statefulset_progress(obj: Any) -> tuple[bool, str]:
    name = getattr(getattr(obj, "metadata", None), "name", "")
    spec = getattr(obj, "spec", None)
    status = getattr(obj, "status", None)
    strategy = getattr(spec, "update_strategy", None)
    if getattr(strategy, "type", "RollingUpdate") != "RollingUpdate":
        return True, f"statefulset {name!r} uses OnDelete updates; rollout status not tracked"
    if _int(getattr(status, "observed_generation", None)) == 0 or not _generation_observed(obj):
        return False, "waiting for statefulset spec update to be observed"

    desired = _int(getattr(spec, "replicas", None))
    ready = _int(getattr(status, "ready_replicas", None))
    if ready < desired:
        return False, f"{ready} of {desired} pods are ready"

    rolling = getattr(strategy, "rolling_update", None)
    partition = _int(getattr(rolling, "partition", None))
    if partition > 0:
        updated = _int(getattr(status, "updated_replicas", None))
        if updated < desired - partition:
            return False, f"{updated} of {desired - partition} partitioned pods are updated"
        return True, f"partitioned roll out complete: {updated} new pods have been updated"

    if getattr(status, "update_revision", None) != getattr(status, "current_revision", None):
        return False, "waiting for statefulset rolling update to complete"
    return True, f"statefulset {name!r} rolling update complete"


def daemonset_progress(obj: Any) -> tuple[bool, str]:
    name = getattr(getattr(obj, "metadata", None), "name", "")
    spec = getattr(obj, "spec", None)
    status = getattr(obj, "status", None)
    strategy = getattr(spec, "update_strategy", None)
    if getattr(strategy, "type", "RollingUpdate") != "RollingUpdate":
        return True, f"daemonset {name!r} uses OnDelete updates; rollout status not tracked"
    if not _generation_observed(obj):
        return False, f"waiting for daemon set {name!r} spec update to be observed"

    desired = _int(getattr(status, "desired_number_scheduled", None))
    updated = _int(getattr(status, "updated_number_scheduled", None))
    available = _int(getattr(status, "number_available", None))
    if updated < desired:
        return False, f"{updated} out of {desired} new pods have been updated"
    if available < desired:
        return False, f"{available} of {desired} updated pods are available"
    return True, f"daemon set {name!r} successfully rolled out"


_PROGRESS = {
    WorkloadKind.DEPLOYMENT: ("read_namespaced_deployment", deployment_progress),
    WorkloadKind.STATEFULSET: ("read_namespaced_stateful_set", statefulset_progress),
    WorkloadKind.DAEMONSET: ("read_namespaced_daemon_set", daemonset_progress),
}


class KubeCluster:
    """Cluster client backed by ``kubectl`` for mutations and ``AppsV1Api`` for status.

    ``kubectl apply`` is kept for the apply/delete path because its error
    text (``Resource=statefulsets ... Name: "x"``) is what the immutable
    field table parses. Rollout status polls the API directly so the
    timeout budget is enforced here rather than by a subprocess.
    """

    def __init__(
        self,
        apps_api: AppsV1Api | None = None,
        kubectl: str = "kubectl",
        prune_selector: str = "",
        request_timeout_seconds: int = 120,
        poll_interval_seconds: float = 2.0,
        kubeconfig: str | None = None,
        runner: Runner = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.apps_api = apps_api
        self.kubectl = kubectl
        self.prune_selector = prune_selector
        self.request_timeout_seconds = request_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.kubeconfig = kubeconfig
        self.runner = runner
        self.sleep = sleep
        self.clock = clock

    def _kubectl(self, args: Sequence[str], stdin: str | None = None) -> ClusterResult:
        cmd = [self.kubectl, *args]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        LOGGER.debug("Running %s", " ".join(cmd))
        try:
            result = self.runner(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=self.request_timeout_seconds,
            )
        except FileNotFoundError:
            return ClusterResult(False, f"{self.kubectl} is required but was not found in PATH")
        except subprocess.TimeoutExpired:
            return ClusterResult(
                False, f"kubectl {args[0]} timed out after {self.request_timeout_seconds}s"
            )
        if result.returncode != 0:
            return ClusterResult(False, (result.stderr or result.stdout or "").strip())
        return ClusterResult(True, (result.stdout or "").strip())

    def apply(self, manifests: ManifestSet) -> ClusterResult:
        args = ["apply", "-f", "-"]
        if self.prune_selector:
            args.extend(["--prune", "-l", self.prune_selector])
        return self._kubectl(args, stdin=manifests.raw)

    def delete(self, resource: ResourceDescriptor, cascade: CascadePolicy) -> ClusterResult:
        args = [
            "delete",
            spec_for(resource.kind).resource,
            resource.name,
            "-n",
            resource.namespace,
            "--ignore-not-found",
        ]
        if cascade is CascadePolicy.ORPHAN:
            args.append("--cascade=orphan")
        return self._kubectl(args)

    def delete_manifests(self, manifests: ManifestSet) -> ClusterResult:
        return self._kubectl(["delete", "-f", "-", "--ignore-not-found"], stdin=manifests.raw)

    def rollout_undo(self, resource: ResourceDescriptor) -> ClusterResult:
        target = f"{spec_for(resource.kind).resource}/{resource.name}"
        return self._kubectl(["rollout", "undo", target, "-n", resource.namespace])

    def rollout_status(self, resource: ResourceDescriptor, timeout: float) -> ClusterResult:
        """Poll until *resource* finishes rolling out or *timeout* seconds pass."""
        if resource.kind not in _PROGRESS:
            return ClusterResult(False, f"{resource.kind.value} has no rollout status")
        if self.apps_api is None:
            raise RuntimeError("rollout status requires an AppsV1Api client")

        method_name, progress = _PROGRESS[resource.kind]
        reader = getattr(self.apps_api, method_name)
        deadline = self.clock() + timeout
        message = "no status observed yet"
        while True:
            try:
                obj = reader(name=resource.name, namespace=resource.namespace)
                done, message = progress(obj)
            except ApiException as exc:
                if exc.status == 404:
                    return ClusterResult(False, f"{resource} not found in {resource.namespace}")
                if exc.status in {401, 403}:
                    return ClusterResult(
                        False, f"access denied reading {resource} (status={exc.status})"
                    )
                message = f"API error {exc.status}: {exc.reason}"
                LOGGER.warning("Transient error polling %s: %s", resource, message)
                done = False
            except RuntimeError as exc:
                return ClusterResult(False, str(exc))

            if done:
                return ClusterResult(True, message)
            remaining = deadline - self.clock()
            if remaining <= 0:
                return ClusterResult(False, f"timed out after {timeout:g}s: {message}")
            self.sleep(min(self.poll_interval_seconds, remaining))

    def current_context(self) -> str | None:
        try:
            _, active = config.list_kube_config_contexts(config_file=self.kubeconfig)
        except (ConfigException, OSError):
            LOGGER.exception("Unable to read kubeconfig contexts")
            return None
        if not isinstance(active, dict):
            return None
        name = active.get("name")
        return name if isinstance(name, str) else None

    def use_context(self, name: str) -> ClusterResult:
        return self._kubectl(["config", "use-context", name])
