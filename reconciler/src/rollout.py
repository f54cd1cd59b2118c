from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from reconciler.src.kinds import ResourceDescriptor, WorkloadKind
from reconciler.src.kube import ClusterClient, ClusterResult
from reconciler.src.metrics import METRICS
from reconciler.src.policy import DeploymentPolicy

LOGGER = logging.getLogger(__name__)


class StatusState(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class WorkloadStatus:
    state: StatusState
    reason: str = ""

    @classmethod
    def success(cls, reason: str = "") -> WorkloadStatus:
        return cls(StatusState.SUCCESS, reason)

    @classmethod
    def failure(cls, reason: str) -> WorkloadStatus:
        return cls(StatusState.FAILURE, reason)

    @classmethod
    def skipped(cls, reason: str) -> WorkloadStatus:
        return cls(StatusState.SKIPPED, reason)

    @property
    def failed(self) -> bool:
        return self.state is StatusState.FAILURE

    def __str__(self) -> str:
        return f"{self.state.value}: {self.reason}" if self.reason else self.state.value


RolloutStatus = WorkloadStatus
RollbackStatus = WorkloadStatus


def _run_all(
    workloads: list[ResourceDescriptor],
    task: Callable[[ResourceDescriptor], WorkloadStatus],
    max_workers: int,
) -> dict[ResourceDescriptor, WorkloadStatus]:
    """Evaluate *task* for every workload, then collect every result.

    A failing task never prevents its siblings from running; with a pool,
    all futures are joined and none is cancelled.
    """
    if max_workers <= 1 or len(workloads) <= 1:
        return {workload: task(workload) for workload in workloads}
    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="rollout") as pool:
        futures = [(workload, pool.submit(task, workload)) for workload in workloads]
        return {workload: future.result() for workload, future in futures}


def _guarded(
    action: str, call: Callable[[ResourceDescriptor], ClusterResult]
) -> Callable[[ResourceDescriptor], WorkloadStatus]:
    def run(workload: ResourceDescriptor) -> WorkloadStatus:
        try:
            result = call(workload)
        except Exception as exc:
            LOGGER.exception("Unexpected error during %s of %s", action, workload)
            return WorkloadStatus.failure(f"unexpected error: {exc}")
        if result.ok:
            return WorkloadStatus.success(result.detail)
        return WorkloadStatus.failure(result.detail or f"{action} failed")

    return run


def wait_for_rollout(
    cluster: ClusterClient,
    workloads: Iterable[ResourceDescriptor],
    timeout_for: Callable[[WorkloadKind], float],
    max_workers: int = 1,
) -> dict[ResourceDescriptor, RolloutStatus]:
    """Check rollout status of every discovered workload.

    Services and Jobs have no rollout and are reported as skipped. Each
    workload gets its own ``timeout_for(kind)`` budget, and a timeout on one
    never stops the others: the full map is always returned.
    """
    ordered = list(workloads)
    results: dict[ResourceDescriptor, RolloutStatus] = {}
    checkable: list[ResourceDescriptor] = []
    for workload in ordered:
        if workload.has_rollout:
            checkable.append(workload)
        else:
            results[workload] = WorkloadStatus.skipped(
                f"{workload.kind.value} has no rollout status"
            )

    def check(workload: ResourceDescriptor) -> ClusterResult:
        timeout = timeout_for(workload.kind)
        LOGGER.info("Waiting up to %gs for %s rollout", timeout, workload)
        return cluster.rollout_status(workload, timeout)

    results.update(_run_all(checkable, _guarded("rollout status", check), max_workers))

    for workload, status in results.items():
        METRICS.rollout_results_total.labels(
            kind=workload.kind.value, result=status.state.value
        ).inc()
        if status.failed:
            LOGGER.error("Rollout failed for %s: %s", workload, status.reason)
    return {workload: results[workload] for workload in ordered}


def rollout_failed(results: Mapping[ResourceDescriptor, RolloutStatus]) -> bool:
    return any(status.failed for status in results.values())


def rollback(
    cluster: ClusterClient,
    workloads: Iterable[ResourceDescriptor],
    policy: DeploymentPolicy,
    max_workers: int = 1,
) -> dict[ResourceDescriptor, RollbackStatus] | None:
    """Undo every rollout-capable workload when policy allows it.

    Returns ``None`` when neither the service flag nor any strategy flag
    authorises rollback. Individual undo failures are recorded and never
    retried; callers decide whether manual intervention is needed.
    """
    if not policy.rollback_on_failure:
        LOGGER.info("Rollback on failure is disabled by policy; leaving workloads as-is")
        return None

    ordered = list(workloads)
    results: dict[ResourceDescriptor, RollbackStatus] = {}
    targets: list[ResourceDescriptor] = []
    for workload in ordered:
        if not workload.has_rollout:
            results[workload] = WorkloadStatus.skipped(f"{workload.kind.value} has no rollout history")
        else:
            targets.append(workload)

    def undo(workload: ResourceDescriptor) -> ClusterResult:
        LOGGER.warning("Rolling back %s in %s", workload, workload.namespace)
        return cluster.rollout_undo(workload)

    results.update(_run_all(targets, _guarded("rollout undo", undo), max_workers))

    for workload, status in results.items():
        METRICS.rollback_results_total.labels(result=status.state.value).inc()
        if status.failed:
            LOGGER.error("Rollback failed for %s: %s", workload, status.reason)
    return {workload: results[workload] for workload in ordered}


def needs_manual_intervention(
    results: Mapping[ResourceDescriptor, RollbackStatus] | None,
) -> list[ResourceDescriptor]:
    if not results:
        return []
    return [workload for workload, status in results.items() if status.failed]
