from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

from reconciler.src.engine import ApplyEngine
from reconciler.src.errors import ApplyError
from reconciler.src.kinds import ResourceDescriptor
from reconciler.src.kube import ClusterClient
from reconciler.src.manifests import KustomizeRenderer, discover_workloads
from reconciler.src.metrics import METRICS
from reconciler.src.policy import DeploymentPolicy
from reconciler.src.rollout import (
    RollbackStatus,
    RolloutStatus,
    needs_manual_intervention,
    rollback,
    rollout_failed,
    wait_for_rollout,
)


@dataclass(frozen=True)
class ReconcileOutcome:
    """Terminal report of one reconcile pass.

    ``rollback_results`` is ``None`` when rollback was never invoked, either
    because every rollout succeeded or because policy did not allow it.
    """

    applied: bool
    remediated: tuple[ResourceDescriptor, ...] = ()
    rollout_results: Mapping[ResourceDescriptor, RolloutStatus] | None = None
    rollback_results: Mapping[ResourceDescriptor, RollbackStatus] | None = None
    apply_error: ApplyError | None = None

    @property
    def rollout_failed(self) -> bool:
        return bool(self.rollout_results) and rollout_failed(self.rollout_results or {})

    @property
    def rollback_failed(self) -> bool:
        return bool(needs_manual_intervention(self.rollback_results))

    @property
    def succeeded(self) -> bool:
        return self.applied and not self.rollout_failed


class Reconciler:
    """Run one sequential pass: render, discover, apply, wait, maybe roll back.

    The policy must already be resolved; gate failures are raised by
    :func:`reconciler.src.policy.resolve` before a reconciler is built.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        renderer: KustomizeRenderer,
        default_namespace: str = "default",
        max_workers: int = 1,
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.renderer = renderer
        self.default_namespace = default_namespace
        self.max_workers = max_workers
        self.logger = logger or logging.getLogger(__name__)

    def run(self, provider: str, environment: str, policy: DeploymentPolicy) -> ReconcileOutcome:
        started = time.monotonic()
        try:
            return self._run(provider, environment, policy)
        finally:
            METRICS.pass_duration_seconds.observe(time.monotonic() - started)

    def _run(self, provider: str, environment: str, policy: DeploymentPolicy) -> ReconcileOutcome:
        manifests = self.renderer.render(provider, environment)
        workloads = discover_workloads(manifests, self.default_namespace)
        self.logger.info(
            "Discovered %d managed workload(s) for %s/%s", len(workloads), provider, environment
        )

        engine = ApplyEngine(self.cluster, default_namespace=self.default_namespace)
        applied = engine.apply(
            manifests,
            rerender=lambda: self.renderer.render(provider, environment),
        )
        if not applied.succeeded:
            return ReconcileOutcome(
                applied=False,
                remediated=applied.remediated,
                apply_error=applied.error,
            )

        rollout_results = wait_for_rollout(
            self.cluster,
            workloads,
            timeout_for=policy.timeout_for,
            max_workers=self.max_workers,
        )
        rollback_results = None
        if rollout_failed(rollout_results):
            rollback_results = rollback(
                self.cluster, workloads, policy, max_workers=self.max_workers
            )

        return ReconcileOutcome(
            applied=True,
            remediated=applied.remediated,
            rollout_results=rollout_results,
            rollback_results=rollback_results,
        )
