from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from prometheus_client import REGISTRY, Counter, Histogram, Info, write_to_textfile


@dataclass(frozen=True)
class ReconcileMetrics:
    """Prometheus metrics recorded during a reconcile pass.

    The CLI is short-lived, so metrics are flushed to a node-exporter
    textfile (see :func:`write_textfile`) instead of being scraped.
    """

    apply_attempts_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_apply_attempts_total",
            "Total kubectl apply attempts, including post-remediation retries",
        )
    )
    remediated_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_remediated_resources_total",
            "Total resources deleted to clear immutable field conflicts",
            ["kind"],
        )
    )
    unclassified_failures_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_unclassified_apply_failures_total",
            "Total apply failures that matched no immutable field signature",
        )
    )
    rollout_results_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_rollout_results_total",
            "Per-workload rollout status results",
            ["kind", "result"],
        )
    )
    rollback_results_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_rollback_results_total",
            "Per-workload rollback results",
            ["result"],
        )
    )
    policy_blocks_total: Counter = field(
        default_factory=lambda: Counter(
            "reconcile_policy_blocks_total",
            "Total runs stopped by a deploy policy gate",
            ["gate"],
        )
    )
    pass_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "reconcile_pass_duration_seconds",
            "Wall-clock seconds spent in one reconcile pass",
            buckets=(5, 15, 30, 60, 120, 300, 600, 1200, float("inf")),
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "reconcile",
            "Build information for the reconciler",
        )
    )


METRICS = ReconcileMetrics()


def write_textfile(path: Path) -> None:
    """Write the default registry to *path* atomically for the textfile collector."""
    write_to_textfile(str(path), REGISTRY)
