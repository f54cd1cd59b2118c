from __future__ import annotations

import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass

from reconciler.src.errors import (
    ApplyError,
    ExtractionFailedError,
    RemediationIneffectiveError,
    RenderError,
    UnclassifiedApplyError,
)
from reconciler.src.kinds import ResourceDescriptor, classify, extract_names, spec_for
from reconciler.src.kube import ClusterClient
from reconciler.src.manifests import ManifestSet
from reconciler.src.metrics import METRICS


class ApplyState(enum.Enum):
    IDLE = "idle"
    APPLYING = "applying"
    DIAGNOSING = "diagnosing"
    REMEDIATING = "remediating"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class ApplyResult:
    """Terminal report of one apply, including any resources deleted on the way."""

    succeeded: bool
    remediated: tuple[ResourceDescriptor, ...] = ()
    attempts: int = 1
    error: ApplyError | None = None
    failed_deletes: tuple[ResourceDescriptor, ...] = ()


class ApplyEngine:
    """Optimistic apply that self-heals immutable-field conflicts.

    The common path is a single ``apply`` with no extra cluster calls. Only
    when the API server rejects the stream does the engine classify the
    error text, delete exactly the resources it names (using the kind's
    cascade policy) and re-apply a fresh rendering once. Errors that match
    no immutable-field signature are returned untouched.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        default_namespace: str = "default",
        logger: logging.Logger | None = None,
    ) -> None:
        self.cluster = cluster
        self.default_namespace = default_namespace
        self.logger = logger or logging.getLogger(__name__)
        self.state = ApplyState.IDLE

    def _transition(self, state: ApplyState) -> None:
        self.logger.debug("Apply engine %s -> %s", self.state.value, state.value)
        self.state = state

    def _fail(
        self,
        error: ApplyError,
        remediated: tuple[ResourceDescriptor, ...] = (),
        attempts: int = 1,
        failed_deletes: tuple[ResourceDescriptor, ...] = (),
    ) -> ApplyResult:
        self._transition(ApplyState.FAILED)
        return ApplyResult(
            succeeded=False,
            remediated=remediated,
            attempts=attempts,
            error=error,
            failed_deletes=failed_deletes,
        )

    def apply(
        self,
        manifests: ManifestSet,
        rerender: Callable[[], ManifestSet] | None = None,
    ) -> ApplyResult:
        """Apply *manifests*, remediating one round of immutable-field conflicts.

        *rerender* produces the manifests for the retry; it must be a fresh
        render of the same inputs. When omitted the original set is reused.
        A :class:`RenderError` from *rerender* fails the run with a
        :class:`RemediationIneffectiveError` that still lists the deletions.
        """
        self._transition(ApplyState.APPLYING)
        METRICS.apply_attempts_total.inc()
        first = self.cluster.apply(manifests)
        if first.ok:
            self._transition(ApplyState.SUCCEEDED)
            self.logger.info("Apply succeeded (no immutable field conflicts)")
            return ApplyResult(succeeded=True)

        self._transition(ApplyState.DIAGNOSING)
        error_text = first.detail
        kind = classify(error_text)
        if kind is None:
            self.logger.error("Apply failed with a non-immutable-field error")
            METRICS.unclassified_failures_total.inc()
            return self._fail(UnclassifiedApplyError(error_text))

        spec = spec_for(kind)
        self.logger.warning("Detected immutable %s field changes", spec.display_name)
        names = extract_names(kind, error_text)
        if not names:
            self.logger.error(
                "Could not identify failed %ss from the apply error", spec.display_name
            )
            return self._fail(ExtractionFailedError(kind, error_text))

        self._transition(ApplyState.REMEDIATING)
        deleted: list[ResourceDescriptor] = []
        failed_deletes: list[ResourceDescriptor] = []
        for name in names:
            target = manifests.descriptor_for(kind, name, self.default_namespace)
            self.logger.info(
                "Deleting %s %s in %s (cascade=%s)",
                spec.display_name,
                name,
                target.namespace,
                spec.cascade.value,
            )
            outcome = self.cluster.delete(target, spec.cascade)
            if outcome.ok:
                deleted.append(target)
                METRICS.remediated_total.labels(kind=kind.value).inc()
            else:
                failed_deletes.append(target)
                self.logger.error("Failed to delete %s: %s", target, outcome.detail)

        self._transition(ApplyState.RETRYING)
        try:
            retry_manifests = rerender() if rerender is not None else manifests
        except RenderError as exc:
            self.logger.error(
                "Re-render for retry failed after deleting %d resource(s)", len(deleted)
            )
            return self._fail(
                RemediationIneffectiveError(deleted, f"re-render for retry failed: {exc}"),
                remediated=tuple(deleted),
                failed_deletes=tuple(failed_deletes),
            )
        self.logger.info("Retrying apply with recreated %ss", spec.display_name)
        METRICS.apply_attempts_total.inc()
        second = self.cluster.apply(retry_manifests)
        if second.ok:
            self._transition(ApplyState.SUCCEEDED)
            return ApplyResult(
                succeeded=True,
                remediated=tuple(deleted),
                attempts=2,
                failed_deletes=tuple(failed_deletes),
            )

        self.logger.error("Apply still failing after remediating %d resource(s)", len(deleted))
        return self._fail(
            RemediationIneffectiveError(deleted, second.detail),
            remediated=tuple(deleted),
            attempts=2,
            failed_deletes=tuple(failed_deletes),
        )
