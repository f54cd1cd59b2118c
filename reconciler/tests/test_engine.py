from __future__ import annotations

from collections.abc import Iterable

from reconciler.src.engine import ApplyEngine, ApplyResult, ApplyState
from reconciler.src.errors import (
    ExtractionFailedError,
    RemediationIneffectiveError,
    RenderError,
    UnclassifiedApplyError,
)
from reconciler.src.kinds import CascadePolicy, ResourceDescriptor, WorkloadKind
from reconciler.src.kube import ClusterResult
from reconciler.src.manifests import ManifestSet

STATEFULSET_ERROR = (
    'Error from server (Invalid): error when applying patch:\n'
    'Resource: "apps/v1, Resource=statefulsets", GroupVersionKind: "apps/v1, Kind=StatefulSet"\n'
    'Name: "postgres", Namespace: "default"\n'
    'for: "STDIN": StatefulSet.apps "postgres" is invalid: spec: Forbidden: '
    "updates to statefulset spec for fields other than 'replicas', 'template' are forbidden"
)

MANIFESTS = ManifestSet.from_text(
    "kind: StatefulSet\nmetadata:\n  name: postgres\n"
    "---\nkind: StatefulSet\nmetadata:\n  name: redis\n  namespace: cache\n"
    "---\nkind: Service\nmetadata:\n  name: api\n"
)


class FakeCluster:
    def __init__(
        self,
        apply_results: Iterable[ClusterResult],
        delete_ok: bool = True,
    ) -> None:
        self.apply_results = list(apply_results)
        self.delete_ok = delete_ok
        self.applied: list[ManifestSet] = []
        self.deleted: list[tuple[ResourceDescriptor, CascadePolicy]] = []

    def apply(self, manifests: ManifestSet) -> ClusterResult:
        self.applied.append(manifests)
        return self.apply_results.pop(0)

    def delete(self, resource: ResourceDescriptor, cascade: CascadePolicy) -> ClusterResult:
        self.deleted.append((resource, cascade))
        if self.delete_ok:
            return ClusterResult(True, f"{resource} deleted")
        return ClusterResult(False, "the server is currently unable to handle the request")

    def rollout_status(self, resource: ResourceDescriptor, timeout: float) -> ClusterResult:
        raise AssertionError("apply engine must not check rollout status")

    def rollout_undo(self, resource: ResourceDescriptor) -> ClusterResult:
        raise AssertionError("apply engine must not roll back")

    def current_context(self) -> str | None:
        return None

    def use_context(self, name: str) -> ClusterResult:
        raise AssertionError("apply engine must not switch contexts")


def test_clean_apply_makes_no_other_cluster_calls() -> None:
    cluster = FakeCluster([ClusterResult(True, "statefulset.apps/postgres configured")])
    engine = ApplyEngine(cluster)

    result = engine.apply(MANIFESTS)

    assert result == ApplyResult(succeeded=True)
    assert cluster.applied == [MANIFESTS]
    assert cluster.deleted == []
    assert engine.state is ApplyState.SUCCEEDED


def test_immutable_statefulset_is_deleted_with_orphan_cascade_and_retried() -> None:
    cluster = FakeCluster([ClusterResult(False, STATEFULSET_ERROR), ClusterResult(True)])
    engine = ApplyEngine(cluster)

    result = engine.apply(MANIFESTS)

    postgres = ResourceDescriptor(WorkloadKind.STATEFULSET, "postgres", "default")
    assert result == ApplyResult(succeeded=True, remediated=(postgres,), attempts=2)
    assert cluster.deleted == [(postgres, CascadePolicy.ORPHAN)]
    assert len(cluster.applied) == 2


def test_short_form_error_is_remediated() -> None:
    cluster = FakeCluster(
        [
            ClusterResult(False, 'updates to statefulset spec for "postgres" are forbidden'),
            ClusterResult(True),
        ]
    )

    result = ApplyEngine(cluster).apply(MANIFESTS)

    assert result.succeeded is True
    assert result.remediated == (
        ResourceDescriptor(WorkloadKind.STATEFULSET, "postgres", "default"),
    )


def test_delete_uses_namespace_declared_in_manifests() -> None:
    error = STATEFULSET_ERROR.replace("postgres", "redis").replace(
        'Namespace: "default"', 'Namespace: "cache"'
    )
    cluster = FakeCluster([ClusterResult(False, error), ClusterResult(True)])

    ApplyEngine(cluster, default_namespace="default").apply(MANIFESTS)

    assert cluster.deleted == [
        (ResourceDescriptor(WorkloadKind.STATEFULSET, "redis", "cache"), CascadePolicy.ORPHAN)
    ]


def test_service_conflict_deletes_without_orphaning() -> None:
    error = (
        'Resource: "/v1, Resource=services", GroupVersionKind: "/v1, Kind=Service"\n'
        'Name: "api", Namespace: "default"\n'
        'for: "STDIN": Service "api" is invalid: spec.clusterIP: Invalid value: '
        '"10.0.0.9": field is immutable'
    )
    cluster = FakeCluster([ClusterResult(False, error), ClusterResult(True)])

    ApplyEngine(cluster).apply(MANIFESTS)

    assert cluster.deleted == [
        (ResourceDescriptor(WorkloadKind.SERVICE, "api", "default"), CascadePolicy.NONE)
    ]


def test_every_named_resource_is_deleted_once() -> None:
    error = STATEFULSET_ERROR + "\n" + STATEFULSET_ERROR.replace("postgres", "redis")
    cluster = FakeCluster([ClusterResult(False, error), ClusterResult(True)])

    result = ApplyEngine(cluster).apply(MANIFESTS)

    assert [resource.name for resource, _ in cluster.deleted] == ["postgres", "redis"]
    assert len(result.remediated) == 2


def test_unclassified_error_is_surfaced_without_deleting() -> None:
    text = 'Error from server (Forbidden): User "ci" cannot patch resource "statefulsets"'
    cluster = FakeCluster([ClusterResult(False, text)])
    engine = ApplyEngine(cluster)

    result = engine.apply(MANIFESTS)

    assert result.succeeded is False
    assert isinstance(result.error, UnclassifiedApplyError)
    assert result.error.raw_text == text
    assert cluster.deleted == []
    assert len(cluster.applied) == 1
    assert engine.state is ApplyState.FAILED


def test_classified_error_without_names_is_not_retried() -> None:
    cluster = FakeCluster(
        [ClusterResult(False, "spec: Forbidden: updates to statefulset spec are forbidden")]
    )

    result = ApplyEngine(cluster).apply(MANIFESTS)

    assert isinstance(result.error, ExtractionFailedError)
    assert result.error.kind is WorkloadKind.STATEFULSET
    assert cluster.deleted == []
    assert len(cluster.applied) == 1


def test_failing_retry_is_reported_with_deleted_resources() -> None:
    cluster = FakeCluster(
        [ClusterResult(False, STATEFULSET_ERROR), ClusterResult(False, STATEFULSET_ERROR)]
    )

    result = ApplyEngine(cluster).apply(MANIFESTS)

    postgres = ResourceDescriptor(WorkloadKind.STATEFULSET, "postgres", "default")
    assert result.succeeded is False
    assert result.attempts == 2
    assert isinstance(result.error, RemediationIneffectiveError)
    assert result.error.deleted == (postgres,)
    assert result.remediated == (postgres,)
    # Exactly one retry, never a loop.
    assert len(cluster.applied) == 2
    assert len(cluster.deleted) == 1


def test_failed_delete_is_recorded_and_retry_still_happens() -> None:
    cluster = FakeCluster(
        [ClusterResult(False, STATEFULSET_ERROR), ClusterResult(True)], delete_ok=False
    )

    result = ApplyEngine(cluster).apply(MANIFESTS)

    assert result.succeeded is True
    assert result.remediated == ()
    assert result.failed_deletes == (
        ResourceDescriptor(WorkloadKind.STATEFULSET, "postgres", "default"),
    )
    assert len(cluster.applied) == 2


def test_retry_uses_a_fresh_rendering() -> None:
    fresh = ManifestSet.from_text("kind: StatefulSet\nmetadata:\n  name: postgres\n")
    renders: list[ManifestSet] = []

    def rerender() -> ManifestSet:
        renders.append(fresh)
        return fresh

    cluster = FakeCluster([ClusterResult(False, STATEFULSET_ERROR), ClusterResult(True)])

    ApplyEngine(cluster).apply(MANIFESTS, rerender=rerender)

    assert renders == [fresh]
    assert cluster.applied == [MANIFESTS, fresh]


def test_rerender_is_not_called_on_clean_apply() -> None:
    cluster = FakeCluster([ClusterResult(True)])

    def rerender() -> ManifestSet:
        raise AssertionError("clean apply must not re-render")

    assert ApplyEngine(cluster).apply(MANIFESTS, rerender=rerender).succeeded is True


def test_rerender_failure_after_delete_still_reports_deleted_resources() -> None:
    cluster = FakeCluster([ClusterResult(False, STATEFULSET_ERROR)])

    def rerender() -> ManifestSet:
        raise RenderError("kustomize build failed")

    engine = ApplyEngine(cluster)
    result = engine.apply(MANIFESTS, rerender=rerender)

    postgres = ResourceDescriptor(WorkloadKind.STATEFULSET, "postgres", "default")
    assert result.succeeded is False
    assert isinstance(result.error, RemediationIneffectiveError)
    assert result.error.deleted == (postgres,)
    assert "kustomize build failed" in result.error.raw_text
    assert result.remediated == (postgres,)
    assert len(cluster.applied) == 1
    assert engine.state is ApplyState.FAILED
