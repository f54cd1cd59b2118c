from __future__ import annotations

import enum
import re
from dataclasses import dataclass


class WorkloadKind(enum.Enum):
    """Resource kinds the engine knows how to remediate, valued by manifest ``kind``."""

    STATEFULSET = "StatefulSet"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    DAEMONSET = "DaemonSet"
    JOB = "Job"


class CascadePolicy(enum.Enum):
    """How dependents of a deleted resource are treated."""

    ORPHAN = "orphan"
    NONE = "none"


@dataclass(frozen=True)
class KindSpec:
    """One row of the immutable-field table.

    Adding a manageable kind means adding a row here; the engine has no
    per-kind control flow.
    """

    kind: WorkloadKind
    signature: re.Pattern[str]
    name_patterns: tuple[re.Pattern[str], ...]
    cascade: CascadePolicy
    display_name: str
    resource: str
    has_rollout: bool


def _kubectl_name_pattern(plural: str) -> re.Pattern[str]:
    # kubectl apply reports the failing object as
    #   Resource: "apps/v1, Resource=statefulsets", ...
    #   Name: "postgres", Namespace: "default"
    return re.compile(rf'Resource={plural}[\s\S]*?Name: "([^"]+)"')


def _invalid_object_pattern(kind: str) -> re.Pattern[str]:
    return re.compile(rf'\b{kind}(?:\.[a-z0-9.]+)? "([^"]+)" is invalid')


KIND_TABLE: tuple[KindSpec, ...] = (
    KindSpec(
        kind=WorkloadKind.STATEFULSET,
        signature=re.compile(r"updates to statefulset spec.*are forbidden", re.IGNORECASE),
        name_patterns=(
            _kubectl_name_pattern("statefulsets"),
            _invalid_object_pattern("StatefulSet"),
            re.compile(r'updates to statefulset spec for "([^"]+)"', re.IGNORECASE),
        ),
        cascade=CascadePolicy.ORPHAN,
        display_name="StatefulSet",
        resource="statefulset",
        has_rollout=True,
    ),
    KindSpec(
        kind=WorkloadKind.DEPLOYMENT,
        signature=re.compile(
            r"updates to deployment spec.*are forbidden"
            r'|deployment(?:\.apps)? "[^"]+" is invalid: spec\.selector.*immutable',
            re.IGNORECASE,
        ),
        name_patterns=(
            _kubectl_name_pattern("deployments"),
            _invalid_object_pattern("Deployment"),
            re.compile(r'updates to deployment spec for "([^"]+)"', re.IGNORECASE),
        ),
        cascade=CascadePolicy.ORPHAN,
        display_name="Deployment",
        resource="deployment",
        has_rollout=True,
    ),
    KindSpec(
        kind=WorkloadKind.SERVICE,
        signature=re.compile(r"spec\.clusterIPs?.*immutable|spec\.type.*immutable", re.IGNORECASE),
        name_patterns=(
            _kubectl_name_pattern("services"),
            _invalid_object_pattern("Service"),
        ),
        cascade=CascadePolicy.NONE,
        display_name="Service",
        resource="service",
        has_rollout=False,
    ),
    KindSpec(
        kind=WorkloadKind.DAEMONSET,
        signature=re.compile(
            r"updates to daemonset spec.*are forbidden"
            r'|daemonset(?:\.apps)? "[^"]+" is invalid: spec\.selector.*immutable',
            re.IGNORECASE,
        ),
        name_patterns=(
            _kubectl_name_pattern("daemonsets"),
            _invalid_object_pattern("DaemonSet"),
            re.compile(r'updates to daemonset spec for "([^"]+)"', re.IGNORECASE),
        ),
        cascade=CascadePolicy.ORPHAN,
        display_name="DaemonSet",
        resource="daemonset",
        has_rollout=True,
    ),
    KindSpec(
        kind=WorkloadKind.JOB,
        signature=re.compile(
            r"spec\.selector.*immutable"
            r"|spec\.completions.*cannot be decreased"
            r'|job(?:\.batch)? "[^"]+" is invalid: spec\.template.*immutable',
            re.IGNORECASE,
        ),
        name_patterns=(
            _kubectl_name_pattern("jobs"),
            _invalid_object_pattern("Job"),
        ),
        cascade=CascadePolicy.NONE,
        display_name="Job",
        resource="job",
        has_rollout=False,
    ),
)

_SPECS_BY_KIND = {spec.kind: spec for spec in KIND_TABLE}
_KINDS_BY_MANIFEST_KIND = {spec.kind.value: spec.kind for spec in KIND_TABLE}


def spec_for(kind: WorkloadKind) -> KindSpec:
    return _SPECS_BY_KIND[kind]


def kind_from_manifest(manifest_kind: object) -> WorkloadKind | None:
    """Map a manifest ``kind`` field onto the table, or ``None`` for unmanaged kinds."""
    if not isinstance(manifest_kind, str):
        return None
    return _KINDS_BY_MANIFEST_KIND.get(manifest_kind)


def classify(error_text: str) -> WorkloadKind | None:
    """Return the first kind (in table order) whose signature matches *error_text*."""
    for spec in KIND_TABLE:
        if spec.signature.search(error_text):
            return spec.kind
    return None


def extract_names(kind: WorkloadKind, error_text: str) -> list[str]:
    """Pull every resource name of *kind* referenced in *error_text*.

    Names are de-duplicated and keep first-seen order.
    """
    names: list[str] = []
    for pattern in spec_for(kind).name_patterns:
        for match in pattern.finditer(error_text):
            name = match.group(1)
            if name not in names:
                names.append(name)
    return names


@dataclass(frozen=True)
class ResourceDescriptor:
    """A single cluster object, always derived from rendered manifests."""

    kind: WorkloadKind
    name: str
    namespace: str

    @property
    def has_rollout(self) -> bool:
        return spec_for(self.kind).has_rollout

    def sort_key(self) -> tuple[str, str, str]:
        return (self.namespace, self.kind.value, self.name)

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"
