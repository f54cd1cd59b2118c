from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from reconciler.src.kinds import ResourceDescriptor, WorkloadKind


class ReconcileError(RuntimeError):
    """Base class for every failure raised by a reconcile pass."""


class ConfigError(ReconcileError):
    """Raised when runtime settings or the local cluster config are invalid."""


class PolicyError(ReconcileError):
    """Raised when the deploy policy blocks or cannot be resolved.

    Policy errors always fire before any cluster mutation.
    """


class SchemaMismatchError(PolicyError):
    """Environment branches of the deploy-control file do not share one schema."""

    def __init__(self, environment: str, missing: Sequence[str]) -> None:
        self.environment = environment
        self.missing = tuple(missing)
        super().__init__(
            f"environment '{environment}' is missing keys present in other environments: "
            + ", ".join(self.missing)
        )


class GateClosedError(PolicyError):
    """A boolean policy gate is closed."""

    def __init__(self, gate: str, reason: str) -> None:
        self.gate = gate
        self.reason = reason
        super().__init__(f"{gate}: {reason}")


class OutsideWindowError(PolicyError):
    """The current time falls outside the environment's deployment window."""

    gate = "deployment_window"


class RenderError(ReconcileError):
    """The manifest producer failed; never remediated or retried."""


class ContextMismatchError(ReconcileError):
    """The active kube context is not the one this run is allowed to mutate."""

    def __init__(self, expected: str, current: str | None) -> None:
        self.expected = expected
        self.current = current
        super().__init__(
            f"kubectl context is '{current}' but '{expected}' is required; refusing to continue"
        )


class ApplyError(ReconcileError):
    """Base class for apply-phase failures returned in an ``ApplyResult``."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        self.raw_text = raw_text
        super().__init__(message)


class UnclassifiedApplyError(ApplyError):
    """The API server rejected the apply for a reason other than an immutable field."""

    def __init__(self, raw_text: str) -> None:
        super().__init__("apply failed with a non-immutable-field error", raw_text)


class ExtractionFailedError(ApplyError):
    """An immutable-field signature matched but no resource name could be parsed.

    Usually means the API server error format changed and the kind table
    needs a new name pattern.
    """

    def __init__(self, kind: WorkloadKind, raw_text: str) -> None:
        self.kind = kind
        super().__init__(
            f"immutable {kind.value} field conflict detected but no resource names "
            "could be extracted from the error text",
            raw_text,
        )


class RemediationIneffectiveError(ApplyError):
    """Delete-and-retry ran but the retried apply still failed.

    ``deleted`` lists what was removed from the cluster so operators know
    the cluster state was mutated.
    """

    def __init__(self, deleted: Sequence[ResourceDescriptor], raw_text: str) -> None:
        self.deleted = tuple(deleted)
        names = ", ".join(str(resource) for resource in self.deleted) or "nothing"
        super().__init__(f"apply still failing after remediation (deleted: {names})", raw_text)
