from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from reconciler.src.errors import RenderError
from reconciler.src.kinds import ResourceDescriptor, WorkloadKind, kind_from_manifest

LOGGER = logging.getLogger(__name__)

KUSTOMIZE_ROOT = Path("infra") / "k8s"
_NON_PROVIDER_DIRS = {"base"}
_NON_ENVIRONMENT_DIRS = {"cluster"}


def _metadata(doc: dict[str, Any]) -> dict[str, Any]:
    metadata = doc.get("metadata")
    return metadata if isinstance(metadata, dict) else {}


def _metadata_name(doc: dict[str, Any]) -> str:
    name = _metadata(doc).get("name")
    return name if isinstance(name, str) else ""


def _metadata_namespace(doc: dict[str, Any]) -> str:
    namespace = _metadata(doc).get("namespace")
    return namespace if isinstance(namespace, str) else ""


def _flatten(docs: Sequence[Any]) -> list[dict[str, Any]]:
    flattened: list[dict[str, Any]] = []
    for doc in docs:
        if not isinstance(doc, dict):
            continue
        if doc.get("kind") == "List" and isinstance(doc.get("items"), list):
            flattened.extend(_flatten(doc["items"]))
            continue
        flattened.append(doc)
    return flattened


@dataclass(frozen=True)
class ManifestSet:
    """One rendering of the desired state: the raw stream plus its parsed documents.

    ``raw`` is what gets piped to ``kubectl apply``; ``documents`` is what
    discovery reads. Never reused across a delete/retry cycle.
    """

    raw: str
    documents: tuple[dict[str, Any], ...]

    @classmethod
    def from_text(cls, text: str) -> ManifestSet:
        try:
            docs = list(yaml.safe_load_all(text))
        except yaml.YAMLError as exc:
            raise RenderError(f"rendered manifests are not valid YAML: {exc}") from exc
        return cls(raw=text, documents=tuple(_flatten(docs)))

    def namespace_of(self, kind: WorkloadKind, name: str) -> str | None:
        """Return the namespace a manifest declares for *kind*/*name*, if any."""
        for doc in self.documents:
            if kind_from_manifest(doc.get("kind")) is kind and _metadata_name(doc) == name:
                return _metadata_namespace(doc) or None
        return None

    def descriptor_for(self, kind: WorkloadKind, name: str, default_namespace: str) -> ResourceDescriptor:
        return ResourceDescriptor(
            kind=kind,
            name=name,
            namespace=self.namespace_of(kind, name) or default_namespace,
        )

    def __len__(self) -> int:
        return len(self.documents)


def _managed_documents(
    manifests: ManifestSet,
) -> Iterator[tuple[WorkloadKind, str, dict[str, Any]]]:
    for doc in manifests.documents:
        kind = kind_from_manifest(doc.get("kind"))
        if kind is None:
            continue
        name = _metadata_name(doc)
        if not name:
            LOGGER.warning("Skipping %s manifest without metadata.name", kind.value)
            continue
        yield kind, name, doc


def discover(manifests: ManifestSet) -> dict[WorkloadKind, set[str]]:
    """Group the names of managed workloads in *manifests* by kind.

    Reads only the rendered documents; the live cluster is never asked what
    should exist. Kinds outside the table are ignored.
    """
    discovered: dict[WorkloadKind, set[str]] = {}
    for kind, name, _ in _managed_documents(manifests):
        discovered.setdefault(kind, set()).add(name)
    return discovered


def discover_workloads(manifests: ManifestSet, default_namespace: str) -> list[ResourceDescriptor]:
    """Like :func:`discover`, but as namespaced descriptors in a stable order."""
    workloads = {
        ResourceDescriptor(
            kind=kind,
            name=name,
            namespace=_metadata_namespace(doc) or default_namespace,
        )
        for kind, name, doc in _managed_documents(manifests)
    }
    return sorted(workloads, key=ResourceDescriptor.sort_key)


class KustomizeRenderer:
    """Render ``infra/k8s/{provider}/{environment}`` overlays with ``kustomize build``."""

    def __init__(
        self,
        repo_root: Path,
        kustomize: str = "kustomize",
        extra_args: Sequence[str] = ("--enable-alpha-plugins",),
        timeout_seconds: int | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.kustomize = kustomize
        self.extra_args = tuple(extra_args)
        self.timeout_seconds = timeout_seconds

    def overlay_path(self, provider: str, environment: str) -> Path:
        return self.repo_root / KUSTOMIZE_ROOT / provider / environment

    def render(self, provider: str, environment: str) -> ManifestSet:
        overlay = self.overlay_path(provider, environment)
        if not (overlay / "kustomization.yaml").is_file():
            raise RenderError(f"no kustomization.yaml for {provider}/{environment} at {overlay}")

        cmd = [self.kustomize, "build", str(overlay), *self.extra_args]
        try:
            result = subprocess.run(
                cmd,
                check=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
            )
        except FileNotFoundError as exc:
            raise RenderError(f"{self.kustomize} is required but was not found in PATH") from exc
        except subprocess.TimeoutExpired as exc:
            raise RenderError(
                f"kustomize build timed out after {self.timeout_seconds}s for '{overlay}'"
            ) from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            raise RenderError(f"kustomize build failed for path '{overlay}': {stderr}") from exc

        manifests = ManifestSet.from_text(result.stdout)
        LOGGER.info(
            "Rendered %d manifest documents for %s/%s", len(manifests), provider, environment
        )
        return manifests


def discover_providers(repo_root: Path) -> list[str]:
    """Every directory under ``infra/k8s`` except ``base`` is a provider."""
    infra_dir = repo_root / KUSTOMIZE_ROOT
    if not infra_dir.is_dir():
        return []
    return sorted(
        entry.name
        for entry in infra_dir.iterdir()
        if entry.is_dir() and entry.name not in _NON_PROVIDER_DIRS
    )


def discover_environments(repo_root: Path, provider: str) -> list[str]:
    provider_dir = repo_root / KUSTOMIZE_ROOT / provider
    if not provider_dir.is_dir():
        return []
    return sorted(
        entry.name
        for entry in provider_dir.iterdir()
        if entry.is_dir()
        and entry.name not in _NON_ENVIRONMENT_DIRS
        and (entry / "kustomization.yaml").is_file()
    )
