from __future__ import annotations

import argparse
import json
import logging
import os
import re
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path

from reconciler.src.config import Settings, load_settings, parse_bool, require_binaries
from reconciler.src.context import ensure_context, load_local_context_name
from reconciler.src.errors import (
    ConfigError,
    ContextMismatchError,
    GateClosedError,
    OutsideWindowError,
    PolicyError,
    RemediationIneffectiveError,
    RenderError,
)
from reconciler.src.kinds import ResourceDescriptor
from reconciler.src.kube import KubeCluster, build_apps_api, load_kube_configuration
from reconciler.src.manifests import KustomizeRenderer, discover_environments, discover_providers
from reconciler.src.metrics import METRICS, write_textfile
from reconciler.src.policy import DeploymentPolicy, load_policy_config, resolve
from reconciler.src.reconcile import ReconcileOutcome, Reconciler
from reconciler.src.rollout import StatusState, WorkloadStatus, needs_manual_intervention

RUNTIME_VERSION = "0.3.0"

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_POLICY_BLOCKED = 3
EXIT_MANUAL_INTERVENTION = 4

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    """Send JSON logs to stderr so stdout stays free for the run report."""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="reconcile",
        description="Render Kustomize overlays and apply them with immutable-field remediation",
    )
    parser.add_argument("command", choices=["apply", "delete", "build", "validate"])
    parser.add_argument("--provider", "-p", help="Provider directory under infra/k8s")
    parser.add_argument("--environment", "-e", help="Environment overlay (dev, test, prod)")
    parser.add_argument("--service", "-s", help="Service whose deploy policy gates the run")
    parser.add_argument("--config", type=Path, help="deploy-control YAML policy file")
    parser.add_argument(
        "--local",
        action="store_true",
        default=None,
        help="Require the local cluster context from cluster-config.yaml before mutating",
    )
    parser.add_argument("--namespace", help="Namespace for manifests without one")
    parser.add_argument("--repo-root", type=Path, help="Repository root holding infra/k8s")
    parser.add_argument("--max-workers", type=int, help="Parallel rollout/rollback checks")
    args = parser.parse_args(argv)

    if args.command != "validate" and (not args.provider or not args.environment):
        parser.error(f"{args.command} requires --provider and --environment")
    if args.max_workers is not None and args.max_workers < 1:
        parser.error("--max-workers must be >= 1")
    return args


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    overrides: dict[str, object] = {}
    if args.repo_root is not None:
        overrides["repo_root"] = args.repo_root
    if args.namespace:
        overrides["namespace"] = args.namespace
    if args.max_workers is not None:
        overrides["max_workers"] = args.max_workers
    if args.config is not None:
        overrides["policy_path"] = args.config
    return replace(settings, **overrides) if overrides else settings


def build_renderer(settings: Settings) -> KustomizeRenderer:
    return KustomizeRenderer(
        settings.repo_root,
        kustomize=settings.kustomize,
        timeout_seconds=settings.request_timeout_seconds,
    )


def build_cluster(settings: Settings) -> KubeCluster:
    return KubeCluster(
        kubectl=settings.kubectl,
        prune_selector=settings.prune_selector,
        request_timeout_seconds=settings.request_timeout_seconds,
        poll_interval_seconds=settings.poll_interval_seconds,
    )


def _guard_context(cluster: KubeCluster, settings: Settings, local: bool) -> str | None:
    if not local:
        return None
    if settings.local_cluster_config is None:
        raise ConfigError("LOCAL_CLUSTER_CONFIG must point at cluster-config.yaml for --local")
    expected = load_local_context_name(settings.local_cluster_config)
    return ensure_context(cluster, expected)


def resolve_policy(
    settings: Settings,
    environment: str,
    service: str | None,
    now: datetime,
) -> DeploymentPolicy:
    if settings.policy_path is None:
        return DeploymentPolicy(environment=environment, service=service)
    config = load_policy_config(settings.policy_path)
    return resolve(config, environment, service, now)


def _print_statuses(title: str, results: Mapping[ResourceDescriptor, WorkloadStatus]) -> None:
    print(f"{title}:")
    if not results:
        print("  (no workloads discovered)")
    for workload, status in results.items():
        print(f"  - {workload} [{workload.namespace}]: {status}")


def report_outcome(outcome: ReconcileOutcome) -> int:
    """Print the run report and return the process exit code."""
    if outcome.remediated:
        print("Remediated resources (deleted and recreated):")
        for resource in outcome.remediated:
            print(f"  - {resource} [{resource.namespace}]")
    else:
        print("Remediated resources: none")

    if not outcome.applied:
        error = outcome.apply_error
        print(f"Apply failed: {error}")
        if error is not None and error.raw_text:
            print(error.raw_text)
        if isinstance(error, RemediationIneffectiveError):
            print("Cluster state was modified: the resources above were deleted.")
        return EXIT_FAILED

    _print_statuses("Rollout status", outcome.rollout_results or {})

    if not outcome.rollout_failed:
        print("Result: SUCCESS")
        return EXIT_OK

    if outcome.rollback_results is None:
        print("Rollback: not permitted by policy")
        print("Result: FAILED (rollout did not complete)")
        return EXIT_FAILED

    _print_statuses("Rollback status", outcome.rollback_results)
    stuck = needs_manual_intervention(outcome.rollback_results)
    if stuck:
        names = ", ".join(str(resource) for resource in stuck)
        print(f"Result: MANUAL INTERVENTION REQUIRED for {names}")
        return EXIT_MANUAL_INTERVENTION
    if not any(
        status.state is StatusState.SUCCESS for status in outcome.rollback_results.values()
    ):
        print("Result: FAILED (no workloads were rolled back)")
        return EXIT_FAILED
    print("Result: FAILED (rolled back)")
    return EXIT_FAILED


def run_apply(
    args: argparse.Namespace,
    settings: Settings,
    now_fn: Callable[[], datetime],
) -> int:
    try:
        policy = resolve_policy(settings, args.environment, args.service, now_fn())
    except (GateClosedError, OutsideWindowError) as exc:
        METRICS.policy_blocks_total.labels(gate=exc.gate).inc()
        print(f"Policy gate: blocked by {exc.gate} ({exc})")
        return EXIT_POLICY_BLOCKED
    except PolicyError as exc:
        print(f"Policy gate: invalid deploy policy ({exc})")
        return EXIT_FAILED
    target = f"{args.environment}/{args.service}" if args.service else args.environment
    print(f"Policy gate: open for {target}")

    cluster = build_cluster(settings)
    context = _guard_context(cluster, settings, args.local)
    load_kube_configuration(context=context)
    cluster.apps_api = build_apps_api()

    reconciler = Reconciler(
        cluster,
        build_renderer(settings),
        default_namespace=settings.namespace,
        max_workers=settings.max_workers,
    )
    outcome = reconciler.run(args.provider, args.environment, policy)
    return report_outcome(outcome)


def run_delete(args: argparse.Namespace, settings: Settings) -> int:
    cluster = build_cluster(settings)
    _guard_context(cluster, settings, args.local)
    manifests = build_renderer(settings).render(args.provider, args.environment)
    result = cluster.delete_manifests(manifests)
    if not result.ok:
        print(f"Delete failed: {result.detail}")
        return EXIT_FAILED
    if result.detail:
        print(result.detail)
    return EXIT_OK


def run_build(args: argparse.Namespace, settings: Settings) -> int:
    manifests = build_renderer(settings).render(args.provider, args.environment)
    sys.stdout.write(manifests.raw)
    return EXIT_OK


def run_validate(args: argparse.Namespace, settings: Settings) -> int:
    """Render every provider/environment overlay and report which ones build."""
    renderer = build_renderer(settings)
    providers = [args.provider] if args.provider else discover_providers(settings.repo_root)
    if not providers:
        print("No providers found under infra/k8s/ (expected infra/k8s/{provider}/{env})")
        return EXIT_OK

    failures: list[str] = []
    checked = 0
    for provider in providers:
        environments = discover_environments(settings.repo_root, provider)
        if args.environment:
            environments = [env for env in environments if env == args.environment]
        for environment in environments:
            checked += 1
            try:
                manifests = renderer.render(provider, environment)
            except RenderError as exc:
                failures.append(f"{provider}/{environment}: {exc}")
                print(f"[{provider}/{environment}] kustomize build failed")
                continue
            print(f"[{provider}/{environment}] kustomize build passed ({len(manifests)} documents)")

    if failures:
        print("Kustomize validation failed:", file=sys.stderr)
        for failure in failures:
            print(f"  - {failure}", file=sys.stderr)
        return EXIT_FAILED
    if checked == 0:
        print("No environments matched; nothing to validate")
    return EXIT_OK


def main(
    argv: Sequence[str] | None = None,
    now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
) -> int:
    """CLI entrypoint: parse arguments, run one command and map the result to an exit code."""
    args = _parse_args(argv)
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    logger = logging.getLogger(__name__)

    try:
        settings = _apply_overrides(load_settings(), args)
        if args.local is None:
            args.local = parse_bool(os.getenv("RECONCILE_LOCAL"))
        if args.command in {"apply", "delete"}:
            require_binaries(settings.kubectl, settings.kustomize)
        elif args.command in {"build", "validate"}:
            require_binaries(settings.kustomize)

        if args.command == "apply":
            exit_code = run_apply(args, settings, now_fn)
        elif args.command == "delete":
            exit_code = run_delete(args, settings)
        elif args.command == "build":
            exit_code = run_build(args, settings)
        else:
            exit_code = run_validate(args, settings)
    except (ConfigError, ContextMismatchError) as exc:
        logger.error("%s", exc)
        print(f"Aborted: {exc}", file=sys.stderr)
        return EXIT_FAILED
    except RenderError as exc:
        logger.error("Manifest rendering failed: %s", exc)
        print(f"Render failed: {exc}", file=sys.stderr)
        return EXIT_FAILED

    metrics_path = settings.metrics_textfile
    if metrics_path is not None:
        try:
            write_textfile(metrics_path)
        except OSError:
            logger.exception("Failed to write metrics textfile %s", metrics_path)
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
