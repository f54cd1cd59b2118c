from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, time, tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from reconciler.src.errors import (
    GateClosedError,
    OutsideWindowError,
    PolicyError,
    SchemaMismatchError,
)
from reconciler.src.kinds import WorkloadKind

LOGGER = logging.getLogger(__name__)

DEFAULT_ROLLOUT_TIMEOUT_SECONDS = 300.0

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_DURATION_PATTERN = re.compile(r"^\s*(?P<value>\d+(?:\.\d+)?)\s*(?P<unit>ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}
_HOURS_PATTERN = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})\s*$")


def zone(name: str) -> tzinfo:
    if name.upper() == "UTC":
        return UTC
    return ZoneInfo(name)


@dataclass(frozen=True)
class TimeRange:
    """Half-open ``[start, end)`` time-of-day range; ``start > end`` wraps midnight."""

    start: time
    end: time

    def contains(self, moment: time) -> bool:
        if self.start == self.end:
            return True
        if self.start < self.end:
            return self.start <= moment < self.end
        return moment >= self.start or moment < self.end

    def __str__(self) -> str:
        return f"{self.start:%H:%M}-{self.end:%H:%M}"


@dataclass(frozen=True)
class DeploymentWindow:
    enabled: bool = False
    allowed_days: frozenset[int] = frozenset(range(7))
    allowed_hours: TimeRange = TimeRange(time(0, 0), time(0, 0))
    timezone: str = "UTC"

    def allows(self, now: datetime) -> bool:
        if not self.enabled:
            return True
        local = now
        if now.tzinfo is not None:
            local = now.astimezone(zone(self.timezone))
        return local.weekday() in self.allowed_days and self.allowed_hours.contains(local.time())


@dataclass(frozen=True)
class DeploymentPolicy:
    """Fully resolved deploy policy for one ``(environment, service)`` pair.

    Built once per invocation by :func:`resolve` and passed explicitly to
    every stage. The apply engine only reads the timeout and rollback flags.
    """

    environment: str
    service: str | None = None
    global_auto_deploy: bool = True
    environment_enabled: bool = True
    environment_auto_deploy: bool = True
    window: DeploymentWindow = DeploymentWindow()
    service_enabled: bool = True
    service_auto_deploy: bool = True
    service_rollback_on_failure: bool = False
    strategy_rollback_on_failure: Mapping[WorkloadKind, bool] = field(default_factory=dict)
    rollout_timeout: float | None = None
    strategy_timeouts: Mapping[WorkloadKind, float] = field(default_factory=dict)

    @property
    def rollback_on_failure(self) -> bool:
        return self.service_rollback_on_failure or any(self.strategy_rollback_on_failure.values())

    def timeout_for(self, kind: WorkloadKind) -> float:
        if self.rollout_timeout is not None:
            return self.rollout_timeout
        return self.strategy_timeouts.get(kind, DEFAULT_ROLLOUT_TIMEOUT_SECONDS)


def parse_duration(value: Any, *, key: str = "timeout") -> float:
    """Parse ``300``, ``"90s"``, ``"5m"`` or ``"1h"`` into seconds."""
    if isinstance(value, bool):
        raise PolicyError(f"{key} must be a duration, got: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    elif isinstance(value, str):
        match = _DURATION_PATTERN.match(value)
        if match is None:
            raise PolicyError(f"{key} must be a duration like '300s' or '5m', got: {value!r}")
        seconds = float(match.group("value")) * _DURATION_UNITS[match.group("unit")]
    else:
        raise PolicyError(f"{key} must be a duration, got: {value!r}")
    if seconds <= 0:
        raise PolicyError(f"{key} must be positive, got: {value!r}")
    return seconds


def parse_weekdays(values: Any, *, key: str = "allowed_days") -> frozenset[int]:
    if not isinstance(values, (list, tuple)):
        raise PolicyError(f"{key} must be a list of weekday names, got {values!r}")
    days: set[int] = set()
    for raw in values:
        name = str(raw).strip().lower()
        matches = [index for index, day in enumerate(_WEEKDAYS) if day == name or day[:3] == name]
        if not matches:
            raise PolicyError(f"{key} contains an unknown weekday: {raw!r}")
        days.add(matches[0])
    return frozenset(days)


def parse_time_range(value: Any, *, key: str = "allowed_hours") -> TimeRange:
    if isinstance(value, Mapping):
        value = f"{value.get('start', '')}-{value.get('end', '')}"
    match = _HOURS_PATTERN.match(str(value))
    if match is None:
        raise PolicyError(f"{key} must look like 'HH:MM-HH:MM', got: {value!r}")
    start_hour, start_minute, end_hour, end_minute = (int(part) for part in match.groups())
    try:
        return TimeRange(time(start_hour, start_minute), time(end_hour, end_minute))
    except ValueError as exc:
        raise PolicyError(f"{key} is not a valid time range: {value!r}") from exc


def _key_paths(node: Any, prefix: str = "") -> set[str]:
    if not isinstance(node, Mapping):
        return set()
    paths: set[str] = set()
    for key, child in node.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        paths.add(path)
        paths.update(_key_paths(child, path))
    return paths


def _section(node: Mapping[str, Any], key: str, where: str) -> Mapping[str, Any]:
    value = node.get(key, {})
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PolicyError(f"{where}.{key} must be a mapping")
    return value


def _flag(node: Mapping[str, Any], key: str, where: str, default: bool = False) -> bool:
    value = node.get(key, default)
    if not isinstance(value, bool):
        raise PolicyError(f"{where}.{key} must be a boolean, got: {value!r}")
    return value


def validate_schema(config: Mapping[str, Any]) -> None:
    """Reject configs whose environment branches do not share an identical key set.

    A key present under one environment but missing under another raises
    :class:`SchemaMismatchError` for the environment lacking it.
    """
    environments = _section(config, "environments", "config")
    if not environments:
        raise PolicyError("config.environments must define at least one environment")

    paths_by_env: dict[str, set[str]] = {}
    for env_name, branch in environments.items():
        if not isinstance(branch, Mapping):
            raise PolicyError(f"environments.{env_name} must be a mapping")
        paths_by_env[str(env_name)] = _key_paths(branch)

    union: set[str] = set().union(*paths_by_env.values())
    for env_name in sorted(paths_by_env):
        missing = sorted(union - paths_by_env[env_name])
        if missing:
            raise SchemaMismatchError(env_name, missing)


def load_policy_config(path: Path) -> dict[str, Any]:
    """Read and schema-check a deploy-control YAML file."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyError(f"unable to read deploy policy {path}: {exc}") from exc
    try:
        config = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PolicyError(f"deploy policy {path} is not valid YAML: {exc}") from exc
    if not isinstance(config, dict):
        raise PolicyError(f"deploy policy {path} must be a mapping")
    validate_schema(config)
    return config


def _window(environment: Mapping[str, Any], where: str) -> DeploymentWindow:
    raw = _section(environment, "deployment_windows", where)
    if not raw:
        return DeploymentWindow()
    where = f"{where}.deployment_windows"
    allowed_days = raw.get("allowed_days")
    timezone = str(raw.get("timezone") or "UTC")
    try:
        zone(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise PolicyError(f"{where}.timezone is not a known timezone: {timezone!r}") from exc
    return DeploymentWindow(
        enabled=_flag(raw, "enabled", where),
        allowed_days=(
            parse_weekdays(allowed_days, key=f"{where}.allowed_days")
            if allowed_days
            else frozenset(range(7))
        ),
        allowed_hours=(
            parse_time_range(raw["allowed_hours"], key=f"{where}.allowed_hours")
            if raw.get("allowed_hours")
            else TimeRange(time(0, 0), time(0, 0))
        ),
        timezone=timezone,
    )


def _strategies(config: Mapping[str, Any]) -> tuple[dict[WorkloadKind, bool], dict[WorkloadKind, float]]:
    rollback: dict[WorkloadKind, bool] = {}
    timeouts: dict[WorkloadKind, float] = {}
    strategies = _section(config, "deployment_strategies", "config")
    kinds_by_key = {kind.value.lower(): kind for kind in WorkloadKind}
    for key, strategy in strategies.items():
        kind = kinds_by_key.get(str(key).lower())
        if kind is None:
            LOGGER.warning("Ignoring deployment strategy for unmanaged kind %s", key)
            continue
        where = f"deployment_strategies.{key}"
        if not isinstance(strategy, Mapping):
            raise PolicyError(f"{where} must be a mapping")
        if "rollback_on_failure" in strategy:
            rollback[kind] = _flag(strategy, "rollback_on_failure", where)
        if strategy.get("timeout") is not None:
            timeouts[kind] = parse_duration(strategy["timeout"], key=f"{where}.timeout")
    return rollback, timeouts


def resolve(
    config: Mapping[str, Any],
    environment: str,
    service: str | None,
    now: datetime,
) -> DeploymentPolicy:
    """Resolve the policy for *environment*/*service* at wall-clock time *now*.

    Gates are checked top-down and the first closed gate is raised:
    global kill switch, environment enabled, environment auto-deploy,
    service enabled, service auto-deploy, deployment window.
    ``service=None`` skips the service gates (whole-environment runs).
    """
    validate_schema(config)

    global_section = _section(config, "global", "config")
    global_auto_deploy = _flag(global_section, "auto_deploy", "global", default=True)
    if not global_auto_deploy:
        raise GateClosedError("global.auto_deploy", "global auto-deploy kill switch is off")

    environments = _section(config, "environments", "config")
    env_section = environments.get(environment)
    if not isinstance(env_section, Mapping):
        raise GateClosedError(
            "environment", f"environment '{environment}' is not defined in the deploy policy"
        )
    where = f"environments.{environment}"

    environment_enabled = _flag(env_section, "enabled", where)
    if not environment_enabled:
        raise GateClosedError(f"{where}.enabled", f"environment '{environment}' is disabled")
    environment_auto_deploy = _flag(env_section, "auto_deploy", where)
    if not environment_auto_deploy:
        raise GateClosedError(
            f"{where}.auto_deploy", f"auto-deploy is off for environment '{environment}'"
        )

    service_section: Mapping[str, Any] = {}
    if service is not None:
        services = _section(env_section, "services", where)
        candidate = services.get(service)
        if not isinstance(candidate, Mapping):
            raise GateClosedError(
                "service", f"service '{service}' is not defined for environment '{environment}'"
            )
        service_section = candidate
        service_where = f"{where}.services.{service}"
        if not _flag(service_section, "enabled", service_where):
            raise GateClosedError(f"{service_where}.enabled", f"service '{service}' is disabled")
        if not _flag(service_section, "auto_deploy", service_where):
            raise GateClosedError(
                f"{service_where}.auto_deploy", f"auto-deploy is off for service '{service}'"
            )

    window = _window(env_section, where)
    if not window.allows(now):
        raise OutsideWindowError(
            f"{now.isoformat()} is outside the deployment window for '{environment}' "
            f"(hours {window.allowed_hours} {window.timezone})"
        )

    strategy_rollback, strategy_timeouts = _strategies(config)
    service_where = f"{where}.services.{service}"
    rollout_timeout = (
        parse_duration(service_section["timeout"], key=f"{service_where}.timeout")
        if service_section.get("timeout") is not None
        else None
    )

    return DeploymentPolicy(
        environment=environment,
        service=service,
        global_auto_deploy=global_auto_deploy,
        environment_enabled=environment_enabled,
        environment_auto_deploy=environment_auto_deploy,
        window=window,
        service_enabled=True,
        service_auto_deploy=True,
        service_rollback_on_failure=_flag(service_section, "rollback_on_failure", service_where),
        strategy_rollback_on_failure=strategy_rollback,
        rollout_timeout=rollout_timeout,
        strategy_timeouts=strategy_timeouts,
    )
