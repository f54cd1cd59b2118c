from __future__ import annotations

import copy
from datetime import UTC, datetime, time
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import pytest
import yaml

from reconciler.src.errors import (
    GateClosedError,
    OutsideWindowError,
    PolicyError,
    SchemaMismatchError,
)
from reconciler.src.kinds import WorkloadKind
from reconciler.src.policy import (
    DEFAULT_ROLLOUT_TIMEOUT_SECONDS,
    DeploymentPolicy,
    TimeRange,
    load_policy_config,
    parse_duration,
    parse_time_range,
    parse_weekdays,
    resolve,
    validate_schema,
)

# 2026-01-07 is a Wednesday.
WEDNESDAY_NOON = datetime(2026, 1, 7, 12, 0, tzinfo=UTC)
SATURDAY_NOON = datetime(2026, 1, 10, 12, 0, tzinfo=UTC)


def _environment(enabled: bool = True, auto_deploy: bool = True) -> dict[str, Any]:
    return {
        "enabled": enabled,
        "auto_deploy": auto_deploy,
        "deployment_windows": {
            "enabled": False,
            "allowed_days": ["monday", "tuesday", "wednesday", "thursday", "friday"],
            "allowed_hours": "09:00-17:00",
            "timezone": "UTC",
        },
        "services": {
            "postgres": {
                "enabled": True,
                "auto_deploy": True,
                "rollback_on_failure": False,
                "timeout": "10m",
            },
        },
    }


def make_config() -> dict[str, Any]:
    return {
        "global": {"auto_deploy": True},
        "environments": {
            "dev": _environment(),
            "test": _environment(),
            "prod": _environment(),
        },
        "deployment_strategies": {
            "statefulset": {"timeout": "600s", "rollback_on_failure": True},
            "deployment": {"timeout": 300, "rollback_on_failure": False},
        },
    }


def test_scenario_dev_postgres_resolves() -> None:
    config = make_config()

    policy = resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert policy.environment == "dev"
    assert policy.service == "postgres"
    assert policy.global_auto_deploy is True
    assert policy.service_rollback_on_failure is False
    assert policy.rollout_timeout == 600.0


def test_global_kill_switch_is_reported_first() -> None:
    config = make_config()
    config["global"]["auto_deploy"] = False
    # Lower gates would fail too; the global gate must still win.
    config["environments"]["dev"]["enabled"] = False
    config["environments"]["dev"]["services"]["postgres"]["enabled"] = False

    with pytest.raises(GateClosedError) as exc_info:
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert exc_info.value.gate == "global.auto_deploy"


def test_global_kill_switch_blocks_even_when_everything_else_passes() -> None:
    config = make_config()
    config["global"]["auto_deploy"] = False

    with pytest.raises(GateClosedError) as exc_info:
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert exc_info.value.gate == "global.auto_deploy"


@pytest.mark.parametrize(
    ("path", "expected_gate"),
    [
        (("enabled",), "environments.dev.enabled"),
        (("auto_deploy",), "environments.dev.auto_deploy"),
        (("services", "postgres", "enabled"), "environments.dev.services.postgres.enabled"),
        (
            ("services", "postgres", "auto_deploy"),
            "environments.dev.services.postgres.auto_deploy",
        ),
    ],
)
def test_each_gate_reports_its_own_name(path: tuple[str, ...], expected_gate: str) -> None:
    config = make_config()
    for env in ("dev", "test", "prod"):
        node = config["environments"][env]
        for key in path[:-1]:
            node = node[key]
        if env == "dev":
            node[path[-1]] = False

    with pytest.raises(GateClosedError) as exc_info:
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert exc_info.value.gate == expected_gate


def test_environment_gate_precedes_service_gate() -> None:
    config = make_config()
    config["environments"]["dev"]["auto_deploy"] = False
    config["environments"]["dev"]["services"]["postgres"]["enabled"] = False

    with pytest.raises(GateClosedError) as exc_info:
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert exc_info.value.gate == "environments.dev.auto_deploy"


def test_unknown_environment_and_service_are_closed_gates() -> None:
    config = make_config()

    with pytest.raises(GateClosedError) as env_exc:
        resolve(config, "staging", "postgres", WEDNESDAY_NOON)
    with pytest.raises(GateClosedError) as svc_exc:
        resolve(config, "dev", "redis", WEDNESDAY_NOON)

    assert env_exc.value.gate == "environment"
    assert svc_exc.value.gate == "service"


def test_schema_mismatch_fails_fast() -> None:
    config = make_config()
    del config["environments"]["prod"]["services"]["postgres"]["timeout"]

    with pytest.raises(SchemaMismatchError) as exc_info:
        validate_schema(config)

    assert exc_info.value.environment == "prod"
    assert exc_info.value.missing == ("services.postgres.timeout",)


def test_schema_mismatch_detects_extra_service_in_one_environment() -> None:
    config = make_config()
    config["environments"]["dev"]["services"]["redis"] = {"enabled": True}

    with pytest.raises(SchemaMismatchError) as exc_info:
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert exc_info.value.environment == "prod"
    assert "services.redis" in exc_info.value.missing


def test_deployment_window_blocks_outside_allowed_days() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["deployment_windows"]["enabled"] = True

    with pytest.raises(OutsideWindowError):
        resolve(config, "dev", "postgres", SATURDAY_NOON)

    policy = resolve(config, "dev", "postgres", WEDNESDAY_NOON)
    assert policy.window.enabled is True


def test_deployment_window_blocks_outside_allowed_hours() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["deployment_windows"]["enabled"] = True

    with pytest.raises(OutsideWindowError):
        resolve(config, "dev", "postgres", datetime(2026, 1, 7, 17, 0, tzinfo=UTC))


def test_deployment_window_uses_configured_timezone() -> None:
    try:
        ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        pytest.skip("IANA timezone database not available")
    config = make_config()
    for env in config["environments"].values():
        env["deployment_windows"]["enabled"] = True
        env["deployment_windows"]["timezone"] = "America/New_York"

    # 15:00 UTC is 10:00 in New York (EST) and inside the window.
    resolve(config, "dev", "postgres", datetime(2026, 1, 7, 15, 0, tzinfo=UTC))
    # 12:00 UTC is 07:00 in New York and outside it.
    with pytest.raises(OutsideWindowError):
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)


def test_window_gate_is_checked_after_service_gates() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["deployment_windows"]["enabled"] = True
    config["environments"]["dev"]["services"]["postgres"]["auto_deploy"] = False

    with pytest.raises(GateClosedError):
        resolve(config, "dev", "postgres", SATURDAY_NOON)


def test_time_range_wraps_midnight() -> None:
    overnight = TimeRange(time(22, 0), time(6, 0))

    assert overnight.contains(time(23, 30))
    assert overnight.contains(time(5, 59))
    assert not overnight.contains(time(6, 0))
    assert not overnight.contains(time(12, 0))


def test_rollback_is_or_of_service_and_strategy() -> None:
    strategy_only = DeploymentPolicy(
        environment="dev",
        service_rollback_on_failure=False,
        strategy_rollback_on_failure={WorkloadKind.STATEFULSET: True},
    )
    service_only = DeploymentPolicy(
        environment="dev",
        service_rollback_on_failure=True,
        strategy_rollback_on_failure={WorkloadKind.STATEFULSET: False},
    )
    neither = DeploymentPolicy(
        environment="dev",
        service_rollback_on_failure=False,
        strategy_rollback_on_failure={WorkloadKind.STATEFULSET: False},
    )

    assert strategy_only.rollback_on_failure is True
    assert service_only.rollback_on_failure is True
    assert neither.rollback_on_failure is False


def test_timeout_prefers_service_then_strategy_then_default() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["services"]["postgres"]["timeout"] = None

    policy = resolve(config, "dev", "postgres", WEDNESDAY_NOON)

    assert policy.rollout_timeout is None
    assert policy.timeout_for(WorkloadKind.STATEFULSET) == 600.0
    assert policy.timeout_for(WorkloadKind.DEPLOYMENT) == 300.0
    assert policy.timeout_for(WorkloadKind.DAEMONSET) == DEFAULT_ROLLOUT_TIMEOUT_SECONDS


def test_service_none_skips_service_gates() -> None:
    config = make_config()
    config["environments"]["dev"]["services"]["postgres"]["enabled"] = False

    policy = resolve(config, "dev", None, WEDNESDAY_NOON)

    assert policy.service is None
    assert policy.rollback_on_failure is True


def test_non_boolean_gate_is_rejected() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["enabled"] = "yes"

    with pytest.raises(PolicyError, match="must be a boolean"):
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)


@pytest.mark.parametrize(
    ("raw", "seconds"),
    [(300, 300.0), ("90s", 90.0), ("5m", 300.0), ("1h", 3600.0), ("1.5m", 90.0)],
)
def test_parse_duration(raw: object, seconds: float) -> None:
    assert parse_duration(raw) == seconds


@pytest.mark.parametrize("raw", ["soon", "-5s", 0, True, None])
def test_parse_duration_rejects_garbage(raw: object) -> None:
    with pytest.raises(PolicyError):
        parse_duration(raw)


def test_parse_weekdays_accepts_short_names() -> None:
    assert parse_weekdays(["Mon", "friday"]) == frozenset({0, 4})
    with pytest.raises(PolicyError):
        parse_weekdays(["funday"])


@pytest.mark.parametrize("raw", [5, "monday", {"monday": True}])
def test_parse_weekdays_requires_a_list(raw: object) -> None:
    with pytest.raises(PolicyError, match="must be a list"):
        parse_weekdays(raw)


def test_non_list_allowed_days_is_a_policy_error() -> None:
    config = make_config()
    for env in config["environments"].values():
        env["deployment_windows"]["enabled"] = True
        env["deployment_windows"]["allowed_days"] = 5

    with pytest.raises(PolicyError, match="allowed_days must be a list"):
        resolve(config, "dev", "postgres", WEDNESDAY_NOON)


def test_parse_time_range_rejects_bad_values() -> None:
    assert str(parse_time_range("9:00-17:30")) == "09:00-17:30"
    with pytest.raises(PolicyError):
        parse_time_range("25:00-26:00")
    with pytest.raises(PolicyError):
        parse_time_range("always")


def test_load_policy_config_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "deploy-control.yaml"
    path.write_text(yaml.safe_dump(make_config()), encoding="utf-8")

    config = load_policy_config(path)

    assert config["global"]["auto_deploy"] is True


def test_load_policy_config_validates_schema(tmp_path: Path) -> None:
    config = make_config()
    broken = copy.deepcopy(config)
    del broken["environments"]["test"]["deployment_windows"]
    path = tmp_path / "deploy-control.yaml"
    path.write_text(yaml.safe_dump(broken), encoding="utf-8")

    with pytest.raises(SchemaMismatchError):
        load_policy_config(path)


def test_load_policy_config_rejects_invalid_yaml(tmp_path: Path) -> None:
    path = tmp_path / "deploy-control.yaml"
    path.write_text("global: [unterminated", encoding="utf-8")

    with pytest.raises(PolicyError, match="not valid YAML"):
        load_policy_config(path)
