from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskfleet.config import (
    DispatchSettings,
    RelaySettings,
    ServerSettings,
    Settings,
    SubagentSettings,
)

pytestmark = [
    allure.epic("Platform"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch) -> None:
    for name in (
        "TASKFLEET_DB_PATH",
        "TASKFLEET_MAX_BUDGET",
        "TASKFLEET_MACHINE_STALE_SECONDS",
        "TASKFLEET_RELAY_MAX_MESSAGE_CHARS",
        "TASKFLEET_API_TOKEN",
        "TASKFLEET_STRICT_AFFINITY",
        "TASKFLEET_RESERVATION_TTL_SECONDS",
        "TASKFLEET_SUBAGENT_MAX_PARALLEL_RUNS",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()
    settings.validate()

    assert settings.db_path == Path(".taskfleet.db")
    assert settings.tasks.max_budget == 10.0
    assert settings.dispatch.interval_seconds == 10.0
    assert settings.dispatch.machine_stale_seconds == 120
    assert settings.dispatch.strict_affinity is False
    assert settings.dispatch.stale_running_fail_seconds == 0
    assert settings.dispatch.reservation_ttl_seconds == 0
    assert settings.relay.flush_interval_seconds == 1.5
    assert settings.relay.max_message_chars == 3_500
    assert settings.relay.input_ttl_seconds == 1_800
    assert settings.subagents.purge_grace_seconds == 86_400
    assert settings.subagents.max_parallel_runs == 4
    assert settings.server.api_token is None


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TASKFLEET_MAX_BUDGET", "25.5")
    monkeypatch.setenv("TASKFLEET_STRICT_AFFINITY", "yes")
    monkeypatch.setenv("TASKFLEET_MACHINE_STALE_SECONDS", "30")
    monkeypatch.setenv("TASKFLEET_API_TOKEN", "secret")
    monkeypatch.setenv("TASKFLEET_SUBAGENT_REMOTE_PROJECT", "agents")
    monkeypatch.setenv("TASKFLEET_RESERVATION_TTL_SECONDS", "300")
    monkeypatch.setenv("TASKFLEET_SUBAGENT_MAX_PARALLEL_RUNS", "8")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.tasks.max_budget == 25.5
    assert settings.dispatch.strict_affinity is True
    assert settings.dispatch.machine_stale_seconds == 30
    assert settings.server.api_token == "secret"
    assert settings.subagents.remote_project == "agents"
    assert settings.dispatch.reservation_ttl_seconds == 300
    assert settings.subagents.max_parallel_runs == 8


def test_invalid_boolean_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("TASKFLEET_STRICT_AFFINITY", "maybe")

    with pytest.raises(ValueError, match="TASKFLEET_STRICT_AFFINITY"):
        Settings.from_env()


def test_validate_rejects_message_ceiling_above_hard_limit() -> None:
    settings = Settings(relay=RelaySettings(max_message_chars=5_000))

    with pytest.raises(ValueError, match="TASKFLEET_RELAY_MAX_MESSAGE_CHARS"):
        settings.validate()


def test_validate_rejects_non_positive_stale_threshold() -> None:
    settings = Settings(dispatch=DispatchSettings(machine_stale_seconds=0))

    with pytest.raises(ValueError, match="TASKFLEET_MACHINE_STALE_SECONDS"):
        settings.validate()


def test_validate_rejects_negative_auto_fail_threshold() -> None:
    settings = Settings(dispatch=DispatchSettings(stale_running_fail_seconds=-1))

    with pytest.raises(ValueError, match="TASKFLEET_STALE_RUNNING_FAIL_SECONDS"):
        settings.validate()


def test_validate_rejects_port_out_of_range() -> None:
    settings = Settings(server=ServerSettings(port=70_000))

    with pytest.raises(ValueError, match="TASKFLEET_PORT"):
        settings.validate()


def test_validate_rejects_negative_reservation_ttl() -> None:
    settings = Settings(dispatch=DispatchSettings(reservation_ttl_seconds=-5))

    with pytest.raises(ValueError, match="TASKFLEET_RESERVATION_TTL_SECONDS"):
        settings.validate()


def test_validate_rejects_zero_parallel_subagent_runs() -> None:
    settings = Settings(subagents=SubagentSettings(max_parallel_runs=0))

    with pytest.raises(ValueError, match="TASKFLEET_SUBAGENT_MAX_PARALLEL_RUNS"):
        settings.validate()
