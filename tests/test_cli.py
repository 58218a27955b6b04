from __future__ import annotations

import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskfleet import __version__
from taskfleet.main import taskfleet

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Task, Machine and Subagent Commands"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch, echo_command: str) -> Path:
    monkeypatch.setenv("TASKFLEET_SUBAGENT_WORK_ROOT", str(tmp_path / "runs"))
    monkeypatch.setenv("TASKFLEET_SUBAGENT_COMMAND_TEMPLATE", echo_command)
    monkeypatch.delenv("TASKFLEET_MAX_BUDGET", raising=False)
    return tmp_path / "cli.db"


def _invoke(db_path: Path, *args: str) -> str:
    result = CliRunner().invoke(taskfleet, [*args, "--db-path", str(db_path)])
    assert result.exit_code == 0, result.output
    return result.output


def _extract(pattern: str, output: str) -> str:
    match = re.search(pattern, output)
    assert match is not None, output
    return match.group(1)


def test_version_option() -> None:
    result = CliRunner().invoke(taskfleet, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_task_flow_through_cli(cli_env: Path) -> None:
    _invoke(cli_env, "machines", "register", "--machine-id", "m1", "--project", "alpha")
    created = _invoke(
        cli_env,
        "tasks",
        "create",
        "--project",
        "alpha",
        "--description",
        "Fix the login form",
        "--budget",
        "2",
    )
    task_id = _extract(r"task_id=([a-f0-9-]+)", created)

    claimed = _invoke(cli_env, "tasks", "claim", "--machine-id", "m1")
    started = _invoke(cli_env, "tasks", "start", task_id, "--machine-id", "m1")
    reported = _invoke(
        cli_env,
        "tasks",
        "report",
        task_id,
        "--outcome",
        "completed",
        "--summary",
        "Fixed",
        "--artifact",
        "src/login.py",
        "--cost",
        "0.75",
    )
    repeated = _invoke(cli_env, "tasks", "report", task_id, "--outcome", "failed")
    inspected = _invoke(cli_env, "tasks", "inspect", task_id)
    listed = _invoke(cli_env, "tasks", "list", "--status", "completed")

    assert "status=queued" in created
    assert f"Claimed: task_id={task_id}" in claimed
    assert "status=running" in started
    assert f"Task {task_id}: status=completed" in reported
    assert "(already reported)" in repeated
    assert "Summary: Fixed" in inspected
    assert "Cost: 0.75" in inspected
    assert "Artifacts: 1" in inspected
    assert "completed" in inspected
    assert "Tasks: 1" in listed


def test_budget_above_ceiling_is_rejected(cli_env: Path) -> None:
    result = CliRunner().invoke(
        taskfleet,
        [
            "tasks",
            "create",
            "--db-path",
            str(cli_env),
            "--project",
            "alpha",
            "--description",
            "Too expensive",
            "--budget",
            "50",
        ],
    )

    assert result.exit_code != 0
    assert "exceeds maximum" in result.output


def test_unknown_task_reports_error(cli_env: Path) -> None:
    result = CliRunner().invoke(
        taskfleet,
        ["tasks", "inspect", "missing", "--db-path", str(cli_env)],
    )

    assert result.exit_code != 0
    assert "Task not found: missing" in result.output


def test_dispatch_run_assigns_by_affinity(cli_env: Path) -> None:
    _invoke(
        cli_env,
        "machines",
        "register",
        "--machine-id",
        "m1",
        "--project",
        "alpha",
        "--max-concurrent",
        "2",
    )
    created = _invoke(
        cli_env,
        "tasks",
        "create",
        "--project",
        "alpha",
        "--description",
        "Dispatch me",
    )
    task_id = _extract(r"task_id=([a-f0-9-]+)", created)

    output = _invoke(cli_env, "dispatch", "run")
    machines = _invoke(cli_env, "machines", "list")
    heartbeat = _invoke(cli_env, "machines", "heartbeat", "--machine-id", "m1", "--active", "0")
    unknown = _invoke(cli_env, "machines", "heartbeat", "--machine-id", "ghost")

    assert "Cycle 1: assigned=1" in output
    assert f"{task_id} -> m1 (affinity)" in output
    assert "Machines: 1" in machines
    assert "m1 status=online active=1/2 projects=alpha" in machines
    assert "Heartbeat: m1 active=1/2" in heartbeat
    assert "Machine not registered: ghost" in unknown


def test_cancel_task_through_cli(cli_env: Path) -> None:
    created = _invoke(cli_env, "tasks", "create", "--project", "alpha", "--description", "x")
    task_id = _extract(r"task_id=([a-f0-9-]+)", created)

    output = _invoke(cli_env, "tasks", "cancel", task_id)

    assert f"Task {task_id}: status=cancelled" in output


def test_subagent_flow_through_cli(cli_env: Path) -> None:
    seeded = _invoke(cli_env, "subagents", "seed-profiles")
    spawned = _invoke(
        cli_env,
        "subagents",
        "spawn",
        "--profile",
        "code-reviewer",
        "--task",
        "review the retry logic",
    )
    run_id = _extract(r"run_id=([a-f0-9-]+)", spawned)
    child = _invoke(
        cli_env,
        "subagents",
        "spawn",
        "--profile",
        "researcher",
        "--task",
        "look up prior art",
        "--parent",
        run_id,
        "--mode",
        "remote",
    )
    child_id = _extract(r"run_id=([a-f0-9-]+)", child)

    lifecycle = _invoke(cli_env, "subagents", "lifecycle")
    inspected = _invoke(cli_env, "subagents", "inspect", run_id)
    profiles = _invoke(cli_env, "subagents", "profiles")
    listed = _invoke(cli_env, "subagents", "list", "--status", "running")
    cancelled = _invoke(cli_env, "subagents", "cancel", child_id)
    again = _invoke(cli_env, "subagents", "cancel", child_id)

    assert "Profile seeded: code-reviewer" in seeded
    assert "mode=remote" in child
    assert "executed=1 completed=1" in lifecycle
    assert "dispatched_remote=1" in lifecycle
    assert "Status: completed" in inspected
    assert "Result: [code-reviewer] review the retry logic" in inspected
    assert "Descendants: 1" in inspected
    assert (
        "code-reviewer model=standard active=0/2 completed=1 failed=0 success=100%" in profiles
    )
    assert f"{child_id} profile=researcher status=running mode=remote" in listed
    assert f"Cancelled: {child_id}" in cancelled
    assert f"Nothing to cancel: {child_id}" in again


def test_spawn_unknown_profile_fails(cli_env: Path) -> None:
    result = CliRunner().invoke(
        taskfleet,
        [
            "subagents",
            "spawn",
            "--db-path",
            str(cli_env),
            "--profile",
            "ghost",
            "--task",
            "x",
        ],
    )

    assert result.exit_code != 0
    assert "Agent profile not found: ghost" in result.output
