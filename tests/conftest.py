"""Shared test fixtures."""

from __future__ import annotations

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskfleet.dispatch.registry import MachineRegistry
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.subagents.repository import SubagentRepository

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m taskfleet.subagents.echo_agent --prompt-file {{prompt_file}}"
)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def echo_command() -> str:
    return ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "taskfleet.db"


@pytest.fixture()
def tasks(db_path: Path, clock: FakeClock):
    repository = TaskRepository(db_path, clock=clock)
    repository.init_schema()
    yield repository
    repository.close()


@pytest.fixture()
def registry(db_path: Path, clock: FakeClock, tasks: TaskRepository):
    repository = MachineRegistry(db_path, clock=clock)
    yield repository
    repository.close()


@pytest.fixture()
def runs(db_path: Path, clock: FakeClock, tasks: TaskRepository):
    repository = SubagentRepository(db_path, clock=clock)
    yield repository
    repository.close()
