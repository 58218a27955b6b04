"""Domain models for agent profiles and subagent runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class SubagentStatus(str, Enum):
    """Subagent run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_RUN_STATUSES


ACTIVE_RUN_STATUSES = frozenset({SubagentStatus.PENDING, SubagentStatus.RUNNING})


class ExecutionMode(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class CleanupPolicy(str, Enum):
    RETAIN = "retain"
    PURGE = "purge"


@dataclass(slots=True)
class SpawnRequest:
    """Input payload for spawning a subagent run."""

    profile_id: str
    task: str
    parent_run_id: str | None = None
    model: str | None = None
    execution_mode: ExecutionMode = ExecutionMode.LOCAL
    timeout_seconds: int | None = None
    cleanup_policy: CleanupPolicy = CleanupPolicy.RETAIN
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SubagentRunView:
    run_id: str
    parent_run_id: str | None
    profile_id: str
    task: str
    model: str | None
    execution_mode: ExecutionMode
    timeout_seconds: int
    cleanup_policy: CleanupPolicy
    status: SubagentStatus
    result: str | None
    error: str | None
    queue_task_id: str | None
    metadata: dict[str, Any]
    created_at: datetime
    started_at: datetime | None
    ended_at: datetime | None


@dataclass(slots=True)
class AgentProfileUpsert:
    profile_id: str
    display_name: str
    model: str
    system_prompt: str = ""
    max_concurrent: int = 2


@dataclass(slots=True)
class AgentProfileView:
    profile_id: str
    display_name: str
    model: str
    system_prompt: str
    max_concurrent: int
    active_runs: int
    total_completed: int
    total_failed: int
    created_at: datetime
    updated_at: datetime

    @property
    def success_rate(self) -> float | None:
        finished = self.total_completed + self.total_failed
        if finished == 0:
            return None
        return self.total_completed / finished


@dataclass(slots=True)
class SubagentMessageView:
    message_id: int
    from_run_id: str | None
    to_run_id: str
    content: str
    created_at: datetime
    read_at: datetime | None


@dataclass(slots=True)
class LifecycleReport:
    """Aggregate lifecycle worker counters for CLI reporting."""

    executed: int = 0
    completed: int = 0
    failed: int = 0
    dispatched_remote: int = 0
    remote_finished: int = 0
    timed_out: int = 0
    purged: int = 0
    in_flight: int = 0


DEFAULT_PROFILES: tuple[AgentProfileUpsert, ...] = (
    AgentProfileUpsert(
        profile_id="code-reviewer",
        display_name="Code Reviewer",
        model="standard",
        system_prompt=(
            "Review code for correctness, security problems, performance and style. "
            "Give specific, actionable feedback with line references and put critical "
            "issues before style remarks."
        ),
    ),
    AgentProfileUpsert(
        profile_id="researcher",
        display_name="Researcher",
        model="large",
        system_prompt=(
            "Research the topic in depth, cross-check sources and produce a structured "
            "summary. State your reasoning and flag uncertainty."
        ),
    ),
    AgentProfileUpsert(
        profile_id="devops",
        display_name="DevOps Engineer",
        model="standard",
        system_prompt=(
            "Work on infrastructure reliability, deployment automation and incident "
            "response. Prefer safe, reversible operations and verify before changing things."
        ),
    ),
)
