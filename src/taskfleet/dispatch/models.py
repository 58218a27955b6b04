"""Domain models for the task queue and machine registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    QUEUED = "queued"
    ASSIGNED = "assigned"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_TASK_STATUSES


TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED},
)
CLAIMABLE_TASK_STATUSES = (TaskStatus.QUEUED, TaskStatus.ASSIGNED)
ACTIVE_TASK_STATUSES = (TaskStatus.ASSIGNED, TaskStatus.CLAIMED, TaskStatus.RUNNING)


class ResultOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class MachineStatus(str, Enum):
    ONLINE = "online"
    BUSY = "busy"
    OFFLINE = "offline"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    project: str
    description: str
    priority: int = 0
    budget: float = 0.0


@dataclass(slots=True)
class TaskResultPayload:
    """Result reported by the executing machine."""

    summary: str | None = None
    changed_artifacts: list[str] = field(default_factory=list)
    external_ref_url: str | None = None
    cost_units: float | None = None
    error_message: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, HTTP and dispatcher logic."""

    task_id: str
    project: str
    description: str
    priority: int
    budget: float
    status: TaskStatus
    assigned_machine: str | None
    result: TaskResultPayload
    created_at: datetime
    assigned_at: datetime | None
    claimed_at: datetime | None
    started_at: datetime | None
    ended_at: datetime | None
    notified_at: datetime | None
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class ResultReport:
    """Outcome of a result report; `first_report` is False for repeated reports."""

    task: TaskView
    first_report: bool


@dataclass(slots=True)
class MachineRegistration:
    """Registration payload sent by an execution machine."""

    machine_id: str
    projects: list[str] = field(default_factory=list)
    max_concurrent: int = 1
    display_name: str | None = None
    os: str | None = None


@dataclass(slots=True)
class MachineView:
    machine_id: str
    display_name: str | None
    os: str | None
    projects: list[str]
    max_concurrent: int
    active_tasks: int
    reported_active_tasks: int
    stored_status: MachineStatus
    last_heartbeat: datetime
    registered_at: datetime

    @property
    def free_slots(self) -> int:
        return max(0, self.max_concurrent - self.active_tasks)

    def heartbeat_age_seconds(self, now: datetime) -> float:
        return (now - self.last_heartbeat).total_seconds()

    def effective_status(self, *, now: datetime, stale_after_seconds: float) -> MachineStatus:
        return effective_machine_status(
            heartbeat_age_seconds=self.heartbeat_age_seconds(now),
            stale_after_seconds=stale_after_seconds,
            active_tasks=self.active_tasks,
            max_concurrent=self.max_concurrent,
        )


def effective_machine_status(
    *,
    heartbeat_age_seconds: float,
    stale_after_seconds: float,
    active_tasks: int,
    max_concurrent: int,
) -> MachineStatus:
    """Derive liveness from heartbeat age and load, ignoring any stored status."""

    if heartbeat_age_seconds > stale_after_seconds:
        return MachineStatus.OFFLINE
    if active_tasks >= max_concurrent:
        return MachineStatus.BUSY
    return MachineStatus.ONLINE


@dataclass(slots=True)
class Assignment:
    task_id: str
    machine_id: str
    project: str
    affinity_match: bool


@dataclass(slots=True)
class StaleRunningTask:
    task_id: str
    machine_id: str | None
    status: TaskStatus
    reason: str
    age_seconds: float


@dataclass(slots=True)
class DispatchCycleReport:
    """What one dispatcher cycle changed or surfaced."""

    offline_machines: list[str] = field(default_factory=list)
    requeued_tasks: list[str] = field(default_factory=list)
    assignments: list[Assignment] = field(default_factory=list)
    stale_running: list[StaleRunningTask] = field(default_factory=list)
    starved_tasks: list[str] = field(default_factory=list)
    auto_failed_tasks: list[str] = field(default_factory=list)
