"""Request and response bodies of the HTTP API."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from taskfleet.dispatch.models import MachineStatus, ResultOutcome, TaskStatus
from taskfleet.relay.models import StreamEventType
from taskfleet.subagents.models import CleanupPolicy, ExecutionMode, SubagentStatus


class MachineRegisterRequest(BaseModel):
    machine_id: str = Field(min_length=1)
    projects: list[str] = Field(default_factory=list)
    max_concurrent: int = Field(default=1, ge=1)
    display_name: str | None = None
    os: str | None = None


class HeartbeatRequest(BaseModel):
    machine_id: str = Field(min_length=1)
    active_count: int = Field(default=0, ge=0)
    sent_at: datetime | None = None


class HeartbeatAck(BaseModel):
    accepted: bool


class MachineOut(BaseModel):
    machine_id: str
    display_name: str | None
    os: str | None
    projects: list[str]
    max_concurrent: int
    active_tasks: int
    reported_active_tasks: int
    status: MachineStatus
    last_heartbeat: datetime
    registered_at: datetime


class TaskCreateRequest(BaseModel):
    project: str = Field(min_length=1)
    description: str = Field(min_length=1)
    priority: int = 0
    budget: float = 0.0


class TaskResultOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    summary: str | None
    changed_artifacts: list[str]
    external_ref_url: str | None
    cost_units: float | None
    error_message: str | None


class TaskOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    task_id: str
    project: str
    description: str
    priority: int
    budget: float
    status: TaskStatus
    assigned_machine: str | None
    result: TaskResultOut
    created_at: datetime
    assigned_at: datetime | None
    claimed_at: datetime | None
    started_at: datetime | None
    ended_at: datetime | None


class ClaimRequest(BaseModel):
    machine_id: str = Field(min_length=1)
    task_id: str | None = None


class ClaimResponse(BaseModel):
    task: TaskOut | None


class StartRequest(BaseModel):
    machine_id: str = Field(min_length=1)


class ResultRequest(BaseModel):
    outcome: ResultOutcome
    summary: str | None = None
    changed_artifacts: list[str] = Field(default_factory=list)
    external_ref_url: str | None = None
    cost_units: float | None = None
    error_message: str | None = None


class ResultResponse(BaseModel):
    task: TaskOut
    first_report: bool


class ToolUseIn(BaseModel):
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


class StreamResultIn(BaseModel):
    is_error: bool = False
    summary: str | None = None
    cost_units: float | None = None
    changed_artifacts: list[str] = Field(default_factory=list)
    external_ref_url: str | None = None
    error: str | None = None


class StreamEventRequest(BaseModel):
    event_type: StreamEventType
    text: str | None = None
    tool_use: ToolUseIn | None = None
    result: StreamResultIn | None = None


class StreamAck(BaseModel):
    accepted: bool


class InputRequest(BaseModel):
    text: str = Field(min_length=1)


class InputAck(BaseModel):
    pending: int


class InputOut(BaseModel):
    text: str
    enqueued_at: datetime


class InputPollResponse(BaseModel):
    input: InputOut | None


class SpawnRunRequest(BaseModel):
    profile_id: str = Field(min_length=1)
    task: str = Field(min_length=1)
    parent_run_id: str | None = None
    model: str | None = None
    execution_mode: ExecutionMode = ExecutionMode.LOCAL
    timeout_seconds: int | None = Field(default=None, ge=1)
    cleanup_policy: CleanupPolicy = CleanupPolicy.RETAIN
    metadata: dict[str, Any] = Field(default_factory=dict)


class RunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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


class RunListResponse(BaseModel):
    runs: list[RunOut]


class HealthOut(BaseModel):
    status: str
    version: str
