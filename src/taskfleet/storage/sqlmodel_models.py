"""SQLModel ORM tables for the task queue, machine registry, and subagent runs."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class Task(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_queue", "status", "priority", "created_at"),
        Index("idx_tasks_machine_status", "assigned_machine", "status"),
    )

    task_id: str = Field(primary_key=True)
    project: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    priority: int = Field(default=0)
    budget: float = Field(default=0.0)
    status: str = Field(index=True)
    assigned_machine: str | None = Field(default=None)
    result_summary: str | None = Field(default=None, sa_column=Column(Text))
    changed_artifacts_json: str | None = Field(default=None, sa_column=Column(Text))
    external_ref_url: str | None = None
    cost_units: float | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    assigned_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    claimed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    notified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Machine(SQLModel, table=True):
    __tablename__ = "machines"  # type: ignore[bad-override]

    machine_id: str = Field(primary_key=True)
    display_name: str | None = None
    os: str | None = None
    projects_json: str = Field(
        default="[]",
        sa_column=Column(Text, nullable=False, server_default="[]"),
    )
    max_concurrent: int = Field(default=1)
    active_tasks: int = Field(default=0)
    reported_active_tasks: int = Field(default=0)
    status: str = Field(default="online", index=True)
    last_heartbeat: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat_sent_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    registered_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AgentProfile(SQLModel, table=True):
    __tablename__ = "agent_profiles"  # type: ignore[bad-override]

    profile_id: str = Field(primary_key=True)
    display_name: str
    model: str
    system_prompt: str = Field(default="", sa_column=Column(Text, nullable=False))
    max_concurrent: int = Field(default=2)
    active_runs: int = Field(default=0)
    total_completed: int = Field(default=0)
    total_failed: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SubagentRun(SQLModel, table=True):
    __tablename__ = "subagent_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_subagent_runs_profile_status", "profile_id", "status"),)

    run_id: str = Field(primary_key=True)
    parent_run_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("subagent_runs.run_id", ondelete="SET NULL"),
            nullable=True,
            index=True,
        ),
    )
    profile_id: str = Field(
        sa_column=Column(
            ForeignKey("agent_profiles.profile_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    task: str = Field(sa_column=Column(Text, nullable=False))
    model: str | None = None
    execution_mode: str = Field(default="local")
    timeout_seconds: int = Field(default=300)
    cleanup_policy: str = Field(default="retain")
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    queue_task_id: str | None = Field(default=None, index=True)
    metadata_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class SubagentMessage(SQLModel, table=True):
    __tablename__ = "subagent_messages"  # type: ignore[bad-override]

    message_id: int | None = Field(default=None, primary_key=True)
    from_run_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("subagent_runs.run_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    to_run_id: str = Field(
        sa_column=Column(
            ForeignKey("subagent_runs.run_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    read_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
