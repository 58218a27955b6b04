"""Agent profiles, subagent runs and parent notification messages."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "agent_profiles",
        sa.Column("profile_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("system_prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("max_concurrent", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("active_runs", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_completed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("profile_id"),
    )

    op.create_table(
        "subagent_runs",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("parent_run_id", sa.String(), nullable=True),
        sa.Column("profile_id", sa.String(), nullable=False),
        sa.Column("task", sa.Text(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("execution_mode", sa.String(), nullable=False, server_default="local"),
        sa.Column("timeout_seconds", sa.Integer(), nullable=False, server_default="300"),
        sa.Column("cleanup_policy", sa.String(), nullable=False, server_default="retain"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("queue_task_id", sa.String(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["parent_run_id"],
            ["subagent_runs.run_id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["profile_id"],
            ["agent_profiles.profile_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("run_id"),
    )
    op.create_index(
        "ix_subagent_runs_parent_run_id",
        "subagent_runs",
        ["parent_run_id"],
        unique=False,
    )
    op.create_index("ix_subagent_runs_status", "subagent_runs", ["status"], unique=False)
    op.create_index(
        "ix_subagent_runs_queue_task_id",
        "subagent_runs",
        ["queue_task_id"],
        unique=False,
    )
    op.create_index(
        "idx_subagent_runs_profile_status",
        "subagent_runs",
        ["profile_id", "status"],
        unique=False,
    )

    op.create_table(
        "subagent_messages",
        sa.Column("message_id", sa.Integer(), nullable=False),
        sa.Column("from_run_id", sa.String(), nullable=True),
        sa.Column("to_run_id", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("read_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["from_run_id"],
            ["subagent_runs.run_id"],
            ondelete="SET NULL",
        ),
        sa.ForeignKeyConstraint(
            ["to_run_id"],
            ["subagent_runs.run_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("message_id"),
    )
    op.create_index(
        "ix_subagent_messages_to_run_id",
        "subagent_messages",
        ["to_run_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_subagent_messages_to_run_id", table_name="subagent_messages")
    op.drop_table("subagent_messages")
    op.drop_index("idx_subagent_runs_profile_status", table_name="subagent_runs")
    op.drop_index("ix_subagent_runs_queue_task_id", table_name="subagent_runs")
    op.drop_index("ix_subagent_runs_status", table_name="subagent_runs")
    op.drop_index("ix_subagent_runs_parent_run_id", table_name="subagent_runs")
    op.drop_table("subagent_runs")
    op.drop_table("agent_profiles")
