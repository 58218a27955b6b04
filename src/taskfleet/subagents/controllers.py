"""Controllers for subagent CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from taskfleet.config import Settings
from taskfleet.runtime import open_runtime
from taskfleet.subagents.models import (
    DEFAULT_PROFILES,
    AgentProfileUpsert,
    CleanupPolicy,
    ExecutionMode,
    SpawnRequest,
    SubagentRunView,
    SubagentStatus,
)


@dataclass(slots=True)
class ProfileSeedCommand:
    db_path: Path | None


@dataclass(slots=True)
class ProfileListCommand:
    db_path: Path | None


@dataclass(slots=True)
class SpawnCommand:
    """CLI input for spawning a subagent run."""

    db_path: Path | None
    profile_id: str
    task: str
    parent_run_id: str | None
    model: str | None
    execution_mode: str
    timeout_seconds: int | None
    cleanup_policy: str


@dataclass(slots=True)
class RunListCommand:
    db_path: Path | None
    status: str | None
    profile_id: str | None
    limit: int


@dataclass(slots=True)
class RunInspectCommand:
    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class RunCancelCommand:
    db_path: Path | None
    run_id: str
    cascade: bool


@dataclass(slots=True)
class LifecycleCommand:
    db_path: Path | None


class SubagentCliController:
    """Coordinates profile, run and lifecycle CLI operations."""

    def seed_profiles(self, command: ProfileSeedCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        lines: list[str] = []
        with open_runtime(settings) as runtime:
            for profile in DEFAULT_PROFILES:
                view = runtime.runs.upsert_profile(
                    AgentProfileUpsert(
                        profile_id=profile.profile_id,
                        display_name=profile.display_name,
                        model=profile.model,
                        system_prompt=profile.system_prompt,
                        max_concurrent=settings.subagents.default_max_concurrent,
                    ),
                )
                lines.append(
                    f"Profile seeded: {view.profile_id} model={view.model} "
                    f"max_concurrent={view.max_concurrent}",
                )
        return lines

    def list_profiles(self, command: ProfileListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            profiles = runtime.runs.list_profiles()

        lines = [f"Profiles: {len(profiles)}"]
        for profile in profiles:
            rate = profile.success_rate
            rate_text = f"{rate:.0%}" if rate is not None else "-"
            lines.append(
                f"  {profile.profile_id} model={profile.model} "
                f"active={profile.active_runs}/{profile.max_concurrent} "
                f"completed={profile.total_completed} failed={profile.total_failed} "
                f"success={rate_text}",
            )
        return lines

    def spawn(self, command: SpawnCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            run = runtime.runs.spawn(
                SpawnRequest(
                    profile_id=command.profile_id,
                    task=command.task,
                    parent_run_id=command.parent_run_id,
                    model=command.model,
                    execution_mode=ExecutionMode(command.execution_mode),
                    timeout_seconds=command.timeout_seconds,
                    cleanup_policy=CleanupPolicy(command.cleanup_policy),
                ),
            )
        return [
            f"Run spawned: run_id={run.run_id} profile={run.profile_id} "
            f"mode={run.execution_mode.value} timeout={run.timeout_seconds}s",
        ]

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = SubagentStatus(command.status) if command.status else None
        with open_runtime(settings) as runtime:
            runs = runtime.runs.list_runs(
                status=status_filter,
                profile_id=command.profile_id,
                limit=command.limit,
            )

        lines = [f"Runs: {len(runs)}"]
        lines.extend(f"  {_run_line(run)}" for run in runs)
        return lines

    def inspect(self, command: RunInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            run = runtime.runs.get_run(command.run_id)
            children = runtime.runs.descendants(command.run_id)
            messages = runtime.runs.messages_for(command.run_id)

        lines = [
            f"Run: {run.run_id}",
            f"Profile: {run.profile_id}",
            f"Status: {run.status.value}",
            f"Mode: {run.execution_mode.value}",
            f"Parent: {run.parent_run_id or '-'}",
            f"Queue task: {run.queue_task_id or '-'}",
            f"Task: {run.task}",
            f"Result: {run.result or '-'}",
            f"Error: {run.error or '-'}",
            f"Descendants: {len(children)}",
        ]
        lines.extend(f"  {_run_line(child)}" for child in children)
        lines.append(f"Messages: {len(messages)}")
        for message in messages:
            state = "read" if message.read_at is not None else "unread"
            lines.append(f"  [{state}] {message.content.splitlines()[0]}")
        return lines

    def cancel(self, command: RunCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            cancelled = runtime.lifecycle.cancel_run(command.run_id, cascade=command.cascade)
        if not cancelled:
            return [f"Nothing to cancel: {command.run_id}"]
        return [f"Cancelled: {run.run_id}" for run in cancelled]

    def run_lifecycle(self, command: LifecycleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            report = runtime.lifecycle.run_once(wait_for_local=True)
        return [
            "Lifecycle summary: "
            f"executed={report.executed} completed={report.completed} "
            f"failed={report.failed} dispatched_remote={report.dispatched_remote} "
            f"remote_finished={report.remote_finished} timed_out={report.timed_out} "
            f"purged={report.purged} in_flight={report.in_flight}",
        ]


def _run_line(run: SubagentRunView) -> str:
    return (
        f"{run.run_id} profile={run.profile_id} status={run.status.value} "
        f"mode={run.execution_mode.value} created_at={run.created_at.isoformat()}"
    )
