"""Controllers for task, machine and dispatch CLI commands."""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from taskfleet.config import Settings
from taskfleet.dispatch.alerts import RecordingAlertSink
from taskfleet.dispatch.models import (
    MachineRegistration,
    ResultOutcome,
    TaskCreate,
    TaskResultPayload,
    TaskStatus,
    TaskView,
)
from taskfleet.runtime import open_runtime
from taskfleet.storage.common import to_utc_aware_datetime


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for task creation."""

    db_path: Path | None
    project: str
    description: str
    priority: int
    budget: float


@dataclass(slots=True)
class TaskListCommand:
    db_path: Path | None
    status: str | None
    project: str | None
    limit: int | None


@dataclass(slots=True)
class TaskInspectCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskClaimCommand:
    """CLI input for claiming on behalf of a machine."""

    db_path: Path | None
    machine_id: str
    task_id: str | None = None


@dataclass(slots=True)
class TaskStartCommand:
    db_path: Path | None
    task_id: str
    machine_id: str


@dataclass(slots=True)
class TaskReportCommand:
    """CLI input for result reporting."""

    db_path: Path | None
    task_id: str
    outcome: str
    summary: str | None
    changed_artifacts: tuple[str, ...]
    external_ref_url: str | None
    cost_units: float | None
    error_message: str | None


@dataclass(slots=True)
class MachineRegisterCommand:
    db_path: Path | None
    machine_id: str
    projects: tuple[str, ...]
    max_concurrent: int
    display_name: str | None
    os: str | None


@dataclass(slots=True)
class MachineHeartbeatCommand:
    db_path: Path | None
    machine_id: str
    active_count: int


@dataclass(slots=True)
class MachineListCommand:
    db_path: Path | None


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for running dispatcher cycles in the foreground."""

    db_path: Path | None
    cycles: int


class TaskCliController:
    """Coordinates task queue CLI operations."""

    def create(self, command: TaskCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            task = runtime.tasks.create(
                TaskCreate(
                    project=command.project,
                    description=command.description,
                    priority=command.priority,
                    budget=command.budget,
                ),
            )
        return [
            f"Task created: task_id={task.task_id} project={task.project} "
            f"priority={task.priority} budget={task.budget:.2f} status={task.status.value}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with open_runtime(settings) as runtime:
            tasks = runtime.tasks.list_tasks(
                status=status_filter,
                project=command.project,
                limit=command.limit or settings.tasks.default_list_limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} project={task.project} status={task.status.value} "
                f"priority={task.priority} machine={task.assigned_machine or '-'} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def inspect(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            details = runtime.tasks.get_task_details(command.task_id)

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Project: {task.project}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Budget: {task.budget:.2f}",
            f"Machine: {task.assigned_machine or '-'}",
            *_result_lines(task),
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            task = runtime.tasks.cancel(command.task_id)
        return [f"Task {task.task_id}: status={task.status.value}"]

    def claim(self, command: TaskClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            if command.task_id is not None:
                task = runtime.tasks.claim_task(command.task_id, command.machine_id)
            else:
                task = runtime.tasks.claim_next(command.machine_id)
        if task is None:
            return [f"No task available for machine {command.machine_id}"]
        return [
            f"Claimed: task_id={task.task_id} project={task.project} "
            f"machine={task.assigned_machine}",
            task.description,
        ]

    def start(self, command: TaskStartCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            task = runtime.tasks.start(command.task_id, command.machine_id)
        return [f"Task {task.task_id}: status={task.status.value}"]

    def report(self, command: TaskReportCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            report = runtime.tasks.report_result(
                command.task_id,
                ResultOutcome(command.outcome),
                TaskResultPayload(
                    summary=command.summary,
                    changed_artifacts=list(command.changed_artifacts),
                    external_ref_url=command.external_ref_url,
                    cost_units=command.cost_units,
                    error_message=command.error_message,
                ),
            )
        suffix = "" if report.first_report else " (already reported)"
        return [f"Task {report.task.task_id}: status={report.task.status.value}{suffix}"]


class MachineCliController:
    """Machine registry and dispatcher CLI operations."""

    def register(self, command: MachineRegisterCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            machine = runtime.registry.register(
                MachineRegistration(
                    machine_id=command.machine_id,
                    projects=list(command.projects),
                    max_concurrent=command.max_concurrent,
                    display_name=command.display_name,
                    os=command.os,
                ),
            )
        projects = ",".join(machine.projects) or "*"
        return [
            f"Machine registered: {machine.machine_id} projects={projects} "
            f"max_concurrent={machine.max_concurrent}",
        ]

    def heartbeat(self, command: MachineHeartbeatCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            machine = runtime.registry.heartbeat(command.machine_id, command.active_count)
        if machine is None:
            return [f"Machine not registered: {command.machine_id}"]
        return [
            f"Heartbeat: {machine.machine_id} active={machine.active_tasks}/"
            f"{machine.max_concurrent}",
        ]

    def list_machines(self, command: MachineListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as runtime:
            machines = runtime.registry.list_machines()
            now = to_utc_aware_datetime(runtime.registry.clock())

        lines = [f"Machines: {len(machines)}"]
        for machine in machines:
            status = machine.effective_status(
                now=now,
                stale_after_seconds=settings.dispatch.machine_stale_seconds,
            )
            lines.append(
                f"  {machine.machine_id} status={status.value} "
                f"active={machine.active_tasks}/{machine.max_concurrent} "
                f"projects={','.join(machine.projects) or '*'} "
                f"heartbeat_age={machine.heartbeat_age_seconds(now):.0f}s",
            )
        return lines

    def run_dispatch(self, command: DispatchRunCommand) -> list[str]:
        """Run dispatcher cycles and summarise what changed."""

        settings = Settings.from_env(db_path=command.db_path)
        alerts = RecordingAlertSink()
        lines: list[str] = []
        with open_runtime(settings, alerts=alerts) as runtime:
            for cycle in range(1, command.cycles + 1):
                if cycle > 1:
                    time.sleep(settings.dispatch.interval_seconds)
                report = runtime.dispatcher.run_cycle()
                lines.append(
                    f"Cycle {cycle}: assigned={len(report.assignments)} "
                    f"requeued={len(report.requeued_tasks)} "
                    f"offline={len(report.offline_machines)} "
                    f"stale_running={len(report.stale_running)} "
                    f"starved={len(report.starved_tasks)} "
                    f"auto_failed={len(report.auto_failed_tasks)}",
                )
                for assignment in report.assignments:
                    affinity = "affinity" if assignment.affinity_match else "fallback"
                    lines.append(
                        f"  {assignment.task_id} -> {assignment.machine_id} ({affinity})",
                    )

        for alert in alerts.offline:
            lines.append(f"Alert: {alert}")
        for alert in alerts.starved:
            lines.append(f"Alert: {alert}")
        for stale in alerts.stale:
            lines.append(
                f"Alert: task {stale.task_id} on {stale.machine_id} is stale ({stale.reason})",
            )
        return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value)
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {value!r}") from error


def _result_lines(task: TaskView) -> list[str]:
    if not task.status.is_terminal:
        return []
    result = task.result
    cost = f"{result.cost_units:.2f}" if result.cost_units is not None else "-"
    return [
        f"Summary: {result.summary or '-'}",
        f"Error: {result.error_message or '-'}",
        f"Cost: {cost}",
        f"Artifacts: {len(result.changed_artifacts)}",
        f"Reference: {result.external_ref_url or '-'}",
    ]
