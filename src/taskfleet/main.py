"""CLI entrypoint for taskfleet."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click
import uvicorn

from taskfleet import __version__
from taskfleet.api import create_app
from taskfleet.config import Settings
from taskfleet.dispatch.controllers import (
    DispatchRunCommand,
    MachineCliController,
    MachineHeartbeatCommand,
    MachineListCommand,
    MachineRegisterCommand,
    TaskClaimCommand,
    TaskCliController,
    TaskCreateCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskReportCommand,
    TaskStartCommand,
)
from taskfleet.errors import TaskfleetError
from taskfleet.subagents.controllers import (
    LifecycleCommand,
    ProfileListCommand,
    ProfileSeedCommand,
    RunCancelCommand,
    RunInspectCommand,
    RunListCommand,
    SpawnCommand,
    SubagentCliController,
)

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()
MACHINE_CONTROLLER = MachineCliController()
SUBAGENT_CONTROLLER = SubagentCliController()

_DB_PATH_HELP = "SQLite DB path. Defaults to TASKFLEET_DB_PATH."
_TASK_STATUSES = ["queued", "assigned", "claimed", "running", "completed", "failed", "cancelled"]
_RUN_STATUSES = ["pending", "running", "completed", "error", "timeout", "cancelled"]


@click.group()
@click.version_option(version=__version__, prog_name="taskfleet")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for taskfleet and its libraries.",
)
def taskfleet(log_level: str) -> None:
    """Distributed task queue, dispatcher and subagent runner."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskfleet.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--project", required=True, help="Project the task belongs to.")
@click.option("--description", required=True, help="What the executing machine should do.")
@click.option("--priority", type=int, default=0, show_default=True, help="Higher runs first.")
@click.option(
    "--budget",
    type=float,
    default=0.0,
    show_default=True,
    help="Spend ceiling in cost units; capped by TASKFLEET_MAX_BUDGET.",
)
def tasks_create(
    db_path: Path | None,
    project: str,
    description: str,
    priority: int,
    budget: float,
) -> None:
    """Enqueue a new task."""

    _emit(
        lambda: TASK_CONTROLLER.create(
            TaskCreateCommand(
                db_path=db_path,
                project=project,
                description=description,
                priority=priority,
                budget=budget,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(_TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--project", default=None, help="Filter by project.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=None,
    help="Max tasks to print. Defaults to TASKFLEET_TASK_LIST_LIMIT.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    project: str | None,
    limit: int | None,
) -> None:
    """List recent tasks."""

    _emit(
        lambda: TASK_CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                project=project,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task status, result and event history."""

    _emit(lambda: TASK_CONTROLLER.inspect(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("task_id")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task that has not finished yet."""

    _emit(lambda: TASK_CONTROLLER.cancel(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@tasks.command("claim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--machine-id", required=True, help="Registered machine claiming the task.")
@click.option("--task-id", default=None, help="Claim this task instead of the next one.")
def tasks_claim(db_path: Path | None, machine_id: str, task_id: str | None) -> None:
    """Claim the next available task for a machine."""

    _emit(
        lambda: TASK_CONTROLLER.claim(
            TaskClaimCommand(db_path=db_path, machine_id=machine_id, task_id=task_id),
        ),
    )


@tasks.command("start")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--machine-id", required=True, help="Machine holding the claim.")
@click.argument("task_id")
def tasks_start(db_path: Path | None, machine_id: str, task_id: str) -> None:
    """Mark a claimed task as running."""

    _emit(
        lambda: TASK_CONTROLLER.start(
            TaskStartCommand(db_path=db_path, task_id=task_id, machine_id=machine_id),
        ),
    )


@tasks.command("report")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--outcome",
    type=click.Choice(["completed", "failed"], case_sensitive=False),
    required=True,
    help="Terminal outcome.",
)
@click.option("--summary", default=None, help="Human-readable result summary.")
@click.option(
    "--artifact",
    "artifacts",
    multiple=True,
    help="Changed file or artifact. Can be repeated.",
)
@click.option("--ref-url", default=None, help="External reference such as a pull request URL.")
@click.option("--cost", type=float, default=None, help="Cost units spent.")
@click.option("--error", "error_message", default=None, help="Error text for failed tasks.")
@click.argument("task_id")
def tasks_report(  # noqa: PLR0913
    db_path: Path | None,
    outcome: str,
    summary: str | None,
    artifacts: tuple[str, ...],
    ref_url: str | None,
    cost: float | None,
    error_message: str | None,
    task_id: str,
) -> None:
    """Report a task result. Repeated reports are accepted and ignored."""

    _emit(
        lambda: TASK_CONTROLLER.report(
            TaskReportCommand(
                db_path=db_path,
                task_id=task_id,
                outcome=outcome.lower(),
                summary=summary,
                changed_artifacts=artifacts,
                external_ref_url=ref_url,
                cost_units=cost,
                error_message=error_message,
            ),
        ),
    )


@taskfleet.group()
def machines() -> None:
    """Machine registry commands."""


@machines.command("register")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--machine-id", required=True, help="Stable machine identifier.")
@click.option(
    "--project",
    "projects",
    multiple=True,
    help="Project affinity. Can be repeated; none means any project.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Tasks the machine runs at once.",
)
@click.option("--display-name", default=None, help="Human-friendly name.")
@click.option("--os", "os_name", default=None, help="Operating system label.")
def machines_register(  # noqa: PLR0913
    db_path: Path | None,
    machine_id: str,
    projects: tuple[str, ...],
    max_concurrent: int,
    display_name: str | None,
    os_name: str | None,
) -> None:
    """Register or refresh a machine."""

    _emit(
        lambda: MACHINE_CONTROLLER.register(
            MachineRegisterCommand(
                db_path=db_path,
                machine_id=machine_id,
                projects=projects,
                max_concurrent=max_concurrent,
                display_name=display_name,
                os=os_name,
            ),
        ),
    )


@machines.command("heartbeat")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--machine-id", required=True, help="Registered machine.")
@click.option(
    "--active",
    "active_count",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Tasks the machine is executing right now.",
)
def machines_heartbeat(db_path: Path | None, machine_id: str, active_count: int) -> None:
    """Send one heartbeat on behalf of a machine."""

    _emit(
        lambda: MACHINE_CONTROLLER.heartbeat(
            MachineHeartbeatCommand(
                db_path=db_path,
                machine_id=machine_id,
                active_count=active_count,
            ),
        ),
    )


@machines.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def machines_list(db_path: Path | None) -> None:
    """List machines with their effective status."""

    _emit(lambda: MACHINE_CONTROLLER.list_machines(MachineListCommand(db_path=db_path)))


@taskfleet.group()
def dispatch() -> None:
    """Dispatcher commands."""


@dispatch.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--cycles",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of cycles, spaced by TASKFLEET_DISPATCH_INTERVAL_SECONDS.",
)
def dispatch_run(db_path: Path | None, cycles: int) -> None:
    """Sweep stale machines and assign queued tasks."""

    _emit(
        lambda: MACHINE_CONTROLLER.run_dispatch(
            DispatchRunCommand(db_path=db_path, cycles=cycles),
        ),
    )


@taskfleet.group()
def subagents() -> None:
    """Subagent profile and run commands."""


@subagents.command("seed-profiles")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def subagents_seed_profiles(db_path: Path | None) -> None:
    """Create or refresh the built-in agent profiles."""

    _emit(lambda: SUBAGENT_CONTROLLER.seed_profiles(ProfileSeedCommand(db_path=db_path)))


@subagents.command("profiles")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def subagents_profiles(db_path: Path | None) -> None:
    """List agent profiles with load and success counters."""

    _emit(lambda: SUBAGENT_CONTROLLER.list_profiles(ProfileListCommand(db_path=db_path)))


@subagents.command("spawn")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--profile", "profile_id", required=True, help="Agent profile id.")
@click.option("--task", required=True, help="Task text for the subagent.")
@click.option("--parent", "parent_run_id", default=None, help="Parent run id.")
@click.option("--model", default=None, help="Model override for this run.")
@click.option(
    "--mode",
    type=click.Choice(["local", "remote"], case_sensitive=False),
    default="local",
    show_default=True,
    help="Run locally or hand the run to the task queue.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Defaults to TASKFLEET_SUBAGENT_TIMEOUT_SECONDS.",
)
@click.option(
    "--cleanup",
    type=click.Choice(["retain", "purge"], case_sensitive=False),
    default="retain",
    show_default=True,
    help="Purge the run record after the grace period or keep it.",
)
def subagents_spawn(  # noqa: PLR0913
    db_path: Path | None,
    profile_id: str,
    task: str,
    parent_run_id: str | None,
    model: str | None,
    mode: str,
    timeout_seconds: int | None,
    cleanup: str,
) -> None:
    """Spawn a subagent run."""

    _emit(
        lambda: SUBAGENT_CONTROLLER.spawn(
            SpawnCommand(
                db_path=db_path,
                profile_id=profile_id,
                task=task,
                parent_run_id=parent_run_id,
                model=model,
                execution_mode=mode.lower(),
                timeout_seconds=timeout_seconds,
                cleanup_policy=cleanup.lower(),
            ),
        ),
    )


@subagents.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice(_RUN_STATUSES, case_sensitive=False),
    default=None,
    help="Filter by status.",
)
@click.option("--profile", "profile_id", default=None, help="Filter by profile.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max runs to print.",
)
def subagents_list(
    db_path: Path | None,
    status: str | None,
    profile_id: str | None,
    limit: int,
) -> None:
    """List recent subagent runs."""

    _emit(
        lambda: SUBAGENT_CONTROLLER.list_runs(
            RunListCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                profile_id=profile_id,
                limit=limit,
            ),
        ),
    )


@subagents.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("run_id")
def subagents_inspect(db_path: Path | None, run_id: str) -> None:
    """Show a run with its descendants and messages."""

    _emit(lambda: SUBAGENT_CONTROLLER.inspect(RunInspectCommand(db_path=db_path, run_id=run_id)))


@subagents.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--cascade/--no-cascade",
    default=False,
    show_default=True,
    help="Also cancel every unfinished descendant.",
)
@click.argument("run_id")
def subagents_cancel(db_path: Path | None, cascade: bool, run_id: str) -> None:
    """Cancel a pending or running subagent run."""

    _emit(
        lambda: SUBAGENT_CONTROLLER.cancel(
            RunCancelCommand(db_path=db_path, run_id=run_id, cascade=cascade),
        ),
    )


@subagents.command("lifecycle")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def subagents_lifecycle(db_path: Path | None) -> None:
    """Run one lifecycle pass: execute pending runs, sweep timeouts, purge."""

    _emit(lambda: SUBAGENT_CONTROLLER.run_lifecycle(LifecycleCommand(db_path=db_path)))


@taskfleet.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--host", default=None, help="Bind address. Defaults to TASKFLEET_HOST.")
@click.option(
    "--port",
    type=click.IntRange(1, 65535),
    default=None,
    help="Listen port. Defaults to TASKFLEET_PORT.",
)
@click.option(
    "--background-jobs/--no-background-jobs",
    default=None,
    help="Run dispatcher, relay and lifecycle loops in this process.",
)
def serve(
    db_path: Path | None,
    host: str | None,
    port: int | None,
    background_jobs: bool | None,
) -> None:
    """Run the HTTP API with uvicorn."""

    settings = Settings.from_env(db_path=db_path)
    if host is not None:
        settings.server.host = host
    if port is not None:
        settings.server.port = port
    if background_jobs is not None:
        settings.server.run_background_jobs = background_jobs
    try:
        app = create_app(settings)
    except (TaskfleetError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_config=None)


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TaskfleetError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskfleet()
