"""Wiring of repositories, control loops and the relay from settings."""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskfleet.config import Settings
from taskfleet.dispatch.alerts import (
    CompletionNotifier,
    FanOutCompletionNotifier,
    LoggingAlertSink,
    LoggingCompletionNotifier,
    OperatorAlertSink,
)
from taskfleet.dispatch.dispatcher import Dispatcher
from taskfleet.dispatch.registry import MachineRegistry
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.errors import TaskNotFound
from taskfleet.relay.inputs import PendingInputQueue
from taskfleet.relay.stream import RelayCompletionNotifier, StreamRelay
from taskfleet.relay.surfaces import ChatSurface, LoggingChatSurface
from taskfleet.scheduler import JobScheduler
from taskfleet.storage.common import Clock, utc_now
from taskfleet.subagents.executor import CliRunExecutor, RunExecutor
from taskfleet.subagents.lifecycle import SubagentLifecycleWorker
from taskfleet.subagents.repository import SubagentRepository

logger = logging.getLogger(__name__)

ECHO_AGENT_TEMPLATE = (
    sys.executable + " -m taskfleet.subagents.echo_agent --prompt-file {prompt_file}"
)


@dataclass(slots=True)
class Runtime:
    """Every long-lived component of one taskfleet process."""

    settings: Settings
    tasks: TaskRepository
    registry: MachineRegistry
    runs: SubagentRepository
    dispatcher: Dispatcher
    relay: StreamRelay
    inputs: PendingInputQueue
    lifecycle: SubagentLifecycleWorker

    def build_scheduler(self) -> JobScheduler:
        scheduler = JobScheduler()
        scheduler.add(
            "dispatcher",
            self.dispatcher.run_cycle,
            interval_seconds=self.settings.dispatch.interval_seconds,
        )
        scheduler.add(
            "stream-relay",
            self.relay.tick,
            interval_seconds=self.settings.relay.tick_seconds,
        )
        scheduler.add(
            "pending-inputs",
            self.inputs.sweep,
            interval_seconds=self.settings.relay.input_sweep_seconds,
        )
        scheduler.add(
            "subagent-lifecycle",
            self.lifecycle.run_once,
            interval_seconds=self.settings.subagents.lifecycle_interval_seconds,
        )
        return scheduler

    def close(self) -> None:
        self.lifecycle.shutdown()
        self.tasks.close()
        self.registry.close()
        self.runs.close()


def build_runtime(  # noqa: PLR0913
    settings: Settings,
    *,
    clock: Clock = utc_now,
    surface: ChatSurface | None = None,
    alerts: OperatorAlertSink | None = None,
    notifier: CompletionNotifier | None = None,
    executor: RunExecutor | None = None,
) -> Runtime:
    """Build and migrate all components for the given settings."""

    settings.validate()

    def describe_task(task_id: str) -> str:
        try:
            task = tasks.get(task_id)
        except TaskNotFound:
            return f"Task {task_id[:8]}"
        return f"[{task.project}] {task.description.splitlines()[0][:80]}"

    relay = StreamRelay(
        surface=surface or LoggingChatSurface(),
        flush_interval_seconds=settings.relay.flush_interval_seconds,
        max_message_chars=settings.relay.max_message_chars,
        clock=clock,
        describe_task=describe_task,
    )
    tasks = TaskRepository(
        db_path=settings.db_path,
        clock=clock,
        busy_timeout_ms=settings.busy_timeout_ms,
        max_budget=settings.tasks.max_budget,
        notifier=FanOutCompletionNotifier(
            notifier or LoggingCompletionNotifier(),
            RelayCompletionNotifier(relay),
        ),
    )
    tasks.init_schema()
    registry = MachineRegistry(
        db_path=settings.db_path,
        clock=clock,
        busy_timeout_ms=settings.busy_timeout_ms,
        stale_after_seconds=settings.dispatch.machine_stale_seconds,
    )
    runs = SubagentRepository(
        db_path=settings.db_path,
        clock=clock,
        busy_timeout_ms=settings.busy_timeout_ms,
        default_timeout_seconds=settings.subagents.default_timeout_seconds,
        purge_grace_seconds=settings.subagents.purge_grace_seconds,
    )

    return Runtime(
        settings=settings,
        tasks=tasks,
        registry=registry,
        runs=runs,
        dispatcher=Dispatcher(
            tasks=tasks,
            registry=registry,
            settings=settings.dispatch,
            alerts=alerts or LoggingAlertSink(),
            clock=clock,
        ),
        relay=relay,
        inputs=PendingInputQueue(ttl_seconds=settings.relay.input_ttl_seconds, clock=clock),
        lifecycle=SubagentLifecycleWorker(
            runs=runs,
            tasks=tasks,
            executor=executor or default_executor(settings),
            remote_project=settings.subagents.remote_project,
            max_parallel_runs=settings.subagents.max_parallel_runs,
        ),
    )


def default_executor(settings: Settings) -> RunExecutor:
    """CLI executor from settings, falling back to the bundled echo agent."""

    template = settings.subagents.command_template.strip()
    if not template:
        logger.info("TASKFLEET_SUBAGENT_COMMAND_TEMPLATE is unset, using the echo agent")
        template = ECHO_AGENT_TEMPLATE
    return CliRunExecutor(
        template,
        work_root=settings.subagents.work_root,
        max_output_chars=settings.subagents.max_output_chars,
    )


@contextmanager
def open_runtime(settings: Settings, **kwargs: object) -> Iterator[Runtime]:
    runtime = build_runtime(settings, **kwargs)  # type: ignore[arg-type]
    try:
        yield runtime
    finally:
        runtime.close()
