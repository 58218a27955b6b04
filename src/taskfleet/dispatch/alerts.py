"""Operator alert and completion notification sinks."""

from __future__ import annotations

import logging
from typing import Protocol

from taskfleet.dispatch.models import StaleRunningTask, TaskView
from taskfleet.errors import MachineStale, NoMachineAvailable

logger = logging.getLogger(__name__)


class OperatorAlertSink(Protocol):
    """Receives conditions an operator should look at."""

    def machine_offline(self, alert: MachineStale) -> None: ...

    def no_machine_available(self, alert: NoMachineAvailable) -> None: ...

    def stale_running(self, alert: StaleRunningTask) -> None: ...


class CompletionNotifier(Protocol):
    """Receives each task exactly once when it reaches a terminal state."""

    def task_finished(self, task: TaskView) -> None: ...


class LoggingAlertSink:
    """Default sink: operator alerts go to the log."""

    def machine_offline(self, alert: MachineStale) -> None:
        logger.warning("Machine offline: %s", alert)

    def no_machine_available(self, alert: NoMachineAvailable) -> None:
        logger.warning("%s", alert)

    def stale_running(self, alert: StaleRunningTask) -> None:
        logger.warning(
            "Stale running task %s on machine %s (status=%s, %s, age=%.0fs)",
            alert.task_id,
            alert.machine_id,
            alert.status.value,
            alert.reason,
            alert.age_seconds,
        )


class RecordingAlertSink:
    """Keeps alerts in memory; used by the CLI dispatch report and tests."""

    def __init__(self) -> None:
        self.offline: list[MachineStale] = []
        self.starved: list[NoMachineAvailable] = []
        self.stale: list[StaleRunningTask] = []

    def machine_offline(self, alert: MachineStale) -> None:
        self.offline.append(alert)

    def no_machine_available(self, alert: NoMachineAvailable) -> None:
        self.starved.append(alert)

    def stale_running(self, alert: StaleRunningTask) -> None:
        self.stale.append(alert)


class LoggingCompletionNotifier:
    def task_finished(self, task: TaskView) -> None:
        logger.info(
            "Task %s finished: status=%s machine=%s summary=%s",
            task.task_id,
            task.status.value,
            task.assigned_machine,
            task.result.summary or task.result.error_message or "",
        )


class FanOutCompletionNotifier:
    """Delivers each completion to several notifiers; one failing does not stop the rest."""

    def __init__(self, *notifiers: CompletionNotifier) -> None:
        self.notifiers = notifiers

    def task_finished(self, task: TaskView) -> None:
        for notifier in self.notifiers:
            try:
                notifier.task_finished(task)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Completion notifier %s failed for task %s",
                    type(notifier).__name__,
                    task.task_id,
                )
