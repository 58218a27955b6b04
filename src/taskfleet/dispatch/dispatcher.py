"""Periodic dispatcher: machine liveness sweep and task assignment."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from taskfleet.config import DispatchSettings
from taskfleet.dispatch.alerts import LoggingAlertSink, OperatorAlertSink
from taskfleet.dispatch.models import (
    Assignment,
    DispatchCycleReport,
    MachineStatus,
    MachineView,
    StaleRunningTask,
    TaskStatus,
    TaskView,
)
from taskfleet.dispatch.registry import MachineRegistry
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.errors import MachineStale, NoMachineAvailable, TaskNotFound
from taskfleet.storage.common import Clock, to_utc_aware_datetime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MachineCandidate:
    machine: MachineView
    free_slots: int


class Dispatcher:
    """Sweeps stale machines and proposes assignments for queued tasks.

    Assignment only reserves a task for a machine. Ownership moves to the
    machine when it claims the task, so a reservation on a machine that then
    goes silent is simply returned to the queue on the next sweep.
    """

    def __init__(
        self,
        *,
        tasks: TaskRepository,
        registry: MachineRegistry,
        settings: DispatchSettings,
        alerts: OperatorAlertSink | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.tasks = tasks
        self.registry = registry
        self.settings = settings
        self.alerts: OperatorAlertSink = alerts or LoggingAlertSink()
        self.clock = clock or tasks.clock
        self._alerted_stale: set[tuple[str, str]] = set()
        self._alerted_starved: set[str] = set()

    def run_cycle(self) -> DispatchCycleReport:
        """Run sweep, stale-running checks and assignment once."""

        report = DispatchCycleReport()
        machines = self._sweep(report)
        self._check_in_flight(machines, report)
        self._assign(machines, report)
        self.tasks.notify_pending()
        if report.assignments or report.requeued_tasks or report.offline_machines:
            logger.info(
                "Dispatch cycle: assigned=%d requeued=%d offline=%d",
                len(report.assignments),
                len(report.requeued_tasks),
                len(report.offline_machines),
            )
        return report

    def _sweep(self, report: DispatchCycleReport) -> dict[str, MachineView]:
        now = self._now()
        machines: dict[str, MachineView] = {}
        for machine in self.registry.list_machines():
            status = machine.effective_status(
                now=now,
                stale_after_seconds=self.settings.machine_stale_seconds,
            )
            changed = self.registry.record_status(machine.machine_id, status)
            if status == MachineStatus.OFFLINE:
                if changed:
                    report.offline_machines.append(machine.machine_id)
                    self._alert(
                        self.alerts.machine_offline,
                        MachineStale(machine.machine_id, machine.heartbeat_age_seconds(now)),
                    )
                report.requeued_tasks.extend(
                    self.tasks.requeue_assigned(
                        machine.machine_id,
                        reason="machine heartbeat is stale",
                    ),
                )
            machines[machine.machine_id] = machine
        return machines

    def _check_in_flight(
        self,
        machines: dict[str, MachineView],
        report: DispatchCycleReport,
    ) -> None:
        now = self._now()
        stale_after = self.settings.machine_stale_seconds
        fail_after = self.settings.stale_running_fail_seconds
        in_flight: set[str] = set()
        for task in self.tasks.list_in_flight():
            machine = machines.get(task.assigned_machine or "")
            heartbeat_age = machine.heartbeat_age_seconds(now) if machine is not None else None
            machine_stale = heartbeat_age is None or heartbeat_age > stale_after
            if task.status == TaskStatus.ASSIGNED:
                if not self._check_reservation(task, machine_stale=machine_stale, report=report):
                    in_flight.add(task.task_id)
                continue
            in_flight.add(task.task_id)
            if machine_stale:
                offline_for = (heartbeat_age - stale_after) if heartbeat_age is not None else None
                if fail_after > 0 and (offline_for is None or offline_for > fail_after):
                    failed = self.tasks.fail_abandoned(
                        task.task_id,
                        reason=(
                            f"Machine {task.assigned_machine} offline for more than "
                            f"{fail_after}s while holding the task"
                        ),
                    )
                    if failed is not None:
                        report.auto_failed_tasks.append(task.task_id)
                        in_flight.discard(task.task_id)
                    continue
                self._report_stale(
                    task,
                    reason="machine heartbeat is stale",
                    age_seconds=heartbeat_age or 0.0,
                    report=report,
                )
                continue

            activity_at = task.started_at or task.claimed_at or task.updated_at
            running_for = (now - activity_at).total_seconds()
            if running_for > self.settings.long_running_seconds:
                self._report_stale(
                    task,
                    reason=f"running longer than {self.settings.long_running_seconds}s",
                    age_seconds=running_for,
                    report=report,
                )
        self._alerted_stale = {key for key in self._alerted_stale if key[0] in in_flight}

    def _check_reservation(
        self,
        task: TaskView,
        *,
        machine_stale: bool,
        report: DispatchCycleReport,
    ) -> bool:
        """Requeue or surface an unclaimed reservation; True when it went back to the queue."""

        machine_id = task.assigned_machine
        reserved_for = (self._now() - (task.assigned_at or task.updated_at)).total_seconds()
        ttl = self.settings.reservation_ttl_seconds
        if machine_id is not None and (machine_stale or (ttl > 0 and reserved_for > ttl)):
            reason = (
                "machine heartbeat is stale"
                if machine_stale
                else f"reservation not claimed within {ttl}s"
            )
            if self.tasks.requeue_reservation(task.task_id, machine_id, reason=reason):
                report.requeued_tasks.append(task.task_id)
                return True
            return False
        if reserved_for > self.settings.long_running_seconds:
            self._report_stale(
                task,
                reason=f"reserved but not claimed for more than "
                f"{self.settings.long_running_seconds}s",
                age_seconds=reserved_for,
                report=report,
            )
        return False

    def _report_stale(
        self,
        task: TaskView,
        *,
        reason: str,
        age_seconds: float,
        report: DispatchCycleReport,
    ) -> None:
        stale = StaleRunningTask(
            task_id=task.task_id,
            machine_id=task.assigned_machine,
            status=task.status,
            reason=reason,
            age_seconds=age_seconds,
        )
        report.stale_running.append(stale)
        key = (task.task_id, reason)
        if key not in self._alerted_stale:
            self._alerted_stale.add(key)
            self._alert(self.alerts.stale_running, stale)

    def _assign(self, machines: dict[str, MachineView], report: DispatchCycleReport) -> None:
        now = self._now()
        candidates = [
            MachineCandidate(machine=machine, free_slots=machine.free_slots)
            for machine in machines.values()
            if machine.effective_status(
                now=now,
                stale_after_seconds=self.settings.machine_stale_seconds,
            )
            == MachineStatus.ONLINE
        ]
        queued = self.tasks.list_unassigned(limit=self.settings.assign_batch_limit)
        for task in queued:
            assignment = self._assign_task(task, candidates)
            if assignment is not None:
                report.assignments.append(assignment)
                self._alerted_starved.discard(task.task_id)
                continue

            waiting = (now - task.created_at).total_seconds()
            if waiting > self.settings.unassigned_alert_seconds:
                report.starved_tasks.append(task.task_id)
                if task.task_id not in self._alerted_starved:
                    self._alerted_starved.add(task.task_id)
                    self._alert(
                        self.alerts.no_machine_available,
                        NoMachineAvailable(task.task_id, task.project, waiting),
                    )
        self._prune_starved({task.task_id for task in queued})

    def _assign_task(
        self,
        task: TaskView,
        candidates: list[MachineCandidate],
    ) -> Assignment | None:
        for candidate in rank_machines(
            task.project,
            candidates,
            strict_affinity=self.settings.strict_affinity,
        ):
            machine_id = candidate.machine.machine_id
            if not self.tasks.assign(task.task_id, machine_id):
                # Lost the task to a claim or the machine filled up meanwhile.
                if self._task_taken(task.task_id):
                    return None
                candidate.free_slots = 0
                continue
            candidate.free_slots -= 1
            logger.debug("Task %s assigned to %s", task.task_id, machine_id)
            return Assignment(
                task_id=task.task_id,
                machine_id=machine_id,
                project=task.project,
                affinity_match=task.project in candidate.machine.projects,
            )
        return None

    def _prune_starved(self, listed: set[str]) -> None:
        for task_id in self._alerted_starved - listed:
            try:
                taken = self._task_taken(task_id)
            except TaskNotFound:
                taken = True
            if taken:
                self._alerted_starved.discard(task_id)

    def _task_taken(self, task_id: str) -> bool:
        current = self.tasks.get(task_id)
        return current.status != TaskStatus.QUEUED or current.assigned_machine is not None

    def _alert(self, deliver: Callable[[Any], None], alert: object) -> None:
        try:
            deliver(alert)
        except Exception:  # noqa: BLE001
            logger.exception("Operator alert sink failed for %s", alert)

    def _now(self) -> datetime:
        return to_utc_aware_datetime(self.clock())


def rank_machines(
    project: str,
    candidates: list[MachineCandidate],
    *,
    strict_affinity: bool,
) -> list[MachineCandidate]:
    """Order eligible machines: affinity match, free capacity, registration age."""

    eligible = [
        candidate
        for candidate in candidates
        if candidate.free_slots > 0
        and (
            not strict_affinity
            or not candidate.machine.projects
            or project in candidate.machine.projects
        )
    ]
    return sorted(
        eligible,
        key=lambda candidate: (
            project not in candidate.machine.projects,
            -candidate.free_slots,
            candidate.machine.registered_at,
            candidate.machine.machine_id,
        ),
    )
