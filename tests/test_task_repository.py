from __future__ import annotations

import math

import allure
import pytest

from taskfleet.dispatch.models import (
    MachineRegistration,
    ResultOutcome,
    TaskCreate,
    TaskResultPayload,
    TaskStatus,
    TaskView,
)
from taskfleet.dispatch.registry import MachineRegistry
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.errors import BudgetExceeded, ClaimConflict, InvalidTransition, TaskNotFound

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Store & State Machine"),
]


class _RecordingNotifier:
    def __init__(self) -> None:
        self.finished: list[TaskView] = []

    def task_finished(self, task: TaskView) -> None:
        self.finished.append(task)


def _claimed_task(tasks: TaskRepository, registry: MachineRegistry) -> TaskView:
    registry.register(MachineRegistration(machine_id="m1", max_concurrent=2))
    tasks.create(TaskCreate(project="alpha", description="Fix the login form"))
    claimed = tasks.claim_next("m1")
    assert claimed is not None
    return claimed


def test_create_initialises_queued_task(tasks: TaskRepository) -> None:
    task = tasks.create(
        TaskCreate(project=" alpha ", description="Write release notes", priority=3, budget=2.5),
    )

    assert task.status == TaskStatus.QUEUED
    assert task.project == "alpha"
    assert task.priority == 3
    assert task.budget == 2.5
    assert task.assigned_machine is None
    assert task.created_at.tzinfo is not None

    details = tasks.get_task_details(task.task_id)
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to == TaskStatus.QUEUED


def test_create_rejects_budget_above_ceiling(tasks: TaskRepository) -> None:
    with pytest.raises(BudgetExceeded) as error:
        tasks.create(TaskCreate(project="alpha", description="Expensive", budget=10.01))

    assert error.value.max_budget == 10.0
    assert tasks.list_tasks() == []


def test_create_accepts_budget_at_ceiling(tasks: TaskRepository) -> None:
    task = tasks.create(TaskCreate(project="alpha", description="Exactly at limit", budget=10.0))
    assert task.budget == 10.0


@pytest.mark.parametrize("budget", [math.inf, math.nan])
def test_create_rejects_non_finite_budget(tasks: TaskRepository, budget: float) -> None:
    with pytest.raises(BudgetExceeded):
        tasks.create(TaskCreate(project="alpha", description="Broken budget", budget=budget))


def test_create_rejects_negative_budget_and_empty_fields(tasks: TaskRepository) -> None:
    with pytest.raises(ValueError, match="budget"):
        tasks.create(TaskCreate(project="alpha", description="x", budget=-1))
    with pytest.raises(ValueError, match="project"):
        tasks.create(TaskCreate(project="  ", description="x"))
    with pytest.raises(ValueError, match="description"):
        tasks.create(TaskCreate(project="alpha", description=""))


def test_get_unknown_task_raises(tasks: TaskRepository) -> None:
    with pytest.raises(TaskNotFound):
        tasks.get("missing")
    with pytest.raises(TaskNotFound):
        tasks.get_task_details("missing")
    with pytest.raises(TaskNotFound):
        tasks.cancel("missing")


def test_list_tasks_filters_by_status_and_project(tasks: TaskRepository, clock) -> None:
    first = tasks.create(TaskCreate(project="alpha", description="one"))
    clock.advance(1)
    tasks.create(TaskCreate(project="beta", description="two"))
    clock.advance(1)
    third = tasks.create(TaskCreate(project="alpha", description="three"))
    tasks.cancel(first.task_id)

    alpha = tasks.list_tasks(project="alpha")
    assert [task.task_id for task in alpha] == [third.task_id, first.task_id]

    cancelled = tasks.list_tasks(status=TaskStatus.CANCELLED)
    assert [task.task_id for task in cancelled] == [first.task_id]
    assert len(tasks.list_tasks(limit=1)) == 1


def test_cancel_releases_machine_slot(tasks: TaskRepository, registry: MachineRegistry) -> None:
    claimed = _claimed_task(tasks, registry)
    assert registry.get("m1").active_tasks == 1

    cancelled = tasks.cancel(claimed.task_id)

    assert cancelled.status == TaskStatus.CANCELLED
    assert cancelled.assigned_machine is None
    assert cancelled.ended_at is not None
    assert registry.get("m1").active_tasks == 0


def test_cancel_terminal_task_is_noop(tasks: TaskRepository, registry: MachineRegistry) -> None:
    claimed = _claimed_task(tasks, registry)
    tasks.report_result(
        claimed.task_id,
        ResultOutcome.COMPLETED,
        TaskResultPayload(summary="done"),
    )

    again = tasks.cancel(claimed.task_id)

    assert again.status == TaskStatus.COMPLETED
    assert again.result.summary == "done"


def test_cancel_notifies_completion_once(db_path, clock) -> None:
    notifier = _RecordingNotifier()
    tasks = TaskRepository(db_path, clock=clock, notifier=notifier)
    tasks.init_schema()
    try:
        task = tasks.create(TaskCreate(project="alpha", description="no longer needed"))

        first = tasks.cancel(task.task_id)
        second = tasks.cancel(task.task_id)

        assert first.notified_at is not None
        assert second.status == TaskStatus.CANCELLED
        assert [view.status for view in notifier.finished] == [TaskStatus.CANCELLED]
        assert tasks.notify_pending() == 0
    finally:
        tasks.close()


def test_start_moves_claimed_to_running(tasks: TaskRepository, registry: MachineRegistry) -> None:
    claimed = _claimed_task(tasks, registry)

    running = tasks.start(claimed.task_id, "m1")
    repeated = tasks.start(claimed.task_id, "m1")

    assert running.status == TaskStatus.RUNNING
    assert running.started_at is not None
    assert repeated.started_at == running.started_at


def test_start_rejects_other_machine_and_queued_task(
    tasks: TaskRepository,
    registry: MachineRegistry,
) -> None:
    claimed = _claimed_task(tasks, registry)
    registry.register(MachineRegistration(machine_id="m2"))
    queued = tasks.create(TaskCreate(project="alpha", description="not claimed"))

    with pytest.raises(ClaimConflict):
        tasks.start(claimed.task_id, "m2")
    with pytest.raises(InvalidTransition):
        tasks.start(queued.task_id, "m1")


def test_report_result_is_idempotent(db_path, clock) -> None:
    notifier = _RecordingNotifier()
    tasks = TaskRepository(db_path, clock=clock, notifier=notifier)
    tasks.init_schema()
    registry = MachineRegistry(db_path, clock=clock)
    try:
        claimed = _claimed_task(tasks, registry)
        tasks.start(claimed.task_id, "m1")

        first = tasks.report_result(
            claimed.task_id,
            ResultOutcome.COMPLETED,
            TaskResultPayload(
                summary="Fixed",
                changed_artifacts=["src/login.py", "tests/test_login.py"],
                external_ref_url="https://example.com/pr/7",
                cost_units=1.25,
            ),
        )
        clock.advance(5)
        second = tasks.report_result(
            claimed.task_id,
            ResultOutcome.FAILED,
            TaskResultPayload(error_message="late duplicate"),
        )

        assert first.first_report is True
        assert second.first_report is False
        assert second.task.status == TaskStatus.COMPLETED
        assert second.task.result.summary == "Fixed"
        assert second.task.result.changed_artifacts == ["src/login.py", "tests/test_login.py"]
        assert second.task.ended_at == first.task.ended_at
        assert [task.task_id for task in notifier.finished] == [claimed.task_id]
        assert registry.get("m1").active_tasks == 0

        event_types = [
            event.event_type for event in tasks.get_task_details(claimed.task_id).events
        ]
        assert event_types == ["created", "claimed", "started", "completed"]
    finally:
        registry.close()
        tasks.close()


def test_report_result_requires_claimed_or_running(tasks: TaskRepository) -> None:
    queued = tasks.create(TaskCreate(project="alpha", description="never claimed"))

    with pytest.raises(InvalidTransition):
        tasks.report_result(queued.task_id, ResultOutcome.COMPLETED, TaskResultPayload())


def test_report_result_on_cancelled_task_returns_stored_state(
    tasks: TaskRepository,
    registry: MachineRegistry,
) -> None:
    claimed = _claimed_task(tasks, registry)
    tasks.cancel(claimed.task_id)

    report = tasks.report_result(
        claimed.task_id,
        ResultOutcome.COMPLETED,
        TaskResultPayload(summary="too late"),
    )

    assert report.first_report is False
    assert report.task.status == TaskStatus.CANCELLED
    assert report.task.result.summary is None


def test_notifier_failure_does_not_break_reporting(db_path, clock) -> None:
    class _BrokenNotifier:
        def task_finished(self, task: TaskView) -> None:
            raise RuntimeError("chat down")

    tasks = TaskRepository(db_path, clock=clock, notifier=_BrokenNotifier())
    tasks.init_schema()
    registry = MachineRegistry(db_path, clock=clock)
    try:
        claimed = _claimed_task(tasks, registry)
        report = tasks.report_result(
            claimed.task_id,
            ResultOutcome.FAILED,
            TaskResultPayload(error_message="boom"),
        )
        assert report.task.status == TaskStatus.FAILED
        assert report.task.notified_at is not None
        assert tasks.notify_pending() == 0
    finally:
        registry.close()
        tasks.close()
