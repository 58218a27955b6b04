"""Persistent task queue: state machine, claim protocol and audit trail."""

from __future__ import annotations

import logging
import math
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskfleet.dispatch.alerts import CompletionNotifier, LoggingCompletionNotifier
from taskfleet.dispatch.models import (
    ACTIVE_TASK_STATUSES,
    CLAIMABLE_TASK_STATUSES,
    ResultOutcome,
    ResultReport,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskResultPayload,
    TaskStatus,
    TaskView,
)
from taskfleet.dispatch.registry import release_machine_slot, require_machine, take_machine_slot
from taskfleet.errors import (
    BudgetExceeded,
    ClaimConflict,
    DuplicateResultReport,
    InvalidTransition,
    TaskNotFound,
)
from taskfleet.storage.common import (
    Clock,
    SqlRepository,
    dump_json,
    load_json_dict,
    load_json_list,
    optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from taskfleet.storage.sqlmodel_models import Task, TaskEvent

logger = logging.getLogger(__name__)

_CLAIMABLE_VALUES = [status.value for status in CLAIMABLE_TASK_STATUSES]


class TaskRepository(SqlRepository):
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        busy_timeout_ms: int = 5_000,
        max_budget: float = 10.0,
        notifier: CompletionNotifier | None = None,
    ) -> None:
        super().__init__(db_path, clock=clock, busy_timeout_ms=busy_timeout_ms)
        self.max_budget = max_budget
        self.notifier: CompletionNotifier = notifier or LoggingCompletionNotifier()

    def create(self, payload: TaskCreate) -> TaskView:
        """Validate and enqueue a task."""

        project = payload.project.strip()
        description = payload.description.strip()
        if not project:
            raise ValueError("Task project must not be empty.")
        if not description:
            raise ValueError("Task description must not be empty.")
        budget = float(payload.budget)
        if not math.isfinite(budget) or budget > self.max_budget:
            raise BudgetExceeded(budget, self.max_budget)
        if budget < 0:
            raise ValueError(f"Task budget must be >= 0, got {budget}.")

        now = self._now()
        task_id = str(uuid4())
        with Session(self.engine) as session:
            row = Task(
                task_id=task_id,
                project=project,
                description=description,
                priority=payload.priority,
                budget=budget,
                status=TaskStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.QUEUED,
                details={"project": project, "priority": payload.priority, "budget": budget},
            )
            session.commit()
            session.refresh(row)
            view = _to_task_view(row)
        logger.info("Task %s queued (project=%s, priority=%d)", task_id, project, payload.priority)
        return view

    def get(self, task_id: str) -> TaskView:
        with Session(self.engine) as session:
            return _to_task_view(self._get_row(session=session, task_id=task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        project: str | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status and project."""

        with Session(self.engine) as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if project is not None:
                statement = statement.where(Task.project == project)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, task_id: str) -> TaskDetails:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = self._get_row(session=session, task_id=task_id)
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            view = _to_task_view(task)

        events = [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                event_type=row.event_type,
                status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
                status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
                created_at=to_utc_aware_datetime(row.created_at),
                details=load_json_dict(row.details_json),
            )
            for row in event_rows
        ]
        return TaskDetails(task=view, events=events)

    def cancel(self, task_id: str) -> TaskView:
        """Cancel a non-terminal task; terminal tasks are returned unchanged."""

        while True:
            now = self._now()
            with Session(self.engine) as session:
                row = self._get_row(session=session, task_id=task_id)
                previous = TaskStatus(row.status)
                if previous.is_terminal:
                    return _to_task_view(row)
                machine_id = row.assigned_machine

                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == previous.value,
                    )
                    .values(
                        status=TaskStatus.CANCELLED.value,
                        assigned_machine=None,
                        ended_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                if machine_id is not None and previous in ACTIVE_TASK_STATUSES:
                    release_machine_slot(session, machine_id=machine_id, now=now)
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="cancelled",
                    status_from=previous,
                    status_to=TaskStatus.CANCELLED,
                    details={"machine_id": machine_id} if machine_id else {},
                )
                session.commit()
            logger.info("Task %s cancelled from %s", task_id, previous.value)
            return self._notify_once(task_id)

    def start(self, task_id: str, machine_id: str) -> TaskView:
        """Record that the claiming machine began execution."""

        while True:
            now = self._now()
            with Session(self.engine) as session:
                row = self._get_row(session=session, task_id=task_id)
                current = TaskStatus(row.status)
                if current == TaskStatus.RUNNING and row.assigned_machine == machine_id:
                    return _to_task_view(row)
                if current != TaskStatus.CLAIMED:
                    raise InvalidTransition(task_id, current.value, TaskStatus.RUNNING.value)
                if row.assigned_machine != machine_id:
                    raise ClaimConflict(
                        task_id,
                        status=current.value,
                        assigned_machine=row.assigned_machine,
                        reason="is held by another machine",
                    )
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.CLAIMED.value,
                        col(Task.assigned_machine) == machine_id,
                    )
                    .values(status=TaskStatus.RUNNING.value, started_at=now, updated_at=now),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="started",
                    status_from=TaskStatus.CLAIMED,
                    status_to=TaskStatus.RUNNING,
                    details={"machine_id": machine_id},
                )
                session.commit()
                return _to_task_view(self._get_row(session=session, task_id=task_id))

    def report_result(
        self,
        task_id: str,
        outcome: ResultOutcome | str,
        payload: TaskResultPayload,
    ) -> ResultReport:
        """Record a terminal result; repeated reports return the stored one."""

        outcome = ResultOutcome(outcome)
        target = TaskStatus(outcome.value)
        while True:
            now = self._now()
            with Session(self.engine) as session:
                row = self._get_row(session=session, task_id=task_id)
                previous = TaskStatus(row.status)
                if previous.is_terminal:
                    logger.debug("%s", DuplicateResultReport(task_id, previous.value))
                    return ResultReport(task=_to_task_view(row), first_report=False)
                if previous not in {TaskStatus.CLAIMED, TaskStatus.RUNNING}:
                    raise InvalidTransition(task_id, previous.value, target.value)
                machine_id = row.assigned_machine

                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == previous.value,
                    )
                    .values(
                        status=target.value,
                        result_summary=payload.summary,
                        changed_artifacts_json=dump_json(list(payload.changed_artifacts)),
                        external_ref_url=payload.external_ref_url,
                        cost_units=payload.cost_units,
                        error_message=payload.error_message,
                        ended_at=now,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                if machine_id is not None:
                    release_machine_slot(session, machine_id=machine_id, now=now)
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type=target.value,
                    status_from=previous,
                    status_to=target,
                    details={
                        "machine_id": machine_id,
                        "cost_units": payload.cost_units,
                        "changed_artifacts": len(payload.changed_artifacts),
                    },
                )
                session.commit()

            logger.info("Task %s reported %s by %s", task_id, target.value, machine_id)
            view = self._notify_once(task_id)
            return ResultReport(task=view, first_report=True)

    def claim_next(self, machine_id: str) -> TaskView | None:
        """Atomically claim the best task available to the machine.

        Candidates are queued tasks plus tasks already reserved for this machine,
        best priority first. Losing a race on one candidate moves on to the next
        instead of waiting on it.
        """

        while True:
            now = self._now()
            with Session(self.engine) as session:
                machine = require_machine(session, machine_id)
                statement = (
                    select(Task)
                    .where(
                        col(Task.status).in_(_CLAIMABLE_VALUES),
                        or_(
                            col(Task.assigned_machine).is_(None),
                            col(Task.assigned_machine) == machine_id,
                        ),
                    )
                    .order_by(
                        col(Task.priority).desc(),
                        col(Task.created_at).asc(),
                        col(Task.task_id).asc(),
                    )
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if machine.active_tasks >= machine.max_concurrent:
                    statement = statement.where(
                        col(Task.status) == TaskStatus.ASSIGNED.value,
                        col(Task.assigned_machine) == machine_id,
                    )
                candidate = session.exec(statement).one_or_none()
                if candidate is None:
                    return None

                if not self._try_claim(
                    session=session,
                    candidate=candidate,
                    machine_id=machine_id,
                    now=now,
                ):
                    session.rollback()
                    continue
                session.commit()
                view = _to_task_view(self._get_row(session=session, task_id=candidate.task_id))
            logger.info("Task %s claimed by %s", view.task_id, machine_id)
            return view

    def claim_task(self, task_id: str, machine_id: str) -> TaskView:
        """Claim one specific task or raise ClaimConflict."""

        now = self._now()
        with Session(self.engine) as session:
            machine = require_machine(session, machine_id)
            row = self._get_row(session=session, task_id=task_id)
            status = TaskStatus(row.status)
            if status not in CLAIMABLE_TASK_STATUSES or row.assigned_machine not in {
                None,
                machine_id,
            }:
                raise ClaimConflict(
                    task_id,
                    status=status.value,
                    assigned_machine=row.assigned_machine,
                )
            reserved = status == TaskStatus.ASSIGNED and row.assigned_machine == machine_id
            if not reserved and machine.active_tasks >= machine.max_concurrent:
                raise ClaimConflict(
                    task_id,
                    status=status.value,
                    assigned_machine=row.assigned_machine,
                    reason=f"cannot be claimed, {machine_id} is at capacity",
                )
            if not self._try_claim(session=session, candidate=row, machine_id=machine_id, now=now):
                session.rollback()
                current = self._get_row(session=session, task_id=task_id)
                raise ClaimConflict(
                    task_id,
                    status=current.status,
                    assigned_machine=current.assigned_machine,
                    reason="was claimed concurrently",
                )
            session.commit()
            view = _to_task_view(self._get_row(session=session, task_id=task_id))
        logger.info("Task %s claimed by %s", task_id, machine_id)
        return view

    def list_unassigned(self, *, limit: int) -> list[TaskView]:
        """Queued tasks in dispatch order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.QUEUED.value,
                    col(Task.assigned_machine).is_(None),
                )
                .order_by(
                    col(Task.priority).desc(),
                    col(Task.created_at).asc(),
                    col(Task.task_id).asc(),
                )
                .limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def list_in_flight(self) -> list[TaskView]:
        """Tasks held by a machine: reserved, claimed or running."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Task)
                .where(col(Task.status).in_([status.value for status in ACTIVE_TASK_STATUSES]))
                .order_by(col(Task.updated_at).asc(), col(Task.task_id).asc()),
            ).all()
        return [_to_task_view(row) for row in rows]

    def assign(self, task_id: str, machine_id: str) -> bool:
        """Reserve a queued task for a machine, taking one of its slots."""

        now = self._now()
        with Session(self.engine) as session:
            if not take_machine_slot(session, machine_id=machine_id, now=now):
                session.rollback()
                return False
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.QUEUED.value,
                    col(Task.assigned_machine).is_(None),
                )
                .values(
                    status=TaskStatus.ASSIGNED.value,
                    assigned_machine=machine_id,
                    assigned_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="assigned",
                status_from=TaskStatus.QUEUED,
                status_to=TaskStatus.ASSIGNED,
                details={"machine_id": machine_id},
            )
            session.commit()
            return True

    def requeue_assigned(self, machine_id: str, *, reason: str) -> list[str]:
        """Return unclaimed reservations of a machine to the queue."""

        now = self._now()
        requeued: list[str] = []
        with Session(self.engine) as session:
            task_ids = session.exec(
                select(Task.task_id).where(
                    Task.status == TaskStatus.ASSIGNED.value,
                    Task.assigned_machine == machine_id,
                ),
            ).all()
            for task_id in task_ids:
                if self._release_reservation(
                    session=session,
                    task_id=task_id,
                    machine_id=machine_id,
                    reason=reason,
                    now=now,
                ):
                    requeued.append(task_id)
            session.commit()
        for task_id in requeued:
            logger.warning("Task %s requeued from %s: %s", task_id, machine_id, reason)
        return requeued

    def requeue_reservation(self, task_id: str, machine_id: str, *, reason: str) -> bool:
        """Return one unclaimed reservation to the queue; False if it was claimed meanwhile."""

        now = self._now()
        with Session(self.engine) as session:
            released = self._release_reservation(
                session=session,
                task_id=task_id,
                machine_id=machine_id,
                reason=reason,
                now=now,
            )
            session.commit()
        if released:
            logger.warning("Task %s requeued from %s: %s", task_id, machine_id, reason)
        return released

    def _release_reservation(
        self,
        *,
        session: Session,
        task_id: str,
        machine_id: str,
        reason: str,
        now: datetime,
    ) -> bool:
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == TaskStatus.ASSIGNED.value,
                col(Task.assigned_machine) == machine_id,
            )
            .values(
                status=TaskStatus.QUEUED.value,
                assigned_machine=None,
                assigned_at=None,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return False
        release_machine_slot(session, machine_id=machine_id, now=now)
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="requeued",
            status_from=TaskStatus.ASSIGNED,
            status_to=TaskStatus.QUEUED,
            details={"machine_id": machine_id, "reason": reason},
        )
        return True

    def fail_abandoned(self, task_id: str, *, reason: str) -> TaskView | None:
        """Fail a claimed/running task whose machine disappeared."""

        now = self._now()
        with Session(self.engine) as session:
            row = self._get_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in {TaskStatus.CLAIMED, TaskStatus.RUNNING}:
                return None
            machine_id = row.assigned_machine
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == previous.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error_message=reason,
                    ended_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            if machine_id is not None:
                release_machine_slot(session, machine_id=machine_id, now=now)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="abandoned",
                status_from=previous,
                status_to=TaskStatus.FAILED,
                details={"machine_id": machine_id, "reason": reason},
            )
            session.commit()
        logger.warning("Task %s failed: %s", task_id, reason)
        return self._notify_once(task_id)

    def notify_pending(self, *, limit: int = 100) -> int:
        """Deliver completion notifications that were not delivered yet."""

        with Session(self.engine) as session:
            task_ids = session.exec(
                select(Task.task_id)
                .where(
                    col(Task.status).in_([TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]),
                    col(Task.notified_at).is_(None),
                )
                .order_by(col(Task.ended_at).asc())
                .limit(limit),
            ).all()
        for task_id in task_ids:
            self._notify_once(task_id)
        return len(task_ids)

    def _notify_once(self, task_id: str) -> TaskView:
        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Task)
                .where(col(Task.task_id) == task_id, col(Task.notified_at).is_(None))
                .values(notified_at=now),
            )
            session.commit()
            first = result.rowcount == 1
            view = _to_task_view(self._get_row(session=session, task_id=task_id))
        if first:
            try:
                self.notifier.task_finished(view)
            except Exception:  # noqa: BLE001
                logger.exception("Completion notifier failed for task %s", task_id)
        return view

    def _try_claim(
        self,
        *,
        session: Session,
        candidate: Task,
        machine_id: str,
        now: datetime,
    ) -> bool:
        previous = TaskStatus(candidate.status)
        reserved = previous == TaskStatus.ASSIGNED and candidate.assigned_machine == machine_id
        if not reserved and not take_machine_slot(session, machine_id=machine_id, now=now):
            return False

        owner_clause = (
            col(Task.assigned_machine) == machine_id
            if reserved
            else col(Task.assigned_machine).is_(None)
        )
        result = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == candidate.task_id,
                col(Task.status) == previous.value,
                owner_clause,
            )
            .values(
                status=TaskStatus.CLAIMED.value,
                assigned_machine=machine_id,
                claimed_at=now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            task_id=candidate.task_id,
            event_type="claimed",
            status_from=previous,
            status_to=TaskStatus.CLAIMED,
            details={"machine_id": machine_id, "reserved": reserved},
        )
        return True

    def _get_row(self, *, session: Session, task_id: str) -> Task:
        row = session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()
        if row is None:
            raise TaskNotFound(task_id)
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=self._now(),
            ),
        )


def _to_task_view(row: Task) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        project=row.project,
        description=row.description,
        priority=row.priority,
        budget=row.budget,
        status=TaskStatus(row.status),
        assigned_machine=row.assigned_machine,
        result=TaskResultPayload(
            summary=row.result_summary,
            changed_artifacts=load_json_list(row.changed_artifacts_json),
            external_ref_url=row.external_ref_url,
            cost_units=row.cost_units,
            error_message=row.error_message,
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        assigned_at=optional_utc(row.assigned_at),
        claimed_at=optional_utc(row.claimed_at),
        started_at=optional_utc(row.started_at),
        ended_at=optional_utc(row.ended_at),
        notified_at=optional_utc(row.notified_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
