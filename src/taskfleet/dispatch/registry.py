"""Machine registry: registration, heartbeats and capacity slots."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from sqlalchemy import case, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskfleet.dispatch.models import MachineRegistration, MachineStatus, MachineView, TaskStatus
from taskfleet.errors import MachineNotRegistered
from taskfleet.storage.common import (
    Clock,
    SqlRepository,
    dump_json,
    load_json_list,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskfleet.storage.sqlmodel_models import Machine, Task

logger = logging.getLogger(__name__)


class MachineRegistry(SqlRepository):
    """Durable view of execution machines, their affinity and load."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        busy_timeout_ms: int = 5_000,
        stale_after_seconds: float = 120,
    ) -> None:
        super().__init__(db_path, clock=clock, busy_timeout_ms=busy_timeout_ms)
        self.stale_after_seconds = stale_after_seconds

    def register(self, registration: MachineRegistration) -> MachineView:
        """Create or refresh a machine; repeated registration is idempotent."""

        machine_id = registration.machine_id.strip()
        if not machine_id:
            raise ValueError("machine_id must not be empty.")
        if registration.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        projects = normalize_projects(registration.projects)

        while True:
            now = self._now()
            with Session(self.engine) as session:
                row = session.get(Machine, machine_id)
                created = row is None
                if row is None:
                    row = Machine(
                        machine_id=machine_id,
                        active_tasks=0,
                        reported_active_tasks=0,
                        registered_at=now,
                        last_heartbeat=now,
                        updated_at=now,
                    )
                row.display_name = registration.display_name
                row.os = registration.os
                row.projects_json = dump_json(projects)
                row.max_concurrent = registration.max_concurrent
                row.last_heartbeat = now
                row.last_heartbeat_sent_at = None
                row.status = MachineStatus.ONLINE.value
                row.updated_at = now
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                session.refresh(row)
                view = to_machine_view(row)

            logger.info(
                "%s machine %s (projects=%s, max_concurrent=%d)",
                "Registered" if created else "Re-registered",
                machine_id,
                ",".join(projects) or "*",
                registration.max_concurrent,
            )
            return view

    def heartbeat(
        self,
        machine_id: str,
        active_count: int,
        sent_at: datetime | None = None,
    ) -> MachineView | None:
        """Refresh liveness and load; returns None for unknown machines.

        Heartbeats carry the machine's own timestamp. A heartbeat older than the
        last one accepted is dropped so a delayed packet cannot roll load back.
        Liveness is tracked by receive time on the server clock. The capacity
        counter becomes the reported count plus tasks reserved for the machine
        that it has not claimed yet, capped at the machine's maximum.
        """

        now = self._now()
        sent = to_db_datetime(sent_at) if sent_at is not None else now
        active_count = max(0, active_count)
        reserved = (
            select(func.count())
            .select_from(Task)
            .where(
                col(Task.assigned_machine) == machine_id,
                col(Task.status) == TaskStatus.ASSIGNED.value,
            )
            .scalar_subquery()
        )
        new_active = func.min(active_count + reserved, col(Machine.max_concurrent))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Machine)
                .where(
                    col(Machine.machine_id) == machine_id,
                    or_(
                        col(Machine.last_heartbeat_sent_at).is_(None),
                        col(Machine.last_heartbeat_sent_at) <= sent,
                    ),
                )
                .values(
                    last_heartbeat=now,
                    last_heartbeat_sent_at=sent,
                    reported_active_tasks=active_count,
                    active_tasks=new_active,
                    status=case(
                        (new_active >= col(Machine.max_concurrent), MachineStatus.BUSY.value),
                        else_=MachineStatus.ONLINE.value,
                    ),
                    updated_at=now,
                )
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                row = session.get(Machine, machine_id)
                if row is None:
                    logger.warning("Heartbeat from unregistered machine %s ignored", machine_id)
                    return None
                logger.debug(
                    "Out-of-order heartbeat from %s ignored (sent_at=%s, last=%s)",
                    machine_id,
                    sent,
                    row.last_heartbeat_sent_at,
                )
                return to_machine_view(row)
            session.commit()
            row = session.exec(select(Machine).where(Machine.machine_id == machine_id)).one()
            if active_count > row.max_concurrent:
                logger.warning(
                    "Machine %s reports %d active tasks over its limit of %d, load clamped",
                    machine_id,
                    active_count,
                    row.max_concurrent,
                )
            return to_machine_view(row)

    def get(self, machine_id: str) -> MachineView:
        with Session(self.engine) as session:
            row = session.get(Machine, machine_id)
            if row is None:
                raise MachineNotRegistered(machine_id)
            return to_machine_view(row)

    def list_machines(self) -> list[MachineView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Machine).order_by(
                    col(Machine.registered_at).asc(),
                    col(Machine.machine_id).asc(),
                ),
            ).all()
        return [to_machine_view(row) for row in rows]

    def available_machines(self, now: datetime | None = None) -> list[MachineView]:
        """Machines that are live and have at least one free slot."""

        current = to_utc_aware_datetime(now or self.clock())
        return [
            machine
            for machine in self.list_machines()
            if machine.effective_status(now=current, stale_after_seconds=self.stale_after_seconds)
            == MachineStatus.ONLINE
        ]

    def record_status(self, machine_id: str, status: MachineStatus) -> bool:
        """Write the cached status column; returns True when it changed."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Machine)
                .where(
                    col(Machine.machine_id) == machine_id,
                    col(Machine.status) != status.value,
                )
                .values(status=status.value, updated_at=now),
            )
            session.commit()
            return result.rowcount == 1


def require_machine(session: Session, machine_id: str) -> Machine:
    row = session.get(Machine, machine_id)
    if row is None:
        raise MachineNotRegistered(machine_id)
    return row


def take_machine_slot(session: Session, *, machine_id: str, now: datetime) -> bool:
    """Increment the capacity counter unless the machine is full."""

    result = session.exec(
        sa_update(Machine)
        .where(
            col(Machine.machine_id) == machine_id,
            col(Machine.active_tasks) < col(Machine.max_concurrent),
        )
        .values(active_tasks=col(Machine.active_tasks) + 1, updated_at=now),
    )
    return result.rowcount == 1


def release_machine_slot(session: Session, *, machine_id: str, now: datetime) -> None:
    session.exec(
        sa_update(Machine)
        .where(
            col(Machine.machine_id) == machine_id,
            col(Machine.active_tasks) > 0,
        )
        .values(active_tasks=col(Machine.active_tasks) - 1, updated_at=now),
    )


def normalize_projects(values: list[str] | tuple[str, ...]) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped


def to_machine_view(row: Machine) -> MachineView:
    return MachineView(
        machine_id=row.machine_id,
        display_name=row.display_name,
        os=row.os,
        projects=load_json_list(row.projects_json),
        max_concurrent=row.max_concurrent,
        active_tasks=row.active_tasks,
        reported_active_tasks=row.reported_active_tasks,
        stored_status=MachineStatus(row.status),
        last_heartbeat=to_utc_aware_datetime(row.last_heartbeat),
        registered_at=to_utc_aware_datetime(row.registered_at),
    )
