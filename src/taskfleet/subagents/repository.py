"""Persistent subagent runs with per-profile concurrency slots."""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from taskfleet.errors import (
    ProfileNotFound,
    RunNotFound,
    SubagentConcurrencyExceeded,
)
from taskfleet.storage.common import (
    Clock,
    SqlRepository,
    dump_json,
    load_json_dict,
    optional_utc,
    to_utc_aware_datetime,
    utc_now,
)
from taskfleet.storage.sqlmodel_models import AgentProfile, SubagentMessage, SubagentRun
from taskfleet.subagents.models import (
    ACTIVE_RUN_STATUSES,
    AgentProfileUpsert,
    AgentProfileView,
    CleanupPolicy,
    ExecutionMode,
    SpawnRequest,
    SubagentMessageView,
    SubagentRunView,
    SubagentStatus,
)

logger = logging.getLogger(__name__)

_ACTIVE_VALUES = [status.value for status in ACTIVE_RUN_STATUSES]
_TERMINAL_VALUES = [status.value for status in SubagentStatus if status.is_terminal]
_MESSAGE_PREVIEW_CHARS = 2_000


class SubagentRepository(SqlRepository):
    """Run and profile persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Clock = utc_now,
        busy_timeout_ms: int = 5_000,
        default_timeout_seconds: int = 300,
        purge_grace_seconds: int = 86_400,
    ) -> None:
        super().__init__(db_path, clock=clock, busy_timeout_ms=busy_timeout_ms)
        self.default_timeout_seconds = default_timeout_seconds
        self.purge_grace_seconds = purge_grace_seconds

    def upsert_profile(self, payload: AgentProfileUpsert) -> AgentProfileView:
        """Create or update a profile; counters are preserved."""

        if not payload.profile_id.strip():
            raise ValueError("profile_id must not be empty.")
        if payload.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1.")
        now = self._now()
        with Session(self.engine) as session:
            row = session.get(AgentProfile, payload.profile_id)
            if row is None:
                row = AgentProfile(
                    profile_id=payload.profile_id,
                    display_name=payload.display_name,
                    model=payload.model,
                    created_at=now,
                    updated_at=now,
                )
            row.display_name = payload.display_name
            row.model = payload.model
            row.system_prompt = payload.system_prompt
            row.max_concurrent = payload.max_concurrent
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_profile_view(row)

    def get_profile(self, profile_id: str) -> AgentProfileView:
        with Session(self.engine) as session:
            row = session.get(AgentProfile, profile_id)
            if row is None:
                raise ProfileNotFound(profile_id)
            return _to_profile_view(row)

    def list_profiles(self) -> list[AgentProfileView]:
        with Session(self.engine) as session:
            rows = session.exec(select(AgentProfile).order_by(col(AgentProfile.profile_id))).all()
        return [_to_profile_view(row) for row in rows]

    def spawn(self, request: SpawnRequest) -> SubagentRunView:
        """Create a pending run if the profile has a free concurrency slot."""

        task = request.task.strip()
        if not task:
            raise ValueError("Subagent task must not be empty.")
        timeout_seconds = request.timeout_seconds or self.default_timeout_seconds
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0.")

        now = self._now()
        run_id = str(uuid4())
        with Session(self.engine) as session:
            profile = session.get(AgentProfile, request.profile_id)
            if profile is None:
                raise ProfileNotFound(request.profile_id)
            if (
                request.parent_run_id is not None
                and session.get(SubagentRun, request.parent_run_id) is None
            ):
                raise RunNotFound(request.parent_run_id)

            result = session.exec(
                sa_update(AgentProfile)
                .where(
                    col(AgentProfile.profile_id) == request.profile_id,
                    col(AgentProfile.active_runs) < col(AgentProfile.max_concurrent),
                )
                .values(active_runs=col(AgentProfile.active_runs) + 1, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.warning(
                    "Profile %s at max concurrency (%d), spawn rejected",
                    request.profile_id,
                    profile.max_concurrent,
                )
                raise SubagentConcurrencyExceeded(request.profile_id, profile.max_concurrent)

            row = SubagentRun(
                run_id=run_id,
                parent_run_id=request.parent_run_id,
                profile_id=request.profile_id,
                task=task,
                model=request.model,
                execution_mode=ExecutionMode(request.execution_mode).value,
                timeout_seconds=timeout_seconds,
                cleanup_policy=CleanupPolicy(request.cleanup_policy).value,
                status=SubagentStatus.PENDING.value,
                metadata_json=dump_json(request.metadata) if request.metadata else None,
                created_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            view = _to_run_view(row)

        logger.info(
            "Spawned %s run %s (%s)",
            request.profile_id,
            run_id,
            view.execution_mode.value,
        )
        return view

    def mark_running(self, run_id: str, *, queue_task_id: str | None = None) -> bool:
        """Move a pending run to running."""

        now = self._now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(SubagentRun)
                .where(
                    col(SubagentRun.run_id) == run_id,
                    col(SubagentRun.status) == SubagentStatus.PENDING.value,
                )
                .values(
                    status=SubagentStatus.RUNNING.value,
                    started_at=now,
                    queue_task_id=queue_task_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_run(self, run_id: str, result: str) -> bool:
        """Record success; ignored when the run already ended."""

        return self._finish(run_id, status=SubagentStatus.COMPLETED, result=result, error=None)

    def fail_run(self, run_id: str, error: str) -> bool:
        return self._finish(run_id, status=SubagentStatus.ERROR, result=None, error=error)

    def cancel_run(self, run_id: str, *, cascade: bool = False) -> list[SubagentRunView]:
        """Cancel a run and optionally every non-terminal descendant.

        Returns the runs that were actually cancelled.
        """

        target = self.get_run(run_id)
        candidates = [target]
        if cascade:
            candidates.extend(self.descendants(run_id))
        cancelled: list[SubagentRunView] = []
        for run in candidates:
            if run.status.is_terminal:
                continue
            if self._finish(
                run.run_id,
                status=SubagentStatus.CANCELLED,
                result=None,
                error="cancelled",
            ):
                cancelled.append(self.get_run(run.run_id))
        return cancelled

    def sweep_timeouts(self) -> list[SubagentRunView]:
        """Time out active runs whose elapsed time exceeds their timeout."""

        now = self._now()
        with Session(self.engine) as session:
            rows = session.exec(
                select(SubagentRun).where(col(SubagentRun.status).in_(_ACTIVE_VALUES)),
            ).all()
            expired = [
                row.run_id
                for row in rows
                if now - (row.started_at or row.created_at)
                > timedelta(seconds=row.timeout_seconds)
            ]

        timed_out: list[SubagentRunView] = []
        for run_id in expired:
            if self._finish(
                run_id,
                status=SubagentStatus.TIMEOUT,
                result=None,
                error="Timed out",
            ):
                timed_out.append(self.get_run(run_id))
        if timed_out:
            logger.warning("Timed out %d subagent run(s)", len(timed_out))
        return timed_out

    def purge_expired(self) -> int:
        """Delete finished purge-policy runs after the grace period."""

        cutoff = self._now() - timedelta(seconds=self.purge_grace_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(SubagentRun).where(
                    col(SubagentRun.cleanup_policy) == CleanupPolicy.PURGE.value,
                    col(SubagentRun.status).in_(_TERMINAL_VALUES),
                    col(SubagentRun.ended_at) < cutoff,
                ),
            )
            session.commit()
            purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired subagent run(s)", purged)
        return purged

    def get_run(self, run_id: str) -> SubagentRunView:
        with Session(self.engine) as session:
            row = session.get(SubagentRun, run_id)
            if row is None:
                raise RunNotFound(run_id)
            return _to_run_view(row)

    def list_runs(
        self,
        *,
        status: SubagentStatus | None = None,
        profile_id: str | None = None,
        execution_mode: ExecutionMode | None = None,
        limit: int = 20,
        oldest_first: bool = False,
    ) -> list[SubagentRunView]:
        created = col(SubagentRun.created_at)
        order = created.asc() if oldest_first else created.desc()
        with Session(self.engine) as session:
            statement = select(SubagentRun).order_by(order).limit(limit)
            if status is not None:
                statement = statement.where(SubagentRun.status == status.value)
            if profile_id is not None:
                statement = statement.where(SubagentRun.profile_id == profile_id)
            if execution_mode is not None:
                statement = statement.where(SubagentRun.execution_mode == execution_mode.value)
            rows = session.exec(statement).all()
        return [_to_run_view(row) for row in rows]

    def descendants(self, run_id: str) -> list[SubagentRunView]:
        """All runs below the given one, breadth first."""

        self.get_run(run_id)
        found: list[SubagentRunView] = []
        seen = {run_id}
        frontier = [run_id]
        with Session(self.engine) as session:
            while frontier:
                rows = session.exec(
                    select(SubagentRun)
                    .where(col(SubagentRun.parent_run_id).in_(frontier))
                    .order_by(col(SubagentRun.created_at).asc()),
                ).all()
                frontier = []
                for row in rows:
                    if row.run_id in seen:
                        continue
                    seen.add(row.run_id)
                    found.append(_to_run_view(row))
                    frontier.append(row.run_id)
        return found

    def messages_for(
        self,
        run_id: str,
        *,
        unread_only: bool = False,
        mark_read: bool = False,
    ) -> list[SubagentMessageView]:
        now = self._now()
        with Session(self.engine) as session:
            statement = (
                select(SubagentMessage)
                .where(SubagentMessage.to_run_id == run_id)
                .order_by(col(SubagentMessage.message_id).asc())
            )
            if unread_only:
                statement = statement.where(col(SubagentMessage.read_at).is_(None))
            rows = session.exec(statement).all()
            views = [_to_message_view(row) for row in rows]
            if mark_read and views:
                session.exec(
                    sa_update(SubagentMessage)
                    .where(
                        col(SubagentMessage.message_id).in_([view.message_id for view in views]),
                        col(SubagentMessage.read_at).is_(None),
                    )
                    .values(read_at=now),
                )
                session.commit()
        return views

    def _finish(
        self,
        run_id: str,
        *,
        status: SubagentStatus,
        result: str | None,
        error: str | None,
    ) -> bool:
        now = self._now()
        with Session(self.engine) as session:
            row = session.get(SubagentRun, run_id)
            if row is None:
                raise RunNotFound(run_id)
            previous = SubagentStatus(row.status)
            if previous.is_terminal:
                logger.debug(
                    "Run %s already %s, %s ignored",
                    run_id,
                    previous.value,
                    status.value,
                )
                return False

            updated = session.exec(
                sa_update(SubagentRun)
                .where(
                    col(SubagentRun.run_id) == run_id,
                    col(SubagentRun.status) == previous.value,
                )
                .values(status=status.value, result=result, error=error, ended_at=now),
            )
            if updated.rowcount != 1:
                session.rollback()
                return False

            counters: dict[str, object] = {
                "active_runs": col(AgentProfile.active_runs) - 1,
                "updated_at": now,
            }
            if status == SubagentStatus.COMPLETED:
                counters["total_completed"] = col(AgentProfile.total_completed) + 1
            elif status in {SubagentStatus.ERROR, SubagentStatus.TIMEOUT}:
                counters["total_failed"] = col(AgentProfile.total_failed) + 1
            session.exec(
                sa_update(AgentProfile)
                .where(
                    col(AgentProfile.profile_id) == row.profile_id,
                    col(AgentProfile.active_runs) > 0,
                )
                .values(**counters),
            )

            if row.parent_run_id is not None:
                session.add(
                    SubagentMessage(
                        from_run_id=run_id,
                        to_run_id=row.parent_run_id,
                        content=_completion_message(
                            profile_id=row.profile_id,
                            run_id=run_id,
                            status=status,
                            text=result if result is not None else error,
                        ),
                        created_at=now,
                    ),
                )
            session.commit()

        logger.info("Run %s %s -> %s", run_id, previous.value, status.value)
        return True


def _completion_message(
    *,
    profile_id: str,
    run_id: str,
    status: SubagentStatus,
    text: str | None,
) -> str:
    body = (text or "").strip()
    if len(body) > _MESSAGE_PREVIEW_CHARS:
        body = body[:_MESSAGE_PREVIEW_CHARS] + "..."
    header = f"[{profile_id}] run {run_id[:8]} {status.value}"
    return f"{header}\n{body}" if body else header


def _to_profile_view(row: AgentProfile) -> AgentProfileView:
    return AgentProfileView(
        profile_id=row.profile_id,
        display_name=row.display_name,
        model=row.model,
        system_prompt=row.system_prompt,
        max_concurrent=row.max_concurrent,
        active_runs=row.active_runs,
        total_completed=row.total_completed,
        total_failed=row.total_failed,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_run_view(row: SubagentRun) -> SubagentRunView:
    return SubagentRunView(
        run_id=row.run_id,
        parent_run_id=row.parent_run_id,
        profile_id=row.profile_id,
        task=row.task,
        model=row.model,
        execution_mode=ExecutionMode(row.execution_mode),
        timeout_seconds=row.timeout_seconds,
        cleanup_policy=CleanupPolicy(row.cleanup_policy),
        status=SubagentStatus(row.status),
        result=row.result,
        error=row.error,
        queue_task_id=row.queue_task_id,
        metadata=load_json_dict(row.metadata_json),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        ended_at=optional_utc(row.ended_at),
    )


def _to_message_view(row: SubagentMessage) -> SubagentMessageView:
    return SubagentMessageView(
        message_id=row.message_id or 0,
        from_run_id=row.from_run_id,
        to_run_id=row.to_run_id,
        content=row.content,
        created_at=to_utc_aware_datetime(row.created_at),
        read_at=optional_utc(row.read_at),
    )
