"""Periodic lifecycle worker for subagent runs."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from taskfleet.dispatch.models import TaskCreate, TaskStatus
from taskfleet.dispatch.repository import TaskRepository
from taskfleet.errors import TaskfleetError, TaskNotFound
from taskfleet.subagents.executor import RunExecutionRequest, RunExecutor
from taskfleet.subagents.models import (
    ExecutionMode,
    LifecycleReport,
    SubagentRunView,
    SubagentStatus,
)
from taskfleet.subagents.repository import SubagentRepository

logger = logging.getLogger(__name__)

_REMOTE_TITLE_CHARS = 100


class SubagentLifecycleWorker:
    """Starts pending runs, follows remote runs, times out and purges.

    Local runs execute on a bounded thread pool, so a pass only submits them
    and returns. Their outcome is counted by the first pass after they finish.
    Remote runs become tasks on the queue and stay `running` until that task
    reaches a terminal state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        runs: SubagentRepository,
        tasks: TaskRepository,
        executor: RunExecutor | None,
        remote_project: str = "subagents",
        batch_size: int = 5,
        max_parallel_runs: int = 4,
    ) -> None:
        if max_parallel_runs <= 0:
            raise ValueError("max_parallel_runs must be > 0")
        self.runs = runs
        self.tasks = tasks
        self.executor = executor
        self.remote_project = remote_project
        self.batch_size = batch_size
        self.max_parallel_runs = max_parallel_runs
        self._pool: ThreadPoolExecutor | None = None
        self._in_flight: dict[str, Future[bool]] = {}
        self._lock = threading.Lock()

    def run_once(self, *, wait_for_local: bool = False) -> LifecycleReport:
        """One lifecycle pass.

        With `wait_for_local` the pass also waits for the local runs it started,
        which one-shot CLI invocations rely on.
        """

        report = LifecycleReport()
        self._collect_finished(report)
        for run in self.runs.list_runs(
            status=SubagentStatus.PENDING,
            limit=self.batch_size,
            oldest_first=True,
        ):
            if run.execution_mode == ExecutionMode.REMOTE:
                if self._dispatch_remote(run):
                    report.dispatched_remote += 1
                continue
            if self.executor is None:
                self.runs.fail_run(run.run_id, "No local executor configured")
                report.failed += 1
                continue
            if self._free_workers() <= 0:
                continue
            if self._start_local(run, self.executor):
                report.executed += 1

        report.remote_finished = self._sync_remote_runs()

        timed_out = self.runs.sweep_timeouts()
        report.timed_out = len(timed_out)
        for run in timed_out:
            self._cancel_queue_task(run)

        report.purged = self.runs.purge_expired()
        if wait_for_local:
            self.wait_idle()
            self._collect_finished(report)
        with self._lock:
            report.in_flight = len(self._in_flight)
        return report

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted local run finished; False on timeout."""

        with self._lock:
            pending = list(self._in_flight.values())
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, *, wait_for_runs: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait_for_runs, cancel_futures=True)

    def cancel_run(self, run_id: str, *, cascade: bool = False) -> list[SubagentRunView]:
        """Cancel runs and the queue tasks backing remote ones."""

        cancelled = self.runs.cancel_run(run_id, cascade=cascade)
        for run in cancelled:
            self._cancel_queue_task(run)
        return cancelled

    def _free_workers(self) -> int:
        with self._lock:
            return self.max_parallel_runs - len(self._in_flight)

    def _start_local(self, run: SubagentRunView, executor: RunExecutor) -> bool:
        if not self.runs.mark_running(run.run_id):
            return False
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_parallel_runs,
                    thread_name_prefix="subagent-run",
                )
            self._in_flight[run.run_id] = self._pool.submit(self._execute_local, run, executor)
        return True

    def _collect_finished(self, report: LifecycleReport) -> None:
        with self._lock:
            done = {run_id: future for run_id, future in self._in_flight.items() if future.done()}
            for run_id in done:
                del self._in_flight[run_id]
        for run_id, future in done.items():
            try:
                succeeded = future.result()
            except Exception:  # noqa: BLE001
                logger.exception("Local run %s could not be recorded", run_id)
                succeeded = False
            if succeeded:
                report.completed += 1
            else:
                report.failed += 1

    def _execute_local(self, run: SubagentRunView, executor: RunExecutor) -> bool:
        profile = self.runs.get_profile(run.profile_id)
        logger.info("Executing local run %s (%s)", run.run_id[:8], run.profile_id)
        try:
            result = executor.execute(
                RunExecutionRequest(
                    run_id=run.run_id,
                    profile_id=run.profile_id,
                    task=run.task,
                    model=run.model or profile.model,
                    system_prompt=profile.system_prompt,
                    timeout_seconds=run.timeout_seconds,
                ),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Local run %s crashed", run.run_id)
            self.runs.fail_run(run.run_id, str(error) or type(error).__name__)
            return False

        if result.ok:
            return self.runs.complete_run(run.run_id, result.output.strip())
        self.runs.fail_run(run.run_id, result.error or f"exit code {result.exit_code}")
        return False

    def _dispatch_remote(self, run: SubagentRunView) -> bool:
        title = run.task[:_REMOTE_TITLE_CHARS]
        try:
            task = self.tasks.create(
                TaskCreate(
                    project=self.remote_project,
                    description=f"[{run.profile_id}] {title}\n\n{run.task}",
                ),
            )
        except (TaskfleetError, ValueError) as error:
            logger.warning("Remote dispatch of run %s failed: %s", run.run_id, error)
            self.runs.fail_run(run.run_id, f"Remote dispatch failed: {error}")
            return False
        if not self.runs.mark_running(run.run_id, queue_task_id=task.task_id):
            self.tasks.cancel(task.task_id)
            return False
        logger.info("Run %s dispatched as task %s", run.run_id[:8], task.task_id)
        return True

    def _sync_remote_runs(self) -> int:
        finished = 0
        for run in self.runs.list_runs(
            status=SubagentStatus.RUNNING,
            execution_mode=ExecutionMode.REMOTE,
            limit=500,
            oldest_first=True,
        ):
            if run.queue_task_id is None:
                continue
            try:
                task = self.tasks.get(run.queue_task_id)
            except TaskNotFound:
                self.runs.fail_run(run.run_id, f"Queue task {run.queue_task_id} disappeared")
                finished += 1
                continue
            if task.status == TaskStatus.COMPLETED:
                self.runs.complete_run(run.run_id, task.result.summary or "")
            elif task.status == TaskStatus.FAILED:
                self.runs.fail_run(run.run_id, task.result.error_message or "Remote task failed")
            elif task.status == TaskStatus.CANCELLED:
                self.runs.cancel_run(run.run_id)
            else:
                continue
            finished += 1
        return finished

    def _cancel_queue_task(self, run: SubagentRunView) -> None:
        if run.queue_task_id is None:
            return
        try:
            self.tasks.cancel(run.queue_task_id)
        except TaskNotFound:
            logger.warning("Queue task %s of run %s not found", run.queue_task_id, run.run_id)
