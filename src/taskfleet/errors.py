"""Exception taxonomy shared by the queue, relay and subagent components."""

from __future__ import annotations


class TaskfleetError(Exception):
    """Base class for domain errors."""


class TaskNotFound(TaskfleetError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class BudgetExceeded(TaskfleetError):
    """Task budget is above the configured ceiling."""

    def __init__(self, budget: float, max_budget: float) -> None:
        super().__init__(f"Budget {budget} exceeds maximum allowed {max_budget}")
        self.budget = budget
        self.max_budget = max_budget


class InvalidTransition(TaskfleetError):
    """Requested state change is not allowed from the current status."""

    def __init__(self, entity_id: str, current: str, target: str) -> None:
        super().__init__(f"Cannot move {entity_id} from {current} to {target}")
        self.entity_id = entity_id
        self.current = current
        self.target = target


class ClaimConflict(TaskfleetError):
    """The task was claimed by another machine or is no longer claimable."""

    def __init__(
        self,
        task_id: str,
        *,
        status: str,
        assigned_machine: str | None,
        reason: str = "not claimable",
    ) -> None:
        super().__init__(
            f"Task {task_id} {reason} (status={status}, machine={assigned_machine})",
        )
        self.task_id = task_id
        self.status = status
        self.assigned_machine = assigned_machine
        self.reason = reason


class MachineNotRegistered(TaskfleetError):
    def __init__(self, machine_id: str) -> None:
        super().__init__(f"Machine is not registered: {machine_id}")
        self.machine_id = machine_id


class MachineStale(TaskfleetError):
    """Machine heartbeat is older than the staleness threshold."""

    def __init__(self, machine_id: str, heartbeat_age_seconds: float) -> None:
        super().__init__(
            f"Machine {machine_id} missed heartbeats for {heartbeat_age_seconds:.0f}s",
        )
        self.machine_id = machine_id
        self.heartbeat_age_seconds = heartbeat_age_seconds


class NoMachineAvailable(TaskfleetError):
    """No online machine could take the task. Reported to operators, never raised."""

    def __init__(self, task_id: str, project: str, waiting_seconds: float) -> None:
        super().__init__(
            f"No machine available for task {task_id} (project={project}) "
            f"after {waiting_seconds:.0f}s",
        )
        self.task_id = task_id
        self.project = project
        self.waiting_seconds = waiting_seconds


class DuplicateResultReport(TaskfleetError):
    """A result arrived for a task that is already terminal."""

    def __init__(self, task_id: str, status: str) -> None:
        super().__init__(f"Task {task_id} already reported as {status}")
        self.task_id = task_id
        self.status = status


class StreamChannelUnavailable(TaskfleetError):
    """The chat surface could not open or write to a channel."""


class ProfileNotFound(TaskfleetError):
    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Agent profile not found: {profile_id}")
        self.profile_id = profile_id


class RunNotFound(TaskfleetError):
    def __init__(self, run_id: str) -> None:
        super().__init__(f"Subagent run not found: {run_id}")
        self.run_id = run_id


class SubagentConcurrencyExceeded(TaskfleetError):
    """The profile already has max_concurrent non-terminal runs."""

    def __init__(self, profile_id: str, max_concurrent: int) -> None:
        super().__init__(
            f"Profile {profile_id} is at its concurrency limit ({max_concurrent})",
        )
        self.profile_id = profile_id
        self.max_concurrent = max_concurrent
