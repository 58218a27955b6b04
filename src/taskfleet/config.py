"""Runtime configuration for the task queue, dispatcher, relay and subagents."""

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class TaskSettings:
    """Task intake settings."""

    max_budget: float = 10.0
    default_list_limit: int = 50


@dataclass(slots=True)
class DispatchSettings:
    """Machine liveness and assignment loop settings."""

    interval_seconds: float = 10.0
    machine_stale_seconds: int = 120
    assign_batch_limit: int = 100
    strict_affinity: bool = False
    unassigned_alert_seconds: int = 600
    long_running_seconds: int = 3_600
    stale_running_fail_seconds: int = 0
    reservation_ttl_seconds: int = 0


@dataclass(slots=True)
class RelaySettings:
    """Streaming relay and pending-input settings."""

    flush_interval_seconds: float = 1.5
    max_message_chars: int = 3_500
    tick_seconds: float = 0.5
    input_ttl_seconds: int = 1_800
    input_sweep_seconds: float = 60.0


@dataclass(slots=True)
class SubagentSettings:
    """Subagent lifecycle settings."""

    default_timeout_seconds: int = 300
    default_max_concurrent: int = 2
    lifecycle_interval_seconds: float = 30.0
    max_parallel_runs: int = 4
    purge_grace_seconds: int = 86_400
    remote_project: str = "subagents"
    command_template: str = ""
    max_output_chars: int = 20_000
    work_root: Path = Path(".taskfleet_runs")


@dataclass(slots=True)
class ServerSettings:
    """HTTP boundary settings."""

    host: str = "127.0.0.1"
    port: int = 8080
    api_token: str | None = None
    run_background_jobs: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".taskfleet.db")
    busy_timeout_ms: int = 5_000
    tasks: TaskSettings = field(default_factory=TaskSettings)
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)
    subagents: SubagentSettings = field(default_factory=SubagentSettings)
    server: ServerSettings = field(default_factory=ServerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKFLEET_DB_PATH", ".taskfleet.db")),
            busy_timeout_ms=int(os.getenv("TASKFLEET_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            tasks=TaskSettings(
                max_budget=float(os.getenv("TASKFLEET_MAX_BUDGET", "10.0")),
                default_list_limit=int(os.getenv("TASKFLEET_TASK_LIST_LIMIT", "50")),
            ),
            dispatch=DispatchSettings(
                interval_seconds=float(os.getenv("TASKFLEET_DISPATCH_INTERVAL_SECONDS", "10")),
                machine_stale_seconds=int(
                    os.getenv("TASKFLEET_MACHINE_STALE_SECONDS", "120"),
                ),
                assign_batch_limit=int(os.getenv("TASKFLEET_ASSIGN_BATCH_LIMIT", "100")),
                strict_affinity=_env_bool("TASKFLEET_STRICT_AFFINITY", default=False),
                unassigned_alert_seconds=int(
                    os.getenv("TASKFLEET_UNASSIGNED_ALERT_SECONDS", "600"),
                ),
                long_running_seconds=int(os.getenv("TASKFLEET_LONG_RUNNING_SECONDS", "3600")),
                stale_running_fail_seconds=int(
                    os.getenv("TASKFLEET_STALE_RUNNING_FAIL_SECONDS", "0"),
                ),
                reservation_ttl_seconds=int(
                    os.getenv("TASKFLEET_RESERVATION_TTL_SECONDS", "0"),
                ),
            ),
            relay=RelaySettings(
                flush_interval_seconds=float(
                    os.getenv("TASKFLEET_RELAY_FLUSH_INTERVAL_SECONDS", "1.5"),
                ),
                max_message_chars=int(os.getenv("TASKFLEET_RELAY_MAX_MESSAGE_CHARS", "3500")),
                tick_seconds=float(os.getenv("TASKFLEET_RELAY_TICK_SECONDS", "0.5")),
                input_ttl_seconds=int(os.getenv("TASKFLEET_INPUT_TTL_SECONDS", "1800")),
                input_sweep_seconds=float(os.getenv("TASKFLEET_INPUT_SWEEP_SECONDS", "60")),
            ),
            subagents=SubagentSettings(
                default_timeout_seconds=int(
                    os.getenv("TASKFLEET_SUBAGENT_TIMEOUT_SECONDS", "300"),
                ),
                default_max_concurrent=int(
                    os.getenv("TASKFLEET_SUBAGENT_MAX_CONCURRENT", "2"),
                ),
                lifecycle_interval_seconds=float(
                    os.getenv("TASKFLEET_SUBAGENT_LIFECYCLE_INTERVAL_SECONDS", "30"),
                ),
                purge_grace_seconds=int(
                    os.getenv("TASKFLEET_SUBAGENT_PURGE_GRACE_SECONDS", "86400"),
                ),
                max_parallel_runs=int(
                    os.getenv("TASKFLEET_SUBAGENT_MAX_PARALLEL_RUNS", "4"),
                ),
                remote_project=os.getenv("TASKFLEET_SUBAGENT_REMOTE_PROJECT", "subagents"),
                command_template=os.getenv("TASKFLEET_SUBAGENT_COMMAND_TEMPLATE", ""),
                max_output_chars=int(os.getenv("TASKFLEET_SUBAGENT_MAX_OUTPUT_CHARS", "20000")),
                work_root=Path(os.getenv("TASKFLEET_SUBAGENT_WORK_ROOT", ".taskfleet_runs")),
            ),
            server=ServerSettings(
                host=os.getenv("TASKFLEET_HOST", "127.0.0.1"),
                port=int(os.getenv("TASKFLEET_PORT", "8080")),
                api_token=os.getenv("TASKFLEET_API_TOKEN") or None,
                run_background_jobs=_env_bool("TASKFLEET_BACKGROUND_JOBS", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if not math.isfinite(self.tasks.max_budget) or self.tasks.max_budget < 0:
            raise ValueError("TASKFLEET_MAX_BUDGET must be a finite number >= 0.")
        if self.busy_timeout_ms <= 0:
            raise ValueError("TASKFLEET_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        _require_positive("TASKFLEET_DISPATCH_INTERVAL_SECONDS", self.dispatch.interval_seconds)
        _require_positive("TASKFLEET_MACHINE_STALE_SECONDS", self.dispatch.machine_stale_seconds)
        _require_positive("TASKFLEET_ASSIGN_BATCH_LIMIT", self.dispatch.assign_batch_limit)
        _require_positive(
            "TASKFLEET_UNASSIGNED_ALERT_SECONDS",
            self.dispatch.unassigned_alert_seconds,
        )
        _require_positive("TASKFLEET_LONG_RUNNING_SECONDS", self.dispatch.long_running_seconds)
        if self.dispatch.stale_running_fail_seconds < 0:
            raise ValueError("TASKFLEET_STALE_RUNNING_FAIL_SECONDS must be >= 0.")
        if self.dispatch.reservation_ttl_seconds < 0:
            raise ValueError("TASKFLEET_RESERVATION_TTL_SECONDS must be >= 0.")
        _require_positive(
            "TASKFLEET_RELAY_FLUSH_INTERVAL_SECONDS",
            self.relay.flush_interval_seconds,
        )
        if not 1 <= self.relay.max_message_chars <= 4_096:
            raise ValueError("TASKFLEET_RELAY_MAX_MESSAGE_CHARS must be in range 1..4096.")
        _require_positive("TASKFLEET_RELAY_TICK_SECONDS", self.relay.tick_seconds)
        _require_positive("TASKFLEET_INPUT_TTL_SECONDS", self.relay.input_ttl_seconds)
        _require_positive("TASKFLEET_INPUT_SWEEP_SECONDS", self.relay.input_sweep_seconds)
        _require_positive(
            "TASKFLEET_SUBAGENT_TIMEOUT_SECONDS",
            self.subagents.default_timeout_seconds,
        )
        _require_positive(
            "TASKFLEET_SUBAGENT_MAX_CONCURRENT",
            self.subagents.default_max_concurrent,
        )
        _require_positive(
            "TASKFLEET_SUBAGENT_LIFECYCLE_INTERVAL_SECONDS",
            self.subagents.lifecycle_interval_seconds,
        )
        _require_positive(
            "TASKFLEET_SUBAGENT_MAX_PARALLEL_RUNS",
            self.subagents.max_parallel_runs,
        )
        if self.subagents.purge_grace_seconds < 0:
            raise ValueError("TASKFLEET_SUBAGENT_PURGE_GRACE_SECONDS must be >= 0.")
        if not self.subagents.remote_project.strip():
            raise ValueError("TASKFLEET_SUBAGENT_REMOTE_PROJECT must not be empty.")
        if not 1 <= self.server.port <= 65_535:
            raise ValueError("TASKFLEET_PORT must be in range 1..65535.")


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ValueError(f"{name} must be > 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
