"""Executors for local subagent runs."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

_TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class RunExecutionRequest:
    """Inputs required to execute one local subagent run."""

    run_id: str
    profile_id: str
    task: str
    model: str
    system_prompt: str
    timeout_seconds: int


@dataclass(slots=True)
class RunExecutionResult:
    """Execution outcome from an executor."""

    exit_code: int
    timed_out: bool
    output: str
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class RunExecutor(Protocol):
    """Protocol implemented by local run executors."""

    def execute(self, request: RunExecutionRequest) -> RunExecutionResult:
        """Run the task and return its output."""


class ExecutorError(RuntimeError):
    """Executor could not start the run."""


class CliRunExecutor:
    """Execute runs through a CLI command template.

    The template may reference {prompt}, {prompt_file}, {model}, {run_id} and
    {profile}. Values are shell-quoted before the template is split into argv.
    """

    def __init__(
        self,
        command_template: str,
        *,
        work_root: Path,
        max_output_chars: int = 20_000,
        poll_interval_seconds: float = 0.1,
    ) -> None:
        self.command_template = command_template
        self.work_root = work_root
        self.max_output_chars = max_output_chars
        self.poll_interval_seconds = poll_interval_seconds

    def execute(self, request: RunExecutionRequest) -> RunExecutionResult:
        run_dir = self.work_root / request.run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        prompt = build_prompt(system_prompt=request.system_prompt, task=request.task)
        prompt_file = run_dir / "prompt.txt"
        prompt_file.write_text(prompt, "utf-8")
        stdout_path = run_dir / "stdout.txt"
        stderr_path = run_dir / "stderr.txt"

        run_args = build_run_args(
            command_template=self.command_template,
            values={
                "prompt": prompt,
                "prompt_file": str(prompt_file),
                "model": request.model,
                "run_id": request.run_id,
                "profile": request.profile_id,
            },
        )
        env = os.environ.copy()
        env["TASKFLEET_RUN_ID"] = request.run_id
        env["TASKFLEET_PROFILE"] = request.profile_id
        env["TASKFLEET_MODEL"] = request.model

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    poll_interval_seconds=self.poll_interval_seconds,
                )
        except FileNotFoundError as error:
            raise ExecutorError(f"Run command not found: {run_args[0]}") from error
        except OSError as error:
            raise ExecutorError(f"Run command failed to start: {error}") from error

        output = _read_tail(stdout_path, self.max_output_chars)
        error_text: str | None = None
        if timed_out:
            error_text = f"Run exceeded {request.timeout_seconds}s"
        elif exit_code != 0:
            stderr_text = _read_tail(stderr_path, self.max_output_chars).strip()
            error_text = stderr_text or f"Run command exited with code {exit_code}"
        return RunExecutionResult(
            exit_code=exit_code,
            timed_out=timed_out,
            output=output,
            error=error_text,
        )


def build_prompt(*, system_prompt: str, task: str) -> str:
    if not system_prompt.strip():
        return task
    return f"{system_prompt.strip()}\n\n## Task\n{task}"


def build_run_args(*, command_template: str, values: dict[str, str]) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ExecutorError("Run command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise ExecutorError("Run command template must include {prompt} or {prompt_file}.")
    try:
        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except (KeyError, IndexError) as error:
        raise ExecutorError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ExecutorError("Run command template rendered empty command.")
    return argv


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    poll_interval_seconds: float,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return _TIMEOUT_EXIT_CODE, True
        time.sleep(poll_interval_seconds)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _read_tail(path: Path, max_chars: int) -> str:
    if not path.exists():
        return ""
    text = path.read_text("utf-8", errors="replace")
    if len(text) <= max_chars:
        return text
    return text[-max_chars:]
