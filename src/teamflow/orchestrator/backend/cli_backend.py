"""Subprocess-based executor driven by a command template."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import tempfile
import time
from pathlib import Path
from typing import IO

from teamflow.orchestrator.backend.base import (
    TaskAbortedError,
    TaskExecutionError,
    TaskRunRequest,
    TaskRunResult,
)

_PERMANENT_EXIT_CODES = (126, 127)
_TIMEOUT_EXIT_CODE = 124


class CommandExecutor:
    """Run one shell-free command per task attempt.

    Supported template placeholders: ``{task_id}``, ``{run_id}``, ``{task}``,
    ``{stream}``, ``{phase}``, ``{description}``.
    """

    def __init__(
        self,
        *,
        command_template: str,
        timeout_seconds: int = 600,
        graceful_shutdown_seconds: int = 10,
        workdir: Path | None = None,
        output_preview_chars: int = 1200,
    ) -> None:
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self.workdir = workdir
        self.output_preview_chars = output_preview_chars

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        run_args = _build_run_args(command_template=self.command_template, request=request)
        env = os.environ.copy()
        env.update(_task_environment(request))

        try:
            with (
                tempfile.TemporaryFile("w+", encoding="utf-8") as stdout_handle,
                tempfile.TemporaryFile("w+", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess_with_shutdown(
                    run_args=run_args,
                    env=env,
                    cwd=self.workdir,
                    timeout_seconds=self.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                    request=request,
                    graceful_shutdown_seconds=self.graceful_shutdown_seconds,
                )
                stdout_text = _read_tail(stdout_handle, limit=self.output_preview_chars)
                stderr_text = _read_tail(stderr_handle, limit=self.output_preview_chars)
        except FileNotFoundError as error:
            raise TaskExecutionError(
                f"Executor command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise TaskExecutionError(
                f"Executor command failed to start: {error}",
                transient=True,
            ) from error

        if timed_out:
            raise TaskExecutionError(
                f"Executor command timed out after {self.timeout_seconds}s",
                transient=True,
            )
        if exit_code != 0:
            detail = stderr_text.strip() or stdout_text.strip() or "no output"
            raise TaskExecutionError(
                f"Executor command exited with {exit_code}: {detail}",
                transient=exit_code not in _PERMANENT_EXIT_CODES,
            )
        return TaskRunResult(output_summary=stdout_text.strip() or None)


def _build_run_args(*, command_template: str, request: TaskRunRequest) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise TaskExecutionError("Executor command template is empty.", transient=False)

    task = request.task
    try:
        rendered = stripped.format(
            task_id=shlex.quote(task.task_id),
            run_id=shlex.quote(task.run_id),
            task=shlex.quote(task.name),
            stream=shlex.quote(task.stream),
            phase=task.phase,
            description=shlex.quote(task.description),
        )
    except (KeyError, IndexError) as error:
        raise TaskExecutionError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise TaskExecutionError(
            "Executor command template rendered empty command.",
            transient=False,
        )
    return argv


def _task_environment(request: TaskRunRequest) -> dict[str, str]:
    task = request.task
    return {
        "TEAMFLOW_TASK_ID": task.task_id,
        "TEAMFLOW_RUN_ID": task.run_id,
        "TEAMFLOW_TASK_NAME": task.name,
        "TEAMFLOW_STREAM": task.stream,
        "TEAMFLOW_PHASE": str(task.phase),
        "TEAMFLOW_ATTEMPT": str(task.attempt),
        "TEAMFLOW_OWNED_RESOURCES": json.dumps(list(request.stream.owned_resources)),
        "TEAMFLOW_CAPABILITIES": json.dumps(sorted(request.capabilities)),
        "TEAMFLOW_INBOX": json.dumps(
            [
                {
                    "from_stream": message.from_stream,
                    "trigger_phase": message.trigger_phase,
                    "payload": message.payload,
                }
                for message in request.inbox
            ],
            ensure_ascii=False,
        ),
    }


def _run_subprocess_with_shutdown(  # noqa: PLR0913
    *,
    run_args: list[str],
    env: dict[str, str],
    cwd: Path | None,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
    request: TaskRunRequest,
    graceful_shutdown_seconds: int,
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    start_monotonic = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, graceful_shutdown_seconds)

    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False

        now = time.monotonic()
        if now - start_monotonic >= timeout_seconds:
            _terminate_process(process)
            return _TIMEOUT_EXIT_CODE, True

        if request.cancel_event.is_set():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                raise TaskAbortedError(
                    f"Task {request.task.name} command terminated on shutdown",
                )

        time.sleep(0.1)


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


def _read_tail(handle: IO[str], *, limit: int) -> str:
    handle.flush()
    handle.seek(0)
    text = handle.read()
    return text[-limit:] if limit > 0 else text
