"""Executor interface for task content produced outside the engine."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Protocol

from teamflow.orchestrator.models import MessageView, StreamSpec, TaskView


class TaskExecutionError(RuntimeError):
    """Executor failure with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class TaskAbortedError(RuntimeError):
    """Executor stopped because shutdown was requested; the task is not done."""


@dataclass(slots=True)
class TaskRunRequest:
    """Inputs required to execute one task attempt."""

    task: TaskView
    stream: StreamSpec
    capabilities: dict[str, str]
    inbox: list[MessageView]
    cancel_event: threading.Event = field(default_factory=threading.Event)


@dataclass(slots=True)
class TaskRunResult:
    """Execution outcome reported back to the worker."""

    output_summary: str | None = None


class TaskExecutor(Protocol):
    """Protocol implemented by task executors."""

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        """Run a task attempt; raise ``TaskExecutionError`` or ``TaskAbortedError``."""
