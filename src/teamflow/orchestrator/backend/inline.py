"""In-process executors: no-op runs and Python callables."""

from __future__ import annotations

from collections.abc import Callable

from teamflow.orchestrator.backend.base import TaskAbortedError, TaskRunRequest, TaskRunResult


class NoopExecutor:
    """Complete every task without doing work, optionally after a delay."""

    def __init__(self, *, delay_seconds: float = 0.0) -> None:
        self.delay_seconds = delay_seconds

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        if self.delay_seconds > 0 and request.cancel_event.wait(self.delay_seconds):
            raise TaskAbortedError(f"Task {request.task.name} cancelled before completion")
        return TaskRunResult(output_summary=f"noop: {request.task.name}")


class CallableExecutor:
    """Delegate execution to a Python callable."""

    def __init__(self, func: Callable[[TaskRunRequest], TaskRunResult | str | None]) -> None:
        self.func = func

    def run(self, request: TaskRunRequest) -> TaskRunResult:
        result = self.func(request)
        if isinstance(result, TaskRunResult):
            return result
        return TaskRunResult(output_summary=result)
