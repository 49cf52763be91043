"""Task executor implementations."""

from teamflow.orchestrator.backend.base import (
    TaskAbortedError,
    TaskExecutionError,
    TaskExecutor,
    TaskRunRequest,
    TaskRunResult,
)
from teamflow.orchestrator.backend.cli_backend import CommandExecutor
from teamflow.orchestrator.backend.inline import CallableExecutor, NoopExecutor

__all__ = [
    "CallableExecutor",
    "CommandExecutor",
    "NoopExecutor",
    "TaskAbortedError",
    "TaskExecutionError",
    "TaskExecutor",
    "TaskRunRequest",
    "TaskRunResult",
]
