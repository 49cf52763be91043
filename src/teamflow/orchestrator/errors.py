"""Error taxonomy for the orchestration engine."""

from __future__ import annotations


class OrchestrationError(RuntimeError):
    """Base class for recoverable and fatal orchestration errors."""


class TaskNotFoundError(OrchestrationError):
    """Task id does not exist in the store."""


class DuplicateDependencyError(OrchestrationError):
    """A task declares a dependency on an id the store does not know."""


class ConflictError(OrchestrationError):
    """Compare-and-swap lost: the task was not in the expected state.

    Recoverable; the caller re-queries and retries with another candidate.
    """

    def __init__(self, message: str, *, task_id: str) -> None:
        super().__init__(message)
        self.task_id = task_id


class NotVerifiedError(OrchestrationError):
    """Worker tried to claim work before loading its required capabilities."""

    def __init__(self, message: str, *, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.missing = missing


class PrematureSendError(OrchestrationError):
    """Message sent before its trigger phase completed in the sending stream."""


class MessageTimeoutError(OrchestrationError):
    """Expected cross-stream message did not arrive in time."""

    def __init__(self, message: str, *, missing: tuple[tuple[str, int], ...]) -> None:
        super().__init__(message)
        self.missing = missing


class PlanValidationError(ValueError):
    """Execution plan rejected before any task was created."""

    def __init__(self, problems: list[str]) -> None:
        super().__init__("Invalid execution plan: " + "; ".join(problems))
        self.problems = problems
