"""Domain models for phase-gated task orchestration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class BlockReason(str, Enum):
    """Why a blocked task is not eligible; shown on the progress surface."""

    DEPENDENCY = "dependency"
    FAILURE = "failure"


class RunStatus(str, Enum):
    """Lifecycle of one plan execution."""

    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    NEEDS_ATTENTION = "needs_attention"


class WorkerState(str, Enum):
    """Stream executor state machine."""

    IDLE = "idle"
    VERIFYING = "verifying"
    READY = "ready"
    EXECUTING = "executing"
    DONE = "done"


@dataclass(slots=True)
class StreamSpec:
    """Ownership domain bound to exactly one worker."""

    name: str
    owned_resources: tuple[str, ...] = ()
    required_capabilities: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI, worker and coordinator logic."""

    task_id: str
    run_id: str
    name: str
    description: str
    stream: str
    phase: int
    status: TaskStatus
    block_reason: BlockReason | None
    blocked_by: tuple[str, ...]
    claimed_by: str | None
    attempt: int
    max_attempts: int
    run_after: datetime
    error_summary: str | None
    output_summary: str | None
    started_at: datetime | None
    finished_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    worker_id: str | None
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class RunView:
    """Stored plan execution."""

    run_id: str
    plan_name: str
    status: RunStatus
    error_summary: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


@dataclass(slots=True)
class MessageView:
    """Cross-stream handoff as stored on the bus."""

    message_id: str
    run_id: str
    from_stream: str
    to_stream: str
    trigger_phase: int
    payload: str
    delivered: bool
    created_at: datetime
    delivered_at: datetime | None


@dataclass(slots=True)
class StatusCounts:
    """Per-run task counters used by coordinator polling."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked_on_dependency: int = 0
    blocked_on_failure: int = 0
    pending_streams: frozenset[str] = frozenset()

    @property
    def all_completed(self) -> bool:
        return self.total > 0 and self.completed == self.total
