"""Dependency resolution over task status snapshots.

These are pure functions. The repository applies the same predicate inside
its compare-and-swap statements, so a stale snapshot can only cause a lost
race (``ConflictError``), never a premature claim.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from teamflow.orchestrator.models import TaskStatus, TaskView
from teamflow.orchestrator.plan import ExecutionPlan


def is_unblocked(blocked_by: Iterable[str], statuses: Mapping[str, TaskStatus]) -> bool:
    """True when every blocking task is completed; empty ``blocked_by`` is unblocked."""

    return all(statuses.get(task_id) == TaskStatus.COMPLETED for task_id in blocked_by)


def phase_barrier_open(phase: int, tasks: Iterable[TaskView]) -> bool:
    """True when every task of an earlier phase is completed."""

    return all(task.status == TaskStatus.COMPLETED for task in tasks if task.phase < phase)


def is_eligible(task: TaskView, tasks: list[TaskView]) -> bool:
    statuses = {item.task_id: item.status for item in tasks}
    return is_unblocked(task.blocked_by, statuses) and phase_barrier_open(task.phase, tasks)


def unblocked_tasks(tasks: list[TaskView], *, stream: str) -> list[TaskView]:
    """Pending tasks of ``stream`` that may be claimed now, FIFO by creation."""

    candidates = [
        task
        for task in tasks
        if task.stream == stream and task.status == TaskStatus.PENDING and is_eligible(task, tasks)
    ]
    return sorted(candidates, key=lambda task: task.created_at)


def compute_blocked_by(plan: ExecutionPlan) -> dict[str, set[str]]:
    """Chunk name -> blocking chunk names.

    The union of every chunk of the immediately preceding phase and the
    chunk's explicit ``depends_on``.
    """

    result: dict[str, set[str]] = {}
    previous: set[str] = set()
    for phase in plan.phases:
        for chunk in phase.chunks:
            result[chunk.name] = set(previous) | set(chunk.depends_on)
        previous = {chunk.name for chunk in phase.chunks}
    return result


def open_count(task: TaskView, statuses: Mapping[str, TaskStatus]) -> int:
    """How many blocking tasks are still not completed."""

    return sum(1 for task_id in task.blocked_by if statuses.get(task_id) != TaskStatus.COMPLETED)
