"""Human-readable progress view over a stored run."""

from __future__ import annotations

from dataclasses import dataclass

from teamflow.orchestrator.models import (
    BlockReason,
    RunView,
    StatusCounts,
    TaskStatus,
    TaskView,
)
from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.orchestrator.resolver import open_count, phase_barrier_open


@dataclass(slots=True)
class TaskProgress:
    task: TaskView
    label: str


@dataclass(slots=True)
class RunProgress:
    """Snapshot of one run for the progress surface."""

    run: RunView
    counts: StatusCounts
    tasks: list[TaskProgress]


def build_progress(repository: OrchestratorRepository, run_id: str) -> RunProgress:
    run = repository.get_run(run_id=run_id)
    if run is None:
        raise ValueError(f"Run not found: {run_id}")
    tasks = repository.list_tasks(run_id=run_id)
    statuses = {task.task_id: task.status for task in tasks}
    return RunProgress(
        run=run,
        counts=repository.status_counts(run_id=run_id),
        tasks=[TaskProgress(task=task, label=_task_label(task, tasks, statuses)) for task in tasks],
    )


def render_progress_lines(progress: RunProgress) -> list[str]:
    run = progress.run
    counts = progress.counts
    lines = [
        f"Run: {run.run_id} plan={run.plan_name} status={run.status.value}",
        (
            f"Tasks: total={counts.total} completed={counts.completed} "
            f"in_progress={counts.in_progress} pending={counts.pending} "
            f"blocked={counts.blocked_on_dependency} failed={counts.blocked_on_failure}"
        ),
    ]
    if run.error_summary:
        lines.append(f"Attention: {run.error_summary}")

    current_phase: int | None = None
    for item in progress.tasks:
        task = item.task
        if task.phase != current_phase:
            current_phase = task.phase
            lines.append(f"Phase {current_phase}:")
        lines.append(f"  [{task.stream}] {task.name}: {item.label}")
    return lines


def _task_label(task: TaskView, tasks: list[TaskView], statuses: dict[str, TaskStatus]) -> str:
    if task.status == TaskStatus.BLOCKED:
        if task.block_reason == BlockReason.FAILURE:
            return f"needs attention: {task.error_summary or 'failed'}"
        remaining = open_count(task, statuses)
        if remaining:
            return f"waiting on dependency ({remaining} open)"
        if not phase_barrier_open(task.phase, tasks):
            return "waiting on earlier phase"
        return "ready to unblock"
    if task.status == TaskStatus.IN_PROGRESS:
        return (
            f"in progress by {task.claimed_by or '-'} "
            f"(attempt {task.attempt}/{task.max_attempts})"
        )
    if task.status == TaskStatus.PENDING and task.error_summary:
        return (
            f"pending retry (attempt {task.attempt}/{task.max_attempts}): "
            f"{task.error_summary}"
        )
    return task.status.value
