"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from teamflow.config import Settings
from teamflow.orchestrator.backend import CommandExecutor, NoopExecutor, TaskExecutor
from teamflow.orchestrator.capabilities import (
    CapabilityLoader,
    DirectoryCapabilityLoader,
    StaticCapabilityLoader,
)
from teamflow.orchestrator.coordinator import Coordinator, CoordinatorSettings, RunOutcome
from teamflow.orchestrator.models import RunStatus, TaskStatus
from teamflow.orchestrator.plan import load_plan
from teamflow.orchestrator.progress import build_progress, render_progress_lines
from teamflow.orchestrator.repository import OrchestratorRepository


@dataclass(slots=True)
class PlanValidateCommand:
    """CLI input for plan validation."""

    plan_path: Path


@dataclass(slots=True)
class RunPlanCommand:
    """CLI input for ingesting and executing a plan."""

    db_path: Path | None
    plan_path: Path


@dataclass(slots=True)
class ResumeRunCommand:
    """CLI input for resuming a stored run."""

    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class ListRunsCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class ProgressCommand:
    """CLI input for run progress; latest run when run_id is omitted."""

    db_path: Path | None
    run_id: str | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    run_id: str | None
    status: str | None
    stream: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for operator retry."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class ListMessagesCommand:
    db_path: Path | None
    run_id: str | None
    stream: str | None


@dataclass(slots=True)
class RunResult:
    """CLI lines plus whether the completion marker was emitted."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates plan, run, and inspection CLI operations."""

    def validate_plan(self, command: PlanValidateCommand) -> list[str]:
        plan = load_plan(command.plan_path)
        tasks = sum(len(phase.chunks) for phase in plan.phases)
        return [
            f"Plan OK: {plan.name}",
            f"Streams: {', '.join(stream.name for stream in plan.streams)}",
            f"Phases: {len(plan.phases)} Tasks: {tasks} Messages: {len(plan.communication)}",
        ]

    def run_plan(
        self,
        command: RunPlanCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        plan = load_plan(command.plan_path)
        with _repository(settings) as repository:
            coordinator = _coordinator(settings, repository, on_progress=on_progress)
            with coordinator.handle_signals():
                outcome = coordinator.run(plan)
        return _run_result(outcome)

    def resume_run(
        self,
        command: ResumeRunCommand,
        *,
        on_progress: Callable[[str], None] | None = None,
    ) -> RunResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            coordinator = _coordinator(settings, repository, on_progress=on_progress)
            with coordinator.handle_signals():
                outcome = coordinator.resume(command.run_id)
        return _run_result(outcome)

    def list_runs(self, command: ListRunsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            runs = repository.list_runs(limit=command.limit)

        lines = [f"Runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.run_id} plan={run.plan_name} status={run.status.value} "
                f"created_at={run.created_at.isoformat()}",
            )
        return lines

    def progress(self, command: ProgressCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run_id = _resolve_run_id(repository, command.run_id)
            if run_id is None:
                return ["No runs found."]
            return render_progress_lines(build_progress(repository, run_id))

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                run_id=command.run_id,
                status=status_filter,
                stream=command.stream,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            reason = f"/{task.block_reason.value}" if task.block_reason else ""
            lines.append(
                f"  {task.task_id} name={task.name} stream={task.stream} phase={task.phase} "
                f"status={task.status.value}{reason} attempt={task.attempt}/{task.max_attempts}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Name: {task.name}",
            f"Run: {task.run_id}",
            f"Stream: {task.stream}",
            f"Phase: {task.phase}",
            f"Status: {task.status.value}",
            f"Block reason: {task.block_reason.value if task.block_reason else '-'}",
            f"Blocked by: {', '.join(task.blocked_by) or '-'}",
            f"Claimed by: {task.claimed_by or '-'}",
            f"Attempt: {task.attempt}/{task.max_attempts}",
            f"Error: {task.error_summary or '-'}",
            f"Output: {task.output_summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'} "
                f"worker={event.worker_id or '-'}",
            )
        return lines

    def retry_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            task = repository.retry_task(task_id=command.task_id)
        return [f"Task re-queued: {task.task_id} ({task.name})"]

    def list_messages(self, command: ListMessagesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            run_id = _resolve_run_id(repository, command.run_id)
            if run_id is None:
                return ["No runs found."]
            messages = repository.list_messages(run_id=run_id, to_stream=command.stream)

        lines = [f"Messages: {len(messages)}"]
        for message in messages:
            lines.append(
                f"  {message.message_id} {message.from_stream} -> {message.to_stream} "
                f"phase={message.trigger_phase} delivered={'yes' if message.delivered else 'no'} "
                f"payload={message.payload}",
            )
        return lines


def build_executor(settings: Settings) -> TaskExecutor:
    if settings.executor.kind == "command":
        return CommandExecutor(
            command_template=settings.executor.command_template,
            timeout_seconds=settings.executor.command_timeout_seconds,
        )
    return NoopExecutor()


def build_capability_loader(settings: Settings) -> CapabilityLoader:
    if settings.executor.capabilities_dir is not None:
        return DirectoryCapabilityLoader(settings.executor.capabilities_dir)
    return StaticCapabilityLoader(load_all=settings.executor.allow_missing_capabilities)


def _coordinator(
    settings: Settings,
    repository: OrchestratorRepository,
    *,
    on_progress: Callable[[str], None] | None,
) -> Coordinator:
    return Coordinator(
        repository=repository,
        executor=build_executor(settings),
        capability_loader=build_capability_loader(settings),
        settings=CoordinatorSettings(
            poll_interval_seconds=settings.coordinator.poll_interval_seconds,
            max_failed_tasks=settings.coordinator.max_failed_tasks,
            worker_join_timeout_seconds=settings.coordinator.worker_join_timeout_seconds,
            completion_marker_path=settings.coordinator.completion_marker_path,
            worker_poll_interval_seconds=settings.worker.poll_interval_seconds,
            retry_base_seconds=settings.worker.retry_base_seconds,
            retry_max_seconds=settings.worker.retry_max_seconds,
            message_timeout_seconds=settings.worker.message_timeout_seconds,
            verify_attempts=settings.worker.verify_attempts,
            default_max_attempts=settings.worker.max_attempts,
        ),
        on_progress=on_progress,
    )


def _run_result(outcome: RunOutcome) -> RunResult:
    counts = outcome.counts
    lines = [
        f"Run {outcome.run_id}: status={outcome.status.value}",
        f"Tasks: total={counts.total} completed={counts.completed} "
        f"failed={counts.blocked_on_failure} blocked={counts.blocked_on_dependency} "
        f"pending={counts.pending}",
    ]
    for stream, summary in sorted(outcome.summaries.items()):
        lines.append(
            f"  {stream}: completed={summary.completed} retried={summary.retried} "
            f"escalated={summary.escalated} reverted={summary.reverted} "
            f"messages_sent={summary.messages_sent}",
        )
    if outcome.error_summary:
        lines.append(f"Attention: {outcome.error_summary}")
    return RunResult(lines=lines, success=outcome.status == RunStatus.COMPLETED)


def _resolve_run_id(repository: OrchestratorRepository, run_id: str | None) -> str | None:
    if run_id is not None:
        return run_id
    runs = repository.list_runs(limit=1)
    return runs[0].run_id if runs else None


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
