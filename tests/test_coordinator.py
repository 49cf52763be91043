from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import Any

import allure
from conftest import build_plan, two_stream_document

from teamflow.orchestrator.backend import (
    CallableExecutor,
    NoopExecutor,
    TaskAbortedError,
    TaskExecutionError,
    TaskExecutor,
    TaskRunRequest,
)
from teamflow.orchestrator.capabilities import CapabilityLoader, StaticCapabilityLoader
from teamflow.orchestrator.coordinator import Coordinator, CoordinatorSettings
from teamflow.orchestrator.models import RunStatus, TaskStatus
from teamflow.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Stream Coordination"),
    allure.feature("Coordinator"),
]

_CAPABILITIES = StaticCapabilityLoader({"api-design": "REST rules", "ui-kit": "Components"})


def _coordinator(
    repository: OrchestratorRepository,
    executor: TaskExecutor,
    *,
    capability_loader: CapabilityLoader = _CAPABILITIES,
    progress: list[str] | None = None,
    **overrides: Any,
) -> Coordinator:
    options: dict[str, Any] = {
        "poll_interval_seconds": 0.02,
        "worker_join_timeout_seconds": 5.0,
        "worker_poll_interval_seconds": 0.01,
        "retry_base_seconds": 0.0,
        "retry_max_seconds": 0.0,
        "message_timeout_seconds": 5.0,
        "verify_attempts": 1,
    }
    options.update(overrides)
    return Coordinator(
        repository=repository,
        executor=executor,
        capability_loader=capability_loader,
        settings=CoordinatorSettings(**options),
        on_progress=progress.append if progress is not None else None,
    )


def _task_ids(repository: OrchestratorRepository, run_id: str) -> dict[str, str]:
    return {task.name: task.task_id for task in repository.list_tasks(run_id=run_id)}


def test_run_completes_and_writes_marker_once(
    repository: OrchestratorRepository,
    tmp_path: Path,
) -> None:
    marker = tmp_path / "out" / "complete.json"
    progress: list[str] = []
    executed: list[str] = []
    coordinator = _coordinator(
        repository,
        CallableExecutor(lambda request: executed.append(request.task.name) or None),
        progress=progress,
        completion_marker_path=marker,
    )

    outcome = coordinator.run(build_plan(two_stream_document()))

    assert outcome.status == RunStatus.COMPLETED
    assert outcome.marker_emitted is True
    assert outcome.counts.completed == 5
    assert sorted(executed) == ["client", "docs", "endpoints", "layout", "schema"]
    assert executed.index("client") > executed.index("endpoints")
    assert set(outcome.summaries) == {"backend", "frontend"}
    assert outcome.summaries["backend"].messages_sent == 1

    payload = json.loads(marker.read_text("utf-8"))
    assert payload["run_id"] == outcome.run_id
    assert payload["plan_name"] == "two-streams"
    assert payload["tasks"] == 5
    assert any(line.endswith("completed") for line in progress)

    marker.unlink()
    again = coordinator.resume(outcome.run_id)
    assert again.status == RunStatus.COMPLETED
    assert again.marker_emitted is False
    assert not marker.exists()
    messages = repository.list_messages(run_id=outcome.run_id)
    assert [message.delivered for message in messages] == [True]


def test_unverified_stream_leaves_run_needing_attention(
    repository: OrchestratorRepository,
) -> None:
    progress: list[str] = []
    coordinator = _coordinator(
        repository,
        NoopExecutor(),
        capability_loader=StaticCapabilityLoader({"api-design": "REST rules"}),
        progress=progress,
    )

    outcome = coordinator.run(build_plan(two_stream_document()))

    assert outcome.status == RunStatus.NEEDS_ATTENTION
    assert outcome.marker_emitted is False
    assert outcome.error_summary is not None
    assert "unverified streams: frontend" in outcome.error_summary
    ids = _task_ids(repository, outcome.run_id)
    assert repository.get_status(ids["schema"]) == TaskStatus.COMPLETED
    assert repository.get_status(ids["endpoints"]) == TaskStatus.COMPLETED
    assert repository.get_status(ids["layout"]) == TaskStatus.PENDING
    assert repository.get_status(ids["docs"]) == TaskStatus.BLOCKED
    assert any("failed verification (missing: ui-kit)" in line for line in progress)

    run = repository.get_run(run_id=outcome.run_id)
    assert run is not None
    assert run.status == RunStatus.NEEDS_ATTENTION


def test_failed_task_needs_attention_then_resumes_after_operator_retry(
    repository: OrchestratorRepository,
) -> None:
    broken = {"layout"}

    def _execute(request: TaskRunRequest) -> str:
        if request.task.name in broken:
            raise TaskExecutionError("layout renderer missing", transient=False)
        return "ok"

    coordinator = _coordinator(repository, CallableExecutor(_execute))

    outcome = coordinator.run(build_plan(two_stream_document()))

    assert outcome.status == RunStatus.NEEDS_ATTENTION
    assert outcome.counts.blocked_on_failure == 1
    assert outcome.counts.blocked_on_dependency == 2
    layout_id = _task_ids(repository, outcome.run_id)["layout"]
    layout = repository.get_task(task_id=layout_id)
    assert layout.block_reason is not None
    assert layout.error_summary == "layout renderer missing"

    broken.clear()
    repository.retry_task(task_id=layout_id)
    resumed = coordinator.resume(outcome.run_id)

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.marker_emitted is True
    assert resumed.counts.completed == 5


def test_too_many_failures_abort_the_run(repository: OrchestratorRepository) -> None:
    def _fail(_: TaskRunRequest) -> str:
        raise TaskExecutionError("nope", transient=False)

    coordinator = _coordinator(repository, CallableExecutor(_fail), max_failed_tasks=0)

    outcome = coordinator.run(build_plan(two_stream_document()))

    assert outcome.status == RunStatus.ABORTED
    assert outcome.error_summary is not None
    assert "more than max_failed_tasks=0" in outcome.error_summary


def test_resume_returns_orphaned_claims_to_pending(repository: OrchestratorRepository) -> None:
    coordinator = _coordinator(repository, NoopExecutor())
    run_id = coordinator.ingest(build_plan(two_stream_document()))
    schema_id = _task_ids(repository, run_id)["schema"]
    repository.claim_task(task_id=schema_id, worker_id="backend-lost")

    outcome = coordinator.resume(run_id)

    assert outcome.status == RunStatus.COMPLETED
    details = repository.get_task_details(task_id=schema_id)
    assert details is not None
    event_types = [event.event_type for event in details.events]
    assert "orphan_recovered" in event_types
    assert details.task.claimed_by != "backend-lost"


def test_shutdown_reverts_running_task_and_run_can_resume(
    repository: OrchestratorRepository,
) -> None:
    holder: dict[str, Coordinator] = {}

    def _interrupt(request: TaskRunRequest) -> str:
        holder["coordinator"].shutdown()
        request.cancel_event.wait(1.0)
        raise TaskAbortedError(f"{request.task.name} interrupted")

    plan = build_plan(
        {
            "name": "solo",
            "streams": [{"name": "core"}],
            "phases": [{"chunks": [{"name": "only", "stream": "core"}]}],
        },
    )
    coordinator = _coordinator(repository, CallableExecutor(_interrupt))
    holder["coordinator"] = coordinator

    outcome = coordinator.run(plan)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.error_summary == "shutdown requested"
    task = repository.list_tasks(run_id=outcome.run_id)[0]
    assert task.status == TaskStatus.PENDING
    assert task.attempt == 0

    resumed = _coordinator(repository, NoopExecutor()).resume(outcome.run_id)

    assert resumed.status == RunStatus.COMPLETED
    assert repository.get_task(task_id=task.task_id).attempt == 1


def test_shutdown_requested_before_execute_aborts_the_run(
    repository: OrchestratorRepository,
) -> None:
    coordinator = _coordinator(repository, NoopExecutor())
    run_id = coordinator.ingest(build_plan(two_stream_document()))

    coordinator.shutdown()
    outcome = coordinator.execute(run_id)

    assert outcome.status == RunStatus.ABORTED
    assert outcome.error_summary == "shutdown requested"
    assert outcome.marker_emitted is False
    assert outcome.counts.completed < outcome.counts.total

    resumed = coordinator.resume(run_id)

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.marker_emitted is True


def test_signal_handler_requests_shutdown(repository: OrchestratorRepository) -> None:
    coordinator = _coordinator(repository, NoopExecutor())
    original = signal.getsignal(signal.SIGINT)

    with coordinator.handle_signals():
        signal.raise_signal(signal.SIGINT)
        assert coordinator.stop_requested

    assert signal.getsignal(signal.SIGINT) is original
