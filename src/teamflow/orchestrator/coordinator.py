"""Coordinator: ingests plans, spawns stream workers and detects completion."""

from __future__ import annotations

import json
import logging
import queue
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from teamflow.orchestrator.backend import TaskExecutor
from teamflow.orchestrator.bus import CommunicationBus
from teamflow.orchestrator.capabilities import CapabilityLoader
from teamflow.orchestrator.gate import VerificationGate
from teamflow.orchestrator.models import RunStatus, StatusCounts
from teamflow.orchestrator.plan import (
    ExecutionPlan,
    dumps_plan,
    loads_plan,
    phase_creation_order,
    validate_plan,
)
from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.orchestrator.resolver import compute_blocked_by
from teamflow.orchestrator.streams import StreamRegistry
from teamflow.orchestrator.worker import StreamWorker, WorkerReport, WorkerRunSummary
from teamflow.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CoordinatorSettings:
    """Tunables for the coordinator and the workers it spawns."""

    poll_interval_seconds: float = 0.5
    max_failed_tasks: int = 3
    worker_join_timeout_seconds: float = 30.0
    completion_marker_path: Path | None = None
    worker_poll_interval_seconds: float = 0.5
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 60.0
    message_timeout_seconds: float = 300.0
    verify_attempts: int = 3
    default_max_attempts: int = 3


@dataclass(slots=True)
class RunOutcome:
    """Final state of one ``execute`` call."""

    run_id: str
    status: RunStatus
    counts: StatusCounts
    marker_emitted: bool = False
    error_summary: str | None = None
    summaries: dict[str, WorkerRunSummary] = field(default_factory=dict)


@dataclass(slots=True)
class _WorkerHandle:
    worker: StreamWorker
    thread: threading.Thread


class Coordinator:
    """Owns the global task list of a run and the lifecycle of its workers."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        executor: TaskExecutor,
        capability_loader: CapabilityLoader,
        settings: CoordinatorSettings | None = None,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.capability_loader = capability_loader
        self.settings = settings or CoordinatorSettings()
        self._on_progress = on_progress or (lambda _msg: None)
        self._stop_event = threading.Event()

    def ingest(self, plan: ExecutionPlan) -> str:
        """Create a run, its streams and every task of ``plan``; return the run id."""

        validate_plan(plan)
        run = self.repository.create_run(plan_name=plan.name, plan_json=dumps_plan(plan))
        registry = StreamRegistry(repository=self.repository, run_id=run.run_id)
        for stream in plan.streams:
            registry.register(stream)

        blocked_by = compute_blocked_by(plan)
        task_ids: dict[str, str] = {}
        for phase in plan.phases:
            for chunk in phase_creation_order(phase):
                task_ids[chunk.name] = self.repository.create_task(
                    run_id=run.run_id,
                    stream=chunk.stream,
                    phase=phase.number,
                    blocked_by=[task_ids[name] for name in sorted(blocked_by[chunk.name])],
                    name=chunk.name,
                    description=chunk.description,
                    max_attempts=plan.max_attempts or self.settings.default_max_attempts,
                )
        self._emit(
            f"Ingested plan {plan.name!r} as run {run.run_id}: "
            f"{len(task_ids)} tasks in {len(plan.phases)} phases",
        )
        return run.run_id

    def run(self, plan: ExecutionPlan) -> RunOutcome:
        self._stop_event.clear()
        return self.execute(self.ingest(plan))

    def resume(self, run_id: str) -> RunOutcome:
        """Continue a stored run from its persisted state."""

        self._stop_event.clear()
        run = self.repository.get_run(run_id=run_id)
        if run is None:
            raise ValueError(f"Run not found: {run_id}")
        if run.status == RunStatus.COMPLETED:
            self._emit(f"Run {run_id} is already completed")
            return RunOutcome(
                run_id=run_id,
                status=run.status,
                counts=self.repository.status_counts(run_id=run_id),
            )
        recovered = self.repository.recover_orphaned_claims(run_id=run_id)
        if recovered:
            logger.warning("Returned %s orphaned claim(s) to pending", len(recovered))
        self.repository.reopen_run(run_id=run_id)
        return self.execute(run_id)

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def shutdown(self) -> None:
        """Ask every worker to stop; safe to call from any thread or signal handler."""

        self._stop_event.set()

    def execute(self, run_id: str) -> RunOutcome:  # noqa: C901
        """Run workers until the run completes, aborts, stalls or is shut down."""

        run = self.repository.get_run(run_id=run_id)
        if run is None:
            raise ValueError(f"Run not found: {run_id}")
        if run.status == RunStatus.COMPLETED:
            return RunOutcome(
                run_id=run_id,
                status=run.status,
                counts=self.repository.status_counts(run_id=run_id),
            )

        plan = loads_plan(self.repository.get_run_plan_json(run_id=run_id))
        registry = StreamRegistry.load(repository=self.repository, run_id=run_id)
        gate = VerificationGate(repository=self.repository, registry=registry)
        reports: queue.Queue[WorkerReport] = queue.Queue()
        summaries: dict[str, WorkerRunSummary] = {}

        handles = [
            self._start_worker(
                run_id=run_id,
                plan=plan,
                stream_name=stream_name,
                registry=registry,
                gate=gate,
                reports=reports,
                summaries=summaries,
            )
            for stream_name in plan.active_streams()
        ]

        status: RunStatus | None = None
        error_summary: str | None = None
        unverified: list[str] = []
        try:
            while True:
                alive_streams = {
                    handle.worker.stream.name for handle in handles if handle.thread.is_alive()
                }
                unverified.extend(self._drain_reports(run_id=run_id, reports=reports))
                counts = self.repository.status_counts(run_id=run_id)
                if counts.all_completed:
                    status = RunStatus.COMPLETED
                    break
                if counts.blocked_on_failure > self.settings.max_failed_tasks:
                    status = RunStatus.ABORTED
                    error_summary = (
                        f"{counts.blocked_on_failure} task(s) failed, "
                        f"more than max_failed_tasks={self.settings.max_failed_tasks}"
                    )
                    break
                if self._stop_event.is_set():
                    status = RunStatus.ABORTED
                    error_summary = "shutdown requested"
                    break
                if counts.in_progress == 0 and not counts.pending_streams & alive_streams:
                    status = RunStatus.NEEDS_ATTENTION
                    error_summary = _stall_summary(counts, unverified)
                    break
                self._stop_event.wait(self.settings.poll_interval_seconds)
        finally:
            self._stop_event.set()
            for handle in handles:
                handle.thread.join(timeout=self.settings.worker_join_timeout_seconds)
                if handle.thread.is_alive():
                    logger.warning(
                        "Worker %s did not stop within %.1fs; its claims stay for resume",
                        handle.worker.worker_id,
                        self.settings.worker_join_timeout_seconds,
                    )
            self._drain_reports(run_id=run_id, reports=reports)

        marker_emitted = False
        if status == RunStatus.COMPLETED:
            marker_emitted = self.repository.mark_run_completed(run_id=run_id)
            if marker_emitted:
                self._write_completion_marker(run_id=run_id, plan=plan)
                self._emit(f"Run {run_id} completed")
        elif status is not None:
            self.repository.finish_run(run_id=run_id, status=status, error_summary=error_summary)
            self._emit(f"Run {run_id} finished as {status.value}: {error_summary}")

        final = self.repository.get_run(run_id=run_id)
        return RunOutcome(
            run_id=run_id,
            status=final.status if final is not None else RunStatus.ABORTED,
            counts=self.repository.status_counts(run_id=run_id),
            marker_emitted=marker_emitted,
            error_summary=error_summary,
            summaries=summaries,
        )

    @contextmanager
    def handle_signals(self) -> Iterator[None]:
        """Translate SIGINT/SIGTERM into ``shutdown()`` while the block runs."""

        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s, shutting down workers", name)
            self.shutdown()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

    def _start_worker(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        plan: ExecutionPlan,
        stream_name: str,
        registry: StreamRegistry,
        gate: VerificationGate,
        reports: queue.Queue[WorkerReport],
        summaries: dict[str, WorkerRunSummary],
    ) -> _WorkerHandle:
        worker_repository = OrchestratorRepository(
            self.repository.db_path,
            sqlite_busy_timeout_ms=self.repository.sqlite_busy_timeout_ms,
        )
        worker = StreamWorker(
            worker_id=f"{stream_name}-{uuid4().hex[:8]}",
            run_id=run_id,
            stream=registry.get(stream_name),
            plan=plan,
            repository=worker_repository,
            gate=gate,
            bus=CommunicationBus(
                repository=worker_repository,
                poll_interval_seconds=self.settings.worker_poll_interval_seconds,
            ),
            executor=self.executor,
            capability_loader=self.capability_loader,
            poll_interval_seconds=self.settings.worker_poll_interval_seconds,
            retry_base_seconds=self.settings.retry_base_seconds,
            retry_max_seconds=self.settings.retry_max_seconds,
            message_timeout_seconds=self.settings.message_timeout_seconds,
            verify_attempts=self.settings.verify_attempts,
            stop_event=self._stop_event,
            report=reports.put,
        )

        def _worker_main() -> None:
            try:
                summaries[stream_name] = worker.run()
            except Exception:
                logger.exception("Worker %s crashed", worker.worker_id)
                reports.put(
                    WorkerReport(worker_id=worker.worker_id, stream=stream_name, kind="crashed"),
                )
            finally:
                gate.release_worker(worker.worker_id)
                worker_repository.close()

        thread = threading.Thread(
            target=_worker_main,
            daemon=True,
            name=f"teamflow-{stream_name}",
        )
        thread.start()
        logger.info("Started worker %s for stream %s", worker.worker_id, stream_name)
        return _WorkerHandle(worker=worker, thread=thread)

    def _drain_reports(self, *, run_id: str, reports: queue.Queue[WorkerReport]) -> list[str]:
        unverified: list[str] = []
        while True:
            try:
                report = reports.get_nowait()
            except queue.Empty:
                return unverified
            if report.kind in {"not_verified", "crashed"}:
                revoked = self.repository.revoke_claims(run_id=run_id, worker_id=report.worker_id)
                if report.kind == "not_verified":
                    unverified.append(report.stream)
                    self._emit(
                        f"Worker {report.worker_id} failed verification "
                        f"(missing: {report.detail or 'unknown'})",
                    )
                if revoked:
                    logger.warning(
                        "Revoked %s claim(s) held by %s",
                        len(revoked),
                        report.worker_id,
                    )
            elif report.kind == "escalated":
                self._emit(f"Task {report.task_id} needs attention: {report.detail}")

    def _write_completion_marker(self, *, run_id: str, plan: ExecutionPlan) -> None:
        path = self.settings.completion_marker_path
        if path is None:
            return
        counts = self.repository.status_counts(run_id=run_id)
        payload = {
            "run_id": run_id,
            "plan_name": plan.name,
            "completed_at": utc_now().isoformat(),
            "tasks": counts.total,
            "phases": len(plan.phases),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
            "utf-8",
        )

    def _emit(self, msg: str) -> None:
        logger.info(msg)
        self._on_progress(msg)


def _stall_summary(counts: StatusCounts, unverified: list[str]) -> str:
    parts = [
        f"no runnable tasks: {counts.blocked_on_failure} failed, "
        f"{counts.blocked_on_dependency} waiting on dependencies, {counts.pending} pending",
    ]
    if unverified:
        parts.append(f"unverified streams: {', '.join(sorted(set(unverified)))}")
    return "; ".join(parts)
