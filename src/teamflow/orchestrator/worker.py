"""Stream worker: claims, executes and completes tasks of one stream."""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import timedelta

from teamflow.orchestrator.backend import (
    TaskAbortedError,
    TaskExecutionError,
    TaskExecutor,
    TaskRunRequest,
)
from teamflow.orchestrator.bus import CommunicationBus, Inbox
from teamflow.orchestrator.capabilities import CapabilityLoader, load_capabilities
from teamflow.orchestrator.errors import ConflictError, MessageTimeoutError
from teamflow.orchestrator.gate import VerificationGate
from teamflow.orchestrator.models import StreamSpec, TaskStatus, TaskView, WorkerState
from teamflow.orchestrator.plan import ExecutionPlan, rule_key
from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for coordinator and CLI reporting."""

    processed: int = 0
    completed: int = 0
    retried: int = 0
    escalated: int = 0
    reverted: int = 0
    conflicts: int = 0
    messages_sent: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


@dataclass(slots=True)
class WorkerReport:
    """Notification a worker sends to its coordinator."""

    worker_id: str
    stream: str
    kind: str
    task_id: str | None = None
    detail: str | None = None


class StreamWorker:
    """Runs the tasks of exactly one stream.

    State machine: ``idle -> verifying -> ready -> executing -> ready ... -> done``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        worker_id: str,
        run_id: str,
        stream: StreamSpec,
        plan: ExecutionPlan,
        repository: OrchestratorRepository,
        gate: VerificationGate,
        bus: CommunicationBus,
        executor: TaskExecutor,
        capability_loader: CapabilityLoader,
        poll_interval_seconds: float = 0.5,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 60.0,
        message_timeout_seconds: float = 300.0,
        verify_attempts: int = 3,
        stop_event: threading.Event | None = None,
        report: Callable[[WorkerReport], None] | None = None,
    ) -> None:
        self.worker_id = worker_id
        self.run_id = run_id
        self.stream = stream
        self.plan = plan
        self.repository = repository
        self.gate = gate
        self.bus = bus
        self.executor = executor
        self.capability_loader = capability_loader
        self.poll_interval_seconds = poll_interval_seconds
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self.message_timeout_seconds = message_timeout_seconds
        self.verify_attempts = verify_attempts
        self.state = WorkerState.IDLE
        self._stop_event = stop_event or threading.Event()
        self._report_callback = report
        self._random = random.Random()  # noqa: S311
        self._capabilities: dict[str, str] = {}
        self._inbox: Inbox = {}

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def verify(self) -> bool:
        """Load required capabilities and declare them to the gate."""

        self.state = WorkerState.VERIFYING
        required = self.stream.required_capabilities
        for attempt in range(1, self.verify_attempts + 1):
            loaded, failures = load_capabilities(self.capability_loader, required)
            self._capabilities.update(loaded)
            if self.gate.declare_loaded(
                worker_id=self.worker_id,
                stream=self.stream.name,
                capabilities=loaded,
            ):
                self.state = WorkerState.READY
                return True
            logger.warning(
                "Worker %s verification attempt %s/%s failed: %s",
                self.worker_id,
                attempt,
                self.verify_attempts,
                "; ".join(failure.error or failure.name for failure in failures),
            )
            if self.stop_requested:
                break
            if attempt < self.verify_attempts:
                self._sleep_with_stop(self.poll_interval_seconds)

        self.state = WorkerState.DONE
        missing = self.gate.missing(self.worker_id) or required
        self._report(kind="not_verified", detail=", ".join(missing))
        return False

    def run(self) -> WorkerRunSummary:
        """Verify, then work until the stream is drained or stop is requested."""

        aggregate = WorkerRunSummary()
        try:
            if not self.verify():
                return aggregate
            self._inbox.update(
                self.bus.delivered_inbox(run_id=self.run_id, stream=self.stream.name),
            )
            self._send_completed_phase_messages(aggregate)

            while not self.stop_requested:
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed:
                    continue
                if not self.repository.stream_has_open_tasks(
                    run_id=self.run_id,
                    stream=self.stream.name,
                ):
                    break
                self._sleep_with_stop(self.poll_interval_seconds)
            return aggregate
        finally:
            self.state = WorkerState.DONE
            logger.info(
                "Worker %s done: completed=%s retried=%s escalated=%s reverted=%s",
                self.worker_id,
                aggregate.completed,
                aggregate.retried,
                aggregate.escalated,
                aggregate.reverted,
            )
            self._report(kind="done")

    def run_once(self) -> WorkerRunSummary:
        """Claim and execute at most one task."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        task = self._claim_next(summary)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self.state = WorkerState.EXECUTING
        try:
            self._execute(task=task, summary=summary)
        finally:
            self.state = WorkerState.READY
        return summary

    def _claim_next(self, summary: WorkerRunSummary) -> TaskView | None:
        for candidate in self.repository.list_unblocked(
            run_id=self.run_id,
            stream=self.stream.name,
        ):
            if self.stop_requested:
                return None
            try:
                task = self.gate.claim_task(worker_id=self.worker_id, task_id=candidate.task_id)
            except ConflictError:
                summary.conflicts += 1
                logger.warning("Claim conflict on task %s, trying next", candidate.name)
                continue
            logger.info(
                "Worker %s claimed task %s (phase %s, attempt %s/%s)",
                self.worker_id,
                task.name,
                task.phase,
                task.attempt,
                task.max_attempts,
            )
            return task
        return None

    def _execute(self, *, task: TaskView, summary: WorkerRunSummary) -> None:
        expected = [
            rule_key(rule)
            for rule in self.plan.inbound_rules(self.stream.name)
            if rule.trigger_phase < task.phase
        ]
        try:
            if expected:
                self.bus.wait_for(
                    run_id=self.run_id,
                    stream=self.stream.name,
                    expected=expected,
                    timeout_seconds=self.message_timeout_seconds,
                    inbox=self._inbox,
                    stop_requested=lambda: self.stop_requested,
                )
            result = self.executor.run(
                TaskRunRequest(
                    task=task,
                    stream=self.stream,
                    capabilities=dict(self._capabilities),
                    inbox=[self._inbox[key] for key in expected],
                    cancel_event=self._stop_event,
                ),
            )
        except TaskAbortedError as error:
            self._revert_on_shutdown(task=task, reason=str(error), summary=summary)
            return
        except MessageTimeoutError as error:
            if self.stop_requested:
                self._revert_on_shutdown(task=task, reason=str(error), summary=summary)
                return
            self.repository.add_task_event(
                task_id=task.task_id,
                event_type="message_timeout",
                status_from=TaskStatus.IN_PROGRESS,
                status_to=TaskStatus.IN_PROGRESS,
                worker_id=self.worker_id,
                details={"missing": [f"{source}@{phase}" for source, phase in error.missing]},
            )
            self._retry_or_escalate(
                task=task,
                error_summary=str(error),
                transient=True,
                summary=summary,
            )
            return
        except TaskExecutionError as error:
            self._retry_or_escalate(
                task=task,
                error_summary=str(error),
                transient=error.transient,
                summary=summary,
            )
            return
        except Exception as error:  # noqa: BLE001
            logger.exception("Executor crashed on task %s", task.name)
            self._retry_or_escalate(
                task=task,
                error_summary=f"Executor error: {error}",
                transient=True,
                summary=summary,
            )
            return

        try:
            self.repository.complete_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
                output_summary=result.output_summary,
            )
        except ConflictError:
            summary.conflicts += 1
            logger.warning("Task %s was revoked before completion", task.name)
            return
        summary.completed += 1
        logger.info("Worker %s completed task %s", self.worker_id, task.name)
        self._send_phase_messages(phase=task.phase, summary=summary)

    def _send_phase_messages(self, *, phase: int, summary: WorkerRunSummary) -> None:
        rules = self.plan.outbound_rules(self.stream.name, phase)
        if not rules:
            return
        if not self.repository.phase_completed_for_stream(
            run_id=self.run_id,
            stream=self.stream.name,
            phase=phase,
        ):
            return
        for rule in rules:
            self.bus.send(
                run_id=self.run_id,
                from_stream=rule.from_stream,
                to_stream=rule.to_stream,
                trigger_phase=rule.trigger_phase,
                payload=rule.payload,
            )
            summary.messages_sent += 1

    def _send_completed_phase_messages(self, summary: WorkerRunSummary) -> None:
        # A crash between completion and send leaves messages unsent; catch up on start.
        phases = sorted(
            {
                rule.trigger_phase
                for rule in self.plan.communication
                if rule.from_stream == self.stream.name
            },
        )
        for phase in phases:
            self._send_phase_messages(phase=phase, summary=summary)

    def _retry_or_escalate(
        self,
        *,
        task: TaskView,
        error_summary: str,
        transient: bool,
        summary: WorkerRunSummary,
    ) -> None:
        try:
            if transient and task.attempt < task.max_attempts:
                delay_seconds = self._compute_retry_delay(retry_number=task.attempt)
                self.repository.release_task(
                    task_id=task.task_id,
                    worker_id=self.worker_id,
                    run_after=utc_now() + timedelta(seconds=delay_seconds),
                    error_summary=error_summary,
                    event_type="retry_scheduled",
                )
                summary.retried += 1
                logger.warning(
                    "Task %s failed (attempt %s/%s), retry in %.1fs: %s",
                    task.name,
                    task.attempt,
                    task.max_attempts,
                    delay_seconds,
                    error_summary,
                )
                return

            self.repository.escalate_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
                error_summary=error_summary,
            )
        except ConflictError:
            summary.conflicts += 1
            logger.warning("Task %s was revoked before failure handling", task.name)
            return
        summary.escalated += 1
        logger.error(
            "Task %s escalated after %s attempt(s): %s",
            task.name,
            task.attempt,
            error_summary,
        )
        self._report(kind="escalated", task_id=task.task_id, detail=error_summary)

    def _revert_on_shutdown(
        self,
        *,
        task: TaskView,
        reason: str,
        summary: WorkerRunSummary,
    ) -> None:
        try:
            self.repository.release_task(
                task_id=task.task_id,
                worker_id=self.worker_id,
                error_summary=reason,
                event_type="shutdown_reverted",
                consume_attempt=False,
            )
        except ConflictError:
            summary.conflicts += 1
            return
        summary.reverted += 1
        logger.warning("Task %s reverted to pending on shutdown", task.name)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.retry_max_seconds,
            self.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(max(0.0, seconds))

    def _report(self, *, kind: str, task_id: str | None = None, detail: str | None = None) -> None:
        if self._report_callback is None:
            return
        self._report_callback(
            WorkerReport(
                worker_id=self.worker_id,
                stream=self.stream.name,
                kind=kind,
                task_id=task_id,
                detail=detail,
            ),
        )
