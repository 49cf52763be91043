"""Admission control: workers claim only after loading their capabilities."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass, field

from teamflow.orchestrator.errors import NotVerifiedError
from teamflow.orchestrator.models import TaskView
from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.orchestrator.streams import StreamRegistry

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _WorkerAdmission:
    stream: str
    required: tuple[str, ...]
    declared: set[str] = field(default_factory=set)
    verified: bool = False


class VerificationGate:
    """Per-worker one-way state machine: unverified -> verified."""

    def __init__(self, *, repository: OrchestratorRepository, registry: StreamRegistry) -> None:
        self.repository = repository
        self.registry = registry
        self._lock = threading.Lock()
        self._workers: dict[str, _WorkerAdmission] = {}

    def declare_loaded(
        self,
        *,
        worker_id: str,
        stream: str,
        capabilities: Iterable[str],
    ) -> bool:
        """Record capabilities the worker has loaded; return whether it is verified.

        Declarations accumulate, so a worker may declare in several calls.
        """

        required = self.registry.required_capabilities(stream)
        with self._lock:
            admission = self._workers.get(worker_id)
            if admission is None:
                self.registry.bind_worker(stream=stream, worker_id=worker_id)
                admission = _WorkerAdmission(stream=stream, required=required)
                self._workers[worker_id] = admission
            elif admission.stream != stream:
                raise ValueError(
                    f"Worker {worker_id!r} is bound to stream {admission.stream!r}, not {stream!r}",
                )
            admission.declared.update(capabilities)
            if not admission.verified and set(admission.required) <= admission.declared:
                admission.verified = True
                logger.info("Worker %s verified for stream %s", worker_id, stream)
            return admission.verified

    def is_verified(self, worker_id: str) -> bool:
        with self._lock:
            admission = self._workers.get(worker_id)
            return admission is not None and admission.verified

    def missing(self, worker_id: str) -> tuple[str, ...]:
        """Required capabilities the worker has not declared yet, in declared order."""

        with self._lock:
            admission = self._workers.get(worker_id)
            if admission is None:
                return ()
            return tuple(name for name in admission.required if name not in admission.declared)

    def claim_task(self, *, worker_id: str, task_id: str) -> TaskView:
        """Claim ``task_id`` for a verified worker.

        An unverified worker gets ``NotVerifiedError`` before the store is touched.
        """

        with self._lock:
            admission = self._workers.get(worker_id)
            verified = admission is not None and admission.verified
            missing = (
                tuple(name for name in admission.required if name not in admission.declared)
                if admission is not None
                else ()
            )
        if admission is None or not verified:
            raise NotVerifiedError(
                f"Worker {worker_id} has not loaded required capabilities: "
                f"{', '.join(missing) or 'no declaration'}",
                missing=missing,
            )

        task = self.repository.get_task(task_id=task_id)
        if task.stream != admission.stream:
            raise ValueError(
                f"Task {task_id} belongs to stream {task.stream!r}, "
                f"worker {worker_id} owns {admission.stream!r}",
            )
        return self.repository.claim_task(task_id=task_id, worker_id=worker_id)

    def release_worker(self, worker_id: str) -> None:
        """Forget a worker that exited so its stream can be rebound."""

        with self._lock:
            admission = self._workers.pop(worker_id, None)
        if admission is not None:
            self.registry.unbind_worker(stream=admission.stream)
