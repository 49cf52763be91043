"""Stream registry: ownership domains bound one-to-one to workers."""

from __future__ import annotations

import logging
import threading

from teamflow.orchestrator.models import StreamSpec
from teamflow.orchestrator.plan import resources_overlap
from teamflow.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class StreamRegistry:
    """Streams of one run and the worker bound to each of them."""

    def __init__(self, *, repository: OrchestratorRepository, run_id: str) -> None:
        self.repository = repository
        self.run_id = run_id
        self._lock = threading.Lock()
        self._streams: dict[str, StreamSpec] = {}
        self._workers: dict[str, str] = {}

    @classmethod
    def load(cls, *, repository: OrchestratorRepository, run_id: str) -> StreamRegistry:
        """Rebuild the registry from streams stored for ``run_id``."""

        registry = cls(repository=repository, run_id=run_id)
        for stream in repository.list_streams(run_id=run_id):
            registry._streams[stream.name] = stream
        return registry

    def register(self, stream: StreamSpec) -> None:
        """Persist a stream; its resources must not overlap any registered stream."""

        with self._lock:
            if stream.name in self._streams:
                raise ValueError(f"Stream already registered: {stream.name}")
            for other in self._streams.values():
                for resource in stream.owned_resources:
                    clash = next(
                        (
                            item
                            for item in other.owned_resources
                            if resources_overlap(resource, item)
                        ),
                        None,
                    )
                    if clash is not None:
                        raise ValueError(
                            f"Stream {stream.name!r} resource {resource!r} overlaps "
                            f"{clash!r} owned by {other.name!r}",
                        )
            self.repository.register_stream(run_id=self.run_id, stream=stream)
            self._streams[stream.name] = stream
        logger.info("Registered stream %s (run=%s)", stream.name, self.run_id)

    def get(self, name: str) -> StreamSpec:
        with self._lock:
            try:
                return self._streams[name]
            except KeyError as error:
                raise ValueError(f"Unknown stream: {name}") from error

    def names(self) -> list[str]:
        with self._lock:
            return list(self._streams)

    def required_capabilities(self, name: str) -> tuple[str, ...]:
        return self.get(name).required_capabilities

    def bind_worker(self, *, stream: str, worker_id: str) -> None:
        """Bind ``worker_id`` as the only worker of ``stream``."""

        with self._lock:
            if stream not in self._streams:
                raise ValueError(f"Unknown stream: {stream}")
            bound = self._workers.get(stream)
            if bound is not None and bound != worker_id:
                raise ValueError(f"Stream {stream!r} is already bound to worker {bound!r}")
            if worker_id in self._workers.values() and bound != worker_id:
                raise ValueError(f"Worker {worker_id!r} is already bound to another stream")
            self._workers[stream] = worker_id

    def unbind_worker(self, *, stream: str) -> None:
        with self._lock:
            self._workers.pop(stream, None)

    def worker_for(self, stream: str) -> str | None:
        with self._lock:
            return self._workers.get(stream)

    def stream_for(self, worker_id: str) -> str | None:
        with self._lock:
            for stream, bound in self._workers.items():
                if bound == worker_id:
                    return stream
        return None
