"""Point-to-point message channel between streams at phase boundaries."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import replace

from teamflow.orchestrator.errors import MessageTimeoutError, PrematureSendError
from teamflow.orchestrator.models import MessageView
from teamflow.orchestrator.repository import OrchestratorRepository
from teamflow.storage.common import utc_now

logger = logging.getLogger(__name__)

Inbox = dict[tuple[str, int], MessageView]


class CommunicationBus:
    """Durable cross-stream handoffs stored next to the tasks they describe."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        poll_interval_seconds: float = 0.2,
    ) -> None:
        self.repository = repository
        self.poll_interval_seconds = poll_interval_seconds

    def send(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        from_stream: str,
        to_stream: str,
        trigger_phase: int,
        payload: str,
    ) -> MessageView:
        """Store a handoff once every ``from_stream`` task of ``trigger_phase`` is completed.

        Sending the same route and phase again returns the stored message.
        """

        if from_stream == to_stream:
            raise ValueError(f"Stream {from_stream!r} cannot message itself")
        if not self.repository.phase_completed_for_stream(
            run_id=run_id,
            stream=from_stream,
            phase=trigger_phase,
        ):
            raise PrematureSendError(
                f"Stream {from_stream} has not completed phase {trigger_phase}; "
                f"message to {to_stream} refused",
            )
        message, created = self.repository.insert_message(
            run_id=run_id,
            from_stream=from_stream,
            to_stream=to_stream,
            trigger_phase=trigger_phase,
            payload=payload,
        )
        if created:
            logger.info(
                "Message sent %s -> %s after phase %s (run=%s)",
                from_stream,
                to_stream,
                trigger_phase,
                run_id,
            )
        return message

    def receive(self, *, run_id: str, stream: str) -> list[MessageView]:
        """Deliver every undelivered message addressed to ``stream``.

        Each message is marked delivered by its own compare-and-swap; a
        message taken by a concurrent receiver is skipped.
        """

        delivered: list[MessageView] = []
        for message in self.repository.list_messages(
            run_id=run_id,
            to_stream=stream,
            delivered=False,
        ):
            if self.repository.mark_message_delivered(message_id=message.message_id):
                delivered.append(replace(message, delivered=True, delivered_at=utc_now()))
        return delivered

    def delivered_inbox(self, *, run_id: str, stream: str) -> Inbox:
        """Messages already delivered to ``stream``; a resumed worker starts from these."""

        return {
            (message.from_stream, message.trigger_phase): message
            for message in self.repository.list_messages(
                run_id=run_id,
                to_stream=stream,
                delivered=True,
            )
        }

    def get_message(self, message_id: str) -> MessageView | None:
        return self.repository.get_message(message_id=message_id)

    def list_messages(self, *, run_id: str, stream: str | None = None) -> list[MessageView]:
        return self.repository.list_messages(run_id=run_id, to_stream=stream)

    def wait_for(  # noqa: PLR0913
        self,
        *,
        run_id: str,
        stream: str,
        expected: Iterable[tuple[str, int]],
        timeout_seconds: float,
        inbox: Inbox,
        stop_requested: Callable[[], bool] | None = None,
    ) -> Inbox:
        """Block until every expected ``(from_stream, trigger_phase)`` is in ``inbox``.

        Received messages are added to ``inbox`` in place. Raises
        ``MessageTimeoutError`` when the deadline passes or a stop is requested.
        """

        wanted = tuple(expected)
        deadline = time.monotonic() + timeout_seconds
        while True:
            for message in self.receive(run_id=run_id, stream=stream):
                inbox[(message.from_stream, message.trigger_phase)] = message
            missing = tuple(key for key in wanted if key not in inbox)
            if not missing:
                return inbox

            remaining = deadline - time.monotonic()
            stopping = stop_requested is not None and stop_requested()
            if remaining <= 0 or stopping:
                labels = ", ".join(f"{source}@phase{phase}" for source, phase in missing)
                raise MessageTimeoutError(
                    f"Stream {stream} is still waiting for: {labels}",
                    missing=missing,
                )
            time.sleep(min(self.poll_interval_seconds, remaining))
