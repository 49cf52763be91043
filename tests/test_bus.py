from __future__ import annotations

import queue
import threading
from pathlib import Path

import allure
import pytest
from conftest import create_run

from teamflow.orchestrator.bus import CommunicationBus, Inbox
from teamflow.orchestrator.errors import MessageTimeoutError, PrematureSendError
from teamflow.orchestrator.models import StreamSpec
from teamflow.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Stream Coordination"),
    allure.feature("Communication Bus"),
]

_STREAMS = (StreamSpec(name="s1"), StreamSpec(name="s2"))


def _finish(repository: OrchestratorRepository, task_id: str) -> None:
    repository.claim_task(task_id=task_id, worker_id="s1-worker")
    repository.complete_task(task_id=task_id, worker_id="s1-worker")


def test_send_is_refused_until_trigger_phase_completes(
    repository: OrchestratorRepository,
) -> None:
    run_id = create_run(repository, _STREAMS)
    task_id = repository.create_task(run_id=run_id, stream="s1", phase=1, name="contract")
    bus = CommunicationBus(repository=repository)
    repository.claim_task(task_id=task_id, worker_id="s1-worker")

    with pytest.raises(PrematureSendError, match="has not completed phase 1"):
        bus.send(run_id=run_id, from_stream="s1", to_stream="s2", trigger_phase=1, payload="v1")
    assert bus.list_messages(run_id=run_id) == []

    repository.complete_task(task_id=task_id, worker_id="s1-worker")
    message = bus.send(
        run_id=run_id,
        from_stream="s1",
        to_stream="s2",
        trigger_phase=1,
        payload="v1",
    )

    assert message.delivered is False
    assert bus.get_message(message.message_id) == message


def test_send_is_idempotent_per_route_and_phase(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    _finish(repository, repository.create_task(run_id=run_id, stream="s1", phase=1))
    bus = CommunicationBus(repository=repository)

    first = bus.send(run_id=run_id, from_stream="s1", to_stream="s2", trigger_phase=1, payload="a")
    second = bus.send(run_id=run_id, from_stream="s1", to_stream="s2", trigger_phase=1, payload="a")

    assert first.message_id == second.message_id
    assert len(bus.list_messages(run_id=run_id, stream="s2")) == 1


def test_stream_cannot_message_itself(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    bus = CommunicationBus(repository=repository)

    with pytest.raises(ValueError, match="cannot message itself"):
        bus.send(run_id=run_id, from_stream="s1", to_stream="s1", trigger_phase=1, payload="x")


def test_receive_delivers_each_message_once(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    _finish(repository, repository.create_task(run_id=run_id, stream="s1", phase=1))
    bus = CommunicationBus(repository=repository)
    bus.send(run_id=run_id, from_stream="s1", to_stream="s2", trigger_phase=1, payload="ready")

    assert bus.receive(run_id=run_id, stream="s1") == []
    received = bus.receive(run_id=run_id, stream="s2")
    assert [message.payload for message in received] == ["ready"]
    assert received[0].delivered is True
    assert bus.receive(run_id=run_id, stream="s2") == []

    inbox = bus.delivered_inbox(run_id=run_id, stream="s2")
    assert list(inbox) == [("s1", 1)]


def test_concurrent_receivers_split_messages_without_duplicates(tmp_path: Path) -> None:
    db_path = tmp_path / "bus.db"
    repository = OrchestratorRepository(db_path)
    repository.init_schema()
    run_id = create_run(repository, _STREAMS)
    _finish(repository, repository.create_task(run_id=run_id, stream="s1", phase=1))
    CommunicationBus(repository=repository).send(
        run_id=run_id,
        from_stream="s1",
        to_stream="s2",
        trigger_phase=1,
        payload="once",
    )

    start_event = threading.Event()
    result_queue: queue.Queue[int] = queue.Queue()

    def _receive() -> None:
        local = OrchestratorRepository(db_path)
        try:
            start_event.wait(timeout=2)
            received = CommunicationBus(repository=local).receive(run_id=run_id, stream="s2")
            result_queue.put(len(received))
        finally:
            local.close()

    threads = [threading.Thread(target=_receive) for _ in range(4)]
    for thread in threads:
        thread.start()
    start_event.set()
    for thread in threads:
        thread.join(timeout=10)
        assert thread.is_alive() is False

    assert sum(result_queue.get_nowait() for _ in threads) == 1
    repository.close()


def test_wait_for_fills_inbox_when_messages_arrive(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    _finish(repository, repository.create_task(run_id=run_id, stream="s1", phase=1))
    bus = CommunicationBus(repository=repository, poll_interval_seconds=0.01)
    bus.send(run_id=run_id, from_stream="s1", to_stream="s2", trigger_phase=1, payload="go")
    inbox: Inbox = {}

    result = bus.wait_for(
        run_id=run_id,
        stream="s2",
        expected=[("s1", 1)],
        timeout_seconds=1.0,
        inbox=inbox,
    )

    assert result is inbox
    assert inbox[("s1", 1)].payload == "go"


def test_wait_for_times_out_with_missing_routes(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    bus = CommunicationBus(repository=repository, poll_interval_seconds=0.01)

    with pytest.raises(MessageTimeoutError) as error_info:
        bus.wait_for(
            run_id=run_id,
            stream="s2",
            expected=[("s1", 1)],
            timeout_seconds=0.05,
            inbox={},
        )

    assert error_info.value.missing == (("s1", 1),)


def test_wait_for_stops_early_on_shutdown(repository: OrchestratorRepository) -> None:
    run_id = create_run(repository, _STREAMS)
    bus = CommunicationBus(repository=repository, poll_interval_seconds=0.01)

    with pytest.raises(MessageTimeoutError, match="still waiting for: s1@phase1"):
        bus.wait_for(
            run_id=run_id,
            stream="s2",
            expected=[("s1", 1)],
            timeout_seconds=60.0,
            inbox={},
            stop_requested=lambda: True,
        )
