import asyncio
import time

import pytest

from task_conductor.events import CONTEXT_SHARED, MESSAGE_DELIVERY_FAILED, MESSAGE_HANDLER_ERROR, EventEmitter
from task_conductor.exceptions import MessageBusError, MessageTimeoutError, RecipientNotFoundError
from task_conductor.message_bus import BROADCAST, CONTEXT_SHARE, Message, MessageBus


@pytest.mark.asyncio
async def test_direct_message_reaches_handler() -> None:
    bus = MessageBus()
    received: list[Message] = []
    bus.register_participant("backend", received.append)
    bus.register_participant("frontend")

    sent = await bus.send_message(Message(sender="frontend", recipient="backend", type="context", payload={"k": 1}))
    await bus.flush()

    assert sent.id
    assert sent.timestamp > 0
    assert [m.payload for m in received] == [{"k": 1}]
    assert bus.history("backend")[-1].id == sent.id


@pytest.mark.asyncio
async def test_broadcast_skips_sender() -> None:
    bus = MessageBus()
    seen: dict[str, list[str]] = {"a": [], "b": [], "c": []}
    for pid in seen:
        bus.register_participant(pid, lambda m, pid=pid: seen[pid].append(m.type))

    await bus.send_message(Message(sender="a", recipient=BROADCAST, type="hello"))
    await bus.flush()

    assert seen == {"a": [], "b": ["hello"], "c": ["hello"]}


@pytest.mark.asyncio
async def test_typed_subscriptions_filter_messages() -> None:
    bus = MessageBus()
    bus.register_participant("worker")
    bus.register_participant("lead")
    updates: list[str] = []

    async def on_update(message: Message) -> None:
        updates.append(message.payload)

    bus.subscribe("worker", ["status_update"], on_update)

    await bus.send_message(Message(sender="lead", recipient="worker", type="other", payload="x"))
    await bus.send_message(Message(sender="lead", recipient="worker", type="status_update", payload="y"))
    await bus.flush()

    assert updates == ["y"]


@pytest.mark.asyncio
async def test_subscribe_unknown_participant_raises() -> None:
    bus = MessageBus()

    with pytest.raises(RecipientNotFoundError):
        bus.subscribe("nobody", ["*"], lambda m: None)


@pytest.mark.asyncio
async def test_unknown_recipient_emits_event_instead_of_raising() -> None:
    events = EventEmitter()
    failures = []
    events.subscribe(failures.append, [MESSAGE_DELIVERY_FAILED])
    bus = MessageBus(events=events)
    bus.register_participant("a")

    await bus.send_message(Message(sender="a", recipient="ghost", type="ping"))

    assert len(failures) == 1
    assert isinstance(failures[0].data["error"], RecipientNotFoundError)


@pytest.mark.asyncio
async def test_handler_errors_become_events() -> None:
    events = EventEmitter()
    errors = []
    events.subscribe(errors.append, [MESSAGE_HANDLER_ERROR])
    bus = MessageBus(events=events)
    delivered: list[str] = []

    def broken(message: Message) -> None:
        raise RuntimeError("handler bug")

    bus.register_participant("target", broken)
    bus.subscribe("target", ["*"], lambda m: delivered.append(m.type))

    await bus.send_message(Message(sender="x", recipient="target", type="ping"))
    await bus.flush()

    assert delivered == ["ping"]
    assert str(errors[0].data["error"]) == "handler bug"


@pytest.mark.asyncio
async def test_request_response_round_trip() -> None:
    bus = MessageBus()
    bus.register_participant("asker")

    async def answer(message: Message) -> None:
        await bus.reply(message, {"echo": message.payload})

    bus.register_participant("responder", answer)

    response = await bus.send_message_with_response(
        Message(sender="asker", recipient="responder", type="question", payload="hi"),
        timeout_ms=1000,
    )

    assert response.payload == {"echo": "hi"}
    assert response.correlation_id is not None
    assert bus.pending_count == 0


@pytest.mark.asyncio
async def test_request_without_responder_times_out() -> None:
    bus = MessageBus()
    bus.register_participant("asker")
    bus.register_participant("silent")

    started = time.monotonic()
    with pytest.raises(TimeoutError) as exc_info:
        await bus.send_message_with_response(
            Message(sender="asker", recipient="silent", type="question"),
            timeout_ms=50,
        )
    elapsed = time.monotonic() - started

    assert isinstance(exc_info.value, MessageTimeoutError)
    assert isinstance(exc_info.value, MessageBusError)
    assert 0.04 <= elapsed < 0.5
    assert bus.pending_count == 0


@pytest.mark.asyncio
async def test_unregister_rejects_pending_waiters() -> None:
    bus = MessageBus()
    bus.register_participant("asker")
    bus.register_participant("silent")

    request = asyncio.create_task(bus.send_message_with_response(
        Message(sender="asker", recipient="silent", type="question"),
        timeout_ms=5000,
    ))
    await asyncio.sleep(0.01)
    assert bus.unregister_participant("asker") is True

    with pytest.raises(MessageBusError):
        await request
    assert bus.pending_count == 0


@pytest.mark.asyncio
async def test_history_is_bounded() -> None:
    bus = MessageBus(history_limit=3)
    bus.register_participant("a")
    bus.register_participant("b")

    for i in range(5):
        await bus.send_message(Message(sender="a", recipient="b", type="n", payload=i))

    assert [m.payload for m in bus.history("b")] == [2, 3, 4]
    assert [m.payload for m in bus.history("b", limit=1)] == [4]
    assert bus.stats()["participants"] == 2


@pytest.mark.asyncio
async def test_sender_does_not_wait_for_slow_handlers() -> None:
    bus = MessageBus()
    release = asyncio.Event()
    handled: list[str] = []

    async def slow(message: Message) -> None:
        await release.wait()
        handled.append(message.type)

    bus.register_participant("sender")
    bus.register_participant("slow", slow)

    await asyncio.wait_for(
        bus.send_message(Message(sender="sender", recipient="slow", type="ping")),
        timeout=0.5,
    )
    assert handled == []
    assert bus.delivery_count == 1

    release.set()
    await bus.flush()
    assert handled == ["ping"]
    assert bus.delivery_count == 0


@pytest.mark.asyncio
async def test_request_times_out_while_responder_handler_is_still_running() -> None:
    bus = MessageBus()
    bus.register_participant("asker")

    async def stalls(message: Message) -> None:
        await asyncio.sleep(1.0)

    bus.register_participant("stalling", stalls)

    started = time.monotonic()
    with pytest.raises(MessageTimeoutError):
        await bus.send_message_with_response(
            Message(sender="asker", recipient="stalling", type="question"),
            timeout_ms=50,
        )
    elapsed = time.monotonic() - started

    assert elapsed < 0.3
    assert bus.pending_count == 0
    await bus.close()
    assert bus.delivery_count == 0


@pytest.mark.asyncio
async def test_broadcast_stays_inside_the_sender_workspace() -> None:
    bus = MessageBus()
    seen: list[str] = []
    bus.register_participant("api", workspace_id="shop")
    bus.register_participant("ui", lambda m: seen.append("ui"), workspace_id="shop")
    bus.register_participant("ops", lambda m: seen.append("ops"), workspace_id="infra")

    await bus.send_message(Message(sender="api", recipient=BROADCAST, type="hello"))
    await bus.flush()

    assert seen == ["ui"]
    assert sorted(bus.workspace_participants("shop")) == ["api", "ui"]
    assert bus.stats()["workspaces"] == 2


@pytest.mark.asyncio
async def test_share_context_stores_data_and_notifies_workspace_peers() -> None:
    events = EventEmitter()
    shared_events = []
    events.subscribe(shared_events.append, [CONTEXT_SHARED])
    bus = MessageBus(events=events)
    received: list[Message] = []
    bus.register_participant("backend", workspace_id="shop")
    bus.register_participant("frontend", received.append, message_types=[CONTEXT_SHARE], workspace_id="shop")
    bus.register_participant("outsider", received.append, workspace_id="elsewhere")

    await bus.share_context("backend", "api_schema", {"paths": ["/orders"]})
    await bus.flush()

    assert bus.get_shared_context("backend", "api_schema") == {"paths": ["/orders"]}
    assert bus.get_shared_context("backend") == {"api_schema": {"paths": ["/orders"]}}
    assert bus.get_shared_context("backend", "missing") is None
    assert bus.get_shared_context("ghost") is None
    assert [(m.recipient, m.type) for m in received] == [("frontend", CONTEXT_SHARE)]
    assert received[0].payload == {"key": "api_schema", "data": {"paths": ["/orders"]}, "participant_id": "backend"}
    assert shared_events[0].data["key"] == "api_schema"


@pytest.mark.asyncio
async def test_share_context_requires_registration() -> None:
    bus = MessageBus()

    with pytest.raises(RecipientNotFoundError):
        await bus.share_context("nobody", "k", 1)
