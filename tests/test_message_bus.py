"""Tests for local routing and the in-memory broker."""
from __future__ import annotations

from datetime import timedelta
from typing import List

import pytest

from agentforge.core.errors import CommunicationError, MessageRoutingError, MessageValidationError
from agentforge.core.message_bus import InMemoryMessageBroker, Subscription
from agentforge.core.models import Message, MessageType, utcnow
from agentforge.core.router import MessageManager, MessageRouter


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def _message(sender: str = "a", recipient: str = None, **kwargs) -> Message:
    return Message(type=MessageType.COMMAND, sender=sender, recipient=recipient, **kwargs)


@pytest.mark.anyio
async def test_router_runs_every_handler_then_raises() -> None:
    router = MessageRouter()
    seen: List[str] = []

    def broken(message: Message) -> None:
        raise RuntimeError("boom")

    async def healthy(message: Message) -> None:
        seen.append(message.id)

    router.register(broken)
    router.register(healthy)
    message = _message()

    with pytest.raises(MessageRoutingError) as excinfo:
        await router.route(message)

    assert seen == [message.id]
    assert isinstance(excinfo.value.__cause__, RuntimeError)


@pytest.mark.anyio
async def test_router_register_is_idempotent_and_clear_empties() -> None:
    router = MessageRouter()
    calls: List[Message] = []
    router.register(calls.append)
    router.register(calls.append)
    assert len(router) == 1

    await router.route(_message())
    assert len(calls) == 1

    router.clear()
    await router.route(_message())
    assert len(calls) == 1


@pytest.mark.anyio
async def test_message_manager_dispatch() -> None:
    manager = MessageManager()
    handled: List[Message] = []
    manager.add_handler(MessageType.COMMAND, handled.append)

    assert await manager.dispatch(_message()) is True
    assert await manager.dispatch(Message(type="custom", sender="a")) is False
    assert manager.types() == ["COMMAND"]

    manager.remove_handler(MessageType.COMMAND)
    assert manager.get_handler(MessageType.COMMAND) is None
    assert len(handled) == 1


@pytest.mark.anyio
async def test_unicast_reaches_only_recipient() -> None:
    broker = InMemoryMessageBroker()
    inboxes = {"b": [], "c": []}
    for agent_id, inbox in inboxes.items():
        await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=inbox.append, subscriber_id=agent_id))

    await broker.publish(_message(sender="a", recipient="b"))
    await broker.join()

    assert len(inboxes["b"]) == 1
    assert inboxes["c"] == []
    await broker.close()


@pytest.mark.anyio
async def test_broadcast_reaches_everyone_but_sender() -> None:
    broker = InMemoryMessageBroker()
    inboxes = {"a": [], "b": [], "c": []}
    for agent_id, inbox in inboxes.items():
        await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=inbox.append, subscriber_id=agent_id))

    await broker.publish(_message(sender="a"))
    await broker.join()

    assert inboxes["a"] == []
    assert len(inboxes["b"]) == 1
    assert len(inboxes["c"]) == 1
    await broker.close()


@pytest.mark.anyio
async def test_publish_order_is_preserved_per_subscriber() -> None:
    broker = InMemoryMessageBroker()
    received: List[int] = []
    await broker.subscribe(
        Subscription(
            type=MessageType.COMMAND,
            handler=lambda message: received.append(message.payload["n"]),
            subscriber_id="b",
        )
    )

    for n in range(20):
        await broker.publish(_message(recipient="b", payload={"n": n}))
    await broker.join()

    assert received == list(range(20))
    await broker.close()


@pytest.mark.anyio
async def test_filter_and_unsubscribe() -> None:
    broker = InMemoryMessageBroker()
    received: List[Message] = []
    await broker.subscribe(
        Subscription(
            type=MessageType.COMMAND,
            handler=received.append,
            filter=lambda message: message.priority > 0,
        )
    )

    await broker.publish(_message(priority=0))
    await broker.publish(_message(priority=5))
    await broker.join()
    assert [message.priority for message in received] == [5]

    await broker.unsubscribe(MessageType.COMMAND)
    assert broker.subscriber_count(MessageType.COMMAND) == 0
    await broker.publish(_message(priority=5))
    await broker.join()
    assert len(received) == 1
    await broker.close()


@pytest.mark.anyio
async def test_failing_handler_does_not_reach_publisher() -> None:
    broker = InMemoryMessageBroker()
    received: List[Message] = []

    async def broken(message: Message) -> None:
        raise RuntimeError("handler failed")

    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=broken))
    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=received.append))

    await broker.publish(_message())
    await broker.join()

    assert len(received) == 1
    await broker.close()


@pytest.mark.anyio
async def test_expired_messages_are_dropped() -> None:
    broker = InMemoryMessageBroker()
    received: List[Message] = []
    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=received.append))

    await broker.publish(_message(ttl=10, timestamp=utcnow() - timedelta(seconds=5)))
    await broker.publish(_message(ttl=60_000))
    await broker.join()

    assert len(received) == 1
    await broker.close()


@pytest.mark.anyio
async def test_invalid_and_closed_publishes_raise() -> None:
    broker = InMemoryMessageBroker()

    with pytest.raises(MessageValidationError):
        await broker.publish(Message(type=MessageType.COMMAND, sender=""))

    await broker.close()
    with pytest.raises(CommunicationError):
        await broker.publish(_message())


@pytest.mark.anyio
async def test_serialized_delivery_hands_out_equal_copies() -> None:
    broker = InMemoryMessageBroker(serialize_messages=True)
    received: List[Message] = []
    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=received.append))

    published = await broker.publish(_message(payload={"at": utcnow()}))
    await broker.join()

    assert received == [published]
    assert received[0] is not published
    await broker.close()


@pytest.mark.anyio
async def test_serialized_delivery_refuses_non_json_payloads() -> None:
    broker = InMemoryMessageBroker(serialize_messages=True)
    received: List[Message] = []
    await broker.subscribe(Subscription(type=MessageType.COMMAND, handler=received.append))

    with pytest.raises(MessageValidationError):
        await broker.publish(_message(payload={"blob": object()}))
    await broker.join()

    assert received == []
    await broker.close()


@pytest.mark.anyio
async def test_acknowledge_and_reject_are_recorded() -> None:
    broker = InMemoryMessageBroker()

    await broker.acknowledge("m-1")
    await broker.reject("m-2", "bad payload")

    assert "m-1" in broker.acknowledged
    assert broker.rejected == {"m-2": "bad payload"}
    await broker.close()
