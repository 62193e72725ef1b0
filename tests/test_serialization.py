"""Tests for the JSON message codec and typed payloads."""
from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from agentforge.core.errors import MessageValidationError
from agentforge.core.models import Message, MessageType, Task, TaskResult
from agentforge.core.payloads import (
    TaskAssignmentPayload,
    TaskResultPayload,
    decode_payload,
    encode_payload,
)
from agentforge.core.serialization import MessageSerializer


def test_roundtrip_keeps_nested_datetimes_and_broadcast_recipient() -> None:
    serializer = MessageSerializer()
    message = Message(
        type=MessageType.WORKFLOW_STEP_UPDATE,
        sender="orchestrator",
        payload={
            "started": datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
            "history": [{"at": datetime(2024, 5, 1, 12, 31, tzinfo=timezone.utc)}],
        },
        correlation_id="wf-1",
        ttl=5000,
        signature="sig",
    )

    restored = serializer.deserialize(serializer.serialize(message))

    assert restored == message
    assert restored.recipient is None
    assert restored.type is MessageType.WORKFLOW_STEP_UPDATE
    assert isinstance(restored.payload["history"][0]["at"], datetime)


def test_custom_types_survive_as_strings() -> None:
    serializer = MessageSerializer()
    message = Message(type="market.tick", sender="feed", recipient="trader")

    restored = serializer.deserialize(serializer.serialize(message))

    assert restored.type == "market.tick"
    assert restored.recipient == "trader"


def test_datetimes_are_tagged_on_the_wire() -> None:
    serializer = MessageSerializer()
    when = datetime(2024, 1, 1, tzinfo=timezone.utc)

    raw = json.loads(serializer.serialize(Message(type=MessageType.COMMAND, sender="a", timestamp=when)))

    assert raw["timestamp"] == {"__type": "datetime", "value": when.isoformat()}


@pytest.mark.parametrize(
    "data",
    [
        "not json",
        json.dumps({"type": "COMMAND", "sender": "a"}),
        json.dumps({"id": "1", "type": "COMMAND", "sender": "a", "timestamp": "2024-01-01", "extra": 1}),
    ],
)
def test_deserialize_rejects_malformed_input(data: str) -> None:
    with pytest.raises(MessageValidationError):
        MessageSerializer().deserialize(data)


def test_serialize_rejects_values_json_cannot_carry() -> None:
    serializer = MessageSerializer()

    for payload in ({"result": TaskResult(success=True)}, {"ids": {1, 2}}):
        with pytest.raises(MessageValidationError):
            serializer.serialize(Message(type=MessageType.COMMAND, sender="a", payload=payload))


def test_validate() -> None:
    serializer = MessageSerializer()

    assert serializer.validate(Message(type=MessageType.COMMAND, sender="a"))
    assert not serializer.validate(Message(type=MessageType.COMMAND, sender=""))
    assert not serializer.validate({"id": "x"})


def test_typed_payload_roundtrip_through_message() -> None:
    task = Task.create("fetch", task_id="wf:step", input={"url": "https://example.com"})
    message = Message(
        type=MessageType.TASK_ASSIGNMENT,
        sender="orchestrator",
        payload=encode_payload(TaskAssignmentPayload(task=task)),
    )

    decoded = decode_payload(message)

    assert isinstance(decoded, TaskAssignmentPayload)
    assert decoded.task.config.id == "wf:step"
    assert decoded.task.config.input == {"url": "https://example.com"}


def test_decode_payload_rejects_wrong_shape() -> None:
    message = Message(type=MessageType.TASK_RESULT, sender="agent", payload={"result": {"success": True}})

    with pytest.raises(MessageValidationError):
        decode_payload(message)

    good = Message(
        type=MessageType.TASK_RESULT,
        sender="agent",
        payload=encode_payload(TaskResultPayload(task_id="t", result=TaskResult(success=True, data=[1, 2]))),
    )
    assert decode_payload(good).result.data == [1, 2]


def test_decode_payload_without_registered_model() -> None:
    with pytest.raises(MessageValidationError):
        decode_payload(Message(type="custom", sender="a"))
