"""JSON wire codec for messages with tagged datetime values."""
from __future__ import annotations

import dataclasses
import json
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .errors import MessageValidationError
from .models import Message, channel_name, coerce_message_type

_DATETIME_TAG = "datetime"


class MessageEnvelope(BaseModel):
    """Shape every message must have before it is trusted."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    sender: str = Field(min_length=1)
    recipient: Optional[str] = None
    timestamp: datetime = Field(strict=True)
    payload: Any = None
    correlation_id: Optional[str] = None
    reply_to: Optional[str] = None
    priority: int = 0
    ttl: Optional[float] = Field(default=None, ge=0)
    signature: Optional[str] = None


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return {"__type": _DATETIME_TAG, "value": value.isoformat()}
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(obj: Dict[str, Any]) -> Any:
    if obj.get("__type") == _DATETIME_TAG and set(obj) == {"__type", "value"}:
        return datetime.fromisoformat(obj["value"])
    return obj


def _as_dict(message: Any) -> Any:
    if isinstance(message, Message):
        return {
            field.name: getattr(message, field.name)
            for field in dataclasses.fields(message)
        } | {"type": channel_name(message.type)}
    return message


class MessageSerializer:
    """Lossless ``Message`` <-> JSON string codec."""

    def serialize(self, message: Message) -> str:
        if not self.validate(message):
            raise MessageValidationError(
                "Refusing to serialize an invalid message",
                context={"message_id": getattr(message, "id", None)},
            )
        try:
            return json.dumps(_as_dict(message), default=_encode)
        except (TypeError, ValueError) as exc:
            raise MessageValidationError(
                f"Message payload is not JSON-compatible: {exc}",
                context={"message_id": message.id},
            ) from exc

    def deserialize(self, data: str) -> Message:
        try:
            raw = json.loads(data, object_hook=_decode)
        except json.JSONDecodeError as exc:
            raise MessageValidationError(f"Message is not valid JSON: {exc.msg}") from exc
        try:
            envelope = MessageEnvelope.model_validate(raw)
        except PydanticValidationError as exc:
            raise MessageValidationError(
                f"Malformed message: {exc.error_count()} error(s)",
                context={"errors": exc.errors(include_url=False)},
            ) from exc
        fields = envelope.model_dump()
        fields["type"] = coerce_message_type(fields["type"])
        fields["payload"] = raw.get("payload") if raw.get("payload") is not None else {}
        return Message(**fields)

    def validate(self, message: Any) -> bool:
        try:
            MessageEnvelope.model_validate(_as_dict(message))
        except PydanticValidationError:
            return False
        return True
