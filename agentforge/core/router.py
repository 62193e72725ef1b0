"""Local, in-process message fan-out and per-type handler registry."""
from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .errors import MessageRoutingError
from .models import Message, MessageType, channel_name

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Message], Union[Awaitable[None], None]]


async def invoke_handler(handler: MessageCallback, message: Message) -> Any:
    outcome = handler(message)
    if inspect.isawaitable(outcome):
        return await outcome
    return outcome


class MessageRouter:
    """Deliver a message to every registered handler, in registration order.

    A failing handler does not prevent delivery to its siblings. Once every
    handler ran, the first failure is re-raised to the caller wrapped in
    :class:`MessageRoutingError`.
    """

    def __init__(self) -> None:
        self._handlers: List[MessageCallback] = []

    def register(self, handler: MessageCallback) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unregister(self, handler: MessageCallback) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def clear(self) -> None:
        self._handlers.clear()

    def __len__(self) -> int:
        return len(self._handlers)

    async def route(self, message: Message) -> None:
        errors: List[BaseException] = []
        for handler in list(self._handlers):
            try:
                await invoke_handler(handler, message)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Handler %r failed for message %s (%s): %s",
                    handler,
                    message.id,
                    message.channel,
                    exc,
                )
                errors.append(exc)
        if errors:
            raise MessageRoutingError(
                f"{len(errors)} handler(s) failed routing message {message.id}",
                context={"message_id": message.id, "type": message.channel},
            ) from errors[0]


class MessageManager:
    """Maps each message type to the single handler an agent uses for it."""

    def __init__(self) -> None:
        self._handlers: Dict[str, MessageCallback] = {}

    def add_handler(self, message_type: Union[MessageType, str], handler: MessageCallback) -> None:
        self._handlers[channel_name(message_type)] = handler

    def remove_handler(self, message_type: Union[MessageType, str]) -> None:
        self._handlers.pop(channel_name(message_type), None)

    def get_handler(self, message_type: Union[MessageType, str]) -> Optional[MessageCallback]:
        return self._handlers.get(channel_name(message_type))

    def get_all_handlers(self) -> Dict[str, MessageCallback]:
        return dict(self._handlers)

    def types(self) -> List[str]:
        return list(self._handlers)

    async def dispatch(self, message: Message) -> bool:
        """Run the handler for ``message.type``; return False when none is registered."""
        handler = self.get_handler(message.type)
        if handler is None:
            logger.warning("No handler registered for message type %s", message.channel)
            return False
        await invoke_handler(handler, message)
        return True
