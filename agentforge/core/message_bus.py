"""Publish/subscribe broker with per-subscriber mailboxes."""
from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Union

from .errors import CommunicationError, MessageValidationError
from .models import Message, MessageType, channel_name, new_id, utcnow
from .router import MessageCallback, invoke_handler
from .serialization import MessageSerializer

logger = logging.getLogger(__name__)


@dataclass(slots=True, eq=False)
class Subscription:
    """Interest in one message type, optionally bound to a subscriber id."""

    type: Union[MessageType, str]
    handler: MessageCallback
    filter: Optional[Callable[[Message], bool]] = None
    subscriber_id: Optional[str] = None

    @property
    def channel(self) -> str:
        return channel_name(self.type)

    def accepts(self, message: Message) -> bool:
        if message.recipient is not None:
            if self.subscriber_id != message.recipient:
                return False
        elif self.subscriber_id is not None and self.subscriber_id == message.sender:
            # Broadcasts never loop back to their sender.
            return False
        return self.filter is None or bool(self.filter(message))


class MessageBroker(abc.ABC):
    """Transport-agnostic pub/sub contract used by agents and the orchestrator."""

    @abc.abstractmethod
    async def publish(self, message: Message) -> Message:
        """Deliver ``message`` to interested subscribers; return the published copy."""

    @abc.abstractmethod
    async def subscribe(self, subscription: Subscription) -> None:
        """Register interest in ``subscription.type``."""

    @abc.abstractmethod
    async def unsubscribe(
        self,
        message_type: Union[MessageType, str],
        *,
        subscriber_id: Optional[str] = None,
        handler: Optional[MessageCallback] = None,
    ) -> None:
        """Drop subscriptions for a type, narrowed by subscriber or handler when given."""

    async def acknowledge(self, message_id: str) -> None:
        return None

    async def reject(self, message_id: str, reason: Optional[str] = None) -> None:
        return None

    async def close(self) -> None:
        return None


class _Mailbox:
    __slots__ = ("subscription", "queue", "worker", "active")

    def __init__(self, subscription: Subscription) -> None:
        self.subscription = subscription
        self.queue: asyncio.Queue[Message] = asyncio.Queue()
        self.worker: Optional[asyncio.Task[None]] = None
        self.active = True


class InMemoryMessageBroker(MessageBroker):
    """Single-process broker.

    Every subscription owns a FIFO mailbox drained by its own worker task, so
    publish order is kept per channel for each subscriber and a slow handler
    only delays its own mailbox. Handler failures are logged, never raised
    into the publisher.
    """

    def __init__(
        self,
        *,
        namespace: str = "agent-forge",
        serializer: Optional[MessageSerializer] = None,
        serialize_messages: bool = False,
    ) -> None:
        self.namespace = namespace
        self._serializer = serializer or MessageSerializer()
        self._serialize_messages = serialize_messages
        self._mailboxes: Dict[str, List[_Mailbox]] = defaultdict(list)
        self._unfinished = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._closed = False
        self.acknowledged: Set[str] = set()
        self.rejected: Dict[str, Optional[str]] = {}

    async def publish(self, message: Message) -> Message:
        if self._closed:
            logger.error("Publish on closed broker dropped message %s (%s)", message.id, message.channel)
            raise CommunicationError(
                f"Broker '{self.namespace}' is closed",
                context={"message_id": message.id, "type": message.channel},
            )
        if not message.id or message.timestamp is None:
            message = dataclasses.replace(
                message,
                id=message.id or new_id(),
                timestamp=message.timestamp or utcnow(),
            )
        if not self._serializer.validate(message):
            logger.error("Rejected malformed message %r", message)
            raise MessageValidationError(
                "Message failed envelope validation",
                context={"message_id": message.id},
            )

        targets = [
            mailbox
            for mailbox in self._mailboxes.get(message.channel, [])
            if mailbox.active and mailbox.subscription.accepts(message)
        ]
        if not targets:
            if message.recipient is not None:
                logger.warning(
                    "No subscriber '%s' for %s message %s",
                    message.recipient,
                    message.channel,
                    message.id,
                )
            else:
                logger.debug("No subscribers for %s message %s", message.channel, message.id)

        for mailbox in targets:
            delivered = message
            if self._serialize_messages:
                delivered = self._serializer.deserialize(self._serializer.serialize(message))
            self._unfinished += 1
            self._idle.clear()
            mailbox.queue.put_nowait(delivered)
        return message

    async def subscribe(self, subscription: Subscription) -> None:
        if self._closed:
            raise CommunicationError(f"Broker '{self.namespace}' is closed")
        mailboxes = self._mailboxes[subscription.channel]
        if any(mailbox.subscription is subscription for mailbox in mailboxes):
            return
        mailbox = _Mailbox(subscription)
        mailbox.worker = asyncio.create_task(
            self._drain(mailbox),
            name=f"{self.namespace}:{subscription.channel}:{subscription.subscriber_id or '*'}",
        )
        mailboxes.append(mailbox)

    async def unsubscribe(
        self,
        message_type: Union[MessageType, str],
        *,
        subscriber_id: Optional[str] = None,
        handler: Optional[MessageCallback] = None,
    ) -> None:
        channel = channel_name(message_type)
        kept: List[_Mailbox] = []
        for mailbox in self._mailboxes.get(channel, []):
            subscription = mailbox.subscription
            if subscriber_id is not None and subscription.subscriber_id != subscriber_id:
                kept.append(mailbox)
            elif handler is not None and subscription.handler != handler:
                kept.append(mailbox)
            else:
                self._retire(mailbox)
        if kept:
            self._mailboxes[channel] = kept
        else:
            self._mailboxes.pop(channel, None)

    async def acknowledge(self, message_id: str) -> None:
        self.acknowledged.add(message_id)

    async def reject(self, message_id: str, reason: Optional[str] = None) -> None:
        logger.warning("Message %s rejected: %s", message_id, reason or "no reason given")
        self.rejected[message_id] = reason

    async def join(self) -> None:
        """Wait until every queued delivery, including follow-ups it caused, is handled."""
        await self._idle.wait()

    def subscriber_count(self, message_type: Union[MessageType, str]) -> int:
        return sum(1 for mailbox in self._mailboxes.get(channel_name(message_type), []) if mailbox.active)

    async def close(self) -> None:
        self._closed = True
        workers = []
        for mailboxes in self._mailboxes.values():
            for mailbox in mailboxes:
                if mailbox.worker is not None and mailbox.worker is not asyncio.current_task():
                    workers.append(mailbox.worker)
                self._retire(mailbox)
        self._mailboxes.clear()
        await asyncio.gather(*workers, return_exceptions=True)
        self._idle.set()

    def _retire(self, mailbox: _Mailbox) -> None:
        mailbox.active = False
        while not mailbox.queue.empty():
            mailbox.queue.get_nowait()
            self._task_done()
        if mailbox.worker is not None and mailbox.worker is not asyncio.current_task():
            mailbox.worker.cancel()

    def _task_done(self) -> None:
        self._unfinished -= 1
        if self._unfinished <= 0:
            self._unfinished = 0
            self._idle.set()

    async def _drain(self, mailbox: _Mailbox) -> None:
        subscription = mailbox.subscription
        while mailbox.active:
            message = await mailbox.queue.get()
            try:
                if message.is_expired():
                    logger.warning("Dropping expired %s message %s", message.channel, message.id)
                else:
                    await invoke_handler(subscription.handler, message)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Subscriber %s failed handling %s message %s",
                    subscription.subscriber_id or "<anonymous>",
                    message.channel,
                    message.id,
                )
            finally:
                self._task_done()
