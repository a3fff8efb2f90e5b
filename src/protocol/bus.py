"""In-process message bus with per-recipient inboxes.

- ``send`` is synchronous and never blocks: it appends to inboxes and returns
  the message id.
- Direct messages go to the named recipient's inbox (created on first use, so
  messages to ``system`` queue until the manager drains them).
- ``to="broadcast"`` publishes on a topic; every subscriber except the sender
  gets a copy in its inbox. The subscriber set can grow and shrink at runtime.
- ``receive`` drains an inbox in arrival order.
- ``expect_reply`` lets an agent suspend on a HUMAN_APPROVAL_RESPONSE without
  draining its own inbox (the drain loop may be the one waiting).

Nothing here is durable; a restart loses every queued message.
"""

from __future__ import annotations

import asyncio
import logging
from collections import Counter, deque
from typing import Any, Callable

from .messages import BROADCAST, Message, MessageType

logger = logging.getLogger(__name__)

SendListener = Callable[[Message], None]


class MessageBus:
    """Per-recipient inboxes plus a broadcast topic."""

    def __init__(self) -> None:
        self._inboxes: dict[str, deque[Message]] = {}
        self._subscribers: set[str] = set()
        self._reply_waiters: dict[tuple[str, str], asyncio.Future[Message]] = {}
        self._listeners: list[SendListener] = []
        self._sent = 0
        self._delivered = 0
        self._by_type: Counter[str] = Counter()

    # ------------------------------------------------------------------
    # Topic membership
    # ------------------------------------------------------------------

    def subscribe(self, agent_id: str) -> None:
        """Join the broadcast topic (also creates the inbox)."""
        self._subscribers.add(agent_id)
        self._inboxes.setdefault(agent_id, deque())

    def unsubscribe(self, agent_id: str) -> None:
        """Leave the broadcast topic. Queued direct messages are kept."""
        self._subscribers.discard(agent_id)

    @property
    def subscribers(self) -> frozenset[str]:
        return frozenset(self._subscribers)

    def add_listener(self, listener: SendListener) -> None:
        """Register a callback invoked for every sent message (e.g. event log)."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Send / receive
    # ------------------------------------------------------------------

    def send(self, message: Message) -> str:
        """Deliver a message and return its id."""
        self._sent += 1
        self._by_type[message.type.value] += 1

        if message.is_broadcast:
            recipients = [a for a in self._subscribers if a != message.sender]
            for recipient in recipients:
                self._deliver(recipient, message)
            logger.debug(
                f"Broadcast {message.type.value} from {message.sender} "
                f"to {len(recipients)} subscribers"
            )
        elif not self._resolve_reply(message):
            self._deliver(message.to, message)

        for listener in self._listeners:
            try:
                listener(message)
            except Exception:
                logger.exception(f"Send listener failed for message {message.id}")

        return message.id

    def _deliver(self, recipient: str, message: Message) -> None:
        self._inboxes.setdefault(recipient, deque()).append(message)
        self._delivered += 1

    def receive(self, agent_id: str) -> list[Message]:
        """Drain and return all pending messages for ``agent_id``."""
        inbox = self._inboxes.get(agent_id)
        if not inbox:
            return []
        messages = list(inbox)
        inbox.clear()
        return messages

    def pending(self, agent_id: str) -> int:
        """Number of messages waiting in an inbox."""
        inbox = self._inboxes.get(agent_id)
        return len(inbox) if inbox else 0

    # ------------------------------------------------------------------
    # Request / reply
    # ------------------------------------------------------------------

    def expect_reply(self, agent_id: str, request_id: str) -> asyncio.Future[Message]:
        """Return a future resolved by the matching HUMAN_APPROVAL_RESPONSE.

        The response is handed to the future instead of the inbox. Call
        :meth:`cancel_reply` if the waiter gives up.
        """
        future: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        self._reply_waiters[(agent_id, request_id)] = future
        return future

    def cancel_reply(self, agent_id: str, request_id: str) -> None:
        future = self._reply_waiters.pop((agent_id, request_id), None)
        if future is not None and not future.done():
            future.cancel()

    def _resolve_reply(self, message: Message) -> bool:
        if message.type != MessageType.HUMAN_APPROVAL_RESPONSE:
            return False
        request_id = message.payload.get("requestId")
        if not isinstance(request_id, str):
            return False
        future = self._reply_waiters.pop((message.to, request_id), None)
        if future is None or future.done():
            return False
        future.set_result(message)
        self._delivered += 1
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        return {
            "sent": self._sent,
            "delivered": self._delivered,
            "subscribers": len(self._subscribers),
            "queued": sum(len(q) for q in self._inboxes.values()),
            "by_type": dict(self._by_type),
        }

    def clear(self) -> None:
        """Drop every queued message and pending reply."""
        for inbox in self._inboxes.values():
            inbox.clear()
        for future in self._reply_waiters.values():
            if not future.done():
                future.cancel()
        self._reply_waiters.clear()
