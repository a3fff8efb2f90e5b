"""A2A protocol - message envelope, typed payloads and the in-process bus."""

from .bus import MessageBus
from .messages import BROADCAST, SYSTEM, Message, MessageType, now_ms

__all__ = [
    "BROADCAST",
    "SYSTEM",
    "Message",
    "MessageBus",
    "MessageType",
    "now_ms",
]
