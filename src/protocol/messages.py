"""A2A message envelope.

Messages are immutable once created: the envelope is a frozen dataclass and
the payload is deep-copied on creation so the sender cannot mutate what the
recipient sees.

Wire form (JSON):
    {"id", "from", "to", "type", "payload", "timestamp"}   # timestamp in ms
"""

from __future__ import annotations

import copy
import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import ValidationError

BROADCAST = "broadcast"
SYSTEM = "system"

_ID_ALPHABET = string.ascii_lowercase + string.digits


class MessageType(str, Enum):
    """Every message type exchanged by agents."""

    CREDIT_OFFER = "CREDIT_OFFER"
    CREDIT_REQUEST = "CREDIT_REQUEST"
    PRICE_NEGOTIATION = "PRICE_NEGOTIATION"
    TRANSACTION_PROPOSAL = "TRANSACTION_PROPOSAL"
    TRANSACTION_ACCEPT = "TRANSACTION_ACCEPT"
    TRANSACTION_REJECT = "TRANSACTION_REJECT"
    HEARTBEAT = "HEARTBEAT"
    ERROR = "ERROR"
    HUMAN_APPROVAL_REQUEST = "HUMAN_APPROVAL_REQUEST"
    HUMAN_APPROVAL_RESPONSE = "HUMAN_APPROVAL_RESPONSE"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_message_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"msg_{now_ms()}_{suffix}"


def new_transaction_id() -> str:
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"tx_{now_ms()}_{suffix}"


@dataclass(frozen=True)
class Message:
    """Immutable A2A envelope."""

    id: str
    sender: str
    to: str
    type: MessageType
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0

    @property
    def is_broadcast(self) -> bool:
        return self.to == BROADCAST

    @classmethod
    def create(
        cls,
        sender: str,
        to: str,
        type: MessageType | str,
        payload: dict[str, Any] | None = None,
    ) -> Message:
        """Build a new message with a fresh id and timestamp."""
        try:
            message_type = MessageType(type)
        except ValueError as e:
            raise ValidationError(f"unknown message type: {type}", field="type") from e
        if not sender:
            raise ValidationError("message sender is required", field="from")
        if not to:
            raise ValidationError("message recipient is required", field="to")
        return cls(
            id=new_message_id(),
            sender=sender,
            to=to,
            type=message_type,
            payload=copy.deepcopy(payload) if payload else {},
            timestamp=now_ms(),
        )

    def to_dict(self) -> dict[str, Any]:
        """Wire form."""
        return {
            "id": self.id,
            "from": self.sender,
            "to": self.to,
            "type": self.type.value,
            "payload": copy.deepcopy(self.payload),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Parse the wire form.

        Raises:
            ValidationError: if a field is missing or the type is unknown
        """
        missing = [k for k in ("id", "from", "to", "type") if not data.get(k)]
        if missing:
            raise ValidationError(f"message missing fields: {missing}", missing=missing)
        try:
            message_type = MessageType(data["type"])
        except ValueError as e:
            raise ValidationError(f"unknown message type: {data['type']}", field="type") from e
        payload = data.get("payload") or {}
        if not isinstance(payload, dict):
            raise ValidationError("payload must be an object", field="payload")
        return cls(
            id=str(data["id"]),
            sender=str(data["from"]),
            to=str(data["to"]),
            type=message_type,
            payload=copy.deepcopy(payload),
            timestamp=int(data.get("timestamp") or now_ms()),
        )
