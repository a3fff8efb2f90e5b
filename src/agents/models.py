"""State models shared by every agent type."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..protocol.messages import now_ms


class AgentLifecycle(str, Enum):
    """Runtime state machine: CREATED -> INITIALIZING -> RUNNING -> SHUTTING_DOWN -> STOPPED."""

    CREATED = "created"
    INITIALIZING = "initializing"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class AgentType(str, Enum):
    SEQUESTRATION = "sequestration"
    OFFSET = "offset"
    TRADING = "trading"


class RiskLevel(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"

    @property
    def rank(self) -> int:
        return ("LOW", "MEDIUM", "HIGH").index(self.value)


@dataclass
class Performance:
    total_trades: int = 0
    successful_trades: int = 0
    total_volume: float = 0.0
    total_revenue: float = 0.0
    total_expenses: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalTrades": self.total_trades,
            "successfulTrades": self.successful_trades,
            "totalVolume": self.total_volume,
            "totalRevenue": self.total_revenue,
            "totalExpenses": self.total_expenses,
        }


@dataclass
class AgentState:
    """Mutable per-agent state. Only the owning agent's handlers write it."""

    credits: float = 0.0
    hbar_balance: float = 0.0
    active_transaction_ids: set[str] = field(default_factory=set)
    last_activity: int = field(default_factory=now_ms)
    performance: Performance = field(default_factory=Performance)

    def touch(self) -> None:
        self.last_activity = now_ms()

    def to_dict(self) -> dict[str, Any]:
        return {
            "credits": self.credits,
            "hbarBalance": self.hbar_balance,
            "activeTransactionIds": sorted(self.active_transaction_ids),
            "lastActivity": self.last_activity,
            "performance": self.performance.to_dict(),
        }


class TransactionStatus(str, Enum):
    PROPOSED = "proposed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXECUTED = "executed"


# Monotonic transitions; REJECTED and EXECUTED are terminal.
_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.PROPOSED: frozenset({TransactionStatus.ACCEPTED, TransactionStatus.REJECTED}),
    TransactionStatus.ACCEPTED: frozenset({TransactionStatus.EXECUTED, TransactionStatus.REJECTED}),
    TransactionStatus.REJECTED: frozenset(),
    TransactionStatus.EXECUTED: frozenset(),
}


@dataclass
class Transaction:
    transaction_id: str
    credit_amount: float
    price_per_credit: float
    seller_agent_id: str
    buyer_agent_id: str
    status: TransactionStatus = TransactionStatus.PROPOSED
    expiration_time: int | None = None
    created_at: int = field(default_factory=now_ms)

    @property
    def total_amount(self) -> float:
        return self.credit_amount * self.price_per_credit

    @property
    def is_terminal(self) -> bool:
        return not _TRANSITIONS[self.status]

    def is_expired(self, now: int | None = None) -> bool:
        if self.expiration_time is None:
            return False
        return (now if now is not None else now_ms()) > self.expiration_time

    def transition(self, status: TransactionStatus) -> None:
        """Move to ``status``.

        Raises:
            ValueError: the move would regress or leave a terminal state
        """
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Transaction {self.transaction_id}: cannot move {self.status.value} -> {status.value}"
            )
        self.status = status

    def to_dict(self) -> dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "creditAmount": self.credit_amount,
            "pricePerCredit": self.price_per_credit,
            "totalAmount": self.total_amount,
            "sellerAgentId": self.seller_agent_id,
            "buyerAgentId": self.buyer_agent_id,
            "status": self.status.value,
        }


@dataclass(frozen=True)
class MarketDataPoint:
    timestamp: int
    price: float
    volume: float
    bid: float
    ask: float
    spread: float
