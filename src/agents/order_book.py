"""Price-time priority order book with a mid-price crosser.

Bids are kept sorted by price descending, asks ascending. Sorting is stable
and new orders are appended before sorting, so orders at the same price keep
arrival order (FIFO). ``match`` repeatedly crosses the heads of both sides
while best bid >= best ask, filling ``min(bid, ask)`` at the arithmetic mid
of the two prices, until no cross remains.
"""

from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal

from ..errors import ValidationError
from ..protocol.messages import now_ms

OrderSide = Literal["bid", "ask"]


@dataclass
class Order:
    price: float
    amount: float
    agent_id: str
    order_id: str = field(default_factory=lambda: f"ord_{uuid.uuid4().hex[:12]}")
    created_at: int = field(default_factory=now_ms)
    expires_at: int | None = None

    def __post_init__(self) -> None:
        if not self.price > 0 or not math.isfinite(self.price):
            raise ValidationError(f"order price must be positive: {self.price}", price=self.price)
        if not self.amount > 0:
            raise ValidationError(f"order amount must be positive: {self.amount}", amount=self.amount)

    def to_dict(self) -> dict[str, Any]:
        return {
            "orderId": self.order_id,
            "price": self.price,
            "amount": self.amount,
            "agentId": self.agent_id,
        }


@dataclass(frozen=True)
class Match:
    """One fill between the head bid and head ask."""

    buyer_id: str
    seller_id: str
    amount: float
    price: float
    bid_order_id: str
    ask_order_id: str
    bid_price: float
    ask_price: float


class OrderBook:
    def __init__(self) -> None:
        self.bids: list[Order] = []
        self.asks: list[Order] = []

    def add_bid(self, order: Order) -> Order:
        self.bids.append(order)
        self.bids.sort(key=lambda o: -o.price)
        return order

    def add_ask(self, order: Order) -> Order:
        self.asks.append(order)
        self.asks.sort(key=lambda o: o.price)
        return order

    @property
    def best_bid(self) -> Order | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> Order | None:
        return self.asks[0] if self.asks else None

    @property
    def best_bid_price(self) -> float:
        """Highest bid, or 0 when there are no bids."""
        return self.bids[0].price if self.bids else 0.0

    @property
    def best_ask_price(self) -> float:
        """Lowest ask, or infinity when there are no asks."""
        return self.asks[0].price if self.asks else math.inf

    def total_amount(self, side: OrderSide) -> float:
        return sum(o.amount for o in (self.bids if side == "bid" else self.asks))

    def orders_for(self, agent_id: str) -> list[Order]:
        return [o for o in self.bids + self.asks if o.agent_id == agent_id]

    def cancel(self, agent_id: str, side: OrderSide | None = None) -> int:
        """Remove an agent's orders (one side or both); returns how many."""
        removed = 0
        if side in (None, "bid"):
            before = len(self.bids)
            self.bids = [o for o in self.bids if o.agent_id != agent_id]
            removed += before - len(self.bids)
        if side in (None, "ask"):
            before = len(self.asks)
            self.asks = [o for o in self.asks if o.agent_id != agent_id]
            removed += before - len(self.asks)
        return removed

    def remove_expired(self, now: int | None = None) -> int:
        now = now if now is not None else now_ms()
        before = len(self.bids) + len(self.asks)
        self.bids = [o for o in self.bids if o.expires_at is None or o.expires_at >= now]
        self.asks = [o for o in self.asks if o.expires_at is None or o.expires_at >= now]
        return before - len(self.bids) - len(self.asks)

    def match(self) -> list[Match]:
        """Cross the book to a fixed point and return the fills in order."""
        matches: list[Match] = []
        while self.bids and self.asks and self.bids[0].price >= self.asks[0].price:
            bid = self.bids[0]
            ask = self.asks[0]
            amount = min(bid.amount, ask.amount)
            matches.append(
                Match(
                    buyer_id=bid.agent_id,
                    seller_id=ask.agent_id,
                    amount=amount,
                    price=(bid.price + ask.price) / 2,
                    bid_order_id=bid.order_id,
                    ask_order_id=ask.order_id,
                    bid_price=bid.price,
                    ask_price=ask.price,
                )
            )
            bid.amount -= amount
            ask.amount -= amount
            if bid.amount <= 0:
                self.bids.pop(0)
            if ask.amount <= 0:
                self.asks.pop(0)
        return matches

    def to_dict(self) -> dict[str, Any]:
        return {
            "bids": [o.to_dict() for o in self.bids],
            "asks": [o.to_dict() for o in self.asks],
        }

    def __len__(self) -> int:
        return len(self.bids) + len(self.asks)
