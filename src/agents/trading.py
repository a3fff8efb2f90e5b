"""Trading agent - market maker.

Broadcast CREDIT_OFFERs become asks and CREDIT_REQUESTs become bids (one
live order per agent and side; a newer one replaces the older). Three
periodic tasks share the order book and all run under the agent lock:

- quotes (``quote_interval``): re-quote the agent's own inventory orders
  around the market price at the current spread
- spread (``update_interval``): widen x1.2 when volatility of the last 10
  prices exceeds ``volatility_threshold``, otherwise narrow x0.95, always
  clamped to [0.5, 5] percent
- matching (``match_interval``): cross the book at mid prices and send the
  buyer a TRANSACTION_ACCEPT fill notice (``side="buy"``)

Only fills feed the market data; quote ticks do not. The buyer pays on its
fill notice and then acknowledges to the seller with ``side="sell"``, or
rejects back to this agent when it cannot pay. The seller delivers credits
with a confirmed TRANSACTION_ACCEPT to the buyer only on that acknowledgement.
When this agent is the buyer it pays before telling the seller.
"""

from __future__ import annotations

import logging
import math
import random
from collections import deque
from dataclasses import dataclass
from typing import Any

from ..config_schema import RuntimeConfig, TradingAgentConfig
from ..errors import ErrorCode, ExpiredOfferError, PriceDeviationError
from ..protocol.bus import MessageBus
from ..protocol.messages import Message, MessageType, new_transaction_id, now_ms
from ..protocol.payloads import (
    CreditOffer,
    CreditRequest,
    PriceNegotiation,
    TransactionAccept,
    TransactionProposal,
    TransactionReject,
    parse_payload,
)
from .base import BaseAgent
from .models import AgentType, MarketDataPoint
from .order_book import Match, Order, OrderBook

logger = logging.getLogger(__name__)

MIN_SPREAD = 0.5
MAX_SPREAD = 5.0
VOLATILITY_SAMPLE = 10


@dataclass(frozen=True)
class PendingFill:
    transaction_id: str
    seller_id: str
    amount: float
    price: float


def volatility(prices: list[float]) -> float:
    """Population standard deviation over mean, in percent (0 below 2 points)."""
    if len(prices) < 2:
        return 0.0
    mean = sum(prices) / len(prices)
    if mean == 0:
        return 0.0
    variance = sum((p - mean) ** 2 for p in prices) / len(prices)
    return math.sqrt(variance) / mean * 100


class TradingAgent(BaseAgent):
    agent_type = AgentType.TRADING
    settings: TradingAgentConfig

    def __init__(
        self,
        settings: TradingAgentConfig,
        bus: MessageBus,
        runtime: RuntimeConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(settings, bus, runtime, rng)
        self.book = OrderBook()
        self.market_data: deque[MarketDataPoint] = deque(maxlen=settings.market_data_window)
        self.spread_percentage = settings.spread_percentage
        self.pending_fills: dict[str, PendingFill] = {}
        self.pending_sales: dict[str, Match] = {}
        self.matches_made = 0

    def register_handlers(self) -> None:
        self.on(MessageType.CREDIT_OFFER, self._handle_credit_offer)
        self.on(MessageType.CREDIT_REQUEST, self._handle_credit_request)
        self.on(MessageType.PRICE_NEGOTIATION, self._handle_price_negotiation)
        self.on(MessageType.TRANSACTION_PROPOSAL, self._handle_transaction_proposal)
        self.on(MessageType.TRANSACTION_ACCEPT, self._handle_transaction_accept)
        self.on(MessageType.TRANSACTION_REJECT, self._handle_transaction_reject)

    def schedule_periodic_work(self) -> None:
        self.scheduler.add("quotes", self.settings.quote_interval, self.exclusive(self.update_quotes))
        self.scheduler.add("spread", self.settings.update_interval, self.exclusive(self.adjust_spread))
        self.scheduler.add("match", self.settings.match_interval, self.exclusive(self.run_matching))

    def on_settings_updated(self) -> None:
        self.spread_percentage = self.settings.spread_percentage
        if self.market_data.maxlen != self.settings.market_data_window:
            self.market_data = deque(self.market_data, maxlen=self.settings.market_data_window)

    # ------------------------------------------------------------------
    # Market state
    # ------------------------------------------------------------------

    @property
    def current_market_price(self) -> float:
        """Price of the latest market data point, else ``initial_price``."""
        if not self.market_data:
            return self.settings.initial_price
        return self.market_data[-1].price

    @property
    def current_volatility(self) -> float:
        return volatility([d.price for d in list(self.market_data)[-VOLATILITY_SAMPLE:]])

    def record_market_data(self, price: float, volume: float, bid: float, ask: float) -> None:
        self.market_data.append(
            MarketDataPoint(timestamp=now_ms(), price=price, volume=volume, bid=bid, ask=ask, spread=ask - bid)
        )

    def market_analysis(self) -> dict[str, float]:
        recent = list(self.market_data)[-VOLATILITY_SAMPLE:]
        return {
            "marketPrice": self.current_market_price,
            "averagePrice": sum(d.price for d in recent) / len(recent) if recent else self.current_market_price,
            "bestBid": self.book.best_bid_price,
            "bestAsk": self.book.best_ask_price,
            "spread": self.book.best_ask_price - self.book.best_bid_price,
            "spreadPercentage": self.spread_percentage,
            "volatility": self.current_volatility,
            "volume": sum(d.volume for d in recent),
        }

    # ------------------------------------------------------------------
    # Periodic work
    # ------------------------------------------------------------------

    async def update_quotes(self) -> None:
        """Replace this agent's inventory orders with fresh quotes."""
        self.book.remove_expired()
        self.book.cancel(self.id)

        price = self.current_market_price
        spread = self.spread_percentage / 100
        bid_price = price * (1 - spread / 2)
        ask_price = price * (1 + spread / 2)

        committed = sum(s.amount for s in self.pending_sales.values())
        inventory = self.state.credits - committed + sum(f.amount for f in self.pending_fills.values())
        if inventory < self.settings.min_inventory:
            affordable = self.state.hbar_balance / bid_price
            amount = min(self.settings.min_inventory - inventory, affordable)
            if amount > 0:
                self.book.add_bid(Order(price=bid_price, amount=amount, agent_id=self.id))
                logger.info(f"Agent {self.id} bid {amount:g} credits at {bid_price:.4f}")
        if self.state.credits - committed > self.settings.max_inventory:
            amount = self.state.credits - committed - self.settings.max_inventory
            self.book.add_ask(Order(price=ask_price, amount=amount, agent_id=self.id))
            logger.info(f"Agent {self.id} asked {amount:g} credits at {ask_price:.4f}")

    async def adjust_spread(self) -> None:
        if not self.market_data:
            return
        vol = self.current_volatility
        if vol > self.settings.volatility_threshold:
            self.spread_percentage *= 1.2
            logger.info(f"Agent {self.id}: volatility {vol:.2f}% above threshold, widening spread")
        else:
            self.spread_percentage *= 0.95
        self.spread_percentage = max(MIN_SPREAD, min(MAX_SPREAD, self.spread_percentage))

    async def run_matching(self) -> list[Match]:
        """Cross the book to a fixed point and settle every fill."""
        self.book.remove_expired()
        fills = self.book.match()
        for fill in fills:
            await self._execute_match(fill)
        return fills

    async def _execute_match(self, fill: Match) -> None:
        if fill.buyer_id == fill.seller_id:
            logger.debug(f"Agent {self.id}: dropped wash fill of {fill.amount:g} for {fill.buyer_id}")
            return

        tx_id = new_transaction_id()
        self.matches_made += 1
        self.record_market_data(fill.price, fill.amount, fill.bid_price, fill.ask_price)
        logger.info(
            f"Order match: {fill.amount:g} credits at {fill.price:.4f} HBAR "
            f"({fill.seller_id} -> {fill.buyer_id})",
            extra={"agent_id": self.id, "transaction_id": tx_id},
        )

        if fill.buyer_id == self.id:
            if not await self._pay_for_fill(tx_id, fill):
                return
            self._notify(fill.seller_id, tx_id, fill, counterparty=self.id, side="sell")
            return

        # The buyer pays, then sends the seller a side="sell" accept.
        self._notify(fill.buyer_id, tx_id, fill, counterparty=fill.seller_id, side="buy")
        if fill.seller_id == self.id:
            self.pending_sales[tx_id] = fill

    def _notify(self, to: str, tx_id: str, fill: Match, counterparty: str, side: str) -> None:
        self.send_message(
            to,
            MessageType.TRANSACTION_ACCEPT,
            TransactionAccept(
                transaction_id=tx_id,
                credit_amount=fill.amount,
                price_per_credit=fill.price,
                total_amount=fill.amount * fill.price,
                counterparty=counterparty,
                side=side,
            ),
        )

    async def _pay_for_fill(self, tx_id: str, fill: Match) -> bool:
        total = fill.amount * fill.price
        ok = await self.execute_transaction(tx_id, total, fill.seller_id, f"Buy {fill.amount:g} credits")
        if ok:
            self.pending_fills[tx_id] = PendingFill(tx_id, fill.seller_id, fill.amount, fill.price)
        else:
            logger.warning(f"Agent {self.id}: could not pay for fill {tx_id}, dropping it")
        return ok

    def _deliver(self, tx_id: str, fill: Match) -> None:
        if self.state.credits < fill.amount:
            self.send_message(
                fill.buyer_id,
                MessageType.TRANSACTION_REJECT,
                TransactionReject(
                    transaction_id=tx_id,
                    reason="Insufficient credits available",
                    code=ErrorCode.INSUFFICIENT_CREDITS.value,
                    available_credits=self.state.credits,
                ),
            )
            return
        total = fill.amount * fill.price
        self.state.credits -= fill.amount
        self.state.hbar_balance += total
        perf = self.state.performance
        perf.total_trades += 1
        perf.successful_trades += 1
        perf.total_volume += total
        perf.total_revenue += total
        self.send_message(
            fill.buyer_id,
            MessageType.TRANSACTION_ACCEPT,
            TransactionAccept(
                transaction_id=tx_id,
                credit_amount=fill.amount,
                price_per_credit=fill.price,
                total_amount=total,
                counterparty=self.id,
                side="buy",
                confirmed=True,
            ),
        )

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_credit_offer(self, message: Message) -> None:
        offer = parse_payload(CreditOffer, message.payload)
        if offer.seller_agent_id == self.id:
            return
        if offer.expiration_time < now_ms():
            raise ExpiredOfferError(f"offer from {offer.seller_agent_id} expired", expirationTime=offer.expiration_time)
        self.book.cancel(offer.seller_agent_id, "ask")
        self.book.add_ask(
            Order(
                price=offer.price_per_credit,
                amount=offer.credit_amount,
                agent_id=offer.seller_agent_id,
                expires_at=offer.expiration_time,
            )
        )

    async def _handle_credit_request(self, message: Message) -> None:
        request = parse_payload(CreditRequest, message.payload)
        if request.buyer_agent_id == self.id:
            return
        if request.deadline < now_ms():
            raise ExpiredOfferError(f"request from {request.buyer_agent_id} expired", deadline=request.deadline)
        self.book.cancel(request.buyer_agent_id, "bid")
        self.book.add_bid(
            Order(
                price=request.max_price_per_credit,
                amount=request.credit_amount,
                agent_id=request.buyer_agent_id,
                expires_at=request.deadline,
            )
        )

    async def _handle_price_negotiation(self, message: Message) -> None:
        negotiation = parse_payload(PriceNegotiation, message.payload)
        if negotiation.is_advisory:
            return
        market = self.current_market_price
        if negotiation.side == "buy":
            recommendation = market * 0.95
        elif negotiation.side == "sell":
            recommendation = market * 1.05
        else:
            recommendation = market
        self.send_message(
            message.sender,
            MessageType.PRICE_NEGOTIATION,
            PriceNegotiation(
                proposed_price=negotiation.proposed_price,
                credit_amount=negotiation.credit_amount,
                side=negotiation.side,
                reasoning="Market analysis",
                market_analysis=self.market_analysis(),
                recommendation=recommendation,
                round=negotiation.round,
            ),
        )

    async def _handle_transaction_proposal(self, message: Message) -> None:
        """Validate a proposal's price against the market."""
        proposal = parse_payload(TransactionProposal, message.payload)
        market = self.current_market_price
        deviation = abs(proposal.price_per_credit - market) / market
        if deviation > self.settings.max_price_deviation:
            raise PriceDeviationError(
                f"Price deviation too high: {deviation * 100:.1f}%",
                market_price=market,
                transactionId=proposal.transaction_id,
                deviation=deviation,
            )
        self.send_message(
            message.sender,
            MessageType.TRANSACTION_ACCEPT,
            TransactionAccept(
                transaction_id=proposal.transaction_id,
                credit_amount=proposal.credit_amount,
                price_per_credit=proposal.price_per_credit,
                total_amount=proposal.credit_amount * proposal.price_per_credit,
                counterparty=self.id,
            ),
        )

    async def _handle_transaction_accept(self, message: Message) -> None:
        accept = parse_payload(TransactionAccept, message.payload)
        if not accept.confirmed:
            sale = self.pending_sales.pop(accept.transaction_id, None) if accept.side == "sell" else None
            if sale is not None:
                self._deliver(accept.transaction_id, sale)
            else:
                logger.debug(f"Agent {self.id}: {message.sender} accepted {accept.transaction_id}")
            return
        fill = self.pending_fills.pop(accept.transaction_id, None)
        if fill is None:
            logger.warning(f"Agent {self.id}: delivery for unknown fill {accept.transaction_id}")
            return
        self.finalize_transaction(fill.transaction_id)
        total = fill.amount * fill.price
        self.state.credits += fill.amount
        perf = self.state.performance
        perf.total_volume += total
        perf.total_expenses += total
        logger.info(f"Agent {self.id} received {fill.amount:g} credits from {fill.seller_id}")

    async def _handle_transaction_reject(self, message: Message) -> None:
        reject = parse_payload(TransactionReject, message.payload)
        fill = self.pending_fills.pop(reject.transaction_id, None) if reject.transaction_id else None
        if fill is not None:
            self.void_transaction(fill.transaction_id)
        if reject.transaction_id:
            self.pending_sales.pop(reject.transaction_id, None)
        logger.info(f"Agent {self.id}: {message.sender} rejected {reject.transaction_id}: {reject.reason}")

    def extra_statistics(self) -> dict[str, Any]:
        return {
            "orderBook": {"bids": len(self.book.bids), "asks": len(self.book.asks)},
            "spreadPercentage": self.spread_percentage,
            "marketPrice": self.current_market_price,
            "volatility": self.current_volatility,
            "matchesMade": self.matches_made,
            "pendingFills": len(self.pending_fills),
            "pendingSales": len(self.pending_sales),
            "marketDataPoints": len(self.market_data),
        }
