"""Sequestration agent - credit generator and seller.

Each generation tick simulates telemetry for the agent's devices and asks the
credit engine to mint the window since the last successful mint. Minted
credits arrive through the engine's mint listener; once the agent holds at
least ``min_credits_per_offer`` it broadcasts a CREDIT_OFFER.

Selling:
- CREDIT_REQUEST: reject when short of credits, negotiate when the buyer's
  ceiling is below our price, otherwise propose (5 minute expiry)
- PRICE_NEGOTIATION: accept a counter-price within tolerance by proposing at
  that price, otherwise restate our price
- TRANSACTION_ACCEPT from the buyer (or, for a market maker fill, the paid
  buyer's ``side="sell"`` acknowledgement): deliver and confirm to the buyer
"""

from __future__ import annotations

import logging
import random
from collections import deque
from typing import Any

from ..config_schema import RuntimeConfig, SequestrationAgentConfig
from ..credits.engine import CreditEngine, result_digest
from ..credits.ledger import MintRecord
from ..credits.telemetry import TelemetrySimulator
from ..errors import DeviceNotFoundError, ErrorCode, ExpiredOfferError, InsufficientResourceError
from ..protocol.bus import MessageBus
from ..protocol.messages import Message, MessageType, new_transaction_id, now_ms
from ..protocol.payloads import (
    CreditOffer,
    CreditRequest,
    MarketSummary,
    OfferMetadata,
    PriceNegotiation,
    TransactionAccept,
    TransactionProposal,
    TransactionReject,
    parse_payload,
)
from .base import BaseAgent
from .models import AgentType, Transaction, TransactionStatus

logger = logging.getLogger(__name__)


class SequestrationAgent(BaseAgent):
    agent_type = AgentType.SEQUESTRATION
    settings: SequestrationAgentConfig

    def __init__(
        self,
        settings: SequestrationAgentConfig,
        bus: MessageBus,
        engine: CreditEngine | None = None,
        simulator: TelemetrySimulator | None = None,
        runtime: RuntimeConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(settings, bus, runtime, rng)
        self.engine = engine
        self.simulator = simulator
        self.proposals: dict[str, Transaction] = {}
        self.credits_generated = 0.0
        self.offers_broadcast = 0
        self._window_start: dict[str, int] = {}
        self._last_mint: MintRecord | None = None
        self._recent_sales: deque[dict[str, float]] = deque(maxlen=10)

    def register_handlers(self) -> None:
        self.on(MessageType.CREDIT_REQUEST, self._handle_credit_request)
        self.on(MessageType.PRICE_NEGOTIATION, self._handle_price_negotiation)
        self.on(MessageType.TRANSACTION_PROPOSAL, self._handle_transaction_proposal)
        self.on(MessageType.TRANSACTION_ACCEPT, self._handle_transaction_accept)
        self.on(MessageType.TRANSACTION_REJECT, self._handle_transaction_reject)

    def schedule_periodic_work(self) -> None:
        self.scheduler.add(
            "generate",
            self.settings.credit_generation_interval,
            self.exclusive(self.generate_credits),
        )

    async def initialize(self) -> None:
        await super().initialize()
        if self.is_running and self.engine is not None:
            self.engine.add_mint_listener(self._on_mint)

    async def shutdown(self) -> None:
        if self.engine is not None:
            self.engine.remove_mint_listener(self._on_mint)
        await super().shutdown()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_credits(self) -> None:
        """One generation tick: simulate, mint, then offer if worthwhile."""
        self._expire_proposals()
        if self.engine is not None:
            now = now_ms()
            interval_ms = int(self.settings.credit_generation_interval * 1000)
            for device_id in self.settings.device_ids:
                start = self._window_start.setdefault(device_id, now - interval_ms)
                if start > now:
                    continue
                try:
                    if self.simulator is not None:
                        self.simulator.generate(device_id, self.settings.readings_per_tick, start, now)
                    result = await self.engine.process_credits_for_period(device_id, start, now)
                except DeviceNotFoundError:
                    logger.warning(f"Agent {self.id}: device {device_id} is not registered")
                    continue
                if not result.can_mint:
                    logger.debug(f"Agent {self.id}: no mint for {device_id}: {result.reason}")

        if self.state.credits >= self.settings.min_credits_per_offer:
            self.broadcast_offer()

    def _on_mint(self, record: MintRecord) -> None:
        if record.device_id not in self.settings.device_ids:
            return
        self.state.credits += record.credits
        self.credits_generated += record.credits
        self._window_start[record.device_id] = max(
            self._window_start.get(record.device_id, 0), record.window_end + 1
        )
        self._last_mint = record
        logger.info(
            f"Agent {self.id}: generated {record.credits:g} credits from {record.device_id}",
            extra={"agent_id": self.id, "device_id": record.device_id, "credits": record.credits},
        )

    def current_price(self) -> float:
        """Base price with +/- ``price_variation / 2`` percent jitter."""
        jitter = (self.rng.random() - 0.5) * self.settings.price_variation
        return self.settings.base_price * (1 + jitter / 100)

    def market_summary(self) -> MarketSummary:
        sales = list(self._recent_sales)
        average = sum(s["price"] for s in sales) / len(sales) if sales else self.settings.base_price
        return MarketSummary(average_price=average, recent_transactions=sales)

    def broadcast_offer(self) -> CreditOffer | None:
        amount = min(self.state.credits, self.settings.max_credits_per_offer)
        if amount <= 0:
            return None
        source = self._last_mint.device_id if self._last_mint else self.id
        verification: dict[str, Any] = {"timestamp": now_ms()}
        if self._last_mint is not None:
            result = self._last_mint.result
            verification.update(
                deviceId=self._last_mint.device_id,
                windowStart=self._last_mint.window_start,
                windowEnd=self._last_mint.window_end,
                dataPoints=result.get("dataPointsUsed", 0),
                verifiedDataPoints=result.get("verifiedDataPoints", 0),
                dataHash=result_digest(self._last_mint.device_id, result),
            )
        offer = CreditOffer(
            credit_amount=amount,
            price_per_credit=self.current_price(),
            seller_agent_id=self.id,
            credit_type="SEQUESTER",
            expiration_time=now_ms() + int(self.settings.offer_ttl * 1000),
            metadata=OfferMetadata(source=source, verification_data=verification, quality=self.settings.quality),
        )
        self.broadcast(MessageType.CREDIT_OFFER, offer)
        self.offers_broadcast += 1
        logger.info(f"Agent {self.id} offered {amount:g} credits at {offer.price_per_credit:.4f} HBAR")
        return offer

    # ------------------------------------------------------------------
    # Selling
    # ------------------------------------------------------------------

    def propose(self, to: str, buyer_id: str, amount: float, price: float) -> Transaction:
        tx = Transaction(
            transaction_id=new_transaction_id(),
            credit_amount=amount,
            price_per_credit=price,
            seller_agent_id=self.id,
            buyer_agent_id=buyer_id,
            expiration_time=now_ms() + int(self.settings.proposal_ttl * 1000),
        )
        self.proposals[tx.transaction_id] = tx
        self.send_message(
            to,
            MessageType.TRANSACTION_PROPOSAL,
            TransactionProposal(
                transaction_id=tx.transaction_id,
                credit_amount=amount,
                price_per_credit=price,
                total_amount=tx.total_amount,
                seller_agent_id=self.id,
                buyer_agent_id=buyer_id,
                requires_human_approval=self.settings.require_human_approval,
                expiration_time=tx.expiration_time,
            ),
        )
        logger.info(f"Agent {self.id} proposed {tx.transaction_id}: {amount:g} credits at {price:.4f} to {to}")
        return tx

    def _expire_proposals(self) -> None:
        now = now_ms()
        for tx_id in [t for t, tx in self.proposals.items() if tx.is_expired(now)]:
            del self.proposals[tx_id]
            logger.debug(f"Agent {self.id}: proposal {tx_id} expired")

    async def _handle_credit_request(self, message: Message) -> None:
        request = parse_payload(CreditRequest, message.payload)
        if request.deadline < now_ms():
            raise ExpiredOfferError(f"request from {message.sender} expired", deadline=request.deadline)
        if self.state.credits < request.credit_amount:
            raise InsufficientResourceError(
                "Insufficient credits available",
                availableCredits=self.state.credits,
                requestedCredits=request.credit_amount,
            )

        price = self.current_price()
        if price > request.max_price_per_credit:
            self.send_message(
                message.sender,
                MessageType.PRICE_NEGOTIATION,
                PriceNegotiation(
                    proposed_price=price,
                    counter_offer=price,
                    credit_amount=request.credit_amount,
                    side="sell",
                    reasoning=f"Our current price is {price:.4f} HBAR per credit",
                    market_data=self.market_summary(),
                ),
            )
            return
        self.propose(message.sender, request.buyer_agent_id, request.credit_amount, price)

    async def _handle_price_negotiation(self, message: Message) -> None:
        negotiation = parse_payload(PriceNegotiation, message.payload)
        if negotiation.is_advisory:
            logger.debug(f"Agent {self.id}: market advice from {message.sender}: {negotiation.recommendation}")
            return

        price = self.current_price()
        amount = negotiation.credit_amount or min(self.state.credits, self.settings.max_credits_per_offer)
        proposed = negotiation.proposed_price
        if abs(proposed - price) / price <= self.settings.negotiation_tolerance:
            if self.state.credits < amount or amount <= 0:
                raise InsufficientResourceError(
                    "Insufficient credits available",
                    availableCredits=self.state.credits,
                    requestedCredits=amount,
                )
            self.propose(message.sender, message.sender, amount, proposed)
            return

        self.send_message(
            message.sender,
            MessageType.PRICE_NEGOTIATION,
            PriceNegotiation(
                proposed_price=price,
                counter_offer=price,
                credit_amount=amount if amount > 0 else None,
                side="sell",
                reasoning=f"Our minimum price is {price:.4f} HBAR per credit",
                market_data=negotiation.market_data,
                round=negotiation.round + 1,
            ),
        )

    async def _handle_transaction_proposal(self, message: Message) -> None:
        proposal = parse_payload(TransactionProposal, message.payload)
        tx = self.proposals.get(proposal.transaction_id)
        if proposal.seller_agent_id == self.id and tx is not None:
            self._complete_proposal(tx, proposal.buyer_agent_id)
            return
        logger.info(f"Agent {self.id}: ignoring proposal {proposal.transaction_id} from {message.sender}")

    async def _handle_transaction_accept(self, message: Message) -> None:
        accept = parse_payload(TransactionAccept, message.payload)
        if accept.confirmed or accept.side == "buy":
            logger.debug(f"Agent {self.id}: ignoring accept {accept.transaction_id} from {message.sender}")
            return

        if accept.side == "sell":
            buyer = accept.counterparty or message.sender
            self.settle_sale(accept.transaction_id, buyer, accept.credit_amount, accept.price_per_credit)
            return

        tx = self.proposals.get(accept.transaction_id)
        if tx is not None and message.sender != tx.buyer_agent_id:
            logger.debug(f"Agent {self.id}: {message.sender} validated {accept.transaction_id}")
            return
        if tx is None:
            self.send_message(
                message.sender,
                MessageType.TRANSACTION_REJECT,
                TransactionReject(transaction_id=accept.transaction_id, reason="Unknown or expired proposal"),
            )
            return
        self._complete_proposal(tx, message.sender)

    def _complete_proposal(self, tx: Transaction, buyer: str) -> None:
        del self.proposals[tx.transaction_id]
        if tx.is_expired():
            tx.transition(TransactionStatus.REJECTED)
            self.send_message(
                buyer,
                MessageType.TRANSACTION_REJECT,
                TransactionReject(
                    transaction_id=tx.transaction_id,
                    reason="Proposal expired",
                    code=ErrorCode.EXPIRED.value,
                ),
            )
            return
        tx.transition(TransactionStatus.ACCEPTED)
        if self.settle_sale(tx.transaction_id, buyer, tx.credit_amount, tx.price_per_credit):
            tx.transition(TransactionStatus.EXECUTED)
        else:
            tx.transition(TransactionStatus.REJECTED)

    def settle_sale(self, transaction_id: str, buyer: str, amount: float, price: float) -> bool:
        """Deliver ``amount`` credits to ``buyer`` and confirm, or reject."""
        if self.state.credits < amount:
            self.send_message(
                buyer,
                MessageType.TRANSACTION_REJECT,
                TransactionReject(
                    transaction_id=transaction_id,
                    reason="Insufficient credits available",
                    code=ErrorCode.INSUFFICIENT_CREDITS.value,
                    available_credits=self.state.credits,
                ),
            )
            return False

        total = amount * price
        self.state.credits -= amount
        self.state.hbar_balance += total
        perf = self.state.performance
        perf.total_trades += 1
        perf.successful_trades += 1
        perf.total_volume += total
        perf.total_revenue += total
        self._recent_sales.append({"price": price, "amount": amount})

        self.send_message(
            buyer,
            MessageType.TRANSACTION_ACCEPT,
            TransactionAccept(
                transaction_id=transaction_id,
                credit_amount=amount,
                price_per_credit=price,
                total_amount=total,
                counterparty=self.id,
                side="buy",
                confirmed=True,
            ),
        )
        logger.info(
            f"Agent {self.id} sold {amount:g} credits to {buyer} at {price:.4f} ({transaction_id})",
            extra={"agent_id": self.id, "transaction_id": transaction_id, "total": total},
        )
        return True

    async def _handle_transaction_reject(self, message: Message) -> None:
        reject = parse_payload(TransactionReject, message.payload)
        if reject.transaction_id and self.proposals.pop(reject.transaction_id, None) is not None:
            logger.info(f"Agent {self.id}: {message.sender} rejected {reject.transaction_id}: {reject.reason}")
        else:
            logger.debug(f"Agent {self.id}: reject from {message.sender}: {reject.reason}")

    def extra_statistics(self) -> dict[str, Any]:
        return {
            "monitoredDevices": len(self.settings.device_ids),
            "creditsGenerated": self.credits_generated,
            "offersBroadcast": self.offers_broadcast,
            "openProposals": len(self.proposals),
        }
