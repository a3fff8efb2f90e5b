"""Offset agent - credit buyer offsetting simulated emissions.

Every ``requirement_interval`` seconds the agent samples its emission
sources and, while its credits (plus what it is already looking for) sit
below 80% of the monthly target, records a new offset requirement. Each live
requirement that fits the remaining budget is broadcast as a CREDIT_REQUEST.

Budget: ``monthly_spending`` only grows on delivered credits, but HBAR paid
for accepted-but-undelivered proposals is reserved, so
``monthly_spending + reserved`` never exceeds ``monthly_budget``.
"""

from __future__ import annotations

import logging
import math
import random
import uuid
from dataclasses import dataclass, field
from typing import Any

from ..config_schema import OffsetAgentConfig, RuntimeConfig
from ..errors import ErrorCode, ExpiredOfferError, InsufficientResourceError, ValidationError
from ..protocol.bus import MessageBus
from ..protocol.messages import Message, MessageType, now_ms
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
from .models import AgentType, RiskLevel

logger = logging.getLogger(__name__)

EMISSIONS_PER_CREDIT = 1000
BASE_EMISSION_RATE = 100.0
REORDER_FRACTION = 0.8

_QUALITY_RANK = {"LOW": 0, "MEDIUM": 1, "HIGH": 2}


@dataclass
class OffsetRequirement:
    """Credits still needed before ``deadline``."""

    amount: float
    deadline: int
    priority: RiskLevel
    requirement_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:12]}")
    created_at: int = field(default_factory=now_ms)
    request_open_until: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "requirementId": self.requirement_id,
            "amount": self.amount,
            "deadline": self.deadline,
            "priority": self.priority.value,
        }


@dataclass(frozen=True)
class PendingPurchase:
    """HBAR paid for credits the seller has not yet delivered."""

    transaction_id: str
    seller_id: str
    credit_amount: float
    price_per_credit: float

    @property
    def total(self) -> float:
        return self.credit_amount * self.price_per_credit


class OffsetAgent(BaseAgent):
    agent_type = AgentType.OFFSET
    settings: OffsetAgentConfig

    def __init__(
        self,
        settings: OffsetAgentConfig,
        bus: MessageBus,
        runtime: RuntimeConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        super().__init__(settings, bus, runtime, rng)
        self.requirements: dict[str, OffsetRequirement] = {}
        self.emissions: dict[str, float] = {}
        self.pending: dict[str, PendingPurchase] = {}
        self.monthly_spending = 0.0
        self.credits_purchased = 0.0
        self.market_advice: float | None = None
        self._rounds: dict[str, int] = {}

    def register_handlers(self) -> None:
        self.on(MessageType.CREDIT_OFFER, self._handle_credit_offer)
        self.on(MessageType.PRICE_NEGOTIATION, self._handle_price_negotiation)
        self.on(MessageType.TRANSACTION_PROPOSAL, self._handle_transaction_proposal)
        self.on(MessageType.TRANSACTION_ACCEPT, self._handle_transaction_accept)
        self.on(MessageType.TRANSACTION_REJECT, self._handle_transaction_reject)

    def schedule_periodic_work(self) -> None:
        self.scheduler.add(
            "requirements",
            self.settings.requirement_interval,
            self.exclusive(self.review_requirements),
        )

    # ------------------------------------------------------------------
    # Budget
    # ------------------------------------------------------------------

    @property
    def reserved(self) -> float:
        return sum(p.total for p in self.pending.values())

    @property
    def remaining_budget(self) -> float:
        return max(0.0, self.settings.monthly_budget - self.monthly_spending - self.reserved)

    @property
    def spendable(self) -> float:
        return min(self.remaining_budget, self.state.hbar_balance)

    @property
    def outstanding_credits(self) -> float:
        now = now_ms()
        return sum(r.amount for r in self.requirements.values() if r.deadline >= now)

    def simulate_monthly_budget_refresh(self) -> None:
        """Start a new budget month."""
        self.monthly_spending = 0.0
        logger.info(f"Agent {self.id}: monthly budget refreshed ({self.settings.monthly_budget:g} HBAR)")

    # ------------------------------------------------------------------
    # Requirements
    # ------------------------------------------------------------------

    def simulate_emissions(self) -> float:
        total = 0.0
        for source in self.settings.emission_sources:
            variation = (self.rng.random() - 0.5) * 0.2 * BASE_EMISSION_RATE
            self.emissions[source] = max(0.0, BASE_EMISSION_RATE + variation)
            total += self.emissions[source]
        return total

    def _priority_for(self, amount: float) -> RiskLevel:
        target = self.settings.monthly_target or 1
        if amount >= 0.5 * target:
            return RiskLevel.HIGH
        if amount >= 0.1 * target:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def add_requirement(self, amount: float, deadline: int | None = None) -> OffsetRequirement:
        requirement = OffsetRequirement(
            amount=amount,
            deadline=deadline if deadline is not None else now_ms() + int(self.settings.requirement_ttl * 1000),
            priority=self._priority_for(amount),
        )
        self.requirements[requirement.requirement_id] = requirement
        logger.info(
            f"Agent {self.id}: new offset requirement {requirement.requirement_id} "
            f"for {amount:g} credits ({requirement.priority.value})"
        )
        return requirement

    async def review_requirements(self) -> None:
        """One requirement tick: expire, maybe add, then request credits."""
        now = now_ms()
        for req_id in [r for r, req in self.requirements.items() if req.deadline < now]:
            logger.info(f"Agent {self.id}: requirement {req_id} passed its deadline")
            del self.requirements[req_id]

        emissions = self.simulate_emissions()
        needed = math.ceil(emissions / EMISSIONS_PER_CREDIT)
        if needed > 0 and self.state.credits + self.outstanding_credits < (
            self.settings.monthly_target * REORDER_FRACTION
        ):
            self.add_requirement(needed)

        self.request_credits()

    def request_credits(self) -> list[CreditRequest]:
        """Broadcast a CREDIT_REQUEST for each live, affordable requirement."""
        now = now_ms()
        sent: list[CreditRequest] = []
        for requirement in self.requirements.values():
            if requirement.deadline < now or requirement.amount <= 0:
                continue
            if requirement.request_open_until is not None and requirement.request_open_until >= now:
                continue
            cost = requirement.amount * self.settings.max_price_per_credit
            if cost > self.remaining_budget:
                logger.debug(f"Agent {self.id}: {requirement.requirement_id} exceeds remaining budget")
                continue
            request = self._credit_request(requirement.amount, requirement.priority.value)
            self.broadcast(MessageType.CREDIT_REQUEST, request)
            requirement.request_open_until = request.deadline
            sent.append(request)
            logger.info(
                f"Agent {self.id} requested {requirement.amount:g} credits "
                f"at max {self.settings.max_price_per_credit:g} HBAR each"
            )
        return sent

    def _credit_request(self, amount: float, urgency: str | None = None) -> CreditRequest:
        preferred = self.settings.preferred_credit_types
        return CreditRequest(
            credit_amount=amount,
            max_price_per_credit=self.settings.max_price_per_credit,
            buyer_agent_id=self.id,
            credit_type=preferred[0] if preferred else "SEQUESTER",
            urgency=urgency or self.settings.urgency,
            deadline=now_ms() + int(self.settings.request_ttl * 1000),
        )

    def _fulfil(self, credits: float) -> None:
        """Apply delivered credits to requirements, most urgent first."""
        ordered = sorted(self.requirements.values(), key=lambda r: (-r.priority.rank, r.deadline))
        for requirement in ordered:
            if credits <= 0:
                break
            used = min(credits, requirement.amount)
            requirement.amount -= used
            credits -= used
            if requirement.amount <= 0:
                del self.requirements[requirement.requirement_id]
                logger.info(f"Agent {self.id}: requirement {requirement.requirement_id} fulfilled")

    # ------------------------------------------------------------------
    # Offers and negotiation
    # ------------------------------------------------------------------

    def is_offer_acceptable(self, offer: CreditOffer, now: int | None = None) -> bool:
        now = now if now is not None else now_ms()
        if offer.price_per_credit > self.settings.max_price_per_credit:
            return False
        if offer.credit_amount < self.settings.min_offer_amount:
            return False
        if offer.expiration_time < now:
            return False
        if offer.credit_type not in self.settings.preferred_credit_types:
            return False
        if _QUALITY_RANK[offer.metadata.quality] < _QUALITY_RANK[self.settings.quality_requirement]:
            return False
        amount = min(offer.credit_amount, self.settings.max_purchase_amount)
        return amount * offer.price_per_credit <= self.spendable

    async def _handle_credit_offer(self, message: Message) -> None:
        offer = parse_payload(CreditOffer, message.payload)
        if not self.is_offer_acceptable(offer):
            logger.debug(f"Agent {self.id}: offer from {message.sender} does not meet criteria")
            return
        if self.outstanding_credits <= 0:
            logger.debug(f"Agent {self.id}: no outstanding requirement for offer from {message.sender}")
            return

        amount = min(offer.credit_amount, self.settings.max_purchase_amount)
        self.send_message(offer.seller_agent_id, MessageType.CREDIT_REQUEST, self._credit_request(amount))
        logger.info(f"Agent {self.id} responded to offer from {offer.seller_agent_id} for {amount:g} credits")

    async def _handle_price_negotiation(self, message: Message) -> None:
        negotiation = parse_payload(PriceNegotiation, message.payload)
        if negotiation.is_advisory:
            self.market_advice = negotiation.recommendation
            return

        price = negotiation.counter_offer or negotiation.proposed_price
        amount = negotiation.credit_amount or min(self.outstanding_credits, self.settings.max_purchase_amount)
        if amount <= 0:
            return

        if price <= self.settings.max_price_per_credit:
            self._rounds.pop(message.sender, None)
            self.send_message(message.sender, MessageType.CREDIT_REQUEST, self._credit_request(amount))
            return

        rounds = self._rounds.get(message.sender, 0)
        if rounds >= self.settings.max_negotiation_rounds:
            self._rounds.pop(message.sender, None)
            logger.info(f"Agent {self.id}: ending negotiation with {message.sender} after {rounds} rounds")
            return
        self._rounds[message.sender] = rounds + 1

        counter = min(self.settings.max_price_per_credit, price * 0.9)
        self.send_message(
            message.sender,
            MessageType.PRICE_NEGOTIATION,
            PriceNegotiation(
                proposed_price=counter,
                counter_offer=counter,
                credit_amount=amount,
                side="buy",
                reasoning=f"Our maximum budget is {self.settings.max_price_per_credit:g} HBAR per credit",
                market_data=negotiation.market_data,
                round=negotiation.round + 1,
            ),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def _check_affordable(self, total: float) -> None:
        if total > self.state.hbar_balance:
            raise InsufficientResourceError(
                "Insufficient HBAR balance",
                code=ErrorCode.INSUFFICIENT_FUNDS,
                hbarBalance=self.state.hbar_balance,
                totalAmount=total,
            )
        if total > self.remaining_budget:
            raise InsufficientResourceError(
                "Monthly budget exceeded",
                code=ErrorCode.BUDGET_EXCEEDED,
                remainingBudget=self.remaining_budget,
                totalAmount=total,
            )

    async def _handle_transaction_proposal(self, message: Message) -> None:
        proposal = parse_payload(TransactionProposal, message.payload)
        if proposal.expiration_time < now_ms():
            raise ExpiredOfferError(
                f"proposal {proposal.transaction_id} expired",
                transactionId=proposal.transaction_id,
            )
        if proposal.buyer_agent_id != self.id:
            raise ValidationError(
                f"proposal {proposal.transaction_id} is addressed to {proposal.buyer_agent_id}",
                transactionId=proposal.transaction_id,
            )
        if proposal.transaction_id in self.pending:
            return

        total = proposal.credit_amount * proposal.price_per_credit
        self._check_affordable(total)

        purchase = PendingPurchase(
            transaction_id=proposal.transaction_id,
            seller_id=proposal.seller_agent_id,
            credit_amount=proposal.credit_amount,
            price_per_credit=proposal.price_per_credit,
        )
        if not await self._pay(purchase):
            self.send_message(
                message.sender,
                MessageType.TRANSACTION_REJECT,
                TransactionReject(
                    transaction_id=proposal.transaction_id,
                    reason="Transaction not approved",
                    code=ErrorCode.APPROVAL_DENIED.value,
                ),
            )
            return

        self.send_message(
            message.sender,
            MessageType.TRANSACTION_ACCEPT,
            TransactionAccept(
                transaction_id=proposal.transaction_id,
                credit_amount=proposal.credit_amount,
                price_per_credit=proposal.price_per_credit,
                total_amount=total,
                counterparty=self.id,
            ),
        )

    async def _pay(self, purchase: PendingPurchase) -> bool:
        ok = await self.execute_transaction(
            purchase.transaction_id,
            purchase.total,
            purchase.seller_id,
            f"Purchase {purchase.credit_amount:g} carbon credits",
        )
        if ok:
            self.pending[purchase.transaction_id] = purchase
        return ok

    async def _handle_transaction_accept(self, message: Message) -> None:
        accept = parse_payload(TransactionAccept, message.payload)
        if accept.confirmed:
            self._receive_credits(accept, message.sender)
            return
        if accept.side == "buy":
            # Market maker fill: pay first, then tell the seller to deliver.
            seller = accept.counterparty or message.sender
            if accept.transaction_id in self.pending:
                return
            self._check_affordable(accept.total)
            purchase = PendingPurchase(
                transaction_id=accept.transaction_id,
                seller_id=seller,
                credit_amount=accept.credit_amount,
                price_per_credit=accept.price_per_credit,
            )
            if not await self._pay(purchase):
                self.send_message(
                    message.sender,
                    MessageType.TRANSACTION_REJECT,
                    TransactionReject(
                        transaction_id=accept.transaction_id,
                        reason="Transaction not approved",
                        code=ErrorCode.APPROVAL_DENIED.value,
                    ),
                )
                return
            self.send_message(
                seller,
                MessageType.TRANSACTION_ACCEPT,
                TransactionAccept(
                    transaction_id=accept.transaction_id,
                    credit_amount=accept.credit_amount,
                    price_per_credit=accept.price_per_credit,
                    total_amount=purchase.total,
                    counterparty=self.id,
                    side="sell",
                ),
            )
            return
        logger.debug(f"Agent {self.id}: ignoring accept {accept.transaction_id} from {message.sender}")

    def _receive_credits(self, accept: TransactionAccept, sender: str) -> None:
        purchase = self.pending.pop(accept.transaction_id, None)
        if purchase is None:
            logger.warning(f"Agent {self.id}: delivery for unknown transaction {accept.transaction_id} from {sender}")
            return
        self.finalize_transaction(purchase.transaction_id)

        total = purchase.total
        self.state.credits += purchase.credit_amount
        self.credits_purchased += purchase.credit_amount
        self.monthly_spending += total
        perf = self.state.performance
        perf.total_expenses += total
        perf.total_volume += total
        self._rounds.pop(purchase.seller_id, None)
        self._fulfil(purchase.credit_amount)
        logger.info(
            f"Agent {self.id} bought {purchase.credit_amount:g} credits from {purchase.seller_id} "
            f"at {purchase.price_per_credit:.4f} ({purchase.transaction_id})",
            extra={"agent_id": self.id, "transaction_id": purchase.transaction_id, "total": total},
        )

    async def _handle_transaction_reject(self, message: Message) -> None:
        reject = parse_payload(TransactionReject, message.payload)
        purchase = self.pending.pop(reject.transaction_id, None) if reject.transaction_id else None
        if purchase is not None:
            self.void_transaction(purchase.transaction_id)
        logger.info(f"Agent {self.id}: {message.sender} rejected {reject.transaction_id}: {reject.reason}")

    def extra_statistics(self) -> dict[str, Any]:
        return {
            "emissionSources": len(self.settings.emission_sources),
            "currentEmissions": [{"source": s, "emissions": e} for s, e in self.emissions.items()],
            "requirements": [r.to_dict() for r in self.requirements.values()],
            "pendingPurchases": len(self.pending),
            "creditsPurchased": self.credits_purchased,
            "budget": {
                "monthlyBudget": self.settings.monthly_budget,
                "monthlySpending": self.monthly_spending,
                "reserved": self.reserved,
                "remainingBudget": self.remaining_budget,
                "maxPricePerCredit": self.settings.max_price_per_credit,
            },
        }
