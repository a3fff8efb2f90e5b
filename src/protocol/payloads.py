"""Typed payloads for each message type.

Payloads travel as camelCase JSON objects (``creditAmount``,
``pricePerCredit``, ...). Models accept either camelCase or snake_case and
serialize back to camelCase via :func:`dump`. Unknown fields are ignored so
newer senders stay compatible with older agents.
"""

from __future__ import annotations

from typing import Any, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..errors import ValidationError

Quality = Literal["HIGH", "MEDIUM", "LOW"]
Urgency = Literal["LOW", "MEDIUM", "HIGH"]
CreditType = Literal["SEQUESTER", "EMITTER"]
Side = Literal["buy", "sell"]


class WireModel(BaseModel):
    """Base for payloads: camelCase on the wire, lenient about extras."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class OfferMetadata(WireModel):
    source: str
    verification_data: dict[str, Any] = Field(default_factory=dict)
    quality: Quality = "MEDIUM"


class CreditOffer(WireModel):
    credit_amount: float = Field(gt=0)
    price_per_credit: float = Field(gt=0)
    seller_agent_id: str
    credit_type: CreditType = "SEQUESTER"
    expiration_time: int
    metadata: OfferMetadata


class CreditRequest(WireModel):
    credit_amount: float = Field(gt=0)
    max_price_per_credit: float = Field(gt=0)
    buyer_agent_id: str
    credit_type: CreditType = "SEQUESTER"
    urgency: Urgency = "MEDIUM"
    deadline: int


class MarketSummary(WireModel):
    average_price: float = 0.0
    recent_transactions: list[dict[str, float]] = Field(default_factory=list)


class PriceNegotiation(WireModel):
    """Price discussion between two agents.

    ``market_analysis`` / ``recommendation`` are set only on advisory replies
    from a market maker; receivers never counter an advisory message.
    """

    proposed_price: float = Field(gt=0)
    counter_offer: float | None = Field(default=None, gt=0)
    credit_amount: float | None = Field(default=None, gt=0)
    side: Side | None = None
    reasoning: str = ""
    market_data: MarketSummary = Field(default_factory=MarketSummary)
    round: int = Field(default=0, ge=0)
    market_analysis: dict[str, float] | None = None
    recommendation: float | None = None

    @property
    def is_advisory(self) -> bool:
        return self.market_analysis is not None


class TransactionProposal(WireModel):
    transaction_id: str
    credit_amount: float = Field(gt=0)
    price_per_credit: float = Field(gt=0)
    total_amount: float = Field(ge=0)
    seller_agent_id: str
    buyer_agent_id: str
    requires_human_approval: bool = False
    expiration_time: int


class TransactionAccept(WireModel):
    """Acceptance, fill notification or settlement confirmation.

    - buyer -> seller, ``confirmed=False``: buyer accepts a proposal
    - market maker -> both sides, ``side`` set: a match was made
    - seller -> buyer, ``confirmed=True``: credits delivered
    """

    transaction_id: str
    credit_amount: float = Field(gt=0)
    price_per_credit: float = Field(gt=0)
    total_amount: float | None = Field(default=None, ge=0)
    counterparty: str | None = None
    side: Side | None = None
    confirmed: bool = False

    @property
    def total(self) -> float:
        if self.total_amount is not None:
            return self.total_amount
        return self.credit_amount * self.price_per_credit


class TransactionReject(WireModel):
    transaction_id: str | None = None
    reason: str
    code: str | None = None
    available_credits: float | None = None
    market_price: float | None = None
    details: dict[str, Any] | None = None


class Heartbeat(WireModel):
    status: str = "running"
    check: bool = False
    credits: float | None = None
    hbar_balance: float | None = None


class ErrorPayload(WireModel):
    original_message_id: str | None = None
    error: str
    code: str = ""
    category: str = ""
    retriable: bool = False
    details: dict[str, Any] | None = None


class HumanApprovalRequest(WireModel):
    request_id: str
    agent_id: str
    transaction_id: str
    amount: float = Field(ge=0)
    recipient: str
    description: str = ""
    risk_level: Urgency


class HumanApprovalResponse(WireModel):
    request_id: str
    approved: bool
    reason: str = ""


M = TypeVar("M", bound=WireModel)


def parse_payload(model: type[M], payload: dict[str, Any]) -> M:
    """Validate a raw payload.

    Raises:
        ValidationError: carrying the offending field locations
    """
    try:
        return model.model_validate(payload)
    except PydanticValidationError as e:
        fields = [".".join(str(p) for p in err["loc"]) for err in e.errors()]
        raise ValidationError(
            f"invalid {model.__name__} payload: {fields}",
            fields=fields,
        ) from e


def dump(model: WireModel) -> dict[str, Any]:
    """Serialize to the camelCase wire form, omitting unset optionals."""
    return model.model_dump(by_alias=True, exclude_none=True)
