"""Error conventions for agents and the credit engine.

Two layers live here:

1. A machine-readable error shape (ErrorCode, ErrorCategory, ErrorResponse)
   used for ERROR and TRANSACTION_REJECT payloads on the wire.
2. The exception taxonomy raised inside the core. Every exception carries
   its code and category so the runtime boundary can turn it into an
   ErrorResponse without guessing.

Nothing in this taxonomy is fatal to the process: each failure degrades to a
rejected, duplicate or ignored message.

Usage:
    from src.errors import InsufficientResourceError, insufficient_resource

    raise InsufficientResourceError("insufficient credits", available=12.0)

    # Or build a payload directly:
    payload = insufficient_resource("insufficient credits", available=12.0)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error classification.

    - VALIDATION: malformed message or bad input
    - PERMISSION: credential denied or wrong owner
    - RESOURCE: not enough credits/HBAR, unknown device, duplicate mint
    - MARKET: price or deadline rejected by a counterparty
    - EXECUTION: a handler failed while processing a message
    """

    VALIDATION = "validation"
    PERMISSION = "permission"
    RESOURCE = "resource"
    MARKET = "market"
    EXECUTION = "execution"


class ErrorCode(str, Enum):
    """Specific error codes for programmatic handling."""

    # Validation errors
    MISSING_FIELD = "missing_field"
    INVALID_FIELD = "invalid_field"

    # Permission errors
    NOT_AUTHORIZED = "not_authorized"
    NOT_OWNER = "not_owner"

    # Resource errors
    INSUFFICIENT_CREDITS = "insufficient_credits"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    BUDGET_EXCEEDED = "budget_exceeded"
    DEVICE_NOT_FOUND = "device_not_found"
    AGENT_NOT_FOUND = "agent_not_found"
    DUPLICATE_MINT = "duplicate_mint"

    # Market errors
    PRICE_DEVIATION = "price_deviation"
    EXPIRED = "expired"
    APPROVAL_DENIED = "approval_denied"

    # Execution errors
    HANDLER_FAILED = "handler_failed"


@dataclass
class ErrorResponse:
    """Standardized error payload.

    - error: human-readable message
    - code: machine-readable error code
    - category: error category
    - retriable: whether the counterparty may retry (e.g. re-propose)
    - details: optional extra context (availableCredits, marketPrice, ...)
    """

    error: str = ""
    code: str = ""
    category: str = ""
    retriable: bool = False
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        result: dict[str, object] = {
            "error": self.error,
            "code": self.code,
            "category": self.category,
            "retriable": self.retriable,
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CarbonTradingError(Exception):
    """Base class for every error raised by the trading core."""

    code: ErrorCode = ErrorCode.HANDLER_FAILED
    category: ErrorCategory = ErrorCategory.EXECUTION
    retriable: bool = False

    def __init__(self, message: str, **details: object) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, object] = dict(details)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(
            error=self.message,
            code=self.code.value,
            category=self.category.value,
            retriable=self.retriable,
            details=self.details or None,
        )


class ValidationError(CarbonTradingError):
    """Missing or invalid message fields. Dropped with a log, never retried."""

    code = ErrorCode.INVALID_FIELD
    category = ErrorCategory.VALIDATION


class InsufficientResourceError(CarbonTradingError):
    """Not enough credits, HBAR or budget to honour a request."""

    code = ErrorCode.INSUFFICIENT_CREDITS
    category = ErrorCategory.RESOURCE

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INSUFFICIENT_CREDITS,
        **details: object,
    ) -> None:
        super().__init__(message, **details)
        self.code = code


class PriceDeviationError(CarbonTradingError):
    """Proposed price is too far from the market price."""

    code = ErrorCode.PRICE_DEVIATION
    category = ErrorCategory.MARKET
    retriable = True

    def __init__(self, message: str, market_price: float, **details: object) -> None:
        super().__init__(message, marketPrice=market_price, **details)
        self.market_price = market_price


class ExpiredOfferError(CarbonTradingError):
    """Offer, request or proposal deadline has passed. Dropped silently."""

    code = ErrorCode.EXPIRED
    category = ErrorCategory.MARKET


class DuplicateMintError(CarbonTradingError):
    """A mint already exists for an overlapping window of the same device."""

    code = ErrorCode.DUPLICATE_MINT
    category = ErrorCategory.RESOURCE


class DeviceNotFoundError(CarbonTradingError):
    """Credit calculation requested for an unregistered device."""

    code = ErrorCode.DEVICE_NOT_FOUND
    category = ErrorCategory.RESOURCE


class AgentNotFoundError(CarbonTradingError):
    code = ErrorCode.AGENT_NOT_FOUND
    category = ErrorCategory.RESOURCE


class AuthorizationError(CarbonTradingError):
    """Credential denied, or identity does not own the target resource."""

    code = ErrorCode.NOT_AUTHORIZED
    category = ErrorCategory.PERMISSION

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.NOT_AUTHORIZED,
        **details: object,
    ) -> None:
        super().__init__(message, **details)
        self.code = code


class HandlerDispatchError(CarbonTradingError):
    """Wraps an unexpected exception raised inside a message handler."""

    code = ErrorCode.HANDLER_FAILED
    category = ErrorCategory.EXECUTION

    def __init__(self, message_type: str, cause: BaseException) -> None:
        super().__init__(
            f"handler for {message_type} failed: {cause}",
            messageType=message_type,
            exceptionType=type(cause).__name__,
        )
        self.cause = cause


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================


def insufficient_resource(
    message: str,
    code: ErrorCode = ErrorCode.INSUFFICIENT_CREDITS,
    **details: object,
) -> dict[str, object]:
    """Create an insufficient-resource payload for TRANSACTION_REJECT.

    Args:
        message: Human-readable reason (e.g. "insufficient credits")
        code: Specific error code (default: INSUFFICIENT_CREDITS)
        **details: Additional context (e.g. availableCredits=12.0)

    Returns:
        Error response dict
    """
    return ErrorResponse(
        error=message,
        code=code.value,
        category=ErrorCategory.RESOURCE.value,
        retriable=False,
        details=dict(details) if details else None,
    ).to_dict()


def price_deviation(message: str, market_price: float, **details: object) -> dict[str, object]:
    """Create a price-deviation payload carrying the market price.

    The counterparty may re-propose near ``marketPrice``.
    """
    return PriceDeviationError(message, market_price=market_price, **details).to_response().to_dict()


def handler_failure(exc: BaseException, message_type: str) -> dict[str, object]:
    """Convert any handler exception into an ERROR payload."""
    if isinstance(exc, CarbonTradingError):
        return exc.to_response().to_dict()
    return HandlerDispatchError(message_type, exc).to_response().to_dict()
