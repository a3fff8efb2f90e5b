"""Base agent runtime.

Every agent is an actor with:
- a lifecycle (CREATED -> INITIALIZING -> RUNNING -> SHUTTING_DOWN -> STOPPED)
- a dispatch table from MessageType to async handler
- its own scheduler: heartbeat, inbox drain and type-specific periodic work
- a risk-gated transaction executor with delayed settlement

One lock per agent serializes handler invocations and periodic work, so an
agent processes its inbox message-by-message in arrival order and never runs
two logical ticks at once. Different agents never share the lock.

Handler failures never escape the drain loop:
- ValidationError: logged and dropped
- ExpiredOfferError: dropped
- InsufficientResourceError / PriceDeviationError: TRANSACTION_REJECT to sender
- anything else: ERROR to sender (never in reply to an ERROR)
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, ClassVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..config import get_validated_config
from ..config_schema import AgentSettings, RuntimeConfig
from ..errors import (
    ExpiredOfferError,
    InsufficientResourceError,
    PriceDeviationError,
    ValidationError,
    handler_failure,
)
from ..protocol.bus import MessageBus
from ..protocol.messages import BROADCAST, SYSTEM, Message, MessageType
from ..protocol.payloads import (
    ErrorPayload,
    Heartbeat,
    HumanApprovalRequest,
    HumanApprovalResponse,
    TransactionReject,
    WireModel,
    dump,
    parse_payload,
)
from .models import AgentLifecycle, AgentState, AgentType, RiskLevel
from .runtime import AgentScheduler, TickCallback

logger = logging.getLogger(__name__)

Handler = Callable[[Message], Awaitable[None]]


class BaseAgent(ABC):
    """Common capability interface: initialize, shutdown, handle, statistics."""

    agent_type: ClassVar[AgentType]

    def __init__(
        self,
        settings: AgentSettings,
        bus: MessageBus,
        runtime: RuntimeConfig | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.settings = settings
        self.bus = bus
        self.runtime = runtime or get_validated_config().runtime
        self.rng = rng or random.Random()
        self.state = AgentState(credits=settings.initial_credits, hbar_balance=settings.initial_hbar)
        self.lifecycle = AgentLifecycle.CREATED
        self.scheduler = AgentScheduler(settings.id)
        self._handlers: dict[MessageType, Handler] = {}
        self._lock = asyncio.Lock()
        self._settlements: set[asyncio.Task[None]] = set()
        self._voided: set[str] = set()
        self._executed: dict[str, float] = {}

    @property
    def id(self) -> str:
        return self.settings.id

    @property
    def name(self) -> str:
        return self.settings.name or self.settings.id

    @property
    def is_running(self) -> bool:
        return self.lifecycle == AgentLifecycle.RUNNING

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def register_handlers(self) -> None:
        """Register type-specific handlers with :meth:`on`."""

    def schedule_periodic_work(self) -> None:
        """Add type-specific tasks to ``self.scheduler`` (default: none)."""

    def extra_statistics(self) -> dict[str, Any]:
        return {}

    def on_settings_updated(self) -> None:
        """Called after :meth:`update_settings` swaps the settings object."""

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def on(self, message_type: MessageType, handler: Handler) -> None:
        self._handlers[message_type] = handler

    def exclusive(self, work: Callable[[], Awaitable[None]]) -> TickCallback:
        """Wrap periodic work so it runs under the agent lock while RUNNING."""

        async def tick() -> None:
            if not self.is_running:
                return
            async with self._lock:
                await work()

        return tick

    async def initialize(self) -> None:
        """Register handlers, join the broadcast topic and start timers."""
        if self.lifecycle != AgentLifecycle.CREATED:
            logger.warning(f"Agent {self.id} cannot initialize from state {self.lifecycle.value}")
            return

        self.lifecycle = AgentLifecycle.INITIALIZING
        self._handlers.clear()
        self.on(MessageType.HEARTBEAT, self._handle_heartbeat)
        self.on(MessageType.ERROR, self._handle_error)
        self.register_handlers()

        self.bus.subscribe(self.id)
        self.scheduler.add("heartbeat", self.runtime.heartbeat_interval, self.send_heartbeat)
        self.scheduler.add("drain", self.runtime.drain_interval, self.drain_inbox)
        self.schedule_periodic_work()
        await self.scheduler.start_all()

        self.state.touch()
        self.lifecycle = AgentLifecycle.RUNNING
        logger.info(
            f"Agent {self.id} ({self.agent_type.value}) initialized",
            extra={"agent_id": self.id, "agent_type": self.agent_type.value},
        )

    async def shutdown(self) -> None:
        """Stop timers and leave the broadcast topic.

        Safe to call at any time and more than once. Handlers already running
        finish; transactions awaiting settlement are left to settle.
        """
        if self.lifecycle in (AgentLifecycle.SHUTTING_DOWN, AgentLifecycle.STOPPED):
            return
        self.lifecycle = AgentLifecycle.SHUTTING_DOWN
        await self.scheduler.stop_all()
        self.bus.unsubscribe(self.id)
        self.lifecycle = AgentLifecycle.STOPPED
        logger.info(f"Agent {self.id} shut down")

    async def wait_for_settlements(self) -> None:
        """Wait until every pending settlement has completed."""
        while self._settlements:
            await asyncio.gather(*list(self._settlements), return_exceptions=True)

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_message(
        self,
        to: str,
        message_type: MessageType,
        payload: dict[str, Any] | WireModel | None = None,
    ) -> str:
        """Send a message stamped with this agent's id; returns the message id."""
        body = dump(payload) if isinstance(payload, BaseModel) else payload
        return self.bus.send(Message.create(self.id, to, message_type, body))

    def broadcast(self, message_type: MessageType, payload: dict[str, Any] | WireModel | None = None) -> str:
        return self.send_message(BROADCAST, message_type, payload)

    async def drain_inbox(self) -> int:
        """Process pending messages in arrival order; returns how many ran."""
        if not self.is_running:
            return 0
        messages = self.bus.receive(self.id)
        processed = 0
        for message in messages:
            if not self.is_running:
                logger.debug(f"Agent {self.id} stopping, dropped {len(messages) - processed} messages")
                break
            async with self._lock:
                await self.process_message(message)
            processed += 1
        return processed

    async def handle(self, message: Message) -> None:
        """Process one message under the agent lock."""
        async with self._lock:
            await self.process_message(message)

    async def process_message(self, message: Message) -> None:
        """Dispatch to the registered handler. Caller holds the agent lock."""
        self.state.touch()
        handler = self._handlers.get(message.type)
        if handler is None:
            logger.info(f"Agent {self.id}: no handler for {message.type.value}, dropping")
            return

        try:
            await handler(message)
        except ValidationError as e:
            logger.warning(f"Agent {self.id}: invalid {message.type.value} from {message.sender}: {e}")
        except ExpiredOfferError as e:
            logger.debug(f"Agent {self.id}: expired {message.type.value} from {message.sender}: {e}")
        except (InsufficientResourceError, PriceDeviationError) as e:
            logger.info(f"Agent {self.id}: rejecting {message.type.value} from {message.sender}: {e}")
            self._reject(message, e)
        except Exception as e:
            logger.exception(f"Agent {self.id}: handler for {message.type.value} failed: {e}")
            self._send_error(message, e)

    def _reject(self, message: Message, error: InsufficientResourceError | PriceDeviationError) -> None:
        if message.sender in (self.id, SYSTEM):
            return
        tx_id = message.payload.get("transactionId")
        reject = TransactionReject(
            transaction_id=tx_id if isinstance(tx_id, str) else None,
            reason=error.message,
            code=error.code.value,
            available_credits=_as_float(error.details.get("availableCredits")),
            market_price=_as_float(error.details.get("marketPrice")),
            details=error.details or None,
        )
        self.send_message(message.sender, MessageType.TRANSACTION_REJECT, reject)

    def _send_error(self, message: Message, error: Exception) -> None:
        if message.type == MessageType.ERROR or message.sender == self.id:
            return
        payload = handler_failure(error, message.type.value)
        payload["originalMessageId"] = message.id
        self.send_message(message.sender, MessageType.ERROR, payload)

    async def send_heartbeat(self) -> None:
        self.state.touch()
        self.send_message(
            SYSTEM,
            MessageType.HEARTBEAT,
            Heartbeat(
                status=self.lifecycle.value,
                credits=self.state.credits,
                hbar_balance=self.state.hbar_balance,
            ),
        )

    async def _handle_heartbeat(self, message: Message) -> None:
        heartbeat = parse_payload(Heartbeat, message.payload)
        if heartbeat.check:
            self.send_message(
                message.sender,
                MessageType.HEARTBEAT,
                Heartbeat(status=self.lifecycle.value, credits=self.state.credits,
                          hbar_balance=self.state.hbar_balance),
            )

    async def _handle_error(self, message: Message) -> None:
        error = parse_payload(ErrorPayload, message.payload)
        logger.warning(
            f"Agent {self.id} received error from {message.sender}: {error.error}",
            extra={"agent_id": self.id, "code": error.code, "original_message_id": error.original_message_id},
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def assess_risk(self, amount: float) -> RiskLevel:
        ratio = amount / self.settings.max_transaction_amount
        if ratio <= 0.1:
            return RiskLevel.LOW
        if ratio <= 0.5:
            return RiskLevel.MEDIUM
        return RiskLevel.HIGH

    async def request_human_approval(
        self,
        transaction_id: str,
        amount: float,
        recipient: str,
        description: str,
    ) -> bool:
        """Gate a transaction on approval.

        Without ``require_human_approval`` every transaction is approved.
        In ``auto`` mode the agent decides from its own risk tolerance. In
        ``await`` mode a HUMAN_APPROVAL_REQUEST goes to the approver and the
        agent suspends until the response or ``approval_timeout`` (reject).
        """
        if not self.settings.require_human_approval:
            return True

        risk = self.assess_risk(amount)
        if self.settings.approval_mode == "auto":
            approved = risk.rank <= RiskLevel(self.settings.risk_tolerance).rank
            logger.info(
                f"Agent {self.id} auto-{'approved' if approved else 'denied'} {transaction_id} "
                f"({amount:g} HBAR, risk {risk.value})"
            )
            return approved

        request_id = f"apr_{uuid.uuid4().hex[:12]}"
        future = self.bus.expect_reply(self.id, request_id)
        self.send_message(
            self.settings.approver_id,
            MessageType.HUMAN_APPROVAL_REQUEST,
            HumanApprovalRequest(
                request_id=request_id,
                agent_id=self.id,
                transaction_id=transaction_id,
                amount=amount,
                recipient=recipient,
                description=description,
                risk_level=risk.value,
            ),
        )
        try:
            reply = await asyncio.wait_for(future, timeout=self.runtime.approval_timeout)
        except asyncio.TimeoutError:
            self.bus.cancel_reply(self.id, request_id)
            logger.warning(f"Agent {self.id}: approval for {transaction_id} timed out, rejecting")
            return False

        response = parse_payload(HumanApprovalResponse, reply.payload)
        logger.info(
            f"Agent {self.id}: approval for {transaction_id} "
            f"{'granted' if response.approved else 'denied'} {response.reason}".rstrip()
        )
        return response.approved

    async def execute_transaction(
        self,
        transaction_id: str,
        amount: float,
        recipient: str,
        description: str,
    ) -> bool:
        """Debit ``amount`` HBAR after approval; settlement completes later.

        Returns False when approval is denied or the balance is too low.
        """
        if amount < 0:
            raise ValidationError(f"transaction amount must not be negative: {amount}", amount=amount)
        if not await self.request_human_approval(transaction_id, amount, recipient, description):
            logger.info(f"Agent {self.id}: transaction {transaction_id} not approved")
            return False
        if amount > self.state.hbar_balance:
            logger.warning(
                f"Agent {self.id}: insufficient HBAR for {transaction_id} "
                f"({amount:g} > {self.state.hbar_balance:g})"
            )
            return False

        self.state.hbar_balance -= amount
        self.state.active_transaction_ids.add(transaction_id)
        self._executed[transaction_id] = amount
        self.state.performance.total_trades += 1
        logger.info(f"Agent {self.id} executed {transaction_id}: {amount:g} HBAR to {recipient} ({description})")

        task = asyncio.create_task(self._settle(transaction_id))
        self._settlements.add(task)
        task.add_done_callback(self._settlements.discard)
        return True

    async def _settle(self, transaction_id: str) -> None:
        await asyncio.sleep(self.runtime.settlement_delay)
        if transaction_id in self._voided:
            self._voided.discard(transaction_id)
            return
        self.state.active_transaction_ids.discard(transaction_id)
        self.state.performance.successful_trades += 1
        logger.debug(f"Agent {self.id}: transaction {transaction_id} settled")

    def void_transaction(self, transaction_id: str) -> float:
        """Refund an executed transaction the counterparty failed to honour.

        Returns the refunded HBAR (0 when the transaction is unknown or was
        already finalized or voided).
        """
        amount = self._executed.pop(transaction_id, None)
        if amount is None:
            return 0.0
        if transaction_id in self.state.active_transaction_ids:
            self.state.active_transaction_ids.discard(transaction_id)
            self._voided.add(transaction_id)
        else:
            self.state.performance.successful_trades -= 1
        self.state.hbar_balance += amount
        logger.info(f"Agent {self.id}: voided {transaction_id}, refunded {amount:g} HBAR")
        return amount

    def finalize_transaction(self, transaction_id: str) -> None:
        """Forget an executed transaction once the counterparty has delivered."""
        self._executed.pop(transaction_id, None)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def update_settings(self, **changes: Any) -> AgentSettings:
        """Apply validated setting changes (``id`` and ``type`` are fixed)."""
        for fixed in ("id", "type"):
            if fixed in changes and changes[fixed] != getattr(self.settings, fixed, None):
                raise ValidationError(f"cannot change agent {fixed}", field=fixed)
        merged = {**self.settings.model_dump(), **changes}
        try:
            self.settings = type(self.settings).model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"invalid settings for {self.id}: {e}", agentId=self.id) from e
        self.on_settings_updated()
        logger.info(f"Agent {self.id} settings updated: {sorted(changes)}")
        return self.settings

    def statistics(self) -> dict[str, Any]:
        perf = self.state.performance
        return {
            "agentId": self.id,
            "name": self.name,
            "type": self.agent_type.value,
            "lifecycle": self.lifecycle.value,
            "credits": self.state.credits,
            "hbarBalance": self.state.hbar_balance,
            "activeTransactions": len(self.state.active_transaction_ids),
            "lastActivity": self.state.last_activity,
            **perf.to_dict(),
            **self.extra_statistics(),
        }

    def get_info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.agent_type.value,
            "hederaAccountId": self.settings.hedera_account_id,
            "lifecycle": self.lifecycle.value,
        }


def _as_float(value: object) -> float | None:
    return float(value) if isinstance(value, (int, float)) else None
