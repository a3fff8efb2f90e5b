"""Unit tests for the shared agent runtime (lifecycle, dispatch, transactions)."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator

import pytest
import pytest_asyncio

from src.agents.base import BaseAgent
from src.agents.models import AgentLifecycle, AgentType, RiskLevel
from src.config_schema import AgentSettings, RuntimeConfig
from src.errors import (
    ExpiredOfferError,
    InsufficientResourceError,
    PriceDeviationError,
    ValidationError,
)
from src.protocol.bus import MessageBus
from src.protocol.messages import SYSTEM, Message, MessageType
from tests.testing_utils import wait_for


class RecordingAgent(BaseAgent):
    """Agent whose CREDIT_OFFER handler records and CREDIT_REQUEST handler raises."""

    agent_type = AgentType.OFFSET

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.seen: list[Message] = []
        self.raise_on_request: Exception | None = None
        self.settings_updates = 0

    def register_handlers(self) -> None:
        self.on(MessageType.CREDIT_OFFER, self._record)
        self.on(MessageType.CREDIT_REQUEST, self._explode)

    async def _record(self, message: Message) -> None:
        self.seen.append(message)

    async def _explode(self, message: Message) -> None:
        assert self.raise_on_request is not None
        raise self.raise_on_request

    def on_settings_updated(self) -> None:
        self.settings_updates += 1


def _settings(**overrides: Any) -> AgentSettings:
    values: dict[str, Any] = {"id": "rec", "initial_hbar": 100.0, "max_transaction_amount": 1000.0}
    values.update(overrides)
    return AgentSettings(**values)


@pytest_asyncio.fixture
async def agent(bus: MessageBus, quiet_runtime: RuntimeConfig) -> AsyncIterator[RecordingAgent]:
    agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
    await agent.initialize()
    yield agent
    await agent.shutdown()


def _request(sender: str = "peer") -> Message:
    return Message.create(sender, "rec", MessageType.CREDIT_REQUEST, {"transactionId": "tx_1"})


@pytest.mark.unit
class TestLifecycle:
    """Tests for initialize/shutdown."""

    @pytest.mark.asyncio
    async def test_initialize_joins_topic_and_starts_timers(self, agent: RecordingAgent, bus: MessageBus) -> None:
        assert agent.lifecycle == AgentLifecycle.RUNNING
        assert "rec" in bus.subscribers
        assert agent.scheduler.task_names == ["heartbeat", "drain"]
        assert agent.scheduler.get("drain").is_running

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.shutdown()
        await agent.shutdown()
        assert agent.lifecycle == AgentLifecycle.STOPPED
        assert "rec" not in bus.subscribers
        assert not agent.scheduler.get("drain").is_running

    @pytest.mark.asyncio
    async def test_initialize_twice_is_noop(self, agent: RecordingAgent) -> None:
        await agent.initialize()
        assert agent.scheduler.task_names == ["heartbeat", "drain"]

    @pytest.mark.asyncio
    async def test_drain_does_nothing_after_shutdown(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.shutdown()
        bus.send(Message.create("peer", "rec", MessageType.CREDIT_OFFER))
        assert await agent.drain_inbox() == 0
        assert agent.seen == []

    @pytest.mark.asyncio
    async def test_drain_timer_processes_inbox(self, bus: MessageBus, fast_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=fast_runtime)
        await agent.initialize()
        try:
            bus.send(Message.create("peer", "rec", MessageType.CREDIT_OFFER))
            await wait_for(lambda: len(agent.seen) == 1)
        finally:
            await agent.shutdown()


@pytest.mark.unit
class TestDispatch:
    """Tests for message dispatch and error conversion."""

    @pytest.mark.asyncio
    async def test_drain_in_arrival_order(self, agent: RecordingAgent, bus: MessageBus) -> None:
        ids = [bus.send(Message.create("peer", "rec", MessageType.CREDIT_OFFER, {"n": i})) for i in range(4)]
        assert await agent.drain_inbox() == 4
        assert [m.id for m in agent.seen] == ids

    @pytest.mark.asyncio
    async def test_unhandled_type_is_dropped(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.handle(Message.create("peer", "rec", MessageType.TRANSACTION_REJECT, {"reason": "x"}))
        assert bus.pending("peer") == 0

    @pytest.mark.asyncio
    async def test_insufficient_resource_becomes_reject(self, agent: RecordingAgent, bus: MessageBus) -> None:
        agent.raise_on_request = InsufficientResourceError("Insufficient credits available", availableCredits=3.0)
        await agent.handle(_request())

        [reply] = bus.receive("peer")
        assert reply.type == MessageType.TRANSACTION_REJECT
        assert reply.payload["reason"] == "Insufficient credits available"
        assert reply.payload["code"] == "insufficient_credits"
        assert reply.payload["availableCredits"] == 3.0
        assert reply.payload["transactionId"] == "tx_1"

    @pytest.mark.asyncio
    async def test_price_deviation_becomes_reject(self, agent: RecordingAgent, bus: MessageBus) -> None:
        agent.raise_on_request = PriceDeviationError("Price deviation too high", market_price=5.5)
        await agent.handle(_request())

        [reply] = bus.receive("peer")
        assert reply.type == MessageType.TRANSACTION_REJECT
        assert reply.payload["marketPrice"] == 5.5

    @pytest.mark.asyncio
    async def test_no_reject_to_system(self, agent: RecordingAgent, bus: MessageBus) -> None:
        agent.raise_on_request = InsufficientResourceError("short")
        await agent.handle(_request(sender=SYSTEM))
        assert bus.pending(SYSTEM) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [ValidationError("bad"), ExpiredOfferError("late")])
    async def test_validation_and_expiry_are_silent(
        self, agent: RecordingAgent, bus: MessageBus, error: Exception
    ) -> None:
        agent.raise_on_request = error
        await agent.handle(_request())
        assert bus.pending("peer") == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_error_message(self, agent: RecordingAgent, bus: MessageBus) -> None:
        agent.raise_on_request = ZeroDivisionError("division by zero")
        request = _request()
        await agent.handle(request)

        [reply] = bus.receive("peer")
        assert reply.type == MessageType.ERROR
        assert reply.payload["originalMessageId"] == request.id
        assert reply.payload["code"] == "handler_failed"

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_drain(self, agent: RecordingAgent, bus: MessageBus) -> None:
        agent.raise_on_request = ZeroDivisionError("boom")
        bus.send(_request())
        bus.send(Message.create("peer", "rec", MessageType.CREDIT_OFFER))
        assert await agent.drain_inbox() == 2
        assert len(agent.seen) == 1

    @pytest.mark.asyncio
    async def test_error_message_is_not_answered(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.handle(Message.create("peer", "rec", MessageType.ERROR, {"error": "x", "code": "c"}))
        assert bus.pending("peer") == 0


@pytest.mark.unit
class TestHeartbeat:
    """Tests for heartbeats and liveness probes."""

    @pytest.mark.asyncio
    async def test_send_heartbeat_goes_to_system(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.send_heartbeat()
        [beat] = bus.receive(SYSTEM)
        assert beat.type == MessageType.HEARTBEAT
        assert beat.payload["status"] == "running"
        assert beat.payload["hbarBalance"] == 100.0

    @pytest.mark.asyncio
    async def test_probe_gets_reply(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.handle(Message.create(SYSTEM, "rec", MessageType.HEARTBEAT, {"check": True}))
        [reply] = bus.receive(SYSTEM)
        assert reply.type == MessageType.HEARTBEAT
        assert not reply.payload["check"]

    @pytest.mark.asyncio
    async def test_plain_heartbeat_not_answered(self, agent: RecordingAgent, bus: MessageBus) -> None:
        await agent.handle(Message.create("peer", "rec", MessageType.HEARTBEAT, {}))
        assert bus.pending("peer") == 0


@pytest.mark.unit
class TestApproval:
    """Tests for the risk gate."""

    @pytest.mark.parametrize(
        ("amount", "level"),
        [(50, RiskLevel.LOW), (100, RiskLevel.LOW), (101, RiskLevel.MEDIUM), (500, RiskLevel.MEDIUM),
         (501, RiskLevel.HIGH)],
    )
    def test_assess_risk(self, bus: MessageBus, quiet_runtime: RuntimeConfig, amount: float, level: RiskLevel) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
        assert agent.assess_risk(amount) == level

    @pytest.mark.asyncio
    async def test_no_approval_required(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
        assert await agent.request_human_approval("tx", 999, "peer", "")

    @pytest.mark.asyncio
    async def test_auto_mode_uses_tolerance(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(
            _settings(require_human_approval=True, risk_tolerance="MEDIUM"), bus, runtime=quiet_runtime
        )
        assert await agent.request_human_approval("tx", 400, "peer", "")
        assert not await agent.request_human_approval("tx", 600, "peer", "")

    @pytest.mark.asyncio
    async def test_await_mode_asks_approver(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(
            _settings(require_human_approval=True, approval_mode="await"), bus, runtime=quiet_runtime
        )

        async def approver() -> None:
            await wait_for(lambda: bus.pending(SYSTEM) > 0)
            [request] = bus.receive(SYSTEM)
            assert request.type == MessageType.HUMAN_APPROVAL_REQUEST
            assert request.payload["riskLevel"] == "HIGH"
            bus.send(Message.create(
                SYSTEM, "rec", MessageType.HUMAN_APPROVAL_RESPONSE,
                {"requestId": request.payload["requestId"], "approved": False, "reason": "too large"},
            ))

        approved, _ = await asyncio.gather(
            agent.request_human_approval("tx_9", 800, "peer", "big purchase"), approver()
        )
        assert approved is False

    @pytest.mark.asyncio
    async def test_await_mode_times_out_as_reject(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(
            _settings(require_human_approval=True, approval_mode="await"), bus, runtime=quiet_runtime
        )
        assert not await agent.request_human_approval("tx_9", 10, "peer", "")


@pytest.mark.unit
class TestTransactions:
    """Tests for execute/settle/void."""

    @pytest.mark.asyncio
    async def test_execute_debits_and_settles(self, agent: RecordingAgent) -> None:
        assert await agent.execute_transaction("tx_1", 10, "peer", "buy")
        assert agent.state.hbar_balance == 90
        assert "tx_1" in agent.state.active_transaction_ids
        assert agent.state.performance.total_trades == 1

        await agent.wait_for_settlements()
        assert "tx_1" not in agent.state.active_transaction_ids
        assert agent.state.performance.successful_trades == 1

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, agent: RecordingAgent) -> None:
        assert not await agent.execute_transaction("tx_1", 500, "peer", "buy")
        assert agent.state.hbar_balance == 100
        assert agent.state.performance.total_trades == 0

    @pytest.mark.asyncio
    async def test_negative_amount(self, agent: RecordingAgent) -> None:
        with pytest.raises(ValidationError):
            await agent.execute_transaction("tx_1", -1, "peer", "buy")

    @pytest.mark.asyncio
    async def test_void_before_settlement(self, agent: RecordingAgent) -> None:
        await agent.execute_transaction("tx_1", 10, "peer", "buy")
        assert agent.void_transaction("tx_1") == 10
        await agent.wait_for_settlements()

        assert agent.state.hbar_balance == 100
        assert agent.state.performance.successful_trades == 0
        assert not agent.state.active_transaction_ids

    @pytest.mark.asyncio
    async def test_void_after_settlement(self, agent: RecordingAgent) -> None:
        await agent.execute_transaction("tx_1", 10, "peer", "buy")
        await agent.wait_for_settlements()
        assert agent.void_transaction("tx_1") == 10
        assert agent.state.performance.successful_trades == 0
        assert agent.void_transaction("tx_1") == 0

    @pytest.mark.asyncio
    async def test_finalized_transaction_cannot_be_voided(self, agent: RecordingAgent) -> None:
        await agent.execute_transaction("tx_1", 10, "peer", "buy")
        agent.finalize_transaction("tx_1")
        assert agent.void_transaction("tx_1") == 0
        assert agent.state.hbar_balance == 90


@pytest.mark.unit
class TestSettingsAndStats:
    """Tests for update_settings and statistics."""

    def test_update_settings(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
        agent.update_settings(name="Renamed", max_transaction_amount=50)
        assert agent.name == "Renamed"
        assert agent.settings.max_transaction_amount == 50
        assert agent.settings_updates == 1

    def test_id_is_fixed(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
        with pytest.raises(ValidationError):
            agent.update_settings(id="other")

    def test_invalid_value_rejected(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(), bus, runtime=quiet_runtime)
        with pytest.raises(ValidationError):
            agent.update_settings(max_transaction_amount=-5)
        assert agent.settings.max_transaction_amount == 1000

    def test_statistics(self, bus: MessageBus, quiet_runtime: RuntimeConfig) -> None:
        agent = RecordingAgent(_settings(name="Rec"), bus, runtime=quiet_runtime)
        stats = agent.statistics()
        assert stats["agentId"] == "rec"
        assert stats["type"] == "offset"
        assert stats["lifecycle"] == "created"
        assert stats["hbarBalance"] == 100.0
        assert stats["totalTrades"] == 0
        assert agent.get_info()["name"] == "Rec"
