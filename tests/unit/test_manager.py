"""Unit tests for the agent manager (supervisor and system participant)."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import AsyncIterator

import pytest
import pytest_asyncio

from src.agents.manager import AGENT_FACTORIES, AgentManager, amount_limit_policy
from src.agents.models import AgentLifecycle, AgentType
from src.agents.offset import OffsetAgent
from src.agents.sequestration import SequestrationAgent
from src.agents.trading import TradingAgent
from src.config_schema import (
    AppConfig,
    AuthConfig,
    DeviceConfig,
    EcosystemConfig,
    OffsetAgentConfig,
    RuntimeConfig,
    SequestrationAgentConfig,
    TradingAgentConfig,
)
from src.errors import AgentNotFoundError, AuthorizationError, ValidationError
from src.event_log import EventLogger
from src.protocol.messages import SYSTEM, Message, MessageType
from src.protocol.payloads import HumanApprovalRequest
from tests.testing_utils import make_readings

API_KEY = "key-green"


def _app_config(quiet_runtime: RuntimeConfig) -> AppConfig:
    return AppConfig(
        runtime=quiet_runtime,
        ecosystem=EcosystemConfig(
            monitor_interval=600,
            unresponsive_after=60,
            max_transaction_amount=500,
            devices=[DeviceConfig(device_id="seq-001", owner_id="greenco")],
            agents=[
                SequestrationAgentConfig(
                    id="sequester-1", device_ids=["seq-001"], readings_per_tick=0,
                    credit_generation_interval=600,
                ),
                OffsetAgentConfig(id="offset-1", requirement_interval=600),
                TradingAgentConfig(id="trader-1", quote_interval=600, match_interval=600, update_interval=600),
            ],
        ),
        auth=AuthConfig(api_keys={API_KEY: "greenco"}),
    )


@pytest_asyncio.fixture
async def manager(quiet_runtime: RuntimeConfig) -> AsyncIterator[AgentManager]:
    mgr = AgentManager(_app_config(quiet_runtime))
    await mgr.initialize()
    yield mgr
    await mgr.shutdown()


def _approval_request(amount: float) -> HumanApprovalRequest:
    return HumanApprovalRequest(
        request_id="apr_1", agent_id="offset-1", transaction_id="tx_1",
        amount=amount, recipient="sequester-1", description="Purchase", risk_level="HIGH",
    )


@pytest.mark.unit
class TestLifecycle:
    """Tests for building and stopping the population."""

    @pytest.mark.asyncio
    async def test_initialize_builds_every_agent(self, manager: AgentManager) -> None:
        assert manager.is_running
        assert sorted(manager.agents) == ["offset-1", "sequester-1", "trader-1"]
        assert isinstance(manager.get_agent("sequester-1"), SequestrationAgent)
        assert isinstance(manager.get_agent("offset-1"), OffsetAgent)
        assert isinstance(manager.get_agent("trader-1"), TradingAgent)
        assert all(a.lifecycle == AgentLifecycle.RUNNING for a in manager.get_all_agents())

    @pytest.mark.asyncio
    async def test_devices_registered(self, manager: AgentManager) -> None:
        device = manager.engine.telemetry.get_device("seq-001")
        assert device is not None
        assert device.owner_id == "greenco"

    @pytest.mark.asyncio
    async def test_agents_join_broadcast_topic(self, manager: AgentManager) -> None:
        assert {"offset-1", "sequester-1", "trader-1"} <= manager.bus.subscribers

    @pytest.mark.asyncio
    async def test_initialize_twice_is_noop(self, manager: AgentManager) -> None:
        agents = dict(manager.agents)
        await manager.initialize()
        assert manager.agents == agents

    @pytest.mark.asyncio
    async def test_emergency_stop(self, manager: AgentManager) -> None:
        await manager.emergency_stop()
        assert not manager.is_running
        assert all(a.lifecycle == AgentLifecycle.STOPPED for a in manager.get_all_agents())
        assert manager.bus.subscribers == frozenset()

    @pytest.mark.asyncio
    async def test_restart_builds_fresh_agents(self, manager: AgentManager) -> None:
        old = manager.get_agent("offset-1")
        await manager.restart()
        new = manager.get_agent("offset-1")
        assert manager.is_running
        assert new is not old
        assert new is not None and new.lifecycle == AgentLifecycle.RUNNING

    def test_factories_cover_every_type(self) -> None:
        assert set(AGENT_FACTORIES) == {t.value for t in AgentType}


@pytest.mark.unit
class TestQueries:
    """Tests for agent lookup and configuration."""

    @pytest.mark.asyncio
    async def test_get_agents_by_type(self, manager: AgentManager) -> None:
        assert [a.id for a in manager.get_agents_by_type(AgentType.OFFSET)] == ["offset-1"]
        assert [a.id for a in manager.get_agents_by_type("trading")] == ["trader-1"]

    @pytest.mark.asyncio
    async def test_unknown_agent(self, manager: AgentManager) -> None:
        assert manager.get_agent("nobody") is None
        with pytest.raises(AgentNotFoundError):
            manager.update_agent_config("nobody", max_price_per_credit=2.0)

    @pytest.mark.asyncio
    async def test_update_agent_config(self, manager: AgentManager) -> None:
        manager.update_agent_config("offset-1", max_price_per_credit=2.0)
        agent = manager.get_agent("offset-1")
        assert agent is not None
        assert agent.settings.max_price_per_credit == 2.0

    @pytest.mark.asyncio
    async def test_invalid_agent_config_rejected(self, manager: AgentManager) -> None:
        with pytest.raises(ValidationError):
            manager.update_agent_config("trader-1", spread_percentage=50)


@pytest.mark.unit
class TestOutsideMessaging:
    """Tests for credential-gated sends."""

    @pytest.mark.asyncio
    async def test_send_message_to_agent(self, manager: AgentManager) -> None:
        msg_id = manager.send_message_to_agent(API_KEY, "offset-1", MessageType.HEARTBEAT, {"status": "ping"})
        [message] = manager.bus.receive("offset-1")
        assert message.id == msg_id
        assert message.sender == SYSTEM

    @pytest.mark.asyncio
    async def test_bad_credential_rejected(self, manager: AgentManager) -> None:
        with pytest.raises(AuthorizationError):
            manager.send_message_to_agent("wrong", "offset-1", MessageType.HEARTBEAT, {})
        assert manager.bus.pending("offset-1") == 0

    @pytest.mark.asyncio
    async def test_unknown_recipient_rejected(self, manager: AgentManager) -> None:
        with pytest.raises(AgentNotFoundError):
            manager.send_message_to_agent(API_KEY, "nobody", MessageType.HEARTBEAT, {})

    @pytest.mark.asyncio
    async def test_broadcast_reaches_all_agents(self, manager: AgentManager) -> None:
        manager.broadcast_to_all_agents(API_KEY, MessageType.HEARTBEAT, {"status": "ping"})
        for agent_id in manager.agents:
            assert manager.bus.pending(agent_id) == 1

    @pytest.mark.asyncio
    async def test_broadcast_requires_credential(self, manager: AgentManager) -> None:
        with pytest.raises(AuthorizationError):
            manager.broadcast_to_all_agents("", MessageType.HEARTBEAT, {})


@pytest.mark.unit
class TestMonitoring:
    """Tests for health checks and the system inbox."""

    @pytest.mark.asyncio
    async def test_idle_agent_probed(self, manager: AgentManager) -> None:
        agent = manager.get_agent("offset-1")
        assert agent is not None
        agent.state.last_activity -= 120_000

        flagged = manager.check_agent_health()

        assert flagged == ["offset-1"]
        assert manager.unresponsive == {"offset-1"}
        [probe] = manager.bus.receive("offset-1")
        assert probe.type == MessageType.HEARTBEAT
        assert probe.payload["check"] is True

    @pytest.mark.asyncio
    async def test_probe_answer_clears_flag(self, manager: AgentManager) -> None:
        agent = manager.get_agent("offset-1")
        assert agent is not None
        agent.state.last_activity -= 120_000
        manager.check_agent_health()

        await agent.drain_inbox()
        assert await manager.process_system_messages() == 1
        assert manager.unresponsive == set()
        assert "offset-1" in manager.heartbeats

    @pytest.mark.asyncio
    async def test_stopped_agents_not_probed(self, manager: AgentManager) -> None:
        agent = manager.get_agent("offset-1")
        assert agent is not None
        await agent.shutdown()
        agent.state.last_activity -= 120_000
        assert manager.check_agent_health() == []

    @pytest.mark.asyncio
    async def test_errors_recorded(self, manager: AgentManager) -> None:
        manager.bus.send(Message.create("offset-1", SYSTEM, MessageType.ERROR, {
            "error": "boom", "code": "handler_failed", "category": "execution",
        }))
        await manager.process_system_messages()
        assert manager.errors[-1]["from"] == "offset-1"
        assert manager.errors[-1]["error"] == "boom"

    @pytest.mark.asyncio
    async def test_invalid_system_message_dropped(self, manager: AgentManager) -> None:
        manager.bus.send(Message.create("offset-1", SYSTEM, MessageType.HUMAN_APPROVAL_REQUEST, {"amount": 1}))
        assert await manager.process_system_messages() == 1
        assert len(manager.approvals) == 0

    @pytest.mark.asyncio
    async def test_collect_statistics(self, manager: AgentManager) -> None:
        snapshot = manager.collect_statistics()
        assert set(snapshot) == set(manager.agents)
        assert snapshot["offset-1"]["type"] == "offset"


@pytest.mark.unit
class TestApprovals:
    """Tests for the system approver."""

    def test_amount_limit_policy(self) -> None:
        policy = amount_limit_policy(100)
        assert policy(_approval_request(100))[0]
        approved, reason = policy(_approval_request(101))
        assert not approved
        assert "exceeds" in reason

    @pytest.mark.asyncio
    async def test_request_answered(self, manager: AgentManager) -> None:
        manager.bus.send(Message.create(
            "offset-1", SYSTEM, MessageType.HUMAN_APPROVAL_REQUEST,
            {"requestId": "apr_1", "agentId": "offset-1", "transactionId": "tx_1", "amount": 600,
             "recipient": "sequester-1", "description": "Purchase", "riskLevel": "HIGH"},
        ))
        await manager.process_system_messages()

        [reply] = manager.bus.receive("offset-1")
        assert reply.type == MessageType.HUMAN_APPROVAL_RESPONSE
        assert reply.payload["requestId"] == "apr_1"
        assert reply.payload["approved"] is False
        assert manager.approvals[-1]["approved"] is False

    @pytest.mark.asyncio
    async def test_awaiting_agent_gets_approval(self, quiet_runtime: RuntimeConfig) -> None:
        config = _app_config(quiet_runtime)
        config.ecosystem.agents[1] = OffsetAgentConfig(
            id="offset-1", requirement_interval=600,
            require_human_approval=True, approval_mode="await",
        )
        mgr = AgentManager(config)
        await mgr.initialize()
        try:
            buyer = mgr.get_agent("offset-1")
            assert buyer is not None
            pending = asyncio.create_task(buyer.execute_transaction("tx_1", 50, "sequester-1", "Purchase"))
            await asyncio.sleep(0.01)
            await mgr.process_system_messages()
            assert await pending
            assert buyer.state.hbar_balance == 950
        finally:
            await mgr.shutdown()


@pytest.mark.unit
class TestEcosystemStatistics:
    """Tests for aggregated statistics."""

    @pytest.mark.asyncio
    async def test_empty_market(self, manager: AgentManager) -> None:
        stats = manager.get_ecosystem_statistics()
        assert stats["totalAgents"] == 3
        assert stats["activeAgents"] == 3
        assert stats["totalTrades"] == 0
        assert stats["averagePrice"] == 0.0
        assert stats["isRunning"] is True
        assert set(stats["agents"]) == set(manager.agents)
        assert stats["creditProcessor"]["isRunning"] is False

    @pytest.mark.asyncio
    async def test_totals(self, manager: AgentManager) -> None:
        buyer = manager.get_agent("offset-1")
        assert buyer is not None
        await buyer.execute_transaction("tx_1", 100, "sequester-1", "Purchase")

        stats = manager.get_ecosystem_statistics()
        assert stats["totalTrades"] == 1
        assert stats["totalVolume"] == 0
        assert stats["totalHbar"] == pytest.approx(3 * 1000 - 100)


@pytest.mark.unit
class TestEventLog:
    """Tests for the JSONL event hooks."""

    @pytest.mark.asyncio
    async def test_traffic_and_mints_logged(self, quiet_runtime: RuntimeConfig, tmp_path: Path) -> None:
        event_logger = EventLogger(tmp_path / "events.jsonl")
        mgr = AgentManager(_app_config(quiet_runtime), event_logger=event_logger)
        await mgr.initialize()
        try:
            mgr.engine.telemetry.add_readings(make_readings("seq-001", 12))
            result = await mgr.engine.process_credits_for_period("seq-001", 0, 20_000)
            assert result.can_mint
            mgr.broadcast_to_all_agents(API_KEY, MessageType.HEARTBEAT, {"status": "ping"})
        finally:
            await mgr.shutdown()

        types = [e["event_type"] for e in event_logger.read_recent(100)]
        assert types.count("agent_started") == 3
        assert "credits_minted" in types
        assert "message_sent" in types
        assert types[-1] == "ecosystem_stopped"
