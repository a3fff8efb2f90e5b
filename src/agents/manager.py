"""Agent manager - builds, supervises and stops the agent population.

The manager owns the shared collaborators (message bus, credit engine,
telemetry simulator, authorizer) and acts as the reserved ``system``
participant: it answers HUMAN_APPROVAL_REQUESTs, records heartbeats and
logs ERRORs addressed to ``system``.

Usage:
    manager = AgentManager(get_validated_config())
    await manager.initialize()
    ...
    print(manager.get_ecosystem_statistics())
    await manager.shutdown()
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections import deque
from typing import Any, Callable

from ..auth import ApiKeyAuthorizer, Authorizer
from ..config import get_validated_config
from ..config_schema import (
    AgentDefinition,
    AppConfig,
    OffsetAgentConfig,
    SequestrationAgentConfig,
    TradingAgentConfig,
)
from ..credits.cache import InMemoryCache
from ..credits.engine import CreditEngine
from ..credits.ledger import MintRecord, create_ledger
from ..credits.scheduler import ScheduledCreditProcessor
from ..credits.telemetry import InMemoryTelemetryStore, TelemetrySimulator
from ..errors import AgentNotFoundError, ValidationError
from ..event_log import EventLogger
from ..protocol.bus import MessageBus
from ..protocol.messages import BROADCAST, SYSTEM, Message, MessageType, now_ms
from ..protocol.payloads import (
    ErrorPayload,
    Heartbeat,
    HumanApprovalRequest,
    HumanApprovalResponse,
    dump,
    parse_payload,
)
from .base import BaseAgent
from .models import AgentLifecycle, AgentType
from .offset import OffsetAgent
from .runtime import AgentScheduler
from .sequestration import SequestrationAgent
from .trading import TradingAgent

logger = logging.getLogger(__name__)

AgentFactory = Callable[[AgentDefinition, "AgentManager"], BaseAgent]
ApprovalPolicy = Callable[[HumanApprovalRequest], tuple[bool, str]]


def _build_sequestration(definition: AgentDefinition, manager: AgentManager) -> BaseAgent:
    assert isinstance(definition, SequestrationAgentConfig)
    return SequestrationAgent(
        definition,
        manager.bus,
        engine=manager.engine,
        simulator=manager.simulator,
        runtime=manager.config.runtime,
        rng=manager.agent_rng(),
    )


def _build_offset(definition: AgentDefinition, manager: AgentManager) -> BaseAgent:
    assert isinstance(definition, OffsetAgentConfig)
    return OffsetAgent(definition, manager.bus, runtime=manager.config.runtime, rng=manager.agent_rng())


def _build_trading(definition: AgentDefinition, manager: AgentManager) -> BaseAgent:
    assert isinstance(definition, TradingAgentConfig)
    return TradingAgent(definition, manager.bus, runtime=manager.config.runtime, rng=manager.agent_rng())


AGENT_FACTORIES: dict[str, AgentFactory] = {
    AgentType.SEQUESTRATION.value: _build_sequestration,
    AgentType.OFFSET.value: _build_offset,
    AgentType.TRADING.value: _build_trading,
}


def amount_limit_policy(max_amount: float) -> ApprovalPolicy:
    """Approve requests up to ``max_amount`` HBAR."""

    def policy(request: HumanApprovalRequest) -> tuple[bool, str]:
        if request.amount <= max_amount:
            return True, f"amount {request.amount:g} within limit {max_amount:g}"
        return False, f"amount {request.amount:g} exceeds limit {max_amount:g}"

    return policy


class AgentManager:
    """Supervisor for the agent ecosystem.

    Args:
        config: validated application config (defaults to the global one)
        bus: shared message bus (a fresh one if omitted)
        engine: credit engine (built from ``storage`` config if omitted)
        authorizer: credential check for outside callers
        approval_policy: decides HUMAN_APPROVAL_REQUESTs addressed to ``system``
        event_logger: optional JSONL log of bus traffic, mints and lifecycle
        rng: seed source for per-agent random generators
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        bus: MessageBus | None = None,
        engine: CreditEngine | None = None,
        authorizer: Authorizer | None = None,
        approval_policy: ApprovalPolicy | None = None,
        event_logger: EventLogger | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.config = config or get_validated_config()
        self.bus = bus or MessageBus()
        self.rng = rng or random.Random()
        if engine is None:
            engine = CreditEngine(
                InMemoryTelemetryStore(),
                create_ledger(self.config.storage),
                cache=InMemoryCache(),
                config=self.config.credit_calculation,
                cache_ttl=self.config.storage.cache_ttl,
            )
        self.engine = engine
        self.simulator = (
            TelemetrySimulator(engine.telemetry, random.Random(self.rng.getrandbits(32)))
            if isinstance(engine.telemetry, InMemoryTelemetryStore)
            else None
        )
        self.authorizer = authorizer or ApiKeyAuthorizer(self.config.auth)
        self.credit_processor = ScheduledCreditProcessor(engine, self.authorizer, self.config.scheduler)
        self.approval_policy = approval_policy or amount_limit_policy(self.config.ecosystem.max_transaction_amount)
        self.event_logger = event_logger

        self.agents: dict[str, BaseAgent] = {}
        self.is_running = False
        self.scheduler = AgentScheduler(SYSTEM)
        self.snapshot: dict[str, dict[str, Any]] = {}
        self.heartbeats: dict[str, int] = {}
        self.unresponsive: set[str] = set()
        self.errors: deque[dict[str, Any]] = deque(maxlen=100)
        self.approvals: deque[dict[str, Any]] = deque(maxlen=100)
        self._hooks_installed = False

    def agent_rng(self) -> random.Random:
        return random.Random(self.rng.getrandbits(32))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Register devices, build every configured agent and start monitoring."""
        if self.is_running:
            logger.warning("Agent manager already running")
            return

        ecosystem = self.config.ecosystem
        if isinstance(self.engine.telemetry, InMemoryTelemetryStore):
            for device in ecosystem.devices:
                self.engine.telemetry.register_device(device.device_id, device.owner_id)
        self._install_hooks()

        self.agents = {}
        for definition in ecosystem.agents:
            agent = self.create_agent(definition)
            self.agents[agent.id] = agent
            await agent.initialize()
            self._log_event("agent_started", {"agent_id": agent.id, "agent_type": agent.agent_type.value})

        self.scheduler.clear()
        self.scheduler.add("monitor", ecosystem.monitor_interval, self.monitor)
        self.scheduler.add("inbox", self.config.runtime.drain_interval, self._drain_system_inbox)
        await self.scheduler.start_all()
        if self.config.scheduler.enabled:
            await self.credit_processor.start()

        self.is_running = True
        logger.info(f"Agent manager started {len(self.agents)} agents: {sorted(self.agents)}")

    def create_agent(self, definition: AgentDefinition) -> BaseAgent:
        factory = AGENT_FACTORIES.get(definition.type)
        if factory is None:
            raise ValidationError(f"unknown agent type: {definition.type}", type=definition.type)
        return factory(definition, self)

    def _install_hooks(self) -> None:
        if self._hooks_installed or self.event_logger is None:
            return
        event_logger = self.event_logger

        def on_send(message: Message) -> None:
            event_logger.log_message(message.to_dict())

        def on_mint(record: MintRecord) -> None:
            event_logger.log_mint(
                record.device_id, record.owner_id, record.credits, record.window_start, record.window_end
            )

        self.bus.add_listener(on_send)
        self.engine.add_mint_listener(on_mint)
        self._hooks_installed = True

    def _log_event(self, event_type: str, data: dict[str, Any]) -> None:
        if self.event_logger is not None:
            self.event_logger.log(event_type, data)

    async def emergency_stop(self) -> None:
        """Shut down every agent and stop monitoring."""
        logger.warning("Emergency stop: shutting down all agents")
        for agent in self.agents.values():
            await agent.shutdown()
        await self.scheduler.stop_all()
        await self.credit_processor.stop()
        self.is_running = False
        self._log_event("ecosystem_stopped", {"agents": sorted(self.agents)})

    async def restart(self) -> None:
        """Emergency stop, then build a fresh agent population."""
        await self.emergency_stop()
        await self.initialize()

    async def shutdown(self) -> None:
        """Stop everything and let in-flight settlements finish."""
        await self.emergency_stop()
        await asyncio.gather(*(agent.wait_for_settlements() for agent in self.agents.values()))
        logger.info("Agent manager shut down")

    # ------------------------------------------------------------------
    # Monitoring
    # ------------------------------------------------------------------

    async def monitor(self) -> None:
        """One monitoring tick: snapshot, health check, system inbox."""
        self.collect_statistics()
        self.check_agent_health()
        await self.process_system_messages()

    async def _drain_system_inbox(self) -> None:
        await self.process_system_messages()

    def collect_statistics(self) -> dict[str, dict[str, Any]]:
        self.snapshot = {agent_id: agent.statistics() for agent_id, agent in self.agents.items()}
        return self.snapshot

    def check_agent_health(self, now: int | None = None) -> list[str]:
        """Probe agents idle for longer than ``unresponsive_after``; returns their ids."""
        now = now if now is not None else now_ms()
        threshold = int(self.config.ecosystem.unresponsive_after * 1000)
        flagged: list[str] = []
        for agent_id, agent in self.agents.items():
            if agent.lifecycle != AgentLifecycle.RUNNING:
                continue
            idle = now - agent.state.last_activity
            if idle > threshold:
                flagged.append(agent_id)
                self.unresponsive.add(agent_id)
                logger.warning(f"Agent {agent_id} unresponsive for {idle / 1000:.0f}s, probing")
                self.bus.send(
                    Message.create(SYSTEM, agent_id, MessageType.HEARTBEAT, dump(Heartbeat(status="probe", check=True)))
                )
            else:
                self.unresponsive.discard(agent_id)
        return flagged

    async def process_system_messages(self) -> int:
        """Handle everything queued for ``system``; returns how many."""
        messages = self.bus.receive(SYSTEM)
        for message in messages:
            try:
                self._handle_system_message(message)
            except ValidationError as e:
                logger.warning(f"Invalid {message.type.value} to system from {message.sender}: {e}")
        return len(messages)

    def _handle_system_message(self, message: Message) -> None:
        if message.type == MessageType.HEARTBEAT:
            self.heartbeats[message.sender] = message.timestamp
            self.unresponsive.discard(message.sender)
        elif message.type == MessageType.ERROR:
            error = parse_payload(ErrorPayload, message.payload)
            self.errors.append({"from": message.sender, "timestamp": message.timestamp, **dump(error)})
            logger.warning(f"System received error from {message.sender}: {error.error}")
        elif message.type == MessageType.HUMAN_APPROVAL_REQUEST:
            self._answer_approval(message)
        else:
            logger.debug(f"System ignoring {message.type.value} from {message.sender}")

    def _answer_approval(self, message: Message) -> None:
        request = parse_payload(HumanApprovalRequest, message.payload)
        approved, reason = self.approval_policy(request)
        self.approvals.append(
            {"requestId": request.request_id, "agentId": request.agent_id, "amount": request.amount,
             "approved": approved}
        )
        logger.info(
            f"System {'approved' if approved else 'denied'} {request.transaction_id} "
            f"for {request.agent_id}: {reason}"
        )
        self.bus.send(
            Message.create(
                SYSTEM,
                message.sender,
                MessageType.HUMAN_APPROVAL_RESPONSE,
                dump(HumanApprovalResponse(request_id=request.request_id, approved=approved, reason=reason)),
            )
        )

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get_agent(self, agent_id: str) -> BaseAgent | None:
        return self.agents.get(agent_id)

    def get_all_agents(self) -> list[BaseAgent]:
        return list(self.agents.values())

    def get_agents_by_type(self, agent_type: AgentType | str) -> list[BaseAgent]:
        wanted = AgentType(agent_type)
        return [a for a in self.agents.values() if a.agent_type == wanted]

    def _require_agent(self, agent_id: str) -> BaseAgent:
        agent = self.agents.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found", agentId=agent_id)
        return agent

    def update_agent_config(self, agent_id: str, **changes: Any) -> None:
        """Apply validated setting changes to a running agent.

        Raises:
            AgentNotFoundError: unknown agent
            ValidationError: invalid settings
        """
        self._require_agent(agent_id).update_settings(**changes)

    def send_message_to_agent(
        self,
        credential: str,
        to: str,
        message_type: MessageType,
        payload: dict[str, Any],
    ) -> str:
        """Send on behalf of an outside caller; returns the message id.

        Raises:
            AuthorizationError: credential denied
            AgentNotFoundError: unknown recipient
        """
        identity = self.authorizer.authorize(credential)
        self._require_agent(to)
        message_id = self.bus.send(Message.create(SYSTEM, to, message_type, payload))
        logger.info(f"{identity.owner_id} sent {message_type.value} to {to}")
        return message_id

    def broadcast_to_all_agents(self, credential: str, message_type: MessageType, payload: dict[str, Any]) -> str:
        """Broadcast on behalf of an outside caller; returns the message id."""
        identity = self.authorizer.authorize(credential)
        message_id = self.bus.send(Message.create(SYSTEM, BROADCAST, message_type, payload))
        logger.info(f"{identity.owner_id} broadcast {message_type.value}")
        return message_id

    def get_ecosystem_statistics(self) -> dict[str, Any]:
        stats = [agent.statistics() for agent in self.agents.values()]
        total_trades = sum(s["totalTrades"] for s in stats)
        total_volume = sum(s["totalVolume"] for s in stats)
        return {
            "totalAgents": len(stats),
            "activeAgents": sum(1 for a in self.agents.values() if a.is_running),
            "totalCredits": sum(s["credits"] for s in stats),
            "totalHbar": sum(s["hbarBalance"] for s in stats),
            "totalTrades": total_trades,
            "successfulTrades": sum(s["successfulTrades"] for s in stats),
            "totalVolume": total_volume,
            "averagePrice": total_volume / total_trades if total_trades else 0.0,
            "isRunning": self.is_running,
            "unresponsiveAgents": sorted(self.unresponsive),
            "bus": self.bus.stats(),
            "creditProcessor": self.credit_processor.get_status(),
            "agents": {s["agentId"]: s for s in stats},
        }
