"""Pytest fixtures for carbon credit trading tests.

Common fixtures for the bus, the credit engine and fast agent timers.
"""

from __future__ import annotations

# Load environment variables from .env before any tests run
from dotenv import load_dotenv

load_dotenv()

from typing import Iterator

import pytest

from src.config import reset_config, use_config
from src.config_schema import AppConfig, CreditCalculationConfig, RuntimeConfig
from src.credits.cache import InMemoryCache
from src.credits.engine import CreditEngine
from src.credits.ledger import InMemoryCreditLedger
from src.credits.telemetry import InMemoryTelemetryStore
from src.protocol.bus import MessageBus


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: fast, isolated tests of one module")
    config.addinivalue_line(
        "markers",
        "integration: tests running several agents over one bus"
    )


@pytest.fixture(autouse=True)
def default_config() -> Iterator[AppConfig]:
    """Install the schema defaults as the global config for every test.

    Keeps tests independent of config/config.yaml and of each other.
    """
    config = use_config(AppConfig())
    yield config
    reset_config()


@pytest.fixture
def fast_runtime() -> RuntimeConfig:
    """Agent timers short enough for tests to wait on."""
    return RuntimeConfig(
        heartbeat_interval=60.0,
        drain_interval=0.01,
        settlement_delay=0.01,
        approval_timeout=0.2,
        stop_timeout=1.0,
    )


@pytest.fixture
def quiet_runtime() -> RuntimeConfig:
    """Timers that never fire during a test; handlers are driven directly."""
    return RuntimeConfig(
        heartbeat_interval=600.0,
        drain_interval=600.0,
        settlement_delay=0.01,
        approval_timeout=0.2,
        stop_timeout=1.0,
    )


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def telemetry() -> InMemoryTelemetryStore:
    """Telemetry store with seq-001 and seq-002 owned by greenco."""
    store = InMemoryTelemetryStore()
    store.register_device("seq-001", "greenco", created_at=0)
    store.register_device("seq-002", "greenco", created_at=0)
    return store


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    return InMemoryCreditLedger()


@pytest.fixture
def engine(telemetry: InMemoryTelemetryStore, ledger: InMemoryCreditLedger) -> CreditEngine:
    """Credit engine over in-memory stores with the default thresholds."""
    return CreditEngine(
        telemetry,
        ledger,
        cache=InMemoryCache(),
        config=CreditCalculationConfig(),
        cache_ttl=3600.0,
    )
