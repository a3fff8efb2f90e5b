# Agents package
# Concrete agents and the manager import the credits package, which itself
# uses the runtime here, so only leaf modules are re-exported.
from .models import (
    AgentLifecycle,
    AgentState,
    AgentType,
    MarketDataPoint,
    Performance,
    RiskLevel,
    Transaction,
    TransactionStatus,
)
from .runtime import AgentScheduler, PeriodicTask, TaskState

__all__: list[str] = [
    "AgentLifecycle",
    "AgentState",
    "AgentType",
    "MarketDataPoint",
    "Performance",
    "RiskLevel",
    "Transaction",
    "TransactionStatus",
    # Scheduling
    "AgentScheduler",
    "PeriodicTask",
    "TaskState",
]
