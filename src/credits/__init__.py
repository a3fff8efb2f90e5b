"""Credit issuance - telemetry, ledger, cache, engine and batch scheduler."""

from .cache import InMemoryCache
from .engine import CreditCalculationResult, CreditEngine, MintingStatus
from .ledger import CreditLedger, InMemoryCreditLedger, SqliteCreditLedger, create_ledger
from .telemetry import InMemoryTelemetryStore, Reading, TelemetrySimulator

__all__ = [
    "CreditCalculationResult",
    "CreditEngine",
    "CreditLedger",
    "InMemoryCache",
    "InMemoryCreditLedger",
    "InMemoryTelemetryStore",
    "MintingStatus",
    "Reading",
    "SqliteCreditLedger",
    "TelemetrySimulator",
    "create_ledger",
]
