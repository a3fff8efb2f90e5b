"""Pydantic schema for configuration validation.

All config values are validated at startup. Typos and invalid values
fail fast with clear error messages.

Usage:
    from src.config_schema import load_validated_config, AppConfig
    config = load_validated_config("config/config.yaml")
    # config is now a validated AppConfig instance
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


# =============================================================================
# BASE MODEL WITH STRICT VALIDATION
# =============================================================================

class StrictModel(BaseModel):
    """Base model that rejects unknown fields (catches typos)."""

    model_config = ConfigDict(extra="forbid")


RiskLevel = Literal["LOW", "MEDIUM", "HIGH"]
Quality = Literal["HIGH", "MEDIUM", "LOW"]
CreditType = Literal["SEQUESTER", "EMITTER"]


# =============================================================================
# CREDIT CALCULATION MODEL
# =============================================================================

class CreditCalculationConfig(StrictModel):
    """Thresholds and multipliers for turning telemetry into credits.

    Accepts both snake_case and the camelCase wire names
    (``co2Threshold``, ``maxCreditsPerDay``, ...).
    """

    model_config = ConfigDict(extra="forbid", alias_generator=to_camel, populate_by_name=True)

    co2_threshold: float = Field(
        default=1000,
        gt=0,
        description="CO2 units per credit"
    )
    energy_threshold: float = Field(
        default=100,
        gt=0,
        description="Energy units per credit"
    )
    credit_interval_hours: float = Field(
        default=24,
        gt=0,
        description="Hours between mints for one owner"
    )
    max_credits_per_day: int = Field(
        default=100,
        ge=0,
        description="Per-device daily issuance cap"
    )
    temperature_multiplier: float = Field(default=0.1, ge=0)
    humidity_multiplier: float = Field(default=0.05, ge=0)
    require_verification: bool = Field(
        default=True,
        description="Require a verified fraction of readings before minting"
    )
    min_data_points: int = Field(default=10, ge=1)
    min_verified_fraction: float = Field(default=0.8, ge=0, le=1)


# =============================================================================
# RUNTIME MODEL (timers shared by every agent)
# =============================================================================

class RuntimeConfig(StrictModel):
    """Per-agent timer and settlement settings."""

    heartbeat_interval: float = Field(
        default=30.0,
        gt=0,
        description="Seconds between heartbeats"
    )
    drain_interval: float = Field(
        default=1.0,
        gt=0,
        description="Seconds between inbox drains"
    )
    settlement_delay: float = Field(
        default=2.0,
        ge=0,
        description="Seconds before an executed transaction is marked successful"
    )
    approval_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for a HUMAN_APPROVAL_RESPONSE before rejecting"
    )
    stop_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Seconds to wait for an in-flight tick when stopping a timer"
    )


# =============================================================================
# AGENT MODELS
# =============================================================================

class AgentSettings(StrictModel):
    """Settings shared by every agent type."""

    id: str = Field(min_length=1, description="Unique agent id")
    name: str = Field(default="", description="Display name")
    hedera_account_id: str = Field(default="0.0.0")
    initial_hbar: float = Field(default=1000.0, ge=0)
    initial_credits: float = Field(default=0.0, ge=0)
    max_transaction_amount: float = Field(default=1000.0, gt=0)
    risk_tolerance: RiskLevel = "MEDIUM"
    require_human_approval: bool = False
    approval_mode: Literal["auto", "await"] = Field(
        default="auto",
        description="'auto' decides from risk tolerance, 'await' asks the approver"
    )
    approver_id: str = Field(default="system")

    @field_validator("id")
    @classmethod
    def id_not_reserved(cls, v: str) -> str:
        """'system' and 'broadcast' are reserved addresses."""
        if v in ("system", "broadcast"):
            raise ValueError(f"agent id '{v}' is reserved")
        return v


class SequestrationAgentConfig(AgentSettings):
    """Credit generator wrapping the credit engine."""

    type: Literal["sequestration"] = "sequestration"
    device_ids: list[str] = Field(default_factory=list)
    base_price: float = Field(default=5.5, gt=0, description="HBAR per credit")
    price_variation: float = Field(
        default=10.0,
        ge=0,
        lt=200,
        description="Total price jitter in percent"
    )
    min_credits_per_offer: float = Field(default=10, gt=0)
    max_credits_per_offer: float = Field(default=100, gt=0)
    credit_generation_interval: float = Field(default=60.0, gt=0)
    readings_per_tick: int = Field(
        default=12,
        ge=0,
        description="Simulated readings generated per device per tick"
    )
    quality: Quality = "HIGH"
    offer_ttl: float = Field(default=3600.0, gt=0, description="Seconds an offer stays valid")
    proposal_ttl: float = Field(default=300.0, gt=0, description="Seconds a proposal stays valid")
    negotiation_tolerance: float = Field(default=0.10, ge=0, le=1)

    @model_validator(mode="after")
    def offer_bounds(self) -> "SequestrationAgentConfig":
        """Ensure min_credits_per_offer <= max_credits_per_offer."""
        if self.min_credits_per_offer > self.max_credits_per_offer:
            raise ValueError(
                f"min_credits_per_offer ({self.min_credits_per_offer}) must not exceed "
                f"max_credits_per_offer ({self.max_credits_per_offer})"
            )
        return self


class OffsetAgentConfig(AgentSettings):
    """Credit buyer offsetting simulated emissions."""

    type: Literal["offset"] = "offset"
    emission_sources: list[str] = Field(default_factory=lambda: ["plant-1"])
    monthly_target: float = Field(default=50, ge=0, description="Credits wanted per month")
    urgency: RiskLevel = "MEDIUM"
    monthly_budget: float = Field(default=1000.0, ge=0, description="HBAR per month")
    max_price_per_credit: float = Field(default=6.0, gt=0)
    preferred_credit_types: list[CreditType] = Field(default_factory=lambda: ["SEQUESTER"])
    quality_requirement: Quality = "MEDIUM"
    requirement_interval: float = Field(default=10.0, gt=0)
    requirement_ttl: float = Field(default=3600.0, gt=0)
    request_ttl: float = Field(default=300.0, gt=0)
    min_offer_amount: float = Field(default=10, gt=0)
    max_purchase_amount: float = Field(default=50, gt=0)
    max_negotiation_rounds: int = Field(default=3, ge=0)


class TradingAgentConfig(AgentSettings):
    """Market maker quoting both sides and crossing the book."""

    type: Literal["trading"] = "trading"
    spread_percentage: float = Field(default=2.0, ge=0.5, le=5.0)
    min_inventory: float = Field(default=100, ge=0)
    max_inventory: float = Field(default=1000, gt=0)
    volatility_threshold: float = Field(default=5.0, ge=0)
    initial_price: float = Field(default=1.0, gt=0)
    quote_interval: float = Field(default=10.0, gt=0)
    match_interval: float = Field(default=5.0, gt=0)
    update_interval: float = Field(default=30.0, gt=0)
    max_price_deviation: float = Field(default=0.10, ge=0, le=1)
    market_data_window: int = Field(default=100, gt=0)

    @model_validator(mode="after")
    def inventory_bounds(self) -> "TradingAgentConfig":
        """Ensure min_inventory < max_inventory."""
        if self.min_inventory >= self.max_inventory:
            raise ValueError(
                f"min_inventory ({self.min_inventory}) must be less than "
                f"max_inventory ({self.max_inventory})"
            )
        return self


AgentDefinition = Annotated[
    Union[SequestrationAgentConfig, OffsetAgentConfig, TradingAgentConfig],
    Field(discriminator="type"),
]


# =============================================================================
# DEVICE MODEL
# =============================================================================

class DeviceConfig(StrictModel):
    """A telemetry device registered at startup."""

    device_id: str = Field(min_length=1)
    owner_id: str = Field(min_length=1, description="Identity credited for mints")


# =============================================================================
# ECOSYSTEM MODEL
# =============================================================================

class EcosystemConfig(StrictModel):
    """Agent manager settings and the agent population."""

    monitor_interval: float = Field(default=30.0, gt=0)
    unresponsive_after: float = Field(
        default=300.0,
        gt=0,
        description="Seconds of inactivity before an agent is probed"
    )
    max_transaction_amount: float = Field(
        default=1000.0,
        gt=0,
        description="System approver rejects requests above this amount"
    )
    devices: list[DeviceConfig] = Field(default_factory=list)
    agents: list[AgentDefinition] = Field(default_factory=list)

    @model_validator(mode="after")
    def unique_agent_ids(self) -> "EcosystemConfig":
        """Ensure agent ids are unique."""
        seen: set[str] = set()
        for agent in self.agents:
            if agent.id in seen:
                raise ValueError(f"duplicate agent id: {agent.id}")
            seen.add(agent.id)
        return self


# =============================================================================
# STORAGE MODEL
# =============================================================================

class StorageConfig(StrictModel):
    """Credit ledger backend and cache settings."""

    backend: Literal["memory", "sqlite"] = "memory"
    sqlite_path: str = Field(default="credits.db")
    cache_ttl: float = Field(default=3600.0, gt=0, description="Seconds cached aggregates live")
    lock_timeout: float = Field(default=30.0, gt=0, description="SQLite busy timeout in seconds")
    retry_max: int = Field(default=5, ge=1, description="Max attempts on 'database is locked'")
    retry_base: float = Field(default=0.1, gt=0, description="Initial backoff delay in seconds")
    retry_max_delay: float = Field(default=5.0, gt=0, description="Backoff delay cap in seconds")


# =============================================================================
# SCHEDULER MODEL
# =============================================================================

class SchedulerConfig(StrictModel):
    """Batch credit processing across all registered devices."""

    enabled: bool = False
    interval_minutes: float = Field(default=60.0, gt=0)
    min_interval_hours: float = Field(
        default=24.0,
        ge=0,
        description="Minimum time between processed windows for one device"
    )
    lookback_days: float = Field(default=7.0, gt=0)


# =============================================================================
# AUTH MODEL
# =============================================================================

class AuthConfig(StrictModel):
    """API keys mapped to owner identities."""

    api_keys: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# LOGGING MODEL
# =============================================================================

class LoggingConfig(StrictModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    event_log: str | None = Field(
        default=None,
        description="JSONL file for bus traffic and mint events (None disables)"
    )


# =============================================================================
# ROOT CONFIG MODEL
# =============================================================================

class AppConfig(StrictModel):
    """Root configuration model for the entire application.

    All fields have sensible defaults, so an empty config file is valid.
    """

    credit_calculation: CreditCalculationConfig = Field(default_factory=CreditCalculationConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    ecosystem: EcosystemConfig = Field(default_factory=EcosystemConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# =============================================================================
# LOADING FUNCTIONS
# =============================================================================

def load_validated_config(config_path: str | Path = "config/config.yaml") -> AppConfig:
    """Load and validate configuration from YAML file.

    Args:
        config_path: Path to config YAML file.

    Returns:
        Validated AppConfig instance.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        pydantic.ValidationError: If config is invalid (with detailed error message).
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    return AppConfig.model_validate(raw_config)


def validate_config_dict(config_dict: dict[str, Any]) -> AppConfig:
    """Validate a configuration dictionary.

    Args:
        config_dict: Configuration as a dictionary.

    Returns:
        Validated AppConfig instance.

    Raises:
        pydantic.ValidationError: If config is invalid.
    """
    return AppConfig.model_validate(config_dict)


# =============================================================================
# EXPORTS
# =============================================================================

__all__ = [
    # Root config
    "AppConfig",
    # Sub-configs
    "CreditCalculationConfig",
    "RuntimeConfig",
    "EcosystemConfig",
    "DeviceConfig",
    "StorageConfig",
    "SchedulerConfig",
    "AuthConfig",
    "LoggingConfig",
    # Agent configs
    "AgentSettings",
    "AgentDefinition",
    "SequestrationAgentConfig",
    "OffsetAgentConfig",
    "TradingAgentConfig",
    # Literals
    "RiskLevel",
    "Quality",
    "CreditType",
    # Functions
    "load_validated_config",
    "validate_config_dict",
]
