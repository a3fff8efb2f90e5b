"""Configuration loader for the carbon-credit trading ecosystem

All configurable values come from config/config.yaml.
No magic numbers in code - everything is configurable.

Configuration is validated at load time using Pydantic.
Typos and invalid values fail fast with clear error messages.

Usage:
    from src.config import load_config, get, get_validated_config

    # Load and validate (call once at startup)
    load_config("config/config.yaml")

    # Get values by dot-path
    threshold = get("credit_calculation.co2_threshold")

    # Or use the typed config object (preferred)
    config = get_validated_config()
    threshold = config.credit_calculation.co2_threshold
"""

from __future__ import annotations

import os
import yaml
from pathlib import Path
from typing import Any

from .config_schema import AppConfig, validate_config_dict


# Global config instances
_config: dict[str, Any] | None = None
_validated_config: AppConfig | None = None

# Default config path
DEFAULT_CONFIG_PATH: Path = Path(__file__).parent.parent / "config" / "config.yaml"

# Extra API keys from the environment: "key1:owner1,key2:owner2"
API_KEYS_ENV_VAR = "CARBON_API_KEYS"


def _apply_env_overrides(config: dict[str, Any]) -> dict[str, Any]:
    """Merge environment-provided API keys into the auth section."""
    raw = os.environ.get(API_KEYS_ENV_VAR, "")
    pairs = [item.strip() for item in raw.split(",") if item.strip()]
    if not pairs:
        return config

    auth = config.setdefault("auth", {})
    keys = auth.setdefault("api_keys", {})
    for pair in pairs:
        key, sep, owner = pair.partition(":")
        if not sep or not key or not owner:
            raise ValueError(f"{API_KEYS_ENV_VAR} entry must be 'key:owner', got '{pair}'")
        keys[key] = owner
    return config


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load and validate configuration from YAML file.

    Validates the config against the Pydantic schema. Invalid configs
    raise a ValidationError with details about what's wrong.

    Args:
        config_path: Path to config file. Defaults to config/config.yaml.

    Returns:
        Configuration dictionary.

    Raises:
        FileNotFoundError: If config file doesn't exist.
        pydantic.ValidationError: If config is invalid.
    """
    global _config, _validated_config

    path: Path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        loaded: Any = yaml.safe_load(f)
        if not isinstance(loaded, dict):
            loaded = {}

    loaded = _apply_env_overrides(loaded)
    _validated_config = validate_config_dict(loaded)
    _config = loaded

    return _config


def use_config(config: AppConfig) -> AppConfig:
    """Install an already-built config as the global one.

    Used by tests and embedders that construct AppConfig in code.
    """
    global _config, _validated_config
    _validated_config = config
    _config = config.model_dump(mode="json")
    return config


def reset_config() -> None:
    """Forget the loaded config (next access reloads the default file)."""
    global _config, _validated_config
    _config = None
    _validated_config = None


def get_config() -> dict[str, Any]:
    """Get the loaded configuration dict. Loads default if not already loaded.

    For typed access, use get_validated_config() instead.
    """
    global _config
    if _config is None:
        load_config()
    if _config is None:
        raise RuntimeError("Config failed to load. Call load_config() first.")
    return _config


def get_validated_config() -> AppConfig:
    """Get the validated configuration object.

    Returns a typed AppConfig instance with IDE autocompletion support.
    Loads default config if not already loaded.
    """
    global _validated_config
    if _validated_config is None:
        load_config()
    if _validated_config is None:
        raise RuntimeError("Validated config failed to load. Call load_config() first.")
    return _validated_config


def get(key: str, default: Any = None) -> Any:
    """Get a config value by dot-separated key path.

    Examples:
        get("credit_calculation.max_credits_per_day")
        get("runtime.heartbeat_interval")
        get("storage.backend")
    """
    config: dict[str, Any] = get_config()
    keys: list[str] = key.split(".")

    value: Any = config
    for k in keys:
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return default

    return value


def set_config_value(key: str, value: Any) -> None:
    """Set a config value by dot-separated key path.

    Used for runtime overrides (e.g., CLI args). The whole config is
    re-validated afterwards.

    Args:
        key: Dot-separated key path (e.g., "logging.level")
        value: Value to set
    """
    global _config, _validated_config

    if _config is None:
        load_config()

    if _config is None:
        raise RuntimeError("Config failed to load. Call load_config() first.")

    keys = key.split(".")
    target = _config

    # Navigate to parent
    for k in keys[:-1]:
        if k not in target:
            target[k] = {}
        target = target[k]

    target[keys[-1]] = value

    _validated_config = validate_config_dict(_config)
