"""
Configuration management and loading.

Handles the pricing configuration file and runtime settings from
environment variables.
"""

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..core.pricing import (
    DEFAULT_MARKUP_PCT,
    DEFAULT_PRICING_TABLE,
    PricingTable,
    PricingTier,
    clamp_markup,
)
from ..sdk.gateway_client import DEFAULT_GATEWAY_URL
from ..storage.db import DEFAULT_DB_PATH

ENV_PREFIX = "USAGE_VAULT_"


@dataclass(frozen=True)
class PricingConfig:
    """Pricing table plus the global markup applied to it."""
    table: PricingTable
    markup_pct: Decimal


DEFAULT_PRICING_CONFIG = PricingConfig(table=DEFAULT_PRICING_TABLE, markup_pct=DEFAULT_MARKUP_PCT)


@dataclass(frozen=True)
class Settings:
    """Runtime settings."""
    gateway_url: str = DEFAULT_GATEWAY_URL
    gateway_admin_key: Optional[str] = None
    ledger_url: Optional[str] = None
    contract_address: Optional[str] = None
    db_path: str = DEFAULT_DB_PATH
    pricing_config: Optional[str] = None
    poll_interval: float = 5.0
    attestation_interval: float = 300.0
    gateway_timeout: float = 3.0

    def __post_init__(self):
        """Validate intervals and timeouts are positive."""
        if self.poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        if self.attestation_interval <= 0:
            raise ValueError("attestation_interval must be > 0")
        if self.gateway_timeout <= 0:
            raise ValueError("gateway_timeout must be > 0")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Build settings from ``USAGE_VAULT_*`` environment variables.

        Raises:
            ValueError: If a numeric variable cannot be parsed
        """
        env = os.environ if environ is None else environ

        def text(name: str, default: Optional[str] = None) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value if value else default

        def number(name: str, default: float) -> float:
            raw = env.get(ENV_PREFIX + name)
            if not raw:
                return default
            try:
                return float(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX + name} must be a number, got {raw!r}") from None

        return cls(
            gateway_url=text("GATEWAY_URL", DEFAULT_GATEWAY_URL),
            gateway_admin_key=text("GATEWAY_ADMIN_KEY"),
            ledger_url=text("LEDGER_URL"),
            contract_address=text("CONTRACT_ADDRESS"),
            db_path=text("DB_PATH", DEFAULT_DB_PATH),
            pricing_config=text("PRICING_CONFIG"),
            poll_interval=number("POLL_INTERVAL", 5.0),
            attestation_interval=number("ATTESTATION_INTERVAL", 300.0),
            gateway_timeout=number("GATEWAY_TIMEOUT", 3.0),
        )


def load_pricing_config(path: Optional[str] = None) -> PricingConfig:
    """Load and validate pricing configuration from a YAML file.

    Validation is strict: a mistyped key or a gap between tiers would
    silently change what customers are charged.

    Args:
        path: Path to YAML configuration file, or None for built-in defaults

    Returns:
        Validated PricingConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return DEFAULT_PRICING_CONFIG

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Pricing config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'markup_pct', 'tiers', 'model_multipliers'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    markup = DEFAULT_MARKUP_PCT
    if 'markup_pct' in raw_config:
        markup = clamp_markup(_parse_decimal(raw_config['markup_pct'], "markup_pct"))

    # Parse tiers
    if 'tiers' not in raw_config:
        raise ValueError("Missing required 'tiers' section")
    tiers_data = raw_config['tiers']
    if not isinstance(tiers_data, list) or not tiers_data:
        raise ValueError("'tiers' must be a non-empty list")
    tiers = tuple(
        _parse_tier(tier_data, f"tiers[{i}]") for i, tier_data in enumerate(tiers_data)
    )

    # Parse model multipliers
    multipliers_data = raw_config.get('model_multipliers', {}) or {}
    if not isinstance(multipliers_data, dict):
        raise ValueError("'model_multipliers' must be a dictionary")
    multipliers: Dict[str, Decimal] = {}
    for model, raw_multiplier in multipliers_data.items():
        key_path = f"model_multipliers.{model}"
        multiplier = _parse_decimal(raw_multiplier, key_path)
        if multiplier < 0:
            raise ValueError(f"'{key_path}' cannot be negative")
        multipliers[str(model)] = multiplier

    return PricingConfig(
        table=PricingTable(tiers=tiers, model_multipliers=multipliers),
        markup_pct=markup,
    )


def _parse_tier(data: Any, path: str) -> PricingTier:
    """Parse and validate one pricing tier.

    Args:
        data: Tier configuration data
        path: Path for error messages

    Returns:
        Validated PricingTier

    Raises:
        ValueError: If the tier is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"{path} must be a dictionary")

    allowed_keys = {'name', 'token_range_low', 'token_range_high', 'base_price_per_1k', 'volume_discount'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for required in ('name', 'token_range_low', 'base_price_per_1k'):
        if required not in data:
            raise ValueError(f"Missing required '{required}' in {path}")

    name = data['name']
    if not isinstance(name, str) or not name.strip():
        raise ValueError(f"'name' in {path} must be a non-empty string")

    low = _parse_int(data['token_range_low'], f"{path}.token_range_low")
    high = data.get('token_range_high')
    if high is not None:
        high = _parse_int(high, f"{path}.token_range_high")

    try:
        return PricingTier(
            name=name,
            token_range_low=low,
            token_range_high=high,
            base_price_per_1k=_parse_decimal(data['base_price_per_1k'], f"{path}.base_price_per_1k"),
            volume_discount=_parse_decimal(data.get('volume_discount', 0), f"{path}.volume_discount"),
        )
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}") from None


def _parse_decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValueError(f"'{path}' must be a number")
    try:
        result = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"'{path}' must be a number") from None
    if not result.is_finite():
        raise ValueError(f"'{path}' must be finite")
    return result


def _parse_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{path}' must be an integer")
    return value
