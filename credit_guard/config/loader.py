"""
Configuration management and loading.

Handles application settings and environment variables. Secrets (Stripe
keys) are only ever read from the environment, never from the YAML file.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

from credit_guard.core.events import DEFAULT_RETENTION
from credit_guard.core.ledger import DEFAULT_RESERVATION_TTL, DEFAULT_STARTER_BALANCE
from credit_guard.core.pricing import (
    DEFAULT_MODEL_COSTS,
    DEFAULT_TIERS,
    PricingTable,
    PricingTier,
)
from credit_guard.sdk.stripe_client import DEFAULT_FRONTEND_URL
from credit_guard.storage.db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH


@dataclass(frozen=True)
class StorageConfig:
    """Where and how the SQLite store is opened."""
    db_path: str = DEFAULT_DB_PATH
    busy_timeout: float = DEFAULT_BUSY_TIMEOUT

    def __post_init__(self):
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.busy_timeout <= 0:
            raise ValueError("busy_timeout must be > 0")


@dataclass(frozen=True)
class LedgerConfig:
    starter_balance: int = DEFAULT_STARTER_BALANCE
    # Seconds before an unsettled reservation is released at startup
    reservation_ttl: float = DEFAULT_RESERVATION_TTL.total_seconds()

    def __post_init__(self):
        if self.starter_balance < 0:
            raise ValueError("starter_balance must be >= 0")
        if self.reservation_ttl <= 0:
            raise ValueError("reservation_ttl must be > 0")


@dataclass(frozen=True)
class EventsConfig:
    retention: int = DEFAULT_RETENTION

    def __post_init__(self):
        if self.retention <= 0:
            raise ValueError("retention must be > 0")


@dataclass(frozen=True)
class StripeConfig:
    """Stripe settings; keys come from STRIPE_SECRET_KEY / STRIPE_WEBHOOK_SECRET."""
    frontend_url: str = DEFAULT_FRONTEND_URL
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    storage: StorageConfig = field(default_factory=StorageConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    pricing: PricingTable = field(
        default_factory=lambda: PricingTable(dict(DEFAULT_MODEL_COSTS), DEFAULT_TIERS)
    )
    stripe: StripeConfig = field(default_factory=StripeConfig)


_ALLOWED_KEYS = {
    "storage": {"db_path", "busy_timeout"},
    "ledger": {"starter_balance", "reservation_ttl"},
    "events": {"retention"},
    "pricing": {"model_costs", "tiers"},
    "stripe": {"frontend_url"},
}

_TIER_KEYS = {"id", "name", "credits", "price_cents", "description"}


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Load and validate configuration from an optional YAML file plus environment.

    Strict validation ensures no silent misconfigurations: unknown keys and
    wrongly typed values are rejected rather than ignored.

    Args:
        path: Path to YAML configuration file; defaults are used when None
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    env = os.environ if env is None else env
    raw_config: Dict[str, Any] = {}

    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")
        with open(config_path, 'r', encoding='utf-8') as f:
            try:
                raw_config = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")
        if not raw_config:
            raise ValueError("Configuration file is empty")
        if not isinstance(raw_config, dict):
            raise ValueError("Configuration must be a mapping")

    unknown_keys = set(raw_config.keys()) - set(_ALLOWED_KEYS)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {name: _section(raw_config, name) for name in _ALLOWED_KEYS}

    storage = StorageConfig(
        db_path=str(sections["storage"].get("db_path", DEFAULT_DB_PATH)),
        busy_timeout=_number(sections["storage"], "busy_timeout", DEFAULT_BUSY_TIMEOUT, "storage"),
    )
    ledger = LedgerConfig(
        starter_balance=_integer(sections["ledger"], "starter_balance", DEFAULT_STARTER_BALANCE, "ledger"),
        reservation_ttl=_number(
            sections["ledger"], "reservation_ttl", DEFAULT_RESERVATION_TTL.total_seconds(), "ledger"
        ),
    )
    events = EventsConfig(
        retention=_integer(sections["events"], "retention", DEFAULT_RETENTION, "events"),
    )
    pricing = PricingTable(
        model_costs=_parse_model_costs(sections["pricing"].get("model_costs")),
        tiers=_parse_tiers(sections["pricing"].get("tiers")),
    )
    stripe = StripeConfig(
        frontend_url=env.get("FRONTEND_URL")
        or str(sections["stripe"].get("frontend_url", DEFAULT_FRONTEND_URL)),
        secret_key=env.get("STRIPE_SECRET_KEY") or None,
        webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
    )

    return AppConfig(storage=storage, ledger=ledger, events=events, pricing=pricing, stripe=stripe)


def _section(raw_config: Dict[str, Any], name: str) -> Dict[str, Any]:
    data = raw_config.get(name, {})
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - _ALLOWED_KEYS[name]
    if unknown:
        raise ValueError(f"Unknown keys in {name}: {unknown}")
    return data


def _integer(data: Dict[str, Any], key: str, default: int, path: str) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"'{key}' in {path} must be an integer")
    return value


def _number(data: Dict[str, Any], key: str, default: float, path: str) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"'{key}' in {path} must be a number")
    return float(value)


def _parse_model_costs(data: Optional[Dict[str, Any]]) -> Dict[str, int]:
    """Merge configured model costs over the defaults."""
    costs = dict(DEFAULT_MODEL_COSTS)
    if data is None:
        return costs
    if not isinstance(data, dict):
        raise ValueError("'pricing.model_costs' must be a dictionary")
    for model, cost in data.items():
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise ValueError(f"Cost for model '{model}' must be a positive integer")
        costs[str(model)] = cost
    return costs


def _parse_tiers(data: Optional[Any]) -> Tuple[PricingTier, ...]:
    """Parse purchase tiers; a configured list replaces the defaults entirely."""
    if data is None:
        return DEFAULT_TIERS
    if not isinstance(data, list) or not data:
        raise ValueError("'pricing.tiers' must be a non-empty list")

    tiers = []
    seen = set()
    for index, tier_data in enumerate(data):
        path = f"pricing.tiers[{index}]"
        if not isinstance(tier_data, dict):
            raise ValueError(f"{path} must be a dictionary")
        unknown = set(tier_data.keys()) - _TIER_KEYS
        if unknown:
            raise ValueError(f"Unknown keys in {path}: {unknown}")
        missing = _TIER_KEYS - set(tier_data.keys())
        if missing:
            raise ValueError(f"Missing keys in {path}: {missing}")
        if tier_data["id"] in seen:
            raise ValueError(f"Duplicate tier id '{tier_data['id']}'")
        seen.add(tier_data["id"])
        tiers.append(PricingTier(
            id=str(tier_data["id"]),
            name=str(tier_data["name"]),
            credits=_integer(tier_data, "credits", 0, path),
            price_cents=_integer(tier_data, "price_cents", 0, path),
            description=str(tier_data["description"]),
        ))
    return tuple(tiers)
