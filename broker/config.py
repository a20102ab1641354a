# broker/config.py
"""Engine settings, read from the environment."""

import math
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional

from broker.domain.errors import ConfigError
from broker.domain.margin import MarginConfig
from broker.domain.price_history import HistoryConfig

# env var -> field name
ENV_VARS = {
    "DATABASE_URL": "database_url",
    "BROKER_PAIR": "pair",
    "BROKER_LOOKBACK_DAYS": "lookback_days",
    "BROKER_MIN_SAMPLES": "min_samples",
    "BROKER_MIN_STREAK_DAYS": "min_streak_days",
    "BROKER_NEAR_MIN_BAND": "near_min_band",
    "BROKER_BASELINE_MARGIN": "baseline_margin",
    "BROKER_MARGIN_FLOOR": "margin_floor",
    "BROKER_TREND_WINDOW": "trend_window",
    "BROKER_MAX_TREND_BOOST": "max_trend_boost",
    "BROKER_TREND_SATURATION_DAYS": "trend_saturation_days",
    "BROKER_TARGET_QUANTITY": "target_quantity",
    "BROKER_INVENTORY_WINDOW": "inventory_window",
    "BROKER_INVENTORY_ELASTICITY": "inventory_elasticity",
    "BROKER_MIN_INVENTORY_FACTOR": "min_inventory_factor",
    "BROKER_MAX_INVENTORY_FACTOR": "max_inventory_factor",
    "BROKER_SELL_FEE": "sell_fee",
    "BROKER_MAX_READING_AGE": "max_reading_age_seconds",
    "BROKER_FILL_POLL_INTERVAL": "fill_poll_interval_seconds",
    "BROKER_FILL_MAX_WAIT": "fill_max_wait_seconds",
    "BROKER_APPLIED_RETENTION_DAYS": "applied_retention_days",
    "BROKER_TICK_INTERVAL": "tick_interval_seconds",
    "BROKER_BACKOFF_INITIAL": "backoff_initial_seconds",
    "BROKER_BACKOFF_MAX": "backoff_max_seconds",
}


@dataclass(frozen=True)
class EngineSettings:
    """All tunables of one engine instance."""
    database_url: str = "sqlite:///./broker.db"
    pair: str = "BTC/USD"

    # Price history
    lookback_days: float = 90.0
    min_samples: int = 10
    min_streak_days: float = 3.0
    near_min_band: Decimal = Decimal("0.02")

    # Margin policy
    baseline_margin: Decimal = Decimal("0.05")
    margin_floor: Decimal = Decimal("0.01")
    trend_window: Decimal = Decimal("0.25")
    max_trend_boost: Decimal = Decimal("1.0")
    trend_saturation_days: float = 14.0
    # Unset: the reference is the mean held quantity over the last inventory_window cycles
    target_quantity: Optional[Decimal] = None
    inventory_window: int = 1440
    inventory_elasticity: Decimal = Decimal("0.5")
    min_inventory_factor: Decimal = Decimal("0.5")
    max_inventory_factor: Decimal = Decimal("2.0")

    # Execution
    sell_fee: Decimal = Decimal("0")
    max_reading_age_seconds: float = 300.0
    fill_poll_interval_seconds: float = 2.0
    fill_max_wait_seconds: float = 120.0
    applied_retention_days: float = 30.0

    # Scheduling
    tick_interval_seconds: float = 60.0
    backoff_initial_seconds: float = 5.0
    backoff_max_seconds: float = 300.0

    def __post_init__(self):
        if self.lookback_days <= 0:
            raise ConfigError("lookback_days must be positive")
        if self.min_samples < 1:
            raise ConfigError("min_samples must be at least 1")
        if self.min_streak_days < 0 or self.min_streak_days > self.lookback_days:
            raise ConfigError("min_streak_days must be within the lookback window")
        if self.margin_floor <= 0:
            raise ConfigError("margin_floor must be positive")
        if not (0 <= self.sell_fee < 1):
            raise ConfigError("sell_fee must be in [0, 1)")
        if self.fill_poll_interval_seconds <= 0:
            raise ConfigError("fill_poll_interval_seconds must be positive")
        if self.inventory_window < 1:
            raise ConfigError("inventory_window must be at least 1")
        if self.applied_retention_days <= 0:
            raise ConfigError("applied_retention_days must be positive")
        # Policy bounds live with MarginConfig
        self.margin_config()

    @classmethod
    def from_env(cls, environ=None) -> "EngineSettings":
        """Build settings from BROKER_* variables; unset variables keep defaults."""
        environ = os.environ if environ is None else environ
        types = {f.name: f.type for f in fields(cls)}
        values = {}

        for env_name, field_name in ENV_VARS.items():
            raw = environ.get(env_name)
            if raw is None or raw.strip() == "":
                continue
            values[field_name] = _coerce(env_name, raw.strip(), types[field_name])

        try:
            return cls(**values)
        except ValueError as e:
            raise ConfigError(str(e)) from e

    def history_config(self) -> HistoryConfig:
        return HistoryConfig(
            lookback=timedelta(days=self.lookback_days),
            min_samples=self.min_samples,
            min_streak=timedelta(days=self.min_streak_days),
            near_min_band=self.near_min_band,
        )

    def margin_config(self) -> MarginConfig:
        try:
            return MarginConfig(
                baseline=self.baseline_margin,
                floor=self.margin_floor,
                trend_window=self.trend_window,
                max_trend_boost=self.max_trend_boost,
                trend_saturation_days=self.trend_saturation_days,
                inventory_elasticity=self.inventory_elasticity,
                min_inventory_factor=self.min_inventory_factor,
                max_inventory_factor=self.max_inventory_factor,
            )
        except ValueError as e:
            raise ConfigError(str(e)) from e


def _coerce(env_name: str, raw: str, field_type):
    try:
        if field_type in (Decimal, Optional[Decimal]):
            value = Decimal(raw)
            if not value.is_finite():
                raise ValueError(raw)
            return value
        if field_type is int:
            return int(raw)
        if field_type is float:
            value = float(raw)
            if not math.isfinite(value):
                raise ValueError(raw)
            return value
    except (ValueError, InvalidOperation) as e:
        raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from e
    return raw
