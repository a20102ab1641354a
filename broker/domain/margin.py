# broker/domain/margin.py
"""
Adaptive required margin.

Two independent adjustments are computed by separate pure functions and
composed multiplicatively onto the baseline margin:

    required = max(floor, baseline * trend_factor * inventory_factor)

trend_factor >= 1 grows as the price sits closer to its sustained minimum
and the longer it has stayed there. inventory_factor shrinks as more stock
is held relative to the reference quantity: a fixed target when one is
configured, otherwise the rolling mean of the held quantity.
"""

from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Deque, Optional

from broker.domain.models import ONE, TrendState

ZERO = Decimal(0)


@dataclass(frozen=True)
class MarginConfig:
    """Parameters of the margin policy. All ratios are fractions (0.05 == 5 %)."""
    baseline: Decimal = Decimal("0.05")
    floor: Decimal = Decimal("0.01")
    # position_ratio above 1 + trend_window gets no trend premium
    trend_window: Decimal = Decimal("0.25")
    max_trend_boost: Decimal = Decimal("1.0")
    trend_saturation_days: float = 14.0
    inventory_elasticity: Decimal = Decimal("0.5")
    min_inventory_factor: Decimal = Decimal("0.5")
    max_inventory_factor: Decimal = Decimal("2.0")

    def __post_init__(self):
        if self.floor <= 0:
            raise ValueError("margin floor must be positive")
        if self.trend_window <= 0:
            raise ValueError("trend_window must be positive")
        if self.max_trend_boost < 0:
            raise ValueError("max_trend_boost must not be negative")
        if self.inventory_elasticity < 0:
            raise ValueError("inventory_elasticity must not be negative")
        if self.trend_saturation_days <= 0:
            raise ValueError("trend_saturation_days must be positive")
        if not (0 < self.min_inventory_factor <= ONE <= self.max_inventory_factor):
            raise ValueError("inventory factor bounds must satisfy 0 < min <= 1 <= max")


def trend_factor(trend: TrendState, config: MarginConfig) -> Decimal:
    """
    Multiplier >= 1 applied when the price sits in a confirmed trough.

    proximity is 1 at (or below) the sustained minimum and falls linearly to
    0 at position_ratio == 1 + trend_window. duration grows linearly with
    days_at_or_near_min until trend_saturation_days.
    """
    if not trend.warm:
        return ONE

    distance = trend.position_ratio - ONE
    proximity = min(ONE, max(ZERO, (config.trend_window - distance) / config.trend_window))
    duration = Decimal(str(min(1.0, max(0.0, trend.days_at_or_near_min) / config.trend_saturation_days)))

    return ONE + config.max_trend_boost * proximity * duration


def inventory_factor(inventory_ratio: Decimal, config: MarginConfig) -> Decimal:
    """Multiplier that is non-increasing in inventory_ratio, clamped to the configured bounds."""
    if inventory_ratio <= 0:
        return config.max_inventory_factor

    factor = inventory_ratio ** -config.inventory_elasticity
    return min(config.max_inventory_factor, max(config.min_inventory_factor, factor))


def inventory_ratio(held_quantity: Decimal, reference_quantity: Optional[Decimal]) -> Decimal:
    """held / reference. Without a reference quantity the ratio is neutral."""
    if reference_quantity is None or reference_quantity <= 0:
        return ONE
    return held_quantity / reference_quantity


class RollingMean:
    """Mean of the last `window` observed quantities."""

    def __init__(self, window: int):
        if window < 1:
            raise ValueError("window must be at least 1")
        self._values: Deque[Decimal] = deque(maxlen=window)

    def observe(self, value: Decimal) -> None:
        self._values.append(value)

    def mean(self) -> Optional[Decimal]:
        if not self._values:
            return None
        return sum(self._values, ZERO) / len(self._values)

    def __len__(self) -> int:
        return len(self._values)


class MarginPolicy:
    """Maps trend position and inventory depth to the required margin."""

    def __init__(self, config: Optional[MarginConfig] = None):
        self.config = config or MarginConfig()

    def required_margin(self, trend: TrendState, inventory_ratio: Decimal) -> Decimal:
        """
        Pure and deterministic. Cold start (trend not warm) yields the baseline
        margin only; the result is never below the configured floor.
        """
        config = self.config
        if not trend.warm:
            return max(config.floor, config.baseline)

        margin = config.baseline * trend_factor(trend, config) * inventory_factor(inventory_ratio, config)
        return max(config.floor, margin)
