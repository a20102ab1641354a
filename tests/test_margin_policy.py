from __future__ import annotations

from decimal import Decimal

import pytest

from broker.domain.margin import (
    MarginConfig,
    MarginPolicy,
    RollingMean,
    inventory_factor,
    inventory_ratio,
    trend_factor,
)
from broker.domain.models import TrendState

CONFIG = MarginConfig(
    baseline=Decimal("0.05"),
    floor=Decimal("0.01"),
    trend_window=Decimal("0.25"),
    max_trend_boost=Decimal("1.0"),
    trend_saturation_days=10.0,
)


def warm_trend(position_ratio, days):
    return TrendState(
        current_price=Decimal("100") * Decimal(str(position_ratio)),
        historical_min=Decimal("100"),
        days_at_or_near_min=days,
        position_ratio=Decimal(str(position_ratio)),
        sample_count=50,
        warm=True,
    )


def test_margin_non_decreasing_as_position_approaches_minimum():
    policy = MarginPolicy(CONFIG)
    ratios = ["1.5", "1.3", "1.25", "1.2", "1.1", "1.05", "1.01", "1.0"]
    margins = [policy.required_margin(warm_trend(r, 5.0), Decimal(1)) for r in ratios]

    assert margins == sorted(margins)
    assert margins[-1] > margins[0]


def test_margin_non_decreasing_with_days_at_minimum():
    policy = MarginPolicy(CONFIG)
    days = [0.0, 1.0, 2.5, 5.0, 10.0, 30.0]
    margins = [policy.required_margin(warm_trend("1.02", d), Decimal(1)) for d in days]

    assert margins == sorted(margins)
    # Saturates once the trough has lasted trend_saturation_days
    assert margins[-1] == margins[-2]


def test_margin_non_increasing_with_inventory():
    policy = MarginPolicy(CONFIG)
    trend = warm_trend("1.1", 4.0)
    ratios = ["0", "0.1", "0.5", "1", "2", "4", "10"]
    margins = [policy.required_margin(trend, Decimal(r)) for r in ratios]

    assert margins == sorted(margins, reverse=True)
    assert margins[0] > margins[-1]


def test_adjustments_compose_multiplicatively():
    policy = MarginPolicy(CONFIG)
    trend = warm_trend("1.0", 10.0)

    # proximity 1, duration 1 -> trend factor 2; ratio 4 -> 4 ** -0.5 = 0.5
    assert trend_factor(trend, CONFIG) == Decimal(2)
    assert inventory_factor(Decimal(4), CONFIG) == Decimal("0.5")
    assert policy.required_margin(trend, Decimal(4)) == Decimal("0.05") * 2 * Decimal("0.5")


def test_no_trend_premium_far_above_minimum():
    assert trend_factor(warm_trend("1.6", 20.0), CONFIG) == Decimal(1)


def test_price_below_minimum_counts_as_at_minimum():
    assert trend_factor(warm_trend("0.9", 10.0), CONFIG) == trend_factor(warm_trend("1.0", 10.0), CONFIG)


def test_cold_start_uses_baseline_only():
    policy = MarginPolicy(CONFIG)
    cold = TrendState.neutral(Decimal("100"), sample_count=1)

    assert policy.required_margin(cold, Decimal("0.01")) == CONFIG.baseline
    assert policy.required_margin(cold, Decimal("50")) == CONFIG.baseline


def test_margin_never_below_floor():
    config = MarginConfig(
        baseline=Decimal("0.02"),
        floor=Decimal("0.015"),
        min_inventory_factor=Decimal("0.1"),
    )
    policy = MarginPolicy(config)
    margin = policy.required_margin(warm_trend("2.0", 0.0), Decimal(1000))

    assert margin == Decimal("0.015")
    assert margin > 0


def test_inventory_factor_is_clamped():
    assert inventory_factor(Decimal("0.0001"), CONFIG) == CONFIG.max_inventory_factor
    assert inventory_factor(Decimal("10000"), CONFIG) == CONFIG.min_inventory_factor


def test_inventory_ratio_without_reference_is_neutral():
    assert inventory_ratio(Decimal("3"), None) == Decimal(1)
    assert inventory_ratio(Decimal("3"), Decimal("2")) == Decimal("1.5")


def test_config_rejects_non_positive_floor():
    with pytest.raises(ValueError):
        MarginConfig(floor=Decimal(0))


@pytest.mark.parametrize("overrides", [
    {"max_trend_boost": Decimal("-0.9")},
    {"inventory_elasticity": Decimal("-0.5")},
])
def test_config_rejects_settings_that_invert_monotonicity(overrides):
    with pytest.raises(ValueError):
        MarginConfig(**overrides)


def test_zero_boost_and_elasticity_disable_adjustments():
    policy = MarginPolicy(MarginConfig(max_trend_boost=Decimal(0), inventory_elasticity=Decimal(0)))
    trend = warm_trend("1.0", 30.0)

    assert policy.required_margin(trend, Decimal("0.5")) == Decimal("0.05")
    assert policy.required_margin(trend, Decimal(2)) == Decimal("0.05")


def test_rolling_mean_keeps_last_window():
    mean = RollingMean(3)
    assert mean.mean() is None

    for quantity in ["1", "2", "3", "6"]:
        mean.observe(Decimal(quantity))

    assert len(mean) == 3
    assert mean.mean() == Decimal("11") / 3
