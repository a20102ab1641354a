# broker/domain/price_history.py
"""
Rolling price history and trend statistics.

The acted-upon minimum is not the lowest sample in the window but the
lowest price level the market stayed at or below for at least
min_streak_days in a row. Single-sample dips therefore never become the
historical minimum.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from typing import Deque, Iterable, List, Optional, Tuple

from broker.domain.errors import InvalidSampleError
from broker.domain.models import PriceSample, TrendState

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass(frozen=True)
class HistoryConfig:
    """Parameters of the rolling window."""
    lookback: timedelta = timedelta(days=90)
    min_samples: int = 10
    min_streak: timedelta = timedelta(days=3)
    near_min_band: Decimal = Decimal("0.02")


class PriceHistory:
    """Rolling window of price samples with lazy pruning on record()."""

    def __init__(self, config: Optional[HistoryConfig] = None):
        self.config = config or HistoryConfig()
        self._samples: Deque[PriceSample] = deque()

    @classmethod
    def from_samples(
        cls,
        samples: Iterable[PriceSample],
        config: Optional[HistoryConfig] = None,
    ) -> "PriceHistory":
        """Rebuild a history by replaying persisted samples in order."""
        history = cls(config)
        for sample in samples:
            history.record(sample)
        return history

    @property
    def samples(self) -> Tuple[PriceSample, ...]:
        return tuple(self._samples)

    @property
    def last(self) -> Optional[PriceSample]:
        return self._samples[-1] if self._samples else None

    def __len__(self) -> int:
        return len(self._samples)

    def record(self, sample: PriceSample) -> None:
        """
        Append a sample and prune everything older than the lookback window.

        Raises:
            InvalidSampleError: price not a finite positive number, naive
                timestamp, or timestamp earlier than the last recorded sample.
        """
        price = sample.price
        if not isinstance(price, Decimal) or not price.is_finite():
            raise InvalidSampleError(f"Price is not a finite decimal: {price!r}")
        if price <= 0:
            raise InvalidSampleError(f"Non-positive price: {price}")
        if sample.timestamp.tzinfo is None:
            raise InvalidSampleError(f"Timestamp must be timezone-aware: {sample.timestamp}")

        last = self.last
        if last is not None and sample.timestamp < last.timestamp:
            raise InvalidSampleError(
                f"Timestamp {sample.timestamp.isoformat()} precedes last sample "
                f"{last.timestamp.isoformat()}"
            )

        self._samples.append(sample)

        cutoff = sample.timestamp - self.config.lookback
        pruned = 0
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()
            pruned += 1
        if pruned:
            logger.debug("Pruned %d samples older than %s", pruned, cutoff.isoformat())

    def trend(self) -> TrendState:
        """Compute the trend over all retained samples."""
        samples = list(self._samples)
        current = samples[-1].price if samples else None

        if len(samples) < self.config.min_samples:
            return TrendState.neutral(current, len(samples))

        historical_min = sustained_minimum(samples, self.config.min_streak)
        if historical_min is None:
            # Window does not yet span a full streak.
            return TrendState.neutral(current, len(samples))

        return TrendState(
            current_price=current,
            historical_min=historical_min,
            days_at_or_near_min=days_near_level(samples, historical_min, self.config.near_min_band),
            position_ratio=current / historical_min,
            sample_count=len(samples),
            warm=True,
        )


def sustained_minimum(samples: List[PriceSample], min_streak: timedelta) -> Optional[Decimal]:
    """
    Lowest level the price stayed at or below for at least min_streak.

    For every start sample, the shortest run reaching min_streak is taken and
    its highest price is the level sustained by that run. The answer is the
    lowest such level. Returns None when no run spans min_streak.
    """
    n = len(samples)
    best: Optional[Decimal] = None
    window: Deque[int] = deque()  # indices, prices decreasing
    end = -1

    for start in range(n):
        while window and window[0] < start:
            window.popleft()

        # Extend the run until it covers min_streak.
        while end + 1 < n and (end < start or samples[end].timestamp - samples[start].timestamp < min_streak):
            end += 1
            while window and samples[window[-1]].price <= samples[end].price:
                window.pop()
            window.append(end)

        if samples[end].timestamp - samples[start].timestamp < min_streak:
            break

        level = samples[window[0]].price
        if best is None or level < best:
            best = level

    return best


def days_near_level(samples: List[PriceSample], level: Decimal, band: Decimal) -> float:
    """Duration in days of the trailing run of samples within band of level."""
    ceiling = level * (1 + band)
    if not samples or samples[-1].price > ceiling:
        return 0.0

    run_start = samples[-1].timestamp
    for sample in reversed(samples):
        if sample.price > ceiling:
            break
        run_start = sample.timestamp

    return (samples[-1].timestamp - run_start).total_seconds() / SECONDS_PER_DAY
