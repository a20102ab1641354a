# broker/domain/models.py
"""Domain value objects."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

ONE = Decimal(1)


@dataclass(frozen=True)
class PriceSample:
    """A single observed price. Timestamps are timezone-aware UTC."""
    timestamp: datetime
    price: Decimal


@dataclass(frozen=True)
class PriceReading:
    """Price as delivered by the feed, with the time it was observed."""
    price: Decimal
    observed_at: datetime


@dataclass(frozen=True)
class PurchaseLot:
    """
    One executed buy. The lot is atomic: it is sold entirely or not at all.

    spent_amount already includes the fees paid to buy, so unit_cost is the
    exact rate the quantity was acquired at.
    """
    lot_id: str
    spent_amount: Decimal
    quantity: Decimal
    purchased_at: Optional[datetime] = None

    @property
    def unit_cost(self) -> Decimal:
        return self.spent_amount / self.quantity

    @property
    def buying_price(self) -> Decimal:
        """Total paid for the lot, fees included."""
        return self.spent_amount

    def margin(self, price: Decimal) -> Decimal:
        """Profit if the lot were sold at price, ignoring the selling fee."""
        return self.quantity * price - self.spent_amount

    def margin_after_fee(self, price: Decimal, sell_fee: Decimal = Decimal(0)) -> Decimal:
        """Profit after the venue takes sell_fee (a fraction) of it."""
        margin = self.margin(price)
        return margin - margin * sell_fee

    def margin_ratio(self, price: Decimal) -> Decimal:
        """Realized margin ratio price / unit_cost."""
        return price / self.unit_cost

    @staticmethod
    def new_id() -> str:
        return str(uuid.uuid4())


@dataclass(frozen=True)
class TrendState:
    """Trend statistics derived from the price history. Never persisted."""
    current_price: Optional[Decimal]
    historical_min: Optional[Decimal]
    days_at_or_near_min: float
    position_ratio: Decimal
    sample_count: int = 0
    warm: bool = False

    @classmethod
    def neutral(cls, current_price: Optional[Decimal] = None, sample_count: int = 0) -> "TrendState":
        """Cold-start trend: no discount or premium is applied."""
        return cls(
            current_price=current_price,
            historical_min=None,
            days_at_or_near_min=0.0,
            position_ratio=ONE,
            sample_count=sample_count,
            warm=False,
        )


@dataclass(frozen=True)
class Selection:
    """Partition of lot ids into sell-now and hold, cheapest unit cost first."""
    to_sell: Tuple[str, ...] = ()
    to_hold: Tuple[str, ...] = ()


@dataclass
class MergedSellOrder:
    """All sellable lots consolidated into one sell order."""
    lot_ids: frozenset
    total_quantity: Decimal
    price_at_submission: Decimal
    cost_basis: Decimal = Decimal(0)
    sell_fee: Decimal = Decimal(0)
    order_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    exchange_order_id: Optional[str] = None
    submitted_at: Optional[datetime] = None

    @property
    def expected_proceeds(self) -> Decimal:
        return self.total_quantity * self.price_at_submission

    @property
    def expected_profit(self) -> Decimal:
        """Profit after the selling fee, across all merged lots."""
        gross = self.expected_proceeds - self.cost_basis
        return gross - gross * self.sell_fee
