# broker/engine/context.py
"""Per-pair engine state passed explicitly into each decision cycle."""

import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from broker.config import EngineSettings
from broker.domain.ledger import LotLedger
from broker.domain.margin import MarginPolicy, RollingMean, inventory_ratio
from broker.domain.merger import OrderMerger
from broker.domain.models import MergedSellOrder, PriceSample, PurchaseLot
from broker.domain.price_history import PriceHistory
from broker.domain.selector import LotSelector


@dataclass
class EngineState:
    """Everything that survives a restart, as handed to the persistence store."""
    pair: str
    lots: List[PurchaseLot] = field(default_factory=list)
    samples: List[PriceSample] = field(default_factory=list)
    pending_orders: List[MergedSellOrder] = field(default_factory=list)
    # order id -> time its fill was applied
    applied_fills: Dict[str, datetime] = field(default_factory=dict)


class EngineContext:
    """
    Ledger, history and policies of one trading pair.

    The cycle lock admits one decision cycle at a time. The state lock is
    shared with the merger: settling an order and taking a snapshot exclude
    each other, so a snapshot never shows a sold lot next to its applied fill.
    """

    def __init__(
        self,
        settings: EngineSettings,
        ledger: Optional[LotLedger] = None,
        history: Optional[PriceHistory] = None,
        pending_orders: Optional[List[MergedSellOrder]] = None,
        applied_fills: Optional[Dict[str, datetime]] = None,
    ):
        self.settings = settings
        self.pair = settings.pair
        self.ledger = ledger if ledger is not None else LotLedger()
        self.history = history if history is not None else PriceHistory(settings.history_config())
        self.policy = MarginPolicy(settings.margin_config())
        self.selector = LotSelector(settings.sell_fee)
        self.state_lock = threading.RLock()
        self.merger = OrderMerger(
            self.ledger,
            sell_fee=settings.sell_fee,
            pending=pending_orders,
            applied=applied_fills,
            lock=self.state_lock,
        )
        self.held_quantity = RollingMean(settings.inventory_window)
        self.cycle_lock = threading.Lock()

    @classmethod
    def from_state(cls, state: EngineState, settings: EngineSettings) -> "EngineContext":
        """Rebuild the context from persisted state. Invariant violations raise."""
        ledger = LotLedger(state.lots)
        ledger.check_invariants()
        history = PriceHistory.from_samples(state.samples, settings.history_config())
        return cls(
            settings,
            ledger=ledger,
            history=history,
            pending_orders=state.pending_orders,
            applied_fills=state.applied_fills,
        )

    def snapshot(self) -> EngineState:
        with self.state_lock:
            return EngineState(
                pair=self.pair,
                lots=self.ledger.lots(),
                samples=list(self.history.samples),
                pending_orders=self.merger.pending_orders(),
                applied_fills=self.merger.applied_fills(),
            )

    def record_sample(self, sample: PriceSample) -> None:
        with self.state_lock:
            self.history.record(sample)

    def observe_inventory(self) -> None:
        """Feed the current holding into the rolling reference quantity."""
        self.held_quantity.observe(self.ledger.total_quantity())

    def reference_quantity(self) -> Optional[Decimal]:
        if self.settings.target_quantity is not None:
            return self.settings.target_quantity
        return self.held_quantity.mean()

    def inventory_ratio(self) -> Decimal:
        return inventory_ratio(self.ledger.total_quantity(), self.reference_quantity())

    def required_margin(self) -> Decimal:
        return self.policy.required_margin(self.history.trend(), self.inventory_ratio())
