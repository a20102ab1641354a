# broker/domain/merger.py
"""
Consolidate sellable lots into one order and settle it against the ledger.

Settlement is two-phase: propose() reserves the lots under the order id,
commit() removes them once the venue confirms a full fill, discard()
releases them on rejection. Nothing touches the ledger before commit().
"""

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Set

import pytz

from broker.domain.errors import LedgerInvariantError
from broker.domain.ledger import LotLedger
from broker.domain.models import MergedSellOrder, PurchaseLot

logger = logging.getLogger(__name__)


class OrderMerger:
    """
    Builds merged sell orders and applies their fills at most once.

    Pass the owner's state lock as `lock` when the ledger and the merger
    must be read together as one consistent snapshot.
    """

    def __init__(
        self,
        ledger: LotLedger,
        sell_fee: Decimal = Decimal(0),
        pending: Optional[Iterable[MergedSellOrder]] = None,
        applied: Optional[Mapping[str, datetime]] = None,
        lock=None,
    ):
        self.ledger = ledger
        self.sell_fee = sell_fee
        self._pending: Dict[str, MergedSellOrder] = {}
        # order id -> time its fill was applied
        self._applied: Dict[str, datetime] = dict(applied or {})
        self._lock = lock if lock is not None else threading.RLock()
        for order in pending or ():
            self._reserve(order)

    @staticmethod
    def merge(
        to_sell_lot_ids: Iterable[str],
        lots: Iterable[PurchaseLot],
        current_price: Decimal,
        sell_fee: Decimal = Decimal(0),
    ) -> Optional[MergedSellOrder]:
        """
        Sum the selected lots into one order at current_price.

        Returns None when nothing is selected; that is the normal outcome of
        most cycles.
        """
        selected = list(dict.fromkeys(to_sell_lot_ids))
        if not selected:
            return None

        by_id = {lot.lot_id: lot for lot in lots}
        missing = [lot_id for lot_id in selected if lot_id not in by_id]
        if missing:
            raise LedgerInvariantError(f"Selected lots are not in the ledger: {sorted(missing)}")

        chosen = [by_id[lot_id] for lot_id in selected]
        return MergedSellOrder(
            lot_ids=frozenset(selected),
            total_quantity=sum((lot.quantity for lot in chosen), Decimal(0)),
            price_at_submission=current_price,
            cost_basis=sum((lot.spent_amount for lot in chosen), Decimal(0)),
            sell_fee=sell_fee,
        )

    def build(self, to_sell_lot_ids: Iterable[str], current_price: Decimal) -> Optional[MergedSellOrder]:
        """merge() against the current ledger snapshot."""
        return self.merge(to_sell_lot_ids, self.ledger.lots(), current_price, self.sell_fee)


    # Phase 1

    def propose(self, order: MergedSellOrder, submitted_at: Optional[datetime] = None) -> None:
        """Reserve the order's lots so no other order can include them."""
        if submitted_at is not None:
            order.submitted_at = submitted_at
        self._reserve(order)
        logger.info(
            "Proposed order %s: %d lots, quantity %s at %s",
            order.order_id, len(order.lot_ids), order.total_quantity, order.price_at_submission,
        )

    def _reserve(self, order: MergedSellOrder) -> None:
        with self._lock:
            if order.order_id in self._pending or order.order_id in self._applied:
                raise LedgerInvariantError(f"Order id reused: {order.order_id}")
            overlap = order.lot_ids & self.reserved_lot_ids()
            if overlap:
                raise LedgerInvariantError(f"Lots already reserved by another order: {sorted(overlap)}")
            self._pending[order.order_id] = order

    # Phase 2

    def commit(self, order_id: str, filled_quantity: Decimal, applied_at: Optional[datetime] = None) -> bool:
        """
        Apply a fill reported by the venue.

        Only a fill covering the full submitted quantity removes lots. A
        repeated confirmation for an already applied order is ignored.

        Returns:
            True if the ledger was mutated.
        """
        with self._lock:
            if order_id in self._applied:
                logger.info("Fill for order %s already applied; ignoring", order_id)
                return False

            order = self._pending.get(order_id)
            if order is None:
                logger.warning("Fill reported for unknown order %s; ignoring", order_id)
                return False

            if filled_quantity < order.total_quantity:
                logger.error(
                    "Partial fill on order %s: %s of %s; ledger left unchanged for operator review",
                    order_id, filled_quantity, order.total_quantity,
                )
                self.discard(order_id, "partial fill")
                return False

            self.ledger.remove(order.lot_ids)
            del self._pending[order_id]
            self._applied[order_id] = applied_at or datetime.now(pytz.UTC)

        logger.info(
            "Settled order %s: sold %s, expected profit %s",
            order_id, order.total_quantity, order.expected_profit,
        )
        return True

    def discard(self, order_id: str, reason: str = "") -> Optional[MergedSellOrder]:
        """Release a rejected order's lots without touching the ledger."""
        with self._lock:
            order = self._pending.pop(order_id, None)
        if order is not None:
            logger.info("Discarded order %s (%s)", order_id, reason or "rejected")
        return order

    def attach_exchange_id(self, order_id: str, exchange_order_id: str) -> None:
        with self._lock:
            order = self._pending.get(order_id)
            if order is not None:
                order.exchange_order_id = exchange_order_id

    def is_pending(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._pending

    def pending_orders(self) -> List[MergedSellOrder]:
        with self._lock:
            return list(self._pending.values())

    def reserved_lot_ids(self) -> Set[str]:
        with self._lock:
            reserved: Set[str] = set()
            for order in self._pending.values():
                reserved |= order.lot_ids
            return reserved

    @property
    def applied_order_ids(self) -> Set[str]:
        with self._lock:
            return set(self._applied)

    def applied_fills(self) -> Dict[str, datetime]:
        with self._lock:
            return dict(self._applied)

    def prune_applied(self, before: datetime) -> int:
        """
        Forget fills applied before `before`.

        A late duplicate confirmation for a forgotten order is still ignored,
        because only pending orders can touch the ledger.
        """
        with self._lock:
            expired = [order_id for order_id, at in self._applied.items() if at < before]
            for order_id in expired:
                del self._applied[order_id]
        if expired:
            logger.debug("Pruned %d applied fills older than %s", len(expired), before.isoformat())
        return len(expired)
