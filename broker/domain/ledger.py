# broker/domain/ledger.py
"""Open purchase lots, keyed by id, with serialized mutation."""

import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from broker.domain.errors import InvalidPurchaseError, LedgerInvariantError
from broker.domain.models import PurchaseLot

logger = logging.getLogger(__name__)

# Tolerance when checking spent_amount == quantity * purchase_rate
RATE_TOLERANCE = Decimal("0.00000001")


class LotLedger:
    """
    The set of lots we still hold.

    Every write goes through one lock, so a buy landing while a cycle is
    evaluating is neither lost nor counted twice. Readers get snapshots.
    """

    def __init__(self, lots: Optional[Iterable[PurchaseLot]] = None):
        self._lots: Dict[str, PurchaseLot] = {}
        self._lock = threading.RLock()
        for lot in lots or ():
            self.add(lot)

    def record_purchase(
        self,
        spent_amount: Decimal,
        quantity: Decimal,
        purchase_rate: Optional[Decimal] = None,
        lot_id: Optional[str] = None,
        purchased_at: Optional[datetime] = None,
    ) -> PurchaseLot:
        """
        Register an executed buy as a new lot.

        Args:
            spent_amount: Currency paid, fees included
            quantity: Amount of commodity received
            purchase_rate: Rate reported by the venue; must match spent/quantity
            lot_id: Explicit id (generated when omitted)
            purchased_at: Execution time

        Raises:
            InvalidPurchaseError: non-positive amounts or mismatching rate.
            LedgerInvariantError: lot_id already present.
        """
        spent_amount = Decimal(spent_amount)
        quantity = Decimal(quantity)
        if not (spent_amount.is_finite() and quantity.is_finite()):
            raise InvalidPurchaseError(f"amounts must be finite (got {spent_amount}, {quantity})")
        if spent_amount <= 0 or quantity <= 0:
            raise InvalidPurchaseError(
                f"spent_amount and quantity must be positive (got {spent_amount}, {quantity})"
            )
        if purchase_rate is not None:
            if abs(quantity * Decimal(purchase_rate) - spent_amount) > RATE_TOLERANCE:
                raise InvalidPurchaseError(
                    f"purchase rate {purchase_rate} does not match {spent_amount}/{quantity}"
                )

        lot = PurchaseLot(
            lot_id=lot_id or PurchaseLot.new_id(),
            spent_amount=spent_amount,
            quantity=quantity,
            purchased_at=purchased_at,
        )
        self.add(lot)
        logger.info(
            "Recorded lot %s: %s for %s (unit cost %s)",
            lot.lot_id, lot.quantity, lot.spent_amount, lot.unit_cost,
        )
        return lot

    def add(self, lot: PurchaseLot) -> None:
        """Insert an existing lot, enforcing the ledger invariants."""
        if not (lot.quantity.is_finite() and lot.spent_amount.is_finite()):
            raise LedgerInvariantError(f"Lot {lot.lot_id} has non-finite amounts")
        if lot.quantity <= 0 or lot.spent_amount <= 0:
            raise LedgerInvariantError(f"Lot {lot.lot_id} has non-positive amounts")
        with self._lock:
            if lot.lot_id in self._lots:
                raise LedgerInvariantError(f"Duplicate lot id: {lot.lot_id}")
            self._lots[lot.lot_id] = lot

    def remove(self, lot_ids: Iterable[str]) -> List[PurchaseLot]:
        """
        Remove exactly the given lots, all or nothing.

        Raises:
            LedgerInvariantError: any id is not in the ledger.
        """
        lot_ids = list(lot_ids)
        with self._lock:
            missing = [lot_id for lot_id in lot_ids if lot_id not in self._lots]
            if missing:
                raise LedgerInvariantError(f"Cannot remove unknown lots: {sorted(missing)}")
            removed = [self._lots.pop(lot_id) for lot_id in lot_ids]

        logger.info("Removed %d lots from ledger", len(removed))
        return removed

    def get(self, lot_id: str) -> Optional[PurchaseLot]:
        with self._lock:
            return self._lots.get(lot_id)

    def lots(self) -> List[PurchaseLot]:
        """Snapshot of all lots, cheapest unit cost first."""
        with self._lock:
            lots = list(self._lots.values())
        return sorted(lots, key=lambda lot: (lot.unit_cost, lot.lot_id))

    def total_quantity(self) -> Decimal:
        with self._lock:
            return sum((lot.quantity for lot in self._lots.values()), Decimal(0))

    def check_invariants(self) -> None:
        """Raise LedgerInvariantError if the stored lots are inconsistent."""
        with self._lock:
            for lot_id, lot in self._lots.items():
                if lot.lot_id != lot_id:
                    raise LedgerInvariantError(f"Lot stored under wrong key: {lot_id} != {lot.lot_id}")
                if lot.quantity <= 0 or lot.spent_amount <= 0:
                    raise LedgerInvariantError(f"Lot {lot_id} has non-positive amounts")

    def __contains__(self, lot_id: str) -> bool:
        with self._lock:
            return lot_id in self._lots

    def __len__(self) -> int:
        with self._lock:
            return len(self._lots)
