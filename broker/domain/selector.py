# broker/domain/selector.py
"""Classify lots as sell-now or hold against the required margin."""

import logging
from decimal import Decimal
from typing import Iterable, List

from broker.domain.models import ONE, PurchaseLot, Selection

logger = logging.getLogger(__name__)


class LotSelector:
    """Pure per-lot filter; no lot influences another lot's verdict."""

    def __init__(self, sell_fee: Decimal = Decimal(0)):
        if not (0 <= sell_fee < 1):
            raise ValueError("sell_fee must be in [0, 1)")
        self.sell_fee = sell_fee

    def is_sellable(self, lot: PurchaseLot, current_price: Decimal, required_margin: Decimal) -> bool:
        """
        current_price / unit_cost >= 1 + required_margin, with the profit part
        reduced by the venue's cut when a sell fee is configured.
        """
        profit_ratio = (lot.margin_ratio(current_price) - ONE) * (ONE - self.sell_fee)
        return profit_ratio >= required_margin

    def select(
        self,
        lots: Iterable[PurchaseLot],
        current_price: Decimal,
        required_margin: Decimal,
    ) -> Selection:
        """
        Partition lots into to_sell and to_hold.

        Every lot lands in exactly one side. Both sides are ordered by unit
        cost (cheapest first), ties broken by id. No lots gives an empty
        selection.
        """
        to_sell: List[str] = []
        to_hold: List[str] = []

        for lot in sorted(lots, key=lambda lot: (lot.unit_cost, lot.lot_id)):
            sellable = self.is_sellable(lot, current_price, required_margin)
            logger.debug(
                "Lot %s unit_cost=%s price=%s margin=%s -> %s",
                lot.lot_id, lot.unit_cost, current_price, required_margin,
                "sell" if sellable else "hold",
            )
            (to_sell if sellable else to_hold).append(lot.lot_id)

        return Selection(to_sell=tuple(to_sell), to_hold=tuple(to_hold))
