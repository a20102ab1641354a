# broker/io/paper.py
"""Paper collaborators: replayed prices and a simulated venue."""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Deque, Dict, List, Optional, Sequence

from broker.domain.errors import ExecutionRejectedError, ExecutionTimeoutError, FeedUnavailableError
from broker.domain.models import PriceReading, PriceSample
from broker.engine.interfaces import FillStatus

logger = logging.getLogger(__name__)


class ReplayPriceFeed:
    """Serves recorded samples one per call, in order."""

    def __init__(self, samples: Sequence[PriceSample]):
        self._samples: Deque[PriceSample] = deque(samples)
        self.last: Optional[PriceSample] = None

    def current_price(self, pair: str) -> PriceReading:
        if not self._samples:
            raise FeedUnavailableError(f"No more recorded prices for {pair}")
        self.last = self._samples.popleft()
        return PriceReading(price=self.last.price, observed_at=self.last.timestamp)

    def now(self) -> datetime:
        """Clock that follows the replay, so readings are never stale."""
        if self.last is not None:
            return self.last.timestamp
        if self._samples:
            return self._samples[0].timestamp
        raise FeedUnavailableError("Replay has no samples")

    @property
    def remaining(self) -> int:
        return len(self._samples)


@dataclass
class PaperOrder:
    client_order_id: str
    quantity: Decimal
    limit_price: Optional[Decimal]
    # Statuses returned by successive polls; the last one repeats
    statuses: List[FillStatus] = field(default_factory=list)


class PaperExecutionClient:
    """
    Simulated venue. By default every order fills completely on the first
    poll. Scripted outcomes can be queued for the next submissions:

        client.script("reject")              # submission rejected
        client.script("timeout")             # submit times out, order exists
        client.script("pending", "filled")   # one pending poll, then filled
        client.script("partial")             # fills half the quantity
        client.script("rejected")            # accepted, then rejected on poll
    """

    def __init__(self):
        self.orders: Dict[str, PaperOrder] = {}
        self.submissions: List[PaperOrder] = []
        self._scripts: Deque[List[str]] = deque()

    def script(self, *outcomes: str) -> None:
        self._scripts.append(list(outcomes))

    def submit_sell_order(
        self,
        quantity: Decimal,
        limit_price: Optional[Decimal],
        client_order_id: str,
    ) -> str:
        outcomes = self._scripts.popleft() if self._scripts else ["filled"]

        if outcomes[0] == "reject":
            raise ExecutionRejectedError("paper venue rejected the order")

        order = PaperOrder(client_order_id, quantity, limit_price)
        for outcome in outcomes:
            if outcome == "filled":
                order.statuses.append(FillStatus.filled(quantity))
            elif outcome == "partial":
                order.statuses.append(FillStatus.filled(quantity / 2))
            elif outcome == "rejected":
                order.statuses.append(FillStatus.rejected("paper venue cancelled the order"))
            elif outcome in ("pending", "timeout"):
                order.statuses.append(FillStatus.pending())
        if not order.statuses or outcomes == ["timeout"]:
            order.statuses.append(FillStatus.filled(quantity))

        exchange_id = f"paper-{uuid.uuid4().hex[:12]}"
        self.orders[exchange_id] = order
        self.orders[client_order_id] = order
        self.submissions.append(order)
        logger.info("Paper sell %s @ %s (%s)", quantity, limit_price or "market", exchange_id)

        if outcomes[0] == "timeout":
            raise ExecutionTimeoutError("paper venue did not answer", order_id=client_order_id)
        return exchange_id

    def poll_fill_status(self, order_id: str) -> FillStatus:
        order = self.orders.get(order_id)
        if order is None:
            return FillStatus.rejected(f"unknown order {order_id}")
        if len(order.statuses) > 1:
            return order.statuses.pop(0)
        return order.statuses[0]
