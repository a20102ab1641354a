# broker/engine/cycle.py
"""
One evaluation pass of the sell-decision engine.

    Idle -> Fetching -> Evaluating -> (Submitting | NothingToSell)
         -> AwaitingFill -> (Settled | Rejected | Failed | Cancelled)

The cycle lock is released before AwaitingFill. Lots of an order waiting
for its fill stay reserved by the merger, so a later cycle cannot select
them again. No in-flight cycle state is assumed durable: after a restart
the next cycle reconciles pending orders, then re-fetches the price and
recomputes everything from the ledger.
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Callable, List, Optional

import pytz

from broker.domain.errors import (
    CycleInProgressError,
    ExecutionRejectedError,
    ExecutionTimeoutError,
    InvalidSampleError,
    StaleReadingError,
)
from broker.domain.models import MergedSellOrder, PriceReading, PriceSample, Selection
from broker.engine.context import EngineContext
from broker.engine.interfaces import ExecutionClient, FillState, FillStatus, PriceFeed

logger = logging.getLogger(__name__)


class CycleState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    EVALUATING = "evaluating"
    SUBMITTING = "submitting"
    AWAITING_FILL = "awaiting_fill"
    SETTLED = "settled"
    REJECTED = "rejected"
    NOTHING_TO_SELL = "nothing_to_sell"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class CycleResult:
    """Outcome of one cycle."""
    state: CycleState
    price: Optional[Decimal] = None
    required_margin: Optional[Decimal] = None
    selection: Optional[Selection] = None
    order: Optional[MergedSellOrder] = None
    reason: str = ""


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


class DecisionCycle:
    """Runs decision cycles for one EngineContext."""

    def __init__(
        self,
        context: EngineContext,
        feed: PriceFeed,
        client: ExecutionClient,
        checkpoint: Optional[Callable[[EngineContext], None]] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.context = context
        self.feed = feed
        self.client = client
        self.checkpoint = checkpoint
        self.clock = clock
        self.sleep = sleep
        self.state = CycleState.IDLE
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop waiting for a fill. A submitted order stays pending and is reconciled later."""
        self._cancelled.set()

    def run(self) -> CycleResult:
        """
        Execute one cycle.

        Raises:
            CycleInProgressError: another cycle holds the context.
            FeedUnavailableError, InvalidSampleError, StaleReadingError: the
                tick is aborted; the ledger is untouched.
            LedgerInvariantError: fatal.
        """
        if not self.context.cycle_lock.acquire(blocking=False):
            raise CycleInProgressError(f"A cycle is already running for {self.context.pair}")

        self._cancelled.clear()
        try:
            self.reconcile()
            result = self._evaluate_and_submit()
        except Exception:
            self.state = CycleState.IDLE
            raise
        finally:
            self.context.cycle_lock.release()

        if result.state != CycleState.AWAITING_FILL:
            return self._finish(result)

        return self._finish(self._await_fill(result))

    def reconcile(self) -> List[str]:
        """
        Poll every pending order once and apply late fills or rejections.
        Applied fills older than the retention horizon are forgotten first.

        Returns:
            Order ids that were settled or discarded.
        """
        merger = self.context.merger
        retention = timedelta(days=self.context.settings.applied_retention_days)
        merger.prune_applied(self.clock() - retention)
        resolved = []

        for order in merger.pending_orders():
            try:
                status = self.client.poll_fill_status(order.exchange_order_id or order.order_id)
            except ExecutionTimeoutError:
                logger.warning("Polling pending order %s timed out; will retry", order.order_id)
                continue

            if status.state == FillState.FILLED:
                merger.commit(order.order_id, status.filled_quantity, applied_at=self.clock())
                resolved.append(order.order_id)
            elif status.state == FillState.REJECTED:
                logger.error("Pending order %s was rejected: %s", order.order_id, status.reason)
                merger.discard(order.order_id, status.reason)
                resolved.append(order.order_id)

        if resolved:
            self._checkpoint()
        return resolved

    def _evaluate_and_submit(self) -> CycleResult:
        context = self.context

        self.state = CycleState.FETCHING
        reading = self._fetch_reading()
        price = reading.price
        context.record_sample(PriceSample(timestamp=reading.observed_at, price=price))

        self.state = CycleState.EVALUATING
        context.observe_inventory()
        trend = context.history.trend()
        margin = context.policy.required_margin(trend, context.inventory_ratio())
        reserved = context.merger.reserved_lot_ids()
        lots = [lot for lot in context.ledger.lots() if lot.lot_id not in reserved]
        selection = context.selector.select(lots, price, margin)
        logger.info(
            "%s price=%s position=%s days_near_min=%.2f margin=%s sell=%d hold=%d",
            context.pair, price, trend.position_ratio, trend.days_at_or_near_min, margin,
            len(selection.to_sell), len(selection.to_hold),
        )

        result = CycleResult(state=CycleState.NOTHING_TO_SELL, price=price, required_margin=margin, selection=selection)
        order = context.merger.build(selection.to_sell, price)
        if order is None:
            self._checkpoint()
            return result

        self.state = CycleState.SUBMITTING
        result.order = order
        context.merger.propose(order, submitted_at=self.clock())
        self._checkpoint()

        try:
            exchange_id = self.client.submit_sell_order(order.total_quantity, price, order.order_id)
        except ExecutionRejectedError as e:
            logger.error("Order %s rejected on submission: %s", order.order_id, e.reason)
            context.merger.discard(order.order_id, e.reason)
            result.state = CycleState.REJECTED
            result.reason = e.reason
            return result
        except ExecutionTimeoutError as e:
            # The order may have reached the venue; find out by polling.
            logger.warning("Submitting order %s timed out; polling for its status", order.order_id)
            exchange_id = e.order_id

        if exchange_id:
            context.merger.attach_exchange_id(order.order_id, exchange_id)
        self._checkpoint()
        result.state = CycleState.AWAITING_FILL
        return result

    def _fetch_reading(self) -> PriceReading:
        reading = self.feed.current_price(self.context.pair)
        now = self.clock()
        if not isinstance(reading, PriceReading):
            try:
                reading = PriceReading(price=Decimal(reading), observed_at=now)
            except (InvalidOperation, TypeError, ValueError) as e:
                raise InvalidSampleError(f"Feed returned an unusable price: {reading!r}") from e

        max_age = timedelta(seconds=self.context.settings.max_reading_age_seconds)
        if now - reading.observed_at > max_age:
            raise StaleReadingError(
                f"Reading observed at {reading.observed_at.isoformat()} is older than {max_age}"
            )
        return reading

    def _await_fill(self, result: CycleResult) -> CycleResult:
        self.state = CycleState.AWAITING_FILL
        settings = self.context.settings
        merger = self.context.merger
        order = result.order
        deadline = self.clock() + timedelta(seconds=settings.fill_max_wait_seconds)

        while True:
            if self._cancelled.is_set():
                logger.info("Cycle cancelled while awaiting fill of %s; order stays pending", order.order_id)
                result.state = CycleState.CANCELLED
                return result

            if not merger.is_pending(order.order_id):
                # Another cycle's reconcile settled it already.
                settled = order.order_id in merger.applied_order_ids
                result.state = CycleState.SETTLED if settled else CycleState.REJECTED
                return result

            status = self._poll(order)
            if status is not None and status.state == FillState.FILLED:
                committed = merger.commit(order.order_id, status.filled_quantity, applied_at=self.clock())
                if committed or order.order_id in merger.applied_order_ids:
                    result.state = CycleState.SETTLED
                else:
                    result.state = CycleState.REJECTED
                    result.reason = "partial fill"
                return result

            if status is not None and status.state == FillState.REJECTED:
                logger.error("Order %s rejected: %s", order.order_id, status.reason)
                merger.discard(order.order_id, status.reason)
                result.state = CycleState.REJECTED
                result.reason = status.reason
                return result

            if self.clock() >= deadline:
                logger.warning(
                    "Order %s not confirmed within %ss; leaving it pending",
                    order.order_id, settings.fill_max_wait_seconds,
                )
                result.state = CycleState.FAILED
                result.reason = "fill not confirmed before max wait"
                return result

            self.sleep(settings.fill_poll_interval_seconds)

    def _poll(self, order: MergedSellOrder) -> Optional[FillStatus]:
        try:
            return self.client.poll_fill_status(order.exchange_order_id or order.order_id)
        except ExecutionTimeoutError:
            logger.warning("Polling order %s timed out", order.order_id)
            return None

    def _finish(self, result: CycleResult) -> CycleResult:
        if result.state in (CycleState.SETTLED, CycleState.REJECTED):
            self._checkpoint()
        self.state = result.state
        logger.info("Cycle for %s finished: %s %s", self.context.pair, result.state.value, result.reason)
        return result

    def _checkpoint(self) -> None:
        if self.checkpoint is not None:
            self.checkpoint(self.context)
