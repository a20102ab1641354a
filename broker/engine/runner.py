# broker/engine/runner.py
"""Scheduled engine loop: one decision cycle per tick, with backoff and checkpoints."""

import logging
import threading
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional

from broker.config import EngineSettings
from broker.domain.errors import (
    CycleInProgressError,
    FeedUnavailableError,
    InvalidSampleError,
    LedgerInvariantError,
    StaleReadingError,
)
from broker.domain.models import PurchaseLot
from broker.engine.context import EngineContext
from broker.engine.cycle import CycleResult, DecisionCycle, utc_now
from broker.engine.interfaces import ExecutionClient, PersistenceStore, PriceFeed

logger = logging.getLogger(__name__)


class EngineRunner:
    """
    Drives DecisionCycles for one pair.

    Retryable failures abort the tick; feed outages back off exponentially.
    A ledger invariant violation halts the runner.
    """

    def __init__(
        self,
        settings: EngineSettings,
        feed: PriceFeed,
        client: ExecutionClient,
        store: Optional[PersistenceStore] = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.store = store
        self.sleep = sleep
        self.halted = False
        self.results: List[CycleResult] = []
        self._feed_failures = 0
        self._stop = threading.Event()

        if store is not None:
            self.context = EngineContext.from_state(store.load(), settings)
        else:
            self.context = EngineContext(settings)

        self.cycle = DecisionCycle(
            self.context,
            feed,
            client,
            checkpoint=self._save if store is not None else None,
            clock=clock,
            sleep=sleep,
        )

    def record_purchase(self, spent_amount: Decimal, quantity: Decimal, **kwargs) -> PurchaseLot:
        """Add a bought lot and persist it immediately."""
        lot = self.context.ledger.record_purchase(spent_amount, quantity, **kwargs)
        self._save(self.context)
        return lot

    def tick(self) -> Optional[CycleResult]:
        """Run one cycle. Returns None when the tick was aborted."""
        if self.halted:
            raise RuntimeError("Engine halted after a ledger invariant violation")

        try:
            result = self.cycle.run()
        except FeedUnavailableError as e:
            self._feed_failures += 1
            logger.warning("Price feed unavailable (%d in a row): %s", self._feed_failures, e)
            return None
        except (InvalidSampleError, StaleReadingError) as e:
            logger.warning("Tick aborted: %s", e)
            return None
        except CycleInProgressError as e:
            logger.warning("%s", e)
            return None
        except LedgerInvariantError as e:
            self.halted = True
            logger.critical("Ledger invariant violated, halting engine: %s", e)
            raise

        self._feed_failures = 0
        self.results.append(result)
        return result

    def next_delay(self) -> float:
        """Seconds until the next tick: the tick interval, or backoff after feed outages."""
        if self._feed_failures == 0:
            return self.settings.tick_interval_seconds
        backoff = self.settings.backoff_initial_seconds * (2 ** (self._feed_failures - 1))
        return min(self.settings.backoff_max_seconds, backoff)

    def run(self, max_ticks: Optional[int] = None, stop_when: Optional[Callable[[], bool]] = None) -> None:
        """Tick until stopped, max_ticks reached or stop_when() returns True."""
        ticks = 0
        while not self._stop.is_set():
            self.tick()
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if stop_when is not None and stop_when():
                break
            self.sleep(self.next_delay())

    def stop(self) -> None:
        self._stop.set()
        self.cycle.cancel()

    def _save(self, context: EngineContext) -> None:
        if self.store is not None:
            self.store.save(context.snapshot())
