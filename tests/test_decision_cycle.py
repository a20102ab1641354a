from __future__ import annotations

import copy
import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from broker.domain.errors import (
    CycleInProgressError,
    FeedUnavailableError,
    InvalidSampleError,
    StaleReadingError,
)
from broker.domain.models import PriceReading
from broker.engine.context import EngineContext
from broker.engine.cycle import CycleState, DecisionCycle
from broker.engine.interfaces import FillStatus
from broker.io.paper import PaperExecutionClient


class StaticFeed:
    """Returns a fixed price observed `age` before the clock."""

    def __init__(self, clock, price, age=timedelta(0)):
        self.clock = clock
        self.price = Decimal(str(price))
        self.age = age
        self.available = True

    def current_price(self, pair):
        if not self.available:
            raise FeedUnavailableError("feed down")
        return PriceReading(price=self.price, observed_at=self.clock() - self.age)


@pytest.fixture(name="context")
def context_fixture(settings, ledger):
    return EngineContext(settings, ledger=ledger)


@pytest.fixture(name="client")
def client_fixture():
    return PaperExecutionClient()


def make_cycle(context, clock, client, price, **kwargs):
    feed = StaticFeed(clock, price)
    return DecisionCycle(context, feed, client, clock=clock, sleep=clock.sleep, **kwargs), feed


def test_profitable_lots_merged_and_settled(context, clock, client):
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.SETTLED
    assert result.required_margin == Decimal("0.10")  # cold start: baseline
    assert result.order.lot_ids == frozenset({"cheap", "mid"})
    assert result.order.total_quantity == Decimal("1.05")
    assert [lot.lot_id for lot in context.ledger.lots()] == ["expensive"]
    assert len(client.submissions) == 1
    assert client.submissions[0].limit_price == Decimal("8000")
    assert cycle.state == CycleState.SETTLED


def test_nothing_to_sell_leaves_ledger(context, clock, client):
    before = copy.deepcopy(context.ledger.lots())
    cycle, _ = make_cycle(context, clock, client, 6000)
    result = cycle.run()

    assert result.state == CycleState.NOTHING_TO_SELL
    assert result.order is None
    assert context.ledger.lots() == before
    assert client.submissions == []
    assert len(context.history) == 1


def test_submission_rejected_leaves_ledger(context, clock, client):
    before = copy.deepcopy(context.ledger.lots())
    client.script("reject")
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.REJECTED
    assert context.ledger.lots() == before
    assert context.merger.pending_orders() == []


def test_rejected_after_polling(context, clock, client):
    before = copy.deepcopy(context.ledger.lots())
    client.script("pending", "rejected")
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.REJECTED
    assert clock.sleeps == [1]
    assert context.ledger.lots() == before


def test_partial_fill_leaves_ledger(context, clock, client):
    before = copy.deepcopy(context.ledger.lots())
    client.script("partial")
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.REJECTED
    assert result.reason == "partial fill"
    assert context.ledger.lots() == before


def test_submit_timeout_polls_before_giving_up(context, clock, client):
    client.script("timeout")
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.SETTLED
    assert [lot.lot_id for lot in context.ledger.lots()] == ["expensive"]


def test_max_wait_marks_cycle_failed_and_keeps_order_pending(context, clock, client):
    client.script("pending")
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()

    assert result.state == CycleState.FAILED
    assert len(context.ledger) == 3
    assert context.merger.reserved_lot_ids() == {"cheap", "mid"}
    assert sum(clock.sleeps) >= 10

    # The venue fills it later; the next cycle picks that up first.
    client.submissions[0].statuses = [FillStatus.filled(Decimal("1.05"))]
    result = cycle.run()

    assert [lot.lot_id for lot in context.ledger.lots()] == ["expensive"]
    assert context.merger.pending_orders() == []
    assert result.state == CycleState.NOTHING_TO_SELL


def test_reserved_lots_not_selected_again(context, clock, client):
    client.script("pending")
    cycle, feed = make_cycle(context, clock, client, 8000)
    cycle.run()

    # Price jumps so the expensive lot becomes sellable too
    feed.price = Decimal("9000")
    client.script("filled")
    result = cycle.run()

    assert result.order.lot_ids == frozenset({"expensive"})
    assert result.state == CycleState.SETTLED


def test_cancel_while_awaiting_fill_applies_late_fill_once(context, clock, client):
    client.script("pending")
    cycle, _ = make_cycle(context, clock, client, 8000)

    def sleep_then_cancel(seconds):
        clock.sleep(seconds)
        cycle.cancel()

    cycle.sleep = sleep_then_cancel
    result = cycle.run()

    assert result.state == CycleState.CANCELLED
    assert len(context.ledger) == 3

    client.submissions[0].statuses = [FillStatus.filled(Decimal("1.05"))]
    assert cycle.reconcile() == [result.order.order_id]
    assert cycle.reconcile() == []
    assert [lot.lot_id for lot in context.ledger.lots()] == ["expensive"]


def test_stale_reading_aborts_tick(context, clock, client):
    before = copy.deepcopy(context.ledger.lots())
    cycle, feed = make_cycle(context, clock, client, 8000)
    feed.age = timedelta(minutes=10)

    with pytest.raises(StaleReadingError):
        cycle.run()
    assert context.ledger.lots() == before
    assert len(context.history) == 0
    assert cycle.state == CycleState.IDLE


def test_feed_unavailable_aborts_tick(context, clock, client):
    cycle, feed = make_cycle(context, clock, client, 8000)
    feed.available = False

    with pytest.raises(FeedUnavailableError):
        cycle.run()
    assert len(context.ledger) == 3
    assert not context.cycle_lock.locked()


def test_second_cycle_refused_while_one_runs(context, clock, client):
    cycle, _ = make_cycle(context, clock, client, 8000)
    context.cycle_lock.acquire()
    try:
        with pytest.raises(CycleInProgressError):
            cycle.run()
    finally:
        context.cycle_lock.release()


def test_order_persisted_before_submission(context, clock, store):
    seen = {}

    class CheckingClient(PaperExecutionClient):
        def submit_sell_order(self, quantity, limit_price, client_order_id):
            seen["pending"] = [o.order_id for o in store.load().pending_orders]
            return super().submit_sell_order(quantity, limit_price, client_order_id)

    checkpoint = lambda ctx: store.save(ctx.snapshot())
    cycle, _ = make_cycle(context, clock, CheckingClient(), 8000, checkpoint=checkpoint)
    result = cycle.run()

    assert seen["pending"] == [result.order.order_id]
    assert store.load().pending_orders == []
    assert {lot.lot_id for lot in store.load().lots} == {"expensive"}


def test_restart_mid_cycle_does_not_sell_twice(context, clock, client, store, settings):
    checkpoint = lambda ctx: store.save(ctx.snapshot())
    client.script("pending")
    cycle, _ = make_cycle(context, clock, client, 8000, checkpoint=checkpoint)
    cycle.run()

    # Process dies; a fresh context is rebuilt from the store.
    restored = EngineContext.from_state(store.load(), settings)
    assert restored.merger.reserved_lot_ids() == {"cheap", "mid"}

    client.submissions[0].statuses = [FillStatus.filled(Decimal("1.05"))]
    new_cycle, _ = make_cycle(restored, clock, client, 8000, checkpoint=checkpoint)
    result = new_cycle.run()

    assert result.state == CycleState.NOTHING_TO_SELL
    assert len(client.submissions) == 1
    assert {lot.lot_id for lot in store.load().lots} == {"expensive"}


def test_plain_decimal_price_feed_accepted(context, clock, client):
    class BareFeed:
        def current_price(self, pair):
            return Decimal("8000")

    cycle = DecisionCycle(context, BareFeed(), client, clock=clock, sleep=clock.sleep)
    assert cycle.run().state == CycleState.SETTLED


@pytest.mark.parametrize("price", ["NaN", "Infinity"])
def test_non_finite_price_aborts_cycle(context, clock, client, price):
    before = copy.deepcopy(context.ledger.lots())
    cycle, feed = make_cycle(context, clock, client, price)

    with pytest.raises(InvalidSampleError):
        cycle.run()

    assert context.ledger.lots() == before
    assert len(context.history) == 0
    assert client.submissions == []
    # The lock was released: the next tick runs normally
    feed.price = Decimal("8000")
    assert cycle.run().state == CycleState.SETTLED


def test_unparseable_feed_price_aborts_cycle(context, clock, client):
    class GarbageFeed:
        def current_price(self, pair):
            return "not a price"

    cycle = DecisionCycle(context, GarbageFeed(), client, clock=clock, sleep=clock.sleep)

    with pytest.raises(InvalidSampleError):
        cycle.run()
    assert len(context.history) == 0


def test_snapshot_not_torn_by_concurrent_settlement(context):
    merger = context.merger
    order = merger.build(["cheap"], Decimal("8000"))
    merger.propose(order)
    settle = threading.Thread(target=merger.commit, args=(order.order_id, order.total_quantity))

    read_lots = context.ledger.lots

    def lots_then_settle():
        lots = read_lots()
        # Settlement from another thread lands while the snapshot is half taken
        settle.start()
        settle.join(timeout=0.2)
        return lots

    context.ledger.lots = lots_then_settle
    state = context.snapshot()
    settle.join()
    del context.ledger.lots

    # Taken entirely before the settlement: the lot is held and its order pending
    assert "cheap" in {lot.lot_id for lot in state.lots}
    assert [o.order_id for o in state.pending_orders] == [order.order_id]
    assert state.applied_fills == {}

    after = context.snapshot()
    assert "cheap" not in {lot.lot_id for lot in after.lots}
    assert after.pending_orders == []
    assert order.order_id in after.applied_fills


def test_restart_after_settlement_never_sells_lot_twice(settings, ledger, store, clock, client):
    context = EngineContext(settings, ledger=ledger)
    cycle = DecisionCycle(context, StaticFeed(clock, 8000), client, checkpoint=lambda c: store.save(c.snapshot()),
                          clock=clock, sleep=clock.sleep)
    assert cycle.run().state == CycleState.SETTLED

    restored = EngineContext.from_state(store.load(), settings)
    assert [lot.lot_id for lot in restored.ledger.lots()] == ["expensive"]
    assert restored.merger.pending_orders() == []

    again = DecisionCycle(restored, StaticFeed(clock, 8000), client, clock=clock, sleep=clock.sleep)
    assert again.run().state == CycleState.NOTHING_TO_SELL
    assert len(client.submissions) == 1


def test_applied_fills_pruned_after_retention(context, clock, client):
    cycle, _ = make_cycle(context, clock, client, 8000)
    result = cycle.run()
    assert result.order.order_id in context.merger.applied_order_ids

    clock.now += timedelta(days=context.settings.applied_retention_days + 1)
    cycle.reconcile()

    assert context.merger.applied_order_ids == set()


def test_inventory_reference_defaults_to_rolling_mean(settings, ledger):
    context = EngineContext(settings, ledger=ledger)
    assert context.reference_quantity() is None
    assert context.inventory_ratio() == Decimal(1)

    context.observe_inventory()
    assert context.reference_quantity() == Decimal("1.35")
    assert context.inventory_ratio() == Decimal(1)

    # Holding more than the recent average raises the ratio
    context.ledger.record_purchase(Decimal("1350"), Decimal("1.35"), lot_id="extra")
    assert context.inventory_ratio() == Decimal(2)
