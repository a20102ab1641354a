# broker/io/store.py
"""SQL-backed persistence of the lot ledger and price window."""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

import pytz
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from broker.db.models import AppliedFillRecord, LotRecord, PendingOrderRecord, PriceSampleRecord
from broker.domain.models import MergedSellOrder, PriceSample, PurchaseLot
from broker.engine.context import EngineState

logger = logging.getLogger(__name__)


def _to_utc(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return pytz.UTC.localize(ts)
    return ts.astimezone(pytz.UTC)


def _same_sample(record: PriceSampleRecord, sample: PriceSample) -> bool:
    return _to_utc(record.ts_utc) == sample.timestamp and record.price == str(sample.price)


class SqlPersistenceStore:
    """
    Loads and saves the EngineState of one pair.

    save() brings the pair's rows in line with the state inside a single
    transaction, so a crash mid-save leaves the previous state intact. Only
    the difference is written: new samples are appended and pruned ones
    deleted; lots, pending orders and applied fills are inserted or removed
    by id.
    """

    def __init__(self, engine: Engine, pair: str):
        self.engine = engine
        self.pair = pair

    def load(self) -> EngineState:
        """Read the pair's state. An empty database yields an empty state."""
        with Session(self.engine) as session:
            lots = session.exec(
                select(LotRecord).where(LotRecord.pair == self.pair).order_by(LotRecord.lot_id)
            ).all()
            samples = session.exec(
                select(PriceSampleRecord)
                .where(PriceSampleRecord.pair == self.pair)
                .order_by(PriceSampleRecord.seq)
            ).all()
            pending = session.exec(
                select(PendingOrderRecord).where(PendingOrderRecord.pair == self.pair)
            ).all()
            applied = session.exec(
                select(AppliedFillRecord).where(AppliedFillRecord.pair == self.pair)
            ).all()

            state = EngineState(
                pair=self.pair,
                lots=[
                    PurchaseLot(
                        lot_id=r.lot_id,
                        spent_amount=Decimal(r.spent_amount),
                        quantity=Decimal(r.quantity),
                        purchased_at=_to_utc(r.purchased_at_utc),
                    )
                    for r in lots
                ],
                samples=[
                    PriceSample(timestamp=_to_utc(r.ts_utc), price=Decimal(r.price))
                    for r in samples
                ],
                pending_orders=[
                    MergedSellOrder(
                        lot_ids=frozenset(json.loads(r.lot_ids)),
                        total_quantity=Decimal(r.total_quantity),
                        price_at_submission=Decimal(r.price_at_submission),
                        cost_basis=Decimal(r.cost_basis),
                        sell_fee=Decimal(r.sell_fee),
                        order_id=r.order_id,
                        exchange_order_id=r.exchange_order_id,
                        submitted_at=_to_utc(r.submitted_at_utc),
                    )
                    for r in pending
                ],
                applied_fills={r.order_id: _to_utc(r.applied_at_utc) for r in applied},
            )

        logger.debug(
            "Loaded %s: %d lots, %d samples, %d pending orders",
            self.pair, len(state.lots), len(state.samples), len(state.pending_orders),
        )
        return state

    def save(self, state: EngineState) -> None:
        """Atomically make the stored state of the pair equal to state."""
        with Session(self.engine) as session:
            try:
                self._save_lots(session, state.lots)
                self._save_samples(session, state.samples)
                self._save_pending(session, state.pending_orders)
                self._save_applied(session, state.applied_fills)
                session.commit()
            except Exception:
                session.rollback()
                logger.exception("Saving state of %s failed; previous state kept", self.pair)
                raise

    def _save_lots(self, session: Session, lots: List[PurchaseLot]) -> None:
        stored = {
            r.lot_id: r
            for r in session.exec(select(LotRecord).where(LotRecord.pair == self.pair)).all()
        }
        wanted = {lot.lot_id for lot in lots}

        for lot_id, record in stored.items():
            if lot_id not in wanted:
                session.delete(record)
        # Lots are immutable, so an id already stored needs no update
        session.add_all(
            LotRecord(
                pair=self.pair,
                lot_id=lot.lot_id,
                spent_amount=str(lot.spent_amount),
                quantity=str(lot.quantity),
                purchased_at_utc=_to_utc(lot.purchased_at),
            )
            for lot in lots
            if lot.lot_id not in stored
        )

    def _save_samples(self, session: Session, samples: List[PriceSample]) -> None:
        query = session.query(PriceSampleRecord).filter(PriceSampleRecord.pair == self.pair)
        if not samples:
            query.delete()
            return

        # The window only loses samples at its start
        query.filter(PriceSampleRecord.ts_utc < _to_utc(samples[0].timestamp)).delete()
        kept = query.count()
        first = query.order_by(PriceSampleRecord.seq).first()
        last = query.order_by(PriceSampleRecord.seq.desc()).first()

        if kept == 0:
            next_seq = 0
        elif kept <= len(samples) and _same_sample(first, samples[0]) and _same_sample(last, samples[kept - 1]):
            next_seq = last.seq + 1
        else:
            logger.warning("Stored price window of %s diverged; rewriting it", self.pair)
            query.delete()
            kept, next_seq = 0, 0

        session.add_all(
            PriceSampleRecord(
                pair=self.pair,
                seq=next_seq + i,
                ts_utc=_to_utc(sample.timestamp),
                price=str(sample.price),
            )
            for i, sample in enumerate(samples[kept:])
        )

    def _save_pending(self, session: Session, orders: List[MergedSellOrder]) -> None:
        stored = {
            r.order_id: r
            for r in session.exec(
                select(PendingOrderRecord).where(PendingOrderRecord.pair == self.pair)
            ).all()
        }
        wanted = {order.order_id: order for order in orders}

        for order_id, record in stored.items():
            order = wanted.get(order_id)
            if order is None:
                session.delete(record)
                continue
            # Only these change after propose()
            if record.exchange_order_id != order.exchange_order_id:
                record.exchange_order_id = order.exchange_order_id
            if _to_utc(record.submitted_at_utc) != _to_utc(order.submitted_at):
                record.submitted_at_utc = _to_utc(order.submitted_at)

        session.add_all(
            PendingOrderRecord(
                order_id=order.order_id,
                pair=self.pair,
                exchange_order_id=order.exchange_order_id,
                lot_ids=json.dumps(sorted(order.lot_ids)),
                total_quantity=str(order.total_quantity),
                price_at_submission=str(order.price_at_submission),
                cost_basis=str(order.cost_basis),
                sell_fee=str(order.sell_fee),
                submitted_at_utc=_to_utc(order.submitted_at),
            )
            for order in orders
            if order.order_id not in stored
        )

    def _save_applied(self, session: Session, applied_fills: Dict[str, datetime]) -> None:
        stored = {
            r.order_id: r
            for r in session.exec(
                select(AppliedFillRecord).where(AppliedFillRecord.pair == self.pair)
            ).all()
        }

        for order_id, record in stored.items():
            if order_id not in applied_fills:
                session.delete(record)
        session.add_all(
            AppliedFillRecord(order_id=order_id, pair=self.pair, applied_at_utc=_to_utc(applied_at))
            for order_id, applied_at in sorted(applied_fills.items())
            if order_id not in stored
        )
