# broker/cli.py
"""
Command line entry point.

Usage:
    broker replay prices.csv [--database-url URL]
    broker buy SPENT QUANTITY [--rate RATE]
    broker status
"""

import argparse
import logging
import sys
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from broker.config import EngineSettings
from broker.db.session import make_engine
from broker.domain.errors import BrokerError
from broker.engine.context import EngineContext
from broker.engine.cycle import CycleState
from broker.engine.runner import EngineRunner
from broker.io.paper import PaperExecutionClient, ReplayPriceFeed
from broker.io.price_csv import load_samples
from broker.io.store import SqlPersistenceStore

logger = logging.getLogger(__name__)


def _decimal(value: str) -> Decimal:
    try:
        number = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")
    if not number.is_finite():
        raise argparse.ArgumentTypeError(f"not a finite number: {value!r}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="broker", description="Sell-decision engine for purchase lots")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (default: $DATABASE_URL)")
    parser.add_argument("--pair", default=None, help="Trading pair (default: $BROKER_PAIR)")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Run cycles over a price file with paper execution")
    replay.add_argument("prices", help="CSV file with timestamp,price columns")
    replay.add_argument("--source-tz", default="UTC", help="Timezone of naive timestamps")

    buy = sub.add_parser("buy", help="Record a purchase lot")
    buy.add_argument("spent", type=_decimal, help="Currency spent, fees included")
    buy.add_argument("quantity", type=_decimal, help="Quantity received")
    buy.add_argument("--rate", type=_decimal, default=None, help="Purchase rate reported by the venue")

    sub.add_parser("status", help="Show lots, trend and required margin")
    return parser


def _settings(args) -> EngineSettings:
    settings = EngineSettings.from_env()
    overrides = {}
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.pair:
        overrides["pair"] = args.pair
    if overrides:
        settings = replace(settings, **overrides)
    return settings


def cmd_replay(args, settings: EngineSettings, store: SqlPersistenceStore) -> int:
    samples, warnings = load_samples(args.prices, source_tz=args.source_tz)
    if not samples:
        print("No usable price samples found.")
        return 1

    feed = ReplayPriceFeed(samples)
    client = PaperExecutionClient()
    runner = EngineRunner(settings, feed, client, store=store, clock=feed.now, sleep=lambda _: None)
    runner.run(stop_when=lambda: feed.remaining == 0)

    settled = [r for r in runner.results if r.state == CycleState.SETTLED]
    proceeds = sum((r.order.expected_proceeds for r in settled), Decimal(0))
    profit = sum((r.order.expected_profit for r in settled), Decimal(0))

    print(f"Replayed {len(samples)} prices ({len(warnings)} rows skipped)")
    print(f"Cycles: {len(runner.results)}  Orders settled: {len(settled)}")
    print(f"Proceeds: {proceeds}  Profit: {profit}")
    print(f"Lots still held: {len(runner.context.ledger)} ({runner.context.ledger.total_quantity()})")
    return 0


def cmd_buy(args, settings: EngineSettings, store: SqlPersistenceStore) -> int:
    context = EngineContext.from_state(store.load(), settings)
    lot = context.ledger.record_purchase(args.spent, args.quantity, purchase_rate=args.rate)
    store.save(context.snapshot())
    print(f"Recorded lot {lot.lot_id}: {lot.quantity} @ {lot.unit_cost}")
    return 0


def cmd_status(args, settings: EngineSettings, store: SqlPersistenceStore) -> int:
    context = EngineContext.from_state(store.load(), settings)
    trend = context.history.trend()

    print(f"Pair: {context.pair}")
    print(f"Samples in window: {trend.sample_count}  Current price: {trend.current_price}")
    print(f"Sustained minimum: {trend.historical_min}  Position ratio: {trend.position_ratio}")
    print(f"Days at/near minimum: {trend.days_at_or_near_min:.2f}")
    print(f"Required margin: {context.required_margin()}")
    print(f"Held: {context.ledger.total_quantity()} in {len(context.ledger)} lots")
    for lot in context.ledger.lots():
        print(f"  {lot.lot_id}  qty={lot.quantity}  spent={lot.spent_amount}  unit_cost={lot.unit_cost}")
    for order in context.merger.pending_orders():
        print(f"  pending order {order.order_id}: {order.total_quantity} @ {order.price_at_submission}")
    return 0


COMMANDS = {
    "replay": cmd_replay,
    "buy": cmd_buy,
    "status": cmd_status,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = _settings(args)
        store = SqlPersistenceStore(make_engine(settings.database_url), settings.pair)
        return COMMANDS[args.command](args, settings, store)
    except (BrokerError, ValueError) as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
