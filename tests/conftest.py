# tests/conftest.py
"""Test configuration and fixtures."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest
import pytz
from sqlmodel import SQLModel, create_engine
from sqlmodel.pool import StaticPool

import broker.db.models  # noqa: F401
from broker.config import EngineSettings
from broker.domain.ledger import LotLedger
from broker.domain.models import PriceSample
from broker.io.store import SqlPersistenceStore

T0 = datetime(2025, 1, 1, tzinfo=pytz.UTC)


def make_samples(prices, start=T0, step=timedelta(days=1)):
    """One sample per step, starting at start."""
    return [
        PriceSample(timestamp=start + i * step, price=Decimal(str(p)))
        for i, p in enumerate(prices)
    ]


class FakeClock:
    """Clock whose sleep() advances time instead of blocking."""

    def __init__(self, now=T0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(name="db_engine")
def db_engine_fixture():
    """Create in-memory SQLite test database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(name="store")
def store_fixture(db_engine):
    return SqlPersistenceStore(db_engine, "BTC/USD")


@pytest.fixture(name="settings")
def settings_fixture():
    """Small windows so tests stay short."""
    return EngineSettings(
        database_url="sqlite:///:memory:",
        pair="BTC/USD",
        lookback_days=90,
        min_samples=3,
        min_streak_days=2,
        baseline_margin=Decimal("0.10"),
        margin_floor=Decimal("0.01"),
        max_reading_age_seconds=300,
        fill_poll_interval_seconds=1,
        fill_max_wait_seconds=10,
        tick_interval_seconds=60,
        backoff_initial_seconds=5,
        backoff_max_seconds=40,
    )


@pytest.fixture(name="clock")
def clock_fixture():
    return FakeClock()


@pytest.fixture(name="ledger")
def ledger_fixture():
    """Three lots: unit costs 5990, 8000 and 6000."""
    ledger = LotLedger()
    ledger.record_purchase(Decimal("4492.5"), Decimal("0.75"), lot_id="cheap")
    ledger.record_purchase(Decimal("2400"), Decimal("0.30"), lot_id="expensive")
    ledger.record_purchase(Decimal("1800"), Decimal("0.30"), lot_id="mid")
    return ledger
