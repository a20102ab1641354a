# broker/db/models.py
"""
SQLModel definitions for engine state.
Designed for SQLite locally; any SQLAlchemy backend with transactions works.

Decimal amounts are stored as text so a load/save round-trip is exact.
"""

from datetime import datetime, timezone
from typing import Optional
from sqlmodel import SQLModel, Field, Column, String, DateTime
import uuid


class LotRecord(SQLModel, table=True):
    """Open purchase lot of a trading pair."""
    __tablename__ = "lot"

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    pair: str = Field(index=True)
    lot_id: str = Field(index=True)

    spent_amount: str = Field(sa_column=Column(String, nullable=False))
    quantity: str = Field(sa_column=Column(String, nullable=False))

    purchased_at_utc: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    # No duplicate lot ids within a pair
    __table_args__ = (
        __import__('sqlalchemy').UniqueConstraint('pair', 'lot_id', name='uq_pair_lot'),
    )


class PriceSampleRecord(SQLModel, table=True):
    """Price sample retained in the lookback window."""
    __tablename__ = "price_sample"

    id: Optional[int] = Field(default=None, primary_key=True)
    pair: str = Field(index=True)
    seq: int = Field(index=True)  # preserves insertion order for equal timestamps

    ts_utc: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    price: str = Field(sa_column=Column(String, nullable=False))


class PendingOrderRecord(SQLModel, table=True):
    """Merged sell order submitted but not yet settled."""
    __tablename__ = "pending_order"

    order_id: str = Field(primary_key=True)
    pair: str = Field(index=True)
    exchange_order_id: Optional[str] = Field(default=None)

    lot_ids: str = Field()  # JSON list
    total_quantity: str = Field(sa_column=Column(String, nullable=False))
    price_at_submission: str = Field(sa_column=Column(String, nullable=False))
    cost_basis: str = Field(sa_column=Column(String, nullable=False))
    sell_fee: str = Field(sa_column=Column(String, nullable=False))

    submitted_at_utc: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class AppliedFillRecord(SQLModel, table=True):
    """Order whose fill has been applied to the ledger (applied at most once)."""
    __tablename__ = "applied_fill"

    order_id: str = Field(primary_key=True)
    pair: str = Field(index=True)
    applied_at_utc: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False),
    )
