# broker/io/price_csv.py
"""
Price sample file parser.
Reads `timestamp,price` CSV files into PriceSamples in UTC.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import List, Tuple, Union
import logging
import os

import pandas as pd
import pytz

from broker.domain.models import PriceSample

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("timestamp", "price")


def parse_timestamp(value: Union[str, datetime, pd.Timestamp], source_tz: str = "UTC") -> datetime:
    """
    Parse a timestamp to an aware UTC datetime.

    Naive values are assumed to be in source_tz.

    Raises:
        ValueError: value cannot be parsed.
    """
    ts = pd.Timestamp(value)
    if pd.isna(ts):
        raise ValueError(f"Could not parse timestamp: {value!r}")

    dt = ts.to_pydatetime()
    if dt.tzinfo is None:
        dt = pytz.timezone(source_tz).localize(dt)
    return dt.astimezone(pytz.UTC)


def load_samples(
    path_or_buffer: Union[str, "os.PathLike", object],
    source_tz: str = "UTC",
) -> Tuple[List[PriceSample], List[str]]:
    """
    Load price samples from CSV.

    Rows with unparseable timestamps, or prices that are not finite and
    positive, are skipped with a warning. The rest are returned in file order (monotonicity is checked by PriceHistory).

    Returns:
        (samples, warnings)
    """
    df = pd.read_csv(path_or_buffer, dtype=str, keep_default_na=False)
    df.columns = [c.strip().lower() for c in df.columns]

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Price file is missing columns: {', '.join(missing)}")

    samples: List[PriceSample] = []
    warnings: List[str] = []

    for line_no, (raw_ts, raw_price) in enumerate(zip(df["timestamp"], df["price"]), start=2):
        try:
            ts = parse_timestamp(raw_ts.strip(), source_tz)
            price = Decimal(raw_price.strip())
        except (ValueError, InvalidOperation):
            warnings.append(f"Line {line_no}: skipped malformed row ({raw_ts!r}, {raw_price!r})")
            continue
        if not price.is_finite() or price <= 0:
            warnings.append(f"Line {line_no}: skipped non-positive or non-finite price {raw_price!r}")
            continue

        samples.append(PriceSample(timestamp=ts, price=price))

    for w in warnings:
        logger.warning(w)
    return samples, warnings
