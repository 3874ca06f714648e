"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from datetime import date, timedelta
from pathlib import Path

import numpy as np
import polars as pl
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salesflow.contracts.config import PipelineConfig  # noqa: E402
from salesflow.contracts.schemas import MONTH_COLUMNS, WEEKDAYS  # noqa: E402
from salesflow.zones.store import ZoneStore  # noqa: E402


@pytest.fixture
def config(tmp_path) -> PipelineConfig:
    """Config rooted in a temp directory with no sleeps."""
    return PipelineConfig(
        data_root=tmp_path / "zones",
        max_workers=2,
        api_retry_delay=0.0,
        api_rate_limit_delay=0.0,
        api_page_size=2,
    )


@pytest.fixture
def store(config) -> ZoneStore:
    return ZoneStore(config.data_root)


@pytest.fixture
def raw_headers() -> pl.DataFrame:
    """Three legacy header rows: order 101 exists for two sellers."""
    return pl.DataFrame({
        "ORD001": ["101", "102", "101"],
        "ORD003": ["2025-03-01 10:00:00", "2025-03-02 11:30:00", "2025-03-03 09:15:00"],
        "ORD005": ["20.00", "15.50", "7.25"],
        "ORD007": ["gbp", "gbp", "eur"],
        "ORD009": ["a@shop.example", "a@shop.example", "b@shop.example"],
        "ORD010": [" Ann ", "Bob", ""],
        "ORD022": ["batch-1", "batch-1", "batch-2"],
    })


@pytest.fixture
def raw_details() -> pl.DataFrame:
    """One line per header, linked through the seller copy column."""
    return pl.DataFrame({
        "ORE001": ["101", "102", "101"],
        "ORE002": ["1", "1", "1"],
        "ORE003": ["SKU-1", "SKU-2", "SKU-3"],
        "ORE004": ["Widget", "Gadget", "Gizmo"],
        "ORE007": ["New", "Used", "New"],
        "ORE008": ["2", "1", "3"],
        "ORE009": ["10.00", "15.50", "2.50"],
        "ORE013": ["a@shop.example", "a@shop.example", "b@shop.example"],
        "ORE015": ["PL001", "PL001", "PL002"],
    })


def build_poisson_series(
    days: int = 400,
    items: tuple[str, ...] = ("ITEM-A", "ITEM-B"),
    seed: int = 7,
    base_rate: float = 1.2,
    weekend_effect: float = 0.4,
    start: date = date(2024, 1, 1),
) -> pl.DataFrame:
    """Processed-zone shaped series with a known weekend effect on sales."""
    rng = np.random.default_rng(seed)
    rows = []
    for k, item in enumerate(items):
        for i in range(days):
            day = start + timedelta(days=i)
            weekend = day.weekday() >= 5
            rate = base_rate * np.exp(weekend_effect * weekend + 0.2 * k)
            rows.append({
                "item_code": item,
                "order_date": day,
                "sales": int(rng.poisson(rate)),
                "unit_price": 10.0 + 5.0 * k,
                "product_line_id": "PL001",
            })
    frame = pl.DataFrame(rows)
    return frame.with_columns(
        [pl.col("order_date").dt.year().cast(pl.Int32).alias("year"),
         pl.col("order_date").dt.day().cast(pl.Int32).alias("day")]
        + [(pl.col("order_date").dt.month() == m).cast(pl.Int8).alias(name)
           for m, name in enumerate(MONTH_COLUMNS, start=1)]
        + [(pl.col("order_date").dt.weekday() == i).cast(pl.Int8).alias(name)
           for i, name in enumerate(WEEKDAYS, start=1)]
        + [pl.lit("zero_fill").alias("filling_method")]
    )


@pytest.fixture
def poisson_series() -> pl.DataFrame:
    return build_poisson_series()
