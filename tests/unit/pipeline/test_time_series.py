"""Unit tests for the zero-filled processed time series."""

from __future__ import annotations

from datetime import date

import polars as pl
import pytest

from salesflow.contracts.results import PhaseStatus
from salesflow.contracts.schemas import MONTH_COLUMNS, WEEKDAYS, Zone
from salesflow.pipeline.joiner import join_composite
from salesflow.pipeline.stager import ORDER_DETAIL_STAGING, ORDER_HEADER_STAGING, stage_frame
from salesflow.pipeline.time_series import build_sales_time_series, build_time_series


@pytest.fixture
def sales(raw_headers, raw_details) -> pl.DataFrame:
    headers = stage_frame(raw_headers, ORDER_HEADER_STAGING, "2.0.0").table
    details = stage_frame(raw_details, ORDER_DETAIL_STAGING, "2.0.0").table
    return join_composite(headers, details)[0]


def test_each_segment_gets_a_full_item_day_grid(sales) -> None:
    """Days without orders are present with zero sales."""
    series = build_sales_time_series(sales, "product_line_id", "order_date", "item_code",
                                     attribute_columns=("unit_price",))

    assert sorted(series) == ["PL001", "PL002"]
    pl001 = series["PL001"]
    assert pl001.height == 4
    assert pl001.select("item_code", "order_date", "sales").rows() == [
        ("SKU-1", date(2025, 3, 1), 2),
        ("SKU-1", date(2025, 3, 2), 0),
        ("SKU-2", date(2025, 3, 1), 0),
        ("SKU-2", date(2025, 3, 2), 1),
    ]
    assert pl001["unit_price"].to_list() == [10.0, 10.0, 15.5, 15.5]
    assert series["PL002"]["sales"].to_list() == [3]


def test_time_features_and_metadata(sales) -> None:
    """Month and weekday indicators match the calendar date."""
    series = build_sales_time_series(sales, "product_line_id", "order_date", "item_code")
    row = series["PL002"].row(0, named=True)

    assert set(MONTH_COLUMNS + WEEKDAYS + ["year", "day"]) <= set(series["PL002"].columns)
    assert row["year"] == 2025 and row["day"] == 3
    assert row["month_3"] == 1 and row["month_4"] == 0
    assert row["monday"] == 1 and row["saturday"] == 0  # 2025-03-03
    assert row["filling_method"] == "zero_fill" and row["etl_phase"] == "transform"
    assert row["product_line_id"] == "PL002"


def test_missing_required_column_raises(sales) -> None:
    """Without the segment column no series can be built."""
    with pytest.raises(KeyError):
        build_sales_time_series(sales.drop("product_line_id"), "product_line_id", "order_date", "item_code")


def test_build_time_series_writes_processed_tables(store, config, sales) -> None:
    """One processed table per segment, named by the configured input pattern."""
    store.write(Zone.TRANSFORMED, "eby_sales___transformed___mamba", sales)

    result = build_time_series(store, config)

    assert result.status == PhaseStatus.SUCCESS
    assert sorted(store.list(Zone.PROCESSED)) == [
        "eby_sales_time_series___processed___pl001",
        "eby_sales_time_series___processed___pl002",
    ]


def test_build_time_series_honours_segment_filter(store, config, sales) -> None:
    """Configured segments limit which tables are written."""
    store.write(Zone.TRANSFORMED, "eby_sales___transformed___mamba", sales)

    result = build_time_series(store, config.with_overrides(segments=("PL002",)))

    assert result.status == PhaseStatus.SUCCESS and result.rows_out == 1
    assert store.list(Zone.PROCESSED) == ["eby_sales_time_series___processed___pl002"]
