"""
Processed-zone time series: daily unit sales per item, zero-filled.

Every item of a segment gets one row per calendar day between the first and
last order date of that segment. Days without orders carry sales = 0. Time
features (year, day, month_1..month_12, monday..sunday) and the item's
attributes are attached so the derivation engine can use the table directly.
"""

import logging
import time
from datetime import datetime

import polars as pl

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import ZoneStoreError
from salesflow.contracts.results import PhaseResult
from salesflow.contracts.schemas import (
    MONTH_COLUMNS,
    TIME_SERIES_ENTITY,
    WEEKDAYS,
    Phase,
    Zone,
    entity_name,
    table_name,
)
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)


def _time_features(date_column: str) -> list[pl.Expr]:
    date = pl.col(date_column)
    features = [
        date.dt.year().cast(pl.Int32).alias("year"),
        date.dt.day().cast(pl.Int32).alias("day"),
    ]
    features += [
        (date.dt.month() == m).cast(pl.Int8).alias(name)
        for m, name in enumerate(MONTH_COLUMNS, start=1)
    ]
    # polars weekday(): Monday = 1
    features += [
        (date.dt.weekday() == i).cast(pl.Int8).alias(name)
        for i, name in enumerate(WEEKDAYS, start=1)
    ]
    return features


def _fill_segment(
    daily: pl.DataFrame,
    attributes: pl.DataFrame,
    date_column: str,
    item_column: str,
    outcome_column: str,
) -> pl.DataFrame:
    first, last = daily[date_column].min(), daily[date_column].max()
    calendar = pl.DataFrame({date_column: pl.date_range(first, last, interval="1d", eager=True)})
    items = daily.select(item_column).unique().sort(item_column)

    grid = items.join(calendar, how="cross")
    filled = (
        grid
        .join(daily, on=[item_column, date_column], how="left")
        .with_columns(pl.col(outcome_column).fill_null(0))
        .with_columns(_time_features(date_column))
    )
    if attributes.width > 1:
        filled = filled.join(attributes, on=item_column, how="left")
    return filled.sort([item_column, date_column])


def build_sales_time_series(
    sales: pl.DataFrame,
    segment_column: str,
    date_column: str,
    item_column: str,
    attribute_columns=(),
    outcome_column: str = "sales",
    quantity_column: str = "quantity",
) -> dict[str, pl.DataFrame]:
    """
    Split transformed sales by segment and build one zero-filled daily series
    per segment. Rows without a segment, date or item are ignored.
    """
    required = [segment_column, date_column, item_column]
    missing = [c for c in required if c not in sales.columns]
    if missing:
        raise KeyError(f"Sales table lacks time-series columns: {missing}")

    quantity = pl.col(quantity_column) if quantity_column in sales.columns else pl.lit(1)
    rows = (
        sales
        .drop_nulls(required)
        .with_columns([
            pl.col(segment_column).cast(pl.Utf8),
            pl.col(date_column).cast(pl.Date),
            quantity.fill_null(0).cast(pl.Int64).alias("_units"),
        ])
    )
    attribute_columns = [c for c in attribute_columns if c in rows.columns and c not in required]

    series = {}
    for (segment,), segment_rows in rows.group_by([segment_column], maintain_order=True):
        daily = (
            segment_rows
            .group_by([item_column, date_column])
            .agg(pl.col("_units").sum().alias(outcome_column))
        )
        attributes = (
            segment_rows
            .group_by(item_column, maintain_order=True)
            .agg([pl.col(c).drop_nulls().first() for c in attribute_columns])
        )
        filled = _fill_segment(daily, attributes, date_column, item_column, outcome_column)
        series[str(segment)] = filled.with_columns([
            pl.lit(str(segment)).alias(segment_column),
            pl.lit("zero_fill").alias("filling_method"),
            pl.lit(datetime.now()).cast(pl.Datetime("us")).alias("filling_timestamp"),
            pl.lit(Phase.TRANSFORM.value).alias("etl_phase"),
        ])
        logger.info("[transform] segment %s: %d items x %d days",
                    segment, filled[item_column].n_unique(), filled[date_column].n_unique())
    return series


def build_time_series(store: ZoneStore, config: PipelineConfig) -> PhaseResult:
    """Write one processed time-series table per segment found in transformed sales."""
    start = time.monotonic()
    source = table_name(entity_name(config.platform, "sales"), Zone.TRANSFORMED, config.company)
    target = table_name(entity_name(config.platform, TIME_SERIES_ENTITY), Zone.PROCESSED, "*")

    if not store.exists(Zone.TRANSFORMED, source):
        logger.error("[transform] transformed table %s not found, run transform first", source)
        return PhaseResult.failed(Phase.TRANSFORM.value, target, f"transformed table {source} not found")

    sales = store.read(Zone.TRANSFORMED, source)
    try:
        series = build_sales_time_series(
            sales,
            segment_column=config.segment_column,
            date_column=config.date_column,
            item_column=config.item_column,
            attribute_columns=config.attribute_columns,
            outcome_column=config.outcome_column,
        )
    except (KeyError, pl.exceptions.PolarsError) as error:
        logger.error("[transform] %s", error)
        return PhaseResult.failed(Phase.TRANSFORM.value, target, str(error), rows_in=sales.height)

    if config.segments:
        series = {s: df for s, df in series.items() if s in config.segments}

    written = []
    rows_out = 0
    try:
        for segment, frame in series.items():
            store.write(Zone.PROCESSED, config.input_table(segment), frame)
            written.append(segment)
            rows_out += frame.height
    except ZoneStoreError as error:
        return PhaseResult.failed(Phase.TRANSFORM.value, target, str(error),
                                  rows_in=sales.height, details={"segments": written})

    logger.info("[transform] wrote %d time-series tables (%s rows)", len(written), f"{rows_out:,}")
    kwargs = dict(
        rows_in=sales.height,
        rows_out=rows_out,
        elapsed_seconds=time.monotonic() - start,
        details={"segments": written},
    )
    if not written:
        return PhaseResult.degraded(Phase.TRANSFORM.value, target, "no segments found", **kwargs)
    return PhaseResult.success(Phase.TRANSFORM.value, target, **kwargs)
