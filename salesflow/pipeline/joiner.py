"""
Transform phase: structural join of order headers and order line items.

Order numbers are only unique per owner, so headers and details are joined
on the composite key (order_id, seller_email) = (order_id, seller_email_copy).
Joining on the order number alone multiplies rows across owners.

Business fields (transaction_id, line_total, calendar parts) are derived here
and only here, after the join.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

import polars as pl

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import KeyDomainError, KeyIntegrityError, ZoneStoreError
from salesflow.contracts.phase import check_transformed_table
from salesflow.contracts.results import PhaseResult
from salesflow.contracts.schemas import (
    DETAIL_KEY,
    HEADER_KEY,
    SALES_DERIVED_COLUMNS,
    SALES_LEADING_COLUMNS,
    Phase,
    Zone,
    entity_name,
    table_name,
)
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)

SAMPLE_SIZE = 5


@dataclass
class OwnerOverlap:
    header_owners: int
    detail_owners: int
    shared_owners: int


@dataclass
class JoinReport:
    header_rows: int = 0
    detail_rows: int = 0
    matched_rows: int = 0
    match_rate: float = 0.0
    low_match_rate: bool = False
    duplicate_header_keys: int = 0
    null_header_keys: int = 0
    null_detail_keys: int = 0
    overlap: OwnerOverlap | None = None
    duplicate_transaction_ids: int = 0
    missing_key_rows: int = 0
    missing_derived_inputs: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pre-join integrity checks
# ---------------------------------------------------------------------------

def _null_key_count(df: pl.DataFrame, key) -> int:
    return df.select(pl.any_horizontal(pl.col(list(key)).is_null()).sum()).item()


def duplicate_header_keys(headers: pl.DataFrame, key=HEADER_KEY) -> pl.DataFrame:
    """Composite keys that occur more than once, with their counts."""
    return (
        headers
        .drop_nulls(list(key))
        .group_by(list(key))
        .agg(pl.len().alias("count"))
        .filter(pl.col("count") > 1)
        .sort(list(key))
    )


def key_domain_overlap(
    headers: pl.DataFrame,
    details: pl.DataFrame,
    header_key=HEADER_KEY,
    detail_key=DETAIL_KEY,
) -> OwnerOverlap:
    """
    Compare the owner identifiers seen on each side. An empty intersection
    means the join cannot match anything, which is a data error, not a warning.
    """
    header_owners = headers.get_column(header_key[1]).drop_nulls().unique().sort()
    detail_owners = details.get_column(detail_key[1]).drop_nulls().unique().sort()
    shared = header_owners.filter(header_owners.is_in(detail_owners.to_list()))

    logger.info("[transform] owners: %d in headers, %d in details, %d shared",
                header_owners.len(), detail_owners.len(), shared.len())
    if shared.len() == 0:
        raise KeyDomainError(
            "No owner identifiers shared between headers and details; "
            f"header sample {header_owners.head(SAMPLE_SIZE).to_list()}, "
            f"detail sample {detail_owners.head(SAMPLE_SIZE).to_list()}"
        )
    return OwnerOverlap(header_owners.len(), detail_owners.len(), shared.len())


# ---------------------------------------------------------------------------
# Join + derived fields
# ---------------------------------------------------------------------------

DERIVED_FIELD_INPUTS = ("line_item_number", "quantity", "unit_price")


def _derive_sales_fields(sales: pl.DataFrame, version: str, key=HEADER_KEY) -> pl.DataFrame:
    if "line_item_number" in sales.columns:
        line = pl.col("line_item_number").cast(pl.Utf8)
    else:
        # position of the line within its (order, owner) pair
        line = (pl.int_range(pl.len()).over(list(key)) + 1).cast(pl.Utf8)
    exprs = [
        pl.concat_str([pl.col("order_id").cast(pl.Utf8), pl.lit("_"), line]).alias("transaction_id"),
    ]
    if "quantity" in sales.columns and "unit_price" in sales.columns:
        exprs.append((pl.col("quantity") * pl.col("unit_price")).cast(pl.Float64).alias("line_total"))
    else:
        exprs.append(pl.lit(None, dtype=pl.Float64).alias("line_total"))

    if "order_date" in sales.columns:
        order_date = pl.col("order_date").cast(pl.Datetime("us"))
        exprs += [
            order_date.dt.year().cast(pl.Int32).alias("order_year"),
            order_date.dt.month().cast(pl.Int8).alias("order_month"),
            order_date.dt.day().cast(pl.Int8).alias("order_day"),
            order_date.dt.strftime("%A").alias("order_weekday"),
        ]
    exprs += [
        pl.lit(datetime.now()).cast(SALES_DERIVED_COLUMNS["transformation_timestamp"]).alias("transformation_timestamp"),
        pl.lit(version).alias("transformation_version"),
        pl.lit("DERIVED_SALES").alias("etl_pipeline"),
        pl.lit(Phase.TRANSFORM.value).alias("etl_phase"),
    ]
    sales = sales.with_columns(exprs)
    leading = [c for c in SALES_LEADING_COLUMNS if c in sales.columns]
    return sales.select(leading + [c for c in sales.columns if c not in leading])


def join_composite(
    headers: pl.DataFrame,
    details: pl.DataFrame,
    header_key=HEADER_KEY,
    detail_key=DETAIL_KEY,
    match_rate_threshold: float = 0.5,
    version: str = "2.0.0",
) -> tuple[pl.DataFrame, JoinReport]:
    """
    Inner-join headers to details on the composite key and derive sales fields.

    Raises:
        KeyIntegrityError: If a key column is missing on either side.
        KeyDomainError: If the owner domains do not intersect.
    """
    missing = [c for c in header_key if c not in headers.columns]
    missing += [c for c in detail_key if c not in details.columns]
    if missing:
        raise KeyIntegrityError(f"Composite key columns missing: {missing}")

    report = JoinReport(header_rows=headers.height, detail_rows=details.height)

    duplicates = duplicate_header_keys(headers, header_key)
    report.duplicate_header_keys = duplicates.height
    if duplicates.height:
        message = f"{duplicates.height} duplicate composite keys in headers"
        report.warnings.append(message)
        logger.warning("[transform] %s, sample:\n%s", message, duplicates.head(SAMPLE_SIZE))

    report.null_header_keys = _null_key_count(headers, header_key)
    report.null_detail_keys = _null_key_count(details, detail_key)
    for side, count in (("headers", report.null_header_keys), ("details", report.null_detail_keys)):
        if count:
            message = f"{count} {side} rows with a null key component"
            report.warnings.append(message)
            logger.warning("[transform] %s", message)

    report.overlap = key_domain_overlap(headers, details, header_key, detail_key)

    sales = headers.join(
        details,
        left_on=list(header_key),
        right_on=list(detail_key),
        how="inner",
        suffix="_detail",
    )
    report.matched_rows = sales.height
    report.match_rate = sales.height / details.height if details.height else 0.0
    if report.match_rate < match_rate_threshold:
        report.low_match_rate = True
        message = f"join matched only {report.match_rate:.1%} of detail rows"
        report.warnings.append(message)
        logger.warning("[transform] %s, check the composite key", message)
    else:
        logger.info("[transform] join matched %.1f%% of detail rows", report.match_rate * 100)

    report.missing_derived_inputs = [c for c in DERIVED_FIELD_INPUTS if c not in sales.columns]
    if report.missing_derived_inputs:
        message = f"derived fields fall back, input columns missing: {report.missing_derived_inputs}"
        report.warnings.append(message)
        logger.warning("[transform] %s", message)

    sales = _derive_sales_fields(sales, version, header_key)

    report.duplicate_transaction_ids = (
        sales.group_by("transaction_id").len().filter(pl.col("len") > 1).height
    )
    report.missing_key_rows = _null_key_count(sales, header_key)
    if report.duplicate_transaction_ids:
        message = f"{report.duplicate_transaction_ids} duplicate transaction ids"
        report.warnings.append(message)
        logger.warning("[transform] %s", message)
    return sales, report


# ---------------------------------------------------------------------------
# Phase entry point
# ---------------------------------------------------------------------------

def transform_sales(
    store: ZoneStore,
    platform: str,
    company: str,
    config: PipelineConfig,
) -> PhaseResult:
    start = time.monotonic()
    headers_table = table_name(entity_name(platform, "orders"), Zone.STAGED, company)
    details_table = table_name(entity_name(platform, "order_details"), Zone.STAGED, company)
    target = table_name(entity_name(platform, "sales"), Zone.TRANSFORMED, company)

    for source in (headers_table, details_table):
        if not store.exists(Zone.STAGED, source):
            logger.error("[transform] %s: staged table %s not found, run stage first", target, source)
            return PhaseResult.failed(Phase.TRANSFORM.value, target, f"staged table {source} not found")

    headers = store.read(Zone.STAGED, headers_table)
    details = store.read(Zone.STAGED, details_table)
    rows_in = headers.height + details.height
    logger.info("[transform] joining %s headers with %s detail lines",
                f"{headers.height:,}", f"{details.height:,}")

    try:
        sales, report = join_composite(
            headers, details,
            match_rate_threshold=config.match_rate_threshold,
            version=config.transformation_version,
        )
    except (KeyIntegrityError, pl.exceptions.PolarsError) as error:
        logger.error("[transform] %s: %s", target, error)
        return PhaseResult.failed(Phase.TRANSFORM.value, target, str(error), rows_in=rows_in,
                                  elapsed_seconds=time.monotonic() - start)

    if sales.is_empty():
        logger.error("[transform] %s: join produced no rows, nothing written", target)
        return PhaseResult.failed(Phase.TRANSFORM.value, target, "join produced no rows",
                                  rows_in=rows_in, details={"report": report})

    for violation in check_transformed_table(sales, HEADER_KEY):
        logger.warning("[transform] %s contract violation: %s", target, violation)

    try:
        store.write(Zone.TRANSFORMED, target, sales)
    except ZoneStoreError as error:
        return PhaseResult.failed(Phase.TRANSFORM.value, target, str(error), rows_in=rows_in)

    logger.info("[transform] %s: %s sales rows, revenue %.2f", target,
                f"{sales.height:,}", sales.get_column("line_total").sum() or 0.0)
    kwargs = dict(
        rows_in=rows_in,
        rows_out=sales.height,
        elapsed_seconds=time.monotonic() - start,
        details={"report": report},
    )
    reasons = []
    if report.low_match_rate:
        reasons.append(f"low match rate {report.match_rate:.1%}")
    if report.missing_derived_inputs:
        reasons.append(f"derived inputs missing: {report.missing_derived_inputs}")
    if reasons:
        return PhaseResult.degraded(Phase.TRANSFORM.value, target, "; ".join(reasons), **kwargs)
    return PhaseResult.success(Phase.TRANSFORM.value, target, **kwargs)
