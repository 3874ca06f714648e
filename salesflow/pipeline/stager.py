"""
Stage phase: standardize a raw table into business column names.

Processing order:
  1. rename through a declarative column map (missing sources are skipped)
  2. coerce numeric and date columns, unparsable values become null
  3. repair text encoding and trim text columns
  4. deduplicate on the natural key (most recent row wins, else first seen)
  5. stamp staged_timestamp / staging_version

Never joins entities and never computes business metrics.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

import polars as pl

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import SchemaDriftError, ZoneStoreError
from salesflow.contracts.phase import check_staged_table
from salesflow.contracts.results import PhaseResult
from salesflow.contracts.schemas import (
    API_ORDER_COLUMN_MAP,
    COMPETITOR_COLUMN_MAP,
    IMPORT_METADATA_COLUMNS,
    ORDER_DETAIL_COLUMN_MAP,
    ORDER_DETAIL_ONLY_COLUMNS,
    ORDER_HEADER_COLUMN_MAP,
    ORDER_HEADER_ONLY_COLUMNS,
    REVIEW_COLUMN_MAP,
    Phase,
    Zone,
    entity_name,
    table_name,
)
from salesflow.pipeline.text_repair import repair_column
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)

DATE_FORMATS = [
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d",
    "%d-%b-%Y",
    "%m/%d/%Y",
    "%B %d, %Y",
    "%d %B %Y",
]


@dataclass(frozen=True)
class StagingSpec:
    entity: str
    column_map: dict
    natural_key: tuple[str, ...]
    integer_columns: tuple[str, ...] = ()
    float_columns: tuple[str, ...] = ()
    datetime_columns: tuple[str, ...] = ()
    text_columns: tuple[str, ...] = ()
    encoding_columns: tuple[str, ...] = ()
    upper_columns: tuple[str, ...] = ()
    dedup_order_column: str | None = None
    drop_unmapped: bool = True
    foreign_columns: frozenset = frozenset()
    # regex whose first group holds the date inside decorated text
    date_text_pattern: str | None = None
    # optional entities are staged only when their raw table exists
    required: bool = True


@dataclass
class StagingFlags:
    missing_sources: list[str] = field(default_factory=list)
    unmapped_columns: list[str] = field(default_factory=list)
    missing_key: list[str] = field(default_factory=list)
    unparsable: dict[str, int] = field(default_factory=dict)
    null_key_rows: int = 0
    duplicates_removed: int = 0

    @property
    def degraded(self) -> bool:
        return bool(self.missing_sources or self.missing_key)

    def reasons(self) -> list[str]:
        reasons = []
        if self.missing_key:
            reasons.append(f"natural key columns missing: {self.missing_key}")
        if self.missing_sources:
            reasons.append(f"source columns missing: {self.missing_sources}")
        return reasons


@dataclass
class StagedFrame:
    table: pl.DataFrame
    flags: StagingFlags
    dropped: int = 0


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def _rename(raw: pl.DataFrame, spec: StagingSpec, flags: StagingFlags) -> pl.DataFrame:
    present = {src: dst for src, dst in spec.column_map.items() if src in raw.columns}
    flags.missing_sources = [src for src in spec.column_map if src not in raw.columns]
    if not present:
        raise SchemaDriftError(f"No recognized {spec.entity} columns in raw data")
    for src in flags.missing_sources:
        logger.warning("[stage] %s: source column %s absent, mapping to %s skipped",
                       spec.entity, src, spec.column_map[src])

    metadata = set(IMPORT_METADATA_COLUMNS)
    flags.unmapped_columns = [c for c in raw.columns if c not in spec.column_map and c not in metadata]
    if flags.unmapped_columns:
        action = "dropped" if spec.drop_unmapped else "passed through"
        logger.info("[stage] %s: %d unmapped columns %s: %s",
                    spec.entity, len(flags.unmapped_columns), action, flags.unmapped_columns)

    df = raw.drop(flags.unmapped_columns) if spec.drop_unmapped else raw
    # import metadata is re-stamped as a staged table
    df = df.drop([c for c in ("etl_phase",) if c in df.columns])
    return df.rename(present)


def _datetime_expr(column: str, dtype: pl.DataType, pattern: str | None = None) -> pl.Expr:
    if dtype == pl.Date or isinstance(dtype, pl.Datetime):
        return pl.col(column).cast(pl.Datetime("us"))
    text = pl.col(column).cast(pl.Utf8).str.strip_chars()
    if pattern:
        text = pl.coalesce([text.str.extract(pattern, 1).str.strip_chars(), text])
    return pl.coalesce([
        text.str.strptime(pl.Datetime("us"), fmt, strict=False) for fmt in DATE_FORMATS
    ])


def _coerce(df: pl.DataFrame, spec: StagingSpec, flags: StagingFlags) -> pl.DataFrame:
    exprs = []
    for column in spec.integer_columns:
        if column in df.columns:
            exprs.append(
                pl.col(column).cast(pl.Utf8).str.strip_chars()
                .cast(pl.Float64, strict=False).cast(pl.Int64, strict=False).alias(column)
            )
    for column in spec.float_columns:
        if column in df.columns:
            exprs.append(
                pl.col(column).cast(pl.Utf8).str.strip_chars()
                .cast(pl.Float64, strict=False).alias(column)
            )
    for column in spec.datetime_columns:
        if column in df.columns:
            exprs.append(_datetime_expr(column, df.schema[column], spec.date_text_pattern).alias(column))
    if not exprs:
        return df

    coerced = df.with_columns(exprs)
    for expr_column in [e.meta.output_name() for e in exprs]:
        filled = df.select(
            (pl.col(expr_column).cast(pl.Utf8).str.strip_chars().str.len_chars() > 0).sum()
        ).item()
        lost = filled - coerced[expr_column].count()
        if lost > 0:
            flags.unparsable[expr_column] = lost
            logger.warning("[stage] %s: %d unparsable values in %s set to null",
                           spec.entity, lost, expr_column)
    return coerced


def _clean_text(df: pl.DataFrame, spec: StagingSpec) -> pl.DataFrame:
    exprs = []
    for column in spec.encoding_columns:
        if column in df.columns:
            exprs.append(repair_column(column).str.strip_chars())
    encoding = set(spec.encoding_columns)
    for column in spec.text_columns:
        if column in df.columns and column not in encoding:
            exprs.append(pl.col(column).cast(pl.Utf8).str.strip_chars().alias(column))
    if exprs:
        df = df.with_columns(exprs)

    text = [c for c in dict.fromkeys((*spec.text_columns, *spec.encoding_columns)) if c in df.columns]
    if text:
        df = df.with_columns([
            pl.when(pl.col(c).str.len_chars() == 0).then(None).otherwise(pl.col(c)).alias(c)
            for c in text
        ])
    upper = [c for c in spec.upper_columns if c in df.columns]
    if upper:
        df = df.with_columns([pl.col(c).str.to_uppercase() for c in upper])
    return df


def _deduplicate(df: pl.DataFrame, spec: StagingSpec, flags: StagingFlags) -> pl.DataFrame:
    flags.missing_key = [c for c in spec.natural_key if c not in df.columns]
    if flags.missing_key:
        logger.warning("[stage] %s: natural key %s incomplete, missing %s; deduplication skipped",
                       spec.entity, list(spec.natural_key), flags.missing_key)
        return df

    key = list(spec.natural_key)
    has_null_key = pl.any_horizontal(pl.col(key).is_null())
    indexed = df.with_row_index("_row")
    null_key_rows = indexed.filter(has_null_key)
    keyed = indexed.filter(~has_null_key)
    flags.null_key_rows = null_key_rows.height
    if flags.null_key_rows:
        logger.warning("[stage] %s: %d rows with a null natural key component",
                       spec.entity, flags.null_key_rows)

    if spec.dedup_order_column and spec.dedup_order_column in keyed.columns:
        keyed = keyed.sort(spec.dedup_order_column, descending=True, nulls_last=True, maintain_order=True)
    deduped = keyed.unique(subset=key, keep="first", maintain_order=True)

    flags.duplicates_removed = keyed.height - deduped.height
    if flags.duplicates_removed:
        logger.warning("[stage] %s: removed %d duplicate rows on %s",
                       spec.entity, flags.duplicates_removed, key)
    # surviving rows keep their input order
    return pl.concat([deduped, null_key_rows], how="vertical").sort("_row").drop("_row")


def stage_frame(raw: pl.DataFrame, spec: StagingSpec, version: str) -> StagedFrame:
    """Apply the five staging steps to one raw table. Output rows <= input rows."""
    flags = StagingFlags()
    df = _rename(raw, spec, flags)
    df = _coerce(df, spec, flags)
    df = _clean_text(df, spec)
    df = _deduplicate(df, spec, flags)
    df = df.with_columns([
        pl.lit(datetime.now()).cast(pl.Datetime("us")).alias("staged_timestamp"),
        pl.lit(version).alias("staging_version"),
        pl.lit(Phase.STAGE.value).alias("etl_phase"),
    ])
    return StagedFrame(table=df, flags=flags, dropped=raw.height - df.height)


# ---------------------------------------------------------------------------
# Phase entry point
# ---------------------------------------------------------------------------

def stage_entity(
    store: ZoneStore,
    spec: StagingSpec,
    platform: str,
    company: str,
    config: PipelineConfig,
) -> PhaseResult:
    start = time.monotonic()
    entity = entity_name(platform, spec.entity)
    source = table_name(entity, Zone.RAW, company)
    target = table_name(entity, Zone.STAGED, company)

    if not store.exists(Zone.RAW, source):
        logger.error("[stage] %s: raw table %s not found, run import first", target, source)
        return PhaseResult.failed(Phase.STAGE.value, target, f"raw table {source} not found")

    raw = store.read(Zone.RAW, source)
    try:
        staged = stage_frame(raw, spec, config.staging_version)
    except (SchemaDriftError, pl.exceptions.PolarsError) as error:
        logger.error("[stage] %s: %s", target, error)
        return PhaseResult.failed(Phase.STAGE.value, target, str(error), rows_in=raw.height)

    mapped_raw_columns = [c for c in spec.column_map if c in raw.columns]
    for violation in check_staged_table(staged.table, mapped_raw_columns, spec.foreign_columns):
        logger.warning("[stage] %s contract violation: %s", target, violation)

    try:
        store.write(Zone.STAGED, target, staged.table)
    except ZoneStoreError as error:
        return PhaseResult.failed(Phase.STAGE.value, target, str(error), rows_in=raw.height)

    logger.info("[stage] %s: %s -> %s rows", target, f"{raw.height:,}", f"{staged.table.height:,}")
    kwargs = dict(
        rows_in=raw.height,
        rows_out=staged.table.height,
        elapsed_seconds=time.monotonic() - start,
        details={"flags": staged.flags},
    )
    if staged.flags.degraded:
        return PhaseResult.degraded(Phase.STAGE.value, target, "; ".join(staged.flags.reasons()), **kwargs)
    return PhaseResult.success(Phase.STAGE.value, target, **kwargs)


# ---------------------------------------------------------------------------
# Entity specs
# ---------------------------------------------------------------------------

ORDER_HEADER_STAGING = StagingSpec(
    entity="orders",
    column_map=ORDER_HEADER_COLUMN_MAP,
    natural_key=("order_id", "seller_email"),
    integer_columns=("payment_method", "address_source"),
    float_columns=("payment_total", "shipping_fee"),
    datetime_columns=("order_date", "payment_date"),
    text_columns=(
        "order_id", "recipient_name", "street_address_1", "street_address_2", "city_name",
        "state_or_province", "postal_code", "country_name", "payment_currency",
    ),
    encoding_columns=("seller_email", "seller_account", "batch_key"),
    upper_columns=("payment_currency",),
    dedup_order_column="order_date",
    foreign_columns=ORDER_DETAIL_ONLY_COLUMNS,
)

ORDER_DETAIL_STAGING = StagingSpec(
    entity="order_details",
    column_map=ORDER_DETAIL_COLUMN_MAP,
    natural_key=("order_id", "seller_email_copy", "line_item_number"),
    integer_columns=("quantity", "listing_country"),
    float_columns=("unit_price",),
    text_columns=(
        "order_id", "line_item_number", "item_code", "product_name", "erp_product_no",
        "application_data", "condition", "email", "static_alias", "product_line_id",
    ),
    encoding_columns=("seller_email_copy",),
    foreign_columns=ORDER_HEADER_ONLY_COLUMNS,
)

API_ORDER_STAGING = StagingSpec(
    entity="orders",
    column_map=API_ORDER_COLUMN_MAP,
    natural_key=("order_id", "seller_email", "line_item_number"),
    integer_columns=("quantity",),
    float_columns=("payment_total", "unit_price"),
    datetime_columns=("order_date",),
    text_columns=("order_id", "line_item_number", "item_code", "product_name", "payment_currency"),
    encoding_columns=("seller_email",),
    upper_columns=("payment_currency",),
    dedup_order_column="order_date",
)

REVIEW_STAGING = StagingSpec(
    entity="reviews",
    column_map=REVIEW_COLUMN_MAP,
    natural_key=("asin", "reviewer_name", "review_date", "review_title"),
    integer_columns=("rating",),
    datetime_columns=("review_date",),
    text_columns=("asin", "verified_purchase", "helpful_votes", "review_url", "variation_style", "source_path"),
    encoding_columns=("reviewer_name", "review_title", "review_body"),
    upper_columns=("asin",),
    date_text_pattern=r"Reviewed in .* on (.+)$",
    required=False,
)

COMPETITOR_STAGING = StagingSpec(
    entity="competitors",
    column_map=COMPETITOR_COLUMN_MAP,
    natural_key=("product_line_id", "asin"),
    text_columns=("product_line_id", "asin"),
    encoding_columns=("brand",),
    upper_columns=("asin",),
    required=False,
)
