"""
Data contracts for the Salesflow phase-gated pipeline.

These schemas are the SINGLE SOURCE OF TRUTH for zone names, table names,
column maps and the derivation output schema. Every phase imports from here;
nothing else builds a table name by hand.

Zone flow: raw -> staged -> transformed -> processed -> app
"""

from enum import Enum
from typing import NamedTuple

import polars as pl


# =============================================================================
# ZONES, PHASES, TABLE NAMES
# =============================================================================

class Zone(str, Enum):
    RAW = "raw"
    STAGED = "staged"
    TRANSFORMED = "transformed"
    PROCESSED = "processed"
    APP = "app"


class Phase(str, Enum):
    IMPORT = "import"
    STAGE = "stage"
    TRANSFORM = "transform"
    DERIVE = "derive"


# Zone each phase is allowed to write into
PHASE_OUTPUT_ZONES = {
    Phase.IMPORT: (Zone.RAW,),
    Phase.STAGE: (Zone.STAGED,),
    Phase.TRANSFORM: (Zone.TRANSFORMED, Zone.PROCESSED),
    Phase.DERIVE: (Zone.APP,),
}

TABLE_NAME_SEPARATOR = "___"


def table_name(entity: str, zone: Zone, qualifier: str | None = None) -> str:
    """Build `<entity>___<zone>[___<qualifier>]`, e.g. `eby_orders___raw___mamba`."""
    parts = [entity, zone.value]
    if qualifier:
        parts.append(str(qualifier).lower())
    return TABLE_NAME_SEPARATOR.join(parts)


def parse_table_name(name: str) -> tuple[str, Zone, str | None]:
    """Inverse of table_name(). Raises ValueError for names outside the contract."""
    parts = name.split(TABLE_NAME_SEPARATOR)
    if len(parts) not in (2, 3):
        raise ValueError(f"Table name '{name}' does not follow <entity>___<zone>[___<qualifier>]")
    zone = Zone(parts[1])
    return parts[0], zone, parts[2] if len(parts) == 3 else None


def entity_name(platform: str, entity: str) -> str:
    return f"{platform}_{entity}"


# =============================================================================
# LAYER 1: Import metadata (added to every raw table)
# =============================================================================

IMPORT_METADATA_COLUMNS = ["import_source", "import_timestamp", "platform_code", "etl_phase"]

STAGING_METADATA_COLUMNS = ["staged_timestamp", "staging_version", "etl_phase"]

# Business-rule columns that only the Transform phase may compute
BUSINESS_RULE_COLUMNS = frozenset({"line_total", "revenue", "margin", "gross_profit", "transaction_id"})


# =============================================================================
# LAYER 2: Staging column maps (raw source name -> business name)
# =============================================================================

# Legacy order headers table (BAYORD). Unique only on (ORD001, ORD009).
ORDER_HEADER_COLUMN_MAP = {
    "ORD001": "order_id",             # Order number, NOT unique on its own
    "ORD002": "other_order_number",
    "ORD003": "order_date",
    "ORD004": "payment_date",
    "ORD005": "payment_total",
    "ORD006": "payment_method",       # int code
    "ORD007": "payment_currency",
    "ORD008": "seller_account",
    "ORD009": "seller_email",         # Owner identifier, second half of the key
    "ORD010": "recipient_name",
    "ORD011": "street_address_1",
    "ORD012": "street_address_2",
    "ORD013": "city_name",
    "ORD014": "state_or_province",
    "ORD015": "postal_code",
    "ORD016": "country_name",
    "ORD017": "address_source",       # int code
    "ORD020": "buyer_id",
    "ORD021": "shipping_fee",
    "ORD022": "batch_key",            # Capture note, NOT part of the key
}

# Legacy order line items table (BAYORE). References headers via (ORE001, ORE013).
ORDER_DETAIL_COLUMN_MAP = {
    "ORE001": "order_id",
    "ORE002": "line_item_number",
    "ORE003": "item_code",
    "ORE004": "product_name",
    "ORE005": "erp_product_no",
    "ORE006": "application_data",
    "ORE007": "condition",
    "ORE008": "quantity",
    "ORE009": "unit_price",
    "ORE010": "listing_country",      # int code
    "ORE011": "email",
    "ORE012": "static_alias",
    "ORE013": "seller_email_copy",    # Denormalized copy of ORD009
    "ORE015": "product_line_id",
}

# REST API order payloads (one row per order line after flattening)
API_ORDER_COLUMN_MAP = {
    "id": "order_id",
    "created_at": "order_date",
    "total_price": "payment_total",
    "currency": "payment_currency",
    "shop_email": "seller_email",
    "line_item_id": "line_item_number",
    "sku": "item_code",
    "title": "product_name",
    "quantity": "quantity",
    "price": "unit_price",
}

# Scraped product reviews, one file per product line. `variation` holds the ASIN.
REVIEW_COLUMN_MAP = {
    "date": "review_date",            # "Reviewed in <country> on <date>"
    "author": "reviewer_name",
    "verified": "verified_purchase",
    "helpful": "helpful_votes",
    "title": "review_title",
    "body": "review_body",
    "rating": "rating",
    "url": "review_url",
    "variation": "asin",
    "style": "variation_style",
    "path": "source_path",
}

# Competitor listings maintained per product line
COMPETITOR_COLUMN_MAP = {
    "product_line_id": "product_line_id",
    "asin": "asin",
    "brand": "brand",
}

# Entities a staged header/detail table must not borrow columns from
ORDER_HEADER_ONLY_COLUMNS = frozenset({"payment_total", "payment_date", "seller_email", "recipient_name", "shipping_fee"})
ORDER_DETAIL_ONLY_COLUMNS = frozenset({"line_item_number", "quantity", "unit_price", "seller_email_copy", "product_name"})


# =============================================================================
# LAYER 3: Transformed sales (header JOIN line item)
# =============================================================================

class CompositeKey(NamedTuple):
    """Order number plus owner; the order number alone is not unique."""

    order_column: str
    owner_column: str


HEADER_KEY = CompositeKey("order_id", "seller_email")
DETAIL_KEY = CompositeKey("order_id", "seller_email_copy")

SALES_LEADING_COLUMNS = ["transaction_id", "order_id", "line_item_number"]

SALES_DERIVED_COLUMNS = {
    "transaction_id": pl.Utf8,
    "line_total": pl.Float64,
    "order_year": pl.Int32,
    "order_month": pl.Int8,
    "order_day": pl.Int8,
    "order_weekday": pl.Utf8,
    "transformation_timestamp": pl.Datetime("us"),
    "transformation_version": pl.Utf8,
    "etl_pipeline": pl.Utf8,
}


# =============================================================================
# LAYER 4: Processed time series (derivation input)
# =============================================================================

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
MONTH_COLUMNS = [f"month_{m}" for m in range(1, 13)]

TIME_SERIES_METADATA_COLUMNS = ["filling_method", "filling_timestamp", "etl_phase"]


# =============================================================================
# LAYER 5: Derivation output (app zone)
# =============================================================================

PREDICTOR_TYPES = ("time_feature", "product_attribute", "comment_attribute", "structural")
DATA_TYPES = ("binary", "numerical", "dummy")

PREDICTOR_SCHEMA = {
    "segment_id": pl.Utf8,
    "platform": pl.Utf8,
    "predictor_name": pl.Utf8,
    "predictor_type": pl.Utf8,         # time_feature, product_attribute, comment_attribute, structural
    "data_type": pl.Utf8,              # binary, numerical, dummy
    "source_variable": pl.Utf8,        # null unless dummy-coded
    "coefficient": pl.Float64,
    "incidence_rate_ratio": pl.Float64,
    "std_error": pl.Float64,
    "z_value": pl.Float64,
    "p_value": pl.Float64,
    "conf_low": pl.Float64,
    "conf_high": pl.Float64,
    "irr_conf_low": pl.Float64,
    "irr_conf_high": pl.Float64,
    "predictor_min": pl.Float64,
    "predictor_max": pl.Float64,
    "predictor_range": pl.Float64,
    "predictor_is_binary": pl.Boolean,
    "track_multiplier": pl.Float64,    # 100 / range, 100 when range == 0
    "deviance": pl.Float64,
    "aic": pl.Float64,
    "sample_size": pl.Int64,
    "convergence": pl.Utf8,            # converged, not_converged
    "analysis_version": pl.Utf8,
    "computed_at": pl.Datetime("us"),
    "data_version": pl.Date,           # max date in the input, not wall-clock
}

TIME_LABEL_SCHEMA = {
    "segment_id": pl.Utf8,
    "predictor_name": pl.Utf8,
    "time_hierarchy": pl.Utf8,         # year, month, day, weekday, other
    "time_granularity": pl.Utf8,
    "analysis_year": pl.Int32,
    "analysis_month": pl.Int32,
    "analysis_quarter": pl.Int32,
    "date_start": pl.Date,
    "date_end": pl.Date,
    "period_days": pl.Int32,
    "display_order": pl.Int32,
    "incidence_rate_ratio": pl.Float64,
}

POISSON_ENTITY = "poisson_analysis"
TIME_LABEL_ENTITY = "poisson_time_labels"
TIME_SERIES_ENTITY = "sales_time_series"
ALL_SEGMENTS = "all"

# Columns never used as predictors (identifiers and pipeline metadata)
EXCLUDED_PREDICTOR_COLUMNS = frozenset({
    "item_code", "product_line_id", "product_line_name", "sales_platform",
    "data_source", "filling_method", "filling_timestamp", "source_table",
    "processing_version", "enrichment_version", "etl_phase",
    "import_source", "import_timestamp", "platform_code",
    "staged_timestamp", "staging_version",
    "transformation_timestamp", "transformation_version", "etl_pipeline",
})


def empty_predictor_table() -> pl.DataFrame:
    """Zero-row frame carrying the full PREDICTOR_SCHEMA."""
    return pl.DataFrame(schema=PREDICTOR_SCHEMA)


def empty_time_label_table() -> pl.DataFrame:
    return pl.DataFrame(schema=TIME_LABEL_SCHEMA)
