"""
Import phase: pull raw batches from an upstream source into the raw zone.

Three source kinds are normalised to the same record batch (a polars frame
with the source's own column names): a paged JSON API, a fixed SQL statement
against a DB-API connection, and a glob of flat files. Nothing is renamed or
coerced here beyond what the source format forces.
"""

import glob
import json
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

import polars as pl
import requests
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import (
    AuthenticationError,
    TransientTransportError,
    TransportError,
    ZoneStoreError,
)
from salesflow.contracts.phase import check_import_table
from salesflow.contracts.results import PhaseResult
from salesflow.contracts.schemas import Phase, Zone, entity_name, table_name
from salesflow.pipeline.text_repair import decode_bytes
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApiSource:
    base_url: str
    endpoint: str
    token_env: str
    params: dict = field(default_factory=dict)
    records_key: str | None = None
    kind: str = "API"


@dataclass(frozen=True)
class SqlSource:
    connect: Callable
    query: str
    kind: str = "SQL"


@dataclass(frozen=True)
class FileSource:
    pattern: str
    kind: str = "FILE"


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------

def _api_call(session, url: str, token: str, params: dict, timeout: float):
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
    try:
        response = session.get(url, headers=headers, params=params, timeout=timeout)
    except (requests.Timeout, requests.ConnectionError) as error:
        raise TransientTransportError(f"GET {url} failed: {error}") from error
    except requests.RequestException as error:
        raise TransportError(f"GET {url} could not be sent: {error}") from error

    status = response.status_code
    if status in (401, 403):
        raise AuthenticationError(f"GET {url} rejected credentials (status {status})")
    if status == 429 or status >= 500:
        raise TransientTransportError(f"GET {url} returned status {status}")
    if status >= 400:
        raise TransportError(f"GET {url} returned status {status}: {response.text[:200]}")
    try:
        return response.json()
    except ValueError as error:
        raise TransportError(f"GET {url} returned invalid JSON") from error


def _api_call_with_retry(session, url, token, params, config: PipelineConfig):
    """Retry transient failures a bounded number of times; everything else is fatal."""
    retrying = Retrying(
        stop=stop_after_attempt(config.api_max_retries + 1),
        wait=wait_fixed(config.api_retry_delay),
        retry=retry_if_exception_type(TransientTransportError),
        before_sleep=before_sleep_log(logger, log_level=logging.WARNING),
        reraise=True,
    )
    return retrying(_api_call, session, url, token, params, config.api_timeout)


def _page_records(payload, records_key: str | None) -> list[dict]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        records = payload.get(records_key or "data", [])
        return records if isinstance(records, list) else []
    return []


def _serialize_nested(records: list[dict]) -> list[dict]:
    """Nested list/dict fields become JSON strings in a `<field>_json` column."""
    flat = []
    for record in records:
        row = {}
        for key, value in record.items():
            if isinstance(value, (list, dict)):
                row[f"{key}_json"] = json.dumps(value, ensure_ascii=False) if value else None
            else:
                row[key] = value
        flat.append(row)
    return flat


def fetch_api(source: ApiSource, config: PipelineConfig, session=None) -> pl.DataFrame:
    token = os.getenv(source.token_env, "")
    if not token:
        raise AuthenticationError(f"API token not set: {source.token_env}")

    session = session or requests.Session()
    url = source.base_url.rstrip("/") + "/" + source.endpoint.lstrip("/")
    all_records = []
    page = 1
    while page <= config.api_max_pages:
        if page > 1 and config.api_rate_limit_delay > 0:
            time.sleep(config.api_rate_limit_delay)
        params = {**source.params, "page": page, "per_page": config.api_page_size}
        records = _page_records(_api_call_with_retry(session, url, token, params, config), source.records_key)
        logger.info("[import] %s page %d: %d records", source.endpoint, page, len(records))
        if not records:
            break
        all_records.extend(records)
        if len(records) < config.api_page_size:
            break
        page += 1

    if not all_records:
        return pl.DataFrame()
    return pl.from_dicts(_serialize_nested(all_records), infer_schema_length=None)


# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

def fetch_sql(source: SqlSource) -> pl.DataFrame:
    try:
        connection = source.connect()
    except Exception as error:
        raise TransportError(f"Cannot connect to upstream database: {error}") from error
    try:
        cursor = connection.cursor()
        cursor.execute(source.query)
        rows = cursor.fetchall()
        columns = [d[0] for d in cursor.description]
    except Exception as error:
        raise TransportError(f"Upstream query failed: {error}") from error
    finally:
        connection.close()

    # byte strings are decoded because parquet text columns require it
    rows = [tuple(decode_bytes(v) if isinstance(v, bytes) else v for v in row) for row in rows]
    if not rows:
        return pl.DataFrame(schema={c: pl.Utf8 for c in columns})
    return pl.DataFrame(rows, schema=columns, orient="row", infer_schema_length=None)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def fetch_files(source: FileSource) -> pl.DataFrame:
    paths = sorted(glob.glob(source.pattern))
    if not paths:
        raise TransportError(f"No files match '{source.pattern}'")
    frames = []
    for path in paths:
        try:
            if path.endswith(".parquet"):
                frames.append(pl.read_parquet(path))
            else:
                frames.append(pl.read_csv(path, infer_schema_length=0))
        except (OSError, pl.exceptions.PolarsError) as error:
            raise TransportError(f"Cannot read '{path}': {error}") from error
    try:
        return pl.concat(frames, how="diagonal")
    except pl.exceptions.PolarsError as error:
        raise TransportError(f"Files matching '{source.pattern}' do not stack: {error}") from error


def fetch_batch(source, config: PipelineConfig, session=None) -> pl.DataFrame:
    if isinstance(source, ApiSource):
        return fetch_api(source, config, session=session)
    if isinstance(source, SqlSource):
        return fetch_sql(source)
    if isinstance(source, FileSource):
        return fetch_files(source)
    raise TypeError(f"Unsupported source descriptor: {type(source).__name__}")


# ---------------------------------------------------------------------------
# Phase entry point
# ---------------------------------------------------------------------------

def import_entity(
    store: ZoneStore,
    source,
    platform: str,
    entity: str,
    company: str,
    config: PipelineConfig,
    session=None,
) -> PhaseResult:
    """
    Fetch one entity and overwrite its raw table. A transport failure leaves
    the previous raw table untouched.
    """
    start = time.monotonic()
    target = table_name(entity_name(platform, entity), Zone.RAW, company)
    logger.info("[import] %s <- %s source", target, source.kind)

    try:
        batch = fetch_batch(source, config, session=session)
    except TransportError as error:
        logger.error("[import] %s aborted, raw table left untouched: %s", target, error)
        return PhaseResult.failed(Phase.IMPORT.value, target, str(error),
                                  elapsed_seconds=time.monotonic() - start)

    if batch.is_empty():
        logger.warning("[import] %s: upstream returned no rows, nothing written", target)
        return PhaseResult.degraded(Phase.IMPORT.value, target, "empty batch",
                                    elapsed_seconds=time.monotonic() - start)

    source_columns = batch.columns
    raw = batch.with_columns([
        pl.lit(source.kind).alias("import_source"),
        pl.lit(datetime.now()).cast(pl.Datetime("us")).alias("import_timestamp"),
        pl.lit(platform).alias("platform_code"),
        pl.lit(Phase.IMPORT.value).alias("etl_phase"),
    ])
    for violation in check_import_table(raw, source_columns):
        logger.warning("[import] %s contract violation: %s", target, violation)

    try:
        store.write(Zone.RAW, target, raw)
    except ZoneStoreError as error:
        logger.error("[import] %s: %s", target, error)
        return PhaseResult.failed(Phase.IMPORT.value, target, str(error),
                                  rows_in=batch.height, elapsed_seconds=time.monotonic() - start)

    logger.info("[import] %s: %s rows, %d columns", target, f"{raw.height:,}", len(source_columns))
    return PhaseResult.success(
        Phase.IMPORT.value, target,
        rows_in=batch.height, rows_out=raw.height,
        elapsed_seconds=time.monotonic() - start,
        details={"source_columns": source_columns},
    )
