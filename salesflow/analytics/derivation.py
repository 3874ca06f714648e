"""
Derive phase: per-segment Poisson analysis of the processed time series.

Each segment moves through
    loaded -> date_resolved -> predictors_identified -> fitted -> classified
    -> enriched -> written
and leaves to empty_schema_written at the first failed gate. The empty-schema
sentinel is a zero-row table with the full predictor schema, so every segment
always has an output table.

Segments are independent and run in a thread pool. The merged `all` table is
written only after every segment has finished, fallbacks included.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

import numpy as np
import polars as pl

from salesflow.analytics.classification import PredictorClassifier
from salesflow.analytics.poisson import aliased_columns, fit_poisson
from salesflow.analytics.time_labels import enrich_time_labels
from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import ModelingError, SparsityError, ZoneStoreError
from salesflow.contracts.phase import check_derived_table
from salesflow.contracts.results import PhaseResult
from salesflow.contracts.schemas import (
    ALL_SEGMENTS,
    EXCLUDED_PREDICTOR_COLUMNS,
    POISSON_ENTITY,
    PREDICTOR_SCHEMA,
    TIME_LABEL_ENTITY,
    Phase,
    Zone,
    empty_predictor_table,
    entity_name,
    table_name,
)
from salesflow.zones.store import ZoneStore

logger = logging.getLogger(__name__)

CLASSIFIER = PredictorClassifier()


class DerivationState(str, Enum):
    LOADED = "loaded"
    DATE_RESOLVED = "date_resolved"
    PREDICTORS_IDENTIFIED = "predictors_identified"
    FITTED = "fitted"
    CLASSIFIED = "classified"
    ENRICHED = "enriched"
    WRITTEN = "written"
    EMPTY_SCHEMA_WRITTEN = "empty_schema_written"


@dataclass
class SegmentDerivation:
    segment_id: str
    table: pl.DataFrame
    state: DerivationState
    fallback: bool
    reason: str | None = None
    sample_size: int = 0
    data_version: date | None = None
    last_state: DerivationState | None = None


@dataclass
class ResolvedPredictors:
    outcome: np.ndarray
    design: pl.DataFrame
    dropped: list[str] = field(default_factory=list)
    incomplete_rows: int = 0
    dummy_sources: dict[str, str] = field(default_factory=dict)

    @property
    def names(self) -> list[str]:
        return self.design.columns


@dataclass
class DerivationRun:
    segments: dict[str, SegmentDerivation] = field(default_factory=dict)
    results: list[PhaseResult] = field(default_factory=list)
    merged_rows: int = 0


class _Fallback(Exception):
    """Internal early exit to the empty-schema sentinel."""

    def __init__(self, reason: str, state: DerivationState):
        super().__init__(reason)
        self.reason = reason
        self.state = state


# ---------------------------------------------------------------------------
# Predictor resolution
# ---------------------------------------------------------------------------

def _is_constant(series: pl.Series) -> bool:
    return series.drop_nulls().n_unique() < 2


def _dummy_code(frame: pl.DataFrame, columns: list[str]) -> tuple[pl.DataFrame, dict[str, str]]:
    """`<column>_<level>` indicators; the alphabetically first level is the reference."""
    indicators = []
    sources = {}
    for column in columns:
        levels = sorted(frame.get_column(column).unique().to_list())
        indicators += [
            (pl.col(column) == level).cast(pl.Int8).alias(f"{column}_{level}")
            for level in levels[1:]
        ]
        sources.update({f"{column}_{level}": column for level in levels[1:]})
    return frame.with_columns(indicators).drop(columns), sources


def resolve_predictors(frame: pl.DataFrame, config: PipelineConfig) -> ResolvedPredictors:
    """
    Pick the model columns once per segment: drop identifiers, metadata and
    constant columns, dummy-code text columns, apply complete-case deletion and
    drop aliased columns.

    Raises:
        _Fallback: When no predictor or no complete case is left.
    """
    excluded = set(EXCLUDED_PREDICTOR_COLUMNS) | {
        config.segment_column, config.date_column, config.outcome_column, config.item_column,
    }
    numeric, text = [], []
    for column, dtype in frame.schema.items():
        if column in excluded:
            continue
        if dtype.is_numeric() or dtype == pl.Boolean:
            numeric.append(column)
        elif dtype in (pl.Utf8, pl.Categorical):
            text.append(column)

    model = (
        frame
        .select([config.outcome_column, *numeric, *text])
        .filter(pl.col(config.outcome_column).is_not_null())
        .with_columns(
            [pl.col(c).cast(pl.Float64) for c in numeric]
            + [pl.col(c).cast(pl.Utf8) for c in text]
        )
        .with_columns([
            pl.when(pl.col(c).is_finite()).then(pl.col(c)).otherwise(None).alias(c)
            for c in numeric
        ])
    )

    dropped = [c for c in (*numeric, *text) if _is_constant(model.get_column(c))]
    if dropped:
        logger.info("[derive] dropping %d constant/all-null predictors: %s", len(dropped), dropped)
    numeric = [c for c in numeric if c not in dropped]
    text = [c for c in text if c not in dropped]
    if not numeric and not text:
        raise _Fallback("no predictors left", DerivationState.DATE_RESOLVED)

    before = model.height
    model = model.drop(dropped).drop_nulls()
    if model.is_empty():
        raise _Fallback("no complete cases", DerivationState.DATE_RESOLVED)

    design, dummy_sources = _dummy_code(model.drop(config.outcome_column), text)
    design = design.cast(pl.Float64)
    constant = [c for c in design.columns if _is_constant(design.get_column(c))]
    design = design.drop(constant)
    dropped += constant
    if design.width:
        aliased = [design.columns[i] for i in aliased_columns(design.to_numpy())]
        if aliased:
            logger.info("[derive] dropping %d aliased predictors: %s", len(aliased), aliased)
        design = design.drop(aliased)
        dropped += aliased
    if design.width == 0:
        raise _Fallback("no predictors left", DerivationState.DATE_RESOLVED)

    return ResolvedPredictors(
        outcome=model.get_column(config.outcome_column).cast(pl.Float64).to_numpy(),
        design=design,
        dropped=dropped,
        incomplete_rows=before - model.height,
        dummy_sources={k: v for k, v in dummy_sources.items() if k in design.columns},
    )


def check_sparsity(outcome: np.ndarray, config: PipelineConfig) -> None:
    nonzero = int(np.count_nonzero(outcome > 0))
    zero_rate = 1.0 - nonzero / len(outcome)
    if nonzero < config.min_nonzero_outcomes or zero_rate > config.max_zero_rate:
        raise SparsityError(
            f"extreme sparsity ({zero_rate:.1%} zeros, {nonzero} non-zero observations)"
        )


# ---------------------------------------------------------------------------
# One segment
# ---------------------------------------------------------------------------

def _classified_predictors(fit, resolved: ResolvedPredictors) -> pl.DataFrame:
    """Coefficient statistics, IRRs and classification, one row per predictor."""
    rows = []
    for i, name in enumerate(fit.names):
        values = resolved.design.get_column(name)
        row = {
            "predictor_name": name,
            "coefficient": float(fit.coefficients[i]),
            "incidence_rate_ratio": float(np.exp(fit.coefficients[i])),
            "std_error": float(fit.std_errors[i]),
            "z_value": float(fit.z_values[i]),
            "p_value": float(fit.p_values[i]),
            "conf_low": float(fit.conf_low[i]),
            "conf_high": float(fit.conf_high[i]),
            "irr_conf_low": float(np.exp(fit.conf_low[i])),
            "irr_conf_high": float(np.exp(fit.conf_high[i])),
        }
        row.update(CLASSIFIER.classify(name, values.min(), values.max(), resolved.dummy_sources.get(name)))
        rows.append(row)
    return pl.DataFrame(rows, schema={c: PREDICTOR_SCHEMA[c] for c in rows[0]})


def _enrich(predictors: pl.DataFrame, fit, segment_id: str, config: PipelineConfig,
            computed_at: datetime, data_version: date) -> pl.DataFrame:
    """Attach model statistics and version metadata, in schema column order."""
    return predictors.with_columns([
        pl.lit(segment_id).alias("segment_id"),
        pl.lit(config.platform).alias("platform"),
        pl.lit(fit.deviance).alias("deviance"),
        pl.lit(fit.aic).alias("aic"),
        pl.lit(fit.n_obs).alias("sample_size"),
        pl.lit("converged" if fit.converged else "not_converged").alias("convergence"),
        pl.lit(config.analysis_version).alias("analysis_version"),
        pl.lit(computed_at).alias("computed_at"),
        pl.lit(data_version).alias("data_version"),
    ]).select([pl.col(c).cast(dtype) for c, dtype in PREDICTOR_SCHEMA.items()])


def derive_segment(
    frame: pl.DataFrame | None,
    segment_id: str,
    config: PipelineConfig,
    computed_at: datetime,
) -> SegmentDerivation:
    """Run every gate for one segment. No I/O; the caller writes the table."""
    state = DerivationState.LOADED
    data_version = None
    sample_size = 0
    try:
        if frame is None:
            raise _Fallback("missing input table", state)
        if frame.is_empty():
            raise _Fallback("empty input", state)
        if config.date_column not in frame.columns:
            raise _Fallback("missing date column", state)
        data_version = frame.get_column(config.date_column).cast(pl.Date, strict=False).max()
        if data_version is None:
            raise _Fallback("date column has no values", state)
        state = DerivationState.DATE_RESOLVED

        if config.outcome_column not in frame.columns:
            raise _Fallback("missing outcome column", state)
        resolved = resolve_predictors(frame, config)
        sample_size = len(resolved.outcome)
        state = DerivationState.PREDICTORS_IDENTIFIED
        logger.info("[derive] %s: %d predictors, %s complete cases (%d incomplete dropped)",
                    segment_id, resolved.design.width, f"{sample_size:,}", resolved.incomplete_rows)

        check_sparsity(resolved.outcome, config)
        fit = fit_poisson(resolved.outcome, resolved.design.to_numpy(), resolved.names)
        state = DerivationState.FITTED
        if not fit.converged:
            logger.warning("[derive] %s: IRLS did not converge in %d iterations", segment_id, fit.iterations)

        predictors = _classified_predictors(fit, resolved)
        state = DerivationState.CLASSIFIED
        table = _enrich(predictors, fit, segment_id, config, computed_at, data_version)
        state = DerivationState.ENRICHED
    except _Fallback as fallback:
        return _sentinel(segment_id, fallback.reason, fallback.state, sample_size, data_version)
    except ModelingError as error:
        return _sentinel(segment_id, str(error), state, sample_size, data_version)

    significant = table.filter(pl.col("p_value") < 0.05).height
    logger.info("[derive] %s: %d predictors fitted, %d significant (p<0.05), AIC %.2f, data version %s",
                segment_id, table.height, significant, fit.aic, data_version)
    return SegmentDerivation(
        segment_id=segment_id,
        table=table,
        state=state,
        fallback=False,
        sample_size=sample_size,
        data_version=data_version,
        last_state=state,
    )


def _sentinel(segment_id, reason, last_state, sample_size=0, data_version=None) -> SegmentDerivation:
    logger.warning("[derive] %s: %s, writing empty schema", segment_id, reason)
    return SegmentDerivation(
        segment_id=segment_id,
        table=empty_predictor_table(),
        state=DerivationState.EMPTY_SCHEMA_WRITTEN,
        fallback=True,
        reason=reason,
        sample_size=sample_size,
        data_version=data_version,
        last_state=last_state,
    )


# ---------------------------------------------------------------------------
# Phase entry point
# ---------------------------------------------------------------------------

def output_table(config: PipelineConfig, segment: str) -> str:
    return table_name(entity_name(config.platform, POISSON_ENTITY), Zone.APP, segment)


def discover_segments(store: ZoneStore, config: PipelineConfig) -> list[str]:
    """Segments whose input table exists in the processed zone."""
    prefix, _, suffix = config.input_table_pattern.partition("{segment}")
    prefix = prefix.format(platform=config.platform)
    suffix = suffix.format(platform=config.platform)
    segments = []
    for name in store.list(Zone.PROCESSED):
        if name.startswith(prefix) and name.endswith(suffix) and len(name) > len(prefix) + len(suffix):
            segments.append(name[len(prefix): len(name) - len(suffix)])
    return segments


def _derive_and_write(store: ZoneStore, config: PipelineConfig, segment: str,
                      computed_at: datetime) -> SegmentDerivation:
    target = output_table(config, segment)
    try:
        source = config.input_table(segment)
        frame = store.read(Zone.PROCESSED, source) if store.exists(Zone.PROCESSED, source) else None
        result = derive_segment(frame, segment, config, computed_at)
    except Exception as error:
        logger.exception("[derive] %s: unexpected error", segment)
        result = _sentinel(segment, f"unexpected error: {error}", DerivationState.LOADED)

    for violation in check_derived_table(result.table):
        logger.warning("[derive] %s contract violation: %s", target, violation)
    store.write(Zone.APP, target, result.table)
    if not result.fallback:
        result.state = DerivationState.WRITTEN
    return result


def run_derivation(
    store: ZoneStore,
    config: PipelineConfig,
    segments=None,
    computed_at: datetime | None = None,
) -> DerivationRun:
    """
    Derive every segment in parallel, then merge the segment tables into the
    `all` table and write the time-label table.
    """
    start = time.monotonic()
    segments = list(segments or config.segments or discover_segments(store, config))
    computed_at = computed_at or datetime.now()
    run = DerivationRun()
    if not segments:
        logger.warning("[derive] no segments to derive")

    workers = max(1, min(config.max_workers, len(segments) or 1))
    logger.info("[derive] %d segments, %d workers", len(segments), workers)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = {
            pool.submit(_derive_and_write, store, config, segment, computed_at): segment
            for segment in segments
        }
        for future in as_completed(futures):
            segment = futures[future]
            target = output_table(config, segment)
            try:
                derivation = future.result()
            except ZoneStoreError as error:
                logger.error("[derive] %s: output not written: %s", segment, error)
                run.results.append(PhaseResult.failed(Phase.DERIVE.value, target, str(error)))
                continue
            run.segments[segment] = derivation
            kwargs = dict(rows_in=derivation.sample_size, rows_out=derivation.table.height,
                          details={"state": derivation.state.value})
            if derivation.fallback:
                run.results.append(PhaseResult.degraded(Phase.DERIVE.value, target, derivation.reason, **kwargs))
            else:
                run.results.append(PhaseResult.success(Phase.DERIVE.value, target, **kwargs))

    # merge only after every segment write has completed
    tables = [run.segments[s].table for s in sorted(run.segments) if not run.segments[s].table.is_empty()]
    merged = pl.concat(tables, how="vertical") if tables else empty_predictor_table()
    merged_target = output_table(config, ALL_SEGMENTS)
    try:
        store.write(Zone.APP, merged_target, merged)
        run.merged_rows = merged.height
        versions = [d.data_version for d in run.segments.values() if d.data_version is not None]
        labels_target = table_name(entity_name(config.platform, TIME_LABEL_ENTITY), Zone.APP)
        analysis_year = max(versions).year if versions else computed_at.year
        store.write(Zone.APP, labels_target, enrich_time_labels(merged, analysis_year))
    except ZoneStoreError as error:
        logger.error("[derive] merged output not written: %s", error)
        run.results.append(PhaseResult.failed(Phase.DERIVE.value, merged_target, str(error)))
        return run

    logger.info("[derive] merged %d segments into %s (%s predictors)",
                len(tables), merged_target, f"{merged.height:,}")
    kwargs = dict(rows_out=merged.height, elapsed_seconds=time.monotonic() - start,
                  details={"segments": len(tables)})
    if merged.is_empty():
        run.results.append(PhaseResult.degraded(Phase.DERIVE.value, merged_target,
                                                "no segment produced predictors", **kwargs))
    else:
        run.results.append(PhaseResult.success(Phase.DERIVE.value, merged_target, **kwargs))
    return run
