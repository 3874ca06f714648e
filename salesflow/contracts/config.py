"""
Runtime configuration for a pipeline run.

This module owns all environment-variable and config-file parsing. Phases
receive a validated PipelineConfig through the RunContext; nothing reads
os.environ after the config is built.
"""

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path

from salesflow.contracts.errors import ConfigError

ENV_PREFIX = "SALESFLOW_"

DEFAULT_DATA_ROOT = "data/zones"
DEFAULT_INPUT_TABLE_PATTERN = "{platform}_sales_time_series___processed___{segment}"


@dataclass(frozen=True)
class PipelineConfig:
    """Validated run configuration.

    Attributes:
        data_root: Directory holding one sub-directory per zone.
        platform: Platform code used as entity prefix (e.g. "eby").
        company: Source qualifier used in raw/staged/transformed table names.
        segments: Segment ids to derive; empty means every segment found.
        segment_column: Transformed-sales column that splits segments.
        input_table_pattern: Derivation input table name, formatted with
            platform and segment.
        outcome_column: Count outcome of the Poisson model.
        date_column: Date column used for data_version. Required: a segment
            without it is written as the empty-schema sentinel.
        match_rate_threshold: Join match rate below which a warning is raised.
        min_nonzero_outcomes: Sparsity floor on positive outcomes.
        max_zero_rate: Sparsity ceiling on the share of zero outcomes.
        max_workers: Upper bound of the per-segment worker pool.
    """

    data_root: Path = Path(DEFAULT_DATA_ROOT)
    platform: str = "eby"
    company: str = "mamba"
    segments: tuple[str, ...] = ()
    segment_column: str = "product_line_id"
    input_table_pattern: str = DEFAULT_INPUT_TABLE_PATTERN
    outcome_column: str = "sales"
    date_column: str = "order_date"
    item_column: str = "item_code"
    attribute_columns: tuple[str, ...] = ("unit_price", "condition")
    match_rate_threshold: float = 0.5
    min_nonzero_outcomes: int = 20
    max_zero_rate: float = 0.99
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    api_max_retries: int = 3
    api_retry_delay: float = 1.0
    api_page_size: int = 50
    api_max_pages: int = 20
    api_rate_limit_delay: float = 0.2
    api_timeout: float = 30.0
    staging_version: str = "2.0.0"
    transformation_version: str = "2.0.0"
    analysis_version: str = "v1.0_steady_state"

    def __post_init__(self) -> None:
        object.__setattr__(self, "data_root", Path(self.data_root).expanduser())
        object.__setattr__(self, "segments", tuple(str(s) for s in self.segments))
        object.__setattr__(self, "attribute_columns", tuple(self.attribute_columns))
        _validate(self)

    def input_table(self, segment: str) -> str:
        return self.input_table_pattern.format(platform=self.platform, segment=str(segment).lower())

    def with_overrides(self, **overrides) -> "PipelineConfig":
        return replace(self, **overrides)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Build config from SALESFLOW_* environment variables.

        Raises:
            ConfigError: If a value cannot be parsed.
        """
        values = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is not None:
                values[f.name] = _parse_value(f.name, raw)
        return cls(**values)

    @classmethod
    def from_file(cls, path: str | Path) -> "PipelineConfig":
        """Build config from a JSON file; unknown keys are rejected."""
        try:
            payload = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            raise ConfigError(f"Cannot read config file '{path}': {error}") from error
        if not isinstance(payload, dict):
            raise ConfigError(f"Config file '{path}' must contain a JSON object")
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ConfigError(f"Unknown config keys in '{path}': {', '.join(unknown)}")
        return cls(**payload)


_INT_FIELDS = {"min_nonzero_outcomes", "max_workers", "api_max_retries", "api_page_size", "api_max_pages"}
_FLOAT_FIELDS = {"match_rate_threshold", "max_zero_rate", "api_retry_delay", "api_rate_limit_delay", "api_timeout"}
_TUPLE_FIELDS = {"segments", "attribute_columns"}


def _parse_value(name: str, raw: str):
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            return float(raw)
    except ValueError as error:
        raise ConfigError(
            f"Invalid {ENV_PREFIX}{name.upper()} value: expected a number, got '{raw}'"
        ) from error
    if name in _TUPLE_FIELDS:
        return tuple(part.strip() for part in raw.split(",") if part.strip())
    return raw


def _validate(config: PipelineConfig) -> None:
    if not 0.0 <= config.match_rate_threshold <= 1.0:
        raise ConfigError(f"match_rate_threshold must be within [0, 1], got {config.match_rate_threshold}")
    if not 0.0 < config.max_zero_rate <= 1.0:
        raise ConfigError(f"max_zero_rate must be within (0, 1], got {config.max_zero_rate}")
    if config.min_nonzero_outcomes < 0:
        raise ConfigError("min_nonzero_outcomes must be >= 0")
    if config.max_workers < 1:
        raise ConfigError("max_workers must be >= 1")
    if config.api_max_retries < 0 or config.api_page_size < 1 or config.api_max_pages < 1:
        raise ConfigError("api_max_retries must be >= 0 and api page settings >= 1")
    if not config.date_column:
        raise ConfigError("date_column is required: data_version is taken from it")
    if "{segment}" not in config.input_table_pattern:
        raise ConfigError("input_table_pattern must contain '{segment}'")
