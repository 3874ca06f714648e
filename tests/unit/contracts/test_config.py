"""Unit tests for pipeline configuration parsing."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import ConfigError


def test_defaults_are_valid() -> None:
    """Default config should validate and use the legacy platform names."""
    config = PipelineConfig()

    assert config.platform == "eby" and config.date_column == "order_date"
    assert config.match_rate_threshold == 0.5 and config.min_nonzero_outcomes == 20


def test_input_table_formats_lowercase_segment() -> None:
    """Input table pattern should be filled with platform and lowercased segment."""
    config = PipelineConfig()

    assert config.input_table("PL001") == "eby_sales_time_series___processed___pl001"


def test_from_env_parses_numbers_and_tuples(monkeypatch) -> None:
    """Environment overrides should be typed by field."""
    monkeypatch.setenv("SALESFLOW_SEGMENTS", "pl001, pl002")
    monkeypatch.setenv("SALESFLOW_MAX_WORKERS", "3")
    monkeypatch.setenv("SALESFLOW_MAX_ZERO_RATE", "0.95")
    monkeypatch.setenv("SALESFLOW_DATA_ROOT", "/tmp/zones")

    config = PipelineConfig.from_env()

    assert config.segments == ("pl001", "pl002")
    assert config.max_workers == 3 and config.max_zero_rate == 0.95
    assert config.data_root == Path("/tmp/zones")


def test_from_env_rejects_bad_number(monkeypatch) -> None:
    """A non-numeric value for a numeric field should raise ConfigError."""
    monkeypatch.setenv("SALESFLOW_MAX_WORKERS", "many")

    with pytest.raises(ConfigError):
        PipelineConfig.from_env()


def test_from_file_rejects_unknown_keys(tmp_path) -> None:
    """Config files should not silently ignore typos."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"platform": "eby", "segmnets": ["pl001"]}), encoding="utf-8")

    with pytest.raises(ConfigError, match="segmnets"):
        PipelineConfig.from_file(path)


def test_from_file_loads_values(tmp_path) -> None:
    """Known keys should be applied."""
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"company": "MAMBA", "segments": ["pl003"]}), encoding="utf-8")

    config = PipelineConfig.from_file(path)

    assert config.company == "MAMBA" and config.segments == ("pl003",)


@pytest.mark.parametrize(
    "overrides",
    [
        {"date_column": ""},
        {"input_table_pattern": "{platform}_fixed"},
        {"match_rate_threshold": 1.5},
        {"max_workers": 0},
    ],
)
def test_invalid_values_raise(overrides) -> None:
    """Validation should reject missing date column and out-of-range values."""
    with pytest.raises(ConfigError):
        PipelineConfig(**overrides)
