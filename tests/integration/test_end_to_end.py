"""End-to-end runs over a generated legacy database."""

from __future__ import annotations

import json

import polars as pl
import pytest
from click.testing import CliRunner

from salesflow.contracts.results import PhaseStatus
from salesflow.contracts.schemas import PREDICTOR_SCHEMA, Zone
from salesflow.data_generator.generate import generate_legacy_orders, legacy_sources, write_legacy_db
from salesflow.main import cli
from salesflow.pipeline.runner import RunContext, run_pipeline

MERGED_TABLE = "eby_poisson_analysis___app___all"


@pytest.fixture
def legacy_db(tmp_path):
    headers, details = generate_legacy_orders(n_orders=900, seed=11)
    path = tmp_path / "legacy" / "eby_orders.sqlite"
    write_legacy_db(path, headers, details)
    return path, headers, details


def test_full_run_produces_merged_analysis(config, legacy_db) -> None:
    """Import through derive completes and every segment gets an output table."""
    path, headers, details = legacy_db
    context = RunContext.create(config, run_id="e2e")

    summary = run_pipeline(context, sources=legacy_sources(path))
    store = context.store

    assert not summary.failed and not summary.cancelled
    assert [r.phase for r in summary.results][:4] == ["import", "import", "stage", "stage"]

    # re-captured headers collapse back to one row per (order_id, seller_email)
    staged_headers = store.read(Zone.STAGED, "eby_orders___staged___mamba")
    assert staged_headers.height == 900
    assert staged_headers.select(["order_id", "seller_email"]).is_duplicated().sum() == 0

    sales = store.read(Zone.TRANSFORMED, "eby_sales___transformed___mamba")
    linked = details.filter(pl.col("ORE013") != "").height
    assert sales.height == linked
    assert sales.select(["order_id", "seller_email", "line_item_number"]).is_duplicated().sum() == 0

    assert store.list(Zone.PROCESSED) == [
        "eby_sales_time_series___processed___pl001",
        "eby_sales_time_series___processed___pl002",
        "eby_sales_time_series___processed___pl003",
    ]
    for segment in ("pl001", "pl002", "pl003"):
        assert store.exists(Zone.APP, f"eby_poisson_analysis___app___{segment}")

    merged = store.read(Zone.APP, MERGED_TABLE)
    assert dict(merged.schema) == PREDICTOR_SCHEMA
    assert not merged.is_empty()
    assert set(merged["segment_id"].unique().to_list()) <= {"pl001", "pl002", "pl003"}
    assert merged["data_version"].max() <= headers["ORD003"].str.to_datetime().max().date()


def test_rerun_overwrites_outputs(config, legacy_db) -> None:
    """A second run replaces every table rather than appending."""
    path, _, _ = legacy_db
    first = RunContext.create(config)
    run_pipeline(first, sources=legacy_sources(path))
    rows = first.store.read(Zone.APP, MERGED_TABLE).height

    second = RunContext.create(config)
    summary = run_pipeline(second, sources=legacy_sources(path))

    assert not summary.failed
    assert second.store.read(Zone.APP, MERGED_TABLE).height == rows
    assert second.store.read(Zone.RAW, "eby_orders___raw___mamba").height == 915


def test_cli_stage_without_import_exits_nonzero(tmp_path) -> None:
    """The CLI reports failed phases through its exit code."""
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"data_root": str(tmp_path / "zones")}), encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "stage"])

    assert result.exit_code == 1


def test_cli_rejects_bad_config(tmp_path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"max_workers": 0}), encoding="utf-8")

    result = CliRunner().invoke(cli, ["--config", str(config_path), "stage"])

    assert result.exit_code == 2


def test_import_only_run_reports_each_entity(config, legacy_db) -> None:
    path, headers, details = legacy_db

    summary = run_pipeline(RunContext.create(config), sources=legacy_sources(path), phases=["import"])

    assert [(r.status, r.rows_out) for r in summary.results] == [
        (PhaseStatus.SUCCESS, headers.height),
        (PhaseStatus.SUCCESS, details.height),
    ]
