"""Unit tests for the import phase."""

from __future__ import annotations

import logging
import sqlite3
from functools import partial

import polars as pl
import requests

from salesflow.contracts.phase import check_import_table
from salesflow.contracts.results import PhaseStatus
from salesflow.contracts.schemas import IMPORT_METADATA_COLUMNS, Zone
from salesflow.pipeline.importer import ApiSource, FileSource, SqlSource, fetch_api, import_entity
from salesflow.pipeline.runner import RunContext, run_pipeline

RAW_ORDERS = "eby_orders___raw___mamba"


class FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = "" if payload is None else str(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    """Replays queued responses (or exceptions) and records every call."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, headers=None, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "headers": headers})
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _api_source() -> ApiSource:
    return ApiSource(base_url="https://api.example/v1/", endpoint="/orders", token_env="EBY_TOKEN")


def test_fetch_api_pages_until_partial_page(monkeypatch, config) -> None:
    """Paging should stop on a short page and serialize nested fields."""
    monkeypatch.setenv("EBY_TOKEN", "secret")
    session = FakeSession([
        FakeResponse(200, {"data": [{"id": 1, "tags": ["a"]}, {"id": 2, "tags": []}]}),
        FakeResponse(200, {"data": [{"id": 3, "tags": ["b", "c"]}]}),
    ])

    batch = fetch_api(_api_source(), config, session=session)

    assert batch["id"].to_list() == [1, 2, 3]
    assert batch["tags_json"].to_list() == ['["a"]', None, '["b", "c"]']
    assert [c["params"]["page"] for c in session.calls] == [1, 2]
    assert session.calls[0]["url"] == "https://api.example/v1/orders"
    assert session.calls[0]["headers"]["Authorization"] == "Bearer secret"


def test_transient_errors_are_retried(monkeypatch, caplog, store, config) -> None:
    """A 503 and a timeout followed by success should still import."""
    monkeypatch.setenv("EBY_TOKEN", "secret")
    caplog.set_level(logging.WARNING, logger="salesflow.pipeline.importer")
    session = FakeSession([
        FakeResponse(503),
        requests.Timeout("slow"),
        FakeResponse(200, [{"id": 7}]),
    ])

    result = import_entity(store, _api_source(), "eby", "orders", "mamba", config, session=session)

    assert result.status == PhaseStatus.SUCCESS and len(session.calls) == 3
    assert store.read(Zone.RAW, RAW_ORDERS)["id"].to_list() == [7]
    assert caplog.text.count("TransientTransportError") == 2


def test_auth_failure_leaves_raw_table_untouched(monkeypatch, store, config) -> None:
    """A 401 is fatal, not retried, and nothing is written."""
    monkeypatch.setenv("EBY_TOKEN", "expired")
    previous = pl.DataFrame({"id": [1]})
    store.write(Zone.RAW, RAW_ORDERS, previous)
    session = FakeSession([FakeResponse(401)])

    result = import_entity(store, _api_source(), "eby", "orders", "mamba", config, session=session)

    assert result.status == PhaseStatus.FAILED and len(session.calls) == 1
    assert store.read(Zone.RAW, RAW_ORDERS).equals(previous)


def test_retries_are_bounded(monkeypatch, store, config) -> None:
    """Persistent 5xx responses should fail after api_max_retries retries."""
    monkeypatch.setenv("EBY_TOKEN", "secret")
    session = FakeSession([FakeResponse(500)] * (config.api_max_retries + 1))

    result = import_entity(store, _api_source(), "eby", "orders", "mamba", config, session=session)

    assert result.status == PhaseStatus.FAILED
    assert len(session.calls) == config.api_max_retries + 1
    assert not store.exists(Zone.RAW, RAW_ORDERS)


def test_missing_token_fails_without_request(monkeypatch, store, config) -> None:
    """No token means no request at all."""
    monkeypatch.delenv("EBY_TOKEN", raising=False)
    session = FakeSession([])

    result = import_entity(store, _api_source(), "eby", "orders", "mamba", config, session=session)

    assert result.status == PhaseStatus.FAILED and session.calls == []


def test_sql_source_keeps_source_names(tmp_path, store, config) -> None:
    """SQL imports keep column names verbatim and add import metadata."""
    db_path = tmp_path / "legacy.sqlite"
    connection = sqlite3.connect(db_path)
    connection.execute("CREATE TABLE BAYORD (ORD001 TEXT, ORD009 TEXT)")
    connection.executemany("INSERT INTO BAYORD VALUES (?, ?)", [("101", "a@x"), ("101", "b@x")])
    connection.commit()
    connection.close()
    source = SqlSource(connect=partial(sqlite3.connect, str(db_path)), query="SELECT * FROM BAYORD")

    result = import_entity(store, source, "eby", "orders", "mamba", config)
    raw = store.read(Zone.RAW, RAW_ORDERS)

    assert result.status == PhaseStatus.SUCCESS and result.rows_out == 2
    assert raw.columns == ["ORD001", "ORD009", *IMPORT_METADATA_COLUMNS]
    assert raw["import_source"].unique().to_list() == ["SQL"]
    assert check_import_table(raw, ["ORD001", "ORD009"]) == []


def test_empty_batch_is_degraded_and_not_written(tmp_path, store, config) -> None:
    """An empty upstream result should not replace the raw table."""
    db_path = tmp_path / "empty.sqlite"
    connection = sqlite3.connect(db_path)
    connection.execute("CREATE TABLE BAYORE (ORE001 TEXT)")
    connection.commit()
    connection.close()
    source = SqlSource(connect=partial(sqlite3.connect, str(db_path)), query="SELECT * FROM BAYORE")

    result = import_entity(store, source, "eby", "order_details", "mamba", config)

    assert result.status == PhaseStatus.DEGRADED
    assert not store.exists(Zone.RAW, "eby_order_details___raw___mamba")


def test_file_source_concatenates_matches(tmp_path, store, config) -> None:
    """All files matching the glob are read as text and stacked."""
    (tmp_path / "orders_1.csv").write_text("ORD001,ORD009\n101,a@x\n", encoding="utf-8")
    (tmp_path / "orders_2.csv").write_text("ORD001,ORD009,ORD022\n102,b@x,batch\n", encoding="utf-8")

    result = import_entity(store, FileSource(str(tmp_path / "orders_*.csv")), "eby", "orders", "mamba", config)
    raw = store.read(Zone.RAW, RAW_ORDERS)

    assert result.status == PhaseStatus.SUCCESS
    assert raw["ORD001"].to_list() == ["101", "102"]
    assert raw["ORD022"].to_list() == [None, "batch"]


def test_malformed_url_fails_the_run_without_raising(monkeypatch, config) -> None:
    """A request that cannot even be built is fatal, not retried, and reported."""
    monkeypatch.setenv("EBY_TOKEN", "secret")
    context = RunContext.create(config)
    context.session = FakeSession([requests.exceptions.MissingSchema("No connection adapters")])
    source = ApiSource(base_url="not-a-url", endpoint="orders", token_env="EBY_TOKEN")

    summary = run_pipeline(context, sources={"orders": source}, phases=["import"])

    assert [r.status for r in summary.results] == [PhaseStatus.FAILED]
    assert "could not be sent" in summary.results[0].reason
    assert len(context.session.calls) == 1
    assert not context.store.exists(Zone.RAW, RAW_ORDERS)


def test_unreadable_file_fails_import(tmp_path, store, config) -> None:
    """A corrupt parquet file is a transport failure and nothing is written."""
    (tmp_path / "orders_1.parquet").write_bytes(b"not a parquet file")

    result = import_entity(store, FileSource(str(tmp_path / "orders_*.parquet")), "eby", "orders", "mamba", config)

    assert result.status == PhaseStatus.FAILED
    assert "orders_1.parquet" in result.reason
    assert not store.exists(Zone.RAW, RAW_ORDERS)
