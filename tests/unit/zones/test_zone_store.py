"""Unit tests for the parquet zone store."""

from __future__ import annotations

import polars as pl
import pytest

from salesflow.contracts.errors import ZoneStoreError
from salesflow.contracts.schemas import Zone
from salesflow.zones.store import WriteMode, ZoneStore


def test_write_read_exists_list(tmp_path) -> None:
    """A written table should be readable and listed in its zone only."""
    store = ZoneStore(tmp_path)
    frame = pl.DataFrame({"a": [1, 2]})

    store.write(Zone.RAW, "eby_orders___raw___mamba", frame)

    assert store.exists(Zone.RAW, "eby_orders___raw___mamba")
    assert not store.exists(Zone.STAGED, "eby_orders___raw___mamba")
    assert store.read(Zone.RAW, "eby_orders___raw___mamba").equals(frame)
    assert store.list(Zone.RAW) == ["eby_orders___raw___mamba"]


def test_overwrite_replaces_table(tmp_path) -> None:
    """Overwrite is the default mode and replaces the whole table."""
    store = ZoneStore(tmp_path)
    store.write(Zone.APP, "t", pl.DataFrame({"a": [1, 2, 3]}))
    store.write(Zone.APP, "t", pl.DataFrame({"b": ["x"]}))

    assert store.read(Zone.APP, "t").columns == ["b"]


def test_fail_if_exists(tmp_path) -> None:
    """FAIL_IF_EXISTS should refuse to replace an existing table."""
    store = ZoneStore(tmp_path)
    store.write(Zone.APP, "t", pl.DataFrame({"a": [1]}))

    with pytest.raises(ZoneStoreError):
        store.write(Zone.APP, "t", pl.DataFrame({"a": [2]}), mode=WriteMode.FAIL_IF_EXISTS)
    assert store.read(Zone.APP, "t")["a"].to_list() == [1]


def test_no_temporary_files_left_behind(tmp_path) -> None:
    """Atomic writes should leave only the final parquet file."""
    store = ZoneStore(tmp_path)
    store.write(Zone.STAGED, "t", pl.DataFrame({"a": [1]}))

    assert sorted(p.name for p in (tmp_path / "staged").iterdir()) == ["t.parquet"]


def test_missing_table_and_bad_names(tmp_path) -> None:
    """Reading an absent table or a path-like name should raise."""
    store = ZoneStore(tmp_path)

    with pytest.raises(ZoneStoreError):
        store.read(Zone.RAW, "missing")
    with pytest.raises(ZoneStoreError):
        store.exists(Zone.RAW, "../escape")


def test_drop(tmp_path) -> None:
    """drop() should report whether a table was removed."""
    store = ZoneStore(tmp_path)
    store.write(Zone.RAW, "t", pl.DataFrame({"a": [1]}))

    assert store.drop(Zone.RAW, "t") is True
    assert store.drop(Zone.RAW, "t") is False
