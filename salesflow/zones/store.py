"""
Zone store: named storage zones holding uniquely-named parquet tables.

Layout: <root>/<zone>/<table>.parquet. Every write goes to a temporary file in
the zone directory and is moved into place with os.replace, so a table is
either the previous version or the complete new one, never a partial file.
"""

import logging
import os
import re
import tempfile
from enum import Enum
from pathlib import Path

import polars as pl

from salesflow.contracts.errors import ZoneStoreError
from salesflow.contracts.schemas import Zone

logger = logging.getLogger(__name__)

_TABLE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")
_SUFFIX = ".parquet"


class WriteMode(str, Enum):
    OVERWRITE = "overwrite"
    FAIL_IF_EXISTS = "fail_if_exists"


class ZoneStore:
    def __init__(self, root: str | Path):
        self.root = Path(root)
        for zone in Zone:
            (self.root / zone.value).mkdir(parents=True, exist_ok=True)

    def _path(self, zone: Zone, table: str) -> Path:
        if not _TABLE_NAME_RE.match(table):
            raise ZoneStoreError(f"Invalid table name: '{table}'")
        return self.root / Zone(zone).value / f"{table}{_SUFFIX}"

    def exists(self, zone: Zone, table: str) -> bool:
        return self._path(zone, table).is_file()

    def read(self, zone: Zone, table: str) -> pl.DataFrame:
        path = self._path(zone, table)
        if not path.is_file():
            raise ZoneStoreError(f"Table '{table}' not found in zone '{Zone(zone).value}'")
        return pl.read_parquet(path)

    def write(
        self,
        zone: Zone,
        table: str,
        data: pl.DataFrame,
        mode: WriteMode = WriteMode.OVERWRITE,
    ) -> None:
        """Write a table wholesale. All-or-nothing per table."""
        path = self._path(zone, table)
        if mode == WriteMode.FAIL_IF_EXISTS and path.exists():
            raise ZoneStoreError(f"Table '{table}' already exists in zone '{Zone(zone).value}'")

        fd, tmp_name = tempfile.mkstemp(prefix=f".{table}.", suffix=".tmp", dir=path.parent)
        os.close(fd)
        try:
            data.write_parquet(tmp_name)
            os.replace(tmp_name, path)
        except Exception as error:
            Path(tmp_name).unlink(missing_ok=True)
            raise ZoneStoreError(f"Failed writing '{table}' to zone '{Zone(zone).value}': {error}") from error
        logger.debug("[zones] wrote %s.%s (%d rows)", Zone(zone).value, table, data.height)

    def list(self, zone: Zone) -> list[str]:
        zone_dir = self.root / Zone(zone).value
        return sorted(p.name[: -len(_SUFFIX)] for p in zone_dir.glob(f"*{_SUFFIX}") if not p.name.startswith("."))

    def drop(self, zone: Zone, table: str) -> bool:
        path = self._path(zone, table)
        if path.exists():
            path.unlink()
            return True
        return False
