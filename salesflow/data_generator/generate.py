"""
Synthetic legacy order database.

Writes a SQLite database shaped like the legacy marketplace export: an order
header table (BAYORD, columns ORD001..ORD022) and an order line table (BAYORE,
columns ORE001..ORE015). Order numbers are only unique per seller account, so
several sellers reuse the same numbers, which is what the composite-key join
has to handle.

Embedded patterns:
  1. Weekend uplift (Saturday/Sunday orders ~1.6x weekdays)
  2. December peak (~1.8x)
  3. A handful of re-captured header rows (same key, later order date)
  4. A few line items with a blank seller copy (never match a header)

Usage:
    python -m salesflow.main generate
"""

import sqlite3
from datetime import date, datetime, timedelta
from functools import partial
from pathlib import Path

import numpy as np
import polars as pl

from salesflow.pipeline.importer import SqlSource

LEGACY_DB_PATH = Path("data/legacy/eby_orders.sqlite")
HEADER_TABLE = "BAYORD"
DETAIL_TABLE = "BAYORE"

START_DATE = date(2025, 1, 1)
DAYS = 365
TOTAL_ORDERS = 2_400

SELLERS = ["store.alpha@mamba.example", "store.beta@mamba.example", "outlet@mamba.example"]
COUNTRIES = ["United Kingdom", "Germany", "France", "United States"]
CURRENCIES = {"United Kingdom": "GBP", "Germany": "EUR", "France": "EUR", "United States": "USD"}

# product line -> items (item code, title, base price)
CATALOG = {
    "PL001": [
        ("ALT-1001", "Alternator 12V 90A", 89.0),
        ("ALT-1002", "Alternator 12V 120A", 119.0),
        ("ALT-1003", "Alternator 24V 80A", 149.0),
        ("ALT-1004", "Alternator Regulator", 29.0),
    ],
    "PL002": [
        ("STR-2001", "Starter Motor 1.4kW", 79.0),
        ("STR-2002", "Starter Motor 2.2kW", 109.0),
        ("STR-2003", "Starter Solenoid", 24.0),
    ],
    "PL003": [
        ("BRK-3001", "Brake Caliper Front", 59.0),
        ("BRK-3002", "Brake Caliper Rear", 55.0),
        ("BRK-3003", "Brake Pad Set", 19.0),
        ("BRK-3004", "Brake Disc Pair", 45.0),
    ],
}
CONDITIONS = {"New": 0.7, "Used": 0.3}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _day_weights() -> np.ndarray:
    days = [START_DATE + timedelta(days=i) for i in range(DAYS)]
    weights = np.array([
        (1.6 if d.weekday() >= 5 else 1.0) * (1.8 if d.month == 12 else 1.0)
        for d in days
    ])
    return weights / weights.sum()


def _timestamp(rng: np.random.Generator, day: date) -> datetime:
    return datetime(day.year, day.month, day.day) + timedelta(
        hours=int(rng.integers(7, 23)), minutes=int(rng.integers(0, 60)), seconds=int(rng.integers(0, 60))
    )


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

def generate_legacy_orders(n_orders: int = TOTAL_ORDERS, seed: int = 42) -> tuple[pl.DataFrame, pl.DataFrame]:
    """Return (headers, details) with legacy source column names, all text."""
    rng = np.random.default_rng(seed=seed)
    day_weights = _day_weights()
    lines = list(CATALOG.items())

    headers, details = [], []
    next_number = {seller: 100_001 for seller in SELLERS}
    for _ in range(n_orders):
        seller = str(rng.choice(SELLERS))
        order_number = str(next_number[seller])
        next_number[seller] += 1
        # sellers restart numbering per account, so numbers collide across sellers
        day = START_DATE + timedelta(days=int(rng.choice(DAYS, p=day_weights)))
        ordered_at = _timestamp(rng, day)
        country = str(rng.choice(COUNTRIES))

        n_lines = int(rng.integers(1, 4))
        total = 0.0
        for line_number in range(1, n_lines + 1):
            product_line, items = lines[int(rng.integers(0, len(lines)))]
            item_code, title, base_price = items[int(rng.integers(0, len(items)))]
            condition = str(rng.choice(list(CONDITIONS), p=list(CONDITIONS.values())))
            price = round(base_price * (0.6 if condition == "Used" else 1.0) * float(rng.uniform(0.95, 1.05)), 2)
            quantity = int(rng.choice([1, 1, 1, 2, 3]))
            total += price * quantity
            details.append({
                "ORE001": order_number,
                "ORE002": str(line_number),
                "ORE003": item_code,
                "ORE004": title,
                "ORE005": f"ERP-{item_code}",
                "ORE006": "",
                "ORE007": condition,
                "ORE008": str(quantity),
                "ORE009": f"{price:.2f}",
                "ORE010": str(COUNTRIES.index(country) + 1),
                "ORE011": f"buyer{int(rng.integers(1, 5000)):05d}@mail.example",
                "ORE012": "",
                "ORE013": seller,
                "ORE015": product_line,
            })

        shipping = round(float(rng.choice([0.0, 4.99, 9.99])), 2)
        headers.append({
            "ORD001": order_number,
            "ORD002": f"{order_number}-{seller.split('@')[0]}",
            "ORD003": ordered_at.strftime("%Y-%m-%d %H:%M:%S"),
            "ORD004": (ordered_at + timedelta(hours=1)).strftime("%Y-%m-%d %H:%M:%S"),
            "ORD005": f"{total + shipping:.2f}",
            "ORD006": str(int(rng.integers(1, 4))),
            "ORD007": CURRENCIES[country].lower(),
            "ORD008": seller.split("@")[0],
            "ORD009": seller,
            "ORD010": f"Buyer {int(rng.integers(1, 5000))}",
            "ORD011": f"{int(rng.integers(1, 200))} High Street ",
            "ORD012": "",
            "ORD013": "Springfield",
            "ORD014": "",
            "ORD015": f"{int(rng.integers(10000, 99999))}",
            "ORD016": country,
            "ORD017": "1",
            "ORD020": f"B{int(rng.integers(1, 5000)):05d}",
            "ORD021": f"{shipping:.2f}",
            "ORD022": f"batch-{ordered_at:%Y%m}",
        })

    headers_df = pl.DataFrame(headers)
    details_df = pl.DataFrame(details)

    # pattern 3: re-captured headers, later timestamp wins in staging
    recaptured = headers_df.sample(n=min(15, headers_df.height), seed=seed).with_columns(
        (pl.col("ORD003").str.to_datetime("%Y-%m-%d %H:%M:%S") + pl.duration(minutes=30))
        .dt.strftime("%Y-%m-%d %H:%M:%S").alias("ORD003")
    )
    headers_df = pl.concat([headers_df, recaptured])

    # pattern 4: line items with a blank seller copy
    blank = pl.Series(rng.random(details_df.height) < 0.01)
    details_df = details_df.with_columns(
        pl.when(blank).then(pl.lit("")).otherwise(pl.col("ORE013")).alias("ORE013")
    )
    return headers_df, details_df


# ---------------------------------------------------------------------------
# SQLite export
# ---------------------------------------------------------------------------

def write_legacy_db(path: Path, headers: pl.DataFrame, details: pl.DataFrame) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    connection = sqlite3.connect(path)
    try:
        for table, frame in ((HEADER_TABLE, headers), (DETAIL_TABLE, details)):
            columns = ", ".join(f"{c} TEXT" for c in frame.columns)
            placeholders = ", ".join("?" for _ in frame.columns)
            connection.execute(f"DROP TABLE IF EXISTS {table}")
            connection.execute(f"CREATE TABLE {table} ({columns})")
            connection.executemany(f"INSERT INTO {table} VALUES ({placeholders})", frame.rows())
        connection.commit()
    finally:
        connection.close()


def legacy_sources(path: Path = LEGACY_DB_PATH) -> dict:
    """Import sources for the two legacy tables, keyed by entity."""
    connect = partial(sqlite3.connect, str(path))
    return {
        "orders": SqlSource(connect=connect, query=f"SELECT * FROM {HEADER_TABLE}"),
        "order_details": SqlSource(connect=connect, query=f"SELECT * FROM {DETAIL_TABLE}"),
    }


def print_summary(headers: pl.DataFrame, details: pl.DataFrame) -> None:
    print("\n" + "=" * 60)
    print("LEGACY ORDER DATABASE SUMMARY")
    print("=" * 60)
    print(f"Header rows : {headers.height:,}")
    print(f"Detail rows : {details.height:,}")

    shared = (
        headers.group_by("ORD001").agg(pl.col("ORD009").n_unique().alias("sellers"))
        .filter(pl.col("sellers") > 1)
    )
    print(f"Order numbers used by more than one seller: {shared.height:,}")

    print("\n--- Lines per product line ---")
    per_line = details.group_by("ORE015").agg(pl.len().alias("lines")).sort("ORE015")
    for row in per_line.iter_rows(named=True):
        print(f"  {row['ORE015']}: {row['lines']:,} lines")
    print("=" * 60)


def main(path: Path = LEGACY_DB_PATH, n_orders: int = TOTAL_ORDERS, seed: int = 42) -> Path:
    print("Generating legacy order database...")
    headers, details = generate_legacy_orders(n_orders=n_orders, seed=seed)
    print_summary(headers, details)
    write_legacy_db(Path(path), headers, details)
    print(f"\nSaved {HEADER_TABLE}/{DETAIL_TABLE} -> {path}")
    return Path(path)


if __name__ == "__main__":
    main()
