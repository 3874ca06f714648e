"""
Text decoding and encoding repair shared by import and staging.
"""

import polars as pl


def decode_bytes(value: bytes) -> str:
    """Decode a byte string as UTF-8, falling back to latin-1 (never fails)."""
    try:
        return value.decode("utf-8")
    except UnicodeDecodeError:
        return value.decode("latin-1")


def repair_text(value):
    """Return a clean UTF-8 string, fixing latin-1 mojibake where it round-trips."""
    if value is None:
        return None
    if isinstance(value, bytes):
        value = decode_bytes(value)
    if not isinstance(value, str):
        return value
    try:
        repaired = value.encode("latin-1").decode("utf-8")
    except (UnicodeEncodeError, UnicodeDecodeError):
        repaired = value
    # drop what cannot be represented, the way iconv(sub = "") does
    return repaired.encode("utf-8", errors="ignore").decode("utf-8").replace("�", "")


def repair_column(column: str) -> pl.Expr:
    return (
        pl.col(column)
        .map_elements(repair_text, return_dtype=pl.Utf8, skip_nulls=True)
        .alias(column)
    )
