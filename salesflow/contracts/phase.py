"""
Phase contract: which operation is legal in which phase.

Enforced as a design discipline. The checkers below never raise; each phase
runs the one for its output and logs the violations, and the test suite
asserts that there are none.
"""

from enum import Enum

import polars as pl

from salesflow.contracts.schemas import (
    BUSINESS_RULE_COLUMNS,
    IMPORT_METADATA_COLUMNS,
    PREDICTOR_SCHEMA,
    Phase,
)


class Operation(str, Enum):
    EXTRACT = "extract"
    PERSIST_RAW = "persist_raw"
    RENAME = "rename"
    CAST = "cast"
    TRIM = "trim"
    REPAIR_ENCODING = "repair_encoding"
    DEDUPLICATE = "deduplicate"
    HANDLE_NULLS = "handle_nulls"
    JOIN = "join"
    DERIVE_FIELD = "derive_field"
    MODEL = "model"


LEGAL_OPERATIONS = {
    Phase.IMPORT: frozenset({Operation.EXTRACT, Operation.PERSIST_RAW}),
    Phase.STAGE: frozenset({
        Operation.RENAME,
        Operation.CAST,
        Operation.TRIM,
        Operation.REPAIR_ENCODING,
        Operation.DEDUPLICATE,
        Operation.HANDLE_NULLS,
    }),
    Phase.TRANSFORM: frozenset({Operation.JOIN, Operation.DERIVE_FIELD}),
    Phase.DERIVE: frozenset({Operation.MODEL}),
}


def is_legal(phase: Phase, operation: Operation) -> bool:
    return operation in LEGAL_OPERATIONS[phase]


def check_import_table(table: pl.DataFrame, source_columns: list[str]) -> list[str]:
    """Raw tables keep every source column name verbatim plus import metadata."""
    violations = []
    missing = [c for c in source_columns if c not in table.columns]
    if missing:
        violations.append(f"source columns renamed or dropped: {missing}")
    extra = [c for c in table.columns if c not in source_columns and c not in IMPORT_METADATA_COLUMNS]
    if extra:
        violations.append(f"columns added beyond import metadata: {extra}")
    absent_meta = [c for c in IMPORT_METADATA_COLUMNS if c not in table.columns]
    if absent_meta:
        violations.append(f"import metadata missing: {absent_meta}")
    return violations


def check_staged_table(
    table: pl.DataFrame,
    raw_columns: list[str],
    foreign_columns: frozenset[str] = frozenset(),
) -> list[str]:
    """Staged tables carry no raw source names, no other entity's columns, no business rules."""
    violations = []
    metadata = set(IMPORT_METADATA_COLUMNS)
    leftover = [c for c in raw_columns if c in table.columns and c not in metadata]
    if leftover:
        violations.append(f"raw column names still present: {leftover}")
    joined = sorted(set(table.columns) & foreign_columns)
    if joined:
        violations.append(f"columns from another entity (cross-entity join): {joined}")
    computed = sorted(set(table.columns) & BUSINESS_RULE_COLUMNS)
    if computed:
        violations.append(f"business-rule columns belong to transform: {computed}")
    return violations


def check_transformed_table(table: pl.DataFrame, header_key: tuple[str, str]) -> list[str]:
    violations = []
    missing = [c for c in header_key if c not in table.columns]
    if missing:
        violations.append(f"composite key components missing: {missing}")
    elif table.height and table.select(pl.any_horizontal(pl.col(list(header_key)).is_null()).sum()).item():
        violations.append("rows with a null composite key component")
    return violations


def check_derived_table(table: pl.DataFrame) -> list[str]:
    """Derived tables hold computed statistics only, in the canonical schema."""
    if table.columns != list(PREDICTOR_SCHEMA.keys()):
        return [f"columns differ from predictor schema: {table.columns}"]
    return []
