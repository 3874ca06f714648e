"""
Hierarchical time labels for time-feature predictors.

Maps each time-feature predictor (year, month_<n>, day, weekday names) to the
calendar period it stands for in the analysis year, with a display order for
charts. Kept in its own table so the predictor schema never changes.
"""

import calendar
import re
from datetime import date

import polars as pl

from salesflow.contracts.schemas import TIME_LABEL_SCHEMA, WEEKDAYS, empty_time_label_table

_MONTH_RE = re.compile(r"^month_([0-9]+)$")


def time_label(predictor: str, analysis_year: int) -> dict:
    """Label fields for one predictor name. Unknown names get hierarchy 'other'."""
    label = {
        "time_hierarchy": "other",
        "time_granularity": None,
        "analysis_year": None,
        "analysis_month": None,
        "analysis_quarter": None,
        "date_start": None,
        "date_end": None,
        "period_days": None,
        "display_order": 9999,
    }
    name = predictor.lower()
    month = _MONTH_RE.match(name)

    if name == "year":
        label.update(
            time_hierarchy="year",
            time_granularity="yearly",
            analysis_year=analysis_year,
            date_start=date(analysis_year, 1, 1),
            date_end=date(analysis_year, 12, 31),
            display_order=1000,
        )
    elif month and 1 <= int(month.group(1)) <= 12:
        m = int(month.group(1))
        last_day = calendar.monthrange(analysis_year, m)[1]
        label.update(
            time_hierarchy="month",
            time_granularity="monthly",
            analysis_year=analysis_year,
            analysis_month=m,
            analysis_quarter=(m - 1) // 3 + 1,
            date_start=date(analysis_year, m, 1),
            date_end=date(analysis_year, m, last_day),
            display_order=3000 + m,
        )
    elif name == "day":
        label.update(time_hierarchy="day", time_granularity="daily", display_order=5000)
    elif name in WEEKDAYS:
        label.update(
            time_hierarchy="weekday",
            time_granularity="weekly",
            display_order=4000 + WEEKDAYS.index(name) + 1,
        )

    if label["date_start"] is not None:
        label["period_days"] = (label["date_end"] - label["date_start"]).days + 1
    return label


def enrich_time_labels(predictors: pl.DataFrame, analysis_year: int) -> pl.DataFrame:
    """One label row per time-feature predictor, in TIME_LABEL_SCHEMA."""
    time_rows = predictors.filter(pl.col("predictor_type") == "time_feature")
    if time_rows.is_empty():
        return empty_time_label_table()

    rows = []
    for record in time_rows.select(["segment_id", "predictor_name", "incidence_rate_ratio"]).iter_rows(named=True):
        rows.append({
            "segment_id": record["segment_id"],
            "predictor_name": record["predictor_name"],
            **time_label(record["predictor_name"], analysis_year),
            "incidence_rate_ratio": record["incidence_rate_ratio"],
        })
    return (
        pl.DataFrame(rows, schema=TIME_LABEL_SCHEMA)
        .sort(["segment_id", "display_order"])
    )
