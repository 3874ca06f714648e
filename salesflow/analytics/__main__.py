"""
Poisson analysis report.

Usage:
    python -m salesflow.analytics
"""

import polars as pl
from rich import box
from rich.console import Console
from rich.table import Table

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.schemas import ALL_SEGMENTS, POISSON_ENTITY, Zone, entity_name, table_name
from salesflow.zones.store import ZoneStore

TYPE_COLORS = {
    "time_feature": "cyan",
    "product_attribute": "green",
    "comment_attribute": "yellow",
    "structural": "dim",
}


def strongest_predictors(predictors: pl.DataFrame, top: int = 10, alpha: float = 0.05) -> pl.DataFrame:
    """Significant, non-structural predictors ranked by |log IRR| per segment."""
    return (
        predictors
        .filter((pl.col("p_value") < alpha) & (pl.col("predictor_type") != "structural"))
        .with_columns(pl.col("coefficient").abs().alias("_strength"))
        .sort(["segment_id", "_strength"], descending=[False, True])
        .group_by("segment_id", maintain_order=True)
        .head(top)
        .drop("_strength")
    )


def render_report(store: ZoneStore, config: PipelineConfig, console: Console, top: int = 10) -> None:
    source = table_name(entity_name(config.platform, POISSON_ENTITY), Zone.APP, ALL_SEGMENTS)
    console.rule(f"[bold blue]Poisson analysis: {source}")
    if not store.exists(Zone.APP, source):
        console.print(f"[red]{source} not found, run derive first[/red]")
        return
    predictors = store.read(Zone.APP, source)
    if predictors.is_empty():
        console.print("[yellow]No segment produced predictors (empty-schema sentinel).[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold magenta", expand=True)
    table.add_column("Segment", width=10)
    table.add_column("Predictor", style="bold")
    table.add_column("Type", width=18)
    table.add_column("IRR", justify="right", width=8)
    table.add_column("95% CI", justify="right", width=16)
    table.add_column("p", justify="right", width=10)

    for row in strongest_predictors(predictors, top=top).iter_rows(named=True):
        color = TYPE_COLORS.get(row["predictor_type"], "white")
        irr = row["incidence_rate_ratio"]
        table.add_row(
            row["segment_id"],
            row["predictor_name"],
            f"[{color}]{row['predictor_type']}[/{color}]",
            f"[{'green' if irr >= 1 else 'red'}]{irr:.3f}[/]",
            f"{row['irr_conf_low']:.3f} to {row['irr_conf_high']:.3f}",
            f"{row['p_value']:.2e}",
        )
    console.print(table)

    versions = predictors.group_by("segment_id").agg(pl.col("data_version").max()).sort("segment_id")
    for row in versions.iter_rows(named=True):
        console.print(f"[dim]{row['segment_id']}: data version {row['data_version']}[/dim]")


def main() -> None:
    config = PipelineConfig.from_env()
    render_report(ZoneStore(config.data_root), config, Console())


if __name__ == "__main__":
    main()
