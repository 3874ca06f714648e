"""
Salesflow phase-gated sales pipeline: CLI entrypoint.

Usage:
    python -m salesflow.main generate        # Write the synthetic legacy order database
    python -m salesflow.main import-legacy   # Import BAYORD/BAYORE into the raw zone
    python -m salesflow.main stage           # Raw -> staged
    python -m salesflow.main transform       # Staged -> transformed sales + processed time series
    python -m salesflow.main build-series    # Transformed -> processed time series only
    python -m salesflow.main derive          # Processed -> per-segment Poisson tables
    python -m salesflow.main report          # Print the strongest predictors
    python -m salesflow.main run-all         # Full end-to-end run
"""

import sys
from pathlib import Path

import click
from rich import box
from rich.console import Console
from rich.table import Table

from salesflow.contracts.config import PipelineConfig
from salesflow.contracts.errors import ConfigError
from salesflow.contracts.logging_setup import setup_logging
from salesflow.contracts.results import PhaseStatus, RunSummary
from salesflow.contracts.schemas import Phase
from salesflow.pipeline.runner import RunContext, run_pipeline
from salesflow.pipeline.time_series import build_time_series

console = Console()

STATUS_STYLES = {
    PhaseStatus.SUCCESS: "green",
    PhaseStatus.DEGRADED: "yellow",
    PhaseStatus.FAILED: "red",
}


def print_summary(summary: RunSummary) -> None:
    table = Table(box=box.ROUNDED, show_header=True, header_style="bold magenta", expand=True)
    table.add_column("Phase", width=10)
    table.add_column("Target", style="bold")
    table.add_column("Status", width=10)
    table.add_column("Rows in", justify="right", width=10)
    table.add_column("Rows out", justify="right", width=10)
    table.add_column("Reason")

    for result in summary.results:
        color = STATUS_STYLES[result.status]
        table.add_row(
            result.phase,
            result.target,
            f"[{color}]{result.status.value.upper()}[/{color}]",
            f"{result.rows_in:,}",
            f"{result.rows_out:,}",
            result.reason or "",
        )
    console.print(table)
    console.print(
        f"[dim]run {summary.run_id}: {summary.rows_processed:,} rows in {summary.elapsed_seconds:.2f}s"
        f"{' (cancelled)' if summary.cancelled else ''}[/dim]"
    )


def _run(ctx: click.Context, phases, sources=None) -> RunSummary:
    context = RunContext.create(ctx.obj["config"])
    summary = run_pipeline(context, sources=sources, phases=phases)
    print_summary(summary)
    if summary.failed:
        ctx.exit(1)
    return summary


@click.group()
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False),
              help="JSON config file (defaults to SALESFLOW_* environment variables)")
@click.option("--log-level", default="INFO", show_default=True)
@click.pass_context
def cli(ctx, config_path, log_level):
    """Salesflow phase-gated sales pipeline."""
    setup_logging(log_level, console=console)
    try:
        config = PipelineConfig.from_file(config_path) if config_path else PipelineConfig.from_env()
    except ConfigError as error:
        console.print(f"[red]Configuration error:[/red] {error}")
        sys.exit(2)
    ctx.obj = {"config": config}


@cli.command()
@click.option("--path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.option("--orders", default=2_400, show_default=True)
@click.option("--seed", default=42, show_default=True)
def generate(path, orders, seed):
    """Write the synthetic legacy order database."""
    console.rule("[bold]Step 1: Legacy Data Generation[/bold]")
    from salesflow.data_generator.generate import LEGACY_DB_PATH, main
    main(path=path or LEGACY_DB_PATH, n_orders=orders, seed=seed)
    console.print("[green]Data generation complete.[/green]\n")


@cli.command(name="import-legacy")
@click.option("--path", type=click.Path(exists=True, dir_okay=False, path_type=Path), default=None)
@click.pass_context
def import_legacy(ctx, path):
    """Import the legacy order tables into the raw zone."""
    console.rule("[bold]Step 2: Import[/bold]")
    from salesflow.data_generator.generate import LEGACY_DB_PATH, legacy_sources
    _run(ctx, [Phase.IMPORT], sources=legacy_sources(path or LEGACY_DB_PATH))


@cli.command()
@click.pass_context
def stage(ctx):
    """Standardize raw tables into the staged zone."""
    console.rule("[bold]Step 3: Stage[/bold]")
    _run(ctx, [Phase.STAGE])


@cli.command()
@click.pass_context
def transform(ctx):
    """Join orders with line items and build the daily time series."""
    console.rule("[bold]Step 4: Transform[/bold]")
    _run(ctx, [Phase.TRANSFORM])


@cli.command(name="build-series")
@click.pass_context
def build_series(ctx):
    """Rebuild the processed time series from the transformed sales table."""
    console.rule("[bold]Step 4b: Time Series[/bold]")
    context = RunContext.create(ctx.obj["config"])
    summary = RunSummary(run_id=context.run_id)
    summary.add(build_time_series(context.store, context.config))
    print_summary(summary.finish())
    if summary.failed:
        ctx.exit(1)


@cli.command()
@click.pass_context
def derive(ctx):
    """Fit the per-segment Poisson models."""
    console.rule("[bold]Step 5: Derive[/bold]")
    _run(ctx, [Phase.DERIVE])


@cli.command()
@click.option("--top", default=10, show_default=True)
@click.pass_context
def report(ctx, top):
    """Print the strongest predictors of the merged analysis table."""
    from salesflow.analytics.__main__ import render_report
    config = ctx.obj["config"]
    render_report(RunContext.create(config).store, config, console, top=top)


@cli.command(name="run-all")
@click.option("--path", type=click.Path(dir_okay=False, path_type=Path), default=None)
@click.pass_context
def run_all(ctx, path):
    """Generate the legacy database and run every phase end-to-end."""
    console.rule("[bold cyan]Salesflow Sales Pipeline[/bold cyan]")
    from salesflow.data_generator.generate import LEGACY_DB_PATH, legacy_sources, main
    db_path = main(path=path or LEGACY_DB_PATH)
    _run(ctx, None, sources=legacy_sources(db_path))

    console.rule("[bold green]Pipeline Complete[/bold green]")
    config = ctx.obj["config"]
    console.print("\nOutputs:")
    console.print(f"  Zones:    {config.data_root}/<zone>/<table>.parquet")
    console.print(f"  Analysis: {config.data_root}/app/{config.platform}_poisson_analysis___app___all.parquet")
    console.print("  Report:   python -m salesflow.main report")


if __name__ == "__main__":
    cli()
