"""
CLI for the Korea trade-shock migration pipeline.
"""

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

app = typer.Typer(
    name="kormig",
    help="Trade shocks and internal migration in Korea: crosswalks, shift-share IV, 2SLS",
)
console = Console()


def setup_logging(level: str | None = None) -> None:
    """Configure logging with rich output."""
    if level is None:
        from config.settings import get_settings
        level = get_settings().log_level
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def _run(stage: str) -> None:
    """Run one stage, turning pipeline errors into a non-zero exit."""
    setup_logging()

    from kormig.data.data_pipeline import MigrationPipeline
    from kormig.errors import PipelineError

    pipeline = MigrationPipeline()
    console.print(f"[bold]Running stage {stage}...[/bold]")
    try:
        pipeline.run_stage(stage)
    except (PipelineError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(pipeline.quality_summary())


@app.command()
def crosswalk_trade():
    """Reclassify Comtrade trade with China from HS to KSIC10."""
    _run("crosswalk-trade")


@app.command()
def crosswalk_establishment():
    """Match establishment census regions to canonical district codes."""
    _run("crosswalk-establishment")


@app.command()
def crosswalk_industry():
    """Harmonize establishment industries to KSIC10."""
    _run("crosswalk-industry")


@app.command()
def migration():
    """Build bilateral district migration flows."""
    _run("migration")


@app.command()
def exposure():
    """Compute deflated trade shocks and CZ industry shares."""
    _run("exposure")


@app.command()
def controls():
    """Build commuting-zone controls and district population."""
    _run("controls")


@app.command()
def baseline():
    """Assemble the bilateral panel variants."""
    _run("baseline")


@app.command()
def analyze(
    spec: str = typer.Argument("all", help="Specification name, or 'all'"),
):
    """Estimate the shift-share IV regressions on both panel variants."""
    setup_logging()

    from kormig.data.data_pipeline import MigrationPipeline
    from kormig.errors import PipelineError
    from kormig.model.iv_regression import ALL_SPECS

    if spec == "all":
        specs = ALL_SPECS
    else:
        specs = [s for s in ALL_SPECS if s.name == spec]
        if not specs:
            console.print(f"[red]Unknown specification: {spec}[/red]")
            console.print(f"Available: {[s.name for s in ALL_SPECS]}")
            raise typer.Exit(1)

    pipeline = MigrationPipeline()
    console.print(f"[bold]Estimating {spec} specification(s)...[/bold]")
    try:
        models = pipeline.analyze(specs)
    except (PipelineError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    finally:
        pipeline.tracker.save(pipeline.lineage_path)

    for model in models.values():
        console.print(model.summary())
    console.print(f"\nTables saved to {pipeline.tables_dir}")


@app.command()
def run_all(
    start: Optional[str] = typer.Option(None, help="First stage to run"),
):
    """Run every stage in dependency order."""
    setup_logging()

    from kormig.data.data_pipeline import STAGES, MigrationPipeline
    from kormig.errors import PipelineError

    stages = STAGES
    if start is not None:
        if start not in STAGES:
            console.print(f"[red]Unknown stage: {start}[/red]")
            raise typer.Exit(1)
        stages = STAGES[STAGES.index(start):]

    pipeline = MigrationPipeline()
    try:
        pipeline.run_all(stages)
    except (PipelineError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    console.print(pipeline.quality_summary())
    console.print(pipeline.tracker.generate_report())


@app.command()
def quality_report(
    path: Optional[Path] = typer.Option(None, help="Staged table (default: baseline panel)"),
):
    """Generate a data quality report for a staged table."""
    setup_logging()

    import pandas as pd
    from config.settings import get_settings
    from kormig.data.data_pipeline import format_quality_report, generate_quality_report

    if path is None:
        settings = get_settings()
        path = settings.project_root / settings.proc_dir / "baseline_data.csv"
    if not path.exists():
        console.print(f"[red]{path} not found. Run 'baseline' first.[/red]")
        raise typer.Exit(1)

    df = pd.read_csv(path)
    console.print("[bold]Data Quality Report[/bold]")
    console.print(f"\nShape: {df.shape}")
    console.print(format_quality_report(generate_quality_report(df, path.name)))

    if {"iso_d", "iso_o"} <= set(df.columns):
        console.print(f"\nDestination districts: {df['iso_d'].nunique()}")
        console.print(f"Origin districts: {df['iso_o'].nunique()}")


@app.command()
def lineage_report(
    save: bool = typer.Option(False, help="Also write the report next to the lineage file"),
):
    """Print the accumulated stage lineage."""
    setup_logging()

    from config.settings import get_settings
    from kormig.data.data_lineage import DataLineageTracker

    settings = get_settings()
    lineage_path = settings.project_root / settings.output_dir / "lineage.json"
    if not lineage_path.exists():
        console.print("[red]No lineage recorded yet. Run a stage first.[/red]")
        raise typer.Exit(1)

    tracker = DataLineageTracker.load(lineage_path)
    console.print(tracker.generate_report())
    if save:
        tracker.save_report(lineage_path.with_suffix(".txt"))


if __name__ == "__main__":
    app()
