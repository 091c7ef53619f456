"""
Command-line interface for the incident risk pipeline.

Provides commands for feature preparation, model training and activation,
scoring, backtesting and status.
"""

from pathlib import Path
from typing import List, Mapping, Optional
import logging

import typer
from rich import print
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import FEATURE_ORDER, PipelineSettings
from .errors import IncidentRiskError
from .io_reader import (
    predictions_to_dataframe,
    read_feature_rows,
    read_incidents,
    read_telemetry,
    write_feature_rows,
)
from .pipeline import IncidentRiskPipeline
from .records import Alert, BacktestMetrics, PredictionResult
from .store import IncidentSource
from .utils import get_memory_usage, setup_logging, utc_now


# Create CLI app
app = typer.Typer(
    name="incident-risk",
    help="Incident Risk Pipeline - Early warning for service incidents",
    add_completion=False
)

# Console for rich output
console = Console()

DEFAULT_MODEL_DIR = "artifacts/models"
INPUT_ERRORS = (IncidentRiskError, FileNotFoundError, ValueError)


def version_callback(value: bool):
    if value:
        print(f"Incident Risk Pipeline v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None, "--version", "-v", callback=version_callback, is_eager=True,
        help="Show version and exit"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", help="Enable verbose logging"
    ),
    log_file: Optional[str] = typer.Option(
        None, "--log-file", help="Also write logs to this file"
    )
):
    """Incident Risk Pipeline"""
    log_level = logging.DEBUG if verbose else logging.INFO
    setup_logging(log_level, log_file)


def _pipeline(
    model_dir: Optional[str] = None,
    incidents: Optional[str] = None,
    settings: Optional[PipelineSettings] = None
) -> IncidentRiskPipeline:
    source = IncidentSource(read_incidents(incidents)) if incidents else None
    return IncidentRiskPipeline(settings=settings, incident_source=source, model_dir=model_dir)


def _fail(logger: logging.Logger, action: str, error: Exception) -> None:
    logger.error(f"{action} failed: {error}")
    console.print(f"[red]Error: {error}[/red]")
    raise typer.Exit(1)


@app.command()
def prepare(
    telemetry: str = typer.Option(
        ..., "--telemetry", "-t",
        help="Telemetry export (CSV or Parquet)"
    ),
    output: str = typer.Option(
        "artifacts/features.parquet", "--output", "-o",
        help="Output Parquet file for feature rows"
    ),
    bucket_minutes: Optional[int] = typer.Option(
        None, "--bucket-minutes",
        help="Bucket width in minutes"
    )
):
    """Aggregate exported telemetry into feature rows"""

    logger = logging.getLogger("incident_risk")
    console.print("[bold blue]Incident Risk - Feature Preparation[/bold blue]")

    try:
        settings = PipelineSettings()
        if bucket_minutes is not None:
            if bucket_minutes <= 0:
                raise ValueError(f"Bucket width must be positive: {bucket_minutes}")
            settings.etl.bucket_minutes = bucket_minutes

        events = read_telemetry(telemetry)
        if not events:
            console.print("[red]No telemetry events found[/red]")
            raise typer.Exit(1)

        pipeline = IncidentRiskPipeline(settings=settings)
        replay = pipeline.replay_telemetry(events)
        console.print(f"Ingested {replay['accepted']} events ({replay['rejected']} rejected)")
        if replay["accepted"] == 0:
            console.print("[red]No valid telemetry events[/red]")
            raise typer.Exit(1)

        span_start, span_end = pipeline.telemetry_store.time_span()
        etl = settings.etl
        window_end = span_end + etl.bucket_width
        # Evaluate after every bucket's grace deadline so all rows freeze
        now = window_end + etl.watermark_delay + etl.grace_period
        written = pipeline.run_etl(span_start, window_end, now=now)

        rows = pipeline.feature_store.read_range()
        write_feature_rows(rows, output)

        _display_etl_summary(pipeline, written)
        console.print(f"\n[green]✓ Feature preparation completed[/green]")
        console.print(f"[green]  {len(rows)} feature rows saved to: {output}[/green]")

    except INPUT_ERRORS as e:
        _fail(logger, "Feature preparation", e)


@app.command()
def train(
    features: str = typer.Option(
        ..., "--features", "-f",
        help="Feature rows Parquet file"
    ),
    incidents: Optional[str] = typer.Option(
        None, "--incidents", "-i",
        help="Incidents CSV (service, route, occurred_at); derived from features when omitted"
    ),
    model_dir: str = typer.Option(
        DEFAULT_MODEL_DIR, "--model-dir", "-m",
        help="Model registry directory"
    ),
    learning_rate: Optional[float] = typer.Option(None, "--learning-rate"),
    l2: Optional[float] = typer.Option(None, "--l2"),
    max_iterations: Optional[int] = typer.Option(None, "--max-iterations"),
    include_total_requests: bool = typer.Option(
        False, "--include-total-requests",
        help="Use request volume as a feature"
    ),
    activate: bool = typer.Option(
        False, "--activate/--no-activate",
        help="Activate the new version after training"
    )
):
    """Train and publish a new model version"""

    logger = logging.getLogger("incident_risk")
    console.print("[bold blue]Incident Risk - Model Training[/bold blue]")

    try:
        pipeline = _pipeline(model_dir, incidents)
        loaded = pipeline.feature_store.load(read_feature_rows(features))
        console.print(f"Loaded {loaded} feature rows")

        hyperparameters = {
            name: value for name, value in [
                ("learning_rate", learning_rate),
                ("l2", l2),
                ("max_iterations", max_iterations),
            ] if value is not None
        }
        if include_total_requests:
            hyperparameters["include_total_requests"] = True

        version = pipeline.train_model(hyperparameters)
        artifact = pipeline.registry.get(version)
        _display_model(artifact.metadata, version)

        if activate:
            pipeline.activate_model(version)
            console.print(f"[green]✓ Model v{version} activated[/green]")
        else:
            console.print(f"[yellow]Model v{version} published but not active; "
                          f"run `incident-risk activate {version}` to promote it[/yellow]")

    except INPUT_ERRORS as e:
        _fail(logger, "Model training", e)


@app.command()
def activate(
    version: int = typer.Argument(..., help="Model version to activate"),
    model_dir: str = typer.Option(
        DEFAULT_MODEL_DIR, "--model-dir", "-m",
        help="Model registry directory"
    )
):
    """Activate a model version (also used for rollback)"""

    logger = logging.getLogger("incident_risk")
    try:
        pipeline = _pipeline(model_dir)
        previous = pipeline.registry.active_version
        pipeline.activate_model(version)
        console.print(f"[green]✓ Active model: v{version} (previous: {previous})[/green]")
    except INPUT_ERRORS as e:
        _fail(logger, "Activation", e)


@app.command()
def score(
    features: str = typer.Option(
        ..., "--features", "-f",
        help="Feature rows Parquet file"
    ),
    model_dir: str = typer.Option(
        DEFAULT_MODEL_DIR, "--model-dir", "-m",
        help="Model registry directory"
    ),
    version: Optional[int] = typer.Option(
        None, "--version",
        help="Pinned model version (default: active)"
    ),
    live: bool = typer.Option(
        False, "--live",
        help="Score only the latest bucket of each series"
    ),
    top: int = typer.Option(10, "--top", help="Predictions to display"),
    output: Optional[str] = typer.Option(
        None, "--output", "-o",
        help="Write all predictions to this CSV"
    )
):
    """Score feature rows and show the alerts they would raise"""

    logger = logging.getLogger("incident_risk")
    console.print("[bold blue]Incident Risk - Scoring[/bold blue]")

    try:
        pipeline = _pipeline(model_dir)
        rows = read_feature_rows(features)
        pipeline.feature_store.load(rows)

        if live:
            predictions = pipeline.infer_live()
        else:
            predictions = pipeline.infer_batch(rows, version)

        if output:
            Path(output).parent.mkdir(parents=True, exist_ok=True)
            predictions_to_dataframe(predictions).to_csv(output, index=False)
            console.print(f"Predictions saved to: {output}")

        _display_predictions(predictions, top)
        alerts = pipeline.evaluate_alerts(predictions, now=utc_now())
        _display_alerts(alerts)

    except INPUT_ERRORS as e:
        _fail(logger, "Scoring", e)


@app.command()
def backtest(
    features: str = typer.Option(
        ..., "--features", "-f",
        help="Feature rows Parquet file"
    ),
    version: int = typer.Option(..., "--version", help="Model version to evaluate"),
    incidents: Optional[str] = typer.Option(
        None, "--incidents", "-i",
        help="Incidents CSV; derived from features when omitted"
    ),
    model_dir: str = typer.Option(
        DEFAULT_MODEL_DIR, "--model-dir", "-m",
        help="Model registry directory"
    ),
    k: Optional[int] = typer.Option(None, "--k", help="Cutoff for precision/recall@K")
):
    """Evaluate a pinned model version on labeled history"""

    logger = logging.getLogger("incident_risk")
    console.print("[bold blue]Incident Risk - Backtest[/bold blue]")

    try:
        pipeline = _pipeline(model_dir, incidents)
        pipeline.feature_store.load(read_feature_rows(features))
        metrics = pipeline.run_backtest(None, None, version, k=k)
        _display_metrics(metrics)
    except INPUT_ERRORS as e:
        _fail(logger, "Backtest", e)


@app.command()
def status(
    model_dir: str = typer.Option(
        DEFAULT_MODEL_DIR, "--model-dir", "-m",
        help="Model registry directory"
    )
):
    """Show model registry status and resource usage"""
    console.print("[bold blue]Incident Risk - Status[/bold blue]")

    pipeline = _pipeline(model_dir)
    models = pipeline.list_models()

    console.print(f"\n[bold]Models in {model_dir}:[/bold]")
    if not models:
        console.print("[yellow]No published models[/yellow]")
    else:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Version", justify="right")
        table.add_column("Active", justify="center")
        table.add_column("Trained at")
        table.add_column("Rows", justify="right")
        table.add_column("Validation AUC", justify="right")
        for model in models:
            meta = model["metadata"]
            auc = meta.get("validation_auc")
            table.add_row(
                str(model["version"]),
                "[green]✓[/green]" if model["active"] else "",
                model["trained_at"].strftime("%Y-%m-%d %H:%M:%S"),
                str(meta.get("rows", "")),
                f"{auc:.3f}" if auc is not None else "-",
            )
        console.print(table)

    console.print(f"\n[bold]Configuration:[/bold]")
    settings = pipeline.settings
    console.print(f"  Bucket width: {settings.etl.bucket_minutes} minutes")
    console.print(f"  Lookahead: {settings.labels.lookahead_buckets} buckets")
    console.print(f"  Alert threshold: {settings.alerts.threshold}, "
                  f"cooldown: {settings.alerts.cooldown}")
    console.print(f"  Features: {FEATURE_ORDER}")

    console.print(f"\n[bold]Memory Usage:[/bold]")
    memory = get_memory_usage()
    console.print(f"  RSS: {memory['rss_gb']:.1f} GB")
    console.print(f"  Available: {memory['available_gb']:.1f} GB")


def _display_etl_summary(pipeline: IncidentRiskPipeline, written: int) -> None:
    """Display ETL outcome table"""
    result = pipeline.last_etl_result
    console.print("\n[bold]ETL Summary:[/bold]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Status")
    table.add_column("Buckets", justify="right")
    for status in sorted({s for s in result.statuses.values()}, key=lambda s: s.value):
        table.add_row(status.value, str(result.count(status)))
    table.add_row("late events dropped", str(result.late_dropped))
    console.print(table)
    console.print(f"Rows written: {written}")


def _display_model(metadata: Mapping, version: int) -> None:
    console.print(f"\n[bold]Model v{version}:[/bold]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key in ("rows", "positives", "fit_rows", "validation_rows", "iterations",
                "loss", "converged", "validation_auc", "validation_log_loss"):
        if key in metadata:
            value = metadata[key]
            table.add_row(key, f"{value:.4f}" if isinstance(value, float) else str(value))
    console.print(table)


def _display_predictions(predictions: List[PredictionResult], top: int) -> None:
    """Display highest-risk predictions"""
    console.print(f"\n[bold]Top {min(top, len(predictions))} of {len(predictions)} predictions:[/bold]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Service")
    table.add_column("Route")
    table.add_column("Bucket")
    table.add_column("Risk", justify="right")
    table.add_column("Top factors")

    ranked = sorted(predictions, key=lambda p: (-p.risk_score, p.bucket_start))
    for p in ranked[:top]:
        table.add_row(
            p.service,
            p.route,
            p.bucket_start.strftime("%Y-%m-%d %H:%M"),
            f"{p.risk_score:.3f}",
            ", ".join(f"{name} {value:+.2f}" for name, value in p.top_factors),
        )
    console.print(table)


def _display_alerts(alerts: List[Alert]) -> None:
    if not alerts:
        console.print("\n[green]No alerts would be raised[/green]")
        return
    console.print(f"\n[bold]{len(alerts)} alerts would be raised:[/bold]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Severity")
    table.add_column("Service")
    table.add_column("Route")
    table.add_column("Bucket")
    table.add_column("Risk", justify="right")
    colors = {"critical": "red", "high": "yellow", "medium": "cyan"}
    for alert in alerts:
        color = colors[alert.severity.value]
        table.add_row(
            f"[{color}]{alert.severity.value}[/{color}]",
            alert.service,
            alert.route,
            alert.bucket_start.strftime("%Y-%m-%d %H:%M"),
            f"{alert.risk_score:.3f}",
        )
    console.print(table)


def _display_metrics(metrics: BacktestMetrics) -> None:
    console.print(f"\n[bold]Backtest of model v{metrics.model_version}:[/bold]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("AUC", f"{metrics.auc:.4f}")
    table.add_row(f"Precision@{metrics.k}", f"{metrics.precision_at_k:.4f}")
    table.add_row(f"Recall@{metrics.k}", f"{metrics.recall_incidents:.4f}")
    table.add_row("Support (positives)", str(metrics.support))
    table.add_row("Rows", str(metrics.rows))
    console.print(table)


if __name__ == "__main__":
    app()
