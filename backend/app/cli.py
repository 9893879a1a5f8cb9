"""Tidewatch CLI: vessel telemetry anomaly detection and alerting.

Commands:
  replay        run a CSV / JSON-lines telemetry file through the pipeline
  rules         list configured alert rules
  check-config  validate pipeline.yaml and show what it resolves to
  serve         start the HTTP API
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Optional

import polars as pl
import typer
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="tidewatch",
    help="Vessel telemetry anomaly detection and alerting.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_SEVERITY_STYLE = {"critical": "bold red", "high": "red", "medium": "yellow", "low": "dim"}


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("replay")
def replay(
    file: Path = typer.Argument(..., exists=True, dir_okay=False, help="CSV or JSON-lines telemetry file"),
    config: Optional[Path] = typer.Option(None, "--config", help="pipeline.yaml (default: PIPELINE_CONFIG)"),
    limit: int = typer.Option(25, "--limit", help="Alerts to show"),
    export: Optional[Path] = typer.Option(None, "--export", help="Write a JSON export of the results here"),
):
    """Replay recorded telemetry through the full pipeline and print the ranked alerts."""
    from app.config import settings
    from app.modules.pipeline import build_pipeline
    from app.modules.pipeline_config import load_pipeline_config

    records = _read_records(file)
    if not records:
        console.print(f"[yellow]No records in {file}[/yellow]")
        raise typer.Exit(1)

    pipeline = build_pipeline(settings, load_pipeline_config(config) if config else None)
    with console.status(f"[bold]Replaying {len(records):,} records..."):
        rejected = asyncio.run(_replay(pipeline, records))

    metrics = pipeline.get_metrics()
    console.print(
        f"Processed [cyan]{metrics.processed_count:,}[/cyan] points "
        f"([yellow]{rejected:,}[/yellow] rejected)  |  "
        f"anomalies {metrics.anomalies_detected:,}  |  alerts {metrics.alerts_created:,}  |  "
        f"correlations {len(pipeline.list_correlations()):,}"
    )
    _print_alerts_table(console, pipeline.list_alerts()[:limit])

    if export:
        from app.modules.report import export_detection_data

        export.write_text(export_detection_data(pipeline.store, metrics, pipeline.list_correlations()))
        console.print(f"Export written to [cyan]{export}[/cyan]")


@app.command("rules")
def rules(config: Optional[Path] = typer.Option(None, "--config", help="pipeline.yaml to read")):
    """List the alert rules the pipeline would load."""
    cfg = _load_config(config)
    table = Table(title=f"Alert Rules ({len(cfg.rules)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Priority", justify="right")
    table.add_column("Cooldown", justify="right")
    table.add_column("Conditions")
    table.add_column("Actions")
    table.add_column("Enabled")
    for rule in sorted(cfg.rules, key=lambda r: r.priority):
        table.add_row(
            rule.id,
            rule.name,
            str(rule.priority),
            f"{rule.cooldown_period.total_seconds() / 60:g} min",
            ", ".join(f"{c.type.value} {c.operator.value} {c.value} (w={c.weight:g})" for c in rule.conditions),
            ", ".join(a.type.value for a in rule.actions) or "-",
            "[green]yes[/green]" if rule.enabled else "[red]no[/red]",
        )
    console.print(table)


@app.command("check-config")
def check_config(config: Optional[Path] = typer.Option(None, "--config", help="pipeline.yaml to validate")):
    """Validate pipeline.yaml and summarise the resolved configuration."""
    from pydantic import ValidationError as SchemaError

    try:
        cfg = _load_config(config)
    except (SchemaError, ValueError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(1)

    det = cfg.detection
    console.print("[green]Configuration OK[/green]")
    console.print(f"  Expected speeds: {', '.join(f'{k}={v:g}' for k, v in det.speed.expected_speeds.items())}")
    console.print(
        f"  Speed deviation: >{det.speed.trigger_deviation:g} medium, "
        f">{det.speed.high_deviation:g} high, >{det.speed.critical_deviation:g} critical"
    )
    console.print(f"  AIS gap: >{det.ais_gap.trigger_hours:g} h over {det.ais_gap.window_hours:g} h window")
    console.print(f"  Restricted zones: {', '.join(z.name for z in det.geospatial.zones) or 'none'}")
    console.print(f"  Rules: {len(cfg.rules)}  |  fire threshold {cfg.alerting.rule_fire_threshold:g}")


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Start the HTTP API."""
    import uvicorn

    console.print(f"API running at [cyan]http://{host}:{port}/api/v1[/cyan]: press Ctrl+C to stop")
    uvicorn.run("app.main:app", host=host, port=port)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config(path: Optional[Path]):
    from app.config import settings
    from app.modules.pipeline import _resolve_config_path
    from app.modules.pipeline_config import load_pipeline_config

    return load_pipeline_config(path or _resolve_config_path(settings.PIPELINE_CONFIG))


def _read_records(path: Path) -> list[dict[str, Any]]:
    """Read CSV (via polars) or JSON lines into raw records."""
    if path.suffix.lower() in (".jsonl", ".ndjson", ".json"):
        with open(path) as f:
            return [json.loads(line) for line in f if line.strip()]
    df = pl.read_csv(path, infer_schema_length=1000)
    return df.to_dicts()


async def _replay(pipeline, records: list[dict[str, Any]]) -> int:
    await pipeline.start()
    rejected = 0
    for i, record in enumerate(records):
        if not pipeline.submit(record).accepted:
            rejected += 1
        if i % 500 == 0:
            await asyncio.sleep(0)
    await pipeline.drain()
    pipeline.run_cluster_cycle()
    await pipeline.stop()
    return rejected


def _print_alerts_table(con: Console, alerts) -> None:
    """Print a Rich table of ranked alerts."""
    table = Table(title=f"Alerts ({len(alerts)} shown)")
    table.add_column("ID", style="cyan")
    table.add_column("Severity")
    table.add_column("Kind")
    table.add_column("Vessel")
    table.add_column("Status")
    table.add_column("Seen", justify="right")
    table.add_column("Title")
    for alert in alerts:
        style = _SEVERITY_STYLE.get(alert.severity.value, "")
        table.add_row(
            alert.id,
            f"[{style}]{alert.severity.value}[/{style}]" if style else alert.severity.value,
            alert.kind,
            alert.vessel_id or "-",
            alert.status.value,
            str(alert.occurrences),
            alert.title,
        )
    con.print(table)


if __name__ == "__main__":
    app()
