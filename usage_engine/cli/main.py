"""
CLI interface for the usage engine.

Operator access to collection runs and cycle aggregation.
"""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from usage_engine.config.loader import EngineConfig, load_engine_config
from usage_engine.core.aggregation import CycleAggregationEngine, cycle_bounds
from usage_engine.core.audit import AUDIT_LOGGER_NAME, LoggingAuditSink
from usage_engine.core.collection import build_collection_service
from usage_engine.logging_config import setup_logging
from usage_engine.storage.db import DEFAULT_DB_PATH
from usage_engine.storage.models import CollectionRun, CycleAggregate, RunStatus
from usage_engine.storage.repository import get_repository, initialize_schema

app = typer.Typer(help="Usage collection and billing aggregation engine.")
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DEFAULT_CONFIG_PATH = "usage_engine.yaml"
_DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S"]


class _State:
    config_path: str = DEFAULT_CONFIG_PATH
    db_path: Optional[str] = None


state = _State()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: str = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Engine YAML config"),
    db: Optional[str] = typer.Option(None, "--db", help="Override the database path"),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
):
    """Usage engine CLI."""
    setup_logging(log_level, json_format=json_logs, loggers=[AUDIT_LOGGER_NAME])
    # Audit records are INFO and are emitted at every operator log level
    audit_logger = logging.getLogger(AUDIT_LOGGER_NAME)
    audit_logger.setLevel(min(audit_logger.level, logging.INFO))
    state.config_path = config
    state.db_path = db
    if ctx.invoked_subcommand is None:
        console.print("Usage engine - Use --help to see available commands")


def _load_config() -> EngineConfig:
    return load_engine_config(state.config_path)


def _db_path() -> str:
    """--db wins, then the config file's storage path, then the default."""
    if state.db_path:
        return state.db_path
    if Path(state.config_path).exists():
        return _load_config().storage.db_path
    return DEFAULT_DB_PATH


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@app.command()
def init():
    """Initialize the usage engine database."""
    try:
        initialize_schema(_db_path())
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def providers(
    validate: bool = typer.Option(
        False, "--validate", help="Check each provider's credentials"
    ),
):
    """List registered providers, their metrics and rate limits."""
    try:
        config = _load_config()
        service = build_collection_service(config, get_repository(_db_path()))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    registry = service.registry
    credential_status = registry.validate_all_credentials() if validate else {}

    table = Table(title="Providers")
    table.add_column("Provider")
    table.add_column("Metrics")
    table.add_column("Rate limit")
    if validate:
        table.add_column("Credentials")
    for provider_id in registry.get_available_providers():
        collector = registry.get_collector(provider_id)
        limits = collector.get_rate_limits()
        row = [
            provider_id,
            ", ".join(f"{m.metric_key} ({m.unit})" for m in collector.get_metric_definitions()),
            f"{limits.requests_per_minute}/min, burst {limits.burst_capacity}",
        ]
        if validate:
            row.append("[green]ok[/]" if credential_status[provider_id] else "[red]invalid[/]")
        table.add_row(*row)
    console.print(table)

    if validate and not all(credential_status.values()):
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def collect(
    provider: str = typer.Argument(..., help="Provider identifier"),
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    client: str = typer.Option(..., "--client", help="Client id"),
    start: datetime = typer.Option(..., "--start", formats=_DATE_FORMATS, help="Window start (UTC)"),
    end: datetime = typer.Option(..., "--end", formats=_DATE_FORMATS, help="Window end, exclusive (UTC)"),
    correlation_id: Optional[str] = typer.Option(
        None, "--correlation-id", help="Run identifier; an existing unfinished run is resumed"
    ),
):
    """Collect usage for one provider, tenant, client and window."""
    try:
        config = _load_config()
        repository = get_repository(_db_path())
        service = build_collection_service(config, repository)
        run = service.run_collection(provider, tenant, client, _utc(start), _utc(end), correlation_id)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_runs([run])
    sys.exit(EXIT_CODE_PASS if run.status == RunStatus.COMPLETED else EXIT_CODE_FAIL)


@app.command("run-status")
def run_status(
    correlation_id: Optional[str] = typer.Argument(None, help="Run correlation id"),
    provider: Optional[str] = typer.Option(None, "--provider", "-p", help="Filter recent runs"),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Filter recent runs"),
    limit: int = typer.Option(20, "--limit", help="Recent runs to show"),
):
    """Show one collection run, or the most recent runs."""
    try:
        repository = get_repository(_db_path())
        if correlation_id:
            run = repository.get_run(correlation_id)
            if run is None:
                console.print(f"[red]No collection run with correlation id {correlation_id}[/]")
                sys.exit(EXIT_CODE_FAIL)
            runs = [run]
        else:
            runs = repository.list_runs(provider=provider, tenant_id=tenant, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not runs:
        console.print("[dim]No collection runs found.[/]")
    else:
        _display_runs(runs)
        if correlation_id and runs[0].error_details:
            console.print(f"\n[bold]Error:[/bold] {runs[0].error_details}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def aggregate(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    client: Optional[str] = typer.Option(None, "--client", help="Restrict to one client"),
    period: str = typer.Option("monthly", "--period", help="daily or monthly"),
    date: Optional[datetime] = typer.Option(
        None, "--date", formats=_DATE_FORMATS, help="Any date inside the cycle (default: today)"
    ),
    start: Optional[datetime] = typer.Option(None, "--start", formats=_DATE_FORMATS, help="Explicit cycle start"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=_DATE_FORMATS, help="Explicit cycle end"),
):
    """Aggregate stored events into cycle summaries."""
    try:
        config = _load_config()
        if start is not None or end is not None:
            if start is None or end is None:
                raise ValueError("--start and --end must be given together")
            cycle_start, cycle_end = _utc(start), _utc(end)
        else:
            cycle_start, cycle_end = cycle_bounds(period, _utc(date) or datetime.now(timezone.utc))

        engine = CycleAggregationEngine(
            get_repository(_db_path()), config.quality, audit=LoggingAuditSink()
        )
        result = engine.aggregate(cycle_start, cycle_end, tenant, client)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"\n[bold]Cycle {cycle_start.isoformat()} → {cycle_end.isoformat()}[/bold]"
    )
    if result.aggregates:
        _display_aggregates(result.aggregates)
    else:
        console.print("[dim]No events in this cycle.[/]")

    for anomaly in result.anomalies:
        colour = "red" if anomaly.severity.value == "critical" else "yellow"
        console.print(f"[{colour}]{anomaly.rule}[/] {anomaly.provider} {anomaly.metric_key}: {anomaly.message}")

    if result.failed_groups:
        for key, error in result.failed_groups:
            console.print(f"[red]Failed group {'/'.join(key)}:[/] {error}")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def aggregates(
    tenant: str = typer.Option(..., "--tenant", "-t", help="Tenant id"),
    client: Optional[str] = typer.Option(None, "--client", help="Restrict to one client"),
    start: Optional[datetime] = typer.Option(None, "--start", formats=_DATE_FORMATS, help="Cycle start"),
    end: Optional[datetime] = typer.Option(None, "--end", formats=_DATE_FORMATS, help="Cycle end"),
):
    """Show stored cycle aggregates."""
    try:
        rows = get_repository(_db_path()).get_aggregates(tenant, client, _utc(start), _utc(end))
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("[dim]No aggregates found.[/]")
    else:
        _display_aggregates(rows)
    sys.exit(EXIT_CODE_PASS)


def _display_runs(runs: List[CollectionRun]):
    table = Table(title="Collection runs")
    table.add_column("Correlation id")
    table.add_column("Provider")
    table.add_column("Tenant/Client")
    table.add_column("Status")
    table.add_column("Collected", justify="right")
    table.add_column("Persisted", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Failed", justify="right")
    for run in runs:
        colour = {
            RunStatus.COMPLETED: "green",
            RunStatus.FAILED: "red",
            RunStatus.CANCELLED: "yellow",
        }.get(run.status, "white")
        table.add_row(
            run.correlation_id,
            run.provider,
            f"{run.tenant_id}/{run.client_id}",
            f"[{colour}]{run.status.value}[/]",
            str(run.events_collected),
            str(run.events_processed),
            str(run.events_duplicate),
            str(run.events_failed),
        )
    console.print(table)


def _display_aggregates(rows: List[CycleAggregate]):
    table = Table(title="Cycle aggregates")
    table.add_column("Client")
    table.add_column("Agent")
    table.add_column("Metric")
    table.add_column("Quantity", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Events", justify="right")
    table.add_column("Complete", justify="right")
    table.add_column("Late", justify="right")
    table.add_column("Flags")
    for row in rows:
        table.add_row(
            row.client_id,
            row.agent_id or "-",
            row.metric_key,
            format(row.total_quantity.normalize(), "f"),
            f"{format(row.total_cost.normalize(), 'f')} {row.currency}",
            str(row.event_count),
            str(row.quality_metrics.completeness_score),
            str(row.quality_metrics.late_events_count),
            ", ".join(row.quality_metrics.anomaly_flags) or "-",
        )
    console.print(table)


if __name__ == "__main__":
    app()
