"""
CLI interface for relay-guard.

Operational commands for the admission controller, retry queue and
connection router.
"""

import logging
import sys
import threading
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from relay_guard.config.loader import Settings, default_settings, load_settings
from relay_guard.monitoring.logger_setup import setup_logging
from relay_guard.sdk.components import Components, build_components

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _settings(ctx: typer.Context) -> Settings:
    config_path = (ctx.obj or {}).get("config")
    if config_path:
        return load_settings(config_path)
    return default_settings()


def _components(ctx: typer.Context) -> Components:
    try:
        return build_components(_settings(ctx))
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def _require_pipeline(components: Components) -> None:
    if components.pipeline is None:
        console.print("[red]Error:[/] no services configured; pass --config with a router section")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(float(amount)):,.4f}"


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC") if value else "never"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to YAML configuration"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also log to this file"),
):
    """relay-guard CLI."""
    ctx.obj = {"config": config}
    setup_logging(logging.DEBUG if verbose else logging.WARNING, log_file=log_file)
    if ctx.invoked_subcommand is None:
        console.print("relay-guard - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize state storage."""
    components = _components(ctx)
    try:
        components.queue.status()
        components.admission.usage_stats()
        components.admission.sweep()
        console.print("[green]✓[/] State storage initialized")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing storage:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def status(ctx: typer.Context):
    """Show queue depth and budget usage."""
    components = _components(ctx)
    queue_status = components.queue.status()
    usage = components.admission.usage_stats()

    queue_table = Table(title="Retry Queue")
    queue_table.add_column("Metric")
    queue_table.add_column("Value", justify="right")
    queue_table.add_row("Pending submissions", str(queue_status.pending_count))
    queue_table.add_row("Due now", str(queue_status.due_count))
    queue_table.add_row("Dead letters", str(queue_status.dead_letter_count))
    queue_table.add_row("Oldest queued", _format_time(queue_status.oldest_queued_at))
    queue_table.add_row("Last processed", _format_time(queue_status.last_processed))
    console.print(queue_table)

    budget_table = Table(title="Budget")
    budget_table.add_column("Metric")
    budget_table.add_column("Value", justify="right")
    budget_table.add_row("Month start", usage.month_start.strftime("%Y-%m-%d"))
    budget_table.add_row("Current spend", _format_currency(usage.current_spend))
    budget_table.add_row("Remaining budget", _format_currency(usage.remaining_budget))
    budget_table.add_row("Projected month end", _format_currency(usage.projected_month_end))
    budget_table.add_row("Active clients", str(usage.active_clients))
    budget_table.add_row("Requests today", str(usage.requests_today))
    budget_table.add_row("Requests this hour", str(usage.requests_this_hour))
    budget_table.add_row("Daily share per client", str(usage.max_daily_requests_per_client))
    console.print(budget_table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def check(
    ctx: typer.Context,
    client_id: str = typer.Argument(..., help="Client instance identifier"),
):
    """Run one admission check for CLIENT_ID (counts as a request if admitted)."""
    components = _components(ctx)
    result = components.admission.evaluate(client_id)
    if result.admitted:
        console.print(f"[green]✓[/] {client_id} admitted (cost {_format_currency(result.request_cost)})")
        sys.exit(EXIT_CODE_PASS)
    console.print(f"[yellow]✗[/] {client_id} denied: {result.reason.value}")
    sys.exit(EXIT_CODE_FAIL)


@app.command("process-queue")
def process_queue(ctx: typer.Context):
    """Run one retry cycle over the queue."""
    components = _components(ctx)
    _require_pipeline(components)
    result = components.pipeline.process_pending()
    console.print(
        f"Processed: {result.processed}, Succeeded: {result.succeeded}, "
        f"Failed: {result.failed}, Remaining: {result.remaining}"
    )
    if result.dead_lettered:
        console.print(f"[yellow]Dead-lettered:[/] {result.dead_lettered}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def sweep(ctx: typer.Context):
    """Purge inactive clients and stale quota counters."""
    components = _components(ctx)
    result = components.admission.sweep()
    console.print(
        f"Purged clients: {result.purged_clients}, "
        f"pruned hourly buckets: {result.pruned_hourly_buckets}, "
        f"pruned daily buckets: {result.pruned_daily_buckets}"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def connections(
    ctx: typer.Context,
    path: str = typer.Option("/api/health", "--path", help="Health endpoint to probe"),
    timeout: float = typer.Option(5.0, "--timeout", help="Per-probe timeout in seconds"),
):
    """Probe every connection method of every service."""
    components = _components(ctx)
    _require_pipeline(components)
    results = components.router.test_connections(path=path, timeout=timeout)

    table = Table(title="Connection Test")
    table.add_column("Service")
    table.add_column("Method")
    table.add_column("URL")
    table.add_column("Result")
    any_success = False
    for service, probes in results.items():
        for method, probe in probes.items():
            if probe.success:
                any_success = True
                outcome = f"[green]OK {probe.status_code}[/]"
            elif probe.status_code is not None:
                outcome = f"[yellow]HTTP {probe.status_code}[/]"
            else:
                outcome = f"[red]{probe.error}[/]"
            table.add_row(service, method, probe.url, outcome)
    console.print(table)
    sys.exit(EXIT_CODE_PASS if any_success else EXIT_CODE_FAIL)


@app.command()
def run(ctx: typer.Context):
    """Process the queue and sweep the budget on schedule until interrupted."""
    components = _components(ctx)
    _require_pipeline(components)
    scheduler = components.scheduler()
    stop_event = threading.Event()
    console.print(f"Running {len(scheduler.jobs)} scheduled jobs. Press Ctrl+C to stop.")
    try:
        scheduler.run_forever(stop_event)
    except KeyboardInterrupt:
        stop_event.set()
        console.print("Stopped")
    sys.exit(EXIT_CODE_PASS)


if __name__ == "__main__":
    app()
