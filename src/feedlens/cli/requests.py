"""CLI commands for requests deferred by the daily quota."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from feedlens.config import get_config
from feedlens.logging import configure_logging
from feedlens.services.runtime import open_pipeline

app = typer.Typer(add_completion=False, help="Inspect and run quota-deferred requests.")
console = Console()


@app.command("sweep")
def sweep_requests() -> None:
    """Run due deferred requests whose quota now allows it."""

    config = get_config()
    configure_logging(config.log_level)
    result = open_pipeline(config).runtime.trigger_request_sweep()
    console.print(
        f"Processed {result.processed}: {result.succeeded} succeeded, "
        f"{result.failed} failed, {result.requeued} pushed to the next day"
    )


@app.command("list")
def list_requests(user_id: str = typer.Argument(..., help="User id")) -> None:
    """Show a user's deferred requests."""

    config = get_config()
    configure_logging(config.log_level)
    requests = open_pipeline(config).requests.user_requests(user_id)

    table = Table(title=f"Deferred requests for {user_id}")
    table.add_column("Operation")
    table.add_column("Provider")
    table.add_column("Priority", justify="right")
    table.add_column("Scheduled for")
    for request in requests:
        table.add_row(request.operation, request.provider, str(request.priority), request.scheduled_for.isoformat())
    console.print(table)
