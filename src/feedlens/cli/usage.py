"""CLI commands for inspecting AI usage and quotas."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from feedlens.config import get_config
from feedlens.logging import configure_logging
from feedlens.services.runtime import open_pipeline

app = typer.Typer(add_completion=False, help="Inspect per-user AI usage.")
console = Console()


@app.command("stats")
def usage_stats(user_id: str = typer.Argument(..., help="User id")) -> None:
    """Show today's usage against the daily limits."""

    config = get_config()
    configure_logging(config.log_level)
    stats = open_pipeline(config).limiter.get_usage_stats(user_id)

    counts = {
        "embedding": stats.daily.embeddings,
        "clustering": stats.daily.clusterings,
        "search": stats.daily.searches,
        "summary": stats.daily.summaries,
    }
    table = Table(title=f"Usage for {user_id} on {stats.daily.date}")
    table.add_column("Operation")
    table.add_column("Used", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Remaining", justify="right")
    for operation, used in counts.items():
        table.add_row(operation, str(used), str(stats.limits[operation]), str(stats.remaining[operation]))
    console.print(table)
    console.print(f"Tokens: {stats.daily.total_tokens}  Estimated cost: ${stats.daily.estimated_cost:.4f}")
    console.print(f"Resets at {stats.reset_at.isoformat()}")


@app.command("history")
def usage_history(
    user_id: str = typer.Argument(..., help="User id"),
    days: int = typer.Option(7, "--days", "-d", help="Number of days to show"),
) -> None:
    """Show daily usage totals for the last few days."""

    config = get_config()
    configure_logging(config.log_level)
    history = open_pipeline(config).limiter.historical_usage(user_id, days=days)

    if not history:
        console.print(f"No usage recorded for {user_id}.")
        return

    table = Table(title=f"Usage history for {user_id}")
    for column in ("Date", "Embeddings", "Clusterings", "Searches", "Summaries", "Tokens", "Cost"):
        table.add_column(column, justify="left" if column == "Date" else "right")
    for day in history:
        table.add_row(
            day.date or "-",
            str(day.embeddings),
            str(day.clusterings),
            str(day.searches),
            str(day.summaries),
            str(day.total_tokens),
            f"${day.estimated_cost:.4f}",
        )
    console.print(table)
