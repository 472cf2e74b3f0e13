"""CLI commands for inspecting and retrying permanently failed work."""

from __future__ import annotations

from datetime import timedelta

import typer
from rich.console import Console
from rich.table import Table

from feedlens.config import get_config
from feedlens.logging import configure_logging
from feedlens.services.runtime import open_pipeline

app = typer.Typer(add_completion=False, help="Operator tools for dead-lettered work.")
console = Console()


@app.command("list")
def list_dead_letters(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum items to show"),
    operation: str = typer.Option(None, "--operation", "-o", help="embedding, clustering, search or summary"),
) -> None:
    """Show dead-lettered operations and the embedding queue's dead letters."""

    config = get_config()
    configure_logging(config.log_level)
    pipeline = open_pipeline(config)

    items = pipeline.dead_letters.items(limit=limit, operation=operation)
    table = Table(title=f"Dead-letter items ({len(items)})")
    table.add_column("Id")
    table.add_column("Operation")
    table.add_column("Provider")
    table.add_column("Attempts", justify="right")
    table.add_column("Last attempt")
    table.add_column("Error")
    for item in items:
        table.add_row(
            str(item.id),
            item.operation,
            item.provider,
            str(item.attempts),
            item.last_attempt_at.strftime("%Y-%m-%d %H:%M"),
            item.error_message[:80],
        )
    console.print(table)

    stats = pipeline.queue.queue_stats()
    console.print(f"Embedding queue items in dead_letter: {stats.dead_letter}")


@app.command("requeue-embeddings")
def requeue_embeddings(
    limit: int = typer.Option(None, "--limit", "-n", help="Maximum items to requeue"),
) -> None:
    """Move dead-lettered embedding queue items back to pending."""

    config = get_config()
    configure_logging(config.log_level)
    count = open_pipeline(config).queue.requeue_dead_letters(limit)
    console.print(f"Requeued {count} embedding queue items.")


@app.command("purge")
def purge_dead_letters(
    days: int = typer.Option(30, "--older-than-days", help="Delete items last attempted before this many days ago"),
) -> None:
    """Delete old dead-letter items."""

    config = get_config()
    configure_logging(config.log_level)
    removed = open_pipeline(config).dead_letters.purge(timedelta(days=days))
    console.print(f"Purged {removed} dead-letter items.")
