"""CLI commands for running and driving the enrichment pipeline."""

from __future__ import annotations

import time

import structlog
import typer
from rich.console import Console
from rich.table import Table

from feedlens.config import get_config
from feedlens.logging import configure_logging
from feedlens.services.database import build_engine, init_database
from feedlens.services.runtime import Pipeline, open_pipeline

app = typer.Typer(add_completion=False, help="Run the background pipeline or trigger its steps by hand.")
console = Console()


def _load() -> Pipeline:
    config = get_config()
    configure_logging(config.log_level)
    return open_pipeline(config)


@app.command("run")
def run_pipeline() -> None:
    """Start the background loops and block until interrupted."""

    pipeline = _load()
    log = structlog.get_logger(__name__)
    pipeline.runtime.start()
    console.print("[green]Pipeline running.[/green] Press Ctrl-C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        log.info("shutdown_requested")
    finally:
        pipeline.runtime.stop()
    console.print("Stopped.")


@app.command("drain")
def drain_queue(
    batch_size: int = typer.Option(None, "--batch-size", "-b", help="Items to embed (max 100)"),
) -> None:
    """Embed one batch of queued articles."""

    pipeline = _load()
    if not pipeline.queue.available:
        console.print("[yellow]Embedding provider unavailable; nothing drained.[/yellow]")
        raise typer.Exit(code=1)

    result = pipeline.runtime.trigger_embedding_processing(batch_size)
    console.print(
        f"Processed {result.processed}: {result.succeeded} succeeded, {result.failed} failed, "
        f"{result.remaining_in_queue} still pending"
    )


@app.command("cluster")
def generate_clusters(
    user_id: str = typer.Option(None, "--user", "-u", help="Cluster only this user's feeds"),
    hours_back: float = typer.Option(None, "--hours", help="Lookback window in hours (default: configured lookback)"),
) -> None:
    """Regenerate topic clusters now."""

    pipeline = _load()
    result = pipeline.runtime.trigger_cluster_generation(user_id=user_id, hours_back=hours_back)

    table = Table(title=f"{result.clusters_created} clusters ({result.method}, {result.processing_time_ms} ms)")
    table.add_column("Topic")
    table.add_column("Articles", justify="right")
    table.add_column("Sources")
    table.add_column("Relevance", justify="right")
    for cluster in result.clusters:
        table.add_row(cluster.topic, str(cluster.article_count), ", ".join(cluster.sources), f"{cluster.relevance_score:.2f}")
    console.print(table)


@app.command("expire")
def expire_clusters() -> None:
    """Delete clusters past their expiry."""

    pipeline = _load()
    removed = pipeline.runtime.trigger_cleanup()
    console.print(f"Removed {removed} expired clusters.")


@app.command("status")
def show_status() -> None:
    """Show provider availability and embedding queue counts."""

    pipeline = _load()
    status = pipeline.integration.pipeline_status()
    stats = pipeline.queue.queue_stats()

    table = Table(title="Pipeline status", show_header=False)
    table.add_row("Embeddings", "available" if status.embedding_service_available else "unavailable")
    table.add_row("Clustering", "available" if status.clustering_service_available else "unavailable")
    table.add_row("Labeling", "available" if status.labeling_service_available else "fallback labels")
    table.add_row("Queue pending", str(stats.pending))
    table.add_row("Queue processing", str(stats.processing))
    table.add_row("Queue failed", str(stats.failed))
    table.add_row("Queue dead letter", str(stats.dead_letter))
    console.print(table)


@app.command("init-db")
def init_db() -> None:
    """Create the pipeline tables if they do not exist."""

    config = get_config()
    configure_logging(config.log_level)
    init_database(build_engine(config.database_url))
    console.print("[green]Database initialized.[/green]")
