"""CLI commands for semantic search and related articles."""

from __future__ import annotations

import uuid
from datetime import datetime

import typer
from rich.console import Console
from rich.table import Table

from feedlens.config import get_config
from feedlens.logging import configure_logging
from feedlens.models.pipeline import SearchOptions
from feedlens.services.runtime import open_pipeline

app = typer.Typer(add_completion=False, help="Search a user's subscribed feeds.")
console = Console()


@app.command("query")
def search_articles(
    text: str = typer.Argument(..., help="Natural-language query"),
    user_id: str = typer.Option(..., "--user", "-u", help="User whose subscriptions are searched"),
    limit: int = typer.Option(20, "--limit", "-n", help="Maximum results (capped at 50)"),
    min_score: float = typer.Option(None, "--min-score", help="Minimum similarity score"),
    feed: list[str] = typer.Option(None, "--feed", help="Restrict to these feed ids"),
    date_from: datetime = typer.Option(None, "--from", help="Earliest publish date"),
    date_to: datetime = typer.Option(None, "--to", help="Latest publish date"),
) -> None:
    """Run a search and print ranked articles."""

    config = get_config()
    configure_logging(config.log_level)
    pipeline = open_pipeline(config)

    options = SearchOptions(
        user_id=user_id,
        max_results=limit,
        min_score=min_score,
        feed_ids=[uuid.UUID(value) for value in feed] if feed else None,
        date_from=date_from,
        date_to=date_to,
    )
    result = pipeline.search.search(text, options)

    if result.notice:
        console.print(f"[yellow]{result.notice}[/yellow]")
    mode = "text match" if result.fallback_used else "semantic"
    table = Table(title=f"{result.total_results} results for '{result.query}' ({mode}, {result.processing_time_ms} ms)")
    table.add_column("Score", justify="right")
    table.add_column("Title")
    table.add_column("Feed")
    table.add_column("Published")
    for article in result.articles:
        published = article.published_at.strftime("%Y-%m-%d %H:%M") if article.published_at else "-"
        table.add_row(f"{article.relevance_score:.2f}", article.title, article.feed_name, published)
    console.print(table)


@app.command("similar")
def similar_articles(
    article_id: str = typer.Argument(..., help="Article to find neighbours for"),
    user_id: str = typer.Option(None, "--user", "-u", help="Only consider this user's feeds"),
) -> None:
    """List up to five articles most similar to the given one."""

    config = get_config()
    configure_logging(config.log_level)
    pipeline = open_pipeline(config)

    matches = pipeline.clustering.find_similar_articles(uuid.UUID(article_id), user_id=user_id)
    if not matches:
        console.print("No similar articles found.")
        return

    table = Table(title="Similar articles")
    table.add_column("Similarity", justify="right")
    table.add_column("Title")
    table.add_column("Feed")
    for match in matches:
        table.add_row(f"{match.similarity_score:.2f}", match.title, match.feed_name)
    console.print(table)
