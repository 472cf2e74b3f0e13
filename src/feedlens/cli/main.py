"""The ``feedlens`` command."""

from __future__ import annotations

import typer

from feedlens.cli import deadletter, pipeline, requests, search, usage

app = typer.Typer(add_completion=False, help="AI enrichment pipeline for feed articles.")
app.add_typer(pipeline.app, name="pipeline")
app.add_typer(search.app, name="search")
app.add_typer(usage.app, name="usage")
app.add_typer(deadletter.app, name="deadletter")
app.add_typer(requests.app, name="requests")


if __name__ == "__main__":
    app()
