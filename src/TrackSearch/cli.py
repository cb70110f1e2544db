"""Command line entry point for TrackSearch.

Provides 5 commands:
  - init-index: Create the Qdrant collection and payload indexes
  - ingest: Run one track through the ingestion pipeline
  - resume: Finish every non-terminal run left in the ledger
  - search: Query the hybrid index
  - runs: Show ledger statistics
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import typer

from .errors import TrackSearchError
from .HybridIndex.search import QueryRequest
from .Ingestion.ledger import StepLedger
from .Ingestion.models import TrackIngestionRequest
from .logging import configure_logging
from .runtime import TrackSearchRuntime
from .settings import Settings, load_settings

app = typer.Typer(
    help="Hybrid semantic search over music tracks",
    no_args_is_help=True,
)


def _settings(log_level: Optional[str] = None) -> Settings:
    settings = load_settings()
    configure_logging(
        log_level or settings.app.log_level.value, settings.app.log_format.value
    )
    return settings


def _echo_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@app.command("init-index")
def init_index(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Create the collection if it does not exist."""
    settings = _settings(log_level)

    async def _run() -> dict[str, Any]:
        async with TrackSearchRuntime(settings) as runtime:
            return {
                "collection": runtime.index.schema.name,
                "points": await runtime.index.count(),
            }

    try:
        _echo_json(asyncio.run(_run()))
    except TrackSearchError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)


@app.command()
def ingest(
    isrc: str = typer.Argument(..., help="12-character ISRC"),
    title: str = typer.Option(..., "--title", help="Track title"),
    artist: str = typer.Option(..., "--artist", help="Primary artist"),
    album: str = typer.Option(..., "--album", help="Album title"),
    artwork_url: Optional[str] = typer.Option(None, "--artwork-url", help="Cover art URL"),
    force: bool = typer.Option(False, "--force", help="Reprocess even inside the idempotency window"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Ingest one track inline and print the resulting event."""
    settings = _settings(log_level)
    request = TrackIngestionRequest(
        isrc=isrc,
        title=title,
        artist=artist,
        album=album,
        artwork_url=artwork_url,
        force_reprocess=force,
    )

    async def _run() -> Any:
        async with TrackSearchRuntime(settings) as runtime:
            return await runtime.orchestrator.run(request)

    try:
        event = asyncio.run(_run())
    except TrackSearchError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)
    _echo_json(event.to_dict())
    if not event.completed:
        raise typer.Exit(1)


@app.command()
def resume(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Resume pending, running and retrying runs found in the ledger."""
    settings = _settings(log_level)

    async def _run() -> list[Any]:
        async with TrackSearchRuntime(settings) as runtime:
            await runtime.orchestrator.resume_pending()
            return await runtime.orchestrator.drain()

    try:
        events = asyncio.run(_run())
    except TrackSearchError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)
    _echo_json([event.to_dict() for event in events])


@app.command()
def search(
    text: str = typer.Argument(..., help="Free-text discovery query"),
    top_k: int = typer.Option(10, "--top-k", "-k", help="Number of results (1-50)"),
    expand: bool = typer.Option(False, "--expand", help="Expand the query into paraphrases"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Run a hybrid query and print the ranked tracks."""
    settings = _settings(log_level)

    async def _run() -> Any:
        async with TrackSearchRuntime(settings) as runtime:
            return await runtime.search.search(
                QueryRequest(query_text=text, top_k=top_k, expand=expand)
            )

    try:
        response = asyncio.run(_run())
    except TrackSearchError as exc:
        typer.echo(f"✗ Error: {exc}", err=True)
        raise typer.Exit(1)
    _echo_json(
        {
            "query": response.query_text,
            "expanded_queries": response.expanded_queries,
            "took_ms": response.took_ms,
            "hits": [hit.to_dict() for hit in response.hits],
        }
    )


@app.command()
def runs() -> None:
    """Print run counts per status and the number of recorded steps."""
    settings = load_settings()
    ledger = StepLedger(settings.ingestion.ledger_path)
    try:
        _echo_json(ledger.stats())
    finally:
        ledger.close()


def main() -> None:
    app()


if __name__ == "__main__":
    main()
