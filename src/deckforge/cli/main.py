import os
import time
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from deckforge.core.config import get_pipeline_config
from deckforge.core.errors import DeckforgeError
from deckforge.core.logging_config import configure_logging, get_audit_logger
from deckforge.core.pg_store import PostgresStore
from deckforge.core.pipeline import DeckPipeline

app = typer.Typer(help="Deckforge: turn documents into flashcard decks")
console = Console()

# Initialize structured logging
configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_logs=os.getenv("JSON_LOGS", "false").lower() == "true"
)

DEFAULT_USER = os.getenv("DECKFORGE_USER", "local")


def build_pipeline() -> DeckPipeline:
    config = get_pipeline_config()
    config.validate()
    return DeckPipeline(PostgresStore(config.database_url), config)


def _fail(message: str, error: Exception) -> None:
    console.print(f"[red]{message}:[/] {error}")
    raise typer.Exit(1)


@app.command("init-db")
def init_db():
    """Create the database tables if they do not exist."""
    pipeline = build_pipeline()
    if not isinstance(pipeline.store, PostgresStore):
        console.print("[yellow]Configured store has no schema to create.[/]")
        return
    try:
        pipeline.store.create_schema()
    except DeckforgeError as e:
        _fail("Error creating schema", e)
    console.print("[green]✅ Database schema ready[/]")


@app.command()
def add(
    path: Optional[Path] = typer.Argument(None, help="File to upload (.pdf, .html, .md, .txt)"),
    url: Optional[str] = typer.Option(None, "--url", help="Web page to fetch instead of a file"),
    title: Optional[str] = typer.Option(None, help="Title for the source"),
    process: bool = typer.Option(False, "--process", help="Run the pipeline right away"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Register a file or URL as a new source."""
    if (path is None) == (url is None):
        console.print("[red]Error:[/] give either a file path or --url")
        raise typer.Exit(1)
    if path is not None and not path.is_file():
        console.print(f"[red]Error:[/] Path {path} does not exist")
        raise typer.Exit(1)

    pipeline = build_pipeline()
    try:
        if path is not None:
            source = pipeline.add_file_source(user, path, title=title)
        else:
            source = pipeline.add_url_source(user, url, title=title)
    except (DeckforgeError, ValueError) as e:
        _fail("Error adding source", e)

    console.print(f"[green]✅ Added {source.content_type} source[/] {source.id}")
    if process:
        _run_sources(pipeline, [source.id], user)


@app.command("process")
def process_cmd(
    source_ids: List[str] = typer.Argument(..., help="Source ids to process"),
    workers: int = typer.Option(4, help="Sources processed in parallel"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Run the pipeline for pending sources."""
    _run_sources(build_pipeline(), source_ids, user, workers)


def _run_sources(pipeline: DeckPipeline, source_ids: List[str], user: str, workers: int = 1) -> None:
    with console.status("[bold green]Processing sources..."):
        if len(source_ids) == 1:
            try:
                outcomes = {source_ids[0]: pipeline.process_source(source_ids[0], user).to_envelope()}
            except DeckforgeError as e:
                outcomes = {source_ids[0]: {"error": str(e)}}
        else:
            outcomes = pipeline.process_many(source_ids, user, max_workers=workers)

    failed = 0
    for source_id, outcome in outcomes.items():
        if "error" in outcome:
            failed += 1
            console.print(f"[red]❌ {source_id}:[/] {outcome['error']}")
        else:
            console.print(
                f"[green]✅ {source_id}:[/] {outcome['chunk_count']} chunks, "
                f"{outcome['card_count']} cards (deck {outcome['deck_status'] or 'none'})"
            )
    if failed:
        raise typer.Exit(1)


@app.command()
def generate(
    deck: Optional[str] = typer.Option(None, help="Deck id"),
    document: Optional[str] = typer.Option(None, help="Document id (a deck is created if needed)"),
    max_cards: Optional[int] = typer.Option(None, "--max-cards", min=1, help="Upper bound on cards"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Generate cards for a deck or document."""
    pipeline = build_pipeline()
    try:
        with console.status("[bold green]Generating cards..."):
            result = pipeline.generate_cards(user, deck_id=deck, document_id=document, max_cards=max_cards)
    except DeckforgeError as e:
        _fail("Error generating cards", e)

    if not result.ok:
        console.print(f"[red]Error generating cards:[/] {result.error}")
        raise typer.Exit(1)
    note = " (fallback)" if result.used_fallback else ""
    console.print(f"[green]✅ Deck {result.deck_id}: {result.count} cards{note}[/]")


@app.command()
def categorize(
    document: str = typer.Argument(..., help="Document id"),
    source: Optional[str] = typer.Option(None, help="Source id to tag as well"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Categorize a document."""
    pipeline = build_pipeline()
    try:
        result = pipeline.categorize(document, user, source_id=source)
    except DeckforgeError as e:
        _fail("Error categorizing document", e)

    if not result.success:
        console.print(f"[red]Error categorizing document:[/] {result.error}")
        raise typer.Exit(1)
    console.print(f"[bold]Category:[/] {result.category}")


@app.command()
def search(
    query: str,
    limit: int = typer.Option(10, help="Maximum number of results"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Semantic search over embedded chunks."""
    audit_logger = get_audit_logger("search")
    start_time = time.time()
    pipeline = build_pipeline()

    try:
        with console.status("[bold green]Searching..."):
            hits = pipeline.search(user, query, limit=limit)
    except DeckforgeError as e:
        _fail("Error during search", e)

    audit_logger.info(
        "search_completed",
        query=query,
        limit=limit,
        results_count=len(hits),
        execution_time_ms=(time.time() - start_time) * 1000,
        event_type="search"
    )

    if not hits:
        console.print("[yellow]No results found.[/]")
        return

    console.print(f"[green]Found {len(hits)} results:[/]")
    console.print()
    for i, hit in enumerate(hits, 1):
        console.print(f"[bold]{i}. {hit.document_title or hit.chunk.document_id} (chunk {hit.chunk.chunk_index})[/]")
        console.print(f"   [blue]Similarity:[/] {hit.similarity:.3f}")
        console.print(f"   [green]Snippet:[/] {hit.chunk.content[:200]}")
        for card in hit.cards:
            console.print(f"   [magenta]Card:[/] {card.front_text}")
        console.print()


@app.command()
def status(
    source_id: str,
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Show the status of a source, its document and its deck."""
    pipeline = build_pipeline()
    try:
        snapshot = pipeline.status_snapshot(source_id, user)
    except DeckforgeError as e:
        _fail("Error getting status", e)

    table = Table(title=f"Source {source_id}")
    table.add_column("Field")
    table.add_column("Value")
    for key, value in snapshot.items():
        table.add_row(key, "-" if value is None else str(value))
    console.print(table)


@app.command()
def review(
    card_id: str,
    correct: bool = typer.Option(False, "--correct/--wrong", help="Whether the answer was right"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Record a study answer for a card."""
    pipeline = build_pipeline()
    try:
        progress = pipeline.record_answer(user, card_id, correct)
    except DeckforgeError as e:
        _fail("Error recording answer", e)

    console.print(
        f"[green]✅ Recorded.[/] Reviews: {progress.reviews}, "
        f"ease: {progress.ease_factor:.2f}, next review: {progress.next_review:%Y-%m-%d %H:%M}"
    )


@app.command()
def watch(
    folder: Path = typer.Argument(..., help="Folder to watch for new files"),
    debounce: float = typer.Option(2.0, help="Seconds to wait for a file to settle"),
    user: str = typer.Option(DEFAULT_USER, help="Owning user id"),
):
    """Ingest files dropped into a folder."""
    from deckforge.core.watch_folder import UploadWatcher, WatchFolder

    watcher = UploadWatcher(folder, build_pipeline(), user, debounce_time=debounce)
    console.print(f"[bold]Watching:[/] {folder} (Ctrl+C to stop)")
    WatchFolder(watcher).run_forever()


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", help="Bind address"),
    port: int = typer.Option(8000, help="Port"),
):
    """Serve the HTTP API."""
    import uvicorn

    from deckforge.api.app import create_app

    uvicorn.run(create_app(build_pipeline()), host=host, port=port)


if __name__ == "__main__":
    app()
