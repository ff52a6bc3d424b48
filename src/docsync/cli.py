"""Command line interface for DocSync."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from docsync.config import AppConfig, EmbeddingSettings, SourceSettings
from docsync.engine import SyncEngine
from docsync.errors import DocSyncError
from docsync.models import SyncState

T = TypeVar("T")

console = Console()
app = typer.Typer(help="DocSync - keep document folders searchable with hybrid search")

DATA_DIR_OPTION = typer.Option(None, "--data-dir", help="Directory holding profiles and indexes")
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Verbose logging")


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="[%(levelname)s] %(message)s")


def _engine(data_dir: Optional[Path]) -> SyncEngine:
    return SyncEngine(AppConfig(data_dir=data_dir))


def _run(engine: SyncEngine, action: Callable[[SyncEngine], Awaitable[T]]) -> T:
    """Run one async engine action, then close the engine."""

    async def _main() -> T:
        try:
            return await action(engine)
        finally:
            await engine.close()

    try:
        return asyncio.run(_main())
    except DocSyncError as exc:
        console.print(f"[red]{type(exc).__name__}: {exc}[/red]")
        raise typer.Exit(code=1) from exc


def _print_state(state: SyncState, stats: Optional[dict] = None) -> None:
    table = Table(show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    table.add_row("Phase", state.phase.value)
    table.add_row("Files seen", str(state.files_seen))
    table.add_row("Processed", str(state.files_processed))
    table.add_row("Skipped", str(state.files_skipped))
    table.add_row("Failed", str(state.files_failed))
    table.add_row("Removed", str(state.files_removed))
    last_run = (
        datetime.fromtimestamp(state.last_run_at).isoformat(timespec="seconds")
        if state.last_run_at
        else "never"
    )
    table.add_row("Last run", last_run)
    if state.last_error:
        table.add_row("Last error", f"[red]{state.last_error}[/red]")
    if stats:
        table.add_row("Tracked files", str(stats["file_count"]))
        table.add_row("Chunks", str(stats["chunk_count"]))
        table.add_row("Embedded", f"{stats['embedded_count']} (dimension {stats['dimension']})")
        table.add_row("Vector search", "ready" if stats["vectors_ready"] else "[yellow]re-embedding[/yellow]")
    console.print(table)

    for failure in state.failures:
        console.print(f"[yellow]{failure.kind}[/yellow] {failure.identifier}: {failure.message}")


@app.command("profile-add")
def profile_add(
    name: str = typer.Argument(..., help="Profile name"),
    folder: Optional[Path] = typer.Option(None, "--folder", help="Local folder to sync", resolve_path=True),
    drive_folder: Optional[str] = typer.Option(None, "--drive-folder", help="Google Drive folder id"),
    drive_id: Optional[str] = typer.Option(None, "--drive-id", help="Shared drive id"),
    root_name: str = typer.Option("My Drive", "--root-name", help="Display name of the drive root"),
    token_env: str = typer.Option("GOOGLE_DRIVE_TOKEN", "--token-env", help="Env var with the Drive access token"),
    provider: str = typer.Option("local", help="Embedding provider: local or remote"),
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    dimension: Optional[int] = typer.Option(None, help="Embedding dimension (remote provider)"),
    extensions: Optional[List[str]] = typer.Option(None, "--ext", help="Accepted file extension (repeatable)"),
    recursive: bool = typer.Option(True, "--recursive/--no-recursive", help="Include subfolders"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Create a sync profile for a local folder or a Drive folder."""
    _setup_logging(verbose)
    if (folder is None) == (drive_folder is None):
        raise typer.BadParameter("Pass exactly one of --folder or --drive-folder")
    if folder is not None and not folder.is_dir():
        raise typer.BadParameter(f"Folder not found: {folder}")

    if folder is not None:
        source = SourceSettings(kind="local", root=str(folder))
    else:
        source = SourceSettings(
            kind="drive",
            folder_id=drive_folder,
            drive_id=drive_id,
            root_name=root_name,
            token_env=token_env,
        )
    embedding_args = {"provider": provider, "dimension": dimension}
    if model:
        embedding_args["model_name"] = model
    try:
        embedding = EmbeddingSettings(**embedding_args)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    engine = _engine(data_dir)
    profile = engine.create_profile(
        name, source, embedding=embedding, extensions=extensions or None, recursive=recursive
    )
    console.print(f"Created profile [bold]{profile.id}[/bold] ({profile.source.describe()})")


@app.command("profiles")
def profiles(data_dir: Optional[Path] = DATA_DIR_OPTION) -> None:
    """List configured profiles."""
    engine = _engine(data_dir)
    items = engine.list_profiles()
    if not items:
        console.print("[yellow]No profiles configured.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Id")
    table.add_column("Name")
    table.add_column("Source")
    table.add_column("Provider")
    for profile in items:
        table.add_row(profile.id, profile.name, profile.source.describe(), profile.embedding.provider_id)
    console.print(table)


@app.command("profile-remove")
def profile_remove(
    profile_id: str = typer.Argument(..., help="Profile id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """Delete a profile and its index."""
    if not yes:
        typer.confirm(f"Delete profile {profile_id} and its index?", abort=True)
    engine = _engine(data_dir)
    _run(engine, lambda e: e.delete_profile(profile_id))
    console.print(f"Deleted profile {profile_id}")


@app.command()
def sync(
    profile_id: str = typer.Argument(..., help="Profile id"),
    watch: bool = typer.Option(False, "--watch", help="Keep watching for changes until interrupted"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Sync a profile's source into its index."""
    _setup_logging(verbose)
    engine = _engine(data_dir)

    async def _watch(e: SyncEngine) -> SyncState:
        await e.start_sync(profile_id)
        console.print("Watching for changes, press Ctrl+C to stop.")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await e.stop_sync(profile_id)

    if watch:
        try:
            _run(engine, _watch)
        except KeyboardInterrupt:
            console.print("Stopped.")
        return

    state = _run(engine, lambda e: e.run_once(profile_id))
    _print_state(state)


@app.command()
def search(
    profile_id: str = typer.Argument(..., help="Profile id"),
    query: str = typer.Argument(..., help="Query text"),
    top_k: int = typer.Option(10, help="Number of results to display"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Execute a hybrid keyword + semantic search."""
    _setup_logging(verbose)
    if top_k <= 0:
        raise typer.BadParameter("--top-k must be positive")
    engine = _engine(data_dir)
    outcome = _run(engine, lambda e: e.search_outcome(profile_id, query, top_k))

    if not outcome.vector_available:
        console.print("[yellow]Semantic search unavailable; showing keyword matches only.[/yellow]")
    if not outcome.results:
        console.print("[yellow]No matches found.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score")
    table.add_column("Match")
    table.add_column("Source")
    table.add_column("Section")
    table.add_column("Snippet")
    for result in outcome.results:
        snippet = result.snippet.replace("\n", " ")
        table.add_row(
            f"{result.score:.4f}",
            result.match_type,
            result.chunk.source_url,
            result.chunk.section,
            snippet[:180],
        )
    console.print(table)


@app.command()
def chunks(
    profile_id: str = typer.Argument(..., help="Profile id"),
    document: str = typer.Argument(..., help="Source url or file identifier of the document"),
    start: Optional[int] = typer.Option(None, help="First chunk index (inclusive)"),
    end: Optional[int] = typer.Option(None, help="Last chunk index (inclusive)"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """Print a range of chunks from one document."""
    engine = _engine(data_dir)
    items = _run(engine, lambda e: e.get_chunks(profile_id, document, start, end))
    if not items:
        console.print("[yellow]No chunks found.[/yellow]")
        return
    for chunk in items:
        heading = chunk.heading_path or chunk.section
        console.print(f"[bold]#{chunk.chunk_index + 1}/{chunk.total_chunks}[/bold] {heading}")
        console.print(chunk.content)
        console.print()


@app.command()
def neighbors(
    profile_id: str = typer.Argument(..., help="Profile id"),
    chunk_id: str = typer.Argument(..., help="Chunk id"),
    limit: int = typer.Option(10, help="Number of neighbours (at most 50)"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """List the chunks most similar to a stored chunk."""
    engine = _engine(data_dir)
    hits = _run(engine, lambda e: e.neighbors(profile_id, chunk_id, limit))
    if not hits:
        console.print("[yellow]No neighbours available.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Similarity")
    table.add_column("Chunk")
    table.add_column("Source")
    table.add_column("Section")
    for chunk, score in hits:
        table.add_row(f"{score:.4f}", chunk.chunk_id[:12], chunk.source_url, chunk.section)
    console.print(table)


@app.command()
def status(
    profile_id: str = typer.Argument(..., help="Profile id"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """Show the last sync state and index statistics."""
    engine = _engine(data_dir)

    async def _status(e: SyncEngine) -> tuple[SyncState, dict]:
        return await e.get_sync_state(profile_id), await e.stats(profile_id)

    state, stats = _run(engine, _status)
    _print_state(state, stats)


@app.command("set-provider")
def set_provider(
    profile_id: str = typer.Argument(..., help="Profile id"),
    provider: str = typer.Option(..., help="Embedding provider: local or remote"),
    model: Optional[str] = typer.Option(None, help="Embedding model name"),
    dimension: Optional[int] = typer.Option(None, help="Embedding dimension"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Switch the embedding provider; changing it re-embeds every chunk."""
    _setup_logging(verbose)
    settings_args = {"provider": provider, "dimension": dimension}
    if model:
        settings_args["model_name"] = model
    try:
        settings = EmbeddingSettings(**settings_args)
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    engine = _engine(data_dir)

    async def _switch(e: SyncEngine) -> bool:
        reset = await e.set_embedding_provider(profile_id, settings)
        await e.wait_idle(profile_id)
        return reset

    reset = _run(engine, _switch)
    if reset:
        console.print(f"Provider set to [bold]{settings.provider_id}[/bold]; vectors rebuilt.")
    else:
        console.print("Provider unchanged.")


@app.command()
def reembed(
    profile_id: str = typer.Argument(..., help="Profile id"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Embed every chunk that is missing a vector."""
    _setup_logging(verbose)
    engine = _engine(data_dir)
    state = _run(engine, lambda e: e.reembed(profile_id))
    if state.last_error:
        console.print(f"[yellow]{state.last_error}[/yellow]")
    else:
        console.print("Re-embedding complete.")


@app.command()
def clear(
    profile_id: str = typer.Argument(..., help="Profile id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """Remove all indexed data of a profile but keep the profile."""
    if not yes:
        typer.confirm(f"Clear all indexed data of {profile_id}?", abort=True)
    engine = _engine(data_dir)
    _run(engine, lambda e: e.clear_profile(profile_id))
    console.print(f"Cleared profile {profile_id}")


@app.command()
def web(
    host: str = typer.Option("127.0.0.1", help="Host interface"),
    port: int = typer.Option(8000, help="Server port"),
    data_dir: Optional[Path] = DATA_DIR_OPTION,
) -> None:
    """Start the HTTP API."""
    try:
        import uvicorn
    except ImportError as exc:  # pragma: no cover - optional dependency
        raise typer.BadParameter(
            "uvicorn is not installed. Install the web extras with \"python -m pip install '.[web]'\""
        ) from exc

    from docsync.web.app import create_app

    config = AppConfig(data_dir=data_dir)
    console.print(f"Starting API on http://{host}:{port} (data: {config.data_dir})")
    uvicorn.run(
        create_app(config=config),
        host=host,
        port=port,
        reload=False,
        log_level="info",
    )


if __name__ == "__main__":  # pragma: no cover
    app()
