"""CLI for cc-logdb."""

import logging
import time
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from cc_logdb import __version__
from cc_logdb.config import ConfigError, Settings

app = typer.Typer(
    name="cc-logdb",
    help="Index Claude Code transcripts into SQLite for keyword and semantic search.",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    if value:
        console.print(f"cc-logdb {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option("--version", "-v", callback=version_callback, is_eager=True),
    ] = None,
    verbose: Annotated[bool, typer.Option("--verbose", help="Debug logging")] = False,
) -> None:
    """Index and search Claude Code transcripts."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ConfigError as exc:
        err_console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from None


def open_db(settings: Settings):
    from cc_logdb.storage import SchemaError, open_index

    try:
        return open_index(settings.db_path, settings.embed_dim)
    except SchemaError as exc:
        err_console.print(f"[red]Error:[/] {exc}\n  Run:  cc-logdb sync --rebuild")
        raise typer.Exit(1) from None


@app.command()
def sync(
    no_embed: Annotated[
        bool, typer.Option("--no-embed", help="Only sync messages, skip chunks and embeddings")
    ] = False,
    refresh_stale: Annotated[
        bool,
        typer.Option("--refresh-stale", help="Rebuild complete chunks whose content changed"),
    ] = False,
    rebuild: Annotated[
        bool, typer.Option("--rebuild", help="Delete the index and sync from scratch")
    ] = False,
) -> None:
    """Sync transcripts into the index."""
    from cc_logdb.embeddings import create_embedder
    from cc_logdb.indexer import run_sync
    from cc_logdb.storage import reset_index

    settings = load_settings()
    if rebuild:
        console.print(f"[yellow]Removing {settings.db_path}[/yellow]")
        reset_index(settings.db_path)

    conn = open_db(settings)
    embedder = None if no_embed else create_embedder(settings)

    console.print("Syncing messages and embeddings..." if embedder else "Syncing messages...")
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Embedding sessions", total=None, visible=False)

        def on_progress(done: int, total: int, chars: int, total_chars: int) -> None:
            progress.update(
                task,
                completed=done,
                total=total,
                visible=True,
                description=f"{done} of {total} sessions ({chars:,} / ~{total_chars:,} chars)",
            )

        try:
            summary = run_sync(
                conn,
                settings.projects_dir,
                settings.history_path,
                embedder=embedder,
                refresh_stale=refresh_stale,
                progress=on_progress,
            )
        finally:
            conn.close()

    console.print(
        f"  {summary.new_messages} new messages "
        f"({summary.new_sessions} new sessions, {summary.updated_sessions} updated, "
        f"{summary.files_unchanged} unchanged)"
    )
    if summary.malformed_lines or summary.history_malformed_lines:
        console.print(
            f"  [yellow]skipped {summary.malformed_lines} malformed transcript lines, "
            f"{summary.history_malformed_lines} malformed history lines[/yellow]"
        )
    if summary.files_failed:
        console.print(f"  [yellow]{summary.files_failed} files failed[/yellow]")

    report = summary.embedding
    if report is not None:
        if report.provider_unreachable:
            console.print(
                f"  [yellow]Embedding provider unreachable at {settings.ollama_url}; "
                f"{report.pending} sessions left for the next sync[/yellow]"
            )
        else:
            console.print(f"  {report.embedded} sessions embedded")
            if report.failed:
                console.print(f"  [yellow]{report.failed} sessions failed to embed[/yellow]")

    console.print(f"Total: {summary.total_messages} messages, {summary.total_chunks} chunks")
    console.print(f"Written to {settings.db_path}")

    if report is not None and report.dimension_error:
        err_console.print(
            f"[red]Error:[/] {report.dimension_error}\n"
            f"  Check EMBED_MODEL ({settings.embed_model}) and EMBED_DIM ({settings.embed_dim})."
        )
        raise typer.Exit(1)


@app.command()
def search(
    query: Annotated[str, typer.Argument(help="Search query")],
    semantic: Annotated[
        bool, typer.Option("--semantic", "-s", help="Semantic search over session embeddings")
    ] = False,
    project: Annotated[
        str | None, typer.Option("--project", "-p", help="Filter by project path (GLOB pattern)")
    ] = None,
    days: Annotated[
        float | None, typer.Option("--days", "-d", help="Only search the last N days")
    ] = None,
    limit: Annotated[int, typer.Option("--limit", "-n", help="Max results")] = 10,
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Search messages by keyword (FTS5 syntax: AND, OR, NOT, "phrase", prefix*) or by meaning."""
    from cc_logdb.embeddings import DimensionMismatchError, EmbeddingError, create_embedder
    from cc_logdb.searcher import (
        SearchEngine,
        SearchError,
        format_json_output,
        format_keyword_results,
        format_semantic_results,
    )

    if not query.strip():
        err_console.print("[red]Error: Query required[/red]")
        raise typer.Exit(1)

    settings = load_settings()
    conn = open_db(settings)
    engine = SearchEngine(conn, embedder=create_embedder(settings) if semantic else None)

    start_time = time.time()
    try:
        if semantic:
            hits = engine.vector_search(query, project=project, days=days, limit=limit)
        else:
            hits = engine.keyword_search(query, project=project, days=days, limit=limit)
    except (SearchError, EmbeddingError, DimensionMismatchError) as exc:
        err_console.print(f"[red]Error:[/] {exc}")
        console.print("0 results")
        raise typer.Exit(1) from None
    finally:
        conn.close()
    search_time_ms = int((time.time() - start_time) * 1000)

    if json_output:
        format_json_output(hits, query, search_time_ms)
    elif semantic:
        format_semantic_results(hits)
    else:
        format_keyword_results(hits, query)


@app.command()
def session(
    session_id: Annotated[str, typer.Argument(help="Session ID (from search results)")],
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """Show the messages of one session."""
    from cc_logdb.searcher import SearchEngine, format_json_output, format_session

    settings = load_settings()
    conn = open_db(settings)
    messages = SearchEngine(conn).session_messages(session_id)
    conn.close()

    if json_output:
        format_json_output(messages, None, 0)
    elif not messages:
        console.print(f"[yellow]No messages for session {session_id}[/yellow]")
    else:
        format_session(messages)


@app.command()
def status() -> None:
    """Show index statistics."""
    from cc_logdb.storage import get_index_stats

    settings = load_settings()
    conn = open_db(settings)
    stats = get_index_stats(conn, settings.db_path)
    conn.close()

    console.print(f"Sessions indexed: {stats['session_count']}")
    console.print(f"Messages indexed: {stats['message_count']}")
    console.print(f"Chunks: {stats['chunk_count']} ({stats['embedded_count']} embedded)")
    console.print(f"Index path: {stats['index_path']} ({stats['index_size_human']})")
    if stats["last_synced"]:
        console.print(f"Last synced: {stats['last_synced']}")


@app.command()
def projects(
    json_output: Annotated[bool, typer.Option("--json", help="Output as JSON")] = False,
) -> None:
    """List all indexed projects."""
    from cc_logdb.storage import get_all_projects

    settings = load_settings()
    conn = open_db(settings)
    project_list = get_all_projects(conn)
    conn.close()

    if not project_list:
        console.print("[yellow]No projects indexed. Run 'cc-logdb sync' first.[/yellow]")
        return

    if json_output:
        console.print_json(data={"projects": project_list})
    else:
        for proj in project_list:
            console.print(
                f"[cyan]{proj['project']}[/cyan] "
                f"({proj['sessions']} sessions, {proj['messages']} messages)"
            )


if __name__ == "__main__":
    app()
