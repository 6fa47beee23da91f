"""sourceflow status — list sources, or show one source in detail."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sourceflow.cli.errors import err_no_db, err_source_not_found
from sourceflow.db.connection import Database
from sourceflow.db.models import Source
from sourceflow.db.repository import Repository
from sourceflow.db.schema import initialize

console = Console()

_DEFAULT_DB = Path(".sourceflow.db")

_STATUS_STYLE = {
    "pending": "dim",
    "queued": "cyan",
    "processing": "yellow",
    "ready": "green",
    "error": "red",
}


def status_cmd(
    source_id: Annotated[
        str | None,
        typer.Argument(help="Show details for this source only."),
    ] = None,
    agent: Annotated[
        str | None,
        typer.Option("--agent", "-a", help="Only list sources of this agent."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .sourceflow.db."),
    ] = _DEFAULT_DB,
) -> None:
    """Show source status, chunk counts and crawl progress."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = _open_db(db)
    repo = Repository(conn)
    try:
        if source_id is None:
            _show_sources_table(repo.list_sources(agent_id=agent))
            return
        source = repo.get_source(source_id)
        if source is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)
        _show_source_panel(source)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def _status_text(status: str) -> str:
    style = _STATUS_STYLE.get(status, "white")
    return f"[{style}]{status}[/]"


def _show_sources_table(sources: list[Source]) -> None:
    if not sources:
        console.print(
            Panel(
                "[dim]No sources yet.[/]\n"
                "  Run:  sourceflow crawl <url>   or   sourceflow add-file <path>",
                title="[bold]Sources[/]",
                expand=False,
            )
        )
        return

    table = Table(title="Sources")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Type")
    table.add_column("Origin", overflow="fold")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Size (KB)", justify="right")
    for s in sources:
        table.add_row(
            s.id,
            s.type,
            s.origin,
            _status_text(s.status),
            str(s.chunk_count),
            f"{s.size_kb:.1f}",
        )
    console.print(table)


def _show_source_panel(source: Source) -> None:
    meta = source.metadata
    lines = [
        f"ID:        {source.id}",
        f"Type:      {source.type}",
        f"Origin:    {source.origin}",
        f"Status:    {_status_text(source.status)}",
        f"Chunks:    [bold]{source.chunk_count}[/]",
        f"Size:      {source.size_kb:.1f} KB",
        f"Agent:     {source.agent_id}  |  Project: {source.project_id}",
    ]
    if source.error_message:
        lines.append(f"Error:     [red]{source.error_message}[/]")

    progress = meta.get("crawl_progress")
    if progress:
        lines.append(
            f"Progress:  {progress.get('phase')}  "
            f"{progress.get('pages_processed', 0)}/{progress.get('total', 0)} pages"
        )
        if progress.get("current_url"):
            lines.append(f"           [dim]{progress['current_url']}[/]")
    if "pages_crawled" in meta:
        lines.append(
            f"Crawled:   {meta['pages_crawled']} pages, "
            f"{len(meta.get('discovered_links') or [])} links discovered"
        )
    if meta.get("crawl_completed_at"):
        lines.append(f"Finished:  [dim]{meta['crawl_completed_at']}[/]")
    if meta.get("page_count") is not None:
        lines.append(f"Pages:     {meta['page_count']}")

    console.print(Panel("\n".join(lines), title="[bold]Source[/]", expand=False))

    errors = meta.get("crawl_errors") or []
    if errors:
        table = Table(title="Crawl errors")
        table.add_column("URL", overflow="fold")
        table.add_column("Error")
        for err in errors:
            table.add_row(err.get("url", ""), err.get("error", ""))
        console.print(table)


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
