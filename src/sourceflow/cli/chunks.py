"""sourceflow chunks — inspect the stored chunks of a source.

Usage:
  sourceflow chunks <source-id>
  sourceflow chunks <source-id> --reconstruct > page-text.txt
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from sourceflow.cli.errors import err_no_db, err_source_not_found
from sourceflow.db.connection import Database
from sourceflow.db.repository import Repository
from sourceflow.db.schema import initialize
from sourceflow.ingest.sources import reconstruct_content

console = Console()

_DEFAULT_DB = Path(".sourceflow.db")
_PREVIEW_CHARS = 80


def chunks_cmd(
    source_id: Annotated[str, typer.Argument(help="Source id.")],
    reconstruct: Annotated[
        bool,
        typer.Option("--reconstruct", help="Print the source text rebuilt from its chunks."),
    ] = False,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", min=1, help="Maximum rows to list."),
    ] = 50,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .sourceflow.db."),
    ] = _DEFAULT_DB,
) -> None:
    """List a source's chunks, or rebuild its text."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = _open_db(db)
    repo = Repository(conn)
    try:
        if repo.get_source(source_id) is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)
        chunks = repo.list_chunks(source_id)
    finally:
        conn.close()

    if reconstruct:
        typer.echo(reconstruct_content(chunks))
        return

    if not chunks:
        console.print("[dim]No chunks stored for this source.[/]")
        return

    table = Table(title=f"Chunks of {source_id} ({len(chunks)} total)")
    table.add_column("Pos", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Hash", style="dim")
    table.add_column("Page", overflow="fold")
    table.add_column("Preview", overflow="ellipsis")
    for chunk in chunks[:limit]:
        preview = chunk.content[:_PREVIEW_CHARS].replace("\n", " ")
        table.add_row(
            str(chunk.position),
            str(chunk.tokens),
            chunk.content_hash,
            chunk.metadata.get("page_url", ""),
            preview,
        )
    console.print(table)
    if len(chunks) > limit:
        console.print(f"[dim]… {len(chunks) - limit} more (use --limit)[/]")


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
