"""sourceflow remove — source lifecycle management.

Removes a source and all its associated data:
  - chunks (cascade via foreign key)
  - uploaded file in the object store (file sources)
  - source record

Usage:
  sourceflow remove 3f2c1a9e-...
  sourceflow remove 3f2c1a9e-... --yes
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from sourceflow.cli.errors import err_config, err_no_db, err_source_not_found
from sourceflow.config import ConfigError, load_config
from sourceflow.db.connection import Database
from sourceflow.db.repository import Repository
from sourceflow.db.schema import initialize
from sourceflow.objects import LocalObjectStore, ObjectPathError

console = Console()

_DEFAULT_DB = Path(".sourceflow.db")


def remove_cmd(
    source_id: Annotated[str, typer.Argument(help="Id of the source to remove.")],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .sourceflow.db."),
    ] = _DEFAULT_DB,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a source and all its chunks."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    conn = _open_db(db)
    repo = Repository(conn)

    try:
        existing = repo.get_source(source_id)
        if existing is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(0)

        chunk_count = repo.count_chunks_by_source(existing.id)
        storage_path = existing.metadata.get("storage_path")

        console.print(f"\nRemove source: [bold]{existing.origin}[/] ({existing.type})")
        console.print(
            f"  Chunks: {chunk_count}  |  Stored file: {'yes' if storage_path else 'no'}"
        )

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        if storage_path:
            try:
                LocalObjectStore(cfg.storage.objects_dir).delete(storage_path)
            except ObjectPathError as exc:
                console.print(f"[yellow]⚠[/] Stored file not removed: {exc}")
        repo.delete_source(existing.id)

        console.print(f"\n[green]✓[/] Removed: {existing.origin}")
        console.print(f"  {chunk_count} chunks deleted")

    finally:
        conn.close()


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
