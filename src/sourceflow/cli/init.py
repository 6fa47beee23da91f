"""sourceflow init — create the project database and config scaffold.

Creates:
  .sourceflow.db       — empty database with schema
  sourceflow.yaml      — project config template (crawl, chunkers, queue)
  .sourceflow-objects/ — local object store for uploaded files
  .gitignore entries   — when a .gitignore already exists
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from sourceflow.config import StorageCfg, write_project_config
from sourceflow.db.connection import Database
from sourceflow.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")
_DB_NAME = ".sourceflow.db"


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
) -> None:
    """Initialize a sourceflow project."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    if (project_dir / _DB_NAME).exists():
        console.print(f"[yellow]⚠[/]  {project_dir / _DB_NAME} already exists. Existing data is preserved.")

    console.print(f"\n[bold]Creating scaffold in {project_dir} …[/]\n")
    _create_database(project_dir)

    cfg_path = project_dir / "sourceflow.yaml"
    existed = cfg_path.exists()
    write_project_config(project_dir)
    console.print(f"  [green]✓[/] sourceflow.yaml{' (kept existing)' if existed else ''}")

    objects_dir = project_dir / StorageCfg().objects_dir
    objects_dir.mkdir(exist_ok=True)
    console.print(f"  [green]✓[/] {objects_dir.name}/")

    _update_gitignore(project_dir)

    console.print("\n[bold green]✓ Project initialized.[/]")
    console.print("\nNext steps:")
    console.print("  1. sourceflow crawl <url>        (crawl a website)")
    console.print("  2. sourceflow add-file <path>    (add a document)")
    console.print("  3. sourceflow status             (watch progress)")


def _create_database(project_dir: Path) -> None:
    db = Database(project_dir / _DB_NAME)
    conn = db.connect()
    initialize(conn)
    conn.close()
    console.print(f"  [green]✓[/] {_DB_NAME}")


def _update_gitignore(project_dir: Path) -> None:
    """Add sourceflow entries to .gitignore if it already exists."""
    gitignore = project_dir / ".gitignore"
    entries = [_DB_NAME, f"{_DB_NAME}-wal", f"{_DB_NAME}-shm", StorageCfg().objects_dir + "/"]

    if gitignore.exists():
        existing = gitignore.read_text(encoding="utf-8")
        to_add = [e for e in entries if e not in existing]
        if to_add:
            with gitignore.open("a", encoding="utf-8") as f:
                f.write("\n# sourceflow\n")
                for entry in to_add:
                    f.write(f"{entry}\n")
            console.print("  [green]✓[/] .gitignore (updated with sourceflow entries)")
