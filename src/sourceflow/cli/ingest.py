"""sourceflow add-text / add-qa / add-file — replace-mode ingestion.

Source dispatch for add-file by extension:
  .pdf                       → pypdf pages (page-mode chunking)
  .html / .htm               → html2text
  .md .markdown .txt .text .rst .csv .log → plain text
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from sourceflow.cli.errors import err_config, err_file_not_found, err_no_db, err_unsupported_file
from sourceflow.config import ConfigError, SourceflowConfig, load_config
from sourceflow.db.models import Source, new_id
from sourceflow.db.storage import SqliteStorage
from sourceflow.ingest.sources import SUPPORTED_EXTENSIONS, QAPair, SourceIngestor
from sourceflow.objects import LocalObjectStore

console = Console()

_DEFAULT_DB = Path(".sourceflow.db")


def add_text_cmd(
    text: Annotated[
        str | None,
        typer.Argument(help="Text to add. Omit and use --from-file to read a file."),
    ] = None,
    from_file: Annotated[
        Path | None,
        typer.Option("--from-file", "-f", help="Read the text from this file."),
    ] = None,
    title: Annotated[str | None, typer.Option("--title", "-t", help="Display title.")] = None,
    agent: Annotated[str, typer.Option("--agent", "-a", help="Owning agent id.")] = "default",
    project: Annotated[str, typer.Option("--project", "-p", help="Owning project id.")] = "default",
    db: Annotated[Path, typer.Option("--db", help="Path to .sourceflow.db.")] = _DEFAULT_DB,
) -> None:
    """Add a block of text as a source."""
    if from_file is not None:
        if not from_file.is_file():
            console.print(err_file_not_found(str(from_file)))
            raise typer.Exit(1)
        text = from_file.read_text(encoding="utf-8", errors="replace")
    if not text or not text.strip():
        console.print("[red]Error:[/] No text given. Pass TEXT or --from-file PATH.")
        raise typer.Exit(1)

    origin = title or (str(from_file) if from_file else text.strip()[:60])
    _ingest(
        db,
        Source(id=new_id(), agent_id=agent, project_id=project, type="text", origin=origin),
        lambda ingestor, source: ingestor.ingest_text(source, text, title=title),
    )


def add_qa_cmd(
    question: Annotated[
        list[str],
        typer.Option("--question", "-q", help="Question text (repeatable for alternate phrasings)."),
    ],
    answer: Annotated[str, typer.Option("--answer", help="Answer text.")],
    agent: Annotated[str, typer.Option("--agent", "-a", help="Owning agent id.")] = "default",
    project: Annotated[str, typer.Option("--project", "-p", help="Owning project id.")] = "default",
    db: Annotated[Path, typer.Option("--db", help="Path to .sourceflow.db.")] = _DEFAULT_DB,
) -> None:
    """Add a question/answer pair as a source."""
    questions = [q for q in question if q.strip()]
    if not questions or not answer.strip():
        console.print("[red]Error:[/] Provide at least one --question and a non-empty --answer.")
        raise typer.Exit(1)

    pair = QAPair(questions=questions, answer=answer)
    _ingest(
        db,
        Source(id=new_id(), agent_id=agent, project_id=project, type="qa", origin=questions[0]),
        lambda ingestor, source: ingestor.ingest_qa(source, [pair]),
    )


def add_file_cmd(
    path: Annotated[Path, typer.Argument(help="File to add (.pdf, .html, .md, .txt, …).")],
    agent: Annotated[str, typer.Option("--agent", "-a", help="Owning agent id.")] = "default",
    project: Annotated[str, typer.Option("--project", "-p", help="Owning project id.")] = "default",
    db: Annotated[Path, typer.Option("--db", help="Path to .sourceflow.db.")] = _DEFAULT_DB,
) -> None:
    """Upload a document and add its text as a source."""
    if not path.is_file():
        console.print(err_file_not_found(str(path)))
        raise typer.Exit(1)
    if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
        console.print(err_unsupported_file(str(path), sorted(SUPPORTED_EXTENSIONS)))
        raise typer.Exit(1)

    data = path.read_bytes()
    _ingest(
        db,
        Source(
            id=new_id(),
            agent_id=agent,
            project_id=project,
            type="file",
            origin=path.name,
            metadata={"filename": path.name},
        ),
        lambda ingestor, source: ingestor.ingest_file(source, data, path.name),
    )


# ------------------------------------------------------------------
# Shared pipeline
# ------------------------------------------------------------------


def _ingest(
    db: Path,
    source: Source,
    run: Callable[[SourceIngestor, Source], Awaitable[int]],
) -> None:
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    storage = SqliteStorage.open(db)
    try:
        storage.repo.add_source(source)
        ingestor = _make_ingestor(storage, cfg)
        try:
            count = asyncio.run(run(ingestor, source))
        except Exception as exc:
            console.print(f"[red]Error:[/] Could not ingest '{source.origin}': {exc}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/] Added {source.type} source [bold]{source.id}[/] ({count} chunks)")
    finally:
        storage.close()


def _make_ingestor(storage: SqliteStorage, cfg: SourceflowConfig) -> SourceIngestor:
    return SourceIngestor(
        storage,
        chunkers=cfg.chunkers,
        objects=LocalObjectStore(cfg.storage.objects_dir),
    )
