"""sourceflow crawl / recrawl — crawl a website into a source.

The crawl runs through the same job queue a long-lived service would use:
the command starts the queue, enqueues one job, shows live progress from the
progress channel, and shuts the queue down when the job is finished.

Usage:
  sourceflow crawl https://example.com --max-pages 25
  sourceflow crawl example.com --include /docs --exclude "/docs/archive/*"
  sourceflow recrawl 3f2c1a9e-...
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from sourceflow.cli.errors import (
    err_config,
    err_crawl_failed,
    err_crawl_in_progress,
    err_invalid_url,
    err_no_db,
    err_not_website,
    err_source_not_found,
    warn_crawl_errors,
)
from sourceflow.config import ConfigError, SourceflowConfig, load_config
from sourceflow.crawl.urls import InvalidUrlError, normalize_seed
from sourceflow.db.models import Source, new_id
from sourceflow.db.storage import SqliteStorage
from sourceflow.events import ProgressChannel, crawl_topic
from sourceflow.jobs import JobConflictError, JobRecord, JobStatus, build_crawl_queue, start_crawl

console = Console()

_DEFAULT_DB = Path(".sourceflow.db")


def crawl_cmd(
    url: Annotated[str, typer.Argument(help="Site to crawl, e.g. https://example.com")],
    agent: Annotated[str, typer.Option("--agent", "-a", help="Owning agent id.")] = "default",
    project: Annotated[str, typer.Option("--project", "-p", help="Owning project id.")] = "default",
    max_pages: Annotated[
        int | None,
        typer.Option("--max-pages", "-n", min=1, max=10_000, help="Page budget (default from config)."),
    ] = None,
    no_subpages: Annotated[
        bool,
        typer.Option("--no-subpages", help="Only fetch the given page."),
    ] = False,
    include: Annotated[
        list[str] | None,
        typer.Option("--include", help="Only follow paths matching this prefix or glob (repeatable)."),
    ] = None,
    exclude: Annotated[
        list[str] | None,
        typer.Option("--exclude", help="Skip paths matching this prefix or glob (repeatable)."),
    ] = None,
    slow: Annotated[
        bool,
        typer.Option("--slow", help="Use the longer politeness delay between pages."),
    ] = False,
    full_page: Annotated[
        bool,
        typer.Option("--full-page", help="Keep the whole page body instead of the main content."),
    ] = False,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .sourceflow.db."),
    ] = _DEFAULT_DB,
) -> None:
    """Crawl a website and store its pages as chunks."""
    cfg = _load_config_or_exit()
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    try:
        seed = normalize_seed(url)
    except InvalidUrlError as exc:
        console.print(err_invalid_url(url, str(exc)))
        raise typer.Exit(1)

    storage = SqliteStorage.open(db)
    try:
        source = Source(
            id=new_id(),
            agent_id=agent,
            project_id=project,
            type="website",
            origin=seed,
            metadata={"url": seed},
        )
        storage.repo.add_source(source)
        console.print(f"Source [bold]{source.id}[/] → {seed}")
        _crawl_and_report(
            storage,
            cfg,
            source,
            seed,
            {
                "crawl_subpages": not no_subpages,
                "max_pages": max_pages or cfg.crawl.max_pages,
                "include_paths": include or [],
                "exclude_paths": exclude or [],
                "slow": slow,
                "full_page_content": full_page,
            },
        )
    finally:
        storage.close()


def recrawl_cmd(
    source_id: Annotated[str, typer.Argument(help="Id of a website source.")],
    max_pages: Annotated[
        int | None,
        typer.Option("--max-pages", "-n", min=1, max=10_000, help="Override the stored page budget."),
    ] = None,
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .sourceflow.db."),
    ] = _DEFAULT_DB,
) -> None:
    """Delete a website source's chunks and crawl it again."""
    cfg = _load_config_or_exit()
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    storage = SqliteStorage.open(db)
    try:
        source = storage.repo.get_source(source_id)
        if source is None:
            console.print(err_source_not_found(source_id))
            raise typer.Exit(1)
        if source.type != "website":
            console.print(err_not_website(source_id, source.type))
            raise typer.Exit(1)

        meta = source.metadata
        url = meta.get("url") or source.origin
        _crawl_and_report(
            storage,
            cfg,
            source,
            url,
            {
                "crawl_subpages": meta.get("crawl_subpages", True),
                "max_pages": max_pages or meta.get("max_pages") or cfg.crawl.max_pages,
                "include_paths": meta.get("include_paths", []),
                "exclude_paths": meta.get("exclude_paths", []),
                "slow": meta.get("slow", False),
                "full_page_content": meta.get("full_page_content", False),
            },
        )
    finally:
        storage.close()


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _load_config_or_exit() -> SourceflowConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def _crawl_and_report(
    storage: SqliteStorage,
    cfg: SourceflowConfig,
    source: Source,
    url: str,
    options: dict[str, Any],
) -> None:
    try:
        record = asyncio.run(_run_crawl(storage, cfg, source, url, options))
    except JobConflictError:
        console.print(err_crawl_in_progress(source.id))
        raise typer.Exit(1)

    if record.status == JobStatus.FAILED:
        console.print(err_crawl_failed(url, record.error or "unknown error", record.attempts))
        raise typer.Exit(1)

    final = record.result or {}
    _print_summary(source.id, final)
    errors = final.get("crawl_errors", [])
    if errors:
        console.print(warn_crawl_errors(len(errors), source.id))


async def _run_crawl(
    storage: SqliteStorage,
    cfg: SourceflowConfig,
    source: Source,
    url: str,
    options: dict[str, Any],
) -> JobRecord:
    channel = ProgressChannel()
    queue, _worker = build_crawl_queue(storage, cfg, channel=channel)
    subscription = channel.subscribe(crawl_topic(source.id))
    await queue.start()
    try:
        job_id = await start_crawl(queue, storage, source, url, **options)
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            console=console,
            transient=True,
        ) as progress:
            task = progress.add_task("Discovering…", total=options["max_pages"])
            watcher = asyncio.create_task(_follow(subscription, progress, task))
            record = await queue.wait(job_id)
            subscription.close()
            await watcher
    finally:
        subscription.close()
        await queue.shutdown(wait=False)
    return record


async def _follow(subscription: Any, progress: Progress, task: Any) -> None:
    async for event in subscription:
        phase = event.get("phase")
        if phase in ("discovering", "processing"):
            current = event.get("current_url") or ""
            progress.update(
                task,
                completed=event.get("pages_processed", 0),
                description=current[-60:] or phase,
            )
        elif phase == "completed" and "status" in event:
            progress.update(task, completed=event.get("pages_processed", 0))


def _print_summary(source_id: str, final: dict[str, Any]) -> None:
    table = Table(title="Crawl finished", show_header=False, expand=False)
    table.add_row("Source", source_id)
    table.add_row("Pages fetched", str(final.get("pages_crawled", 0)))
    table.add_row("Pages with content", str(final.get("processed_pages", 0)))
    table.add_row("Chunks", str(final.get("total_chunks", 0)))
    table.add_row("Links discovered", str(len(final.get("discovered_links") or [])))
    if final.get("used_browser_fallback"):
        table.add_row("Browser fallback", "yes")
    console.print(table)
    console.print(f"\n[green]✓[/] Source {source_id} is ready.")
