"""sourceflow CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.logging import RichHandler

from sourceflow.cli.chunks import chunks_cmd
from sourceflow.cli.crawl import crawl_cmd, recrawl_cmd
from sourceflow.cli.ingest import add_file_cmd, add_qa_cmd, add_text_cmd
from sourceflow.cli.init import init_cmd
from sourceflow.cli.remove import remove_cmd
from sourceflow.cli.status import status_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("sourceflow")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"sourceflow {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="sourceflow",
    help=(
        "sourceflow — crawl websites and documents into chunked knowledge sources.\n\n"
        "  sourceflow crawl URL      Crawl a site, storing chunks page by page.\n"
        "  sourceflow status         Show sources and live crawl progress."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log pipeline activity."),
    ] = False,
) -> None:
    """sourceflow — content ingestion pipeline."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=False, rich_tracebacks=True)],
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


app.command("init")(init_cmd)
app.command("crawl")(crawl_cmd)
app.command("recrawl")(recrawl_cmd)
app.command("add-text")(add_text_cmd)
app.command("add-qa")(add_qa_cmd)
app.command("add-file")(add_file_cmd)
app.command("status")(status_cmd)
app.command("chunks")(chunks_cmd)
app.command("remove")(remove_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed sourceflow version."""
    typer.echo(f"sourceflow {_installed_version()}")


if __name__ == "__main__":
    app()
