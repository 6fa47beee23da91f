"""sourceflow rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from sourceflow.cli.errors import err_no_db
    console.print(err_no_db(".sourceflow.db"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_db(db_path: str = ".sourceflow.db") -> str:
    """No .sourceflow.db found."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  sourceflow init"
    )


def err_config(message: str) -> str:
    """A config file is invalid or contains a forbidden key."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix sourceflow.yaml or ~/.sourceflow/config.yaml and retry."
    )


def err_invalid_url(url: str, reason: str) -> str:
    """Seed URL cannot be crawled."""
    return (
        f"[red]Error:[/] Cannot crawl '{url}': {reason}\n"
        "  Pass a full site address, e.g.  sourceflow crawl https://example.com"
    )


def err_source_not_found(source_id: str) -> str:
    """Source not found in database."""
    return (
        f"[yellow]Source not found:[/] '{source_id}' is not in the knowledge base.\n"
        "  Run:  sourceflow status  to see all sources."
    )


def err_not_website(source_id: str, source_type: str) -> str:
    """recrawl called on a non-website source."""
    return (
        f"[red]Error:[/] Source '{source_id}' is a {source_type} source and cannot be crawled.\n"
        "  Only website sources support recrawl. Re-add files with  sourceflow add-file"
    )


def err_crawl_in_progress(source_id: str) -> str:
    """A crawl job for the source is already queued or running."""
    return (
        f"[red]Error:[/] A crawl for source '{source_id}' is already in progress.\n"
        f"  Wait for it to finish, then check:  sourceflow status {source_id}"
    )


def err_crawl_failed(url: str, message: str, attempts: int) -> str:
    """Crawl job failed terminally."""
    return (
        f"[red]Error:[/] Crawl of '{url}' failed after {attempts} attempt(s): {message}\n"
        "  Pages stored before the failure remain searchable.\n"
        "  Check the site is reachable, then run:  sourceflow recrawl <source-id>"
    )


def err_unsupported_file(path: str, accepted: list[str]) -> str:
    """File extension has no extractor."""
    return (
        f"[red]Error:[/] Unsupported file type: '{path}'\n"
        f"  Accepted: {', '.join(accepted)}"
    )


def err_file_not_found(path: str) -> str:
    """Input file does not exist."""
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def warn_crawl_errors(count: int, source_id: str) -> str:
    """Some pages failed during an otherwise successful crawl."""
    return (
        f"[yellow]⚠[/] {count} page(s) could not be fetched.\n"
        f"  See the list with:  sourceflow status {source_id}"
    )
