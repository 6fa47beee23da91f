"""Typed metadata documents stored alongside sources and chunks.

Source metadata is a discriminated union on ``type``; every model allows
extra keys so older rows and forward-compatible fields survive a round trip.
Updates are shallow merges: top-level keys in the patch replace stored keys.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

CrawlPhase = Literal["discovering", "processing", "completed", "failed"]


class CrawlError(BaseModel):
    url: str
    error: str


class CrawlProgress(BaseModel):
    """Snapshot of a running crawl, mirrored on the progress channel.

    ``completed_page`` is set on the event emitted after a page finishes and
    is never persisted.
    """

    model_config = ConfigDict(extra="ignore", arbitrary_types_allowed=True)

    phase: CrawlPhase
    pages_processed: int = 0
    total: int = 0
    current_url: str | None = None
    discovered_links: int = 0
    error: str | None = None
    completed_page: Any = Field(default=None, exclude=True)


class _SourceMetadataBase(BaseModel):
    model_config = ConfigDict(extra="allow")


class WebsiteMetadata(_SourceMetadataBase):
    type: Literal["website"] = "website"
    url: str | None = None
    crawl_subpages: bool = True
    max_pages: int | None = Field(default=None, ge=1, le=10_000)
    include_paths: list[str] = Field(default_factory=list)
    exclude_paths: list[str] = Field(default_factory=list)
    slow: bool = False
    full_page_content: bool = False
    pages_crawled: int | None = None
    crawled_pages: list[str] = Field(default_factory=list)
    discovered_links: list[str] = Field(default_factory=list)
    crawl_errors: list[CrawlError] = Field(default_factory=list)
    total_chunks: int | None = None
    processed_pages: int | None = None
    crawl_progress: CrawlProgress | None = None
    crawl_started_at: str | None = None
    crawl_completed_at: str | None = None
    used_browser_fallback: bool | None = None


class FileMetadata(_SourceMetadataBase):
    type: Literal["file"] = "file"
    filename: str | None = None
    storage_path: str | None = None
    content_type: str | None = None
    page_count: int | None = None


class TextMetadata(_SourceMetadataBase):
    type: Literal["text"] = "text"
    title: str | None = None


class QAMetadata(_SourceMetadataBase):
    type: Literal["qa"] = "qa"
    pair_count: int | None = None


SourceMetadata = Annotated[
    Union[WebsiteMetadata, FileMetadata, TextMetadata, QAMetadata],
    Field(discriminator="type"),
]

_SOURCE_METADATA = TypeAdapter(SourceMetadata)


class ChunkMetadata(BaseModel):
    """Per-chunk positional and provenance metadata."""

    model_config = ConfigDict(extra="allow")

    chunk_index: int
    total_chunks: int
    start_char: int
    end_char: int
    page_url: str | None = None
    page_title: str | None = None
    root_url: str | None = None
    crawl_timestamp: str | None = None
    depth: int | None = None
    truncated: bool = False
    original_size: int | None = None


def validate_source_metadata(source_type: str, data: dict[str, Any]) -> dict[str, Any]:
    """Validate *data* against the metadata model for *source_type*.

    Args:
        source_type: One of website, file, text, qa.
        data: Raw metadata document (may omit ``type``).

    Returns:
        The JSON-ready document with ``None`` fields dropped.

    Raises:
        ValueError: If ``data["type"]`` disagrees with *source_type*.
        pydantic.ValidationError: If a known field has the wrong shape.
    """
    declared = data.get("type", source_type)
    if declared != source_type:
        raise ValueError(
            f"Metadata type '{declared}' does not match source type '{source_type}'"
        )
    doc = {**data, "type": source_type}
    model = _SOURCE_METADATA.validate_python(doc)
    return model.model_dump(mode="json", exclude_none=True)


def merge_source_metadata(
    source_type: str, current: dict[str, Any], patch: dict[str, Any]
) -> dict[str, Any]:
    """Shallow-merge *patch* into *current* and validate the result."""
    merged = {**current, **patch}
    return validate_source_metadata(source_type, merged)
