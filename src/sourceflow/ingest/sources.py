"""Replace-mode ingestion for uploaded files, pasted text, and Q&A pairs.

Dispatch by file extension:
  .pdf                       → pypdf, pages joined with form feeds (page mode)
  .html / .htm               → bs4 cleanup + html2text
  .md .markdown .txt .text .rst .csv .log → decoded as UTF-8
"""

from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import PurePath

import html2text
import pypdf
from bs4 import BeautifulSoup

from sourceflow.config import ChunkersCfg
from sourceflow.db.models import Chunk, Source
from sourceflow.db.storage import Storage
from sourceflow.ingest.chunker import TextChunker
from sourceflow.ingest.persistence import ChunkWriter, chunker_for
from sourceflow.objects import LocalObjectStore

logger = logging.getLogger(__name__)

_PDF_EXTS = {".pdf"}
_HTML_EXTS = {".html", ".htm"}
_TEXT_EXTS = {".md", ".markdown", ".txt", ".text", ".rst", ".csv", ".log"}
SUPPORTED_EXTENSIONS = _PDF_EXTS | _HTML_EXTS | _TEXT_EXTS

_h2t = html2text.HTML2Text()
_h2t.ignore_links = True
_h2t.ignore_images = True
_h2t.body_width = 0


class UnsupportedFileError(ValueError):
    """Raised for uploads whose extension has no text extractor."""


@dataclass
class QAPair:
    questions: list[str]
    answer: str


@dataclass
class ExtractedText:
    text: str
    page_count: int | None = None


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------

def extract_file_text(data: bytes, filename: str) -> ExtractedText:
    """Extract plain text from uploaded file bytes.

    Args:
        data: Raw file contents.
        filename: Original filename; its extension selects the extractor.

    Returns:
        The extracted text. PDFs also report their page count and separate
        pages with ``\\f``.

    Raises:
        UnsupportedFileError: If the extension is not supported.
    """
    ext = PurePath(filename).suffix.lower()
    if ext in _PDF_EXTS:
        reader = pypdf.PdfReader(io.BytesIO(data))
        pages = [(page.extract_text() or "").strip() for page in reader.pages]
        return ExtractedText(text="\f".join(pages), page_count=len(reader.pages))
    if ext in _HTML_EXTS:
        soup = BeautifulSoup(data.decode("utf-8", errors="replace"), "html.parser")
        for tag in soup.find_all(["script", "style", "noscript", "head"]):
            tag.decompose()
        return ExtractedText(text=_h2t.handle(str(soup)).strip())
    if ext in _TEXT_EXTS:
        return ExtractedText(text=data.decode("utf-8", errors="replace"))
    raise UnsupportedFileError(
        f"Unsupported file type '{ext or filename}'. "
        f"Accepted: {', '.join(sorted(SUPPORTED_EXTENSIONS))}"
    )


def format_qa(pairs: Sequence[QAPair]) -> str:
    """Render Q&A pairs as blank-line separated blocks, one block per pair."""
    blocks: list[str] = []
    for pair in pairs:
        lines = [f"Q: {q.strip()}" for q in pair.questions if q.strip()]
        lines.append(f"A: {pair.answer.strip()}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


def reconstruct_content(chunks: Sequence[Chunk]) -> str:
    """Rebuild readable text from stored chunks, dropping overlapping regions.

    Chunks are grouped by ``page_url`` (in order of first appearance) and
    stitched in position order using their ``start_char``/``end_char``
    offsets. Groups are separated by a blank line.
    """
    groups: dict[str | None, list[Chunk]] = {}
    for chunk in sorted(chunks, key=lambda c: c.position):
        groups.setdefault(chunk.metadata.get("page_url"), []).append(chunk)

    parts: list[str] = []
    for group in groups.values():
        text = ""
        covered = None
        for chunk in group:
            start = chunk.metadata.get("start_char")
            end = chunk.metadata.get("end_char")
            if start is None or end is None or covered is None:
                text = f"{text}\n\n{chunk.content}" if text else chunk.content
            elif start >= covered:
                text = f"{text}\n\n{chunk.content}"
            elif end > covered:
                text += chunk.content[covered - start :]
            if end is not None:
                covered = end if covered is None else max(covered, end)
        parts.append(text)
    return "\n\n".join(parts)


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------

class SourceIngestor:
    """Chunk and persist non-website sources in replace mode.

    Each call moves the source to ``processing``, replaces its chunks, and
    finishes with ``ready``. Any failure sets ``error`` with the message and
    re-raises.
    """

    def __init__(
        self,
        storage: Storage,
        chunkers: ChunkersCfg | None = None,
        objects: LocalObjectStore | None = None,
        writer: ChunkWriter | None = None,
    ) -> None:
        self._storage = storage
        self._chunkers = chunkers or ChunkersCfg()
        self._objects = objects
        self._writer = writer or ChunkWriter(storage)

    async def ingest_text(self, source: Source, text: str, title: str | None = None) -> int:
        """Replace the chunks of a text source with chunks of *text*."""
        metadata = {"title": title} if title else {}
        return await self._ingest(source, text, chunker_for("text", self._chunkers), metadata)

    async def ingest_qa(self, source: Source, pairs: Sequence[QAPair]) -> int:
        """Replace the chunks of a Q&A source with the rendered *pairs*."""
        pair_count = sum(len(p.questions) for p in pairs)
        return await self._ingest(
            source, format_qa(pairs), chunker_for("qa", self._chunkers), {"pair_count": pair_count}
        )

    async def ingest_file(self, source: Source, data: bytes, filename: str) -> int:
        """Store *data* in the object store, extract its text and chunk it."""
        metadata: dict[str, object] = {"filename": filename}
        try:
            if self._objects is not None:
                key = f"{source.agent_id}/{source.id}/{PurePath(filename).name}"
                metadata["storage_path"] = self._objects.upload(key, data)
            extracted = extract_file_text(data, filename)
        except Exception as exc:
            await self._mark_error(source, exc)
            raise
        if extracted.page_count is not None:
            metadata["page_count"] = extracted.page_count

        chunker = chunker_for("file", self._chunkers)
        if extracted.page_count is not None:
            chunker = TextChunker(
                max_size=chunker.max_size,
                overlap=chunker.overlap,
                min_size=chunker.min_size,
                split_on="page",
            )
        return await self._ingest(source, extracted.text, chunker, metadata, size_bytes=len(data))

    async def _ingest(
        self,
        source: Source,
        content: str,
        chunker: TextChunker,
        metadata: dict[str, object],
        size_bytes: int | None = None,
    ) -> int:
        await self._storage.update_source(source.id, status="processing", error_message=None)
        try:
            count = await self._writer.replace(source, content, chunker)
        except Exception as exc:
            await self._mark_error(source, exc)
            raise
        size = size_bytes if size_bytes is not None else len(content.encode("utf-8"))
        await self._storage.update_source(
            source.id,
            status="ready",
            size_kb=round(size / 1024, 2),
            metadata=metadata,
        )
        logger.info("Ingested %s source %s: %d chunks", source.type, source.id, count)
        return count

    async def _mark_error(self, source: Source, exc: Exception) -> None:
        logger.error("Ingestion of source %s failed: %s", source.id, exc)
        try:
            await self._storage.update_source(source.id, status="error", error_message=str(exc))
        except Exception:
            logger.exception("Could not record failure of source %s", source.id)
