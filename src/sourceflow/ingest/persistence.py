"""Chunk persistence: turn text into chunk rows and write them in batches.

Two modes:
- replace: drop every chunk of the source, then write positions 0..N-1.
- append: continue after the source's current highest position, so content
  written so far stays queryable while a crawl is still running.

After every call the source's ``chunk_count`` is recounted from storage.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from sourceflow.config import ChunkersCfg
from sourceflow.db.metadata import ChunkMetadata
from sourceflow.db.models import Chunk, Source
from sourceflow.db.storage import Storage
from sourceflow.ingest.chunker import (
    MAX_CHUNKS,
    TextChunker,
    content_hash,
    estimate_tokens,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50


class PersistenceError(RuntimeError):
    """A storage write failed. Batches written before the failure remain."""

    retryable = True


def chunker_for(source_type: str, cfg: ChunkersCfg | None = None) -> TextChunker:
    """Return the configured chunker for *source_type*.

    Args:
        source_type: One of website, file, text, qa.
        cfg: Chunker settings; defaults to the built-in ones.

    Raises:
        ValueError: If *source_type* has no chunker settings.
    """
    cfg = cfg or ChunkersCfg()
    type_cfg = getattr(cfg, source_type, None)
    if type_cfg is None:
        raise ValueError(f"No chunker configured for source type {source_type!r}")
    return TextChunker(
        max_size=type_cfg.max_size,
        overlap=type_cfg.overlap,
        min_size=type_cfg.min_size,
        split_on=type_cfg.split_on,
    )


class ChunkWriter:
    """Write chunked content for a source through a ``Storage``.

    Args:
        storage: Async storage implementation.
        batch_size: Rows per insert call.
        max_chunks: Ceiling on chunks per source in append mode.
    """

    def __init__(
        self,
        storage: Storage,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_chunks: int = MAX_CHUNKS,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._storage = storage
        self.batch_size = batch_size
        self.max_chunks = max_chunks

    async def replace(
        self,
        source: Source,
        content: str,
        chunker: TextChunker,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Replace all chunks of *source* with chunks of *content*.

        Returns:
            Number of chunks written.

        Raises:
            PersistenceError: If a delete or insert fails.
        """
        try:
            await self._storage.delete_chunks(source.id)
        except Exception as exc:
            raise PersistenceError(f"Failed to clear chunks of source {source.id}: {exc}") from exc
        chunks = self._build(source, content, chunker, metadata or {}, first_position=0)
        return len(await self._write(source, chunks))

    async def append(
        self,
        source: Source,
        content: str,
        chunker: TextChunker,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Append chunks of *content* after the existing chunks of *source*.

        Returns:
            Number of chunks written (0 when the source is already at its
            chunk ceiling).

        Raises:
            PersistenceError: If a read or insert fails.
        """
        return len(await self.append_positions(source, content, chunker, metadata))

    async def append_positions(
        self,
        source: Source,
        content: str,
        chunker: TextChunker,
        metadata: dict[str, Any] | None = None,
    ) -> list[int]:
        """Like append(), but return the positions that were written."""
        try:
            start = await self._storage.max_position(source.id) + 1
            existing = await self._storage.count_chunks(source.id)
        except Exception as exc:
            raise PersistenceError(f"Failed to read chunks of source {source.id}: {exc}") from exc

        chunks = self._build(source, content, chunker, metadata or {}, first_position=start)
        room = max(0, self.max_chunks - existing)
        if len(chunks) > room:
            logger.warning(
                "Source %s reached the %d chunk limit; dropping %d of %d new chunks",
                source.id,
                self.max_chunks,
                len(chunks) - room,
                len(chunks),
            )
            chunks = chunks[:room]
        return await self._write(source, chunks)

    async def remove_positions(self, source: Source, positions: Sequence[int]) -> int:
        """Delete the chunks of *source* at *positions* and recount.

        Raises:
            PersistenceError: If the delete fails.
        """
        try:
            removed = await self._storage.delete_chunk_positions(source.id, list(positions))
        except Exception as exc:
            raise PersistenceError(f"Failed to delete chunks of source {source.id}: {exc}") from exc
        await self._recount(source)
        return removed

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build(
        self,
        source: Source,
        content: str,
        chunker: TextChunker,
        metadata: dict[str, Any],
        first_position: int,
    ) -> list[Chunk]:
        segments = chunker.split(content)
        chunks: list[Chunk] = []
        for i, seg in enumerate(segments):
            # Positional fields computed here override caller keys of the same name.
            meta = ChunkMetadata(
                **{
                    **metadata,
                    "chunk_index": i,
                    "total_chunks": len(segments),
                    "start_char": seg.start,
                    "end_char": seg.end,
                    "truncated": seg.truncated,
                    "original_size": seg.original_size,
                }
            )
            chunks.append(
                Chunk(
                    source_id=source.id,
                    agent_id=source.agent_id,
                    project_id=source.project_id,
                    content=seg.text,
                    position=first_position + i,
                    tokens=estimate_tokens(seg.text),
                    content_hash=content_hash(seg.text),
                    metadata=meta.model_dump(mode="json", exclude_none=True),
                )
            )
        return chunks

    async def _write(self, source: Source, chunks: list[Chunk]) -> list[int]:
        written: list[int] = []
        for i in range(0, len(chunks), self.batch_size):
            batch = chunks[i : i + self.batch_size]
            try:
                await self._storage.insert_chunks(batch)
            except Exception as exc:
                logger.error(
                    "Insert failed for source %s at batch %d (%d chunks already stored)",
                    source.id,
                    i // self.batch_size,
                    len(written),
                )
                try:
                    await self._recount(source)
                except PersistenceError:
                    logger.exception("Could not recount chunks of source %s", source.id)
                raise PersistenceError(
                    f"Failed to insert chunks for source {source.id}: {exc}"
                ) from exc
            written.extend(c.position for c in batch)
        await self._recount(source)
        return written

    async def _recount(self, source: Source) -> int:
        try:
            count = await self._storage.count_chunks(source.id)
            await self._storage.update_source(source.id, chunk_count=count)
        except Exception as exc:
            raise PersistenceError(f"Failed to update chunk count of source {source.id}: {exc}") from exc
        source.chunk_count = count
        return count
