"""sourceflow ingest package — chunking and chunk persistence."""

from sourceflow.ingest.chunker import TextChunker, TextSegment, content_hash, estimate_tokens
from sourceflow.ingest.persistence import ChunkWriter, PersistenceError, chunker_for

__all__ = [
    "TextChunker",
    "TextSegment",
    "content_hash",
    "estimate_tokens",
    "ChunkWriter",
    "PersistenceError",
    "chunker_for",
]
