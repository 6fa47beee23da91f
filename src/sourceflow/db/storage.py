"""Async storage boundary used by the ingestion pipeline.

The pipeline only talks to the ``Storage`` protocol. ``SqliteStorage`` is the
shipped implementation: it runs the blocking Repository calls in a worker
thread, one at a time, over a single shared connection.
"""

from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from sourceflow.db.connection import Database
from sourceflow.db.models import Chunk, Source
from sourceflow.db.repository import Repository
from sourceflow.db.schema import initialize


class Storage(Protocol):
    """Relational store operations the pipeline depends on."""

    async def insert_chunks(self, chunks: Sequence[Chunk]) -> int: ...

    async def delete_chunks(self, source_id: str) -> int: ...

    async def delete_chunk_positions(self, source_id: str, positions: Sequence[int]) -> int: ...

    async def max_position(self, source_id: str) -> int: ...

    async def count_chunks(self, source_id: str) -> int: ...

    async def list_chunks(self, source_id: str) -> list[Chunk]: ...

    async def update_source(self, source_id: str, **fields: Any) -> Source: ...

    async def get_source(self, source_id: str) -> Source | None: ...


class SqliteStorage:
    """``Storage`` over a sqlite3 connection and the sync Repository."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Wrap *conn*, which must have been opened with ``threaded=True``."""
        self._conn = conn
        self.repo = Repository(conn)
        self._lock = asyncio.Lock()

    @classmethod
    def open(cls, db_path: Path | str) -> SqliteStorage:
        """Open (and migrate) the database at *db_path*."""
        conn = Database(db_path).connect(threaded=True)
        initialize(conn)
        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    async def _run(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(fn, *args, **kwargs)

    async def insert_chunks(self, chunks: Sequence[Chunk]) -> int:
        return await self._run(self.repo.add_chunks, list(chunks))

    async def delete_chunks(self, source_id: str) -> int:
        return await self._run(self.repo.delete_chunks_by_source, source_id)

    async def delete_chunk_positions(self, source_id: str, positions: Sequence[int]) -> int:
        return await self._run(self.repo.delete_chunk_positions, source_id, list(positions))

    async def max_position(self, source_id: str) -> int:
        return await self._run(self.repo.max_position, source_id)

    async def count_chunks(self, source_id: str) -> int:
        return await self._run(self.repo.count_chunks_by_source, source_id)

    async def list_chunks(self, source_id: str) -> list[Chunk]:
        return await self._run(self.repo.list_chunks, source_id)

    async def update_source(self, source_id: str, **fields: Any) -> Source:
        return await self._run(self.repo.update_source, source_id, **fields)

    async def get_source(self, source_id: str) -> Source | None:
        return await self._run(self.repo.get_source, source_id)
