"""Repository pattern for all sourceflow database operations.

Single interface for sources and their chunks. Metadata documents are
validated against the typed models in sourceflow.db.metadata on the way in.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable
from typing import Any

from sourceflow.db.metadata import merge_source_metadata, validate_source_metadata
from sourceflow.db.models import SOURCE_STATUSES, SOURCE_TYPES, Chunk, Source

_UNSET: Any = object()

_SOURCE_COLUMNS = (
    "id, agent_id, project_id, type, origin, status, size_kb, chunk_count, "
    "metadata, error_message, created_at, updated_at"
)
_CHUNK_COLUMNS = (
    "id, source_id, agent_id, project_id, content, position, tokens, "
    "content_hash, metadata, created_at"
)


class Repository:
    """Data access layer for sources and chunks.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with the schema initialised
                (see sourceflow.db.schema.initialize).
        """
        self._conn = conn

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record.

        Args:
            source: Source dataclass instance to persist.

        Raises:
            ValueError: If the source type or status is unknown.
        """
        if source.type not in SOURCE_TYPES:
            raise ValueError(f"Unknown source type: {source.type!r}")
        if source.status not in SOURCE_STATUSES:
            raise ValueError(f"Unknown source status: {source.status!r}")
        metadata = validate_source_metadata(source.type, source.metadata)
        self._conn.execute(
            """
            INSERT INTO sources (id, agent_id, project_id, type, origin, status,
                                 size_kb, chunk_count, metadata, error_message)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.agent_id,
                source.project_id,
                source.type,
                source.origin,
                source.status,
                source.size_kb,
                source.chunk_count,
                json.dumps(metadata),
                source.error_message,
            ),
        )
        self._conn.commit()

    def get_source(self, source_id: str) -> Source | None:
        """Return a source by ID, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = ?",
            (source_id,),
        ).fetchone()
        return _row_to_source(row) if row else None

    def get_source_by_origin(self, origin: str, agent_id: str | None = None) -> Source | None:
        """Return the newest source with this URL/filename, or None.

        Args:
            origin: The URL or filename the source was created from.
            agent_id: Restrict the lookup to one agent.
        """
        sql = f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE origin = ?"
        params: list[Any] = [origin]
        if agent_id is not None:
            sql += " AND agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT 1"
        row = self._conn.execute(sql, params).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, agent_id: str | None = None) -> list[Source]:
        """Return sources ordered by creation time (oldest first).

        Args:
            agent_id: Only return sources owned by this agent.

        Returns:
            List of Source instances (may be empty).
        """
        sql = f"SELECT {_SOURCE_COLUMNS} FROM sources"
        params: list[Any] = []
        if agent_id is not None:
            sql += " WHERE agent_id = ?"
            params.append(agent_id)
        sql += " ORDER BY created_at, rowid"
        return [_row_to_source(r) for r in self._conn.execute(sql, params).fetchall()]

    def update_source(
        self,
        source_id: str,
        *,
        status: str | None = None,
        size_kb: float | None = None,
        chunk_count: int | None = None,
        error_message: str | None = _UNSET,
        metadata: dict[str, Any] | None = None,
    ) -> Source:
        """Update selected fields of a source and return the stored result.

        Only the arguments that are passed are written. ``metadata`` is
        shallow-merged into the stored document; passing ``error_message=None``
        clears a previous error.

        Raises:
            KeyError: If the source does not exist.
            ValueError: If *status* is unknown.
        """
        current = self.get_source(source_id)
        if current is None:
            raise KeyError(source_id)

        sets: list[str] = []
        params: list[Any] = []
        if status is not None:
            if status not in SOURCE_STATUSES:
                raise ValueError(f"Unknown source status: {status!r}")
            sets.append("status = ?")
            params.append(status)
        if size_kb is not None:
            sets.append("size_kb = ?")
            params.append(size_kb)
        if chunk_count is not None:
            sets.append("chunk_count = ?")
            params.append(chunk_count)
        if error_message is not _UNSET:
            sets.append("error_message = ?")
            params.append(error_message)
        if metadata is not None:
            merged = merge_source_metadata(current.type, current.metadata, metadata)
            sets.append("metadata = ?")
            params.append(json.dumps(merged))

        if sets:
            sets.append("updated_at = datetime('now')")
            self._conn.execute(
                f"UPDATE sources SET {', '.join(sets)} WHERE id = ?",
                (*params, source_id),
            )
            self._conn.commit()
        updated = self.get_source(source_id)
        assert updated is not None
        return updated

    def delete_source(self, source_id: str) -> None:
        """Delete a source record by ID. Chunks cascade via the foreign key.

        Args:
            source_id: UUID of the source to delete.
        """
        self._conn.execute("DELETE FROM sources WHERE id = ?", (source_id,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunks(self, chunks: Iterable[Chunk]) -> int:
        """Insert *chunks* in a single transaction. Returns the number inserted.

        Raises:
            sqlite3.IntegrityError: If a (source_id, position) pair already
                exists. Nothing from this call is committed in that case.
        """
        rows = [
            (
                c.id,
                c.source_id,
                c.agent_id,
                c.project_id,
                c.content,
                c.position,
                c.tokens,
                c.content_hash,
                json.dumps(c.metadata),
            )
            for c in chunks
        ]
        if not rows:
            return 0
        try:
            self._conn.executemany(
                """
                INSERT INTO chunks (id, source_id, agent_id, project_id, content,
                                    position, tokens, content_hash, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
        except sqlite3.Error:
            self._conn.rollback()
            raise
        self._conn.commit()
        return len(rows)

    def list_chunks(self, source_id: str) -> list[Chunk]:
        """Return all chunks of *source_id* in position order."""
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE source_id = ? ORDER BY position",
            (source_id,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks_by_source(self, source_id: str) -> int:
        """Return the number of chunks belonging to *source_id*."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE source_id = ?", (source_id,)
        ).fetchone()[0]

    def max_position(self, source_id: str) -> int:
        """Return the highest chunk position for *source_id*, or -1 if it has none."""
        row = self._conn.execute(
            "SELECT MAX(position) FROM chunks WHERE source_id = ?", (source_id,)
        ).fetchone()
        return row[0] if row[0] is not None else -1

    def delete_chunks_by_source(self, source_id: str) -> int:
        """Delete every chunk of *source_id*. Returns the number of rows removed."""
        cur = self._conn.execute("DELETE FROM chunks WHERE source_id = ?", (source_id,))
        self._conn.commit()
        return cur.rowcount

    def delete_chunk_positions(self, source_id: str, positions: Iterable[int]) -> int:
        """Delete the chunks of *source_id* at the given positions."""
        positions = list(positions)
        if not positions:
            return 0
        placeholders = ",".join("?" * len(positions))
        cur = self._conn.execute(
            f"DELETE FROM chunks WHERE source_id = ? AND position IN ({placeholders})",
            (source_id, *positions),
        )
        self._conn.commit()
        return cur.rowcount


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------

def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        agent_id=row["agent_id"],
        project_id=row["project_id"],
        type=row["type"],
        origin=row["origin"],
        status=row["status"],
        size_kb=row["size_kb"],
        chunk_count=row["chunk_count"],
        metadata=json.loads(row["metadata"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        source_id=row["source_id"],
        agent_id=row["agent_id"],
        project_id=row["project_id"],
        content=row["content"],
        position=row["position"],
        tokens=row["tokens"],
        content_hash=row["content_hash"],
        metadata=json.loads(row["metadata"]),
        created_at=row["created_at"],
    )
