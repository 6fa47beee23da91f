"""Tests for database schema initialization."""

from __future__ import annotations

import sqlite3

import pytest

from sourceflow.db.connection import Database
from sourceflow.db.schema import CURRENT_VERSION, current_version, initialize


def _table_columns(conn, table: str) -> set[str]:
    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row["name"] for row in rows}


def _table_exists(conn, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    return row is not None


def test_sources_table_exists(tmp_db):
    assert _table_exists(tmp_db, "sources")


def test_sources_columns(tmp_db):
    cols = _table_columns(tmp_db, "sources")
    assert cols == {
        "id",
        "agent_id",
        "project_id",
        "type",
        "origin",
        "status",
        "size_kb",
        "chunk_count",
        "metadata",
        "error_message",
        "created_at",
        "updated_at",
    }


def test_chunks_columns(tmp_db):
    cols = _table_columns(tmp_db, "chunks")
    assert cols == {
        "id",
        "source_id",
        "agent_id",
        "project_id",
        "content",
        "position",
        "tokens",
        "content_hash",
        "metadata",
        "created_at",
    }


def test_initialize_is_idempotent(tmp_db):
    initialize(tmp_db)
    initialize(tmp_db)
    assert current_version(tmp_db) == CURRENT_VERSION


def test_current_version_uninitialized(tmp_path):
    conn = Database(tmp_path / "empty.db").connect()
    assert current_version(conn) == 0
    conn.close()


def test_chunk_position_unique_per_source(tmp_db):
    tmp_db.execute(
        "INSERT INTO sources (id, agent_id, project_id, type, origin) "
        "VALUES ('s1', 'a', 'p', 'text', 'x')"
    )
    insert = (
        "INSERT INTO chunks (id, source_id, agent_id, project_id, content, position, "
        "tokens, content_hash) VALUES (?, 's1', 'a', 'p', 'hello', 0, 1, 'h')"
    )
    tmp_db.execute(insert, ("c1",))
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(insert, ("c2",))


def test_empty_chunk_content_rejected(tmp_db):
    tmp_db.execute(
        "INSERT INTO sources (id, agent_id, project_id, type, origin) "
        "VALUES ('s1', 'a', 'p', 'text', 'x')"
    )
    with pytest.raises(sqlite3.IntegrityError):
        tmp_db.execute(
            "INSERT INTO chunks (id, source_id, agent_id, project_id, content, position, "
            "tokens, content_hash) VALUES ('c1', 's1', 'a', 'p', '', 0, 0, 'h')"
        )
