"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from sourceflow.db.connection import Database
from sourceflow.db.models import Source
from sourceflow.db.schema import initialize
from sourceflow.db.storage import SqliteStorage


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".sourceflow.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def storage(tmp_path):
    """Async SqliteStorage over a fresh database, closed after test."""
    store = SqliteStorage.open(tmp_path / ".sourceflow.db")
    yield store
    store.close()


@pytest.fixture
def make_source(storage):
    """Insert a source row and return it."""

    def _make(
        source_type: str = "website",
        source_id: str = "src-1",
        origin: str = "https://example.com",
        **kwargs,
    ) -> Source:
        source = Source(
            id=source_id,
            agent_id=kwargs.pop("agent_id", "agent-1"),
            project_id=kwargs.pop("project_id", "proj-1"),
            type=source_type,
            origin=origin,
            **kwargs,
        )
        storage.repo.add_source(source)
        return source

    return _make
