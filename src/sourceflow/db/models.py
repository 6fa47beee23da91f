"""Domain models for the sourceflow database layer."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

SOURCE_TYPES: tuple[str, ...] = ("website", "file", "text", "qa")

# pending/queued → processing → ready | error; a retry re-enters processing.
SOURCE_STATUSES: tuple[str, ...] = ("pending", "queued", "processing", "ready", "error")


def new_id() -> str:
    """Return a fresh UUID4 string for sources and chunks."""
    return str(uuid.uuid4())


def utc_now() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Source:
    id: str
    agent_id: str
    project_id: str
    type: str
    origin: str
    status: str = "pending"
    size_kb: float = 0.0
    chunk_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Chunk:
    source_id: str
    agent_id: str
    project_id: str
    content: str
    position: int
    tokens: int
    content_hash: str
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    created_at: str | None = None
