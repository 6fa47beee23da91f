"""Local filesystem object store for uploaded source files."""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


class ObjectPathError(ValueError):
    """Raised when an object key would resolve outside the store root."""


class LocalObjectStore:
    """Store uploaded bytes under *root*, addressed by relative POSIX keys.

    Keys look like ``<agent_id>/<source_id>/<filename>``. Absolute keys and
    keys containing ``..`` are refused before touching the filesystem.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def _resolve(self, key: str) -> Path:
        posix = PurePosixPath(key)
        if not key or posix.is_absolute() or ".." in posix.parts:
            raise ObjectPathError(f"Invalid object key: {key!r}")
        target = (self.root / posix).resolve()
        root = self.root.resolve()
        if not target.is_relative_to(root):
            raise ObjectPathError(f"Object key escapes the store root: {key!r}")
        return target

    def upload(self, key: str, data: bytes) -> str:
        """Write *data* under *key*, replacing any existing object. Returns the key."""
        target = self._resolve(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        logger.debug("Stored object %s (%d bytes)", key, len(data))
        return key

    def download(self, key: str) -> bytes:
        """Return the bytes stored under *key*.

        Raises:
            FileNotFoundError: If no object exists for *key*.
        """
        return self._resolve(key).read_bytes()

    def delete(self, key: str) -> bool:
        """Delete the object under *key*. Returns False if it did not exist."""
        target = self._resolve(key)
        if not target.exists():
            return False
        target.unlink()
        return True
