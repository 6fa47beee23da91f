"""sourceflow database layer."""

from sourceflow.db.connection import Database
from sourceflow.db.migrations import MIGRATIONS, run_migrations
from sourceflow.db.schema import initialize

__all__ = [
    "Database",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
