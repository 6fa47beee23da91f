"""sourceflow — website crawling and chunk ingestion for agent knowledge bases."""

__version__ = "0.1.0"
