"""Local semantic search: ingestion pipelines, file watching and retrieval."""

__version__ = "0.1.0"
