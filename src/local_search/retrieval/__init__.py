"""
Retrieval: chunk storage, classification, similarity search and query recommendations.

Public surface
--------------
- :class:`SearchEngine`: main entry point for filtered, domain-boosted search.
- :class:`ChunkStore`: abstract backend with per-file write locking.
- :class:`InMemoryChunkStore` / :class:`ChromaChunkStore`: bundled backends.
- :class:`ContentClassifier`, :class:`DomainVocabulary`: chunk scoring and tagging.
- :class:`QueryRecommender`, :class:`AdaptiveLearning`: low-yield query rewriting.
- :class:`Chunk`, :class:`ScoredChunk`, :class:`SearchOptions`, :class:`MetadataFilter`: data models.
"""

from local_search.retrieval.base import ChunkStore
from local_search.retrieval.classifier import ContentClassifier
from local_search.retrieval.memory_store import InMemoryChunkStore
from local_search.retrieval.models import (
    Chunk,
    ChunkMetadata,
    ContentMetadata,
    MetadataFilter,
    ScoredChunk,
    SearchOptions,
    SearchRecommendation,
    SearchResponse,
)
from local_search.retrieval.recommender import AdaptiveLearning, QueryRecommender
from local_search.retrieval.search import SearchEngine
from local_search.retrieval.vocabulary import DomainVocabulary

__all__ = [
    "AdaptiveLearning",
    "ChromaChunkStore",
    "Chunk",
    "ChunkMetadata",
    "ChunkStore",
    "ContentClassifier",
    "ContentMetadata",
    "DomainVocabulary",
    "InMemoryChunkStore",
    "MetadataFilter",
    "QueryRecommender",
    "ScoredChunk",
    "SearchEngine",
    "SearchOptions",
    "SearchRecommendation",
    "SearchResponse",
]


def __getattr__(name: str):  # noqa: ANN001
    """Lazy-import ChromaChunkStore to avoid pulling in chromadb at import time."""
    if name == "ChromaChunkStore":
        from local_search.retrieval.chroma_store import ChromaChunkStore

        return ChromaChunkStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
