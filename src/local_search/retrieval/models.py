"""Domain models for stored chunks, search requests and search results."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

ContentType = Literal["code", "docs", "config", "mixed"]


def chunk_id_for(file_path: str, chunk_index: int) -> str:
    """Return the stable id for the ``(file_path, chunk_index)`` pair."""
    return hashlib.sha256(f"{file_path}::{chunk_index}".encode()).hexdigest()[:32]


class MetadataFilter(BaseModel):
    """Declarative metadata filter for chunk-store queries.

    Attributes
    ----------
    field:
        The metadata key to filter on (e.g. ``"content_type"``, ``"language"``).
    operator:
        Comparison operator, one of ``eq``, ``ne``, ``gt``, ``gte``,
        ``lt``, ``lte``, ``in``, ``nin`` or ``overlaps``.  ``overlaps``
        matches list-valued fields sharing at least one element with
        *value*.
    value:
        The value (or list of values for ``in`` / ``nin`` / ``overlaps``)
        to compare against.
    """

    field: str
    operator: str = "eq"
    value: Any = None

    # -- helpers for common filters ------------------------------------------

    @classmethod
    def equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="eq", value=value)

    @classmethod
    def not_equals(cls, field: str, value: Any) -> MetadataFilter:
        return cls(field=field, operator="ne", value=value)

    @classmethod
    def one_of(cls, field: str, values: list[Any]) -> MetadataFilter:
        return cls(field=field, operator="in", value=values)

    @classmethod
    def at_least(cls, field: str, value: float) -> MetadataFilter:
        return cls(field=field, operator="gte", value=value)

    @classmethod
    def overlaps(cls, field: str, values: list[Any]) -> MetadataFilter:
        return cls(field=field, operator="overlaps", value=values)

    def matches(self, actual: Any) -> bool:
        """Evaluate this filter against a single metadata value."""
        op = self.operator
        if op == "overlaps":
            return bool(set(actual or ()) & set(self.value or ()))
        if op == "in":
            return actual in self.value
        if op == "nin":
            return actual not in self.value
        if op == "eq":
            return actual == self.value
        if op == "ne":
            return actual != self.value
        if actual is None:
            return False
        if op == "gt":
            return actual > self.value
        if op == "gte":
            return actual >= self.value
        if op == "lt":
            return actual < self.value
        if op == "lte":
            return actual <= self.value
        raise ValueError(f"Unsupported filter operator: {op!r}")


class ChunkMetadata(BaseModel):
    """Positional and file-level facts recorded with every chunk."""

    file_size: int = 0
    last_modified: datetime | None = None
    chunk_offset: int = 0
    token_count: int = 0
    source: str | None = None


class ContentMetadata(BaseModel):
    """Classification attached to a chunk at store time.

    Derived purely from the chunk content and its path/source; it is
    recomputed whenever the chunk is (re)stored.
    """

    content_type: ContentType = "mixed"
    language: str = "unknown"
    domain_tags: set[str] = Field(default_factory=set)
    quality_score: float = Field(default=0.5, ge=0.0, le=1.0)
    source_authority: float = Field(default=0.3, ge=0.0, le=1.0)
    file_extension: str = ""
    has_comments: bool = False
    has_documentation: bool = False


class Chunk(BaseModel):
    """A bounded segment of a document plus its embedding vector.

    Identity is ``(file_path, chunk_index)``; :attr:`id` is derived from it
    so that re-ingesting a file overwrites its chunks in place.
    """

    id: str = ""
    file_path: str
    chunk_index: int = Field(ge=0)
    content: str
    embedding: list[float] = Field(default_factory=list)
    metadata: ChunkMetadata = Field(default_factory=ChunkMetadata)
    content_metadata: ContentMetadata | None = None

    def model_post_init(self, __context: Any) -> None:
        if not self.id:
            self.id = chunk_id_for(self.file_path, self.chunk_index)

    def filter_value(self, field: str) -> Any:
        """Look up *field* in the flat metadata view used by filters."""
        if field == "file_path":
            return self.file_path
        if field == "chunk_index":
            return self.chunk_index
        cm = self.content_metadata
        if cm is not None and field in ContentMetadata.model_fields:
            return getattr(cm, field)
        if field in ChunkMetadata.model_fields:
            return getattr(self.metadata, field)
        return None


class ScoredChunk(BaseModel):
    """A chunk returned from a similarity query.

    ``score`` is ``1 - cosine distance``; ``relevance`` is the score after
    the domain boost and is what results are ordered by.
    """

    chunk: Chunk
    score: float
    relevance: float | None = None

    @property
    def file_path(self) -> str:
        return self.chunk.file_path

    def __str__(self) -> str:  # noqa: D105
        return f"[{self.chunk.file_path}§{self.chunk.chunk_index}] {self.chunk.content[:120]}…"


class IndexStats(BaseModel):
    total_chunks: int = 0
    total_files: int = 0
    total_tokens: int = 0


class SearchOptions(BaseModel):
    """Caller-supplied knobs for :meth:`SearchEngine.search`."""

    limit: int = Field(default=10, ge=1, le=1000)
    min_score: float = 0.0
    domain_filter: list[str] | None = None
    content_type_filter: list[ContentType] | None = None
    language_filter: list[str] | None = None
    min_quality_score: float | None = Field(default=None, ge=0.0, le=1.0)
    min_authority_score: float | None = Field(default=None, ge=0.0, le=1.0)
    include_recommendation: bool = True

    def to_filters(self) -> list[MetadataFilter]:
        filters: list[MetadataFilter] = []
        if self.content_type_filter:
            filters.append(MetadataFilter.one_of("content_type", list(self.content_type_filter)))
        if self.language_filter:
            filters.append(MetadataFilter.one_of("language", [lang.lower() for lang in self.language_filter]))
        if self.min_quality_score is not None:
            filters.append(MetadataFilter.at_least("quality_score", self.min_quality_score))
        if self.min_authority_score is not None:
            filters.append(MetadataFilter.at_least("source_authority", self.min_authority_score))
        if self.domain_filter:
            filters.append(MetadataFilter.overlaps("domain_tags", list(self.domain_filter)))
        return filters


class RecommendationStrategy(str, Enum):
    TERM_REMOVAL = "term_removal"
    TERM_REFINEMENT = "term_refinement"
    CONTEXTUAL_ADDITION = "contextual_addition"


class SearchRecommendation(BaseModel):
    """A suggested rewrite of a low-yield query.

    Ephemeral: cached by normalized query with an expiry, never persisted.
    """

    id: str = Field(default_factory=lambda: uuid4().hex[:12])
    query: str
    suggested_terms: list[str]
    strategy: RecommendationStrategy
    tfidf_threshold: float
    confidence: float = Field(ge=0.0, le=1.0)
    analyzed_documents: int
    total_documents: int
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime

    @property
    def suggested_query(self) -> str:
        return " ".join(self.suggested_terms)

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class SearchResponse(BaseModel):
    results: list[ScoredChunk] = Field(default_factory=list)
    total_results: int = 0
    search_time_ms: float = 0.0
    recommendation: SearchRecommendation | None = None
