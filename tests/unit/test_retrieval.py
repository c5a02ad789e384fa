"""Unit tests for the retrieval layer: models, Chroma helpers and SearchEngine."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from conftest import FakeEmbeddingProvider
from local_search.errors import EmbeddingError, ValidationError
from local_search.retrieval.base import ChunkStore
from local_search.retrieval.chroma_store import _build_chroma_where, _from_chroma, _to_chroma_metadata
from local_search.retrieval.models import (
    Chunk,
    ChunkMetadata,
    ContentMetadata,
    IndexStats,
    MetadataFilter,
    ScoredChunk,
    SearchOptions,
)
from local_search.retrieval.search import SearchEngine
from local_search.retrieval.vocabulary import DomainEntry, DomainKeyword, DomainVocabulary


# ── Fake chunk store for deterministic testing ──────────────────────────


class FakeChunkStore(ChunkStore):
    """Returns canned hits and records the last query."""

    def __init__(self, hits: list[ScoredChunk] | None = None) -> None:
        super().__init__("test-collection")
        self._hits = hits or []
        self.last_filters: list[MetadataFilter] | None = None
        self.last_limit: int | None = None

    def _replace(self, file_path: str, chunks: list[Chunk]) -> int:
        return len(chunks)

    def _delete(self, file_path: str) -> int:
        return 0

    def similarity_search(
        self,
        query_embedding: list[float],
        *,
        filters: list[MetadataFilter] | None = None,
        limit: int = 10,
    ) -> list[ScoredChunk]:
        self.last_filters = filters
        self.last_limit = limit
        return [h.model_copy(deep=True) for h in self._hits[:limit]]

    def get_file_chunks(self, file_path: str) -> list[Chunk]:
        return [h.chunk for h in self._hits if h.chunk.file_path == file_path]

    def stats(self) -> IndexStats:
        return IndexStats(total_chunks=len(self._hits), total_files=len({h.file_path for h in self._hits}))

    def health_check(self) -> bool:
        return True


class ExplodingRecommender:
    def recommend(self, *args: object, **kwargs: object) -> None:
        raise RuntimeError("recommender broke")


class RecordingRecommender:
    def __init__(self) -> None:
        self.calls: list[tuple[str, list[str], int]] = []

    def recommend(self, query: str, documents: list[str], total: int) -> str:
        self.calls.append((query, documents, total))
        return None


def _hit(path: str, score: float, *, domains: set[str] | None = None, index: int = 0) -> ScoredChunk:
    chunk = Chunk(
        file_path=path,
        chunk_index=index,
        content=f"content of {path}",
        content_metadata=ContentMetadata(domain_tags=domains or set()),
    )
    return ScoredChunk(chunk=chunk, score=score)


VOCAB = DomainVocabulary(
    [
        DomainEntry(
            domain="python",
            keywords=[DomainKeyword(keyword="python", weight=1.0), DomainKeyword(keyword="pytest", weight=1.0)],
            boost_factor=1.5,
        ),
        DomainEntry(domain="rust", keywords=[DomainKeyword(keyword="cargo", weight=1.0)], boost_factor=1.3),
    ]
)


# ── MetadataFilter ──────────────────────────────────────────────────────


class TestMetadataFilter:
    def test_equals_helper(self) -> None:
        f = MetadataFilter.equals("language", "python")
        assert f.model_dump() == {"field": "language", "operator": "eq", "value": "python"}
        assert f.matches("python")
        assert not f.matches("go")

    @pytest.mark.parametrize(
        ("flt", "actual", "expected"),
        [
            (MetadataFilter.not_equals("language", "go"), "python", True),
            (MetadataFilter.one_of("content_type", ["code", "docs"]), "docs", True),
            (MetadataFilter.one_of("content_type", ["code", "docs"]), "config", False),
            (MetadataFilter.at_least("quality_score", 0.5), 0.5, True),
            (MetadataFilter.at_least("quality_score", 0.5), None, False),
            (MetadataFilter.overlaps("domain_tags", ["react", "vue"]), {"react", "testing"}, True),
            (MetadataFilter.overlaps("domain_tags", ["react"]), set(), False),
            (MetadataFilter(field="n", operator="nin", value=[1, 2]), 3, True),
        ],
    )
    def test_matches(self, flt: MetadataFilter, actual: object, expected: bool) -> None:
        assert flt.matches(actual) is expected

    def test_unknown_operator_raises(self) -> None:
        with pytest.raises(ValueError, match="Unsupported"):
            MetadataFilter(field="x", operator="regex", value="a").matches(5)

    def test_search_options_to_filters(self) -> None:
        options = SearchOptions(
            content_type_filter=["code"],
            language_filter=["Python"],
            min_quality_score=0.4,
            domain_filter=["python"],
        )
        filters = {f.field: f for f in options.to_filters()}
        assert filters["content_type"].operator == "in"
        assert filters["language"].value == ["python"]
        assert filters["quality_score"].operator == "gte"
        assert filters["domain_tags"].operator == "overlaps"
        assert SearchOptions().to_filters() == []


# ── Chroma helpers ──────────────────────────────────────────────────────


class TestChromaHelpers:
    def test_build_where_none(self) -> None:
        assert _build_chroma_where([]) is None

    def test_build_where_single(self) -> None:
        assert _build_chroma_where([MetadataFilter.equals("language", "python")]) == {"language": {"$eq": "python"}}

    def test_build_where_multiple(self) -> None:
        where = _build_chroma_where(
            [MetadataFilter.equals("language", "python"), MetadataFilter.at_least("quality_score", 0.5)]
        )
        assert where == {"$and": [{"language": {"$eq": "python"}}, {"quality_score": {"$gte": 0.5}}]}

    def test_build_where_rejects_client_side_operator(self) -> None:
        with pytest.raises(ValueError):
            _build_chroma_where([MetadataFilter.overlaps("domain_tags", ["python"])])

    def test_metadata_round_trip(self) -> None:
        chunk = Chunk(
            file_path="/docs/a.md",
            chunk_index=4,
            content="hello",
            metadata=ChunkMetadata(
                file_size=120,
                last_modified=datetime(2024, 5, 1, tzinfo=timezone.utc),
                chunk_offset=40,
                token_count=2,
                source="https://example.com/a.md",
            ),
            content_metadata=ContentMetadata(content_type="docs", language="markdown", domain_tags={"python", "testing"}),
        )
        meta = _to_chroma_metadata(chunk)
        assert meta["domain_tags"] == "python,testing"
        assert all(isinstance(v, (str, int, float, bool)) for v in meta.values())

        restored = _from_chroma(chunk.id, "hello", meta)
        assert restored.id == chunk.id
        assert restored.metadata == chunk.metadata
        assert restored.content_metadata == chunk.content_metadata


# ── SearchEngine ────────────────────────────────────────────────────────


class TestSearchEngine:
    @pytest.mark.asyncio
    async def test_results_sorted_and_limited(self, embedder: FakeEmbeddingProvider) -> None:
        store = FakeChunkStore([_hit("/a.md", 0.9), _hit("/b.md", 0.8), _hit("/c.md", 0.7)])
        engine = SearchEngine(store, embedder, vocabulary=VOCAB, candidate_multiplier=5)

        response = await engine.search("notes", SearchOptions(limit=2))

        assert [h.file_path for h in response.results] == ["/a.md", "/b.md"]
        assert response.total_results == 2
        assert store.last_limit == 10
        assert response.recommendation is None

    @pytest.mark.asyncio
    async def test_min_score_filters_results(self, embedder: FakeEmbeddingProvider) -> None:
        store = FakeChunkStore([_hit("/a.md", 0.9), _hit("/b.md", 0.4), _hit("/c.md", 0.1)])
        engine = SearchEngine(store, embedder, vocabulary=VOCAB)

        response = await engine.search("notes", SearchOptions(min_score=0.4))

        assert [h.file_path for h in response.results] == ["/a.md", "/b.md"]
        assert all(h.score >= 0.4 for h in response.results)

    @pytest.mark.asyncio
    async def test_domain_boost_reorders_results(self, embedder: FakeEmbeddingProvider) -> None:
        store = FakeChunkStore([_hit("/plain.md", 0.8), _hit("/py.md", 0.7, domains={"python"})])
        engine = SearchEngine(store, embedder, vocabulary=VOCAB)

        response = await engine.search("python decorators")

        assert [h.file_path for h in response.results] == ["/py.md", "/plain.md"]
        assert response.results[0].relevance == pytest.approx(0.7 * 1.5)
        assert response.results[0].score == pytest.approx(0.7)
        assert response.results[1].relevance == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_filters_are_forwarded(self, embedder: FakeEmbeddingProvider) -> None:
        store = FakeChunkStore([_hit("/a.md", 0.9)])
        engine = SearchEngine(store, embedder, vocabulary=VOCAB)

        await engine.search("notes", SearchOptions(language_filter=["python"]))

        assert store.last_filters == [MetadataFilter.one_of("language", ["python"])]

    @pytest.mark.asyncio
    async def test_empty_index_returns_empty_response(self, embedder: FakeEmbeddingProvider) -> None:
        recommender = RecordingRecommender()
        engine = SearchEngine(FakeChunkStore(), embedder, vocabulary=VOCAB, recommender=recommender)

        response = await engine.search("anything")

        assert response.results == []
        assert response.recommendation is None
        assert recommender.calls == []
        assert embedder.calls == []

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, embedder: FakeEmbeddingProvider) -> None:
        engine = SearchEngine(FakeChunkStore([_hit("/a.md", 0.9)]), embedder)
        with pytest.raises(ValidationError):
            await engine.search("   ")

    @pytest.mark.asyncio
    async def test_embedding_failure_propagates(self) -> None:
        engine = SearchEngine(FakeChunkStore([_hit("/a.md", 0.9)]), FakeEmbeddingProvider(fail=True))
        with pytest.raises(EmbeddingError):
            await engine.search("notes")

    @pytest.mark.asyncio
    async def test_low_yield_triggers_recommender_with_candidates(self, embedder: FakeEmbeddingProvider) -> None:
        recommender = RecordingRecommender()
        store = FakeChunkStore([_hit("/a.md", 0.2), _hit("/b.md", 0.05)])
        engine = SearchEngine(store, embedder, vocabulary=VOCAB, recommender=recommender)

        await engine.search("obscure query", SearchOptions(min_score=0.1))

        assert len(recommender.calls) == 1
        query, documents, total = recommender.calls[0]
        assert query == "obscure query"
        assert documents == ["content of /a.md", "content of /b.md"]
        assert total == 2

    @pytest.mark.asyncio
    async def test_recommendation_can_be_disabled(self, embedder: FakeEmbeddingProvider) -> None:
        recommender = RecordingRecommender()
        engine = SearchEngine(FakeChunkStore([_hit("/a.md", 0.1)]), embedder, recommender=recommender)

        await engine.search("notes", SearchOptions(include_recommendation=False))

        assert recommender.calls == []

    @pytest.mark.asyncio
    async def test_recommender_failure_does_not_fail_search(self, embedder: FakeEmbeddingProvider) -> None:
        engine = SearchEngine(
            FakeChunkStore([_hit("/a.md", 0.1)]), embedder, vocabulary=VOCAB, recommender=ExplodingRecommender()
        )

        response = await engine.search("notes")

        assert response.total_results == 1
        assert response.recommendation is None
