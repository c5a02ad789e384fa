"""Unit tests for the in-memory chunk store."""

from __future__ import annotations

import threading

import pytest

from local_search.errors import StorageError
from local_search.retrieval.memory_store import InMemoryChunkStore
from local_search.retrieval.models import (
    Chunk,
    ChunkMetadata,
    ContentMetadata,
    MetadataFilter,
    chunk_id_for,
)


def _chunk(
    path: str,
    index: int,
    embedding: list[float],
    *,
    content: str | None = None,
    tokens: int = 5,
    content_type: str = "docs",
    domains: set[str] | None = None,
) -> Chunk:
    return Chunk(
        file_path=path,
        chunk_index=index,
        content=content or f"{path} chunk {index}",
        embedding=embedding,
        metadata=ChunkMetadata(token_count=tokens),
        content_metadata=ContentMetadata(content_type=content_type, domain_tags=domains or set()),
    )


# ── Writes ──────────────────────────────────────────────────────────────


class TestWrites:
    def test_chunk_id_is_derived_from_path_and_index(self) -> None:
        chunk = _chunk("/a.md", 2, [1.0, 0.0])
        assert chunk.id == chunk_id_for("/a.md", 2)
        assert len(chunk.id) == 32
        assert chunk_id_for("/a.md", 2) != chunk_id_for("/a.md", 3)

    def test_replace_file_returns_count_and_orders_by_index(self, memory_store: InMemoryChunkStore) -> None:
        chunks = [_chunk("/a.md", i, [1.0, float(i)]) for i in (2, 0, 1)]
        assert memory_store.replace_file("/a.md", chunks) == 3
        assert [c.chunk_index for c in memory_store.get_file_chunks("/a.md")] == [0, 1, 2]

    def test_reingest_replaces_whole_set(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/a.md", [_chunk("/a.md", i, [1.0, 0.0]) for i in range(3)])
        memory_store.replace_file("/a.md", [_chunk("/a.md", 0, [0.0, 1.0], content="rewritten")])

        stored = memory_store.get_file_chunks("/a.md")
        assert [c.content for c in stored] == ["rewritten"]
        assert memory_store.stats().total_chunks == 1

    def test_identical_reingest_is_idempotent(self, memory_store: InMemoryChunkStore) -> None:
        chunks = [_chunk("/a.md", i, [1.0, 0.0]) for i in range(2)]
        memory_store.replace_file("/a.md", chunks)
        before = memory_store.get_file_chunks("/a.md")
        memory_store.upsert_chunks("/a.md", chunks)
        assert memory_store.get_file_chunks("/a.md") == before

    def test_replace_with_empty_set_removes_file(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/a.md", [_chunk("/a.md", 0, [1.0])])
        assert memory_store.replace_file("/a.md", []) == 0
        assert memory_store.list_files() == []

    def test_chunk_for_other_file_is_rejected(self, memory_store: InMemoryChunkStore) -> None:
        with pytest.raises(StorageError):
            memory_store.replace_file("/a.md", [_chunk("/b.md", 0, [1.0])])
        assert memory_store.get_file_chunks("/a.md") == []

    def test_delete_is_idempotent(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/a.md", [_chunk("/a.md", i, [1.0]) for i in range(2)])
        assert memory_store.delete_file("/a.md") == 2
        assert memory_store.delete_file("/a.md") == 0
        assert memory_store.delete_file("/never.md") == 0

    def test_stored_chunks_are_isolated_from_caller(self, memory_store: InMemoryChunkStore) -> None:
        chunk = _chunk("/a.md", 0, [1.0, 0.0])
        memory_store.replace_file("/a.md", [chunk])
        chunk.content = "mutated"
        memory_store.get_file_chunks("/a.md")[0].content = "also mutated"
        assert memory_store.get_file_chunks("/a.md")[0].content == "/a.md chunk 0"

    def test_concurrent_writers_on_different_files(self, memory_store: InMemoryChunkStore) -> None:
        def writer(i: int) -> None:
            path = f"/f{i}.md"
            for _ in range(20):
                memory_store.replace_file(path, [_chunk(path, j, [1.0, float(j)]) for j in range(3)])

        threads = [threading.Thread(target=writer, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        stats = memory_store.stats()
        assert stats.total_files == 8
        assert stats.total_chunks == 24
        assert memory_store._file_locks == {}

    def test_lock_registry_only_holds_paths_in_use(self, memory_store: InMemoryChunkStore) -> None:
        for i in range(50):
            path = f"/gone{i}.md"
            memory_store.replace_file(path, [_chunk(path, 0, [1.0])])
            memory_store.delete_file(path)
        assert memory_store._file_locks == {}

        with memory_store.file_lock("/a.md"):
            assert list(memory_store._file_locks) == ["/a.md"]
        assert memory_store._file_locks == {}


# ── Reads ───────────────────────────────────────────────────────────────


class TestReads:
    def test_similarity_search_orders_by_score(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/a.md", [_chunk("/a.md", 0, [1.0, 0.0]), _chunk("/a.md", 1, [0.6, 0.8])])
        memory_store.replace_file("/b.md", [_chunk("/b.md", 0, [0.0, 1.0])])

        hits = memory_store.similarity_search([1.0, 0.0], limit=3)
        assert [(h.file_path, h.chunk.chunk_index) for h in hits] == [("/a.md", 0), ("/a.md", 1), ("/b.md", 0)]
        assert hits[0].score == pytest.approx(1.0)
        assert hits[1].score == pytest.approx(0.6)
        assert hits[2].score == pytest.approx(0.0)

    def test_similarity_search_respects_limit(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/a.md", [_chunk("/a.md", i, [1.0, float(i)]) for i in range(5)])
        assert len(memory_store.similarity_search([1.0, 0.0], limit=2)) == 2

    def test_similarity_search_applies_filters(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file(
            "/a.py", [_chunk("/a.py", 0, [1.0, 0.0], content_type="code", domains={"python"})]
        )
        memory_store.replace_file("/b.md", [_chunk("/b.md", 0, [1.0, 0.0], domains={"react"})])

        code_only = memory_store.similarity_search([1.0, 0.0], filters=[MetadataFilter.equals("content_type", "code")])
        assert [h.file_path for h in code_only] == ["/a.py"]

        react = memory_store.similarity_search(
            [1.0, 0.0], filters=[MetadataFilter.overlaps("domain_tags", ["react", "vue"])]
        )
        assert [h.file_path for h in react] == ["/b.md"]

    def test_empty_store_and_dimension_mismatch(self, memory_store: InMemoryChunkStore) -> None:
        assert memory_store.similarity_search([1.0, 0.0]) == []
        memory_store.replace_file("/a.md", [_chunk("/a.md", 0, [1.0, 0.0, 0.0])])
        assert memory_store.similarity_search([1.0, 0.0]) == []

    def test_stats_and_listing(self, memory_store: InMemoryChunkStore) -> None:
        memory_store.replace_file("/b.md", [_chunk("/b.md", 0, [1.0], tokens=7)])
        memory_store.replace_file("/a.md", [_chunk("/a.md", i, [1.0], tokens=3) for i in range(2)])

        stats = memory_store.stats()
        assert (stats.total_files, stats.total_chunks, stats.total_tokens) == (2, 3, 13)
        assert memory_store.list_files() == ["/a.md", "/b.md"]
        assert memory_store.get_chunk("/a.md", 1).chunk_index == 1
        assert memory_store.get_chunk("/a.md", 9) is None
        assert memory_store.health_check() is True
