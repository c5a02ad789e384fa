"""Tests for the Chroma chunk store against an embedded on-disk client."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from local_search.errors import StorageError
from local_search.retrieval.chroma_store import ChromaChunkStore
from local_search.retrieval.models import Chunk

FILE = "/docs/guide.md"


def _chunks(path: str, contents: list[str], vectors: list[list[float]] | None = None) -> list[Chunk]:
    vectors = vectors or [[1.0, float(i), 0.5] for i in range(len(contents))]
    return [
        Chunk(file_path=path, chunk_index=i, content=text, embedding=vec)
        for i, (text, vec) in enumerate(zip(contents, vectors))
    ]


class FlakyCollection:
    """Wraps a Chroma collection and fails the n-th ``upsert`` call."""

    def __init__(self, inner: Any, fail_on: int) -> None:
        self._inner = inner
        self.fail_on = fail_on
        self.upserts = 0

    def upsert(self, **kwargs: Any) -> None:
        self.upserts += 1
        if self.upserts == self.fail_on:
            raise RuntimeError("disk full")
        self._inner.upsert(**kwargs)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._inner, name)


@pytest.fixture()
def chroma_store(tmp_path: Path) -> ChromaChunkStore:
    return ChromaChunkStore("test-chunks", host="", persist_dir=tmp_path / "chroma", upsert_batch_size=2)


# ── Writes ──────────────────────────────────────────────────────────────


class TestChromaWrites:
    def test_replace_and_read_back_in_order(self, chroma_store: ChromaChunkStore) -> None:
        assert chroma_store.replace_file(FILE, _chunks(FILE, ["a", "b", "c"])) == 3

        chunks = chroma_store.get_file_chunks(FILE)
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert [c.content for c in chunks] == ["a", "b", "c"]
        assert chunks[1].embedding == pytest.approx([1.0, 1.0, 0.5])

    def test_reingest_shrink_drops_stale_chunks(self, chroma_store: ChromaChunkStore) -> None:
        chroma_store.replace_file(FILE, _chunks(FILE, ["a", "b", "c"]))
        chroma_store.replace_file(FILE, _chunks(FILE, ["only"]))

        assert [c.content for c in chroma_store.get_file_chunks(FILE)] == ["only"]
        assert chroma_store.stats().total_chunks == 1

    def test_delete_is_idempotent(self, chroma_store: ChromaChunkStore) -> None:
        chroma_store.replace_file(FILE, _chunks(FILE, ["a", "b"]))
        chroma_store.replace_file("/docs/other.md", _chunks("/docs/other.md", ["x"]))

        assert chroma_store.delete_file(FILE) == 2
        assert chroma_store.delete_file(FILE) == 0
        assert chroma_store.list_files() == ["/docs/other.md"]

    def test_failed_write_restores_previous_chunks(self, chroma_store: ChromaChunkStore) -> None:
        chroma_store.replace_file(FILE, _chunks(FILE, ["old 0", "old 1", "old 2", "old 3"]))
        before = chroma_store.get_file_chunks(FILE)
        chroma_store._collection = FlakyCollection(chroma_store._collection, fail_on=2)

        with pytest.raises(StorageError):
            chroma_store.replace_file(FILE, _chunks(FILE, [f"new {i}" for i in range(5)]))

        after = chroma_store.get_file_chunks(FILE)
        assert [c.id for c in after] == [c.id for c in before]
        assert [c.content for c in after] == ["old 0", "old 1", "old 2", "old 3"]
        assert after[3].embedding == pytest.approx(before[3].embedding)


# ── Reads ───────────────────────────────────────────────────────────────


class TestChromaSearch:
    def test_scores_follow_cosine_similarity(self, chroma_store: ChromaChunkStore) -> None:
        vectors = [[0.0, 1.0, 0.0], [1.0, 0.0, 0.0], [0.8, 0.6, 0.0]]
        chroma_store.replace_file(FILE, _chunks(FILE, ["far", "exact", "near"], vectors))

        hits = chroma_store.similarity_search([1.0, 0.0, 0.0], limit=3)

        assert [h.chunk.content for h in hits] == ["exact", "near", "far"]
        assert [h.score for h in hits] == pytest.approx([1.0, 0.8, 0.0], abs=1e-4)

    def test_empty_collection(self, chroma_store: ChromaChunkStore) -> None:
        assert chroma_store.similarity_search([1.0, 0.0, 0.0]) == []
