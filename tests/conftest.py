"""Shared pytest configuration and fixtures."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path

import pytest

from local_search.errors import EmbeddingError
from local_search.ingestion.embedder import EmbeddingProvider
from local_search.jobs.manager import JobManager
from local_search.pipelines.background import BackgroundProcessor
from local_search.retrieval.memory_store import InMemoryChunkStore

_TOKEN = re.compile(r"[a-z0-9]+")


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests requiring external services")


# ── Fake embedding provider for deterministic testing ───────────────────


class FakeEmbeddingProvider(EmbeddingProvider):
    """Hashed bag-of-words vectors: texts sharing words are close in cosine space."""

    def __init__(self, dim: int = 64, *, fail: bool = False) -> None:
        self.dim = dim
        self.fail = fail
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> list[float]:
        vec = [0.0] * self.dim
        for token in _TOKEN.findall(text.lower()):
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dim
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        if norm == 0:
            vec[0] = 1.0
            return vec
        return [v / norm for v in vec]

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError("model unavailable")
        return [self._vector(t) for t in texts]


# ── Fixtures ────────────────────────────────────────────────────────────


@pytest.fixture()
def embedder() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture()
def memory_store() -> InMemoryChunkStore:
    return InMemoryChunkStore("test-collection")


@pytest.fixture()
def job_manager() -> JobManager:
    return JobManager(retention_seconds=3600, history_limit=100)


@pytest.fixture()
def processor(
    job_manager: JobManager,
    memory_store: InMemoryChunkStore,
    embedder: FakeEmbeddingProvider,
    tmp_path: Path,
) -> BackgroundProcessor:
    return BackgroundProcessor(
        job_manager,
        memory_store,
        embedder,
        chunk_size=200,
        chunk_overlap=20,
        embed_batch_size=2,
        acquire_timeout=5.0,
        data_dir=tmp_path / "data",
    )


@pytest.fixture()
def notes_file(tmp_path: Path) -> Path:
    """A markdown file that splits into exactly three chunks at chunk_size=200."""
    paragraphs = [
        "# Meeting notes\nThe team reviewed the release checklist and agreed on the notes format for "
        "future meetings. Action items were assigned to each owner.",
        "## Database migration\nThe migration moves the orders table to PostgreSQL. Notes on rollback: "
        "keep the old schema for one week before dropping it.",
        "## Follow-up\nSend the meeting notes to everyone who missed the call and schedule the next "
        "review for Thursday afternoon.",
    ]
    path = tmp_path / "docs" / "notes.md"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n\n".join(paragraphs), encoding="utf-8")
    return path
