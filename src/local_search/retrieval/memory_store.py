"""In-process chunk store backed by numpy.

Each file's chunk set is an immutable tuple; writers build the new tuple
off to the side and swap it in with a single assignment, so a concurrent
reader sees either the old or the new set, never a mix.
"""

from __future__ import annotations

import logging
import threading

import numpy as np

from local_search.errors import StorageError
from local_search.retrieval.base import ChunkStore, matches_all
from local_search.retrieval.models import Chunk, IndexStats, MetadataFilter, ScoredChunk

logger = logging.getLogger(__name__)


class InMemoryChunkStore(ChunkStore):
    """Volatile store for tests, notebooks and ``store_backend="memory"``."""

    def __init__(self, collection_name: str = "memory") -> None:
        super().__init__(collection_name)
        self._files: dict[str, tuple[Chunk, ...]] = {}
        self._swap_lock = threading.Lock()

    def _snapshot(self) -> list[tuple[str, tuple[Chunk, ...]]]:
        with self._swap_lock:
            return list(self._files.items())

    # -- ChunkStore overrides -------------------------------------------------

    def _replace(self, file_path: str, chunks: list[Chunk]) -> int:
        for chunk in chunks:
            if chunk.file_path != file_path:
                raise StorageError(f"Chunk {chunk.id} belongs to {chunk.file_path!r}, not {file_path!r}")
        new_set = tuple(sorted((c.model_copy(deep=True) for c in chunks), key=lambda c: c.chunk_index))
        with self._swap_lock:
            if new_set:
                self._files[file_path] = new_set
            else:
                self._files.pop(file_path, None)
        return len(new_set)

    def _delete(self, file_path: str) -> int:
        with self._swap_lock:
            removed = self._files.pop(file_path, ())
        return len(removed)

    def similarity_search(
        self,
        query_embedding: list[float],
        *,
        filters: list[MetadataFilter] | None = None,
        limit: int = 10,
    ) -> list[ScoredChunk]:
        candidates = [
            chunk
            for _, chunks in self._snapshot()
            for chunk in chunks
            if chunk.embedding and matches_all(chunk, filters)
        ]
        if not candidates:
            return []

        query = np.asarray(query_embedding, dtype=np.float32)
        dim = query.shape[0]
        candidates = [c for c in candidates if len(c.embedding) == dim]
        if not candidates:
            logger.warning("No stored vectors match query dimension %d", dim)
            return []

        matrix = np.asarray([c.embedding for c in candidates], dtype=np.float32)
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        norms[norms == 0] = 1.0
        similarities = (matrix @ query) / norms

        order = np.argsort(-similarities)[:limit]
        return [
            ScoredChunk(chunk=candidates[i].model_copy(deep=True), score=float(similarities[i]))
            for i in order
        ]

    def get_file_chunks(self, file_path: str) -> list[Chunk]:
        with self._swap_lock:
            chunks = self._files.get(file_path, ())
        return [c.model_copy(deep=True) for c in chunks]

    def stats(self) -> IndexStats:
        snapshot = self._snapshot()
        return IndexStats(
            total_chunks=sum(len(chunks) for _, chunks in snapshot),
            total_files=len(snapshot),
            total_tokens=sum(c.metadata.token_count for _, chunks in snapshot for c in chunks),
        )

    def health_check(self) -> bool:
        return True

    def list_files(self) -> list[str]:
        return sorted(path for path, _ in self._snapshot())
