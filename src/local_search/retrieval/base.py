"""Abstract base class for chunk-store backends.

Adding a new backend only requires subclassing :class:`ChunkStore` and
implementing the abstract methods.  Per-file mutual exclusion for
``replace_file`` / ``delete_file`` lives here so every backend gets it:
two pipelines touching the *same* file are serialized, different files
proceed in parallel, and reads never take the lock.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from local_search.retrieval.models import Chunk, IndexStats, MetadataFilter, ScoredChunk


@dataclass
class _FileLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class ChunkStore(ABC):
    """Backend-agnostic chunk-store interface.

    Parameters
    ----------
    collection_name:
        Logical name of the collection / index / namespace.
    """

    def __init__(self, collection_name: str) -> None:
        self.collection_name = collection_name
        self._registry_lock = threading.Lock()
        self._file_locks: dict[str, _FileLock] = {}

    @contextmanager
    def file_lock(self, file_path: str) -> Iterator[None]:
        """Hold the write lock for *file_path*.

        Registry entries live only while some thread holds or waits for them.
        """
        with self._registry_lock:
            entry = self._file_locks.get(file_path)
            if entry is None:
                entry = self._file_locks[file_path] = _FileLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._registry_lock:
                entry.users -= 1
                if entry.users == 0:
                    del self._file_locks[file_path]

    # -- public write API -----------------------------------------------------

    def replace_file(self, file_path: str, chunks: list[Chunk]) -> int:
        """Atomically swap the stored chunk set of *file_path* for *chunks*.

        Returns the number of chunks now stored for the file.
        """
        with self.file_lock(file_path):
            return self._replace(file_path, chunks)

    def upsert_chunks(self, file_path: str, chunks: list[Chunk]) -> int:
        """Alias of :meth:`replace_file`; a file's chunk set is always written whole."""
        return self.replace_file(file_path, chunks)

    def delete_file(self, file_path: str) -> int:
        """Remove every chunk of *file_path*; returns the deleted count (0 if absent)."""
        with self.file_lock(file_path):
            return self._delete(file_path)

    # -- required overrides ---------------------------------------------------

    @abstractmethod
    def _replace(self, file_path: str, chunks: list[Chunk]) -> int:
        """Backend write; called with the file lock held."""
        ...

    @abstractmethod
    def _delete(self, file_path: str) -> int:
        """Backend delete; called with the file lock held."""
        ...

    @abstractmethod
    def similarity_search(
        self,
        query_embedding: list[float],
        *,
        filters: list[MetadataFilter] | None = None,
        limit: int = 10,
    ) -> list[ScoredChunk]:
        """Return up to *limit* chunks closest to *query_embedding*.

        Parameters
        ----------
        query_embedding:
            Dense vector for the query.
        filters:
            Optional metadata filters; every filter must match.
        limit:
            Maximum number of results.

        Returns
        -------
        list[ScoredChunk]
            Sorted by ``score`` (``1 - cosine distance``) descending.
        """
        ...

    @abstractmethod
    def get_file_chunks(self, file_path: str) -> list[Chunk]:
        """Return all chunks of *file_path* ordered by ``chunk_index``."""
        ...

    @abstractmethod
    def stats(self) -> IndexStats:
        """Return totals over the whole store."""
        ...

    @abstractmethod
    def health_check(self) -> bool:
        """Return ``True`` when the backend is reachable and ready."""
        ...

    # -- optional overrides ---------------------------------------------------

    def get_chunk(self, file_path: str, chunk_index: int) -> Chunk | None:
        for chunk in self.get_file_chunks(file_path):
            if chunk.chunk_index == chunk_index:
                return chunk
        return None

    def list_files(self) -> list[str]:
        """List indexed file paths.  Optional; raises by default."""
        raise NotImplementedError(f"{type(self).__name__} does not support list_files")


def matches_all(chunk: Chunk, filters: list[MetadataFilter] | None) -> bool:
    """Return ``True`` when *chunk* satisfies every filter in *filters*."""
    if not filters:
        return True
    return all(f.matches(chunk.filter_value(f.field)) for f in filters)
