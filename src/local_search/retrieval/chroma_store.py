"""Chroma implementation of the chunk-store abstraction."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

import chromadb

from local_search.config import settings
from local_search.errors import StorageError
from local_search.retrieval.base import ChunkStore, matches_all
from local_search.retrieval.models import (
    Chunk,
    ChunkMetadata,
    ContentMetadata,
    IndexStats,
    MetadataFilter,
    ScoredChunk,
)

logger = logging.getLogger(__name__)

# Chroma has no list-valued metadata operators; these filters are applied
# client-side on an over-fetched candidate set.
_CLIENT_SIDE_OPERATORS = {"overlaps"}
_OVERFETCH_FACTOR = 4


def _build_chroma_where(filters: list[MetadataFilter]) -> dict[str, Any] | None:
    """Convert a list of :class:`MetadataFilter` to Chroma ``where`` syntax."""
    if not filters:
        return None

    _OP_MAP = {
        "eq": "$eq",
        "ne": "$ne",
        "gt": "$gt",
        "gte": "$gte",
        "lt": "$lt",
        "lte": "$lte",
        "in": "$in",
        "nin": "$nin",
    }

    clauses: list[dict[str, Any]] = []
    for f in filters:
        chroma_op = _OP_MAP.get(f.operator)
        if chroma_op is None:
            raise ValueError(f"Unsupported filter operator: {f.operator!r}")
        clauses.append({f.field: {chroma_op: f.value}})

    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def _to_chroma_metadata(chunk: Chunk) -> dict[str, Any]:
    """Flatten a chunk into Chroma metadata (str/int/float/bool only)."""
    meta: dict[str, Any] = {
        "file_path": chunk.file_path,
        "chunk_index": chunk.chunk_index,
        "file_size": chunk.metadata.file_size,
        "chunk_offset": chunk.metadata.chunk_offset,
        "token_count": chunk.metadata.token_count,
    }
    if chunk.metadata.last_modified is not None:
        meta["last_modified"] = chunk.metadata.last_modified.isoformat()
    if chunk.metadata.source:
        meta["source"] = chunk.metadata.source

    cm = chunk.content_metadata
    if cm is not None:
        meta.update(
            content_type=cm.content_type,
            language=cm.language,
            domain_tags=",".join(sorted(cm.domain_tags)),
            quality_score=cm.quality_score,
            source_authority=cm.source_authority,
            file_extension=cm.file_extension,
            has_comments=cm.has_comments,
            has_documentation=cm.has_documentation,
        )
    return meta


def _from_chroma(doc_id: str, content: str | None, meta: dict[str, Any], embedding: Any = None) -> Chunk:
    last_modified = meta.get("last_modified")
    content_metadata = None
    if "content_type" in meta:
        tags = meta.get("domain_tags") or ""
        content_metadata = ContentMetadata(
            content_type=meta["content_type"],
            language=meta.get("language", "unknown"),
            domain_tags={t for t in tags.split(",") if t},
            quality_score=meta.get("quality_score", 0.5),
            source_authority=meta.get("source_authority", 0.3),
            file_extension=meta.get("file_extension", ""),
            has_comments=meta.get("has_comments", False),
            has_documentation=meta.get("has_documentation", False),
        )
    return Chunk(
        id=doc_id,
        file_path=meta["file_path"],
        chunk_index=int(meta["chunk_index"]),
        content=content or "",
        embedding=[float(x) for x in embedding] if embedding is not None else [],
        metadata=ChunkMetadata(
            file_size=meta.get("file_size", 0),
            last_modified=datetime.fromisoformat(last_modified) if last_modified else None,
            chunk_offset=meta.get("chunk_offset", 0),
            token_count=meta.get("token_count", 0),
            source=meta.get("source"),
        ),
        content_metadata=content_metadata,
    )


class ChromaChunkStore(ChunkStore):
    """Chroma-backed chunk store.

    Parameters
    ----------
    collection_name:
        Name of the Chroma collection.
    host:
        Chroma server hostname.  When empty, an embedded
        ``PersistentClient`` rooted at *persist_dir* is used instead.
    port:
        Chroma server port.
    persist_dir:
        On-disk location for the embedded client.
    client:
        Pre-built Chroma client (overrides *host* / *persist_dir*).
    upsert_batch_size:
        Max records per upsert call.
    """

    def __init__(
        self,
        collection_name: str = settings.chroma_collection,
        *,
        host: str = settings.chroma_host,
        port: int = settings.chroma_port,
        persist_dir: str | Path | None = None,
        client: Any = None,
        upsert_batch_size: int = 5000,
    ) -> None:
        super().__init__(collection_name)
        if client is None:
            if host:
                client = chromadb.HttpClient(host=host, port=port)
            else:
                path = Path(persist_dir or settings.data_dir / "chroma")
                path.mkdir(parents=True, exist_ok=True)
                client = chromadb.PersistentClient(path=str(path))
        self._client = client
        self._upsert_batch_size = upsert_batch_size
        try:
            self._collection = self._client.get_or_create_collection(
                name=collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        except Exception as exc:
            raise StorageError(f"Cannot open Chroma collection {collection_name!r}: {exc}") from exc

    # -- ChunkStore overrides -------------------------------------------------

    def _replace(self, file_path: str, chunks: list[Chunk]) -> int:
        try:
            previous = self._collection.get(
                where={"file_path": file_path},
                include=["documents", "metadatas", "embeddings"],
            )
        except Exception as exc:
            raise StorageError(f"Failed to read chunks for {file_path}: {exc}") from exc

        old_ids = list(previous.get("ids") or [])
        new_ids = [c.id for c in chunks]
        # New ids are stable per (file_path, chunk_index): upserting
        # overwrites each chunk in place, then the stale tail goes.
        stale = [doc_id for doc_id in old_ids if doc_id not in set(new_ids)]
        added = [doc_id for doc_id in new_ids if doc_id not in set(old_ids)]
        try:
            for start in range(0, len(chunks), self._upsert_batch_size):
                batch = chunks[start : start + self._upsert_batch_size]
                self._collection.upsert(
                    ids=[c.id for c in batch],
                    embeddings=[c.embedding for c in batch],
                    documents=[c.content for c in batch],
                    metadatas=[_to_chroma_metadata(c) for c in batch],
                )
            if stale:
                self._collection.delete(ids=stale)
        except Exception as exc:
            self._restore(file_path, previous, added)
            raise StorageError(f"Failed to write chunks for {file_path}: {exc}") from exc
        logger.debug("Stored %d chunks for %s (%d stale removed)", len(chunks), file_path, len(stale))
        return len(chunks)

    def _restore(self, file_path: str, previous: dict[str, Any], added: list[str]) -> None:
        """Put back the chunk set captured before a failed write."""
        ids = list(previous.get("ids") or [])
        embeddings = previous.get("embeddings")
        if embeddings is None:
            embeddings = []
        documents = previous.get("documents") or []
        metadatas = previous.get("metadatas") or []
        try:
            if added:
                self._collection.delete(ids=added)
            for start in range(0, len(ids), self._upsert_batch_size):
                end = start + self._upsert_batch_size
                self._collection.upsert(
                    ids=ids[start:end],
                    embeddings=[[float(x) for x in e] for e in embeddings[start:end]],
                    documents=list(documents[start:end]),
                    metadatas=list(metadatas[start:end]),
                )
        except Exception:
            logger.exception("Rollback failed for %s; its stored chunks may be mixed", file_path)
        else:
            logger.warning("Rolled back partial write of %s (%d chunks restored)", file_path, len(ids))

    def _delete(self, file_path: str) -> int:
        try:
            existing = self._collection.get(where={"file_path": file_path}, include=[])
            ids = existing.get("ids", [])
            if ids:
                self._collection.delete(ids=ids)
        except Exception as exc:
            raise StorageError(f"Failed to delete chunks for {file_path}: {exc}") from exc
        return len(ids)

    def similarity_search(
        self,
        query_embedding: list[float],
        *,
        filters: list[MetadataFilter] | None = None,
        limit: int = 10,
    ) -> list[ScoredChunk]:
        filters = filters or []
        server_side = [f for f in filters if f.operator not in _CLIENT_SIDE_OPERATORS]
        client_side = [f for f in filters if f.operator in _CLIENT_SIDE_OPERATORS]
        where = _build_chroma_where(server_side)

        try:
            count = self._collection.count()
            if count == 0:
                return []
            n_results = min(count, limit * _OVERFETCH_FACTOR if client_side else limit)
            results = self._collection.query(
                query_embeddings=[query_embedding],
                n_results=n_results,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise StorageError(f"Chroma query failed: {exc}") from exc

        hits: list[ScoredChunk] = []
        ids = results.get("ids", [[]])[0]
        docs = results.get("documents", [[]])[0]
        metas = results.get("metadatas", [[]])[0]
        distances = results.get("distances", [[]])[0]

        for doc_id, content, meta, dist in zip(ids, docs, metas, distances):
            chunk = _from_chroma(doc_id, content, meta or {})
            if not matches_all(chunk, client_side):
                continue
            # Collection uses cosine space: distance = 1 - cosine similarity.
            hits.append(ScoredChunk(chunk=chunk, score=1.0 - float(dist)))
            if len(hits) >= limit:
                break
        return hits

    def get_file_chunks(self, file_path: str) -> list[Chunk]:
        try:
            results = self._collection.get(
                where={"file_path": file_path},
                include=["documents", "metadatas", "embeddings"],
            )
        except Exception as exc:
            raise StorageError(f"Failed to read chunks for {file_path}: {exc}") from exc

        embeddings = results.get("embeddings")
        if embeddings is None:
            embeddings = [None] * len(results.get("ids", []))
        chunks = [
            _from_chroma(doc_id, content, meta or {}, emb)
            for doc_id, content, meta, emb in zip(
                results.get("ids", []), results.get("documents", []), results.get("metadatas", []), embeddings
            )
        ]
        return sorted(chunks, key=lambda c: c.chunk_index)

    def stats(self) -> IndexStats:
        try:
            results = self._collection.get(include=["metadatas"])
        except Exception as exc:
            raise StorageError(f"Failed to read collection stats: {exc}") from exc
        metas = results.get("metadatas") or []
        return IndexStats(
            total_chunks=len(metas),
            total_files=len({m.get("file_path") for m in metas}),
            total_tokens=sum(int(m.get("token_count", 0)) for m in metas),
        )

    def health_check(self) -> bool:
        try:
            self._client.heartbeat()
            return True
        except Exception:
            logger.warning("Chroma health-check failed", exc_info=True)
            return False

    def list_files(self) -> list[str]:
        try:
            results = self._collection.get(include=["metadatas"])
        except Exception as exc:
            raise StorageError(f"Failed to list files: {exc}") from exc
        return sorted({m["file_path"] for m in results.get("metadatas") or []})
