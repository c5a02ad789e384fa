"""Embed stage: attach vectors to chunks, one batch at a time."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable

from local_search.errors import EmbeddingError
from local_search.ingestion.embedder import EmbeddingProvider
from local_search.retrieval.models import Chunk

logger = logging.getLogger(__name__)


async def embed_chunks(
    chunks: list[Chunk],
    provider: EmbeddingProvider,
    *,
    batch_size: int,
    on_batch: Callable[[int, int], None] | None = None,
) -> list[Chunk]:
    """Embed *chunks* in place and return them.

    Each batch runs on a worker thread and the coroutine yields to the
    event loop between batches, so concurrent searches wait at most one
    batch.

    Parameters
    ----------
    chunks:
        Chunks produced by the chunk stage.
    provider:
        Embedding backend.
    batch_size:
        Number of texts per provider call.
    on_batch:
        Called with ``(batches_done, batches_total)`` after every batch.

    Raises
    ------
    EmbeddingError
        The provider failed or returned the wrong number of vectors.
    """
    if not chunks:
        return chunks

    total_batches = math.ceil(len(chunks) / batch_size)
    t0 = time.monotonic()
    for batch_no, start in enumerate(range(0, len(chunks), batch_size), 1):
        batch = chunks[start : start + batch_size]
        vectors = await asyncio.to_thread(provider.embed, [c.content for c in batch])
        if len(vectors) != len(batch):
            raise EmbeddingError(f"Provider returned {len(vectors)} vectors for {len(batch)} texts")
        for chunk, vector in zip(batch, vectors):
            chunk.embedding = list(vector)
        logger.debug("  embedded %d / %d", min(start + batch_size, len(chunks)), len(chunks))
        if on_batch is not None:
            on_batch(batch_no, total_batches)
        await asyncio.sleep(0)

    logger.info("Embedded %d chunks in %.1fs", len(chunks), time.monotonic() - t0)
    return chunks
