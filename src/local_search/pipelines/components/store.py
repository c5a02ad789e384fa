"""Store stage: classify chunks and swap them into the chunk store."""

from __future__ import annotations

import asyncio
import logging

from local_search.retrieval.base import ChunkStore
from local_search.retrieval.classifier import ContentClassifier
from local_search.retrieval.models import Chunk

logger = logging.getLogger(__name__)


def _classify(chunks: list[Chunk], classifier: ContentClassifier) -> None:
    for chunk in chunks:
        chunk.content_metadata = classifier.classify(chunk.content, chunk.file_path, chunk.metadata.source)


async def store_chunks(
    file_path: str,
    chunks: list[Chunk],
    store: ChunkStore,
    classifier: ContentClassifier,
) -> int:
    """Classify *chunks* and atomically replace the stored set for *file_path*.

    Returns the number of chunks stored.  Raises ``StorageError`` on write
    failure, in which case the previous chunk set is left in place.
    """
    await asyncio.to_thread(_classify, chunks, classifier)
    stored = await asyncio.to_thread(store.replace_file, file_path, chunks)
    logger.info("Indexed %d chunks for %s", stored, file_path)
    return stored
