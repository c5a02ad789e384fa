"""Chunk stage: split an acquired document into :class:`Chunk` records."""

from __future__ import annotations

from local_search.ingestion.chunker import Chunker
from local_search.ingestion.loader import LoadedDocument
from local_search.retrieval.models import Chunk, ChunkMetadata


def chunk_document(
    document: LoadedDocument,
    chunker: Chunker,
    *,
    chunk_size: int,
    chunk_overlap: int,
) -> list[Chunk]:
    """Split *document* into chunks carrying file and offset metadata.

    Parameters
    ----------
    document:
        Output of the acquire stage.
    chunker:
        Splitting strategy.
    chunk_size:
        Maximum number of characters per chunk.
    chunk_overlap:
        Number of overlapping characters between consecutive chunks.

    Returns
    -------
    list[Chunk]
        Chunks numbered from 0, without embeddings.
    """
    segments = chunker.split(document.text, chunk_size, chunk_overlap)
    return [
        Chunk(
            file_path=document.file_path,
            chunk_index=i,
            content=seg.content,
            metadata=ChunkMetadata(
                file_size=document.file_size,
                last_modified=document.last_modified,
                chunk_offset=seg.offset,
                token_count=seg.token_count,
                source=document.source or document.file_path,
            ),
        )
        for i, seg in enumerate(segments)
    ]
