"""Text chunking strategies."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from langchain_text_splitters import RecursiveCharacterTextSplitter
from pydantic import BaseModel

from local_search.errors import ProcessingError, ValidationError

if TYPE_CHECKING:
    from langchain_core.documents import Document


class TextSegment(BaseModel):
    """One piece of a split document."""

    content: str
    offset: int
    token_count: int


def estimate_tokens(text: str) -> int:
    """Rough token estimate (~4 characters per token)."""
    return math.ceil(len(text) / 4)


class Chunker(ABC):
    """Splits raw text into overlapping segments."""

    @abstractmethod
    def split(self, text: str, chunk_size: int, overlap: int) -> list[TextSegment]:
        """Split *text* into segments of at most *chunk_size* characters.

        Parameters
        ----------
        text:
            Full document text.
        chunk_size:
            Maximum number of characters per segment.
        overlap:
            Number of characters shared by consecutive segments.

        Returns
        -------
        list[TextSegment]
            Segments in document order, each with its character offset.
        """
        ...


class TextChunker(Chunker):
    """Recursive character splitter that prefers paragraph and sentence breaks."""

    separators = ["\n\n", "\n", ". ", " ", ""]

    def split(self, text: str, chunk_size: int, overlap: int) -> list[TextSegment]:
        if chunk_size <= 0:
            raise ValidationError(f"chunk_size must be positive, got {chunk_size}")
        if overlap < 0 or overlap >= chunk_size:
            raise ValidationError(f"overlap must be in [0, chunk_size), got {overlap}")
        if not text.strip():
            return []

        splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=overlap,
            length_function=len,
            separators=self.separators,
            add_start_index=True,
        )
        try:
            docs: list[Document] = splitter.create_documents([text])
        except Exception as exc:
            raise ProcessingError(f"Chunking failed: {exc}") from exc

        segments: list[TextSegment] = []
        for doc in docs:
            content = doc.page_content
            if not content.strip():
                continue
            segments.append(
                TextSegment(
                    content=content,
                    offset=max(int(doc.metadata.get("start_index", 0)), 0),
                    token_count=estimate_tokens(content),
                )
            )
        return segments
