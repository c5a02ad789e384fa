"""Embedding providers."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from langchain_huggingface import HuggingFaceEmbeddings

from local_search.config import settings
from local_search.errors import EmbeddingError

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """Text → fixed-dimension vector capability.

    Implementations are synchronous; callers run them off the event loop
    and do their own batching.
    """

    @abstractmethod
    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of documents.  Raises :class:`EmbeddingError`."""
        ...

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        vectors = self.embed([text])
        if not vectors:
            raise EmbeddingError("Embedding provider returned no vector for query")
        return vectors[0]


class HuggingFaceEmbeddingProvider(EmbeddingProvider):
    """Sentence-transformer embeddings via ``langchain-huggingface``.

    The model is loaded lazily on first use so constructing a service does
    not pay the model start-up cost.
    """

    def __init__(self, model_name: str = settings.embedding_model, *, normalize: bool = True) -> None:
        self.model_name = model_name
        self._normalize = normalize
        self._model: HuggingFaceEmbeddings | None = None

    def _get_model(self) -> HuggingFaceEmbeddings:
        if self._model is None:
            logger.info("Loading embedding model %s", self.model_name)
            try:
                self._model = HuggingFaceEmbeddings(
                    model_name=self.model_name,
                    encode_kwargs={"normalize_embeddings": self._normalize},
                )
            except Exception as exc:
                raise EmbeddingError(f"Cannot load embedding model {self.model_name!r}: {exc}") from exc
        return self._model

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        model = self._get_model()
        try:
            return model.embed_documents(texts)
        except Exception as exc:
            raise EmbeddingError(f"Embedding {len(texts)} texts failed: {exc}") from exc

    def embed_query(self, text: str) -> list[float]:
        model = self._get_model()
        try:
            return model.embed_query(text)
        except Exception as exc:
            raise EmbeddingError(f"Query embedding failed: {exc}") from exc
