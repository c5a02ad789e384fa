"""Typed error taxonomy shared by ingestion, storage and search.

Every failure that crosses a component boundary is one of the classes
below, so that callers can tell *where* something went wrong without
inspecting third-party exception types.  Library exceptions are wrapped
at the capability boundary with ``raise ... from exc``.
"""

from __future__ import annotations

from typing import Literal

AcquisitionKind = Literal["not_found", "too_large", "timeout", "network"]


class LocalSearchError(Exception):
    """Base class for all errors raised by ``local_search``."""

    code = "local_search_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AcquisitionError(LocalSearchError):
    """Raised when source content cannot be downloaded or read.

    Parameters
    ----------
    message:
        Human-readable description.
    kind:
        One of ``not_found``, ``too_large``, ``timeout``, ``network``.
    """

    code = "acquisition_error"

    def __init__(self, message: str, *, kind: AcquisitionKind = "network") -> None:
        super().__init__(message)
        self.kind = kind


class ProcessingError(LocalSearchError):
    """Raised when chunking or embedding fails."""

    code = "processing_error"


class EmbeddingError(ProcessingError):
    """Raised by an :class:`EmbeddingProvider` on model/runtime failure."""

    code = "embedding_error"


class StorageError(LocalSearchError):
    """Raised by a chunk store on read or write failure."""

    code = "storage_error"


class ValidationError(LocalSearchError, ValueError):
    """Raised on bad input (unsupported file type, invalid path, bad options)."""

    code = "validation_error"
