"""Acquire stage: read a local file, download a URL, or fetch a repository.

Every variant enforces an overall timeout; a stage that runs past it
fails with ``AcquisitionError(kind="timeout")``.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable
from datetime import datetime, timezone
from pathlib import Path
from typing import TypeVar

from local_search.errors import AcquisitionError, ValidationError
from local_search.ingestion.downloader import Downloader, FetchedContent, GitRepoDownloader, ProgressCallback
from local_search.ingestion.loader import FileReader, LoadedDocument
from local_search.jobs.models import FetchFileParams, FetchRepoParams

logger = logging.getLogger(__name__)

T = TypeVar("T")

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]")


def sanitize_filename(filename: str) -> str:
    """Replace characters outside ``[A-Za-z0-9._-]`` with ``_``."""
    cleaned = _UNSAFE_FILENAME.sub("_", Path(filename).name).lstrip(".")
    if not cleaned:
        raise ValidationError(f"Invalid filename: {filename!r}")
    return cleaned


async def _with_timeout(work: Awaitable[T], timeout: float, what: str) -> T:
    try:
        return await asyncio.wait_for(work, timeout)
    except asyncio.TimeoutError as exc:
        raise AcquisitionError(f"Timed out after {timeout:g}s {what}", kind="timeout") from exc


async def acquire_local(path: str | Path, reader: FileReader, *, timeout: float) -> LoadedDocument:
    """Read a file that is already on disk."""
    return await _with_timeout(asyncio.to_thread(reader.read, path), timeout, f"reading {path}")


def _write_text(dest: Path, text: str) -> int:
    dest.parent.mkdir(parents=True, exist_ok=True)
    data = text.encode("utf-8")
    dest.write_bytes(data)
    return len(data)


async def acquire_file(
    params: FetchFileParams,
    downloader: Downloader,
    dest_dir: Path,
    *,
    timeout: float,
    on_progress: ProgressCallback | None = None,
) -> LoadedDocument:
    """Download ``params.url`` and save it under *dest_dir*.

    Raises
    ------
    ValidationError
        Bad filename, or the target exists and ``overwrite`` is false.
    AcquisitionError
        Download failed, timed out or exceeded the size limit.
    """
    dest = dest_dir / sanitize_filename(params.filename)
    if dest.exists() and not params.overwrite:
        raise ValidationError(f"File already exists and overwrite is disabled: {dest}")

    fetched: FetchedContent = await _with_timeout(
        asyncio.to_thread(downloader.fetch, params.url, on_progress), timeout, f"downloading {params.url}"
    )
    if params.max_file_size_mb is not None:
        limit = int(params.max_file_size_mb * 1024 * 1024)
        size = fetched.reported_size or len(fetched.text.encode("utf-8"))
        if size > limit:
            raise AcquisitionError(f"Content too large: {size} bytes (max {limit})", kind="too_large")

    size = await asyncio.to_thread(_write_text, dest, fetched.text)
    logger.info("Saved %s to %s (%d bytes)", params.url, dest, size)
    return LoadedDocument(
        file_path=str(dest),
        text=fetched.text,
        file_size=size,
        last_modified=datetime.now(timezone.utc),
        source=params.url,
    )


async def acquire_repo(
    params: FetchRepoParams,
    downloader: GitRepoDownloader,
    dest_dir: Path,
    *,
    timeout: float,
    on_progress: ProgressCallback | None = None,
) -> tuple[LoadedDocument, int]:
    """Fetch a repository as one markdown document saved under *dest_dir*.

    Returns the document and the number of repository files it contains.
    """
    fetched: FetchedContent = await _with_timeout(
        asyncio.to_thread(
            lambda: downloader.fetch(
                params.repo_url,
                on_progress,
                branch=params.branch,
                include_patterns=params.include_patterns,
                exclude_patterns=params.exclude_patterns,
                max_files=params.max_files,
            )
        ),
        timeout,
        f"fetching {params.repo_url}",
    )
    name = sanitize_filename(fetched.name or GitRepoDownloader.repo_name(fetched.source))
    dest = dest_dir / name / f"{name}.md"
    size = await asyncio.to_thread(_write_text, dest, fetched.text)
    files = fetched.file_count
    logger.info("Saved repository %s to %s (%d bytes, %d files)", params.repo_url, dest, size, files)
    document = LoadedDocument(
        file_path=str(dest),
        text=fetched.text,
        file_size=size,
        last_modified=datetime.now(timezone.utc),
        source=fetched.source,
    )
    return document, files
