"""Local document reading: a thin wrapper around LangChain's ``TextLoader``."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from langchain_community.document_loaders import TextLoader
from pydantic import BaseModel

from local_search.config import settings
from local_search.errors import AcquisitionError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = frozenset(
    {
        ".txt", ".md", ".mdx", ".json", ".yaml", ".yml", ".rst",
        ".js", ".ts", ".py", ".java", ".c", ".cpp", ".h",
        ".css", ".scss", ".html", ".xml", ".csv",
    }
)


class LoadedDocument(BaseModel):
    """Raw text of one file plus the stat facts recorded on its chunks."""

    file_path: str
    text: str
    file_size: int
    last_modified: datetime
    source: str | None = None


def is_supported(path: str | Path) -> bool:
    return Path(path).suffix.lower() in SUPPORTED_EXTENSIONS


class FileReader:
    """Reads supported text files from disk.

    Parameters
    ----------
    max_file_size_mb:
        Files larger than this are rejected with ``AcquisitionError``.
    """

    def __init__(self, max_file_size_mb: float = settings.max_local_file_size_mb) -> None:
        self.max_bytes = int(max_file_size_mb * 1024 * 1024)

    def read(self, path: str | Path, *, source: str | None = None) -> LoadedDocument:
        """Load *path* as text.

        Raises
        ------
        ValidationError
            Path is a directory or has an unsupported extension.
        AcquisitionError
            File is missing, unreadable or too large.
        """
        path = Path(path)
        if not is_supported(path):
            raise ValidationError(f"Unsupported file type: {path.suffix or path.name}")
        try:
            stat = path.stat()
        except FileNotFoundError as exc:
            raise AcquisitionError(f"File not found: {path}", kind="not_found") from exc
        except OSError as exc:
            raise AcquisitionError(f"Cannot stat {path}: {exc}", kind="not_found") from exc
        if path.is_dir():
            raise ValidationError(f"Expected a file, got directory: {path}")
        if stat.st_size > self.max_bytes:
            raise AcquisitionError(
                f"File too large: {stat.st_size} bytes (max {self.max_bytes})",
                kind="too_large",
            )

        try:
            docs = TextLoader(str(path), encoding="utf-8").load()
        except Exception as exc:
            raise AcquisitionError(f"Cannot read {path}: {exc}", kind="not_found") from exc
        text = "\n".join(d.page_content for d in docs)

        if path.suffix.lower() == ".json":
            text = _pretty_json(text, path)

        return LoadedDocument(
            file_path=str(path),
            text=text,
            file_size=stat.st_size,
            last_modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            source=source,
        )


def _pretty_json(text: str, path: Path) -> str:
    try:
        return json.dumps(json.loads(text), indent=2, ensure_ascii=False)
    except json.JSONDecodeError:
        logger.debug("Leaving %s as raw text: not valid JSON", path)
        return text
