"""Remote content acquisition: single URLs over HTTP and Git repositories.

Both downloaders are synchronous and report progress through a callback
``on_progress(done, total)``; the pipeline runs them on a worker thread
and enforces its own overall timeout.
"""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
import time
import unicodedata
from abc import ABC, abstractmethod
from collections.abc import Callable
from fnmatch import fnmatch
from pathlib import Path

import requests
from bs4 import BeautifulSoup
from pydantic import BaseModel

from local_search.config import settings
from local_search.errors import AcquisitionError, ValidationError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int | None], None]

_BOILERPLATE_TAGS = ["script", "style", "nav", "footer", "header", "aside", "noscript", "iframe"]
_GITHUB_SHORTHAND = re.compile(r"^[\w.-]+/[\w.-]+$")


class FetchedContent(BaseModel):
    """Text produced by a downloader."""

    text: str
    reported_size: int | None = None
    content_type: str = "text/plain"
    source: str
    name: str | None = None
    file_count: int = 1


class Downloader(ABC):
    """Fetches a URL or repository reference and returns its text."""

    @abstractmethod
    def fetch(self, ref: str, on_progress: ProgressCallback | None = None) -> FetchedContent:
        """Download *ref*.  Raises :class:`AcquisitionError`."""
        ...


# ── helpers ────────────────────────────────────────────────────────────


def _normalise(text: str) -> str:
    """Unicode NFC, collapse whitespace, strip control chars."""
    text = unicodedata.normalize("NFC", text)
    text = re.sub(r"[^\S\n]+", " ", text)  # collapse spaces (keep \n)
    text = re.sub(r"\n{3,}", "\n\n", text)  # max two consecutive newlines
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", text)  # ctrl chars
    return text.strip()


def _strip_control(text: str) -> str:
    return re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", unicodedata.normalize("NFC", text))


def html_to_text(html: str) -> str:
    """Strip boiler-plate tags and return the visible text of *html*."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(_BOILERPLATE_TAGS):
        tag.decompose()
    return _normalise(soup.get_text(separator="\n", strip=True))


def _matches_any(rel_path: str, patterns: list[str]) -> bool:
    for pattern in patterns:
        if fnmatch(rel_path, pattern):
            return True
        # "**/x" should also match at the repository root.
        if pattern.startswith("**/") and fnmatch(rel_path, pattern[3:]):
            return True
    return False


# ── HTTP ───────────────────────────────────────────────────────────────


class HttpDownloader(Downloader):
    """Streams a single URL with size limits and retries.

    Parameters
    ----------
    timeout:
        Per-request connect/read timeout in seconds.
    max_retries:
        Attempts for transient network errors.
    max_size_mb:
        Reject bodies larger than this.
    backoff_base:
        Wait ``backoff_base ** attempt`` seconds between retries.
    headers:
        Extra request headers.
    """

    def __init__(
        self,
        *,
        timeout: float = settings.acquire_timeout_seconds,
        max_retries: int = settings.download_max_retries,
        max_size_mb: float = settings.max_download_size_mb,
        backoff_base: float = 2.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_bytes = int(max_size_mb * 1024 * 1024)
        self.backoff_base = backoff_base
        self.headers = headers or {"User-Agent": "local-search/0.1"}

    def fetch(self, ref: str, on_progress: ProgressCallback | None = None) -> FetchedContent:
        if not ref.startswith(("http://", "https://")):
            raise ValidationError(f"Not an HTTP(S) URL: {ref!r}")

        last_exc: Exception | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                return self._fetch_once(ref, on_progress)
            except (requests.ConnectionError, requests.Timeout) as exc:
                last_exc = exc
                if attempt < self.max_retries:
                    wait = self.backoff_base**attempt
                    logger.warning("Retry %d/%d for %s (wait %.1fs): %s", attempt, self.max_retries, ref, wait, exc)
                    time.sleep(wait)

        kind = "timeout" if isinstance(last_exc, requests.Timeout) else "network"
        raise AcquisitionError(
            f"Failed to fetch {ref} after {self.max_retries} attempts: {last_exc}", kind=kind
        ) from last_exc

    def _fetch_once(self, url: str, on_progress: ProgressCallback | None) -> FetchedContent:
        resp = requests.get(url, headers=self.headers, timeout=self.timeout, stream=True)
        try:
            if resp.status_code == 404:
                raise AcquisitionError(f"Not found: {url}", kind="not_found")
            try:
                resp.raise_for_status()
            except requests.HTTPError as exc:
                raise AcquisitionError(f"HTTP error for {url}: {exc}", kind="network") from exc

            declared = resp.headers.get("content-length")
            total = int(declared) if declared and declared.isdigit() else None
            if total is not None and total > self.max_bytes:
                raise AcquisitionError(
                    f"Content too large: {total} bytes (max {self.max_bytes})", kind="too_large"
                )

            body = bytearray()
            for block in resp.iter_content(chunk_size=64 * 1024):
                if not block:
                    continue
                body.extend(block)
                if len(body) > self.max_bytes:
                    raise AcquisitionError(
                        f"Content exceeded {self.max_bytes} bytes while downloading {url}", kind="too_large"
                    )
                if on_progress is not None:
                    on_progress(len(body), total)
        finally:
            resp.close()

        ctype = resp.headers.get("content-type", "")
        raw = bytes(body).decode(resp.encoding or "utf-8", errors="replace")
        if "html" in ctype or url.lower().endswith((".html", ".htm")):
            text = html_to_text(raw)
            content_type = "text/html"
        else:
            text = _strip_control(raw)
            content_type = ctype.split(";")[0].strip() or "text/plain"

        logger.info("Fetched %s (%d bytes, %s)", url, len(body), content_type)
        return FetchedContent(
            text=text,
            reported_size=total if total is not None else len(body),
            content_type=content_type,
            source=url,
        )


# ── Git ────────────────────────────────────────────────────────────────


class GitRepoDownloader(Downloader):
    """Shallow-clones a repository and concatenates matching files to markdown.

    Parameters
    ----------
    timeout:
        Timeout for the ``git clone`` subprocess.
    include_patterns / exclude_patterns:
        Glob patterns relative to the repository root.
    max_files:
        Stop collecting after this many files.
    max_size_mb:
        Reject repositories whose selected files exceed this size.
    """

    def __init__(
        self,
        *,
        timeout: float = settings.acquire_timeout_seconds,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        max_files: int = settings.repo_max_files,
        max_size_mb: float = settings.max_download_size_mb,
    ) -> None:
        self.timeout = timeout
        self.include_patterns = include_patterns or list(settings.repo_include_patterns)
        self.exclude_patterns = exclude_patterns or list(settings.repo_exclude_patterns)
        self.max_files = max_files
        self.max_bytes = int(max_size_mb * 1024 * 1024)

    @staticmethod
    def normalise_url(ref: str) -> str:
        """Expand ``owner/repo`` shorthand to a GitHub URL; validate the rest."""
        ref = ref.strip()
        if ref.startswith(("https://", "http://", "git@", "ssh://", "file://")):
            return ref
        if _GITHUB_SHORTHAND.match(ref):
            return f"https://github.com/{ref}.git"
        raise ValidationError(f"Not a repository URL: {ref!r}")

    @staticmethod
    def repo_name(url: str) -> str:
        name = url.rstrip("/").rsplit("/", 1)[-1].rsplit(":", 1)[-1]
        return name[:-4] if name.endswith(".git") else name

    def fetch(
        self,
        ref: str,
        on_progress: ProgressCallback | None = None,
        *,
        branch: str | None = None,
        include_patterns: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        max_files: int | None = None,
    ) -> FetchedContent:
        url = self.normalise_url(ref)
        name = self.repo_name(url)
        with tempfile.TemporaryDirectory(prefix="local-search-") as tmp:
            dest = Path(tmp) / name
            self._clone(url, dest, branch)
            files = self._collect(
                dest,
                include_patterns or self.include_patterns,
                exclude_patterns or self.exclude_patterns,
                max_files or self.max_files,
            )
            text, size = self._to_markdown(name, url, dest, files, on_progress)

        logger.info("Fetched repository %s: %d files, %d bytes", url, len(files), size)
        return FetchedContent(
            text=text,
            reported_size=size,
            content_type="text/markdown",
            source=url,
            name=name,
            file_count=len(files),
        )

    def _clone(self, url: str, dest: Path, branch: str | None) -> None:
        cmd = ["git", "clone", "--depth", "1"]
        if branch:
            cmd += ["--branch", branch]
        cmd += [url, str(dest)]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except subprocess.TimeoutExpired as exc:
            raise AcquisitionError(f"git clone timed out after {self.timeout}s: {url}", kind="timeout") from exc
        except FileNotFoundError as exc:
            raise AcquisitionError("git executable not found on PATH", kind="network") from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            kind = "not_found" if "not found" in stderr.lower() or "does not exist" in stderr.lower() else "network"
            raise AcquisitionError(f"git clone failed for {url}: {stderr}", kind=kind)

    def _collect(self, root: Path, include: list[str], exclude: list[str], max_files: int) -> list[Path]:
        selected: list[Path] = []
        for path in sorted(root.rglob("*")):
            if not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            if rel.startswith(".git/") or _matches_any(rel, exclude) or not _matches_any(rel, include):
                continue
            selected.append(path)
            if len(selected) >= max_files:
                logger.warning("Stopping at %d files for %s", max_files, root.name)
                break
        return selected

    def _to_markdown(
        self,
        name: str,
        url: str,
        root: Path,
        files: list[Path],
        on_progress: ProgressCallback | None,
    ) -> tuple[str, int]:
        parts = [f"# Repository: {name}\n\nSource: {url}\nFiles: {len(files)}\n"]
        size = 0
        for i, path in enumerate(files, 1):
            size += path.stat().st_size
            if size > self.max_bytes:
                raise AcquisitionError(f"Repository content exceeds {self.max_bytes} bytes", kind="too_large")
            rel = path.relative_to(root).as_posix()
            content = path.read_text(encoding="utf-8", errors="replace")
            suffix = path.suffix.lower()
            if suffix in (".md", ".mdx", ".txt", ".rst"):
                parts.append(f"## File: {rel}\n\n{content.strip()}\n")
            else:
                parts.append(f"## File: {rel}\n\n```{suffix.lstrip('.')}\n{content.rstrip()}\n```\n")
            if on_progress is not None:
                on_progress(i, len(files))
        return "\n".join(parts), size
