"""Unit tests for the background processor and its stage components.

Collaborators are faked; the chunk store is the real in-memory backend.
"""

from __future__ import annotations

import asyncio
import threading
import time
from pathlib import Path
from typing import Any

import pytest

import local_search.pipelines.background as background
from conftest import FakeEmbeddingProvider
from local_search.errors import AcquisitionError, EmbeddingError, ValidationError
from local_search.ingestion.downloader import Downloader, FetchedContent, GitRepoDownloader, ProgressCallback
from local_search.jobs.manager import JobManager
from local_search.jobs.models import FetchFileParams, FetchRepoParams, JobStatus, JobType, WatchIngestParams
from local_search.pipelines.background import STAGE_RANGES, BackgroundProcessor, Stage
from local_search.pipelines.components.acquire import sanitize_filename
from local_search.pipelines.components.embed import embed_chunks
from local_search.retrieval.memory_store import InMemoryChunkStore
from local_search.retrieval.models import Chunk

GUIDE = """# Deployment guide

Build the image with docker and push it to the registry before deploying.

## Rollback

Keep the previous release tagged so a rollback is a single command.
"""


# ── Fake downloaders ────────────────────────────────────────────────────


class FakeDownloader(Downloader):
    def __init__(
        self,
        text: str = GUIDE,
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        reported_size: int | None = None,
    ) -> None:
        self.text = text
        self.delay = delay
        self.error = error
        self.reported_size = reported_size
        self.calls: list[str] = []

    def fetch(self, ref: str, on_progress: ProgressCallback | None = None) -> FetchedContent:
        self.calls.append(ref)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if on_progress is not None:
            on_progress(50, 100)
            on_progress(100, 100)
        return FetchedContent(text=self.text, reported_size=self.reported_size, source=ref)


class FakeRepoDownloader(GitRepoDownloader):
    def __init__(self) -> None:
        super().__init__()
        self.kwargs: dict[str, Any] = {}

    def fetch(self, ref: str, on_progress: ProgressCallback | None = None, **kwargs: Any) -> FetchedContent:
        self.kwargs = kwargs
        if on_progress is not None:
            on_progress(1, 2)
            on_progress(2, 2)
        text = (
            "# Repository: demo\n\n## File: README.md\n\nDemo explains the plugin system.\n\n"
            "## File: docs/usage.md\n\nRegister plugins with the registry before startup.\n"
        )
        return FetchedContent(
            text=text,
            source="https://github.com/owner/demo.git",
            name="demo",
            file_count=2,
        )


def _record_progress(monkeypatch: pytest.MonkeyPatch, jobs: JobManager) -> list[float]:
    seen: list[float] = []
    original = jobs.update_progress

    def spy(job_id: str, percent: float, step: str | None = None) -> None:
        seen.append(percent)
        original(job_id, percent, step)

    monkeypatch.setattr(jobs, "update_progress", spy)
    return seen


# ── Watch ingest ────────────────────────────────────────────────────────


class TestWatchIngest:
    @pytest.mark.asyncio
    async def test_ingest_indexes_file(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, notes_file: Path
    ) -> None:
        job_id = await processor.ingest_path(notes_file, "add")

        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100
        assert job.result.chunks_indexed == 3

        chunks = memory_store.get_file_chunks(str(notes_file))
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        text = notes_file.read_text()
        for chunk in chunks:
            assert chunk.embedding
            assert chunk.content_metadata is not None
            assert chunk.content_metadata.content_type == "docs"
            offset = chunk.metadata.chunk_offset
            assert text[offset : offset + len(chunk.content)] == chunk.content

    @pytest.mark.asyncio
    async def test_progress_is_monotonic_and_within_stage_ranges(
        self,
        processor: BackgroundProcessor,
        job_manager: JobManager,
        notes_file: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        seen = _record_progress(monkeypatch, job_manager)

        await processor.ingest_path(notes_file)

        assert seen == sorted(seen)
        assert seen[-1] == 100
        ranges = STAGE_RANGES[JobType.WATCH_INGEST]
        assert ranges[Stage.CHUNK][1] in seen
        assert ranges[Stage.EMBED][1] in seen
        # two embed batches of two and one chunk: halfway through the embed range
        start, end = ranges[Stage.EMBED]
        assert start + 0.5 * (end - start) in seen

    @pytest.mark.asyncio
    async def test_reingest_is_idempotent(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, notes_file: Path
    ) -> None:
        await processor.ingest_path(notes_file)
        first = memory_store.get_file_chunks(str(notes_file))
        await processor.ingest_path(notes_file)
        second = memory_store.get_file_chunks(str(notes_file))

        assert [c.id for c in first] == [c.id for c in second]
        assert [c.content for c in first] == [c.content for c in second]
        assert memory_store.stats().total_chunks == 3

    @pytest.mark.asyncio
    async def test_shrinking_file_drops_stale_chunks(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, notes_file: Path
    ) -> None:
        await processor.ingest_path(notes_file)
        notes_file.write_text("# Notes\nOnly one short paragraph remains.", encoding="utf-8")
        await processor.ingest_path(notes_file)

        chunks = memory_store.get_file_chunks(str(notes_file))
        assert len(chunks) == 1
        assert chunks[0].content.startswith("# Notes")

    @pytest.mark.asyncio
    async def test_missing_file_fails_job_without_chunks(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, tmp_path: Path
    ) -> None:
        job_id = await processor.ingest_path(tmp_path / "gone.md")

        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.FAILED
        assert job.error.startswith("AcquisitionError")
        assert job.end_time is not None
        assert memory_store.stats().total_chunks == 0

    @pytest.mark.asyncio
    async def test_unsupported_extension_fails_job(self, processor: BackgroundProcessor, tmp_path: Path) -> None:
        binary = tmp_path / "photo.png"
        binary.write_bytes(b"\x89PNG")
        job_id = await processor.ingest_path(binary)
        assert processor.jobs.get_job(job_id).error.startswith("ValidationError")

    @pytest.mark.asyncio
    async def test_embed_failure_keeps_previous_chunks(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, notes_file: Path
    ) -> None:
        await processor.ingest_path(notes_file)
        before = memory_store.get_file_chunks(str(notes_file))

        processor.embedder = FakeEmbeddingProvider(fail=True)
        notes_file.write_text("Completely different content.", encoding="utf-8")
        job_id = await processor.ingest_path(notes_file)

        assert processor.jobs.get_job(job_id).status is JobStatus.FAILED
        assert "EmbeddingError" in processor.jobs.get_job(job_id).error
        assert memory_store.get_file_chunks(str(notes_file)) == before

    @pytest.mark.asyncio
    async def test_concurrent_jobs_are_isolated(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, notes_file: Path, tmp_path: Path
    ) -> None:
        good = processor.submit(JobType.WATCH_INGEST, WatchIngestParams(file_path=str(notes_file)))
        bad = processor.submit(JobType.WATCH_INGEST, WatchIngestParams(file_path=str(tmp_path / "missing.md")))
        await processor.drain()

        assert processor.jobs.get_job(good).status is JobStatus.COMPLETED
        assert processor.jobs.get_job(bad).status is JobStatus.FAILED
        assert memory_store.list_files() == [str(notes_file)]

    @pytest.mark.asyncio
    async def test_chunking_runs_off_the_event_loop(
        self, processor: BackgroundProcessor, notes_file: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        loop_thread = threading.get_ident()
        chunk_threads: list[int] = []
        original = background.chunk_document

        def tracking(*args: Any, **kwargs: Any) -> list[Chunk]:
            chunk_threads.append(threading.get_ident())
            return original(*args, **kwargs)

        monkeypatch.setattr(background, "chunk_document", tracking)
        job_id = await processor.ingest_path(notes_file)

        assert processor.jobs.get_job(job_id).status is JobStatus.COMPLETED
        assert len(chunk_threads) == 1
        assert chunk_threads[0] != loop_thread


# ── Fetch file ──────────────────────────────────────────────────────────


class TestFetchFile:
    @pytest.mark.asyncio
    async def test_fetch_saves_and_indexes(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, tmp_path: Path
    ) -> None:
        processor.http_downloader = FakeDownloader()
        params = FetchFileParams(url="https://example.com/guide.md", filename="guide.md")

        job_id = processor.submit(JobType.FETCH_FILE, params)
        await processor.wait(job_id)

        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        saved = tmp_path / "data" / "fetched" / "guide.md"
        assert job.result.file_path == str(saved)
        assert saved.read_text(encoding="utf-8") == GUIDE
        assert job.result.indexed is True
        assert job.result.size == len(GUIDE.encode())

        chunks = memory_store.get_file_chunks(str(saved))
        assert len(chunks) == job.result.chunks_indexed >= 1
        assert all(c.metadata.source == params.url for c in chunks)

    @pytest.mark.asyncio
    async def test_download_progress_maps_into_acquire_range(
        self,
        processor: BackgroundProcessor,
        job_manager: JobManager,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        processor.http_downloader = FakeDownloader()
        seen = _record_progress(monkeypatch, job_manager)

        job_id = processor.submit(JobType.FETCH_FILE, FetchFileParams(url="https://example.com/a.md", filename="a.md"))
        await processor.wait(job_id)

        low, high = STAGE_RANGES[JobType.FETCH_FILE][Stage.ACQUIRE]
        assert (low + high) / 2 in seen
        assert seen == sorted(seen)

    @pytest.mark.asyncio
    async def test_existing_file_without_overwrite_fails(
        self, processor: BackgroundProcessor, tmp_path: Path
    ) -> None:
        downloader = FakeDownloader()
        processor.http_downloader = downloader
        target = tmp_path / "data" / "fetched" / "guide.md"
        target.parent.mkdir(parents=True)
        target.write_text("keep me", encoding="utf-8")

        job_id = processor.submit(
            JobType.FETCH_FILE, FetchFileParams(url="https://example.com/guide.md", filename="guide.md", overwrite=False)
        )
        await processor.wait(job_id)

        assert processor.jobs.get_job(job_id).error.startswith("ValidationError")
        assert downloader.calls == []
        assert target.read_text(encoding="utf-8") == "keep me"

    @pytest.mark.asyncio
    async def test_save_without_indexing(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore
    ) -> None:
        processor.http_downloader = FakeDownloader()
        job_id = processor.submit(
            JobType.FETCH_FILE,
            FetchFileParams(url="https://example.com/guide.md", filename="guide.md", index_after_save=False),
        )
        await processor.wait(job_id)

        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        assert job.result.indexed is False
        assert job.result.chunks_indexed == 0
        assert Path(job.result.file_path).exists()
        assert memory_store.stats().total_chunks == 0

    @pytest.mark.asyncio
    async def test_oversized_download_fails(self, processor: BackgroundProcessor) -> None:
        processor.http_downloader = FakeDownloader(reported_size=5 * 1024 * 1024)
        job_id = processor.submit(
            JobType.FETCH_FILE,
            FetchFileParams(url="https://example.com/big.md", filename="big.md", max_file_size_mb=1),
        )
        await processor.wait(job_id)
        assert "too large" in processor.jobs.get_job(job_id).error

    @pytest.mark.asyncio
    async def test_download_error_fails_job(self, processor: BackgroundProcessor) -> None:
        processor.http_downloader = FakeDownloader(error=AcquisitionError("Not found", kind="not_found"))
        job_id = processor.submit(JobType.FETCH_FILE, FetchFileParams(url="https://example.com/x.md", filename="x.md"))
        await processor.wait(job_id)
        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.FAILED
        assert "Not found" in job.error

    @pytest.mark.asyncio
    async def test_slow_download_times_out(self, processor: BackgroundProcessor) -> None:
        processor.http_downloader = FakeDownloader(delay=0.5)
        processor.acquire_timeout = 0.05
        job_id = processor.submit(JobType.FETCH_FILE, FetchFileParams(url="https://example.com/s.md", filename="s.md"))
        await processor.wait(job_id)
        assert "Timed out" in processor.jobs.get_job(job_id).error


# ── Fetch repo ──────────────────────────────────────────────────────────


class TestFetchRepo:
    @pytest.mark.asyncio
    async def test_repo_is_saved_and_indexed(
        self, processor: BackgroundProcessor, memory_store: InMemoryChunkStore, tmp_path: Path
    ) -> None:
        repo = FakeRepoDownloader()
        processor.repo_downloader = repo
        params = FetchRepoParams(repo_url="owner/demo", branch="main", include_patterns=["**/*.md"])

        job_id = processor.submit(JobType.FETCH_REPO, params)
        await processor.wait(job_id)

        job = processor.jobs.get_job(job_id)
        assert job.status is JobStatus.COMPLETED
        expected = tmp_path / "data" / "repositories" / "demo" / "demo.md"
        assert job.result.file_path == str(expected)
        assert job.result.repo_name == "demo"
        assert job.result.files_collected == 2
        assert expected.read_text(encoding="utf-8").startswith("# Repository: demo")
        assert repo.kwargs["branch"] == "main"
        assert repo.kwargs["include_patterns"] == ["**/*.md"]

        chunks = memory_store.get_file_chunks(str(expected))
        assert len(chunks) == job.result.chunks_indexed >= 1
        assert chunks[0].metadata.source == "https://github.com/owner/demo.git"


# ── Components ──────────────────────────────────────────────────────────


class TestComponents:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [("guide.md", "guide.md"), ("my notes (v2).md", "my_notes__v2_.md"), ("../../etc/passwd", "passwd")],
    )
    def test_sanitize_filename(self, raw: str, expected: str) -> None:
        assert sanitize_filename(raw) == expected

    def test_sanitize_filename_rejects_empty(self) -> None:
        with pytest.raises(ValidationError):
            sanitize_filename("...")

    @pytest.mark.asyncio
    async def test_embed_reports_batches(self) -> None:
        chunks = [Chunk(file_path="/a.md", chunk_index=i, content=f"text {i}") for i in range(5)]
        batches: list[tuple[int, int]] = []
        provider = FakeEmbeddingProvider()

        await embed_chunks(chunks, provider, batch_size=2, on_batch=lambda done, total: batches.append((done, total)))

        assert batches == [(1, 3), (2, 3), (3, 3)]
        assert [len(call) for call in provider.calls] == [2, 2, 1]
        assert all(len(c.embedding) == provider.dim for c in chunks)

    @pytest.mark.asyncio
    async def test_embed_rejects_wrong_vector_count(self) -> None:
        class ShortProvider(FakeEmbeddingProvider):
            def embed(self, texts: list[str]) -> list[list[float]]:
                return super().embed(texts)[:-1]

        with pytest.raises(EmbeddingError):
            await embed_chunks([Chunk(file_path="/a.md", chunk_index=0, content="x")], ShortProvider(), batch_size=4)

    @pytest.mark.asyncio
    async def test_searches_run_between_embed_batches(self) -> None:
        chunks = [Chunk(file_path="/a.md", chunk_index=i, content=f"text {i}") for i in range(6)]
        order: list[str] = []

        async def other_work() -> None:
            await asyncio.sleep(0)
            order.append("other")

        task = asyncio.create_task(other_work())
        await embed_chunks(chunks, FakeEmbeddingProvider(), batch_size=1, on_batch=lambda d, t: order.append(f"b{d}"))
        await task

        assert order.index("other") < order.index("b6")
