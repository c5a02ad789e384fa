"""Background processor: drives fetch and ingest jobs through their stages.

Every job runs ``acquire → chunk → embed → store`` in order.  Each stage
owns a fixed slice of the job's 0–100 progress range (see
:data:`STAGE_RANGES`).  A failure in any stage aborts the rest, fails
only that job, and never commits a partial chunk set: the store stage is
the single write, and it replaces a file's chunks atomically.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from pathlib import Path

from local_search.config import settings
from local_search.errors import LocalSearchError
from local_search.ingestion.chunker import Chunker, TextChunker
from local_search.ingestion.downloader import Downloader, GitRepoDownloader, HttpDownloader
from local_search.ingestion.embedder import EmbeddingProvider
from local_search.ingestion.loader import FileReader, LoadedDocument
from local_search.jobs.manager import JobManager
from local_search.jobs.models import (
    FetchFileParams,
    FetchFileResult,
    FetchRepoParams,
    FetchRepoResult,
    JobResult,
    JobType,
    WatchIngestParams,
    WatchIngestResult,
)
from local_search.pipelines.components.acquire import acquire_file, acquire_local, acquire_repo
from local_search.pipelines.components.chunk import chunk_document
from local_search.pipelines.components.embed import embed_chunks
from local_search.pipelines.components.store import store_chunks
from local_search.retrieval.base import ChunkStore
from local_search.retrieval.classifier import ContentClassifier

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    ACQUIRE = "acquire"
    CHUNK = "chunk"
    EMBED = "embed"
    STORE = "store"


STAGE_RANGES: dict[JobType, dict[Stage, tuple[float, float]]] = {
    JobType.FETCH_REPO: {
        Stage.ACQUIRE: (0, 30),
        Stage.CHUNK: (30, 50),
        Stage.EMBED: (50, 90),
        Stage.STORE: (90, 100),
    },
    JobType.FETCH_FILE: {
        Stage.ACQUIRE: (0, 40),
        Stage.CHUNK: (40, 60),
        Stage.EMBED: (60, 95),
        Stage.STORE: (95, 100),
    },
    JobType.WATCH_INGEST: {
        Stage.ACQUIRE: (0, 0),
        Stage.CHUNK: (0, 35),
        Stage.EMBED: (35, 90),
        Stage.STORE: (90, 100),
    },
}


class StageProgress:
    """Maps a stage-local fraction onto the job's progress range."""

    def __init__(self, jobs: JobManager, job_id: str, job_type: JobType) -> None:
        self._jobs = jobs
        self._job_id = job_id
        self._ranges = STAGE_RANGES[job_type]

    def report(self, stage: Stage, fraction: float, step: str) -> None:
        start, end = self._ranges[stage]
        fraction = min(max(fraction, 0.0), 1.0)
        self._jobs.update_progress(self._job_id, start + fraction * (end - start), step)

    def batches(self, done: int, total: int) -> None:
        self.report(Stage.EMBED, done / total if total else 1.0, f"Embedding batch {done}/{total}")


class BackgroundProcessor:
    """Runs pipelines as asyncio tasks and records their outcome.

    Parameters
    ----------
    jobs:
        Shared job table.
    store:
        Destination chunk store.
    embedder:
        Embedding provider for chunk vectors.
    classifier:
        Classifier run on every chunk at store time.
    chunker / reader / http_downloader / repo_downloader:
        Stage collaborators; defaults are built from settings.
    chunk_size / chunk_overlap / embed_batch_size / acquire_timeout:
        Pipeline configuration.
    data_dir:
        Root for fetched files and repository snapshots.
    """

    def __init__(
        self,
        jobs: JobManager,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        *,
        classifier: ContentClassifier | None = None,
        chunker: Chunker | None = None,
        reader: FileReader | None = None,
        http_downloader: Downloader | None = None,
        repo_downloader: GitRepoDownloader | None = None,
        chunk_size: int = settings.chunk_size,
        chunk_overlap: int = settings.chunk_overlap,
        embed_batch_size: int = settings.embed_batch_size,
        acquire_timeout: float = settings.acquire_timeout_seconds,
        data_dir: Path = settings.data_dir,
    ) -> None:
        self.jobs = jobs
        self.store = store
        self.embedder = embedder
        self.classifier = classifier or ContentClassifier()
        self.chunker = chunker or TextChunker()
        self.reader = reader or FileReader()
        self.http_downloader = http_downloader or HttpDownloader()
        self.repo_downloader = repo_downloader or GitRepoDownloader()
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.embed_batch_size = embed_batch_size
        self.acquire_timeout = acquire_timeout
        self.data_dir = Path(data_dir)
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # -- scheduling -----------------------------------------------------------

    def submit(self, job_type: JobType | str, params: FetchRepoParams | FetchFileParams | WatchIngestParams) -> str:
        """Create a job and start its pipeline in the background.

        Must be called from a running event loop.  Returns the job id.
        """
        job_id = self.jobs.create_job(job_type, params)
        task = asyncio.get_running_loop().create_task(self.run_job(job_id, params), name=job_id)
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._tasks.pop(jid, None))
        return job_id

    async def wait(self, job_id: str) -> None:
        """Wait for a submitted job to finish (no-op when already done)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for every in-flight job."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def ingest_path(self, path: str | Path, event: str = "change") -> str:
        """Index a file already on disk and wait for the result; returns the job id."""
        params = WatchIngestParams(file_path=str(path), event=event)
        job_id = self.jobs.create_job(JobType.WATCH_INGEST, params)
        await self.run_job(job_id, params)
        return job_id

    async def run_job(self, job_id: str, params: FetchRepoParams | FetchFileParams | WatchIngestParams) -> None:
        """Execute the pipeline for *params*; never raises."""
        try:
            if isinstance(params, FetchRepoParams):
                result: JobResult = await self._fetch_repo(job_id, params)
            elif isinstance(params, FetchFileParams):
                result = await self._fetch_file(job_id, params)
            else:
                result = await self._watch_ingest(job_id, params)
        except LocalSearchError as exc:
            self.jobs.fail_job(job_id, f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("Unexpected failure in job %s", job_id)
            self.jobs.fail_job(job_id, f"Unexpected error: {exc}")
        else:
            self.jobs.complete_job(job_id, result)

    # -- pipelines ------------------------------------------------------------

    async def _fetch_repo(self, job_id: str, params: FetchRepoParams) -> FetchRepoResult:
        progress = StageProgress(self.jobs, job_id, JobType.FETCH_REPO)
        progress.report(Stage.ACQUIRE, 0.0, f"Cloning {params.repo_url}")
        document, files = await acquire_repo(
            params,
            self.repo_downloader,
            self.data_dir / "repositories",
            timeout=self.acquire_timeout,
            on_progress=lambda done, total: progress.report(
                Stage.ACQUIRE, done / total if total else 0.0, f"Collected {done}/{total} files"
            ),
        )
        progress.report(Stage.ACQUIRE, 1.0, f"Fetched {files} files")
        indexed = await self._index(document, progress)
        return FetchRepoResult(
            repo_name=Path(document.file_path).stem,
            file_path=document.file_path,
            files_collected=files,
            chunks_indexed=indexed,
        )

    async def _fetch_file(self, job_id: str, params: FetchFileParams) -> FetchFileResult:
        progress = StageProgress(self.jobs, job_id, JobType.FETCH_FILE)
        progress.report(Stage.ACQUIRE, 0.0, f"Downloading {params.url}")
        document = await acquire_file(
            params,
            self.http_downloader,
            self.data_dir / "fetched",
            timeout=self.acquire_timeout,
            on_progress=lambda done, total: progress.report(
                Stage.ACQUIRE, done / total if total else 0.0, f"Downloaded {done} bytes"
            ),
        )
        progress.report(Stage.ACQUIRE, 1.0, f"Saved {document.file_path}")
        if not params.index_after_save:
            return FetchFileResult(file_path=document.file_path, size=document.file_size, indexed=False)
        indexed = await self._index(document, progress)
        return FetchFileResult(file_path=document.file_path, size=document.file_size, chunks_indexed=indexed)

    async def _watch_ingest(self, job_id: str, params: WatchIngestParams) -> WatchIngestResult:
        progress = StageProgress(self.jobs, job_id, JobType.WATCH_INGEST)
        progress.report(Stage.ACQUIRE, 1.0, f"Reading {params.file_path}")
        document = await acquire_local(params.file_path, self.reader, timeout=self.acquire_timeout)
        indexed = await self._index(document, progress)
        return WatchIngestResult(file_path=document.file_path, chunks_indexed=indexed)

    async def _index(self, document: LoadedDocument, progress: StageProgress) -> int:
        """Shared chunk → embed → store tail of every pipeline."""
        progress.report(Stage.CHUNK, 0.0, "Chunking")
        chunks = await asyncio.to_thread(
            chunk_document, document, self.chunker, chunk_size=self.chunk_size, chunk_overlap=self.chunk_overlap
        )
        progress.report(Stage.CHUNK, 1.0, f"Created {len(chunks)} chunks")

        progress.report(Stage.EMBED, 0.0, f"Embedding {len(chunks)} chunks")
        await embed_chunks(chunks, self.embedder, batch_size=self.embed_batch_size, on_batch=progress.batches)
        progress.report(Stage.EMBED, 1.0, f"Embedded {len(chunks)} chunks")

        progress.report(Stage.STORE, 0.0, "Storing chunks")
        stored = await store_chunks(document.file_path, chunks, self.store, self.classifier)
        progress.report(Stage.STORE, 1.0, f"Stored {stored} chunks")
        return stored
