"""Service facade: the surface exposed to a protocol layer or the CLI.

``LocalSearchService`` owns the shared state (job table, adaptive
learning) and wires the ingestion and retrieval halves together::

    service = LocalSearchService.from_settings()
    job_id = service.fetch_file(FetchFileParams(url=url, filename="guide.md"))
    ...
    response = await service.search("connection pooling", SearchOptions(limit=5))
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from local_search.config import Settings, settings as default_settings
from local_search.errors import ValidationError
from local_search.ingestion.embedder import EmbeddingProvider, HuggingFaceEmbeddingProvider
from local_search.ingestion.loader import FileReader
from local_search.ingestion.watcher import FileWatcher, WatcherStatus
from local_search.jobs.manager import JobManager
from local_search.jobs.models import (
    FetchFileParams,
    FetchRepoParams,
    Job,
    JobStatistics,
    JobType,
    WatchIngestParams,
)
from local_search.pipelines.background import BackgroundProcessor
from local_search.retrieval.base import ChunkStore
from local_search.retrieval.classifier import ContentClassifier
from local_search.retrieval.memory_store import InMemoryChunkStore
from local_search.retrieval.models import Chunk, IndexStats, SearchOptions, SearchResponse
from local_search.retrieval.recommender import AdaptiveLearning, AdaptiveLearningParams, QueryRecommender
from local_search.retrieval.search import SearchEngine
from local_search.retrieval.vocabulary import DomainVocabulary

logger = logging.getLogger(__name__)


class LocalSearchService:
    """Wires stores, pipelines, watcher and search behind one object.

    Parameters
    ----------
    store:
        Chunk store shared by ingestion and search.
    embedder:
        Embedding provider shared by ingestion and query embedding.
    config:
        Settings to read tunables from.
    vocabulary:
        Domain vocabulary; defaults to the bundled one.
    processor:
        Pre-built background processor (tests inject collaborators here).
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        *,
        config: Settings | None = None,
        vocabulary: DomainVocabulary | None = None,
        processor: BackgroundProcessor | None = None,
    ) -> None:
        self.config = config or default_settings
        cfg = self.config
        self.store = store
        self.embedder = embedder
        self.vocabulary = vocabulary or DomainVocabulary()

        self.jobs = processor.jobs if processor is not None else JobManager(
            retention_seconds=cfg.job_retention_seconds, history_limit=cfg.job_history_limit
        )
        data_dir = processor.data_dir if processor is not None else cfg.data_dir
        self.learning = AdaptiveLearning(
            threshold=cfg.tfidf_threshold,
            learning_rate=cfg.learning_rate,
            history_size=cfg.effectiveness_history_size,
            state_path=data_dir / "learning.json" if cfg.persist_learning else None,
        )
        self.recommender = QueryRecommender(
            self.learning,
            max_analysis_documents=cfg.max_analysis_documents,
            max_query_terms=cfg.max_query_terms,
            ttl_seconds=cfg.recommendation_ttl_seconds,
            refinement_min_tfidf=cfg.refinement_min_tfidf,
        )
        self.classifier = ContentClassifier(
            self.vocabulary,
            quality_weights=cfg.quality_weights,
            authority_weights=cfg.authority_weights,
            domain_tag_threshold=cfg.domain_tag_threshold,
        )
        self.processor = processor or BackgroundProcessor(
            self.jobs,
            store,
            embedder,
            classifier=self.classifier,
            reader=FileReader(cfg.max_local_file_size_mb),
            chunk_size=cfg.chunk_size,
            chunk_overlap=cfg.chunk_overlap,
            embed_batch_size=cfg.embed_batch_size,
            acquire_timeout=cfg.acquire_timeout_seconds,
            data_dir=cfg.data_dir,
        )
        self.engine = SearchEngine(
            store,
            embedder,
            vocabulary=self.vocabulary,
            recommender=self.recommender if cfg.recommendation_enabled else None,
            candidate_multiplier=cfg.search_candidate_multiplier,
            min_results=cfg.recommendation_min_results,
            min_avg_score=cfg.recommendation_min_avg_score,
        )
        self.watcher: FileWatcher | None = None

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> LocalSearchService:
        """Build the default stack (HuggingFace embeddings + Chroma or in-memory store)."""
        cfg = config or default_settings
        if cfg.store_backend == "memory":
            store: ChunkStore = InMemoryChunkStore(cfg.chroma_collection)
        else:
            from local_search.retrieval.chroma_store import ChromaChunkStore

            store = ChromaChunkStore(
                cfg.chroma_collection,
                host=cfg.chroma_host,
                port=cfg.chroma_port,
                persist_dir=cfg.data_dir / "chroma",
            )
        return cls(store, HuggingFaceEmbeddingProvider(cfg.embedding_model), config=cfg)

    # -- jobs -----------------------------------------------------------------

    def create_job(self, job_type: JobType | str, params: FetchRepoParams | FetchFileParams | WatchIngestParams) -> str:
        """Start a background job; must be called from a running event loop."""
        return self.processor.submit(job_type, params)

    def fetch_repo(self, params: FetchRepoParams) -> str:
        return self.create_job(JobType.FETCH_REPO, params)

    def fetch_file(self, params: FetchFileParams) -> str:
        return self.create_job(JobType.FETCH_FILE, params)

    def get_job(self, job_id: str) -> Job | None:
        return self.jobs.get_job(job_id)

    def get_active_jobs(self) -> list[Job]:
        return self.jobs.get_active_jobs()

    def get_job_statistics(self) -> JobStatistics:
        return self.jobs.get_statistics()

    async def wait_for_job(self, job_id: str) -> Job | None:
        await self.processor.wait(job_id)
        return self.jobs.get_job(job_id)

    # -- search ---------------------------------------------------------------

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        return await self.engine.search(query, options)

    async def get_file_details(
        self,
        file_path: str,
        chunk_index: int | None = None,
        context_size: int = 3,
    ) -> list[Chunk]:
        """Return a file's chunks, or one chunk with *context_size* neighbours per side.

        Raises
        ------
        ValidationError
            Negative *context_size*, or *chunk_index* not present in the file.
        """
        if context_size < 0:
            raise ValidationError(f"context_size must be >= 0, got {context_size}")
        chunks = await asyncio.to_thread(self.store.get_file_chunks, file_path)
        if chunk_index is None:
            return chunks
        if not any(c.chunk_index == chunk_index for c in chunks):
            raise ValidationError(f"{file_path} has no chunk {chunk_index}")
        lo, hi = chunk_index - context_size, chunk_index + context_size
        return [c for c in chunks if lo <= c.chunk_index <= hi]

    async def remove_file(self, file_path: str) -> int:
        """Delete every chunk of *file_path*; returns the count (0 if none)."""
        removed = await asyncio.to_thread(self.store.delete_file, file_path)
        logger.info("Removed %d chunks for %s", removed, file_path)
        return removed

    async def index_stats(self) -> IndexStats:
        return await asyncio.to_thread(self.store.stats)

    def record_recommendation_feedback(
        self,
        recommendation_id: str,
        was_used: bool,
        improved_results: bool | None = None,
        effectiveness_score: float | None = None,
    ) -> AdaptiveLearningParams:
        return self.recommender.record_feedback(recommendation_id, was_used, improved_results, effectiveness_score)

    # -- watching -------------------------------------------------------------

    async def start_watching(self, folder: str | Path | None = None, *, scan_existing: bool = True) -> FileWatcher:
        if self.watcher is not None and self.watcher.is_watching:
            return self.watcher
        self.watcher = FileWatcher(
            folder or self.config.docs_folder,
            self.processor,
            self.store,
            debounce_ms=self.config.watch_debounce_ms,
            max_depth=self.config.watch_max_depth,
        )
        await self.watcher.start(scan_existing=scan_existing)
        return self.watcher

    async def stop_watching(self) -> None:
        if self.watcher is not None:
            await self.watcher.stop()

    def watcher_status(self) -> WatcherStatus | None:
        return self.watcher.get_status() if self.watcher is not None else None

    async def aclose(self) -> None:
        """Stop watching and wait for in-flight jobs."""
        await self.stop_watching()
        await self.processor.drain()
        self.jobs.cleanup()
