"""Semantic search: filtered similarity search with domain boosting.

This module is the **primary public interface** for retrieval.  Usage::

    engine = SearchEngine(store, embedder)
    response = await engine.search("configure pytest fixtures", SearchOptions(limit=5))
    for hit in response.results:
        print(hit.chunk.file_path, round(hit.score, 3))

Query embedding and store reads run on worker threads so a search never
blocks the event loop that drives ingestion pipelines.
"""

from __future__ import annotations

import asyncio
import logging
import time

from local_search.config import settings
from local_search.errors import ValidationError
from local_search.ingestion.embedder import EmbeddingProvider
from local_search.retrieval.base import ChunkStore
from local_search.retrieval.models import ScoredChunk, SearchOptions, SearchRecommendation, SearchResponse
from local_search.retrieval.recommender import QueryRecommender
from local_search.retrieval.vocabulary import DomainVocabulary

logger = logging.getLogger(__name__)


class SearchEngine:
    """Runs queries against a :class:`ChunkStore`.

    Parameters
    ----------
    store:
        Chunk store to query.
    embedder:
        Provider used to embed the query text.
    vocabulary:
        Domain vocabulary for query intent detection and boosting.
    recommender:
        Optional recommender invoked for low-yield searches.
    candidate_multiplier:
        Over-fetch factor applied before ``min_score`` filtering and boosting.
    min_results / min_avg_score:
        A search yielding fewer results, or a lower mean score, triggers a
        recommendation.
    """

    def __init__(
        self,
        store: ChunkStore,
        embedder: EmbeddingProvider,
        *,
        vocabulary: DomainVocabulary | None = None,
        recommender: QueryRecommender | None = None,
        candidate_multiplier: int = settings.search_candidate_multiplier,
        min_results: int = settings.recommendation_min_results,
        min_avg_score: float = settings.recommendation_min_avg_score,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self.vocabulary = vocabulary or DomainVocabulary()
        self.recommender = recommender
        self.candidate_multiplier = candidate_multiplier
        self.min_results = min_results
        self.min_avg_score = min_avg_score

    async def search(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        """Run a semantic search.

        Parameters
        ----------
        query:
            Natural-language query string.
        options:
            Limit, score threshold and metadata filters.

        Returns
        -------
        SearchResponse
            Results ordered by relevance (non-increasing), each with
            ``score >= options.min_score``.

        Raises
        ------
        ValidationError
            Empty query.
        EmbeddingError
            The query could not be embedded.
        StorageError
            The store could not be read.
        """
        if not query or not query.strip():
            raise ValidationError("Query must not be empty")
        options = options or SearchOptions()
        started = time.perf_counter()

        stats = await asyncio.to_thread(self._store.stats)
        if stats.total_chunks == 0:
            logger.info("Search %r on empty index", query)
            return SearchResponse(search_time_ms=_elapsed_ms(started))

        vector = await asyncio.to_thread(self._embedder.embed_query, query)
        candidates = await asyncio.to_thread(
            self._store.similarity_search,
            vector,
            filters=options.to_filters(),
            limit=options.limit * self.candidate_multiplier,
        )

        query_domains = [d.domain for d in self.vocabulary.detect_query_domains(query)]
        results = self._rank(candidates, query_domains, options)

        recommendation = None
        if options.include_recommendation and self._needs_recommendation(results):
            recommendation = self._recommend(query, candidates, stats.total_chunks)

        elapsed = _elapsed_ms(started)
        logger.info("Search %r: %d results in %.1fms", query, len(results), elapsed)
        return SearchResponse(
            results=results,
            total_results=len(results),
            search_time_ms=elapsed,
            recommendation=recommendation,
        )

    # -- internals ------------------------------------------------------------

    def _rank(self, candidates: list[ScoredChunk], query_domains: list[str], options: SearchOptions) -> list[ScoredChunk]:
        ranked: list[ScoredChunk] = []
        for hit in candidates:
            if hit.score < options.min_score:
                continue
            tags = hit.chunk.content_metadata.domain_tags if hit.chunk.content_metadata else set()
            hit.relevance = hit.score * self.vocabulary.boost_for(query_domains, tags)
            ranked.append(hit)
        ranked.sort(key=lambda h: (h.relevance, h.score), reverse=True)
        return ranked[: options.limit]

    def _needs_recommendation(self, results: list[ScoredChunk]) -> bool:
        if self.recommender is None:
            return False
        if len(results) < self.min_results:
            return True
        return sum(r.score for r in results) / len(results) < self.min_avg_score

    def _recommend(self, query: str, candidates: list[ScoredChunk], total: int) -> SearchRecommendation | None:
        try:
            return self.recommender.recommend(query, [c.chunk.content for c in candidates], total)
        except Exception:
            logger.warning("Recommendation failed for %r", query, exc_info=True)
            return None


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)
