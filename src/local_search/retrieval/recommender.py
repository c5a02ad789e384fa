"""Query recommendations for low-yield searches, tuned by user feedback.

A recommendation is built from TF-IDF statistics of the query terms over a
small sample of the best-matching documents:

* ``TERM_REMOVAL``: drop non-essential terms scoring below the adaptive
  threshold;
* ``TERM_REFINEMENT``: swap the weakest term for a related, stronger term
  from the sample;
* ``CONTEXTUAL_ADDITION``: append the sample's most distinctive terms.

:class:`AdaptiveLearning` holds the only mutable state (threshold, strategy
weights, learning rate).  One instance is shared by every query and
updated under a lock, and optionally saved to a JSON file so feedback
accumulates across restarts.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
import statistics
import threading
from collections import OrderedDict, deque
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic import ValidationError as ModelValidationError

from local_search.config import settings
from local_search.errors import ValidationError
from local_search.retrieval.models import RecommendationStrategy, SearchRecommendation

logger = logging.getLogger(__name__)

THRESHOLD_BOUNDS = (0.1, 0.5)
WEIGHT_BOUNDS = (0.1, 3.0)
LEARNING_RATE_BOUNDS = (0.01, 0.1)

ESSENTIAL_TERMS = frozenset(
    {"function", "class", "method", "variable", "import", "export", "async", "await", "return", "const", "let", "var"}
)
STOP_WORDS = frozenset(
    {
        "the", "and", "for", "are", "but", "not", "you", "all", "any", "can", "had", "her", "was", "one", "our",
        "out", "has", "have", "this", "that", "with", "from", "they", "will", "would", "there", "their", "what",
        "about", "which", "when", "make", "like", "into", "than", "then", "them", "these", "some", "its", "also",
        "use", "used", "using", "how", "may", "more", "most", "other", "only", "such", "each", "should", "must",
        "been", "were", "does", "did", "your", "where", "while", "file", "true", "false", "none", "null",
    }
)
SYNONYMS: dict[str, tuple[str, ...]] = {
    "js": ("javascript",),
    "ts": ("typescript",),
    "py": ("python",),
    "db": ("database", "databases"),
    "auth": ("authentication", "authorization"),
    "config": ("configuration", "settings"),
    "k8s": ("kubernetes",),
    "func": ("function",),
    "fn": ("function",),
    "repo": ("repository",),
    "docs": ("documentation",),
    "env": ("environment",),
    "err": ("error",),
    "msg": ("message",),
}

BASE_CONFIDENCE: dict[RecommendationStrategy, float] = {
    RecommendationStrategy.TERM_REMOVAL: 0.8,
    RecommendationStrategy.TERM_REFINEMENT: 0.7,
    RecommendationStrategy.CONTEXTUAL_ADDITION: 0.6,
}
_CASCADE = list(BASE_CONFIDENCE)
_MAX_ADDED_TERMS = 2
_MAX_ISSUED_TRACKED = 1000

_WORD = re.compile(r"[a-z0-9_]+(?:[.+#-][a-z0-9_]+)*")
_QUOTED = re.compile(r'"([^"]+)"')


def _clamp(value: float, bounds: tuple[float, float]) -> float:
    return max(bounds[0], min(bounds[1], value))


def normalize_query(query: str) -> str:
    return " ".join(query.lower().split())


def query_cache_key(query: str) -> str:
    return hashlib.sha256(normalize_query(query).encode()).hexdigest()


def tokenize_query(query: str, max_terms: int = settings.max_query_terms) -> list[str]:
    """Split *query* into lowercase terms, keeping ``"quoted phrases"`` whole.

    Single-character tokens are dropped and duplicates removed, preserving
    first-seen order.
    """
    phrases = [p.strip().lower() for p in _QUOTED.findall(query) if p.strip()]
    remainder = _QUOTED.sub(" ", query)
    words = _WORD.findall(remainder.lower())

    terms: list[str] = []
    for term in [f'"{p}"' for p in phrases] + words:
        if len(term) <= 1 or term in terms:
            continue
        terms.append(term)
    return terms[:max_terms]


class TermStatistics(BaseModel):
    term: str
    total_tf: int = 0
    df: int = 0
    avg_tf: float = 0.0
    idf: float = 0.0
    tfidf: float = 0.0
    is_essential: bool = False


def _term_frequency(term: str, tokens: list[str], lowered: str) -> int:
    if term.startswith('"'):
        return lowered.count(term.strip('"'))
    return tokens.count(term)


def compute_term_statistics(terms: list[str], documents: list[str]) -> list[TermStatistics]:
    """TF-IDF of each query term over *documents*.

    ``tfidf = avg_tf * ln((N + 1) / (df + 1))`` where ``avg_tf`` is the mean
    frequency over the documents that contain the term.  Results are sorted
    by ``tfidf`` ascending, weakest first.
    """
    n = len(documents)
    lowered_docs = [d.lower() for d in documents]
    tokenized = [_WORD.findall(d) for d in lowered_docs]

    stats: list[TermStatistics] = []
    for term in terms:
        freqs = [_term_frequency(term, toks, low) for toks, low in zip(tokenized, lowered_docs)]
        df = sum(1 for f in freqs if f > 0)
        total_tf = sum(freqs)
        avg_tf = total_tf / df if df else 0.0
        idf = math.log((n + 1) / (df + 1))
        stats.append(
            TermStatistics(
                term=term,
                total_tf=total_tf,
                df=df,
                avg_tf=avg_tf,
                idf=idf,
                tfidf=avg_tf * idf,
                is_essential=term.startswith('"') or term in ESSENTIAL_TERMS,
            )
        )
    stats.sort(key=lambda s: s.tfidf)
    return stats


def vocabulary_statistics(documents: list[str], exclude: set[str]) -> list[TermStatistics]:
    """TF-IDF of every candidate word in *documents*, strongest first."""
    candidates: set[str] = set()
    for doc in documents:
        for token in _WORD.findall(doc.lower()):
            if len(token) > 2 and token not in STOP_WORDS and token not in exclude and not token.isdigit():
                candidates.add(token)
    stats = compute_term_statistics(sorted(candidates), documents)
    stats.sort(key=lambda s: (-s.tfidf, s.term))
    return stats


# ── adaptive state ──────────────────────────────────────────────────────


class AdaptiveLearningParams(BaseModel):
    """Snapshot of the shared learning state."""

    current_tfidf_threshold: float = Field(ge=THRESHOLD_BOUNDS[0], le=THRESHOLD_BOUNDS[1])
    effectiveness_history: list[float] = Field(default_factory=list)
    strategy_weights: dict[RecommendationStrategy, float]
    learning_rate: float
    total_feedback: int = 0


class AdaptiveLearning:
    """Process-wide, lock-protected learning parameters.

    Parameters
    ----------
    threshold:
        Initial TF-IDF removal threshold, within ``[0.1, 0.5]``.
    learning_rate:
        Step size for threshold and weight updates.
    history_size:
        How many effectiveness scores to remember.
    state_path:
        JSON file the parameters are loaded from at start-up and saved to
        after every update.  ``None`` keeps them in memory only.
    """

    def __init__(
        self,
        *,
        threshold: float = settings.tfidf_threshold,
        learning_rate: float = settings.learning_rate,
        history_size: int = settings.effectiveness_history_size,
        state_path: str | Path | None = None,
    ) -> None:
        self._defaults = (threshold, learning_rate)
        self._history_size = history_size
        self._lock = threading.Lock()
        self._reset_locked()
        self._state_path = Path(state_path) if state_path is not None else None
        self._save_lock = threading.Lock()
        if self._state_path is not None:
            self._load()

    def _reset_locked(self) -> None:
        threshold, learning_rate = self._defaults
        self._threshold = _clamp(threshold, THRESHOLD_BOUNDS)
        self._learning_rate = _clamp(learning_rate, LEARNING_RATE_BOUNDS)
        self._weights = {s: 1.0 for s in RecommendationStrategy}
        self._history: deque[float] = deque(maxlen=self._history_size)
        self._total_feedback = 0

    @property
    def threshold(self) -> float:
        with self._lock:
            return self._threshold

    def weight(self, strategy: RecommendationStrategy) -> float:
        with self._lock:
            return self._weights[strategy]

    def snapshot(self) -> AdaptiveLearningParams:
        with self._lock:
            return AdaptiveLearningParams(
                current_tfidf_threshold=self._threshold,
                effectiveness_history=list(self._history),
                strategy_weights=dict(self._weights),
                learning_rate=self._learning_rate,
                total_feedback=self._total_feedback,
            )

    def record(self, strategy: RecommendationStrategy, effectiveness: float) -> AdaptiveLearningParams:
        """Fold one effectiveness score into the shared state."""
        effectiveness = _clamp(effectiveness, (0.0, 1.0))
        with self._lock:
            step = self._learning_rate * (effectiveness - 0.5)
            self._history.append(effectiveness)
            self._total_feedback += 1
            self._threshold = _clamp(self._threshold + step, THRESHOLD_BOUNDS)
            self._weights[strategy] = _clamp(self._weights[strategy] + step, WEIGHT_BOUNDS)
            self._adapt_learning_rate_locked()
        logger.debug("Feedback %.2f for %s; threshold now %.3f", effectiveness, strategy.value, self._threshold)
        self.save()
        return self.snapshot()

    def _adapt_learning_rate_locked(self) -> None:
        if len(self._history) < 10:
            return
        variance = statistics.pvariance(list(self._history)[-10:])
        if variance > 0.1:
            self._learning_rate *= 0.9
        elif variance < 0.02:
            self._learning_rate *= 1.1
        self._learning_rate = _clamp(self._learning_rate, LEARNING_RATE_BOUNDS)

    def get_strategy_ranking(self) -> list[tuple[RecommendationStrategy, float]]:
        with self._lock:
            return sorted(self._weights.items(), key=lambda kv: kv[1], reverse=True)

    def reset_to_defaults(self) -> None:
        with self._lock:
            self._reset_locked()
        self.save()

    # -- persistence ----------------------------------------------------------

    def restore(self, params: AdaptiveLearningParams) -> None:
        """Replace the current state with *params*, clamped to the usual bounds."""
        with self._lock:
            self._threshold = _clamp(params.current_tfidf_threshold, THRESHOLD_BOUNDS)
            self._learning_rate = _clamp(params.learning_rate, LEARNING_RATE_BOUNDS)
            self._weights = {s: 1.0 for s in RecommendationStrategy}
            for strategy, weight in params.strategy_weights.items():
                self._weights[strategy] = _clamp(weight, WEIGHT_BOUNDS)
            self._history = deque(params.effectiveness_history, maxlen=self._history_size)
            self._total_feedback = params.total_feedback

    def save(self) -> None:
        """Write the current state to ``state_path`` (no-op without one)."""
        if self._state_path is None:
            return
        path = self._state_path
        with self._save_lock:
            payload = self.snapshot().model_dump_json(indent=2)
            tmp = path.with_name(path.name + ".tmp")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                tmp.write_text(payload, encoding="utf-8")
                os.replace(tmp, path)
            except OSError as exc:
                logger.warning("Cannot save learning state to %s: %s", path, exc)

    def _load(self) -> None:
        path = self._state_path
        if path is None or not path.exists():
            return
        try:
            params = AdaptiveLearningParams.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ModelValidationError) as exc:
            logger.warning("Ignoring unreadable learning state %s: %s", path, exc)
            return
        self.restore(params)
        logger.info("Loaded learning state from %s (%d feedback records)", path, params.total_feedback)


# ── recommender ─────────────────────────────────────────────────────────


def effectiveness_from_feedback(was_used: bool, improved_results: bool | None) -> float:
    """Map caller feedback to a score in ``[0, 1]``; ``0.5`` is neutral."""
    if not was_used:
        return 0.5
    if improved_results is None:
        return 0.6
    return 1.0 if improved_results else 0.2


class QueryRecommender:
    """Builds, caches and learns from query recommendations.

    Parameters
    ----------
    learning:
        Shared adaptive state; pass the same instance to every recommender.
    max_analysis_documents:
        Size of the document sample analysed per query.
    max_query_terms:
        Terms beyond this are ignored.
    ttl_seconds:
        Lifetime of a cached recommendation.
    refinement_min_tfidf:
        Minimum TF-IDF of a substitute term for ``TERM_REFINEMENT``.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        learning: AdaptiveLearning,
        *,
        max_analysis_documents: int = settings.max_analysis_documents,
        max_query_terms: int = settings.max_query_terms,
        ttl_seconds: float = settings.recommendation_ttl_seconds,
        refinement_min_tfidf: float = settings.refinement_min_tfidf,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.learning = learning
        self.max_analysis_documents = max_analysis_documents
        self.max_query_terms = max_query_terms
        self.ttl = timedelta(seconds=ttl_seconds)
        self.refinement_min_tfidf = refinement_min_tfidf
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, SearchRecommendation] = {}
        self._issued: OrderedDict[str, RecommendationStrategy] = OrderedDict()
        self._lock = threading.Lock()

    # -- cache ----------------------------------------------------------------

    def get_cached(self, query: str) -> SearchRecommendation | None:
        now = self._clock()
        with self._lock:
            self._purge_locked(now)
            return self._cache.get(query_cache_key(query))

    def _purge_locked(self, now: datetime) -> None:
        for key in [k for k, rec in self._cache.items() if rec.is_expired(now)]:
            del self._cache[key]

    def _remember_locked(self, rec: SearchRecommendation) -> None:
        self._cache[query_cache_key(rec.query)] = rec
        self._issued[rec.id] = rec.strategy
        while len(self._issued) > _MAX_ISSUED_TRACKED:
            self._issued.popitem(last=False)

    # -- generation -----------------------------------------------------------

    def recommend(self, query: str, documents: list[str], total_documents: int) -> SearchRecommendation | None:
        """Return a recommendation for *query*, or ``None`` when nothing helps.

        Parameters
        ----------
        query:
            The original query string.
        documents:
            Best-matching document texts; only the first
            ``max_analysis_documents`` are analysed.
        total_documents:
            Size of the whole index, reported on the recommendation.
        """
        cached = self.get_cached(query)
        if cached is not None:
            return cached

        sample = documents[: self.max_analysis_documents]
        terms = tokenize_query(query, self.max_query_terms)
        if not sample or not terms:
            return None

        threshold = self.learning.threshold
        term_stats = compute_term_statistics(terms, sample)
        viable = self._viable_strategies(terms, term_stats, sample, threshold)
        if not viable:
            return None

        # Strict cascade; learned weights only scale the confidence.
        strategy = next(s for s in _CASCADE if s in viable)
        suggested = viable[strategy]
        confidence = min(BASE_CONFIDENCE[strategy] * self.learning.weight(strategy), 1.0)

        now = self._clock()
        rec = SearchRecommendation(
            query=query,
            suggested_terms=suggested,
            strategy=strategy,
            tfidf_threshold=threshold,
            confidence=round(confidence, 4),
            analyzed_documents=len(sample),
            total_documents=total_documents,
            generated_at=now,
            expires_at=now + self.ttl,
        )
        with self._lock:
            self._remember_locked(rec)
        logger.info("Recommendation for %r: %s -> %r", query, strategy.value, rec.suggested_query)
        return rec

    def _viable_strategies(
        self,
        terms: list[str],
        term_stats: list[TermStatistics],
        sample: list[str],
        threshold: float,
    ) -> dict[RecommendationStrategy, list[str]]:
        viable: dict[RecommendationStrategy, list[str]] = {}

        removable = {s.term for s in term_stats if s.tfidf < threshold and not s.is_essential}
        remaining = [t for t in terms if t not in removable]
        if removable and remaining:
            viable[RecommendationStrategy.TERM_REMOVAL] = remaining

        vocab = vocabulary_statistics(sample, exclude=set(terms))

        weakest = next((s for s in term_stats if not s.is_essential), None)
        if weakest is not None:
            substitute = self._find_substitute(weakest, vocab)
            if substitute is not None:
                viable[RecommendationStrategy.TERM_REFINEMENT] = [
                    substitute if t == weakest.term else t for t in terms
                ]

        min_df = 2 if len(sample) > 1 else 1
        additions = [s.term for s in vocab if s.df >= min_df and s.tfidf > 0][:_MAX_ADDED_TERMS]
        if not additions and len(sample) > 1:
            # Every word appears in all sampled documents (idf 0); fall back to frequency.
            additions = [s.term for s in sorted(vocab, key=lambda s: -s.total_tf) if s.df >= min_df][:_MAX_ADDED_TERMS]
        if additions and len(terms) < self.max_query_terms:
            viable[RecommendationStrategy.CONTEXTUAL_ADDITION] = (terms + additions)[: self.max_query_terms]
        return viable

    def _find_substitute(self, weak: TermStatistics, vocab: list[TermStatistics]) -> str | None:
        if weak.term.startswith('"'):
            return None
        related = set(SYNONYMS.get(weak.term, ()))
        for s in vocab:
            if s.tfidf <= max(self.refinement_min_tfidf, weak.tfidf):
                break
            if s.term in related or weak.term in s.term or (len(s.term) > 3 and s.term in weak.term):
                return s.term
        return None

    # -- feedback -------------------------------------------------------------

    def record_feedback(
        self,
        recommendation_id: str,
        was_used: bool,
        improved_results: bool | None = None,
        effectiveness_score: float | None = None,
    ) -> AdaptiveLearningParams:
        """Report how a recommendation worked out and update the shared state.

        Raises
        ------
        ValidationError
            Unknown recommendation id, or score outside ``[0, 1]``.
        """
        with self._lock:
            strategy = self._issued.get(recommendation_id)
        if strategy is None:
            raise ValidationError(f"Unknown recommendation id: {recommendation_id}")
        if effectiveness_score is None:
            effectiveness_score = effectiveness_from_feedback(was_used, improved_results)
        elif not 0.0 <= effectiveness_score <= 1.0:
            raise ValidationError(f"effectiveness_score must be in [0, 1], got {effectiveness_score}")
        return self.learning.record(strategy, effectiveness_score)
