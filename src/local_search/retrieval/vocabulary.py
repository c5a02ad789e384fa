"""Domain vocabulary: weighted keywords and authority patterns per technology.

The vocabulary is static for the life of the process.  It drives three
things: domain tagging of chunks, detection of a query's intent domains,
and the relevance boost applied when the two overlap.
"""

from __future__ import annotations

import json
import logging
import re
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

# A keyword occurring many times in one chunk should not dominate the score.
_MAX_HITS_PER_KEYWORD = 3


class DomainKeyword(BaseModel):
    keyword: str
    weight: float = Field(default=1.0, gt=0.0)


class DomainEntry(BaseModel):
    """One technology/topic domain.

    Attributes
    ----------
    domain:
        Tag attached to matching chunks.
    keywords:
        Weighted keywords matched case-insensitively on word boundaries.
    authority_patterns:
        Substrings that mark a source path/URL as canonical for the domain.
    boost_factor:
        Relevance multiplier contribution when a query targets this domain.
    """

    domain: str
    keywords: list[DomainKeyword]
    authority_patterns: list[str] = Field(default_factory=list)
    boost_factor: float = Field(default=1.2, ge=1.0)


class QueryDomain(BaseModel):
    domain: str
    confidence: float
    matched_keywords: list[str]
    boost_factor: float


def _kw(*pairs: tuple[str, float]) -> list[DomainKeyword]:
    return [DomainKeyword(keyword=k, weight=w) for k, w in pairs]


DEFAULT_DOMAINS: list[DomainEntry] = [
    DomainEntry(
        domain="python",
        keywords=_kw(
            ("python", 1.0), ("def", 0.4), ("pip", 0.8), ("pytest", 0.8), ("asyncio", 0.9),
            ("virtualenv", 0.8), ("pyproject.toml", 1.0), ("__init__", 0.7), ("django", 0.6),
            ("flask", 0.6), ("pydantic", 0.8), ("numpy", 0.6),
        ),
        authority_patterns=["docs.python.org", "peps.python.org", "packaging.python.org"],
        boost_factor=1.3,
    ),
    DomainEntry(
        domain="javascript",
        keywords=_kw(
            ("javascript", 1.0), ("npm", 0.8), ("node.js", 0.9), ("nodejs", 0.9), ("const", 0.3),
            ("promise", 0.6), ("async function", 0.7), ("package.json", 0.9), ("ecmascript", 1.0),
            ("webpack", 0.7), ("console.log", 0.6),
        ),
        authority_patterns=["developer.mozilla.org", "nodejs.org/docs", "tc39.es"],
        boost_factor=1.2,
    ),
    DomainEntry(
        domain="typescript",
        keywords=_kw(
            ("typescript", 1.0), ("interface", 0.6), ("enum", 0.5), ("generics", 0.8), ("tsconfig.json", 1.0),
            ("tsc", 0.9), ("type alias", 0.8), ("union type", 0.8), (".d.ts", 0.9), ("readonly", 0.4),
        ),
        authority_patterns=["typescriptlang.org"],
        boost_factor=1.4,
    ),
    DomainEntry(
        domain="react",
        keywords=_kw(
            ("react", 1.0), ("jsx", 0.9), ("usestate", 1.0), ("useeffect", 1.0), ("component", 0.4),
            ("props", 0.6), ("hooks", 0.7), ("next.js", 0.8), ("redux", 0.8),
        ),
        authority_patterns=["react.dev", "reactjs.org", "nextjs.org/docs"],
        boost_factor=1.3,
    ),
    DomainEntry(
        domain="rust",
        keywords=_kw(
            ("rust", 1.0), ("cargo", 0.9), ("crate", 0.8), ("borrow checker", 1.0), ("lifetime", 0.6),
            ("impl", 0.5), ("trait", 0.5), ("tokio", 0.8), ("rustc", 1.0),
        ),
        authority_patterns=["doc.rust-lang.org", "docs.rs"],
        boost_factor=1.3,
    ),
    DomainEntry(
        domain="go",
        keywords=_kw(
            ("golang", 1.0), ("goroutine", 1.0), ("go mod", 0.9), ("channel", 0.4), ("gofmt", 0.9),
            ("go.mod", 1.0), ("defer", 0.5),
        ),
        authority_patterns=["go.dev", "pkg.go.dev", "golang.org"],
        boost_factor=1.3,
    ),
    DomainEntry(
        domain="java",
        keywords=_kw(
            ("java", 1.0), ("jvm", 0.9), ("maven", 0.8), ("gradle", 0.8), ("spring boot", 0.9),
            ("public static void", 0.9), ("classpath", 0.7),
        ),
        authority_patterns=["docs.oracle.com/javase", "openjdk.org", "spring.io"],
        boost_factor=1.2,
    ),
    DomainEntry(
        domain="databases",
        keywords=_kw(
            ("sql", 0.9), ("database", 0.8), ("postgresql", 1.0), ("mysql", 1.0), ("sqlite", 1.0),
            ("mongodb", 1.0), ("redis", 0.9), ("index", 0.3), ("query", 0.3), ("transaction", 0.6),
            ("schema", 0.5), ("migration", 0.5),
        ),
        authority_patterns=["postgresql.org/docs", "dev.mysql.com/doc", "sqlite.org", "mongodb.com/docs", "redis.io/docs"],
        boost_factor=1.2,
    ),
    DomainEntry(
        domain="devops",
        keywords=_kw(
            ("docker", 1.0), ("kubernetes", 1.0), ("kubectl", 1.0), ("helm", 0.8), ("ci/cd", 0.9),
            ("terraform", 1.0), ("deployment", 0.5), ("container", 0.6), ("github actions", 0.9),
            ("ansible", 0.9), ("nginx", 0.7),
        ),
        authority_patterns=["docs.docker.com", "kubernetes.io/docs", "developer.hashicorp.com", "docs.github.com"],
        boost_factor=1.2,
    ),
    DomainEntry(
        domain="testing",
        keywords=_kw(
            ("test", 0.4), ("unit test", 0.9), ("pytest", 0.9), ("jest", 0.9), ("mocha", 0.8),
            ("assert", 0.5), ("mock", 0.6), ("fixture", 0.7), ("coverage", 0.6), ("integration test", 0.9),
        ),
        authority_patterns=["docs.pytest.org", "jestjs.io/docs"],
        boost_factor=1.1,
    ),
    DomainEntry(
        domain="machine-learning",
        keywords=_kw(
            ("machine learning", 1.0), ("neural network", 1.0), ("embedding", 0.7), ("pytorch", 1.0),
            ("tensorflow", 1.0), ("training", 0.5), ("model", 0.3), ("transformer", 0.7),
            ("scikit-learn", 1.0), ("inference", 0.6), ("gradient", 0.6),
        ),
        authority_patterns=["pytorch.org/docs", "tensorflow.org", "scikit-learn.org", "huggingface.co/docs"],
        boost_factor=1.2,
    ),
    DomainEntry(
        domain="web-apis",
        keywords=_kw(
            ("rest api", 1.0), ("http", 0.5), ("endpoint", 0.7), ("graphql", 1.0), ("json", 0.3),
            ("authentication", 0.6), ("oauth", 0.9), ("status code", 0.7), ("websocket", 0.9),
            ("openapi", 1.0), ("fastapi", 0.9), ("express", 0.6),
        ),
        authority_patterns=["swagger.io/docs", "graphql.org/learn", "oauth.net", "fastapi.tiangolo.com"],
        boost_factor=1.1,
    ),
    DomainEntry(
        domain="security",
        keywords=_kw(
            ("security", 0.8), ("vulnerability", 1.0), ("encryption", 0.9), ("tls", 0.8), ("xss", 1.0),
            ("csrf", 1.0), ("sql injection", 1.0), ("cve", 1.0), ("owasp", 1.0), ("secret", 0.4),
        ),
        authority_patterns=["owasp.org", "cve.mitre.org", "nvd.nist.gov"],
        boost_factor=1.2,
    ),
]


class DomainVocabulary:
    """Read-only lookup over a list of :class:`DomainEntry`.

    Parameters
    ----------
    entries:
        Domain definitions; defaults to :data:`DEFAULT_DOMAINS`.
    """

    def __init__(self, entries: list[DomainEntry] | None = None) -> None:
        self._entries: dict[str, DomainEntry] = {e.domain: e for e in (entries or DEFAULT_DOMAINS)}

    @classmethod
    def from_file(cls, path: str | Path) -> DomainVocabulary:
        """Load entries from a JSON list of :class:`DomainEntry` objects."""
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = [DomainEntry.model_validate(item) for item in raw]
        logger.info("Loaded %d vocabulary domains from %s", len(entries), path)
        return cls(entries)

    @cached_property
    def _patterns(self) -> dict[str, list[tuple[str, float, re.Pattern[str]]]]:
        compiled: dict[str, list[tuple[str, float, re.Pattern[str]]]] = {}
        for entry in self._entries.values():
            compiled[entry.domain] = [
                (kw.keyword, kw.weight, re.compile(rf"(?<![\w]){re.escape(kw.keyword.lower())}(?![\w])"))
                for kw in entry.keywords
            ]
        return compiled

    # -- lookups --------------------------------------------------------------

    @property
    def domains(self) -> list[str]:
        return list(self._entries)

    def get(self, domain: str) -> DomainEntry | None:
        return self._entries.get(domain)

    def __len__(self) -> int:
        return len(self._entries)

    def keyword_scores(self, text: str) -> dict[str, float]:
        """Weighted keyword hit count per domain (domains with no hits omitted)."""
        lowered = text.lower()
        scores: dict[str, float] = {}
        for domain, patterns in self._patterns.items():
            total = 0.0
            for _, weight, pattern in patterns:
                hits = len(pattern.findall(lowered))
                if hits:
                    total += weight * min(hits, _MAX_HITS_PER_KEYWORD)
            if total > 0:
                scores[domain] = total
        return scores

    def authority_domains(self, source: str | None) -> list[str]:
        """Domains whose authority patterns occur in *source* (path or URL)."""
        if not source:
            return []
        lowered = source.lower()
        return [
            entry.domain
            for entry in self._entries.values()
            if any(p.lower() in lowered for p in entry.authority_patterns)
        ]

    def detect_query_domains(self, query: str, *, max_domains: int = 3, min_confidence: float = 0.2) -> list[QueryDomain]:
        """Guess which domains a search query targets.

        Confidence blends how many keywords matched, their total weight and
        the share of the domain's vocabulary covered.
        """
        lowered = query.lower()
        detected: list[QueryDomain] = []
        for domain, patterns in self._patterns.items():
            matched = [(kw, w) for kw, w, pattern in patterns if pattern.search(lowered)]
            if not matched:
                continue
            keyword_factor = min(len(matched) / 3, 1.0)
            weight_factor = min(sum(w for _, w in matched) / 2, 1.0)
            coverage = min(len(matched) / len(patterns), 0.8)
            confidence = 0.4 * keyword_factor + 0.4 * weight_factor + 0.2 * coverage
            if confidence >= min_confidence:
                detected.append(
                    QueryDomain(
                        domain=domain,
                        confidence=round(confidence, 4),
                        matched_keywords=[kw for kw, _ in matched],
                        boost_factor=self._entries[domain].boost_factor,
                    )
                )
        detected.sort(key=lambda d: d.confidence, reverse=True)
        return detected[:max_domains]

    def boost_for(self, query_domains: list[str], chunk_domains: set[str]) -> float:
        """Relevance multiplier: each shared domain adds ``boost_factor - 1``."""
        boost = 1.0
        for domain in set(query_domains) & set(chunk_domains):
            entry = self._entries.get(domain)
            if entry is not None:
                boost += entry.boost_factor - 1.0
        return boost
