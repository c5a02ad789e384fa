"""Heuristic content classification, quality and authority scoring.

Every sub-score is clamped to ``[0, 1]`` and the weights come from
:class:`~local_search.config.Settings`, so the final ``quality_score`` and
``source_authority`` are always inside ``[0, 1]``.
"""

from __future__ import annotations

import logging
import math
import re
from functools import reduce
from pathlib import PurePosixPath
from urllib.parse import urlparse

from pydantic import BaseModel

from local_search.config import AuthorityWeights, QualityWeights, settings
from local_search.retrieval.models import ContentMetadata, ContentType
from local_search.retrieval.vocabulary import DomainVocabulary

logger = logging.getLogger(__name__)

CODE_EXTENSIONS = frozenset(
    {
        ".js", ".ts", ".jsx", ".tsx", ".py", ".java", ".c", ".cpp", ".h", ".hpp", ".cs", ".go", ".rs",
        ".php", ".rb", ".swift", ".kt", ".scala", ".clj", ".sh", ".bash", ".zsh", ".ps1", ".bat", ".cmd",
        ".css", ".scss", ".sql",
    }
)
DOCS_EXTENSIONS = frozenset({".md", ".mdx", ".txt", ".rst", ".adoc", ".tex", ".org", ".html"})
CONFIG_EXTENSIONS = frozenset(
    {
        ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".xml", ".plist", ".properties",
        ".env", ".dockerfile", ".csv",
    }
)

EXTENSION_LANGUAGES: dict[str, str] = {
    ".py": "python", ".js": "javascript", ".jsx": "javascript", ".ts": "typescript", ".tsx": "typescript",
    ".java": "java", ".c": "c", ".h": "c", ".cpp": "cpp", ".hpp": "cpp", ".cs": "csharp", ".go": "go",
    ".rs": "rust", ".php": "php", ".rb": "ruby", ".swift": "swift", ".kt": "kotlin", ".scala": "scala",
    ".clj": "clojure", ".sh": "shell", ".bash": "shell", ".zsh": "shell", ".ps1": "powershell",
    ".sql": "sql", ".css": "css", ".scss": "scss", ".html": "html", ".md": "markdown", ".mdx": "markdown",
    ".rst": "restructuredtext", ".txt": "text", ".json": "json", ".yaml": "yaml", ".yml": "yaml",
    ".toml": "toml", ".xml": "xml", ".ini": "ini", ".csv": "csv",
}

LANGUAGE_PATTERNS: dict[str, list[re.Pattern[str]]] = {
    lang: [re.compile(p, re.MULTILINE) for p in patterns]
    for lang, patterns in {
        "python": [r"^\s*def \w+\(", r"^\s*from [\w.]+ import ", r"^\s*import \w+$", r"^\s*class \w+(\(.*\))?:", r"\bself\.", r"^\s*@\w+"],
        "javascript": [r"\bfunction\s+\w+\s*\(", r"\b(const|let) \w+ =", r"=>\s*[{(]", r"\brequire\(", r"console\.log\(", r"module\.exports"],
        "typescript": [r"\binterface \w+\s*\{", r"\btype \w+ =", r":\s*(string|number|boolean)\b", r"\bimport .* from ['\"]", r"<\w+>\("],
        "java": [r"\bpublic (static )?(final )?(class|void|interface)\b", r"System\.out\.println", r"@Override", r"\bprivate \w+ \w+;"],
        "go": [r"^package \w+$", r"\bfunc (\(\w+ \*?\w+\) )?\w+\(", r"\w+ := ", r"\bgo \w+\("],
        "rust": [r"\bfn \w+\(", r"\blet mut\b", r"\bimpl(<.*>)? \w+", r"\w+!\(", r"\bpub (fn|struct|enum)\b"],
        "sql": [r"(?i)\bselect\b.+\bfrom\b", r"(?i)\bcreate table\b", r"(?i)\binsert into\b", r"(?i)\bwhere \w+ ="],
        "shell": [r"^#!/bin/(ba|z)?sh", r"^\s*(export|echo|sudo|cd) ", r"^\s*\$ \w+", r"\bfi$"],
    }.items()
}

LANGUAGE_DOMAINS: dict[str, str] = {
    "python": "python", "javascript": "javascript", "typescript": "typescript", "rust": "rust",
    "go": "go", "java": "java", "sql": "databases",
}

PATH_DOMAIN_HINTS: dict[str, list[str]] = {
    "testing": ["test", "tests", "spec", "__tests__"],
    "devops": ["docker", "k8s", "kubernetes", "helm", "terraform", ".github/workflows", "deploy"],
    "databases": ["migrations", "schema", "db"],
    "react": ["components", "hooks"],
}

_CODE_LINE = re.compile(
    r"(^\s*(def|class|function|import|from|return|if|for|while|const|let|var|public|private|fn|func|package|#include)\b)"
    r"|([;{}]\s*$)|(=>)|(^\s*\w+(\.\w+)*\(.*\)\s*;?\s*$)"
)
_PROSE_LINE = re.compile(r"^\s*[A-Z\"'(].{20,}[.!?:)]\s*$|^\s*(?:\S+\s+){7,}\S+\s*$")
_MARKDOWN_LINE = re.compile(r"^\s*(#{1,6} |[-*+] |\d+\. |> )")
_CONFIG_LINE = re.compile(r"^\s*(\"[\w.-]+\"\s*:|[\w.-]+\s*[:=]\s*\S|\[[\w.\s-]+\]\s*$|- [\w.-]+:)")
_COMMENT_LINE = re.compile(r"^\s*(#(?!!)|//|/\*|\*(?!\*)|<!--|--\s)")
_DOCSTRING = re.compile(r'("""|\'\'\'|/\*\*|^\s*\*\s*@\w+)', re.MULTILINE)
_NOISE_CHAR = re.compile(r"[{}\[\]()<>;:=#*_`|\\/~^$@&%+-]")
_DOC_KEYWORDS = ("example", "usage", "note", "parameters", "returns", "see also", "overview", "warning")

_OFFICIAL_PATH = re.compile(
    r"(^|[/.])(docs?|documentation|official|reference|guide|manual|handbook|api)([/._-]|$)|readme", re.IGNORECASE
)
_CONTENT_MARKERS = [re.compile(p, re.IGNORECASE) for p in (r"\bcopyright\b|©", r"\blicen[cs]e\b", r"official documentation", r"\bspecification\b")]
_EXAMPLE = re.compile(r"\b(examples?|samples?|demos?|tutorials?|playground)\b", re.IGNORECASE)
_GENERATED = re.compile(
    r"auto-?generated|@generated|generated by|do not edit|code generated|this file was generated", re.IGNORECASE
)
_TRUSTED_TLDS = (".org", ".edu", ".gov")


class AuthorityIndicators(BaseModel):
    is_official: bool = False
    is_example: bool = False
    is_generated: bool = False
    content_markers: int = 0
    trusted_domain: bool = False


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def _extension(file_path: str) -> str:
    name = PurePosixPath(file_path.replace("\\", "/")).name.lower()
    if name == "dockerfile":
        return ".dockerfile"
    return PurePosixPath(name).suffix


class ContentClassifier:
    """Scores and tags a chunk of text.

    Parameters
    ----------
    vocabulary:
        Domain vocabulary used for tagging and authority patterns.
    quality_weights / authority_weights:
        Tunable weights; default to the global settings.
    domain_tag_threshold:
        A domain is tagged when its weighted keyword hit count exceeds this.
    """

    def __init__(
        self,
        vocabulary: DomainVocabulary | None = None,
        *,
        quality_weights: QualityWeights | None = None,
        authority_weights: AuthorityWeights | None = None,
        domain_tag_threshold: float = settings.domain_tag_threshold,
    ) -> None:
        self.vocabulary = vocabulary or DomainVocabulary()
        self.quality_weights = quality_weights or settings.quality_weights
        self.authority_weights = authority_weights or settings.authority_weights
        self.domain_tag_threshold = domain_tag_threshold

    def classify(self, content: str, file_path: str, source: str | None = None) -> ContentMetadata:
        """Return the :class:`ContentMetadata` for one chunk.

        Never raises: on an internal failure a neutral fallback is returned
        and the error is logged.
        """
        ext = _extension(file_path)
        try:
            content_type = self.classify_content_type(content, ext)
            language = self.detect_language(content, ext)
            has_comments, has_documentation = self._documentation_flags(content, content_type)
            return ContentMetadata(
                content_type=content_type,
                language=language,
                domain_tags=self.domain_tags(content, file_path, language, source),
                quality_score=self.quality_score(content, content_type),
                source_authority=self.authority_score(content, source or file_path),
                file_extension=ext,
                has_comments=has_comments,
                has_documentation=has_documentation,
            )
        except Exception:
            logger.warning("Classification failed for %s; using fallback", file_path, exc_info=True)
            return ContentMetadata(content_type="mixed", language="unknown", file_extension=ext)

    # -- content type / language ----------------------------------------------

    def type_scores(self, content: str) -> dict[str, float]:
        """Share of non-empty lines that look like code, prose or config."""
        lines = [ln for ln in content.splitlines() if ln.strip()]
        if not lines:
            return {"code": 0.0, "docs": 0.0, "config": 0.0}
        n = len(lines)
        return {
            "code": sum(1 for ln in lines if _CODE_LINE.search(ln)) / n,
            "docs": sum(1 for ln in lines if _PROSE_LINE.search(ln) or _MARKDOWN_LINE.search(ln)) / n,
            "config": sum(1 for ln in lines if _CONFIG_LINE.search(ln)) / n,
        }

    def classify_content_type(self, content: str, ext: str) -> ContentType:
        if ext in CODE_EXTENSIONS:
            ext_type: str | None = "code"
        elif ext in DOCS_EXTENSIONS:
            ext_type = "docs"
        elif ext in CONFIG_EXTENSIONS:
            ext_type = "config"
        else:
            ext_type = None

        scores = self.type_scores(content)
        best, best_score = max(scores.items(), key=lambda kv: kv[1])
        if ext_type is None:
            return best if best_score >= 0.3 else "mixed"  # type: ignore[return-value]
        if best_score > 0.7 and best != ext_type:
            return "mixed"
        return ext_type  # type: ignore[return-value]

    def detect_language(self, content: str, ext: str) -> str:
        if ext in CODE_EXTENSIONS or ext in CONFIG_EXTENSIONS:
            return EXTENSION_LANGUAGES.get(ext, "unknown")

        hits = {lang: sum(1 for p in patterns if p.search(content)) for lang, patterns in LANGUAGE_PATTERNS.items()}
        lang, count = max(hits.items(), key=lambda kv: kv[1])
        if count >= 2:
            return lang
        return EXTENSION_LANGUAGES.get(ext, "unknown")

    # -- domains --------------------------------------------------------------

    def domain_tags(self, content: str, file_path: str, language: str, source: str | None = None) -> set[str]:
        tags = {
            domain
            for domain, score in self.vocabulary.keyword_scores(content).items()
            if score > self.domain_tag_threshold
        }
        tags.update(self.vocabulary.authority_domains(source or file_path))

        mapped = LANGUAGE_DOMAINS.get(language)
        if mapped and self.vocabulary.get(mapped) is not None:
            tags.add(mapped)

        parts = {p.lower() for p in PurePosixPath(file_path.replace("\\", "/")).parts}
        lowered_path = file_path.lower().replace("\\", "/")
        for domain, hints in PATH_DOMAIN_HINTS.items():
            if self.vocabulary.get(domain) is None:
                continue
            if any(h in parts or ("/" in h and h in lowered_path) for h in hints):
                tags.add(domain)
        return tags

    # -- quality --------------------------------------------------------------

    def quality_score(self, content: str, content_type: str) -> float:
        weights = self.quality_weights.for_type(content_type)
        score = (
            weights.semantic_density * self.semantic_density(content)
            + weights.syntax_noise * (1.0 - self.syntax_noise(content))
            + weights.documentation * self.documentation_presence(content, content_type)
            + weights.structure * self.structural_clarity(content)
        )
        return round(_clamp(score), 4)

    @staticmethod
    def semantic_density(content: str) -> float:
        """Share of whitespace-separated tokens that carry words or numbers."""
        tokens = content.split()
        if not tokens:
            return 0.0
        meaningful = sum(1 for t in tokens if re.search(r"[A-Za-z0-9]{2,}", t))
        return _clamp(meaningful / len(tokens))

    @staticmethod
    def syntax_noise(content: str) -> float:
        """Punctuation/markup density, scaled so 50% noise characters saturates."""
        visible = re.sub(r"\s+", "", content)
        if not visible:
            return 1.0
        return _clamp(len(_NOISE_CHAR.findall(visible)) / len(visible) * 2.0)

    @staticmethod
    def documentation_presence(content: str, content_type: str) -> float:
        lowered = content.lower()
        keyword_bonus = 0.1 * sum(1 for kw in _DOC_KEYWORDS if kw in lowered)
        if content_type == "docs":
            return _clamp(0.5 + keyword_bonus)

        lines = [ln for ln in content.splitlines() if ln.strip()]
        if not lines:
            return 0.0
        comment_ratio = sum(1 for ln in lines if _COMMENT_LINE.search(ln)) / len(lines)
        docstrings = len(_DOCSTRING.findall(content))
        return _clamp(min(comment_ratio * 2.0, 0.6) + min(docstrings * 0.1, 0.3) + keyword_bonus)

    @staticmethod
    def structural_clarity(content: str) -> float:
        lines = content.splitlines()
        non_empty = [ln for ln in lines if ln.strip()]
        if not non_empty:
            return 0.0

        score = 0.5
        indents = [len(ln) - len(ln.lstrip(" ")) for ln in non_empty if ln.startswith(" ")]
        if indents:
            unit = reduce(math.gcd, indents)
            if 0 < unit <= 8:
                score += 0.2
        if any(_MARKDOWN_LINE.match(ln) and ln.lstrip().startswith("#") for ln in non_empty):
            score += 0.15
        if "\n\n" in content:
            score += 0.15
        if any(re.match(r"^\s*([-*+]|\d+\.) ", ln) for ln in non_empty):
            score += 0.1
        if sum(len(ln) for ln in non_empty) / len(non_empty) > 200:
            score -= 0.3
        return _clamp(score)

    def _documentation_flags(self, content: str, content_type: str) -> tuple[bool, bool]:
        if content_type == "docs":
            return False, True
        lines = content.splitlines()
        has_comments = any(_COMMENT_LINE.search(ln) for ln in lines)
        has_documentation = bool(_DOCSTRING.search(content))
        return has_comments, has_documentation

    # -- authority ------------------------------------------------------------

    def authority_indicators(self, content: str, source: str) -> AuthorityIndicators:
        parsed = urlparse(source) if "://" in source else None
        host = (parsed.hostname or "") if parsed else ""
        locator = source.replace("\\", "/")
        return AuthorityIndicators(
            is_official=bool(self.vocabulary.authority_domains(source)) or bool(_OFFICIAL_PATH.search(locator)),
            is_example=bool(_EXAMPLE.search(locator)) or bool(_EXAMPLE.search(content[:500])),
            is_generated=bool(_GENERATED.search(content[:2000])),
            content_markers=sum(1 for p in _CONTENT_MARKERS if p.search(content)),
            trusted_domain=host.endswith(_TRUSTED_TLDS) or host.startswith("docs."),
        )

    def authority_score(self, content: str, source: str) -> float:
        w = self.authority_weights
        ind = self.authority_indicators(content, source)
        score = w.base
        if ind.is_official:
            score += w.official_source
        score += min(ind.content_markers * w.content_marker, w.content_marker_cap)
        if ind.is_example:
            score += w.example_code
        if ind.is_generated:
            score -= w.generated_penalty
        if ind.trusted_domain:
            score += w.trusted_domain
        return round(_clamp(score), 4)
