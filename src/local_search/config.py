"""Shared configuration loaded from environment / .env file."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_HOME = Path.home() / ".local" / "share" / "local-search"


class SubScoreWeights(BaseModel):
    """Weights for the four quality sub-scores; must sum to 1."""

    semantic_density: float = 0.4
    syntax_noise: float = 0.4
    documentation: float = 0.0
    structure: float = 0.2

    @model_validator(mode="after")
    def _check_sum(self) -> SubScoreWeights:
        total = self.semantic_density + self.syntax_noise + self.documentation + self.structure
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"quality sub-score weights must sum to 1, got {total:.4f}")
        return self


class QualityWeights(BaseModel):
    """Quality weighting per content type (``mixed`` uses ``default``)."""

    docs: SubScoreWeights = SubScoreWeights(
        semantic_density=0.4, syntax_noise=0.2, documentation=0.2, structure=0.2
    )
    code: SubScoreWeights = SubScoreWeights(
        semantic_density=0.3, syntax_noise=0.3, documentation=0.2, structure=0.2
    )
    default: SubScoreWeights = SubScoreWeights()

    def for_type(self, content_type: str) -> SubScoreWeights:
        if content_type == "docs":
            return self.docs
        if content_type == "code":
            return self.code
        return self.default


class AuthorityWeights(BaseModel):
    """Contributions of each authority indicator to the [0, 1] score."""

    base: float = 0.3
    official_source: float = 0.4
    content_marker: float = 0.05
    content_marker_cap: float = 0.15
    example_code: float = 0.1
    generated_penalty: float = 0.2
    trusted_domain: float = 0.1


class Settings(BaseSettings):
    """Application-wide settings, populated from env vars or .env file."""

    # Storage
    data_dir: Path = _DEFAULT_HOME
    store_backend: Literal["chroma", "memory"] = "chroma"
    chroma_host: str = Field(default="", description="Chroma server host; empty for an embedded persistent client")
    chroma_port: int = 8000
    chroma_collection: str = "local_search"

    # Embedding
    embedding_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    embed_batch_size: int = Field(default=10, ge=1)

    # Chunking
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)

    # Acquisition
    acquire_timeout_seconds: float = Field(default=30.0, gt=0)
    download_max_retries: int = Field(default=3, ge=1)
    max_download_size_mb: float = Field(default=1024.0, gt=0)
    max_local_file_size_mb: float = Field(default=10.0, gt=0)
    repo_include_patterns: list[str] = Field(
        default_factory=lambda: ["**/*.md", "**/*.mdx", "**/*.txt", "**/*.json", "**/*.rst", "**/*.yml", "**/*.yaml"]
    )
    repo_exclude_patterns: list[str] = Field(
        default_factory=lambda: ["**/node_modules/**", "**/.git/**", "**/__pycache__/**", "**/dist/**", "**/build/**"]
    )
    repo_max_files: int = Field(default=5000, ge=1)

    # File watcher
    docs_folder: Path = Field(
        default=_DEFAULT_HOME / "docs",
        validation_alias=AliasChoices("local_search_docs_folder", "mcp_docs_folder", "docs_folder"),
    )
    watch_debounce_ms: int = Field(default=500, ge=0)
    watch_max_depth: int = Field(default=10, ge=0)

    # Jobs
    job_retention_seconds: float = 24 * 60 * 60
    job_history_limit: int = Field(default=1000, ge=1)

    # Search
    search_default_limit: int = Field(default=10, ge=1)
    search_candidate_multiplier: int = Field(default=5, ge=1)

    # Query recommendations
    recommendation_enabled: bool = True
    recommendation_min_results: int = 3
    recommendation_min_avg_score: float = 0.3
    recommendation_ttl_seconds: float = 60 * 60
    max_analysis_documents: int = Field(default=5, ge=1, le=50)
    max_query_terms: int = Field(default=8, ge=1, le=100)
    tfidf_threshold: float = Field(default=0.25, ge=0.1, le=0.5)
    learning_rate: float = Field(default=0.05, ge=0.01, le=0.1)
    effectiveness_history_size: int = Field(default=1000, ge=1)
    persist_learning: bool = True
    refinement_min_tfidf: float = 1.0

    # Classification
    domain_tag_threshold: float = 1.0
    quality_weights: QualityWeights = QualityWeights()
    authority_weights: AuthorityWeights = AuthorityWeights()

    log_level: str = "INFO"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "LOCAL_SEARCH_",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def _check_overlap(self) -> Settings:
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @property
    def fetched_dir(self) -> Path:
        return self.data_dir / "fetched"

    @property
    def repositories_dir(self) -> Path:
        return self.data_dir / "repositories"


def configure_logging(level: str | None = None) -> None:
    """Install a root handler; call once from entry points, never from library code."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )


# Singleton: import `settings` wherever needed.
settings = Settings()
