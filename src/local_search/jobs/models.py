"""Job records and the typed parameters / results of each job type."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class JobType(str, Enum):
    FETCH_REPO = "fetch_repo"
    FETCH_FILE = "fetch_file"
    WATCH_INGEST = "watch_ingest"


class JobStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ── parameters ──────────────────────────────────────────────────────────


class FetchRepoParams(BaseModel):
    """Clone a repository, concatenate its docs to markdown, index it.

    Attributes
    ----------
    repo_url:
        Clone URL, or ``owner/repo`` shorthand for GitHub.
    branch:
        Branch or tag to check out (default branch when ``None``).
    include_patterns / exclude_patterns:
        Globs overriding the configured repository filters.
    max_files:
        Cap on the number of files collected.
    """

    kind: Literal["fetch_repo"] = "fetch_repo"
    repo_url: str = Field(min_length=1)
    branch: str | None = None
    include_patterns: list[str] | None = None
    exclude_patterns: list[str] | None = None
    max_files: int | None = Field(default=None, ge=1)


class FetchFileParams(BaseModel):
    """Download a single URL into the fetched-files folder and index it."""

    kind: Literal["fetch_file"] = "fetch_file"
    url: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    overwrite: bool = True
    index_after_save: bool = True
    max_file_size_mb: float | None = Field(default=None, gt=0)


class WatchIngestParams(BaseModel):
    """(Re)index a file already on disk, typically after a watcher event."""

    kind: Literal["watch_ingest"] = "watch_ingest"
    file_path: str = Field(min_length=1)
    event: Literal["add", "change"] = "change"


JobParams = Annotated[
    Union[FetchRepoParams, FetchFileParams, WatchIngestParams],
    Field(discriminator="kind"),
]

PARAMS_FOR_TYPE: dict[JobType, type[BaseModel]] = {
    JobType.FETCH_REPO: FetchRepoParams,
    JobType.FETCH_FILE: FetchFileParams,
    JobType.WATCH_INGEST: WatchIngestParams,
}


# ── results ─────────────────────────────────────────────────────────────


class FetchRepoResult(BaseModel):
    kind: Literal["fetch_repo"] = "fetch_repo"
    repo_name: str
    file_path: str
    files_collected: int = 0
    chunks_indexed: int = 0


class FetchFileResult(BaseModel):
    kind: Literal["fetch_file"] = "fetch_file"
    file_path: str
    size: int = 0
    indexed: bool = True
    chunks_indexed: int = 0


class WatchIngestResult(BaseModel):
    kind: Literal["watch_ingest"] = "watch_ingest"
    file_path: str
    chunks_indexed: int = 0


JobResult = Annotated[
    Union[FetchRepoResult, FetchFileResult, WatchIngestResult],
    Field(discriminator="kind"),
]


# ── job record ──────────────────────────────────────────────────────────


class Job(BaseModel):
    """A tracked unit of background ingestion work.

    Mutated only through :class:`~local_search.jobs.manager.JobManager`;
    ``progress`` never decreases and ``end_time`` is set exactly once.
    """

    id: str
    type: JobType
    status: JobStatus = JobStatus.RUNNING
    progress: float = Field(default=0.0, ge=0.0, le=100.0)
    current_step: str = "Starting"
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    params: JobParams
    result: JobResult | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not JobStatus.RUNNING

    @property
    def duration_seconds(self) -> float | None:
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()


class JobStatistics(BaseModel):
    total: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    average_duration: float = 0.0
