"""
Jobs: tracked units of background ingestion work.

Public surface
--------------
- :class:`JobManager`: thread-safe job table with monotonic progress.
- :class:`Job`, :class:`JobType`, :class:`JobStatus`: job record models.
- ``FetchRepoParams`` / ``FetchFileParams`` / ``WatchIngestParams``: typed job inputs.
"""

from local_search.jobs.manager import JobManager
from local_search.jobs.models import (
    FetchFileParams,
    FetchFileResult,
    FetchRepoParams,
    FetchRepoResult,
    Job,
    JobStatistics,
    JobStatus,
    JobType,
    WatchIngestParams,
    WatchIngestResult,
)

__all__ = [
    "FetchFileParams",
    "FetchFileResult",
    "FetchRepoParams",
    "FetchRepoResult",
    "Job",
    "JobManager",
    "JobStatistics",
    "JobStatus",
    "JobType",
    "WatchIngestParams",
    "WatchIngestResult",
]
