"""Registry of background jobs and their state transitions.

One :class:`JobManager` is owned by the service and handed to every
pipeline; all reads and writes go through its lock, so interleaved
progress reports from concurrently running pipelines never lose updates.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from pydantic import BaseModel

from local_search.config import settings
from local_search.errors import ValidationError
from local_search.jobs.models import (
    PARAMS_FOR_TYPE,
    Job,
    JobResult,
    JobStatistics,
    JobStatus,
    JobType,
)

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobManager:
    """Thread-safe job table.

    Parameters
    ----------
    retention_seconds:
        Terminal jobs older than this are evicted by :meth:`cleanup`.
    history_limit:
        Maximum number of terminal jobs kept; the oldest go first.
    """

    def __init__(
        self,
        *,
        retention_seconds: float = settings.job_retention_seconds,
        history_limit: int = settings.job_history_limit,
    ) -> None:
        self.retention_seconds = retention_seconds
        self.history_limit = history_limit
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    # -- lifecycle ------------------------------------------------------------

    def create_job(self, job_type: JobType | str, params: BaseModel) -> str:
        """Register a new running job and return its id.

        Raises
        ------
        ValidationError
            *params* is not the parameter model for *job_type*.
        """
        job_type = JobType(job_type)
        expected = PARAMS_FOR_TYPE[job_type]
        if not isinstance(params, expected):
            raise ValidationError(
                f"{job_type.value} jobs take {expected.__name__}, got {type(params).__name__}"
            )

        job = Job(id=f"job_{uuid4().hex[:12]}", type=job_type, params=params)
        with self._lock:
            self._jobs[job.id] = job
            self._evict_locked(_now())
        logger.info("Created job %s (%s)", job.id, job_type.value)
        return job.id

    def update_progress(self, job_id: str, percent: float, step: str | None = None) -> None:
        """Raise the job's progress to *percent* (never lowers it)."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                logger.warning("Progress update for unknown job %s", job_id)
                return
            if job.is_terminal:
                logger.debug("Ignoring progress update for %s job %s", job.status.value, job_id)
                return
            job.progress = max(job.progress, min(max(float(percent), 0.0), 100.0))
            if step is not None:
                job.current_step = step
        logger.debug("Job %s: %.1f%% %s", job_id, percent, step or "")

    def complete_job(self, job_id: str, result: JobResult | None = None) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            job.status = JobStatus.COMPLETED
            job.progress = 100.0
            job.current_step = "Completed"
            job.result = result
            job.end_time = _now()
            duration = job.duration_seconds
        logger.info("Job %s completed in %.2fs", job_id, duration)

    def fail_job(self, job_id: str, error: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            job.status = JobStatus.FAILED
            job.current_step = "Failed"
            job.error = error
            job.end_time = _now()
        logger.error("Job %s failed: %s", job_id, error)

    # -- queries --------------------------------------------------------------

    def get_job(self, job_id: str) -> Job | None:
        """Return a snapshot of the job, or ``None`` if unknown / evicted."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job is not None else None

    def get_active_jobs(self) -> list[Job]:
        with self._lock:
            return [j.model_copy(deep=True) for j in self._jobs.values() if j.status is JobStatus.RUNNING]

    def get_all_jobs(self) -> list[Job]:
        with self._lock:
            return sorted((j.model_copy(deep=True) for j in self._jobs.values()), key=lambda j: j.start_time)

    def get_statistics(self) -> JobStatistics:
        with self._lock:
            jobs = list(self._jobs.values())
            durations = [
                j.duration_seconds for j in jobs if j.status is JobStatus.COMPLETED and j.end_time is not None
            ]
            return JobStatistics(
                total=len(jobs),
                running=sum(1 for j in jobs if j.status is JobStatus.RUNNING),
                completed=sum(1 for j in jobs if j.status is JobStatus.COMPLETED),
                failed=sum(1 for j in jobs if j.status is JobStatus.FAILED),
                average_duration=sum(durations) / len(durations) if durations else 0.0,
            )

    # -- retention ------------------------------------------------------------

    def cleanup(self, max_age: float | None = None) -> int:
        """Evict terminal jobs older than *max_age* seconds; returns the count."""
        with self._lock:
            removed = self._evict_locked(_now(), max_age)
        if removed:
            logger.info("Evicted %d finished jobs", removed)
        return removed

    def _evict_locked(self, now: datetime, max_age: float | None = None) -> int:
        cutoff = now - timedelta(seconds=self.retention_seconds if max_age is None else max_age)
        expired = [jid for jid, j in self._jobs.items() if j.end_time is not None and j.end_time < cutoff]
        for jid in expired:
            del self._jobs[jid]

        terminal = sorted(
            (j for j in self._jobs.values() if j.end_time is not None),
            key=lambda j: j.end_time,
        )
        overflow = terminal[: max(len(terminal) - self.history_limit, 0)]
        for job in overflow:
            del self._jobs[job.id]
        return len(expired) + len(overflow)
