"""
Pipelines: staged background processing of fetch and ingest jobs.

Public surface
--------------
- :class:`BackgroundProcessor`: runs acquire → chunk → embed → store and
  reports real progress to the :class:`~local_search.jobs.JobManager`.
- :data:`STAGE_RANGES`: progress sub-range of every stage per job type.
"""

from local_search.pipelines.background import STAGE_RANGES, BackgroundProcessor, Stage

__all__ = ["STAGE_RANGES", "BackgroundProcessor", "Stage"]
