"""
SQLAlchemy ORM models for the local job store.

This package defines the schema the engine persists jobs, runs and
row-level outcomes into:

Models:
    base: Base declarative class and shared enums (JobStatus, RunKind, RowStatus, FailedStage)
    environment: Configured CRM environments (read-only to the engine)
    job: Migration jobs and the counters of their current run
    job_run: One record per pipeline run (initial run and retry passes)
    row_outcome: Row-level log, one record per row per attempt
    retry_entry: Retry batch membership for failed rows

Usage:
    from models import MigrationJob, JobRun, RowOutcome, RetryEntry
    from models.base import JobStatus, RowStatus

Relationships:
    - MigrationJob → JobRun (one-to-many, run history)
    - MigrationJob → RowOutcome (one-to-many, row-level log)
    - MigrationJob → RetryEntry (one-to-many, current retry batch)
"""

from models.base import Base, JobStatus, RunKind, RowStatus, FailedStage
from models.environment import Environment
from models.job import MigrationJob
from models.job_run import JobRun
from models.row_outcome import RowOutcome
from models.retry_entry import RetryEntry

__all__ = [
    "Base",
    "JobStatus",
    "RunKind",
    "RowStatus",
    "FailedStage",
    "Environment",
    "MigrationJob",
    "JobRun",
    "RowOutcome",
    "RetryEntry",
]
