from sqlalchemy import Column, Integer, String, Enum, DateTime, Float, Text, ForeignKey, Index
from datetime import datetime
from models.base import Base, JobStatus, RunKind


class JobRun(Base):
    """
    One execution of the pipeline for a job.

    Purpose:
    - Audit trail of the initial run and every retry pass
    - Counters of each run survive later runs of the same job
    """
    __tablename__ = "job_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String(36), unique=True, nullable=False, index=True)
    job_id = Column(String(36), ForeignKey("migration_jobs.id"), nullable=False, index=True)

    kind = Column(Enum(RunKind), nullable=False, default=RunKind.INITIAL)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED)

    # Statistics
    total_rows = Column(Integer, nullable=True)
    processed_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    failed_row_count = Column(Integer, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_job_run_job_created", "job_id", "created_at"),
    )
