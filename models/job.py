from sqlalchemy import Column, String, Integer, Enum, DateTime, JSON, Text, Index
from datetime import datetime
from models.base import Base, JobStatus


class MigrationJob(Base):
    """
    A migration of one source entity into one destination entity.

    Counters and timestamps always describe the job's current run
    (the initial run, or the latest retry pass). Earlier runs are kept
    in job_runs.

    Invariants:
    - processed_rows == successful_rows + failed_row_count
    - processed_rows <= total_rows once total_rows is known
    """
    __tablename__ = "migration_jobs"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    status = Column(Enum(JobStatus), nullable=False, default=JobStatus.QUEUED, index=True)

    # Source / destination
    source_environment_id = Column(String(36), nullable=False)
    dest_environment_id = Column(String(36), nullable=False)
    source_entity = Column(String(200), nullable=False)
    dest_entity = Column(String(200), nullable=False)
    source_key_field = Column(String(200), nullable=True)  # None -> positional keys

    # Ordered list of mapping entries (see schemas.mapping.MappingEntry)
    mapping = Column(JSON, nullable=False)

    # Progress of the current run
    total_rows = Column(Integer, nullable=True)
    processed_rows = Column(Integer, nullable=False, default=0)
    successful_rows = Column(Integer, nullable=False, default=0)
    failed_row_count = Column(Integer, nullable=False, default=0)

    current_run_id = Column(String(36), nullable=True)
    run_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    queued_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_job_status_queued", "status", "queued_at"),
    )
