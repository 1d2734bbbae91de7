from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, ForeignKey, Index
from datetime import datetime
from models.base import Base, FailedStage


class RetryEntry(Base):
    """
    Membership of one source row in its job's retry batch.

    A row is present while its latest recorded outcome is a failure.
    A success deletes the entry; a repeated failure updates attempt.
    """
    __tablename__ = "retry_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("migration_jobs.id"), nullable=False)
    source_row_key = Column(String(255), nullable=False)

    attempt = Column(Integer, nullable=False, default=1)  # Attempt number of the last failure
    failed_stage = Column(Enum(FailedStage), nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_retry_job_key", "job_id", "source_row_key", unique=True),
    )
