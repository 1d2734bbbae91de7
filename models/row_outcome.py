from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, ForeignKey, Index, JSON
from datetime import datetime
from models.base import Base, RowStatus, FailedStage


class RowOutcome(Base):
    """
    Row-level log: one immutable record per row per attempt.

    error_message and failed_stage are present iff status is FAILED;
    identity (destination identity values) only on SUCCESS.
    """
    __tablename__ = "row_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(36), ForeignKey("migration_jobs.id"), nullable=False)
    run_id = Column(String(36), nullable=False, index=True)

    source_row_key = Column(String(255), nullable=False)
    attempt = Column(Integer, nullable=False, default=1)
    status = Column(Enum(RowStatus), nullable=False)
    error_message = Column(Text, nullable=True)
    failed_stage = Column(Enum(FailedStage), nullable=True)
    identity = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_outcome_job_key_attempt", "job_id", "source_row_key", "attempt"),
        Index("idx_outcome_job_status", "job_id", "status"),
    )
