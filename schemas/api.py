"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from models.base import JobStatus, RunKind, RowStatus, FailedStage
from schemas.mapping import JobSpec


# ============================================================================
# Job Schemas
# ============================================================================

class CreateJobRequest(JobSpec):
    """Request body for POST /jobs"""

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Contacts to staging",
                "source_environment_id": "prod",
                "dest_environment_id": "staging",
                "source_entity": "Contact",
                "dest_entity": "Contact",
                "source_key_field": "ContactId",
                "mapping": [
                    {"source_field": "FirstName", "dest_field": "FirstName"},
                    {"source_field": "Email", "dest_field": "Email", "transform_kind": "lower"},
                    {
                        "source_field": "Status",
                        "dest_field": "StatusCode",
                        "transform_kind": "value_map",
                        "transform_params": {"values": {"Active": "A", "Inactive": "I"}}
                    }
                ]
            }
        }


class CreateJobResponse(BaseModel):
    job_id: str


class RetryResponse(BaseModel):
    job_id: str
    run_id: str


class JobSummary(BaseModel):
    """Row of GET /jobs, polled by clients at a fixed interval"""
    id: str
    name: str
    status: JobStatus
    total_rows: Optional[int] = None
    processed_rows: int = 0
    successful_rows: int = 0
    failed_row_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    source_environment_name: str
    dest_environment_name: str

    # Derived; None when unavailable
    percent: Optional[int] = Field(None, description="round(processed/total*100) when total is known")
    rate: Optional[float] = Field(None, description="Rows per second while running")
    rate_display: Optional[str] = None

    class Config:
        use_enum_values = True


class JobDetail(JobSummary):
    """Response of GET /jobs/{job_id}"""
    source_environment_id: str
    dest_environment_id: str
    source_entity: str
    dest_entity: str
    source_key_field: Optional[str] = None
    mapping: List[Dict[str, Any]]
    current_run_id: Optional[str] = None
    run_count: int = 0
    retry_batch_size: int = 0
    error_message: Optional[str] = None
    created_at: datetime


class RunInfo(BaseModel):
    run_id: str
    kind: RunKind
    status: JobStatus
    total_rows: Optional[int] = None
    processed_rows: int
    successful_rows: int
    failed_row_count: int
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error_message: Optional[str] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class RowOutcomeInfo(BaseModel):
    run_id: str
    source_row_key: str
    attempt: int
    status: RowStatus
    error_message: Optional[str] = None
    failed_stage: Optional[FailedStage] = None
    identity: Optional[List[str]] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class RowOutcomePage(BaseModel):
    job_id: str
    total: int
    rows: List[RowOutcomeInfo]


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field(..., description="Overall system status: healthy, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    active_job_id: Optional[str] = None
    queued_jobs: int = 0


class ErrorResponse(BaseModel):
    error_type: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
