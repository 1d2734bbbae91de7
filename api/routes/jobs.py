"""
Migration job endpoints: create, list, inspect, cancel, retry
"""

from fastapi import APIRouter, Depends, Query, Request
from typing import Dict, List, Optional
from api.dependencies import get_scheduler
from engine.progress import format_rate, percent_complete
from engine.scheduler import JobScheduler
from models import MigrationJob, RowStatus
from schemas.api import (
    CreateJobRequest,
    CreateJobResponse,
    JobDetail,
    JobSummary,
    RetryResponse,
    RowOutcomeInfo,
    RowOutcomePage,
    RunInfo,
)
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["Jobs"])


def _summary_fields(
    job: MigrationJob,
    names: Dict[str, str],
    scheduler: JobScheduler
) -> dict:
    snapshot = scheduler.progress(job.id)
    rate = snapshot.rate if snapshot is not None else None
    return {
        "id": job.id,
        "name": job.name,
        "status": job.status,
        "total_rows": job.total_rows,
        "processed_rows": job.processed_rows,
        "successful_rows": job.successful_rows,
        "failed_row_count": job.failed_row_count,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "source_environment_name": names.get(job.source_environment_id, job.source_environment_id),
        "dest_environment_name": names.get(job.dest_environment_id, job.dest_environment_id),
        "percent": percent_complete(job.processed_rows, job.total_rows),
        "rate": rate,
        "rate_display": format_rate(rate),
    }


@router.post("", response_model=CreateJobResponse, status_code=201)
async def create_job(
    request: Request,
    body: CreateJobRequest,
    scheduler: JobScheduler = Depends(get_scheduler)
):
    """
    Create a migration job.

    The job starts right away when the engine is idle, otherwise it is
    queued behind the jobs submitted before it.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] POST /jobs - {body.source_entity} → {body.dest_entity}")

    job_id = await scheduler.submit(body)
    return CreateJobResponse(job_id=job_id)


@router.get("", response_model=List[JobSummary])
async def list_jobs(scheduler: JobScheduler = Depends(get_scheduler)):
    """All jobs, newest first. Polled by clients; there is no push channel."""
    jobs = await scheduler.list()
    names = await scheduler.environment_names()
    return [JobSummary(**_summary_fields(job, names, scheduler)) for job in jobs]


@router.get("/{job_id}", response_model=JobDetail)
async def get_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    job = await scheduler.get(job_id)
    names = await scheduler.environment_names()
    batch = await scheduler.retry_batch(job_id)

    return JobDetail(
        **_summary_fields(job, names, scheduler),
        source_environment_id=job.source_environment_id,
        dest_environment_id=job.dest_environment_id,
        source_entity=job.source_entity,
        dest_entity=job.dest_entity,
        source_key_field=job.source_key_field,
        mapping=job.mapping,
        current_run_id=job.current_run_id,
        run_count=job.run_count,
        retry_batch_size=len(batch),
        error_message=job.error_message,
        created_at=job.created_at,
    )


@router.post("/{job_id}/cancel", response_model=JobSummary)
async def cancel_job(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    """Cancel a running or queued job (409 when already finished)"""
    job = await scheduler.cancel(job_id)
    names = await scheduler.environment_names()
    return JobSummary(**_summary_fields(job, names, scheduler))


@router.post("/{job_id}/retry", response_model=RetryResponse, status_code=202)
async def retry_failed_rows(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    """Queue a new run over the job's failed rows"""
    run_id = await scheduler.retry_failed(job_id)
    return RetryResponse(job_id=job_id, run_id=run_id)


@router.get("/{job_id}/runs", response_model=List[RunInfo])
async def list_runs(job_id: str, scheduler: JobScheduler = Depends(get_scheduler)):
    runs = await scheduler.list_runs(job_id)
    return [RunInfo.model_validate(run) for run in runs]


@router.get("/{job_id}/rows", response_model=RowOutcomePage)
async def list_row_outcomes(
    job_id: str,
    status: Optional[RowStatus] = Query(None, description="Filter by outcome"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    scheduler: JobScheduler = Depends(get_scheduler)
):
    """Row-level log of the job, one entry per row per attempt"""
    total, outcomes = await scheduler.list_outcomes(job_id, status=status, limit=limit, offset=offset)
    return RowOutcomePage(
        job_id=job_id,
        total=total,
        rows=[RowOutcomeInfo.model_validate(outcome) for outcome in outcomes],
    )
