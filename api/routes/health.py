"""
Health check endpoint with local store and scheduler status
"""

from fastapi import APIRouter, Depends, Request
from sqlalchemy import text
from api.dependencies import get_scheduler
from engine.scheduler import JobScheduler
from schemas.api import HealthCheckResponse
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, scheduler: JobScheduler = Depends(get_scheduler)):
    """
    Health check endpoint.

    Returns:
    - Local store connectivity
    - The running job (if any) and the queue length
    """
    db_connected = False

    try:
        async with scheduler.store.session_maker() as session:
            await session.execute(text("SELECT 1"))
        db_connected = True
    except Exception as e:
        logger.error(f"Local store connection failed: {str(e)}")

    return HealthCheckResponse(
        status="healthy" if db_connected else "unhealthy",
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        active_job_id=scheduler.active_job_id,
        queued_jobs=scheduler.queued_count,
    )
