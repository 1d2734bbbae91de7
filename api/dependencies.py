"""
FastAPI dependencies
"""

from fastapi import Request
from engine.scheduler import JobScheduler


def get_scheduler(request: Request) -> JobScheduler:
    """The engine's scheduler, created at application startup"""
    return request.app.state.scheduler
