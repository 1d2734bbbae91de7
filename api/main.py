"""
FastAPI application initialization
"""

from fastapi import FastAPI
from api.routes import health, jobs
from api.errors import register_exception_handlers
from api.middleware import RequestContextMiddleware
from core.config import settings
from core.database import create_engine, create_session_maker, init_models
from core.logging import setup_logging
from engine.credentials import InMemoryCredentials
from engine.http_client import http_client_factory
from engine.scheduler import JobScheduler
from engine.store import JobStore
import logging

logger = logging.getLogger(__name__)

# Create FastAPI app
app = FastAPI(
    title="Record Migration Engine API",
    description="Runs migration jobs between CRM environments and reports their progress",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(RequestContextMiddleware)
register_exception_handlers(app)

# Include routers
app.include_router(health.router)
app.include_router(jobs.router)


@app.on_event("startup")
async def startup_event():
    """Application startup event"""
    setup_logging()
    logger.info("Starting Record Migration Engine API")
    logger.info(f"Environment: {settings.ENVIRONMENT}")

    engine = create_engine()
    await init_models(engine)

    # Passwords are pushed in by the embedding application
    credentials = InMemoryCredentials()
    store = JobStore(create_session_maker(engine))
    scheduler = JobScheduler(store, http_client_factory(credentials))

    app.state.db_engine = engine
    app.state.credentials = credentials
    app.state.scheduler = scheduler

    await scheduler.recover()
    scheduler.start()


@app.on_event("shutdown")
async def shutdown_event():
    """Application shutdown event"""
    logger.info("Shutting down Record Migration Engine API")
    await app.state.scheduler.shutdown()
    await app.state.db_engine.dispose()


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Record Migration Engine API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
        "endpoints": {
            "jobs": "/jobs"
        }
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api.main:app", host=settings.API_HOST, port=settings.API_PORT)
