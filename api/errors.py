"""
Mapping of engine exceptions to HTTP responses
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from core.exceptions import (
    EnvironmentNotFoundError,
    JobNotFoundError,
    JobStateError,
    MigrationException,
    ValidationError,
)
import logging

logger = logging.getLogger(__name__)

# Most specific first
STATUS_CODES = [
    (ValidationError, 422),
    (JobNotFoundError, 404),
    (EnvironmentNotFoundError, 404),
    (JobStateError, 409),
]


def status_code_for(exc: MigrationException) -> int:
    for exc_type, status_code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return status_code
    return 500


async def migration_exception_handler(request: Request, exc: MigrationException) -> JSONResponse:
    status_code = status_code_for(exc)
    request_id = getattr(request.state, "request_id", None)

    if status_code >= 500:
        logger.error(f"[{request_id}] {request.method} {request.url.path} failed: {exc}")
    else:
        logger.info(f"[{request_id}] {request.method} {request.url.path} -> {status_code}: {exc.message}")

    error = exc.to_dict()
    return JSONResponse(
        status_code=status_code,
        content={
            "error_type": error["error_type"],
            "message": error["message"],
            "context": {k: v for k, v in error["context"].items() if _is_json_value(v)},
        },
    )


def _is_json_value(value) -> bool:
    return value is None or isinstance(value, (str, int, float, bool))


def register_exception_handlers(app: FastAPI):
    app.add_exception_handler(MigrationException, migration_exception_handler)
