"""
Custom exceptions for the migration engine with structured error context.

This module provides the exception hierarchy used by the job scheduler,
the pipeline stages and the environment API client. Each exception carries
context information for debugging and for the row-level log.

Exception Hierarchy:
    MigrationException (base)
    ├── ValidationError           (bad job spec, rejected at submission)
    ├── SequenceError             (extraction cannot proceed, run aborts)
    ├── TransformError            (per-row, stage "transform")
    ├── LoadError                 (per-row, stage "load")
    │   ├── TransientLoadError
    │   └── PermanentLoadError
    ├── ClientError               (raised by EnvironmentClient implementations)
    │   ├── TransientClientError
    │   ├── PermanentClientError
    │   └── AuthenticationError
    ├── JobNotFoundError / JobStateError
    ├── EnvironmentNotFoundError / MissingCredentialsError
    ├── StoreError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class MigrationException(Exception):
    """
    Base exception for all migration engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (job, entity, row key, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(MigrationException):
    """
    Mixin for errors that should trigger in-process retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[float] = None,
        **kwargs
    ):
        super().__init__(message, context, original_exception, **kwargs)
        self.retry_after = retry_after  # Seconds the server asked us to wait
        if retry_after:
            self.context["retry_after"] = retry_after


class NonRetryableError(MigrationException):
    """
    Mixin for errors that should NOT trigger in-process retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Validation rejected by the destination (HTTP 400, 422)
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Job-level Errors
# ============================================================================

class ValidationError(MigrationException):
    """
    Exception raised when a job spec is rejected at submission.

    Context should include:
        - field_name: The offending mapping field (if applicable)
        - reason: Short machine-readable reason (empty_mapping, duplicate_dest_field, ...)
    """
    pass


class SequenceError(MigrationException):
    """
    Exception raised when extraction cannot proceed (page-level auth/network failure).

    Aborts the run; the job transitions to "failed".

    Context should include:
        - environment_id: Source environment
        - entity: Source entity
        - page: Page number that failed
        - attempts: Number of attempts made for the page
    """
    pass


class JobNotFoundError(MigrationException):
    """Exception raised when a job id is unknown."""

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}", context={"job_id": job_id})
        self.job_id = job_id


class JobStateError(MigrationException):
    """
    Exception raised when an operation is not valid for the job's current status.

    Context should include:
        - job_id: The job
        - status: Its current status
    """
    pass


class EnvironmentNotFoundError(MigrationException):
    """Exception raised when an environment id is unknown."""

    def __init__(self, environment_id: str):
        super().__init__(
            f"Environment not found: {environment_id}",
            context={"environment_id": environment_id}
        )
        self.environment_id = environment_id


class MissingCredentialsError(MigrationException):
    """Exception raised when no password is available for an environment."""

    def __init__(self, environment_id: str):
        super().__init__(
            f"Password not set for environment: {environment_id}",
            context={"environment_id": environment_id}
        )
        self.environment_id = environment_id


class StoreError(MigrationException):
    """
    Exception raised when the local job store cannot be read or written.

    Context should include:
        - operation: Store operation that failed
        - job_id: Job involved (if applicable)
    """
    pass


# ============================================================================
# Row-level Errors
# ============================================================================

class TransformError(MigrationException):
    """
    Exception raised when a mapping entry cannot be applied to a row.

    Context should include:
        - source_field: Source column of the offending mapping entry
        - dest_field: Destination column of the offending mapping entry
        - transform_kind: Transform that failed
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        super().__init__(message, context, original_exception)
        self.field_name = field_name
        if field_name:
            self.context["field_name"] = field_name


class LoadError(MigrationException):
    """Base exception for destination write failures."""
    pass


class TransientLoadError(RetryableError, LoadError):
    """Write failure that is retried in-process (timeout, 5xx, rate limited)."""
    pass


class PermanentLoadError(NonRetryableError, LoadError):
    """Write failure recorded on first occurrence (validation rejected, 4xx)."""
    pass


# ============================================================================
# Environment Client Errors
# ============================================================================

class ClientError(MigrationException):
    """
    Base exception for EnvironmentClient failures.

    Context should include:
        - url: The endpoint that failed
        - status_code: HTTP status code (if applicable)
        - response_body: Response body (truncated if large)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        status_code: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.status_code = status_code
        if status_code is not None:
            self.context["status_code"] = status_code


class TransientClientError(RetryableError, ClientError):
    """Timeout, network error, HTTP 5xx or HTTP 429."""
    pass


class PermanentClientError(NonRetryableError, ClientError):
    """HTTP 4xx other than rate limiting, or a malformed response."""
    pass


class AuthenticationError(PermanentClientError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass
