"""
Single-row writes to the destination entity with transient-failure retry
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
from core.config import settings
from core.exceptions import (
    ClientError,
    PermanentLoadError,
    RetryableError,
    TransientLoadError,
)
from engine.client import EnvironmentClient
import logging

logger = logging.getLogger(__name__)


@dataclass
class LoadResult:
    """
    Outcome of writing one row.

    Attributes:
        success: Row was accepted by the destination
        attempts: Write attempts made in this process (1..max_attempts)
        identity: Identity values the destination assigned to the row
        error_message: Last error, present iff not successful
        transient: Last failure was transient (retry ceiling reached)
    """
    success: bool
    attempts: int
    identity: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    transient: bool = False


class RowLoader:
    """
    Write transformed rows into one destination entity.

    Transient failures (timeout, 5xx, rate limited) are retried in-process
    with exponential backoff up to max_attempts. Permanent failures are
    returned on the first occurrence. write() never raises for a row error.

    Attributes:
        max_attempts: Attempt ceiling per row (default: settings.LOAD_MAX_ATTEMPTS)
        retry_delay: Initial backoff in seconds (default: settings.LOAD_RETRY_DELAY)
    """

    def __init__(
        self,
        client: EnvironmentClient,
        dest_environment_id: str,
        dest_entity: str,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.client = client
        self.dest_environment_id = dest_environment_id
        self.dest_entity = dest_entity
        self.max_attempts = max(1, max_attempts if max_attempts is not None else settings.LOAD_MAX_ATTEMPTS)
        self.retry_delay = retry_delay if retry_delay is not None else settings.LOAD_RETRY_DELAY
        self._sleep = sleep

    def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before the next attempt after `attempt` failed attempts"""
        delay = self.retry_delay * (2 ** (attempt - 1))
        if retry_after is not None and retry_after > delay:
            return retry_after
        return delay

    async def write(self, row: Dict[str, Any], row_key: Optional[str] = None) -> LoadResult:
        attempt = 0

        while True:
            attempt += 1
            try:
                receipt = await self.client.write_entity_row(self.dest_entity, row)
                return LoadResult(success=True, attempts=attempt, identity=list(receipt.identity))

            except ClientError as e:
                error = self._classify(e, row_key)
            except Exception as e:
                logger.exception(f"Unexpected error writing row {row_key} to {self.dest_entity}")
                error = PermanentLoadError(
                    f"Unexpected error: {type(e).__name__}: {e}",
                    context={"dest_entity": self.dest_entity, "row_key": row_key},
                    original_exception=e
                )

            if isinstance(error, PermanentLoadError):
                logger.warning(f"Row {row_key} rejected by {self.dest_entity}: {error.message}")
                return LoadResult(success=False, attempts=attempt, error_message=error.message)

            if attempt >= self.max_attempts:
                logger.warning(
                    f"Row {row_key} failed after {attempt} attempts: {error.message}"
                )
                return LoadResult(
                    success=False,
                    attempts=attempt,
                    error_message=error.message,
                    transient=True
                )

            delay = self.backoff(attempt, error.retry_after)
            logger.info(
                f"Transient write failure for row {row_key} "
                f"(attempt {attempt}/{self.max_attempts}), retrying in {delay:.2f}s: {error.message}"
            )
            await self._sleep(delay)

    def _classify(self, error: ClientError, row_key: Optional[str]):
        context = {
            "dest_environment_id": self.dest_environment_id,
            "dest_entity": self.dest_entity,
            "row_key": row_key,
            "status_code": error.status_code,
        }
        if isinstance(error, RetryableError):
            return TransientLoadError(
                error.message,
                context=context,
                original_exception=error,
                retry_after=error.retry_after
            )
        return PermanentLoadError(error.message, context=context, original_exception=error)
