"""
Retry batch bookkeeping.

The batch of a job holds every source row key whose latest outcome is a
failure. Recording a success removes the key; recording a failure adds it,
or bumps its attempt number when it was already there.
"""

from typing import Dict, List, Optional, Set
import asyncio
from models.base import FailedStage
from engine.store import JobStore
import logging

logger = logging.getLogger(__name__)


class RetryCoordinator:
    """
    Owns RetryBatch membership for every job.

    Outcome recording is serialized per job. Keys handed to an active run
    are tracked as in flight; a key already in flight cannot be registered
    again until its outcome is recorded.
    """

    def __init__(self, store: JobStore):
        self.store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._in_flight: Dict[str, Set[str]] = {}
        self._next_attempt: Dict[str, Dict[str, int]] = {}

    def _lock(self, job_id: str) -> asyncio.Lock:
        if job_id not in self._locks:
            self._locks[job_id] = asyncio.Lock()
        return self._locks[job_id]

    async def batch_keys(self, job_id: str) -> List[str]:
        """Keys currently in the job's batch, in the order they first failed"""
        return [entry.source_row_key for entry in await self.store.retry_batch(job_id)]

    async def open_run(self, job_id: str, retry: bool) -> Optional[Set[str]]:
        """
        Prepare bookkeeping for a new run of a job.

        Returns:
            The run's key scope for a retry run (the current batch),
            None for an initial run (every source row)
        """
        self._in_flight[job_id] = set()
        self._next_attempt[job_id] = {}

        if not retry:
            return None

        entries = await self.store.retry_batch(job_id)
        self._next_attempt[job_id] = {e.source_row_key: e.attempt + 1 for e in entries}
        logger.info(f"Retry run for job {job_id} scoped to {len(entries)} rows")
        return set(self._next_attempt[job_id])

    def close_run(self, job_id: str):
        self._in_flight.pop(job_id, None)
        self._next_attempt.pop(job_id, None)

    def in_flight(self, job_id: str) -> Set[str]:
        return set(self._in_flight.get(job_id, ()))

    def begin(self, job_id: str, source_row_key: str) -> Optional[int]:
        """
        Register a row as in flight for the job's active run.

        Returns:
            The attempt number for this row, or None if the key is
            already in flight
        """
        in_flight = self._in_flight.setdefault(job_id, set())
        if source_row_key in in_flight:
            return None
        in_flight.add(source_row_key)
        return self._next_attempt.get(job_id, {}).get(source_row_key, 1)

    async def record_success(
        self,
        job_id: str,
        run_id: str,
        source_row_key: str,
        attempt: int,
        identity: Optional[List[str]] = None
    ):
        async with self._lock(job_id):
            await self.store.record_outcome(
                job_id, run_id, source_row_key, attempt, success=True, identity=identity
            )
            self._release(job_id, source_row_key)

    async def record_failure(
        self,
        job_id: str,
        run_id: str,
        source_row_key: str,
        attempt: int,
        stage: FailedStage,
        error_message: str
    ):
        async with self._lock(job_id):
            await self.store.record_outcome(
                job_id,
                run_id,
                source_row_key,
                attempt,
                success=False,
                error_message=error_message,
                failed_stage=stage
            )
            self._release(job_id, source_row_key)
        logger.debug(
            f"Row {source_row_key} of job {job_id} failed at {stage.value} "
            f"(attempt {attempt}): {error_message}"
        )

    def _release(self, job_id: str, source_row_key: str):
        in_flight = self._in_flight.get(job_id)
        if in_flight is not None:
            in_flight.discard(source_row_key)

    def abandon(self, job_id: str, source_row_key: str):
        """Release a row that was registered but never attempted (cancelled run)"""
        self._release(job_id, source_row_key)
