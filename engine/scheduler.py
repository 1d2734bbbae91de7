"""
Job lifecycle and the single-active-job invariant.

At most one job is running at any instant. Jobs submitted while the engine
is busy wait in status queued and start automatically, in submission order,
once the run slot is free. Retry passes queue behind them the same way.
"""

from typing import Any, Dict, List, Optional, Tuple, Union
from datetime import datetime
import asyncio
import uuid
from pydantic import ValidationError as PydanticValidationError
from core.exceptions import JobStateError, ValidationError
from engine.client import ClientFactory
from engine.pipeline import PipelineOptions, PipelineRun
from engine.progress import ProgressSnapshot
from engine.retry import RetryCoordinator
from engine.store import JobStore
from models import JobRun, JobStatus, MigrationJob, RetryEntry, RowOutcome, RowStatus, RunKind
from schemas.mapping import JobSpec, validate_mapping
import logging

logger = logging.getLogger(__name__)


class JobScheduler:
    """
    Owns job lifecycle: submit, run, cancel, retry, recover.

    Attributes:
        store: Local job store
        coordinator: Retry batch bookkeeping shared by every run
        client_factory: Builds the EnvironmentClient for an environment
        options: Pipeline tuning (channel capacity, worker pool, retries)
    """

    def __init__(
        self,
        store: JobStore,
        client_factory: ClientFactory,
        options: Optional[PipelineOptions] = None
    ):
        self.store = store
        self.client_factory = client_factory
        self.options = options or PipelineOptions()
        self.coordinator = RetryCoordinator(store)

        # Single-permit run slot
        self._run_slot = asyncio.Semaphore(1)
        self._pending: "asyncio.Queue[Tuple[str, str, RunKind]]" = asyncio.Queue()
        self._finished: Dict[str, asyncio.Event] = {}
        # Run each queued job is waiting for; stale queue entries are skipped
        self._queued_runs: Dict[str, str] = {}

        self._active: Optional[PipelineRun] = None
        self._active_job_id: Optional[str] = None
        self._active_cancel: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start dispatching queued runs"""
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="job-dispatcher")
            logger.info("Job scheduler started")

    async def shutdown(self):
        """Cancel the active run, wait for it to finalize, stop dispatching"""
        if self._active_cancel is not None:
            logger.info(f"Shutdown: cancelling active job {self._active_job_id}")
            self._active_cancel.set()
            event = self._finished.get(self._active_job_id)
            if event is not None:
                await event.wait()

        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        logger.info("Job scheduler stopped")

    async def recover(self) -> List[str]:
        """
        Restore a consistent state after a restart.

        Jobs left running by a previous process are marked failed (their
        in-flight writes may or may not have landed); queued jobs are put
        back in the queue in their original order.

        Returns:
            Ids of the jobs marked failed
        """
        interrupted = await self.store.fail_interrupted_runs()
        for job_id in interrupted:
            logger.warning(f"Job {job_id} was interrupted by a restart and is marked failed")

        queued = await self.store.queued_jobs()
        for job in queued:
            kind = RunKind.RETRY if (job.run_count or 0) > 0 else RunKind.INITIAL
            self._enqueue(job.id, str(uuid.uuid4()), kind)
        if queued:
            logger.info(f"Re-queued {len(queued)} jobs")

        return interrupted

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def submit(self, spec: Union[JobSpec, Dict[str, Any]]) -> str:
        """
        Create a job and queue its initial run.

        Raises:
            ValidationError: malformed spec, empty mapping or duplicate
                destination field (nothing is created or read)
            EnvironmentNotFoundError: unknown source or destination environment
        """
        if not isinstance(spec, JobSpec):
            try:
                spec = JobSpec(**spec)
            except PydanticValidationError as e:
                raise ValidationError(
                    "Invalid job spec",
                    context={"reason": "invalid_spec", "errors": e.errors()},
                    original_exception=e
                )

        validate_mapping(spec.mapping)

        await self.store.get_environment(spec.source_environment_id)
        await self.store.get_environment(spec.dest_environment_id)

        job = await self.store.create_job(spec)
        self._enqueue(job.id, str(uuid.uuid4()), RunKind.INITIAL)
        logger.info(f"Job {job.id} ({job.name}) submitted with {len(spec.mapping)} mapped fields")
        return job.id

    async def get(self, job_id: str) -> MigrationJob:
        return await self.store.get_job(job_id)

    async def list(self) -> List[MigrationJob]:
        return await self.store.list_jobs()

    async def cancel(self, job_id: str) -> MigrationJob:
        """
        Cancel a running or queued job.

        A running job stops pulling rows and becomes cancelled once its
        in-flight rows are recorded. A queued job is cancelled immediately.

        Raises:
            JobNotFoundError: unknown job
            JobStateError: the job is already terminal
        """
        job = await self.store.get_job(job_id)

        if self._active_job_id == job_id and self._active_cancel is not None:
            logger.info(f"Cancellation requested for running job {job_id}")
            self._active_cancel.set()
            return job

        if job.status == JobStatus.QUEUED:
            job = await self.store.cancel_queued_job(job_id)
            self._queued_runs.pop(job_id, None)
            self._notify_finished(job_id)
            logger.info(f"Queued job {job_id} cancelled")
            return job

        raise JobStateError(
            f"Job {job_id} cannot be cancelled in status {job.status.value}",
            context={"job_id": job_id, "status": job.status.value}
        )

    async def retry_failed(self, job_id: str) -> str:
        """
        Queue a retry run scoped to the job's current retry batch.

        Valid only on a terminal job whose current run recorded failed rows.

        Returns:
            The new run id

        Raises:
            JobNotFoundError: unknown job
            JobStateError: job not terminal, or nothing to retry
        """
        job = await self.store.get_job(job_id)
        context = {"job_id": job_id, "status": job.status.value}

        if not job.status.is_terminal:
            raise JobStateError(
                f"Job {job_id} is {job.status.value}; only finished jobs can be retried",
                context=context
            )

        batch_size = await self.store.retry_batch_size(job_id)
        if (job.failed_row_count or 0) == 0 or batch_size == 0:
            raise JobStateError(f"Job {job_id} has no failed rows to retry", context=context)

        await self.store.queue_job(job_id)
        run_id = str(uuid.uuid4())
        self._enqueue(job_id, run_id, RunKind.RETRY)
        logger.info(f"Retry run {run_id} queued for job {job_id} ({batch_size} rows)")
        return run_id

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> MigrationJob:
        """Wait until the job's pending or active run has finished"""
        event = self._finished.get(job_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout)
        return await self.store.get_job(job_id)

    async def list_runs(self, job_id: str) -> List[JobRun]:
        await self.store.get_job(job_id)
        return await self.store.list_runs(job_id)

    async def list_outcomes(
        self,
        job_id: str,
        status: Optional[RowStatus] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[int, List[RowOutcome]]:
        await self.store.get_job(job_id)
        return await self.store.list_outcomes(job_id, status=status, limit=limit, offset=offset)

    async def retry_batch(self, job_id: str) -> List[RetryEntry]:
        await self.store.get_job(job_id)
        return await self.store.retry_batch(job_id)

    async def environment_names(self) -> Dict[str, str]:
        return await self.store.environment_names()

    @property
    def active_job_id(self) -> Optional[str]:
        return self._active_job_id

    @property
    def queued_count(self) -> int:
        return len(self._queued_runs)

    def progress(self, job_id: str) -> Optional[ProgressSnapshot]:
        """In-memory counters of the job's active run, if it is running"""
        if self._active is not None and self._active.job_id == job_id:
            return self._active.tracker.snapshot()
        return None

    # ------------------------------------------------------------------
    # Dispatching
    # ------------------------------------------------------------------

    def _enqueue(self, job_id: str, run_id: str, kind: RunKind):
        self._finished[job_id] = asyncio.Event()
        self._queued_runs[job_id] = run_id
        self._pending.put_nowait((job_id, run_id, kind))

    def _notify_finished(self, job_id: str):
        event = self._finished.pop(job_id, None)
        if event is not None:
            event.set()

    async def _dispatch_loop(self):
        while True:
            job_id, run_id, kind = await self._pending.get()
            async with self._run_slot:
                await self._run(job_id, run_id, kind)

    async def _run(self, job_id: str, run_id: str, kind: RunKind):
        if self._queued_runs.get(job_id) != run_id:
            logger.debug(f"Skipping stale queue entry {run_id} of job {job_id}")
            return
        del self._queued_runs[job_id]

        self._active_job_id = job_id
        self._active_cancel = asyncio.Event()
        started = datetime.utcnow()

        try:
            job = await self.store.get_job(job_id)
            if job.status != JobStatus.QUEUED:
                logger.info(f"Skipping job {job_id}: status is {job.status.value}")
                return

            self._active = PipelineRun(
                job,
                run_id,
                kind,
                self.store,
                self.coordinator,
                self.client_factory,
                options=self.options,
                cancel_event=self._active_cancel
            )
            status = await self._active.execute()
            elapsed = (datetime.utcnow() - started).total_seconds()
            logger.info(f"Job {job_id} finished as {status.value} in {elapsed:.1f}s")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Scheduler: run {run_id} of job {job_id} failed - {e}")

        finally:
            self._active = None
            self._active_job_id = None
            self._active_cancel = None
            self._notify_finished(job_id)
