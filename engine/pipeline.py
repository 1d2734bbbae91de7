"""
One pipeline run: Extract → Transform → Load over bounded channels.

Stages run concurrently:
- extraction pulls pages and feeds raw rows into the first channel
- the transform stage applies the mapping and feeds the second channel
  (mapping failures are recorded right away, at stage "transform")
- a fixed pool of load workers writes rows to the destination

A full channel blocks the stage feeding it, so a slow destination
throttles extraction without any separate rate limiter.

Cancellation is cooperative: once the cancel event is set no new page is
requested and no queued row is started; rows already being written finish
and are recorded.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set
import asyncio
from core.config import settings
from core.exceptions import MigrationException, SequenceError, TransformError
from engine.client import ClientFactory, EnvironmentClient
from engine.extractor import RowExtractor, SourceRow
from engine.loader import RowLoader
from engine.progress import ProgressTracker
from engine.retry import RetryCoordinator
from engine.store import JobStore
from engine.transformer import transform_row
from models import MigrationJob, JobStatus, RunKind, FailedStage
from schemas.mapping import MappingEntry
import logging

logger = logging.getLogger(__name__)

# End-of-stream marker on the channels
_DONE = object()


@dataclass
class PipelineOptions:
    """Tuning knobs of a pipeline run (defaults from settings)"""
    channel_capacity: int = field(default_factory=lambda: settings.CHANNEL_CAPACITY)
    loader_concurrency: int = field(default_factory=lambda: settings.LOADER_CONCURRENCY)
    page_size: int = field(default_factory=lambda: settings.PAGE_SIZE)
    page_max_attempts: int = field(default_factory=lambda: settings.PAGE_MAX_ATTEMPTS)
    page_retry_delay: float = field(default_factory=lambda: settings.PAGE_RETRY_DELAY)
    load_max_attempts: int = field(default_factory=lambda: settings.LOAD_MAX_ATTEMPTS)
    load_retry_delay: float = field(default_factory=lambda: settings.LOAD_RETRY_DELAY)


class PipelineRun:
    """
    Execute one run of a migration job.

    Responsibilities:
    - Open the run (job → running, counters reset)
    - Wire RowExtractor → transform_row → RowLoader through bounded queues
    - Record every row outcome through the RetryCoordinator, then count it
    - Finalize the run status
    """

    def __init__(
        self,
        job: MigrationJob,
        run_id: str,
        kind: RunKind,
        store: JobStore,
        coordinator: RetryCoordinator,
        client_factory: ClientFactory,
        options: Optional[PipelineOptions] = None,
        cancel_event: Optional[asyncio.Event] = None
    ):
        self.job = job
        self.job_id = job.id
        self.run_id = run_id
        self.kind = kind
        self.store = store
        self.coordinator = coordinator
        self.client_factory = client_factory
        self.options = options or PipelineOptions()
        self.cancel_event = cancel_event or asyncio.Event()
        self.tracker = ProgressTracker()

        self.sequence_error: Optional[SequenceError] = None
        self._clients: List[EnvironmentClient] = []

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self):
        self.cancel_event.set()

    async def execute(self) -> JobStatus:
        """
        Run the pipeline to a terminal status.

        Returns:
            completed / completed_with_errors when the sequence is exhausted,
            cancelled when the cancel event was set, failed when extraction
            could not proceed or the run could not begin
        """
        key_scope = await self.coordinator.open_run(self.job_id, retry=self.kind == RunKind.RETRY)
        total_rows = len(key_scope) if key_scope is not None else None

        await self.store.start_run(self.job_id, self.run_id, self.kind, total_rows=total_rows)
        self.tracker.set_total(total_rows)
        self.tracker.start()
        logger.info(
            f"Starting {self.kind.value} run {self.run_id} for job {self.job_id} "
            f"({self.job.source_entity} → {self.job.dest_entity})"
        )

        try:
            await self._run_stages(key_scope)
            status, error_message = self._final_status()

        except MigrationException as e:
            logger.error(f"Run {self.run_id} of job {self.job_id} failed: {e.message}",
                         extra={"error_context": e.to_dict()})
            status, error_message = JobStatus.FAILED, e.message

        except Exception as e:
            logger.exception(f"Unexpected error in run {self.run_id} of job {self.job_id}")
            status, error_message = JobStatus.FAILED, f"{type(e).__name__}: {e}"

        finally:
            self.tracker.finish()
            self.coordinator.close_run(self.job_id)
            await self._close_clients()

        await self.store.finish_run(self.job_id, self.run_id, status, error_message=error_message)

        snapshot = self.tracker.snapshot()
        logger.info(
            f"Run {self.run_id} of job {self.job_id} finished: {status.value} - "
            f"Processed: {snapshot.processed_rows}, Succeeded: {snapshot.successful_rows}, "
            f"Failed: {snapshot.failed_row_count}"
        )
        return status

    def _final_status(self):
        if self.sequence_error is not None:
            return JobStatus.FAILED, self.sequence_error.message
        if self.cancelled:
            return JobStatus.CANCELLED, None
        if self.tracker.failed_row_count == 0:
            return JobStatus.COMPLETED, None
        return JobStatus.COMPLETED_WITH_ERRORS, None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _open_clients(self):
        source_env = await self.store.get_environment(self.job.source_environment_id)
        dest_env = await self.store.get_environment(self.job.dest_environment_id)

        source_client = await self.client_factory(source_env)
        self._clients.append(source_client)
        if dest_env.id == source_env.id:
            dest_client = source_client
        else:
            dest_client = await self.client_factory(dest_env)
            self._clients.append(dest_client)

        concurrency = max(1, min(self.options.loader_concurrency, dest_env.insert_concurrency or 1))
        return source_client, dest_client, concurrency

    async def _close_clients(self):
        for client in self._clients:
            try:
                await client.aclose()
            except Exception as e:
                logger.warning(f"Failed to close environment client: {e}")
        self._clients = []

    async def _run_stages(self, key_scope: Optional[Set[str]]):
        source_client, dest_client, concurrency = await self._open_clients()
        mapping = [MappingEntry(**entry) for entry in self.job.mapping]

        extractor = RowExtractor(
            source_client,
            self.job.source_environment_id,
            self.job.source_entity,
            key_field=self.job.source_key_field,
            key_filter=key_scope,
            page_size=self.options.page_size,
            max_attempts=self.options.page_max_attempts,
            retry_delay=self.options.page_retry_delay,
            on_total=self._report_total,
            should_stop=lambda: self.cancelled
        )
        loader = RowLoader(
            dest_client,
            self.job.dest_environment_id,
            self.job.dest_entity,
            max_attempts=self.options.load_max_attempts,
            retry_delay=self.options.load_retry_delay
        )

        raw_rows: asyncio.Queue = asyncio.Queue(maxsize=self.options.channel_capacity)
        load_rows: asyncio.Queue = asyncio.Queue(maxsize=self.options.channel_capacity)

        tasks = [
            asyncio.create_task(self._extract_stage(extractor, raw_rows), name=f"extract-{self.run_id}"),
            asyncio.create_task(
                self._transform_stage(mapping, raw_rows, load_rows, concurrency),
                name=f"transform-{self.run_id}"
            ),
        ]
        tasks += [
            asyncio.create_task(self._load_worker(loader, load_rows), name=f"load-{self.run_id}-{i}")
            for i in range(concurrency)
        ]

        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                raise task.exception()

    async def _report_total(self, total_rows: int):
        self.tracker.set_total(total_rows)
        await self.store.set_total_rows(self.job_id, self.run_id, total_rows)
        logger.info(f"Job {self.job_id}: source reports {total_rows} rows")

    async def _extract_stage(self, extractor: RowExtractor, out: asyncio.Queue):
        try:
            async for row in extractor:
                if self.cancelled:
                    break
                await out.put(row)
            else:
                # Retry scope rows the source no longer returns
                for key in sorted(extractor.unmatched_keys):
                    if self.cancelled:
                        break
                    await out.put(SourceRow(
                        key=key,
                        data={},
                        position=-1,
                        error="Row not found in source"
                    ))
        except SequenceError as e:
            logger.error(f"Extraction aborted for job {self.job_id}: {e.message}")
            self.sequence_error = e

        logger.info(
            f"Job {self.job_id}: read {extractor.rows_read} rows of {self.job.source_entity} "
            f"in {extractor.pages_fetched} pages"
        )
        await out.put(_DONE)

    async def _transform_stage(
        self,
        mapping: List[MappingEntry],
        source: asyncio.Queue,
        out: asyncio.Queue,
        worker_count: int
    ):
        while True:
            row = await source.get()
            if row is _DONE:
                break
            if self.cancelled:
                continue

            attempt = self.coordinator.begin(self.job_id, row.key)
            if attempt is None:
                logger.warning(f"Row {row.key} of job {self.job_id} is already in flight, skipped")
                continue

            if row.error:
                await self._record(row.key, attempt, False, FailedStage.EXTRACT, row.error)
                continue

            try:
                transformed = transform_row(row.data, mapping)
            except TransformError as e:
                await self._record(row.key, attempt, False, FailedStage.TRANSFORM, e.message)
                continue
            except Exception as e:
                # A bad value in one row fails that row only
                logger.error(f"Unexpected error transforming row {row.key} of job {self.job_id}: {e}")
                await self._record(
                    row.key, attempt, False, FailedStage.TRANSFORM, f"{type(e).__name__}: {e}"
                )
                continue

            await out.put((row.key, attempt, transformed))

        # One end marker per load worker
        for _ in range(worker_count):
            await out.put(_DONE)

    async def _load_worker(self, loader: RowLoader, source: asyncio.Queue):
        while True:
            item = await source.get()
            if item is _DONE:
                return
            key, attempt, row = item
            if self.cancelled:
                self.coordinator.abandon(self.job_id, key)
                continue

            result = await loader.write(row, row_key=key)
            if result.success:
                await self._record(key, attempt, True, identity=result.identity)
            else:
                await self._record(key, attempt, False, FailedStage.LOAD, result.error_message)

    async def _record(
        self,
        key: str,
        attempt: int,
        success: bool,
        stage: Optional[FailedStage] = None,
        error_message: Optional[str] = None,
        identity: Optional[List[str]] = None
    ):
        """Persist the outcome first, then advance the in-memory counters"""
        if success:
            await self.coordinator.record_success(
                self.job_id, self.run_id, key, attempt, identity=identity
            )
        else:
            await self.coordinator.record_failure(
                self.job_id, self.run_id, key, attempt, stage, error_message or "Unknown error"
            )
        await self.tracker.record(success)
