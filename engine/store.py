"""
Local job store: durable job, run and row-outcome state.

Every row outcome is written in its own transaction together with the
retry-batch change and the job/run counter increments, so a crash leaves
accurate counters and a reconstructable retry batch behind.

Writes are serialized through one lock; SQLite allows a single writer.
"""

from typing import Any, Dict, List, Optional, Tuple
from datetime import datetime
from sqlalchemy import select, update, delete, func, case
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from models import (
    Environment,
    MigrationJob,
    JobRun,
    RowOutcome,
    RetryEntry,
    JobStatus,
    RunKind,
    RowStatus,
    FailedStage,
)
from core.exceptions import (
    EnvironmentNotFoundError,
    JobNotFoundError,
    StoreError,
)
from schemas.mapping import JobSpec
import asyncio
import logging
import uuid

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "interrupted"


class JobStore:
    """
    Persistence for environments, jobs, runs, row outcomes and retry batches.

    Attributes:
        session_maker: async_sessionmaker bound to the local store engine
    """

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Environments
    # ------------------------------------------------------------------

    async def add_environment(
        self,
        name: str,
        base_url: str,
        username: str,
        has_password: bool = False,
        environment_id: Optional[str] = None,
        query_concurrency: int = 5,
        insert_concurrency: int = 50
    ) -> Environment:
        environment = Environment(
            id=environment_id or str(uuid.uuid4()),
            name=name,
            base_url=base_url,
            username=username,
            has_password=has_password,
            query_concurrency=query_concurrency,
            insert_concurrency=insert_concurrency,
            created_at=datetime.utcnow()
        )
        async with self._write_lock, self.session_maker() as session:
            session.add(environment)
            await self._commit(session, "add_environment")
        return environment

    async def get_environment(self, environment_id: str) -> Environment:
        async with self.session_maker() as session:
            environment = await session.get(Environment, environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(environment_id)
        return environment

    async def environment_names(self) -> Dict[str, str]:
        async with self.session_maker() as session:
            result = await session.execute(select(Environment.id, Environment.name))
            return {row.id: row.name for row in result}

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def create_job(self, spec: JobSpec) -> MigrationJob:
        """Persist a new job in status queued"""
        now = datetime.utcnow()
        job = MigrationJob(
            id=str(uuid.uuid4()),
            name=spec.name,
            status=JobStatus.QUEUED,
            source_environment_id=spec.source_environment_id,
            dest_environment_id=spec.dest_environment_id,
            source_entity=spec.source_entity,
            dest_entity=spec.dest_entity,
            source_key_field=spec.source_key_field,
            mapping=[self._mapping_entry(entry) for entry in spec.mapping],
            total_rows=None,
            processed_rows=0,
            successful_rows=0,
            failed_row_count=0,
            run_count=0,
            created_at=now,
            queued_at=now
        )
        async with self._write_lock, self.session_maker() as session:
            session.add(job)
            await self._commit(session, "create_job", job_id=job.id)
        return job

    @staticmethod
    def _mapping_entry(entry) -> Dict[str, Any]:
        data = entry.model_dump()
        data["transform_kind"] = entry.transform_kind.value
        return data

    async def get_job(self, job_id: str) -> MigrationJob:
        async with self.session_maker() as session:
            job = await session.get(MigrationJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def list_jobs(self) -> List[MigrationJob]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(MigrationJob).order_by(MigrationJob.created_at.desc(), MigrationJob.id)
            )
            return list(result.scalars().all())

    async def queued_jobs(self) -> List[MigrationJob]:
        """Queued jobs in FIFO order"""
        async with self.session_maker() as session:
            result = await session.execute(
                select(MigrationJob)
                .where(MigrationJob.status == JobStatus.QUEUED)
                .order_by(MigrationJob.queued_at, MigrationJob.created_at)
            )
            return list(result.scalars().all())

    async def queue_job(self, job_id: str) -> MigrationJob:
        """Put a terminal job back in the queue for a retry run"""
        async with self._write_lock, self.session_maker() as session:
            job = await self._load_job(session, job_id)
            job.status = JobStatus.QUEUED
            job.queued_at = datetime.utcnow()
            await self._commit(session, "queue_job", job_id=job_id)
        return job

    async def cancel_queued_job(self, job_id: str) -> MigrationJob:
        async with self._write_lock, self.session_maker() as session:
            job = await self._load_job(session, job_id)
            job.status = JobStatus.CANCELLED
            job.completed_at = datetime.utcnow()
            await self._commit(session, "cancel_queued_job", job_id=job_id)
        return job

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def start_run(
        self,
        job_id: str,
        run_id: str,
        kind: RunKind,
        total_rows: Optional[int] = None
    ) -> JobRun:
        """
        Transition the job to running and open a run record.

        The job's counters are reset: they describe the new run from here on.
        """
        now = datetime.utcnow()
        async with self._write_lock, self.session_maker() as session:
            job = await self._load_job(session, job_id)
            job.status = JobStatus.RUNNING
            job.current_run_id = run_id
            job.run_count = (job.run_count or 0) + 1
            job.total_rows = total_rows
            job.processed_rows = 0
            job.successful_rows = 0
            job.failed_row_count = 0
            job.started_at = now
            job.completed_at = None
            job.error_message = None

            run = JobRun(
                run_id=run_id,
                job_id=job_id,
                kind=kind,
                status=JobStatus.RUNNING,
                total_rows=total_rows,
                processed_rows=0,
                successful_rows=0,
                failed_row_count=0,
                created_at=now,
                started_at=now
            )
            session.add(run)
            await self._commit(session, "start_run", job_id=job_id)
            await session.refresh(run)
        return run

    async def set_total_rows(self, job_id: str, run_id: str, total_rows: int):
        async with self._write_lock, self.session_maker() as session:
            # Never below what has already been processed
            await session.execute(
                update(MigrationJob)
                .where(MigrationJob.id == job_id, MigrationJob.current_run_id == run_id)
                .values(total_rows=func.max(total_rows, MigrationJob.processed_rows))
            )
            await session.execute(
                update(JobRun)
                .where(JobRun.run_id == run_id)
                .values(total_rows=func.max(total_rows, JobRun.processed_rows))
            )
            await self._commit(session, "set_total_rows", job_id=job_id)

    async def finish_run(
        self,
        job_id: str,
        run_id: str,
        status: JobStatus,
        error_message: Optional[str] = None
    ) -> MigrationJob:
        """Record the terminal status of a run and its job"""
        now = datetime.utcnow()
        async with self._write_lock, self.session_maker() as session:
            job = await self._load_job(session, job_id)
            run = await self._load_run(session, run_id)

            run.status = status
            run.completed_at = now
            if run.started_at:
                run.duration_seconds = (now - run.started_at).total_seconds()
            run.error_message = error_message

            if job.current_run_id == run_id:
                job.status = status
                job.completed_at = now
                job.error_message = error_message
                # A finished sequence has a known length
                if job.total_rows is None and status in (
                    JobStatus.COMPLETED, JobStatus.COMPLETED_WITH_ERRORS
                ):
                    job.total_rows = job.processed_rows
                    run.total_rows = run.processed_rows

            await self._commit(session, "finish_run", job_id=job_id)
        return job

    async def list_runs(self, job_id: str) -> List[JobRun]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(JobRun).where(JobRun.job_id == job_id).order_by(JobRun.created_at, JobRun.id)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Row outcomes and retry batch
    # ------------------------------------------------------------------

    async def record_outcome(
        self,
        job_id: str,
        run_id: str,
        source_row_key: str,
        attempt: int,
        success: bool,
        error_message: Optional[str] = None,
        failed_stage: Optional[FailedStage] = None,
        identity: Optional[List[str]] = None
    ) -> RowOutcome:
        """
        Write one row outcome.

        In one transaction: append the outcome, add/update/remove the key
        in the retry batch, and advance the job and run counters. identity
        holds the destination identity values of a successful write.
        """
        now = datetime.utcnow()
        outcome = RowOutcome(
            job_id=job_id,
            run_id=run_id,
            source_row_key=source_row_key,
            attempt=attempt,
            status=RowStatus.SUCCESS if success else RowStatus.FAILED,
            error_message=None if success else (error_message or "Unknown error"),
            failed_stage=None if success else (failed_stage or FailedStage.LOAD),
            identity=list(identity) if success and identity else None,
            created_at=now
        )

        async with self._write_lock, self.session_maker() as session:
            session.add(outcome)

            if success:
                await session.execute(
                    delete(RetryEntry).where(
                        RetryEntry.job_id == job_id,
                        RetryEntry.source_row_key == source_row_key
                    )
                )
            else:
                stmt = insert(RetryEntry).values(
                    job_id=job_id,
                    source_row_key=source_row_key,
                    attempt=attempt,
                    failed_stage=outcome.failed_stage,
                    error_message=outcome.error_message,
                    created_at=now,
                    updated_at=now
                )
                stmt = stmt.on_conflict_do_update(
                    index_elements=["job_id", "source_row_key"],
                    set_={
                        "attempt": stmt.excluded.attempt,
                        "failed_stage": stmt.excluded.failed_stage,
                        "error_message": stmt.excluded.error_message,
                        "updated_at": stmt.excluded.updated_at,
                    }
                )
                await session.execute(stmt)

            await session.execute(
                update(MigrationJob)
                .where(MigrationJob.id == job_id, MigrationJob.current_run_id == run_id)
                .values(**self._counter_increments(MigrationJob, success))
            )
            await session.execute(
                update(JobRun)
                .where(JobRun.run_id == run_id)
                .values(**self._counter_increments(JobRun, success))
            )
            await self._commit(session, "record_outcome", job_id=job_id)
        return outcome

    @staticmethod
    def _counter_increments(model, success: bool) -> Dict[str, Any]:
        processed = model.processed_rows + 1
        values = {
            "processed_rows": processed,
            # The source may hold more rows than it reported
            "total_rows": case(
                (model.total_rows < processed, processed),
                else_=model.total_rows
            ),
        }
        if success:
            values["successful_rows"] = model.successful_rows + 1
        else:
            values["failed_row_count"] = model.failed_row_count + 1
        return values

    async def list_outcomes(
        self,
        job_id: str,
        status: Optional[RowStatus] = None,
        run_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0
    ) -> Tuple[int, List[RowOutcome]]:
        """Row-level log page and total count"""
        conditions = [RowOutcome.job_id == job_id]
        if status is not None:
            conditions.append(RowOutcome.status == status)
        if run_id is not None:
            conditions.append(RowOutcome.run_id == run_id)

        async with self.session_maker() as session:
            total = await session.scalar(select(func.count(RowOutcome.id)).where(*conditions))
            result = await session.execute(
                select(RowOutcome)
                .where(*conditions)
                .order_by(RowOutcome.id)
                .limit(limit)
                .offset(offset)
            )
            return total or 0, list(result.scalars().all())

    async def retry_batch(self, job_id: str) -> List[RetryEntry]:
        """Current retry batch, in the order rows first failed"""
        async with self.session_maker() as session:
            result = await session.execute(
                select(RetryEntry)
                .where(RetryEntry.job_id == job_id)
                .order_by(RetryEntry.created_at, RetryEntry.id)
            )
            return list(result.scalars().all())

    async def retry_batch_size(self, job_id: str) -> int:
        async with self.session_maker() as session:
            count = await session.scalar(
                select(func.count(RetryEntry.id)).where(RetryEntry.job_id == job_id)
            )
            return count or 0

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def fail_interrupted_runs(self) -> List[str]:
        """
        Mark every job and run left in status running as failed.

        Job counters are recomputed from the persisted outcomes of the
        interrupted run. Returns the affected job ids.
        """
        now = datetime.utcnow()
        job_ids: List[str] = []

        async with self._write_lock, self.session_maker() as session:
            runs = (await session.execute(
                select(JobRun).where(JobRun.status == JobStatus.RUNNING)
            )).scalars().all()
            for run in runs:
                counts = await self._count_outcomes(session, run.run_id)
                run.processed_rows = counts[RowStatus.SUCCESS] + counts[RowStatus.FAILED]
                run.successful_rows = counts[RowStatus.SUCCESS]
                run.failed_row_count = counts[RowStatus.FAILED]
                run.status = JobStatus.FAILED
                run.error_message = INTERRUPTED_MESSAGE
                run.completed_at = now
                if run.started_at:
                    run.duration_seconds = (now - run.started_at).total_seconds()

            jobs = (await session.execute(
                select(MigrationJob).where(MigrationJob.status == JobStatus.RUNNING)
            )).scalars().all()
            for job in jobs:
                if job.current_run_id:
                    counts = await self._count_outcomes(session, job.current_run_id)
                    job.successful_rows = counts[RowStatus.SUCCESS]
                    job.failed_row_count = counts[RowStatus.FAILED]
                    job.processed_rows = job.successful_rows + job.failed_row_count
                    if job.total_rows is not None and job.total_rows < job.processed_rows:
                        job.total_rows = job.processed_rows
                job.status = JobStatus.FAILED
                job.error_message = INTERRUPTED_MESSAGE
                job.completed_at = now
                job_ids.append(job.id)

            await self._commit(session, "fail_interrupted_runs")

        return job_ids

    @staticmethod
    async def _count_outcomes(session, run_id: str) -> Dict[RowStatus, int]:
        result = await session.execute(
            select(RowOutcome.status, func.count(RowOutcome.id))
            .where(RowOutcome.run_id == run_id)
            .group_by(RowOutcome.status)
        )
        counts = {RowStatus.SUCCESS: 0, RowStatus.FAILED: 0}
        for status, count in result:
            counts[RowStatus(status)] = count
        return counts

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    async def _load_job(session, job_id: str) -> MigrationJob:
        job = await session.get(MigrationJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    async def _load_run(session, run_id: str) -> JobRun:
        result = await session.execute(select(JobRun).where(JobRun.run_id == run_id))
        run = result.scalar_one_or_none()
        if run is None:
            raise StoreError(f"Run not found: {run_id}", context={"run_id": run_id})
        return run

    @staticmethod
    async def _commit(session, operation: str, job_id: Optional[str] = None):
        try:
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise StoreError(
                f"Local store write failed during {operation}",
                context={"operation": operation, "job_id": job_id},
                original_exception=e
            )
