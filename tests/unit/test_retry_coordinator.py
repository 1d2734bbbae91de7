"""
Unit tests for retry batch bookkeeping
"""

import pytest
import uuid
from models import JobStatus, RowStatus, RunKind, FailedStage
from engine.retry import RetryCoordinator
from schemas.mapping import JobSpec


@pytest.fixture
def coordinator(store):
    return RetryCoordinator(store)


async def start_job(store, job_spec, kind=RunKind.INITIAL, job_id=None):
    if job_id is None:
        job = await store.create_job(JobSpec(**job_spec))
        job_id = job.id
    run_id = str(uuid.uuid4())
    await store.start_run(job_id, run_id, kind)
    return job_id, run_id


class TestRetryCoordinator:
    """Test batch membership and attempt numbering"""

    @pytest.mark.asyncio
    async def test_failure_adds_and_success_removes(self, store, environments, coordinator, job_spec):
        job_id, run_id = await start_job(store, job_spec)
        await coordinator.open_run(job_id, retry=False)

        for key in ("1", "2", "3"):
            assert coordinator.begin(job_id, key) == 1
        await coordinator.record_failure(job_id, run_id, "1", 1, FailedStage.LOAD, "rejected")
        await coordinator.record_failure(job_id, run_id, "2", 1, FailedStage.TRANSFORM, "bad value")
        await coordinator.record_success(job_id, run_id, "3", 1)

        assert await coordinator.batch_keys(job_id) == ["1", "2"]
        assert coordinator.in_flight(job_id) == set()

        job = await store.get_job(job_id)
        assert job.processed_rows == 3
        assert job.successful_rows == 1
        assert job.failed_row_count == 2

    @pytest.mark.asyncio
    async def test_retry_run_scope_and_attempts(self, store, environments, coordinator, job_spec):
        job_id, run_id = await start_job(store, job_spec)
        await coordinator.open_run(job_id, retry=False)
        coordinator.begin(job_id, "7")
        await coordinator.record_failure(job_id, run_id, "7", 1, FailedStage.LOAD, "timeout")
        coordinator.close_run(job_id)
        await store.finish_run(job_id, run_id, JobStatus.COMPLETED_WITH_ERRORS)

        _, retry_run_id = await start_job(store, job_spec, kind=RunKind.RETRY, job_id=job_id)
        scope = await coordinator.open_run(job_id, retry=True)

        assert scope == {"7"}
        assert coordinator.begin(job_id, "7") == 2

        await coordinator.record_failure(job_id, retry_run_id, "7", 2, FailedStage.LOAD, "timeout again")

        batch = await store.retry_batch(job_id)
        assert len(batch) == 1
        assert batch[0].attempt == 2
        assert batch[0].error_message == "timeout again"

        total, outcomes = await store.list_outcomes(job_id, status=RowStatus.FAILED)
        assert total == 2
        assert [o.attempt for o in outcomes] == [1, 2]

    @pytest.mark.asyncio
    async def test_key_in_flight_is_refused(self, store, environments, coordinator, job_spec):
        job_id, run_id = await start_job(store, job_spec)
        await coordinator.open_run(job_id, retry=False)

        assert coordinator.begin(job_id, "1") == 1
        assert coordinator.begin(job_id, "1") is None

        await coordinator.record_success(job_id, run_id, "1", 1)

        assert coordinator.begin(job_id, "1") == 1

    @pytest.mark.asyncio
    async def test_initial_run_has_no_scope(self, store, environments, coordinator, job_spec):
        job_id, _ = await start_job(store, job_spec)

        assert await coordinator.open_run(job_id, retry=False) is None

    @pytest.mark.asyncio
    async def test_abandon_releases_key(self, coordinator):
        coordinator.begin("job", "1")

        coordinator.abandon("job", "1")

        assert coordinator.in_flight("job") == set()
