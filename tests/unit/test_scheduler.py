import pytest
from core.exceptions import (
    EnvironmentNotFoundError,
    JobNotFoundError,
    JobStateError,
    ValidationError,
)
from engine.scheduler import JobScheduler
from models import JobStatus


@pytest.fixture
def idle_scheduler(store, client_factory, pipeline_options):
    """Scheduler that accepts jobs but never dispatches them"""
    return JobScheduler(store, client_factory, options=pipeline_options)


@pytest.mark.asyncio
async def test_submit_queues_job(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)

    job = await idle_scheduler.get(job_id)
    assert job.status == JobStatus.QUEUED
    assert job.processed_rows == 0
    assert job.total_rows is None
    assert job.mapping[2]["transform_kind"] == "lower"
    assert idle_scheduler.queued_count == 1


@pytest.mark.asyncio
async def test_submit_duplicate_destination_rejected(idle_scheduler, environments, job_spec, source_client):
    job_spec["mapping"].append({"source_field": "Email", "dest_field": "Name"})

    with pytest.raises(ValidationError):
        await idle_scheduler.submit(job_spec)

    assert await idle_scheduler.list() == []
    assert idle_scheduler.queued_count == 0
    assert source_client.page_calls == 0


@pytest.mark.asyncio
async def test_submit_empty_mapping_rejected(idle_scheduler, environments, job_spec):
    job_spec["mapping"] = []

    with pytest.raises(ValidationError):
        await idle_scheduler.submit(job_spec)


@pytest.mark.asyncio
async def test_submit_malformed_spec_rejected(idle_scheduler, environments, job_spec):
    job_spec["mapping"][0]["transform_kind"] = "eval"

    with pytest.raises(ValidationError) as exc_info:
        await idle_scheduler.submit(job_spec)

    assert exc_info.value.context["reason"] == "invalid_spec"


@pytest.mark.asyncio
async def test_submit_unknown_environment_rejected(idle_scheduler, environments, job_spec):
    job_spec["dest_environment_id"] = "missing"

    with pytest.raises(EnvironmentNotFoundError):
        await idle_scheduler.submit(job_spec)

    assert await idle_scheduler.list() == []


@pytest.mark.asyncio
async def test_cancel_queued_job(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)

    job = await idle_scheduler.cancel(job_id)

    assert job.status == JobStatus.CANCELLED
    assert job.processed_rows == 0
    # wait() returns once the job is finished
    assert (await idle_scheduler.wait(job_id, timeout=1)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_terminal_job_rejected(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)
    await idle_scheduler.cancel(job_id)

    with pytest.raises(JobStateError):
        await idle_scheduler.cancel(job_id)


@pytest.mark.asyncio
async def test_retry_requires_finished_job(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)

    with pytest.raises(JobStateError):
        await idle_scheduler.retry_failed(job_id)


@pytest.mark.asyncio
async def test_retry_without_failed_rows_rejected(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)
    await idle_scheduler.cancel(job_id)

    with pytest.raises(JobStateError):
        await idle_scheduler.retry_failed(job_id)


@pytest.mark.asyncio
async def test_unknown_job(idle_scheduler):
    with pytest.raises(JobNotFoundError):
        await idle_scheduler.get("nope")

    with pytest.raises(JobNotFoundError):
        await idle_scheduler.cancel("nope")

    with pytest.raises(JobNotFoundError):
        await idle_scheduler.retry_failed("nope")


@pytest.mark.asyncio
async def test_no_progress_for_idle_job(idle_scheduler, environments, job_spec):
    job_id = await idle_scheduler.submit(job_spec)

    assert idle_scheduler.progress(job_id) is None
    assert idle_scheduler.active_job_id is None
