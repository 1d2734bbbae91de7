"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
import asyncio
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional
from core.database import create_engine, create_session_maker, init_models
from engine.client import KeyFilter, Page, WriteReceipt
from engine.pipeline import PipelineOptions
from engine.scheduler import JobScheduler
from engine.store import JobStore


class FakeEnvironmentClient:
    """
    In-memory EnvironmentClient.

    - rows: the source entity, paged by offset
    - fail_when(row) -> exception to raise for a write, or None
    - page_errors: exceptions raised by the next page requests, in order
    - block_after: writes beyond this many calls wait until release()
    """

    def __init__(
        self,
        rows: Optional[List[Dict[str, Any]]] = None,
        report_total: bool = True,
        fail_when: Optional[Callable[[Dict[str, Any]], Optional[Exception]]] = None,
        block_after: Optional[int] = None
    ):
        self.rows = list(rows or [])
        self.report_total = report_total
        self.fail_when = fail_when
        self.page_errors: List[Exception] = []
        self.block_after = block_after
        self.gate = asyncio.Event()

        self.page_calls = 0
        self.key_filters: List[Optional[KeyFilter]] = []
        self.write_calls = 0
        self.written: List[Dict[str, Any]] = []
        self.closed = False

    def release(self):
        self.gate.set()

    async def list_entity_fields(self, entity: str):
        return sorted({k for row in self.rows for k in row})

    async def page_entity_rows(self, entity, page_token, key_filter=None, page_size=500) -> Page:
        self.page_calls += 1
        self.key_filters.append(key_filter)
        if self.page_errors:
            raise self.page_errors.pop(0)

        offset = int(page_token or 0)
        chunk = self.rows[offset:offset + page_size]
        next_offset = offset + len(chunk)
        return Page(
            rows=[dict(row) for row in chunk],
            next_page_token=str(next_offset) if next_offset < len(self.rows) else None,
            total_count=len(self.rows) if self.report_total else None
        )

    async def write_entity_row(self, entity, row) -> WriteReceipt:
        self.write_calls += 1
        if self.block_after is not None and self.write_calls > self.block_after:
            await self.gate.wait()

        if self.fail_when is not None:
            error = self.fail_when(row)
            if error is not None:
                raise error

        self.written.append(dict(row))
        return WriteReceipt(identity=[str(len(self.written))])

    async def aclose(self):
        self.closed = True


def make_rows(count: int) -> List[Dict[str, Any]]:
    return [{"Id": i, "Name": f"Row {i}", "Email": f"ROW{i}@EXAMPLE.COM"} for i in range(count)]


@pytest.fixture
def rows_factory():
    """Build `count` source rows with Id, Name and Email columns"""
    return make_rows


@pytest.fixture
def client_class():
    return FakeEnvironmentClient


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Local store engine on a fresh SQLite file"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'migrations.db'}")
    await init_models(engine)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def store(test_engine) -> AsyncGenerator[JobStore, None]:
    yield JobStore(create_session_maker(test_engine))


@pytest_asyncio.fixture(scope="function")
async def environments(store):
    """Source and destination environments"""
    source = await store.add_environment(
        name="Production", base_url="https://prod.example.com", username="admin",
        has_password=True, environment_id="src"
    )
    dest = await store.add_environment(
        name="Staging", base_url="https://staging.example.com", username="admin",
        has_password=True, environment_id="dst"
    )
    return source, dest


@pytest.fixture
def source_client(rows_factory):
    return FakeEnvironmentClient(rows=rows_factory(200))


@pytest.fixture
def dest_client():
    return FakeEnvironmentClient()


@pytest.fixture
def pipeline_options():
    """Small channels, no backoff sleeps"""
    return PipelineOptions(
        channel_capacity=10,
        loader_concurrency=4,
        page_size=50,
        page_max_attempts=3,
        page_retry_delay=0,
        load_max_attempts=3,
        load_retry_delay=0,
    )


@pytest.fixture
def client_factory(source_client, dest_client):
    clients = {"src": source_client, "dst": dest_client}

    async def factory(environment):
        return clients[environment.id]

    return factory


@pytest_asyncio.fixture(scope="function")
async def scheduler(store, environments, client_factory, pipeline_options, source_client, dest_client):
    """Started scheduler; runs are released and stopped on teardown"""
    job_scheduler = JobScheduler(store, client_factory, options=pipeline_options)
    job_scheduler.start()

    yield job_scheduler

    source_client.release()
    dest_client.release()
    await job_scheduler.shutdown()


@pytest.fixture
def job_spec():
    """Job spec migrating Id/Name/Email from src to dst"""
    return {
        "name": "Contacts",
        "source_environment_id": "src",
        "dest_environment_id": "dst",
        "source_entity": "Contact",
        "dest_entity": "Contact",
        "source_key_field": "Id",
        "mapping": [
            {"source_field": "Id", "dest_field": "ExternalId", "transform_kind": "to_string"},
            {"source_field": "Name", "dest_field": "Name"},
            {"source_field": "Email", "dest_field": "Email", "transform_kind": "lower"},
        ],
    }


async def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll an async predicate until it returns a truthy value"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def poll():
    return wait_for
