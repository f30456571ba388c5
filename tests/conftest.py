"""Shared test fixtures."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from app.errors import JobStoreError
from app.jobs.models import AffectedItem, ItemOutcome, JobRecord
from app.jobs.processors import ProcessorRegistry
from app.jobs.runner import JobRunner
from app.jobs.store import InMemoryJobStore


def make_items(n: int) -> list:
    return [AffectedItem(id=str(i), name=f"Product {i}") for i in range(n)]


def outcome_processor(outcomes: dict):
    """Processor returning outcomes[item.id], success by default."""

    async def process(item, context):
        return outcomes.get(item.id, ItemOutcome.success())

    return process


class FlakyStore(InMemoryJobStore):
    """In-memory store whose save starts failing after `fail_after` saves."""

    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.saves = 0
        self.broken = False

    async def save(self, job: JobRecord) -> JobRecord:
        self.saves += 1
        if self.saves > self.fail_after and not self.broken:
            self.broken = True
            raise JobStoreError("connection reset by peer")
        return await super().save(job)


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def runner(store):
    return JobRunner(store, batch_size=10, batch_pause_seconds=0)


@pytest.fixture
def processors():
    reg = ProcessorRegistry()

    @reg.register("titles")
    async def always_succeeds(item, context):
        return ItemOutcome.success()

    gate = asyncio.Event()
    reg.gate = gate

    @reg.register("gated")
    async def waits_for_gate(item, context):
        await gate.wait()
        return ItemOutcome.success()

    @reg.register("broken")
    async def fails_odd_ids(item, context):
        if int(item.id) % 2:
            raise RuntimeError(f"cannot update {item.id}")
        return ItemOutcome.success()

    return reg


@pytest.fixture
async def dispatcher(store, runner, processors):
    from app.jobs.in_process_queue import InProcessQueue

    queue = InProcessQueue(store=store, processors=processors, runner=runner, workers=2)
    await queue.start()
    yield queue
    await queue.stop()


@pytest.fixture
def app(dispatcher):
    """Application wired to the in-memory dispatcher, auth bypassed."""
    from app.api.v1 import jobs as jobs_api
    from app.auth.supabase_auth import verify_jwt
    from app.main import create_app

    _app = create_app()
    _app.dependency_overrides[verify_jwt] = lambda: {"id": "user-1"}
    jobs_api.set_dispatcher(dispatcher)
    yield _app
    jobs_api.set_dispatcher(None)


@pytest.fixture
async def client(app):
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
