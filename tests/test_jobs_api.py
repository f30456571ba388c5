"""Job API endpoint tests."""

import json

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.v1.jobs import _job_events
from app.jobs.models import JobRecord, JobStatus
from app.jobs.store import InMemoryJobStore


def _body(diagnostic_id="diag-1", issue_type="titles", n=3):
    return {
        "shopId": "shop-1",
        "diagnosticId": diagnostic_id,
        "issueType": issue_type,
        "affectedItems": [{"id": i, "name": f"Product {i}", "type": "product"} for i in range(n)],
    }


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert (await client.get("/api/v1/health")).status_code == 200


@pytest.mark.asyncio
async def test_enqueue_returns_job_id(client, dispatcher):
    response = await client.post("/api/v1/jobs", json=_body())
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    job_id = data["jobId"]

    await dispatcher.join()

    status = await client.get(f"/api/v1/jobs/{job_id}")
    assert status.status_code == 200
    job = status.json()
    assert job["status"] == "completed"
    assert job["total_items"] == 3
    assert job["processed_items"] == 3
    assert job["success_count"] == 3
    assert job["progress"] == 100
    assert job["shop_id"] == "shop-1"


@pytest.mark.asyncio
async def test_duplicate_enqueue_conflicts(client, dispatcher, processors):
    first = (await client.post("/api/v1/jobs", json=_body(issue_type="gated"))).json()["jobId"]

    response = await client.post("/api/v1/jobs", json=_body(issue_type="gated"))
    assert response.status_code == 409
    data = response.json()
    assert data["success"] is False
    assert data["existingJobId"] == first
    assert data["code"] == "CONFLICT"

    processors.gate.set()
    await dispatcher.join()
    again = await client.post("/api/v1/jobs", json=_body(issue_type="gated"))
    assert again.status_code == 200
    assert again.json()["jobId"] != first
    await dispatcher.join()


@pytest.mark.asyncio
async def test_enqueue_validates_body(client):
    response = await client.post("/api/v1/jobs", json={"shopId": "shop-1"})
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    response = await client.get("/api/v1/jobs/does-not-exist")
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_list_jobs_for_shop(client, dispatcher):
    await client.post("/api/v1/jobs", json=_body(diagnostic_id="d1"))
    await client.post("/api/v1/jobs", json=_body(diagnostic_id="d2"))
    await dispatcher.join()

    response = await client.get("/api/v1/jobs", params={"shop_id": "shop-1", "limit": 5})
    assert response.status_code == 200
    jobs = response.json()["jobs"]
    assert len(jobs) == 2
    assert {j["diagnostic_id"] for j in jobs} == {"d1", "d2"}

    assert (await client.get("/api/v1/jobs", params={"shop_id": "shop-x"})).json()["jobs"] == []


@pytest.mark.asyncio
async def test_event_stream_ends_on_terminal_snapshot(client, dispatcher):
    job_id = (await client.post("/api/v1/jobs", json=_body(n=2))).json()["jobId"]
    await dispatcher.join()

    response = await client.get(f"/api/v1/jobs/{job_id}/events")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ")
    ]
    assert events[-1]["status"] == JobStatus.COMPLETED.value
    assert events[-1]["processed_items"] == 2


@pytest.mark.asyncio
async def test_enqueue_requires_token(dispatcher):
    from app.api.v1 import jobs as jobs_api
    from app.main import create_app

    app = create_app()
    jobs_api.set_dispatcher(dispatcher)
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post("/api/v1/jobs", json=_body())
        assert response.status_code == 401
    finally:
        jobs_api.set_dispatcher(None)


@pytest.mark.asyncio
async def test_dispatcher_not_ready_is_503():
    from app.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        response = await ac.get("/api/v1/jobs/job-1")
    assert response.status_code == 503


class _ConnectedRequest:
    async def is_disconnected(self):
        return False


class _RacingDispatcher:
    """Saves progress while the stream re-reads the record."""

    def __init__(self, store):
        self.store = store

    async def get_status(self, job_id):
        job = await self.store.get(job_id)
        job.status = JobStatus.PROCESSING
        for _ in range(2):
            job.processed_items += 1
            job.success_count += 1
            job = await self.store.save(job)
        current = await self.store.get(job_id)
        job.processed_items += 1
        job.success_count += 1
        job.status = JobStatus.COMPLETED
        job.progress = 100
        await self.store.save(job)
        return current


@pytest.mark.asyncio
async def test_event_stream_never_goes_backwards():
    store = InMemoryJobStore()
    job = await store.create(JobRecord(target_key="diag-1:titles", total_items=3))

    chunks = [c async for c in _job_events(_ConnectedRequest(), _RacingDispatcher(store), job)]

    processed = [json.loads(c[len("data: "):])["processed_items"] for c in chunks if c.startswith("data: ")]
    assert processed == sorted(processed)
    assert processed[0] == 2
    assert processed[-1] == 3
