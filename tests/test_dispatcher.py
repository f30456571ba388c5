"""Enqueue and in-process queue tests."""

import asyncio

import pytest

from app.errors import JobConflictError
from app.jobs.dispatcher import EnqueueRequest
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.models import ItemOutcome, JobStatus
from app.jobs.processors import ProcessorRegistry
from app.jobs.runner import JobRunner


def _request(diagnostic_id="diag-1", issue_type="titles", n=3) -> EnqueueRequest:
    return EnqueueRequest.model_validate({
        "shopId": "shop-1",
        "diagnosticId": diagnostic_id,
        "issueType": issue_type,
        "affectedItems": [{"id": i, "name": f"Product {i}"} for i in range(n)],
    })


@pytest.mark.asyncio
async def test_enqueue_runs_job_in_background(dispatcher, store):
    job = await dispatcher.submit(_request(n=4))
    assert job.status == JobStatus.PENDING
    assert job.total_items == 4
    assert job.target_key == "diag-1:titles"

    await dispatcher.join()

    final = await store.get(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.success_count == 4


@pytest.mark.asyncio
async def test_duplicate_submission_is_rejected_until_terminal(store):
    gate = asyncio.Event()
    reg = ProcessorRegistry()

    @reg.register("titles")
    async def blocked(item, context):
        await gate.wait()
        return ItemOutcome.success()

    queue = InProcessQueue(store=store, processors=reg, runner=JobRunner(store, batch_pause_seconds=0), workers=1)
    await queue.start()
    try:
        first = await queue.submit(_request())

        with pytest.raises(JobConflictError) as exc_info:
            await queue.submit(_request())
        assert exc_info.value.existing_job_id == first.id
        assert exc_info.value.status_code == 409

        # A different issue of the same diagnostic is a different target.
        other = await queue.submit(_request(issue_type="meta"))
        assert other.id != first.id

        gate.set()
        await queue.join()
        assert (await store.get(first.id)).status == JobStatus.COMPLETED

        again = await queue.submit(_request())
        assert again.id != first.id
        await queue.join()
    finally:
        await queue.stop()


@pytest.mark.asyncio
async def test_issue_type_match_is_case_insensitive(dispatcher):
    await dispatcher.submit(_request(issue_type="TITLES", n=0))
    with pytest.raises(JobConflictError):
        await dispatcher.submit(_request(issue_type="titles"))
    await dispatcher.join()


@pytest.mark.asyncio
async def test_unknown_issue_type_skips_items(dispatcher, store):
    job = await dispatcher.submit(_request(issue_type="hreflang", n=2))
    await dispatcher.join()
    final = await store.get(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.skipped_count == 2


@pytest.mark.asyncio
async def test_item_errors_are_counted_not_raised(dispatcher, store):
    job = await dispatcher.submit(_request(issue_type="broken", n=4))
    await dispatcher.join()
    final = await store.get(job.id)
    assert final.status == JobStatus.COMPLETED
    assert final.success_count == 2
    assert final.failed_count == 2
    assert final.last_item_error == "cannot update 3"


def test_enqueue_request_accepts_snake_case():
    request = EnqueueRequest(
        shop_id="s", diagnostic_id="d", issue_type="Images", affected_items=[]
    )
    assert request.target_key == "d:images"
    assert request.new_job().job_type == "images"


@pytest.mark.asyncio
async def test_stop_fails_running_and_queued_jobs(store, processors):
    queue = InProcessQueue(
        store=store, processors=processors,
        runner=JobRunner(store, batch_pause_seconds=0), workers=1,
    )
    await queue.start()
    running = await queue.submit(_request(diagnostic_id="d1", issue_type="gated"))
    waiting = await queue.submit(_request(diagnostic_id="d2", issue_type="gated"))
    while (await store.get(running.id)).status != JobStatus.PROCESSING:
        await asyncio.sleep(0.01)

    await queue.stop()

    for job_id in (running.id, waiting.id):
        final = await store.get(job_id)
        assert final.status == JobStatus.FAILED
        assert final.error_message == "Job interrupted before completion"

    # The target keys are free again after a restart.
    restarted = InProcessQueue(store=store, processors=processors, workers=1)
    again = await restarted.submit(_request(diagnostic_id="d2", issue_type="gated"))
    assert again.id != waiting.id
    await restarted.stop()
    assert (await store.get(again.id)).status == JobStatus.FAILED
