"""Job management API: enqueue resolution jobs, poll status, stream updates."""

import asyncio
import json
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse

from app.auth.supabase_auth import verify_jwt
from app.jobs.dispatcher import EnqueueRequest
from app.jobs.models import JobRecord

router = APIRouter()

# Set by main.py during lifespan
_dispatcher = None

# Seconds between SSE keepalive comments
_KEEPALIVE_SECONDS = 15.0


def set_dispatcher(dispatcher):
    global _dispatcher
    _dispatcher = dispatcher


def _require_dispatcher():
    if _dispatcher is None:
        raise HTTPException(status_code=503, detail="Job dispatcher not initialized")
    return _dispatcher


@router.post("/jobs")
async def enqueue_job(request: EnqueueRequest, user=Depends(verify_jwt)):
    """Queue a bulk SEO resolution job and return its id without waiting.

    Responds 409 with existingJobId when the same diagnostic issue already
    has a pending or processing job.
    """
    dispatcher = _require_dispatcher()
    job = await dispatcher.submit(request)
    return {
        "success": True,
        "jobId": job.id,
        "message": "Job queued successfully. Poll job status for progress.",
    }


@router.get("/jobs")
async def list_jobs(
    shop_id: Optional[str] = None,
    limit: int = Query(default=10, ge=1, le=100),
):
    """Most recent jobs, newest first."""
    dispatcher = _require_dispatcher()
    jobs = await dispatcher.list_jobs(shop_id=shop_id, limit=limit)
    return {"jobs": [j.model_dump(mode="json") for j in jobs]}


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str):
    """Current job record; 404 when the id is unknown."""
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    return job.model_dump(mode="json")


def _sse(job: JobRecord) -> str:
    return f"data: {json.dumps(job.model_dump(mode='json'))}\n\n"


async def _job_events(request: Request, dispatcher, job: JobRecord):
    """Yield the current snapshot, then every saved snapshot until terminal."""
    updates: asyncio.Queue[JobRecord] = asyncio.Queue()
    subscription = dispatcher.store.subscribe(job.id, updates.put_nowait)
    try:
        # Re-read after subscribing so no save between the two is missed.
        job = await dispatcher.get_status(job.id)
        yield _sse(job)
        sent = job.processed_items
        while not job.is_terminal():
            if await request.is_disconnected():
                break
            try:
                job = await asyncio.wait_for(updates.get(), timeout=_KEEPALIVE_SECONDS)
            except asyncio.TimeoutError:
                yield ": keepalive\n\n"
                continue
            # Saves queued during the re-read can be older than what was sent.
            if not job.is_terminal() and job.processed_items < sent:
                continue
            sent = job.processed_items
            yield _sse(job)
    finally:
        subscription.unsubscribe()


@router.get("/jobs/{job_id}/events")
async def stream_job_events(job_id: str, request: Request):
    """Push channel: Server-Sent Events carrying job snapshots."""
    dispatcher = _require_dispatcher()
    job = await dispatcher.get_status(job_id)
    return StreamingResponse(
        _job_events(request, dispatcher, job),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
