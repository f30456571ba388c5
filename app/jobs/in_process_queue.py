"""In-process job queue using asyncio.

Submitting a job only creates its record and queues it; worker loops in
background tasks run the JobRunner, so callers get the job id back at once.
No external dependencies (Redis, Celery) needed.
"""

import asyncio
from dataclasses import dataclass
from typing import List, Optional

import structlog

from app.config import settings
from app.errors import JobConflictError
from app.jobs.dispatcher import EnqueueRequest, JobDispatcher
from app.jobs.models import AffectedItem, JobRecord
from app.jobs.processors import ProcessorRegistry, registry as default_registry
from app.jobs.runner import JobRunner
from app.jobs.store import JobStore

logger = structlog.get_logger(__name__)


@dataclass
class _QueuedJob:
    job_id: str
    issue_type: str
    items: List[AffectedItem]


class InProcessQueue(JobDispatcher):
    """Local async job queue with a fixed number of worker loops."""

    def __init__(
        self,
        store: JobStore,
        processors: Optional[ProcessorRegistry] = None,
        runner: Optional[JobRunner] = None,
        workers: Optional[int] = None,
    ):
        self._store = store
        self._processors = processors or default_registry
        self._runner = runner or JobRunner(store)
        self._worker_count = max(1, workers or settings.max_concurrent_jobs)
        self._queue: asyncio.Queue[_QueuedJob] = asyncio.Queue()
        self._submit_lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def store(self) -> JobStore:
        return self._store

    async def submit(self, request: EnqueueRequest) -> JobRecord:
        # Check and create under one lock so two submissions for the same
        # target key cannot both pass the check.
        async with self._submit_lock:
            existing = await self._store.find_active(request.target_key)
            if existing is not None:
                logger.warning(
                    "job_already_active",
                    existing_job_id=existing.id,
                    target_key=request.target_key,
                )
                raise JobConflictError(existing.id, request.target_key)
            job = await self._store.create(request.new_job())

        logger.info(
            "job_queued",
            job_id=job.id,
            shop_id=request.shop_id,
            issue_type=request.issue_type,
            total_items=job.total_items,
        )
        await self._queue.put(_QueuedJob(job.id, request.issue_type, list(request.affected_items)))
        return job

    async def get_status(self, job_id: str) -> JobRecord:
        return await self._store.get(job_id)

    async def list_jobs(self, shop_id: Optional[str] = None, limit: int = 10) -> List[JobRecord]:
        return await self._store.list_jobs(shop_id=shop_id, limit=limit)

    async def start(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(n)) for n in range(self._worker_count)
        ]

    async def stop(self) -> None:
        """Cancel the workers and fail every job still waiting in the queue.

        Running jobs are failed by their runner on cancellation; queued ones
        would otherwise stay pending and block their target key.
        """
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

        while True:
            try:
                queued = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            try:
                await self._runner.fail_job(queued.job_id, "Job interrupted before completion")
                logger.info("queued_job_abandoned", job_id=queued.job_id)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been run."""
        await self._queue.join()

    async def _worker_loop(self, worker: int) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                queued = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            try:
                processor = self._processors.get(queued.issue_type)
                summary = await self._runner.run(queued.job_id, queued.items, processor)
                if summary is not None:
                    logger.info(
                        "job_finished",
                        worker=worker,
                        job_id=queued.job_id,
                        status=summary.job.status.value,
                    )
            finally:
                self._queue.task_done()
