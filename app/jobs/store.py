"""Job record store interface and the in-memory implementation.

The runner is the only writer of a job record; pollers read through `get`
or receive pushed snapshots through `subscribe`.
"""

import asyncio
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Callable, Dict, List, Optional

import structlog

from app.errors import JobNotFoundError, JobStateError
from app.jobs.models import JobRecord, JobStatus, can_transition

logger = structlog.get_logger(__name__)

SnapshotCallback = Callable[[JobRecord], None]


class Subscription:
    """Handle returned by `subscribe`; call `unsubscribe()` to stop delivery."""

    def __init__(self, cancel: Callable[[], None]):
        self._cancel = cancel
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._cancel()


class SnapshotBroadcaster:
    """Fans out saved job snapshots to per-job subscribers."""

    def __init__(self):
        self._subscribers: Dict[str, List[SnapshotCallback]] = defaultdict(list)

    def subscribe(self, job_id: str, callback: SnapshotCallback) -> Subscription:
        self._subscribers[job_id].append(callback)

        def cancel() -> None:
            callbacks = self._subscribers.get(job_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(job_id, None)

        return Subscription(cancel)

    def publish(self, job: JobRecord) -> None:
        for callback in list(self._subscribers.get(job.id, [])):
            try:
                callback(job.model_copy(deep=True))
            except Exception:
                logger.exception("subscriber_failed", job_id=job.id)

    def subscriber_count(self, job_id: str) -> int:
        return len(self._subscribers.get(job_id, []))


def validate_update(current: JobRecord, new: JobRecord) -> None:
    """Reject writes that break the lifecycle rules of a job record."""
    if current.is_terminal():
        raise JobStateError(f"Job {current.id} is {current.status.value}; it can no longer change")
    if not can_transition(current.status, new.status):
        raise JobStateError(
            f"Job {current.id}: invalid transition {current.status.value} -> {new.status.value}"
        )
    if new.processed_items < current.processed_items:
        raise JobStateError(
            f"Job {current.id}: processed_items cannot go back "
            f"from {current.processed_items} to {new.processed_items}"
        )
    new.check_invariants()


class JobStore(ABC):
    """Narrow async interface over the persisted job records."""

    def __init__(self):
        self._broadcaster = SnapshotBroadcaster()

    @abstractmethod
    async def create(self, job: JobRecord) -> JobRecord:
        ...

    @abstractmethod
    async def get(self, job_id: str) -> JobRecord:
        """Return the record or raise JobNotFoundError."""
        ...

    @abstractmethod
    async def save(self, job: JobRecord) -> JobRecord:
        """Persist the full record and push the snapshot to subscribers."""
        ...

    @abstractmethod
    async def find_active(self, target_key: str) -> Optional[JobRecord]:
        """Return a pending or processing job for the target key, if any."""
        ...

    @abstractmethod
    async def list_jobs(self, shop_id: Optional[str] = None, limit: int = 10) -> List[JobRecord]:
        ...

    def subscribe(self, job_id: str, callback: SnapshotCallback) -> Subscription:
        return self._broadcaster.subscribe(job_id, callback)


class InMemoryJobStore(JobStore):
    """Dict-backed store for local development and tests."""

    def __init__(self):
        super().__init__()
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            if job.id in self._jobs:
                raise JobStateError(f"Job {job.id} already exists")
            job.check_invariants()
            self._jobs[job.id] = job.model_copy(deep=True)
        self._broadcaster.publish(job)
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> JobRecord:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job.model_copy(deep=True)

    async def save(self, job: JobRecord) -> JobRecord:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(job.id)
            validate_update(current, job)
            self._jobs[job.id] = job.model_copy(deep=True)
        self._broadcaster.publish(job)
        return job.model_copy(deep=True)

    async def find_active(self, target_key: str) -> Optional[JobRecord]:
        for job in self._jobs.values():
            if job.target_key == target_key and job.status in (JobStatus.PENDING, JobStatus.PROCESSING):
                return job.model_copy(deep=True)
        return None

    async def list_jobs(self, shop_id: Optional[str] = None, limit: int = 10) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if shop_id is None or j.shop_id == shop_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def delete(self, job_id: str) -> None:
        """Remove a record. A runner still working on it stops at its next save."""
        async with self._lock:
            self._jobs.pop(job_id, None)
