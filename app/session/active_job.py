"""Persisted "active job" for a client session.

The dashboard keeps the job it is watching across reloads. Here that is a
small JSON file: written when a job is enqueued, read when the client
starts, and removed once the job reaches a terminal state.
"""

import inspect
import os
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
import structlog

from app.config import settings
from app.jobs.models import JobRecord
from app.jobs.poller import JobPoller, PollerState

logger = structlog.get_logger(__name__)


class ActiveJob(BaseModel):
    job_id: str
    shop_id: str
    diagnostic_id: str
    label: Optional[str] = None

    @classmethod
    def from_record(cls, job: JobRecord, label: Optional[str] = None) -> "ActiveJob":
        return cls(
            job_id=job.id,
            shop_id=job.shop_id or "",
            diagnostic_id=job.diagnostic_id or "",
            label=label,
        )


class ActiveJobSession:
    """File-backed storage for the one job a client session is tracking."""

    def __init__(self, path: Optional[str] = None):
        self._path = path or settings.active_job_file

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Optional[ActiveJob]:
        """Return the saved job, or None if there is none or it is unreadable."""
        if not os.path.exists(self._path):
            return None
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return ActiveJob.model_validate_json(f.read())
        except (OSError, ValidationError) as e:
            logger.warning("active_job_unreadable", path=self._path, error=str(e))
            return None

    def save(self, active: ActiveJob) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            f.write(active.model_dump_json())

    def clear(self) -> None:
        if os.path.exists(self._path):
            os.remove(self._path)


def track_active_job(
    session: ActiveJobSession,
    poller: JobPoller,
    on_update: Optional[Callable[[JobRecord], Any]] = None,
    on_done: Optional[Callable[[JobRecord], Any]] = None,
    on_error: Optional[Callable[[str], Any]] = None,
    interval_ms: Optional[int] = None,
) -> Optional[ActiveJob]:
    """Resume watching the session's saved job; clear it once the job ends.

    Returns the job being tracked, or None when the session has none.
    """
    active = session.load()
    if active is None:
        return None

    async def done(job: JobRecord) -> None:
        session.clear()
        logger.info("active_job_done", job_id=job.id, success=job.success_count, failed=job.failed_count)
        if on_done is not None:
            result = on_done(job)
            if inspect.isawaitable(result):
                await result

    async def error(message: str) -> None:
        # Transient fetch errors keep the poller observing; only a terminal
        # error ends the session.
        if poller.state == PollerState.ERRORED:
            session.clear()
            logger.warning("active_job_failed", job_id=active.job_id, error=message)
        if on_error is not None:
            result = on_error(message)
            if inspect.isawaitable(result):
                await result

    poller.start(
        active.job_id,
        on_update=on_update,
        on_done=done,
        on_error=error,
        interval_ms=interval_ms,
    )
    return active
