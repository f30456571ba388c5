"""Client-side job poller.

Observes one job record until it is terminal, from two sources at once:
a fixed-interval fetch and an optional push channel. Both feed the same
ObservedJobState, and one set of callbacks (on_update, on_done, on_error)
is driven from it.

Terminal conditions:
  - status == completed, or processed_items >= total_items > 0 (implied
    completion) -> on_done(job), once
  - status == failed -> on_error(error_message), once
  - not found -> on_error("Job not found"), once
  - no change seen for max(interval * 5, 15s) while the last snapshot
    implies completion -> on_done(snapshot), once

After any terminal condition or stop(), no further callback fires.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

import structlog

from app.config import settings
from app.errors import JobNotFoundError
from app.jobs.models import JobRecord, JobStatus

logger = structlog.get_logger(__name__)

FetchFn = Callable[[str], Awaitable[Optional[JobRecord]]]
JobCallback = Callable[[JobRecord], Any]
ErrorCallback = Callable[[str], Any]


class UpdateChannel(Protocol):
    """Push source of job snapshots (e.g. a JobStore)."""

    def subscribe(self, job_id: str, callback: Callable[[JobRecord], None]) -> Any:
        ...


class PollerState(str, Enum):
    IDLE = "idle"
    OBSERVING = "observing"
    DONE = "done"
    ERRORED = "errored"
    CANCELLED = "cancelled"


def stale_threshold_ms(
    interval_ms: int,
    multiplier: Optional[int] = None,
    floor_ms: Optional[int] = None,
) -> int:
    if multiplier is None:
        multiplier = settings.poll_stale_multiplier
    if floor_ms is None:
        floor_ms = settings.poll_stale_floor_ms
    return max(interval_ms * multiplier, floor_ms)


class ObservedJobState:
    """Reducer for snapshots arriving from either channel.

    Snapshots of other jobs, and non-terminal snapshots with fewer processed
    items than already seen, are dropped so displayed progress never goes
    back. The time of the last snapshot that changed anything is kept for
    the staleness check.
    """

    def __init__(self, job_id: str, now: float):
        self.job_id = job_id
        self.snapshot: Optional[JobRecord] = None
        self.last_change_at = now

    def apply(self, job: JobRecord, now: float) -> bool:
        if job.id != self.job_id:
            return False
        current = self.snapshot
        if current is not None and not job.is_terminal():
            if job.processed_items < current.processed_items:
                return False
        if current is None or job != current:
            self.last_change_at = now
        self.snapshot = job
        return True

    def is_stale(self, now: float, threshold_s: float) -> bool:
        return now - self.last_change_at > threshold_s

    def should_force_done(self, now: float, threshold_s: float) -> bool:
        return (
            self.snapshot is not None
            and self.snapshot.implies_completion()
            and self.is_stale(now, threshold_s)
        )


@dataclass
class _Observation:
    job_id: str
    interval_s: float
    stale_s: float
    observed: ObservedJobState
    on_update: Optional[JobCallback] = None
    on_done: Optional[JobCallback] = None
    on_error: Optional[ErrorCallback] = None
    active: bool = True
    loop_task: Optional[asyncio.Task] = None
    fetch_task: Optional[asyncio.Task] = None
    subscription: Any = None
    pending: Set[asyncio.Task] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    finished: asyncio.Event = field(default_factory=asyncio.Event)


class JobPoller:
    """Watches at most one job at a time. Must be used inside an event loop."""

    def __init__(
        self,
        fetch: FetchFn,
        channel: Optional[UpdateChannel] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._fetch = fetch
        self._channel = channel
        self._clock = clock or time.monotonic
        self._obs: Optional[_Observation] = None
        self._state = PollerState.IDLE
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def state(self) -> PollerState:
        return self._state

    @property
    def job_id(self) -> Optional[str]:
        return self._obs.job_id if self._obs else None

    @property
    def snapshot(self) -> Optional[JobRecord]:
        """Last accepted snapshot of the current (or last) observation."""
        return self._obs.observed.snapshot if self._obs else None

    def start(
        self,
        job_id: str,
        on_update: Optional[JobCallback] = None,
        on_done: Optional[JobCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        interval_ms: Optional[int] = None,
        stale_after_ms: Optional[int] = None,
    ) -> None:
        """Begin observing `job_id`, replacing any observation in progress."""
        self.stop()

        interval_ms = interval_ms or settings.poll_interval_ms
        if stale_after_ms is None:
            stale_after_ms = stale_threshold_ms(interval_ms)

        self._loop = asyncio.get_running_loop()
        obs = _Observation(
            job_id=job_id,
            interval_s=interval_ms / 1000,
            stale_s=stale_after_ms / 1000,
            observed=ObservedJobState(job_id, self._clock()),
            on_update=on_update,
            on_done=on_done,
            on_error=on_error,
        )
        self._obs = obs
        self._state = PollerState.OBSERVING

        if self._channel is not None:
            obs.subscription = self._channel.subscribe(
                job_id, lambda job: self._on_push(obs, job)
            )
        obs.loop_task = self._loop.create_task(self._poll_loop(obs))
        logger.debug("poller_started", job_id=job_id, interval_ms=interval_ms, stale_after_ms=stale_after_ms)

    def stop(self) -> None:
        """Cancel the current observation. Safe to call at any time."""
        obs = self._obs
        if obs is None or not obs.active:
            return
        obs.active = False
        self._state = PollerState.CANCELLED
        self._teardown(obs)
        logger.debug("poller_stopped", job_id=obs.job_id)

    async def wait(self) -> PollerState:
        """Wait for the current observation to end and return the final state."""
        if self._obs is not None:
            await self._obs.finished.wait()
        return self._state

    # -- internals -------------------------------------------------------

    def _teardown(self, obs: _Observation) -> None:
        current = asyncio.current_task()
        if obs.subscription is not None:
            obs.subscription.unsubscribe()
            obs.subscription = None
        for task in [obs.loop_task, obs.fetch_task, *obs.pending]:
            if task is not None and task is not current and not task.done():
                task.cancel()
        obs.finished.set()

    def _on_push(self, obs: _Observation, job: JobRecord) -> None:
        # May be called from another thread by a push source.
        if obs.active and self._loop is not None:
            self._loop.call_soon_threadsafe(self._schedule_delivery, obs, job)

    def _schedule_delivery(self, obs: _Observation, job: JobRecord) -> None:
        if not obs.active:
            return
        task = asyncio.get_running_loop().create_task(self._deliver(obs, job))
        obs.pending.add(task)
        task.add_done_callback(obs.pending.discard)

    async def _poll_loop(self, obs: _Observation) -> None:
        while obs.active:
            if obs.fetch_task is None or obs.fetch_task.done():
                obs.fetch_task = asyncio.get_running_loop().create_task(self._poll_once(obs))
            await asyncio.sleep(0)
            if not obs.active:
                break
            await self._check_stale(obs)
            if not obs.active:
                break
            await asyncio.sleep(obs.interval_s)

    async def _poll_once(self, obs: _Observation) -> None:
        try:
            job = await self._fetch(obs.job_id)
        except JobNotFoundError:
            job = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("poll_fetch_failed", job_id=obs.job_id, error=str(e))
            if obs.active:
                await self._emit(obs.on_error, str(e) or type(e).__name__)
            return

        if job is None:
            logger.warning("poll_job_not_found", job_id=obs.job_id)
            await self._finish(obs, PollerState.ERRORED, error="Job not found")
            return
        await self._deliver(obs, job)

    async def _deliver(self, obs: _Observation, job: JobRecord) -> None:
        async with obs.lock:
            if not obs.active:
                return
            if not obs.observed.apply(job, self._clock()):
                return
            await self._emit(obs.on_update, job)
            if not obs.active:
                return
            if job.status == JobStatus.FAILED:
                await self._finish(obs, PollerState.ERRORED, error=job.error_message or "Job failed")
            elif job.status == JobStatus.COMPLETED or job.implies_completion():
                await self._finish(obs, PollerState.DONE, job=job)

    async def _check_stale(self, obs: _Observation) -> None:
        """Backstop for a snapshot that implies completion but was never finished.

        _deliver finishes on implied completion by itself, so this only fires
        when that delivery is stuck, e.g. in an on_update that never returns.
        It runs outside the delivery lock for that reason.
        """
        observed = obs.observed
        if observed.should_force_done(self._clock(), obs.stale_s):
            logger.warning(
                "poll_stale_force_done",
                job_id=obs.job_id,
                processed=observed.snapshot.processed_items,
                total=observed.snapshot.total_items,
            )
            await self._finish(obs, PollerState.DONE, job=observed.snapshot)

    async def _finish(
        self,
        obs: _Observation,
        state: PollerState,
        job: Optional[JobRecord] = None,
        error: Optional[str] = None,
    ) -> None:
        if not obs.active:
            return
        obs.active = False
        self._state = state
        self._teardown(obs)
        logger.info("poller_finished", job_id=obs.job_id, state=state.value)
        if state == PollerState.DONE:
            await self._emit(obs.on_done, job)
        else:
            await self._emit(obs.on_error, error)

    @staticmethod
    async def _emit(callback: Optional[Callable[[Any], Any]], value: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(value)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("poller_callback_failed")
