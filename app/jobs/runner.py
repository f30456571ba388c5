"""Job runner: drives one job record from pending to a terminal state.

Items are processed one at a time in the order given. The record is saved
after every item so pollers see progress as it happens. Per-item failures
are counted, never raised; only job-level faults (store errors, a vanished
record, JobAbortedError) end the job as failed.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Union

import structlog

from app.config import settings
from app.errors import JobAbortedError, JobNotFoundError, JobStateError
from app.jobs.models import (
    AffectedItem,
    ItemOutcome,
    ItemResult,
    JobRecord,
    JobStatus,
    JobSummary,
    OutcomeKind,
    compute_progress,
    utcnow,
)
from app.jobs.processors import Processor, ProcessorContext, call_processor
from app.jobs.store import JobStore
from app.logging_config import bind_job_context, clear_job_context

logger = structlog.get_logger(__name__)

ItemPayload = Union[AffectedItem, Dict[str, Any]]


def chunk(items: Sequence[Any], size: int) -> List[Sequence[Any]]:
    size = max(1, size)
    return [items[i:i + size] for i in range(0, len(items), size)]


class JobRunner:
    """Applies a processor to every affected item of a job."""

    def __init__(
        self,
        store: JobStore,
        batch_size: Optional[int] = None,
        batch_pause_seconds: Optional[float] = None,
    ):
        self._store = store
        self._batch_size = batch_size or settings.runner_batch_size
        if batch_pause_seconds is None:
            batch_pause_seconds = settings.runner_batch_pause_seconds
        self._batch_pause = batch_pause_seconds

    async def run(
        self,
        job_id: str,
        items: Sequence[ItemPayload],
        processor: Processor,
        context: Optional[ProcessorContext] = None,
    ) -> Optional[JobSummary]:
        """Process all items of a job. Never raises for job-level faults.

        Returns None only when the job record is gone or cannot be read at all.
        """
        bind_job_context(job_id)
        try:
            return await self._run(job_id, items, processor, context)
        finally:
            clear_job_context()

    async def fail_job(self, job_id: str, message: str) -> Optional[JobRecord]:
        """Mark a job that will never be run as failed."""
        bind_job_context(job_id)
        try:
            return await self._fail(job_id, message)
        finally:
            clear_job_context()

    async def _run(self, job_id, items, processor, context) -> Optional[JobSummary]:
        try:
            job = await self._store.get(job_id)
        except JobNotFoundError:
            logger.error("job_vanished", error="record not found before start")
            return None
        except asyncio.CancelledError:
            await self._fail(job_id, "Job interrupted before completion")
            raise
        except Exception as e:
            # Storage unreachable before the first item is a job-level fault.
            logger.error("job_unreadable", error=str(e))
            failed = await self._fail(job_id, _describe(e))
            return JobSummary(job=failed, results=[]) if failed is not None else None

        if job.status != JobStatus.PENDING:
            # Another runner owns (or owned) this job.
            logger.warning("job_not_pending", status=job.status.value)
            return JobSummary(job=job, results=[])

        results: List[ItemResult] = []
        last_saved = job
        try:
            affected = [AffectedItem.model_validate(i) if isinstance(i, dict) else i for i in items]
            if len(affected) != job.total_items:
                raise JobStateError(
                    f"Job expects {job.total_items} items but {len(affected)} were supplied"
                )
            if context is None:
                context = ProcessorContext(
                    job_id=job.id,
                    shop_id=job.shop_id,
                    diagnostic_id=job.diagnostic_id,
                    issue_type=job.job_type,
                )

            now = utcnow()
            job.status = JobStatus.PROCESSING
            job.started_at = now
            job.last_heartbeat = now
            last_saved = job = await self._store.save(job)
            logger.info("job_processing", total_items=job.total_items)

            batches = chunk(affected, self._batch_size)
            for batch_idx, batch in enumerate(batches):
                logger.debug("batch_started", batch=batch_idx + 1, batches=len(batches), size=len(batch))
                for item in batch:
                    job.current_item = item.label
                    outcome = await self._process_item(processor, item, context)
                    results.append(ItemResult(item_id=item.id, name=item.name, outcome=outcome))
                    self._account(job, outcome)
                    last_saved = job = await self._store.save(job)

                    if job.processed_items % 5 == 0:
                        logger.info(
                            "job_progress",
                            processed=job.processed_items,
                            total=job.total_items,
                            progress=job.progress,
                        )

                if batch_idx < len(batches) - 1 and self._batch_pause > 0:
                    await asyncio.sleep(self._batch_pause)

            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.current_item = None
            job.completed_at = utcnow()
            job.last_heartbeat = job.completed_at
            job = await self._store.save(job)
            logger.info(
                "job_completed",
                success=job.success_count,
                failed=job.failed_count,
                skipped=job.skipped_count,
            )
            return JobSummary(job=job, results=results)

        except asyncio.CancelledError:
            await self._fail(job_id, "Job interrupted before completion", fallback=last_saved)
            raise
        except Exception as e:
            logger.exception("job_failed", error=str(e))
            failed = await self._fail(job_id, _describe(e), fallback=last_saved)
            return JobSummary(job=failed or last_saved, results=results)

    async def _process_item(
        self, processor: Processor, item: AffectedItem, context: ProcessorContext
    ) -> ItemOutcome:
        try:
            return await call_processor(processor, item, context)
        except JobAbortedError:
            raise
        except Exception as e:
            logger.warning("item_failed", item_id=item.id, item=item.label, error=str(e))
            return ItemOutcome.failure(str(e) or type(e).__name__)

    @staticmethod
    def _account(job: JobRecord, outcome: ItemOutcome) -> None:
        if outcome.kind == OutcomeKind.SUCCESS:
            job.success_count += 1
        elif outcome.kind == OutcomeKind.SKIP:
            job.skipped_count += 1
        else:
            job.failed_count += 1
            job.last_item_error = outcome.reason
        job.processed_items += 1
        job.progress = compute_progress(job.processed_items, job.total_items)
        job.last_heartbeat = utcnow()

    async def _fail(
        self, job_id: str, message: str, fallback: Optional[JobRecord] = None
    ) -> Optional[JobRecord]:
        """Mark the job failed, keeping the counts already persisted.

        The record is re-read first; `fallback` stands in when that read fails.
        """
        try:
            job = await self._store.get(job_id)
        except JobNotFoundError:
            logger.error("job_vanished", error=message)
            return None
        except Exception as e:
            if fallback is None:
                logger.error("job_fail_state_not_saved", error=str(e), reason=message)
                return None
            job = fallback.model_copy(deep=True)

        if job.is_terminal():
            return job

        job.status = JobStatus.FAILED
        job.error_message = message
        job.current_item = None
        job.completed_at = utcnow()
        try:
            return await self._store.save(job)
        except Exception as e:
            logger.error("job_fail_state_not_saved", error=str(e), reason=message)
            return None


def _describe(exc: Exception) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message or type(exc).__name__
