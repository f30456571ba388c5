"""Job record store backed by the Supabase `generation_jobs` table.

The supabase-py client is blocking, so every call runs in the default
thread executor to keep the event loop free while the runner is working.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import structlog

from app.config import settings
from app.db.supabase_client import get_supabase
from app.errors import JobNotFoundError, JobStoreError
from app.jobs.models import JobRecord, JobStatus, make_target_key, split_target_key
from app.jobs.store import InMemoryJobStore, JobStore, validate_update

logger = structlog.get_logger(__name__)

# Columns written on update; id/created_at are immutable and target_key is
# derived from diagnostic_id + type.
_UPDATE_COLUMNS = (
    "status",
    "total_items",
    "processed_items",
    "success_count",
    "failed_count",
    "skipped_count",
    "progress",
    "current_item",
    "error_message",
    "last_item_error",
    "started_at",
    "completed_at",
    "last_heartbeat",
)


def record_to_row(job: JobRecord) -> Dict[str, Any]:
    data = job.to_row()
    row = {col: data[col] for col in _UPDATE_COLUMNS}
    row.update({
        "id": job.id,
        "shop_id": job.shop_id,
        "diagnostic_id": job.diagnostic_id,
        "type": job.job_type,
        "created_at": data["created_at"],
    })
    return row


def row_to_record(row: Dict[str, Any]) -> JobRecord:
    """Build a JobRecord from a table row; null counters read as zero."""
    job_type = row.get("type") or ""
    extra = {"created_at": row["created_at"]} if row.get("created_at") else {}
    return JobRecord(
        id=row["id"],
        target_key=make_target_key(row.get("diagnostic_id") or "", job_type),
        shop_id=row.get("shop_id"),
        diagnostic_id=row.get("diagnostic_id"),
        job_type=job_type,
        status=JobStatus(row.get("status") or "pending"),
        total_items=row.get("total_items") or 0,
        processed_items=row.get("processed_items") or 0,
        success_count=row.get("success_count") or 0,
        failed_count=row.get("failed_count") or 0,
        skipped_count=row.get("skipped_count") or 0,
        progress=row.get("progress") or 0,
        current_item=row.get("current_item"),
        error_message=row.get("error_message"),
        last_item_error=row.get("last_item_error"),
        started_at=row.get("started_at"),
        completed_at=row.get("completed_at"),
        last_heartbeat=row.get("last_heartbeat"),
        **extra,
    )


class SupabaseJobStore(JobStore):
    """Reads and writes job records through the service-role client."""

    def __init__(self, client=None, table: Optional[str] = None):
        super().__init__()
        self._client = client
        self._table = table or settings.jobs_table

    @property
    def client(self):
        if self._client is None:
            self._client = get_supabase()
        return self._client

    async def _execute(self, build: Callable[[], Any]) -> List[Dict[str, Any]]:
        loop = asyncio.get_event_loop()
        try:
            response = await loop.run_in_executor(None, lambda: build().execute())
        except Exception as e:
            raise JobStoreError(f"{type(e).__name__}: {e}") from e
        return response.data or []

    async def create(self, job: JobRecord) -> JobRecord:
        job.check_invariants()
        rows = await self._execute(
            lambda: self.client.table(self._table).insert(record_to_row(job))
        )
        if not rows:
            raise JobStoreError(f"Failed to create job {job.id}")
        created = row_to_record(rows[0])
        logger.info("job_row_created", job_id=created.id, table=self._table)
        self._broadcaster.publish(created)
        return created

    async def get(self, job_id: str) -> JobRecord:
        rows = await self._execute(
            lambda: self.client.table(self._table).select("*").eq("id", job_id).limit(1)
        )
        if not rows:
            raise JobNotFoundError(job_id)
        return row_to_record(rows[0])

    async def save(self, job: JobRecord) -> JobRecord:
        current = await self.get(job.id)
        validate_update(current, job)
        row = record_to_row(job)
        update = {col: row[col] for col in _UPDATE_COLUMNS}
        rows = await self._execute(
            lambda: self.client.table(self._table).update(update).eq("id", job.id)
        )
        if not rows:
            # The row disappeared between the read and the write.
            raise JobNotFoundError(job.id)
        saved = row_to_record(rows[0])
        self._broadcaster.publish(saved)
        return saved

    async def find_active(self, target_key: str) -> Optional[JobRecord]:
        diagnostic_id, job_type = split_target_key(target_key)
        rows = await self._execute(
            lambda: self.client.table(self._table)
            .select("*")
            .eq("diagnostic_id", diagnostic_id)
            .eq("type", job_type)
            .in_("status", [JobStatus.PENDING.value, JobStatus.PROCESSING.value])
            .limit(1)
        )
        return row_to_record(rows[0]) if rows else None

    async def list_jobs(self, shop_id: Optional[str] = None, limit: int = 10) -> List[JobRecord]:
        def build():
            query = self.client.table(self._table).select("*")
            if shop_id:
                query = query.eq("shop_id", shop_id)
            return query.order("created_at", desc=True).limit(limit)

        return [row_to_record(row) for row in await self._execute(build)]


def build_store(backend: Optional[str] = None) -> JobStore:
    """Create the store selected by settings.job_store_backend."""
    backend = backend or settings.job_store_backend
    if backend == "memory":
        return InMemoryJobStore()
    if backend == "supabase":
        return SupabaseJobStore()
    raise ValueError(f"Unknown job store backend '{backend}'")
