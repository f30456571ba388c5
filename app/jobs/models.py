"""Job record data model for bulk SEO resolution jobs."""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
import uuid

from app.errors import JobStateError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# Allowed forward transitions. pending -> failed covers a job that dies
# before its first item.
_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING, JobStatus.FAILED},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


def can_transition(old: JobStatus, new: JobStatus) -> bool:
    """True if a record may move from `old` to `new` (same status is allowed)."""
    if old == new:
        return True
    return new in _TRANSITIONS[old]


def compute_progress(processed: int, total: int) -> int:
    if total <= 0:
        return 0
    return round(processed / total * 100)


def make_target_key(diagnostic_id: str, issue_type: str) -> str:
    """Identifying key used to reject duplicate submissions."""
    return f"{diagnostic_id}:{issue_type.lower()}"


def split_target_key(target_key: str) -> tuple:
    """Inverse of make_target_key: (diagnostic_id, issue_type)."""
    diagnostic_id, _, issue_type = target_key.rpartition(":")
    return diagnostic_id, issue_type


class JobRecord(BaseModel):
    """One row of the generation_jobs table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    target_key: str
    shop_id: Optional[str] = None
    diagnostic_id: Optional[str] = None
    job_type: str = ""
    status: JobStatus = JobStatus.PENDING
    total_items: int = Field(default=0, ge=0)
    processed_items: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    skipped_count: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0, le=100)
    current_item: Optional[str] = None
    error_message: Optional[str] = None
    last_item_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None

    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def implies_completion(self) -> bool:
        """Counts say the job is done even if the status has not flipped yet."""
        return self.total_items > 0 and self.processed_items >= self.total_items

    def check_invariants(self) -> None:
        accounted = self.success_count + self.failed_count + self.skipped_count
        if accounted != self.processed_items:
            raise JobStateError(
                f"Job {self.id}: success+failed+skipped={accounted} "
                f"but processed_items={self.processed_items}"
            )
        if self.processed_items > self.total_items:
            raise JobStateError(
                f"Job {self.id}: processed_items={self.processed_items} "
                f"exceeds total_items={self.total_items}"
            )
        if (self.error_message is not None) != (self.status == JobStatus.FAILED):
            raise JobStateError(
                f"Job {self.id}: error_message must be set only when status is failed"
            )

    def to_row(self) -> Dict[str, Any]:
        """Serialize for the storage backend (JSON-safe values)."""
        return self.model_dump(mode="json")


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIP = "skip"


@dataclass(frozen=True)
class ItemOutcome:
    """What a processor reports for one affected item."""
    kind: OutcomeKind
    reason: Optional[str] = None

    @classmethod
    def success(cls) -> "ItemOutcome":
        return cls(OutcomeKind.SUCCESS)

    @classmethod
    def failure(cls, reason: str) -> "ItemOutcome":
        return cls(OutcomeKind.FAILURE, reason)

    @classmethod
    def skip(cls, reason: Optional[str] = None) -> "ItemOutcome":
        return cls(OutcomeKind.SKIP, reason)


class AffectedItem(BaseModel):
    """One unit of work targeted by a job. Extra fields are kept as-is."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    name: Optional[str] = None
    type: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or self.id


@dataclass
class ItemResult:
    item_id: str
    name: Optional[str]
    outcome: ItemOutcome


@dataclass
class JobSummary:
    """Final record plus per-item results, returned by the runner."""
    job: JobRecord
    results: List[ItemResult]

    def by_kind(self, kind: OutcomeKind) -> List[ItemResult]:
        return [r for r in self.results if r.outcome.kind == kind]