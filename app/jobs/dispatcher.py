"""Job dispatcher interface and enqueue request model."""

from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.jobs.models import AffectedItem, JobRecord, make_target_key
from app.jobs.store import JobStore


class EnqueueRequest(BaseModel):
    """A bulk resolution request for one issue of one diagnostic.

    Accepts both snake_case and the dashboard's camelCase keys.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    shop_id: str
    diagnostic_id: str
    issue_type: str = Field(min_length=1)
    affected_items: List[AffectedItem] = Field(default_factory=list)

    @property
    def target_key(self) -> str:
        return make_target_key(self.diagnostic_id, self.issue_type)

    def new_job(self) -> JobRecord:
        return JobRecord(
            target_key=self.target_key,
            shop_id=self.shop_id,
            diagnostic_id=self.diagnostic_id,
            job_type=self.issue_type.lower(),
            total_items=len(self.affected_items),
        )


class JobDispatcher(ABC):
    """Abstract interface for job dispatching (local or cloud)."""

    @property
    @abstractmethod
    def store(self) -> JobStore:
        """The job record store the dispatcher writes to."""
        ...

    @abstractmethod
    async def submit(self, request: EnqueueRequest) -> JobRecord:
        """Create a pending job and hand it to a runner without waiting.

        Raises JobConflictError if the target key already has an active job.
        """
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> JobRecord:
        """Get current status of a job. Raises JobNotFoundError."""
        ...

    @abstractmethod
    async def list_jobs(self, shop_id: Optional[str] = None, limit: int = 10) -> List[JobRecord]:
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
