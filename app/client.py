"""Async HTTP client for the job API, used by client-side pollers."""

from __future__ import annotations

from typing import Any

import httpx

from app.errors import JobConflictError, JobNotFoundError, JobServiceError
from app.jobs.models import AffectedItem, JobRecord, make_target_key


class JobServiceClient:
    """Talks to /api/v1/jobs. `get_job` doubles as a JobPoller fetch function."""

    def __init__(
        self,
        base_url: str = "http://localhost:8001/api/v1",
        token: str | None = None,
        http: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._headers = headers

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "JobServiceClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def enqueue(
        self,
        shop_id: str,
        diagnostic_id: str,
        issue_type: str,
        affected_items: list[AffectedItem | dict[str, Any]],
    ) -> str:
        """Queue a resolution job and return its id.

        Raises JobConflictError carrying the existing job id on 409.
        """
        body = {
            "shopId": shop_id,
            "diagnosticId": diagnostic_id,
            "issueType": issue_type,
            "affectedItems": [
                i.model_dump(exclude_none=True) if isinstance(i, AffectedItem) else i
                for i in affected_items
            ],
        }
        r = await self._http.post(f"{self.base_url}/jobs", json=body, headers=self._headers)
        if r.status_code == 409:
            data = r.json()
            raise JobConflictError(data.get("existingJobId", ""), make_target_key(diagnostic_id, issue_type))
        self._raise_for_status(r)
        return r.json()["jobId"]

    async def get_job(self, job_id: str) -> JobRecord:
        r = await self._http.get(f"{self.base_url}/jobs/{job_id}", headers=self._headers)
        if r.status_code == 404:
            raise JobNotFoundError(job_id)
        self._raise_for_status(r)
        return JobRecord.model_validate(r.json())

    async def list_jobs(self, shop_id: str | None = None, limit: int = 10) -> list[JobRecord]:
        params: dict[str, Any] = {"limit": limit}
        if shop_id:
            params["shop_id"] = shop_id
        r = await self._http.get(f"{self.base_url}/jobs", params=params, headers=self._headers)
        self._raise_for_status(r)
        return [JobRecord.model_validate(j) for j in r.json()["jobs"]]

    @staticmethod
    def _raise_for_status(r: httpx.Response) -> None:
        if r.status_code >= 400:
            try:
                message = r.json().get("error") or r.text
            except ValueError:
                message = r.text
            raise JobServiceError("HTTP_ERROR", message, status_code=r.status_code)
