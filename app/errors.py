"""Exception types for the job service and their FastAPI handlers."""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import structlog

logger = structlog.get_logger(__name__)


class JobServiceError(Exception):
    """Base exception for the job service."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class JobNotFoundError(JobServiceError):
    """The job id is unknown or the row was deleted."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(
            "NOT_FOUND",
            f"Job '{job_id}' not found",
            details={"jobId": job_id},
            status_code=404,
        )


class JobConflictError(JobServiceError):
    """An active job already exists for the same target key."""

    def __init__(self, existing_job_id: str, target_key: str):
        self.existing_job_id = existing_job_id
        self.target_key = target_key
        super().__init__(
            "CONFLICT",
            "A similar job is already running. Wait for it to finish.",
            details={"existingJobId": existing_job_id, "targetKey": target_key},
            status_code=409,
        )


class JobStateError(JobServiceError):
    """A write would break the job record lifecycle rules."""

    def __init__(self, message: str):
        super().__init__("INVALID_STATE", message, status_code=409)


class JobStoreError(JobServiceError):
    """The job record store could not be read or written."""

    def __init__(self, message: str):
        super().__init__("STORE_ERROR", message, status_code=503)


class JobAbortedError(JobServiceError):
    """Raised by a processor to fail the whole job, not just one item."""

    def __init__(self, message: str):
        super().__init__("JOB_ABORTED", message, status_code=500)


def register_exception_handlers(app: FastAPI) -> None:
    """Render JobServiceError subclasses as JSON error bodies."""

    @app.exception_handler(JobServiceError)
    async def job_service_error_handler(request: Request, exc: JobServiceError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        content = {"success": False, "error": exc.message, "code": exc.code}
        if exc.details:
            content.update(exc.details)
        return JSONResponse(status_code=exc.status_code, content=content)
