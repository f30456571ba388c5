"""Health check endpoint."""

from fastapi import APIRouter
import platform
import sys

from app.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and the active job store backend."""
    return {
        "status": "healthy",
        "job_store_backend": settings.job_store_backend,
        "max_concurrent_jobs": settings.max_concurrent_jobs,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
