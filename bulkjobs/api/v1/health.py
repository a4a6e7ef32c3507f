"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from bulkjobs.config import settings

router = APIRouter()


@router.get("/health")
async def health_check():
    """Service health and runtime info."""
    return {
        "status": "healthy",
        "job_store_mode": settings.job_store_mode,
        "worker_poll_interval_seconds": settings.worker_poll_interval_seconds,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
