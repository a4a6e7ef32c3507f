"""Worker endpoints for cron-style triggering of the scheduler."""

import asyncio
import logging
from typing import List, Optional, Set

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from bulkjobs.auth.supabase_auth import verify_worker_secret

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_worker_secret)])

# Set by main.py during lifespan
_scheduler = None
_background: Set[asyncio.Task] = set()


class TriggerRequest(BaseModel):
    jobIds: List[str] = []


def set_scheduler(scheduler):
    global _scheduler
    _scheduler = scheduler


def _require_scheduler():
    if _scheduler is None:
        raise HTTPException(status_code=503, detail="Worker scheduler not initialized")
    return _scheduler


@router.api_route("/worker", methods=["GET", "POST"])
async def run_worker():
    """Run one scheduler tick and return its summary."""
    summary = await _require_scheduler().tick(wait=False)
    payload = summary.to_payload()
    if summary.already_running:
        payload["message"] = "Worker tick already running"
    elif summary.jobs_processed == 0:
        payload["message"] = "No jobs queued"
    else:
        payload["message"] = f"Processed {summary.jobs_processed} job(s)"
    return payload


@router.post("/worker/trigger")
async def trigger_worker(request: Optional[TriggerRequest] = None):
    """Start a tick in the background and return immediately."""
    scheduler = _require_scheduler()

    async def run() -> None:
        try:
            await scheduler.tick(wait=False)
        except Exception:
            logger.exception("Triggered worker tick failed")

    task = asyncio.create_task(run())
    _background.add(task)
    task.add_done_callback(_background.discard)
    return {"triggered": True, "jobCount": len(request.jobIds) if request else 0, "message": "Worker triggered"}
