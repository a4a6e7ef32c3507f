"""Job management API: submit bulk jobs, poll status, cancel, stream progress."""

import json
import math
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from bulkjobs.auth.supabase_auth import verify_jwt
from bulkjobs.jobs.models import InputRow, JobConfig, JobRecord, JobStatus

router = APIRouter()

# These will be set by main.py during lifespan
_store = None
_publisher = None

# Rough estimate: 500 tokens per row, one credit per thousand tokens
_ESTIMATED_TOKENS_PER_ROW = 500


def set_store(store):
    global _store
    _store = store


def set_publisher(publisher):
    global _publisher
    _publisher = publisher


def _require_store():
    if _store is None:
        raise HTTPException(status_code=503, detail="Job store not initialized")
    return _store


class JobSubmitRequest(BaseModel):
    inputs: List[str]
    config: JobConfig
    priority: int = 0


class JobSubmitResponse(BaseModel):
    jobId: str
    status: str
    totalRows: int
    creditsEstimated: int
    message: str


def _job_summary(job: JobRecord) -> dict:
    return {
        "id": job.id,
        "status": job.status.value,
        "progress": job.progress,
        "processedRows": job.processed_rows,
        "totalRows": job.total_rows,
        "createdAt": job.created_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.post("/jobs", response_model=JobSubmitResponse)
async def submit_job(request: JobSubmitRequest, user_id: str = Depends(verify_jwt)):
    """Queue a new bulk job."""
    store = _require_store()
    if not request.inputs:
        raise HTTPException(status_code=400, detail="inputs must be a non-empty array")
    if not request.config.model or not request.config.encrypted_api_key:
        raise HTTPException(status_code=400, detail="config.model and config.encryptedApiKey required")

    credits_estimated = math.ceil(len(request.inputs) * _ESTIMATED_TOKENS_PER_ROW * 0.001)
    job = JobRecord(
        user_id=user_id,
        priority=request.priority,
        config=request.config,
        input_data=[InputRow(index=i, input=text) for i, text in enumerate(request.inputs)],
        total_rows=len(request.inputs),
        credits_estimated=credits_estimated,
    )
    job_id = await store.insert_job(job)
    return JobSubmitResponse(
        jobId=job_id,
        status=JobStatus.QUEUED.value,
        totalRows=job.total_rows,
        creditsEstimated=credits_estimated,
        message="Job created. Poll GET /api/v1/jobs/{id} or stream /api/v1/jobs/stream.",
    )


@router.get("/jobs")
async def list_jobs(user_id: str = Depends(verify_jwt)):
    """The caller's 50 most recent jobs."""
    store = _require_store()
    jobs = await store.list_jobs(user_id, limit=50)
    return {"jobs": [_job_summary(job) for job in jobs]}


@router.get("/jobs/stream")
async def stream_jobs(
    jobIds: str = Query(..., description="Comma-separated job ids"),
    user_id: str = Depends(verify_jwt),
):
    """Server-Sent Events with live progress for the given jobs."""
    if _publisher is None:
        raise HTTPException(status_code=503, detail="Status publisher not initialized")
    job_ids = [j.strip() for j in jobIds.split(",") if j.strip()]
    if not job_ids:
        raise HTTPException(status_code=400, detail="At least one jobId required")

    async def event_stream():
        async for event in _publisher.stream(job_ids, user_id):
            yield {"data": json.dumps(event.to_payload())}

    return EventSourceResponse(
        event_stream(),
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@router.get("/jobs/{job_id}")
async def get_job_status(job_id: str, user_id: str = Depends(verify_jwt)):
    """Current status of a job; results are included once it has completed."""
    store = _require_store()
    job = await store.get_job(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail="Job not found")

    response = _job_summary(job)
    response["creditsUsed"] = job.credits_used
    response["errorMessage"] = job.error_message
    response["results"] = (
        [r.model_dump(exclude_none=True) for r in job.results]
        if job.status == JobStatus.COMPLETED else []
    )
    return response


@router.delete("/jobs/{job_id}")
async def cancel_job(job_id: str, user_id: str = Depends(verify_jwt)):
    """Cancel a queued or processing job. Rows finished so far are kept."""
    store = _require_store()
    if not await store.cancel_job(job_id, user_id):
        raise HTTPException(status_code=404, detail="Job not found or cannot be cancelled")
    return {"id": job_id, "status": JobStatus.CANCELLED.value, "message": "Job cancelled successfully"}
