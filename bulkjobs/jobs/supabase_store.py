"""Supabase-backed job store.

Claims go through the `get_next_job` / `get_next_jobs` SQL functions in
bulkjobs/db/schema.sql, which flip `queued -> processing` with
`FOR UPDATE SKIP LOCKED`. Change notifications come from Supabase Realtime.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Collection, Dict, List, Optional

from postgrest.exceptions import APIError
from pydantic import BaseModel
from supabase import AsyncClient

from bulkjobs.jobs.models import JobRecord, JobStatus, utc_now
from bulkjobs.jobs.store import (
    ClaimUnavailableError,
    JobChangeCallback,
    JobStore,
    JobSubscription,
)
from bulkjobs.jobs.usage import UsageRecord

logger = logging.getLogger(__name__)

JOBS_TABLE = "jobs"
USAGE_TABLE = "usage_logs"


def _to_json(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", exclude_none=True)
    if isinstance(value, (list, tuple)):
        return [_to_json(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_json(v) for k, v in value.items()}
    return value


def _extract_record(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Pull the new row out of a postgres_changes payload."""
    if "new" in payload:
        return payload["new"]
    data = payload.get("data") or {}
    return data.get("record")


class _RealtimeSubscription(JobSubscription):
    def __init__(self, client: AsyncClient, channel):
        self._client = client
        self._channel = channel

    async def close(self) -> None:
        if self._channel is None:
            return
        channel, self._channel = self._channel, None
        await self._client.remove_channel(channel)


class SupabaseJobStore(JobStore):
    """Job store over the `jobs` and `usage_logs` tables."""

    def __init__(self, client: AsyncClient):
        self._client = client

    def _jobs(self):
        return self._client.table(JOBS_TABLE)

    async def insert_job(self, job: JobRecord) -> str:
        await self._jobs().insert(job.to_row()).execute()
        return job.id

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        response = await self._jobs().select("*").eq("id", job_id).limit(1).execute()
        if not response.data:
            return None
        return JobRecord.from_row(response.data[0])

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        response = await self._jobs().select("status").eq("id", job_id).limit(1).execute()
        if not response.data:
            return None
        return JobStatus(response.data[0]["status"])

    async def get_jobs(self, job_ids: Collection[str]) -> List[JobRecord]:
        if not job_ids:
            return []
        response = await self._jobs().select("*").in_("id", list(job_ids)).execute()
        return [JobRecord.from_row(row) for row in response.data or []]

    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        response = await (
            self._jobs()
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [JobRecord.from_row(row) for row in response.data or []]

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Collection[JobStatus]] = None,
    ) -> bool:
        query = self._jobs().update(_to_json(fields)).eq("id", job_id)
        if expected_statuses is not None:
            query = query.in_("status", [s.value for s in expected_statuses])
        response = await query.execute()
        return bool(response.data)

    async def cancel_job(self, job_id: str, user_id: str) -> bool:
        response = await (
            self._jobs()
            .update({
                "status": JobStatus.CANCELLED.value,
                "completed_at": utc_now().isoformat(),
            })
            .eq("id", job_id)
            .eq("user_id", user_id)
            .in_("status", [JobStatus.QUEUED.value, JobStatus.PROCESSING.value])
            .execute()
        )
        return bool(response.data)

    async def claim_next_job(self) -> Optional[str]:
        response = await self._client.rpc("get_next_job").execute()
        return response.data or None

    async def claim_next_jobs(self, limit: int) -> List[str]:
        try:
            response = await self._client.rpc(
                "get_next_jobs", {"p_limit": limit}
            ).execute()
        except APIError as e:
            raise ClaimUnavailableError(f"get_next_jobs failed ({e.code}): {e.message}") from e
        return [row["job_id"] for row in response.data or []]

    async def find_stale_jobs(
        self, started_before: datetime, max_retries: int
    ) -> List[JobRecord]:
        response = await (
            self._jobs()
            .select("*")
            .eq("status", JobStatus.PROCESSING.value)
            .lt("started_at", started_before.isoformat())
            .lt("retry_count", max_retries)
            .execute()
        )
        return [JobRecord.from_row(row) for row in response.data or []]

    async def requeue_stale_job(
        self, job_id: str, started_before: datetime, retry_count: int
    ) -> bool:
        response = await (
            self._jobs()
            .update({
                "status": JobStatus.QUEUED.value,
                "started_at": None,
                "retry_count": retry_count + 1,
            })
            .eq("id", job_id)
            .eq("status", JobStatus.PROCESSING.value)
            .eq("retry_count", retry_count)
            .lt("started_at", started_before.isoformat())
            .execute()
        )
        return bool(response.data)

    async def record_usage(self, record: UsageRecord) -> None:
        await self._client.table(USAGE_TABLE).insert({
            "user_id": record.user_id,
            "job_id": record.job_id,
            "model": record.provider,
            "specific_model": record.model,
            "tokens_input": record.input_tokens,
            "tokens_output": record.output_tokens,
            "credits_charged": record.credits,
            "cost_usd": record.cost_usd,
            "source": record.source,
            "is_byok": True,
            "is_cached": False,
        }).execute()

    async def subscribe(
        self, job_ids: Collection[str], on_change: JobChangeCallback
    ) -> JobSubscription:
        def handle(payload: Dict[str, Any]) -> None:
            row = _extract_record(payload)
            if not row:
                return
            try:
                job = JobRecord.from_row(row)
            except ValueError:
                logger.warning("Ignoring malformed job change payload for %s", row.get("id"))
                return
            on_change(job)

        channel = self._client.channel(f"job-updates-{uuid.uuid4().hex[:8]}")
        channel.on_postgres_changes(
            "UPDATE",
            schema="public",
            table=JOBS_TABLE,
            filter=f"id=in.({','.join(job_ids)})",
            callback=handle,
        )
        await channel.subscribe()
        return _RealtimeSubscription(self._client, channel)
