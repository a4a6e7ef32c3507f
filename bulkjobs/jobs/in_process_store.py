"""In-process job store using asyncio for local development and tests.

Keeps job rows in a dict. Claims run under an asyncio.Lock so the
queued -> processing flip is atomic within the event loop.
No external dependencies (Supabase) needed.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Collection, Dict, List, Optional, Set

from bulkjobs.jobs.models import JobRecord, JobStatus, utc_now
from bulkjobs.jobs.store import (
    ClaimUnavailableError,
    JobChangeCallback,
    JobStore,
    JobSubscription,
)
from bulkjobs.jobs.usage import UsageRecord

logger = logging.getLogger(__name__)


class _LocalSubscription(JobSubscription):
    def __init__(self, store: "InMemoryJobStore", job_ids: Set[str], callback: JobChangeCallback):
        self.job_ids = job_ids
        self.callback = callback
        self._store = store
        self.closed = False

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._store._subscriptions.discard(self)


class InMemoryJobStore(JobStore):
    """Local job store. Processes claims one at a time via an asyncio lock."""

    def __init__(self, supports_bulk_claim: bool = True):
        self._jobs: Dict[str, JobRecord] = {}
        self._lock = asyncio.Lock()
        self._subscriptions: Set[_LocalSubscription] = set()
        self.usage_records: List[UsageRecord] = []
        self.supports_bulk_claim = supports_bulk_claim

    async def insert_job(self, job: JobRecord) -> str:
        self._jobs[job.id] = job.model_copy(deep=True)
        return job.id

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        job = self._jobs.get(job_id)
        return job.status if job else None

    async def get_jobs(self, job_ids: Collection[str]) -> List[JobRecord]:
        return [
            self._jobs[job_id].model_copy(deep=True)
            for job_id in job_ids
            if job_id in self._jobs
        ]

    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Collection[JobStatus]] = None,
    ) -> bool:
        job = self._jobs.get(job_id)
        if job is None:
            return False
        if expected_statuses is not None and job.status not in expected_statuses:
            return False
        self._write(job, fields)
        return True

    async def cancel_job(self, job_id: str, user_id: str) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.user_id != user_id:
            return False
        return await self.update_job(
            job_id,
            {"status": JobStatus.CANCELLED, "completed_at": utc_now()},
            expected_statuses={JobStatus.QUEUED, JobStatus.PROCESSING},
        )

    async def claim_next_job(self) -> Optional[str]:
        async with self._lock:
            return self._claim_one()

    async def claim_next_jobs(self, limit: int) -> List[str]:
        if not self.supports_bulk_claim:
            raise ClaimUnavailableError("bulk claim disabled for this store")
        async with self._lock:
            claimed = []
            while len(claimed) < limit:
                job_id = self._claim_one()
                if job_id is None:
                    break
                claimed.append(job_id)
            return claimed

    async def find_stale_jobs(
        self, started_before: datetime, max_retries: int
    ) -> List[JobRecord]:
        return [
            j.model_copy(deep=True)
            for j in self._jobs.values()
            if j.status == JobStatus.PROCESSING
            and j.started_at is not None
            and j.started_at < started_before
            and j.retry_count < max_retries
        ]

    async def requeue_stale_job(
        self, job_id: str, started_before: datetime, retry_count: int
    ) -> bool:
        async with self._lock:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.status != JobStatus.PROCESSING
                or job.retry_count != retry_count
                or job.started_at is None
                or job.started_at >= started_before
            ):
                return False
            self._write(job, {
                "status": JobStatus.QUEUED,
                "started_at": None,
                "retry_count": retry_count + 1,
            })
            return True

    async def record_usage(self, record: UsageRecord) -> None:
        self.usage_records.append(record)

    async def subscribe(
        self, job_ids: Collection[str], on_change: JobChangeCallback
    ) -> JobSubscription:
        subscription = _LocalSubscription(self, set(job_ids), on_change)
        self._subscriptions.add(subscription)
        return subscription

    def _claim_one(self) -> Optional[str]:
        queued = [j for j in self._jobs.values() if j.status == JobStatus.QUEUED]
        if not queued:
            return None
        queued.sort(key=lambda j: (-j.priority, j.created_at))
        job = queued[0]
        self._write(job, {"status": JobStatus.PROCESSING, "started_at": utc_now()})
        return job.id

    def _write(self, job: JobRecord, fields: Dict[str, Any]) -> None:
        data = job.model_dump()
        data.update(fields)
        updated = JobRecord.model_validate(data)
        self._jobs[job.id] = updated
        for subscription in list(self._subscriptions):
            if job.id not in subscription.job_ids:
                continue
            try:
                subscription.callback(updated.model_copy(deep=True))
            except Exception:
                logger.exception("Job change listener failed for %s", job.id)
