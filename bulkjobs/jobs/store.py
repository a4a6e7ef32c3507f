"""Job store interface consumed by the scheduler, executors and stream."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Collection, Dict, List, Optional

from bulkjobs.jobs.models import JobRecord, JobStatus
from bulkjobs.jobs.usage import UsageRecord

JobChangeCallback = Callable[[JobRecord], None]


class ClaimUnavailableError(RuntimeError):
    """The store cannot claim several jobs in one atomic call."""


class JobSubscription(ABC):
    """Handle for a live change feed. Closing it must be idempotent."""

    @abstractmethod
    async def close(self) -> None:
        ...


class JobStore(ABC):
    """Abstract durable job storage (Supabase in production, memory locally).

    Claim methods carry the at-most-one-worker guarantee: a job id is returned
    by at most one claim while it stays in `processing`.
    """

    @abstractmethod
    async def insert_job(self, job: JobRecord) -> str:
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobStatus]:
        ...

    @abstractmethod
    async def get_jobs(self, job_ids: Collection[str]) -> List[JobRecord]:
        ...

    @abstractmethod
    async def list_jobs(self, user_id: str, limit: int = 50) -> List[JobRecord]:
        """Newest first."""
        ...

    @abstractmethod
    async def update_job(
        self,
        job_id: str,
        fields: Dict[str, Any],
        expected_statuses: Optional[Collection[JobStatus]] = None,
    ) -> bool:
        """Write `fields` to the job row.

        When `expected_statuses` is given the write only applies if the current
        status is one of them. Returns whether a row was updated.
        """
        ...

    @abstractmethod
    async def cancel_job(self, job_id: str, user_id: str) -> bool:
        ...

    @abstractmethod
    async def claim_next_job(self) -> Optional[str]:
        ...

    @abstractmethod
    async def claim_next_jobs(self, limit: int) -> List[str]:
        """Raises ClaimUnavailableError when bulk claiming is not supported."""
        ...

    @abstractmethod
    async def find_stale_jobs(
        self, started_before: datetime, max_retries: int
    ) -> List[JobRecord]:
        """Jobs in `processing` started before the cutoff with retry_count < max_retries."""
        ...

    @abstractmethod
    async def requeue_stale_job(
        self, job_id: str, started_before: datetime, retry_count: int
    ) -> bool:
        """Put a stale job back to `queued` with retry_count + 1.

        Applies only while the job is still `processing` with the same
        retry_count and a `started_at` before the cutoff, so a job that was
        re-claimed in the meantime is left running.
        """
        ...

    @abstractmethod
    async def record_usage(self, record: UsageRecord) -> None:
        ...

    @abstractmethod
    async def subscribe(
        self, job_ids: Collection[str], on_change: JobChangeCallback
    ) -> JobSubscription:
        """Call `on_change` with the new row whenever one of `job_ids` is updated."""
        ...
