"""Worker scheduler: stale recovery, atomic claims, concurrent execution.

One `tick()` is one worker invocation, whether it comes from the in-process
poll loop, the worker endpoint, or an external cron. The claim primitive of
the job store is what keeps two ticks from running the same job.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from bulkjobs.jobs.models import JobOutcome, JobStatus, TickSummary, utc_now
from bulkjobs.jobs.store import ClaimUnavailableError, JobStore
from bulkjobs.processing.executor import JobExecutor

logger = logging.getLogger(__name__)


class WorkerScheduler:
    def __init__(
        self,
        store: JobStore,
        executor: JobExecutor,
        *,
        parallel_jobs: int = 5,
        stale_after: timedelta = timedelta(minutes=5),
        max_stale_retries: int = 3,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._executor = executor
        self._parallel_jobs = parallel_jobs
        self._stale_after = stale_after
        self._max_stale_retries = max_stale_retries
        self._clock = clock
        self._tick_lock = asyncio.Lock()

    async def recover_stale_jobs(self) -> int:
        """Requeue `processing` jobs whose claim is older than the staleness window.

        Jobs at the retry ceiling stay in `processing` until something outside
        this service fails them.
        """
        cutoff = self._clock() - self._stale_after
        stale = await self._store.find_stale_jobs(cutoff, self._max_stale_retries)
        reset = 0
        for job in stale:
            requeued = await self._store.requeue_stale_job(job.id, cutoff, job.retry_count)
            if requeued:
                reset += 1
                logger.info("Requeued stale job %s (retry %d)", job.id, job.retry_count + 1)
        if reset:
            logger.info("Reset %d stale job(s)", reset)
        return reset

    async def claim_jobs(self) -> List[str]:
        try:
            job_ids = await self._store.claim_next_jobs(self._parallel_jobs)
            if job_ids:
                logger.info("Claimed %d job(s) via bulk claim", len(job_ids))
            return job_ids
        except ClaimUnavailableError as e:
            logger.info("Bulk claim unavailable (%s), claiming one at a time", e)

        job_ids: List[str] = []
        while len(job_ids) < self._parallel_jobs:
            job_id = await self._store.claim_next_job()
            if job_id is None:
                break
            job_ids.append(job_id)
        return job_ids

    async def tick(self, wait: bool = True) -> TickSummary:
        """Run one worker pass. Ticks within one process never overlap.

        With `wait=False` a tick that finds another one in progress returns
        at once with `already_running` set instead of queueing behind it.
        """
        if not wait and self._tick_lock.locked():
            logger.info("Worker tick already running, skipping")
            return TickSummary(already_running=True)
        async with self._tick_lock:
            return await self._tick()

    async def _tick(self) -> TickSummary:
        started = time.monotonic()
        summary = TickSummary()
        summary.stale_jobs_reset = await self.recover_stale_jobs()

        job_ids = await self.claim_jobs()
        if not job_ids:
            summary.elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.debug("No jobs queued")
            return summary

        logger.info("Processing %d job(s): %s", len(job_ids), ", ".join(job_ids))
        settled = await asyncio.gather(
            *(self._executor.run(job_id) for job_id in job_ids),
            return_exceptions=True,
        )

        summary.jobs_processed = len(job_ids)
        for job_id, result in zip(job_ids, settled):
            if isinstance(result, BaseException):
                logger.error("Executor for job %s raised: %r", job_id, result)
                result = JobOutcome(job_id=job_id, status=JobStatus.FAILED, error=str(result))
            summary.jobs.append(result)
            if result.status == JobStatus.COMPLETED:
                summary.completed += 1
            elif result.status == JobStatus.FAILED:
                summary.failed += 1
            summary.total_rows_processed += result.processed_rows
            summary.total_tokens += result.total_tokens

        summary.elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Tick done: %d/%d completed, %d rows, %d tokens in %dms",
            summary.completed, summary.jobs_processed, summary.total_rows_processed,
            summary.total_tokens, summary.elapsed_ms,
        )
        return summary

    async def run_forever(self, interval_seconds: float, stop: Optional[asyncio.Event] = None) -> None:
        """Tick every `interval_seconds` until `stop` is set."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Worker tick failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
