"""Runs the lifecycle of one claimed job.

Rows already present in `results` are never reprocessed, so a job that was
requeued after a crash resumes where its last checkpoint left off. Progress
is persisted once per batch, and the job status is re-read before every
batch so a cancellation takes effect at the next batch boundary.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Set

import httpx

from bulkjobs.cache.response_cache import ResponseCache
from bulkjobs.jobs.models import (
    JobOutcome,
    JobRecord,
    JobStatus,
    ResultRow,
    compute_progress,
    utc_now,
)
from bulkjobs.jobs.store import JobStore
from bulkjobs.jobs.usage import build_usage_record, credits_for_tokens
from bulkjobs.llm.credentials import decrypt_api_key, is_valid_decrypted_key
from bulkjobs.llm.invoker import ModelInvoker, resolve_invoker
from bulkjobs.llm.prompts import get_system_prompt, infer_task_type
from bulkjobs.processing.batch import BatchProcessor

logger = logging.getLogger(__name__)

InvokerFactory = Callable[..., ModelInvoker]

_CLAIMED = {JobStatus.PROCESSING}


class JobExecutor:
    def __init__(
        self,
        store: JobStore,
        cache: ResponseCache,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        encryption_salt: str = "",
        batch_size: int = 12,
        strict_positional: bool = True,
        max_output_tokens: int = 2000,
        invoker_factory: InvokerFactory = resolve_invoker,
    ):
        self._store = store
        self._cache = cache
        self._http = http_client
        self._encryption_salt = encryption_salt
        self._batch_size = batch_size
        self._strict = strict_positional
        self._max_output_tokens = max_output_tokens
        self._invoker_factory = invoker_factory
        self._background: Set[asyncio.Task] = set()

    async def run(self, job_id: str) -> JobOutcome:
        started = time.monotonic()
        processed = 0
        input_tokens = output_tokens = 0

        def outcome(status: JobStatus, error: Optional[str] = None) -> JobOutcome:
            return JobOutcome(
                job_id=job_id,
                status=status,
                processed_rows=processed,
                total_tokens=input_tokens + output_tokens,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                error=error,
            )

        try:
            job = await self._store.get_job(job_id)
            if job is None:
                return outcome(JobStatus.FAILED, "Job not found")

            api_key = decrypt_api_key(job.config.encrypted_api_key, self._encryption_salt)
            if not is_valid_decrypted_key(api_key):
                await self._mark_failed(job_id, "Invalid API key")
                return outcome(JobStatus.FAILED, "Invalid API key")

            invoker = self._invoker_factory(
                job.config.model,
                job.config.specific_model,
                api_key,
                self._http,
                max_output_tokens=self._max_output_tokens,
            )
            processor = BatchProcessor(
                invoker,
                self._cache,
                system_prompt=get_system_prompt(
                    job.config.task_type or infer_task_type(job.config.prompt or "")
                ),
                prompt_template=job.config.prompt,
                batch_size=self._batch_size,
                strict_positional=self._strict,
                job_id=job_id,
            )

            results: List[ResultRow] = list(job.results)
            done = {r.index for r in results}
            pending = sorted(
                (row for row in job.input_data if row.index not in done),
                key=lambda row: row.index,
            )
            total_rows = job.total_rows or len(job.input_data)
            batches = processor.partition(pending)
            logger.info(
                "Job %s: %d/%d rows pending in %d batch(es), model %s/%s",
                job_id, len(pending), total_rows, len(batches),
                job.config.model, invoker.model_id,
            )

            for batch in batches:
                status = await self._store.get_status(job_id)
                if status != JobStatus.PROCESSING:
                    return self._stopped(job_id, status, outcome)

                batch_outcome = await processor.process_chunk(batch)
                for row in batch_outcome.results:
                    if row.index not in done:
                        done.add(row.index)
                        results.append(row)
                        processed += 1
                input_tokens += batch_outcome.input_tokens
                output_tokens += batch_outcome.output_tokens

                written = await self._store.update_job(
                    job_id,
                    {
                        "results": results,
                        "processed_rows": len(results),
                        "progress": compute_progress(len(results), total_rows),
                        "credits_used": _credits(results),
                    },
                    expected_statuses=_CLAIMED,
                )
                if not written:
                    return self._stopped(job_id, await self._store.get_status(job_id), outcome)

            written = await self._store.update_job(
                job_id,
                {
                    "status": JobStatus.COMPLETED,
                    "progress": 100,
                    "processed_rows": len(results),
                    "results": results,
                    "credits_used": _credits(results),
                    "completed_at": utc_now(),
                },
                expected_statuses=_CLAIMED,
            )
            if not written:
                return self._stopped(job_id, await self._store.get_status(job_id), outcome)

            empty = [r.index for r in results if not r.output and not r.error]
            if empty:
                logger.warning("Job %s: %d row(s) completed with empty output", job_id, len(empty))
            logger.info(
                "Job %s completed: %d rows this run, %d tokens",
                job_id, processed, input_tokens + output_tokens,
            )
            self._record_usage(job, invoker.model_id, input_tokens, output_tokens, processed)
            return outcome(JobStatus.COMPLETED)

        except Exception as e:
            logger.exception("Job %s failed", job_id)
            message = str(e) or type(e).__name__
            await self._mark_failed(job_id, message)
            return outcome(JobStatus.FAILED, message)

    async def drain(self) -> None:
        """Wait for outstanding usage writes."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def _stopped(self, job_id: str, status: Optional[JobStatus], outcome) -> JobOutcome:
        if status == JobStatus.CANCELLED:
            logger.info("Job %s cancelled, stopping", job_id)
            return outcome(JobStatus.CANCELLED)
        logger.warning("Job %s is no longer processing (status %s), stopping", job_id,
                       status.value if status else None)
        return outcome(status or JobStatus.FAILED, "Job no longer claimed by this worker")

    async def _mark_failed(self, job_id: str, message: str) -> None:
        try:
            await self._store.update_job(
                job_id,
                {
                    "status": JobStatus.FAILED,
                    "error_message": message,
                    "completed_at": utc_now(),
                },
                expected_statuses=_CLAIMED,
            )
        except Exception:
            logger.exception("Job %s: could not mark failed", job_id)

    def _record_usage(
        self, job: JobRecord, model_id: str, input_tokens: int, output_tokens: int, rows: int
    ) -> None:
        record = build_usage_record(
            job_id=job.id,
            user_id=job.user_id,
            provider=job.config.model,
            model=model_id,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            rows_processed=rows,
        )

        async def write() -> None:
            try:
                await self._store.record_usage(record)
            except Exception:
                logger.warning("Job %s: usage record failed", job.id, exc_info=True)

        task = asyncio.create_task(write())
        self._background.add(task)
        task.add_done_callback(self._background.discard)


def _credits(results: List[ResultRow]) -> int:
    return credits_for_tokens(sum(r.tokens for r in results if not r.cached))
