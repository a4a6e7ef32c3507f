"""Live job progress for one subscriber.

`StatusPublisher.stream()` yields events until every watched job is terminal
or the consumer stops iterating. Row-by-row checkpoints arrive in bursts,
so per-job updates are coalesced: the first change opens a debounce window
and the latest snapshot seen in that window is emitted when it closes.
Terminal snapshots are emitted immediately.
"""

import asyncio
import logging
import time
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Set

from pydantic import BaseModel

from bulkjobs.jobs.models import JobRecord, JobSnapshot
from bulkjobs.jobs.store import JobStore, JobSubscription

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    INITIAL = "initial"
    UPDATE = "update"
    COMPLETE = "complete"
    ERROR = "error"
    HEARTBEAT = "heartbeat"


def _now_ms() -> int:
    return int(time.time() * 1000)


class StatusEvent(BaseModel):
    type: EventType
    job_id: Optional[str] = None
    data: Optional[JobSnapshot] = None
    message: Optional[str] = None
    timestamp: int

    @classmethod
    def make(cls, type: EventType, job_id: Optional[str] = None,
             data: Optional[JobSnapshot] = None, message: Optional[str] = None) -> "StatusEvent":
        return cls(type=type, job_id=job_id, data=data, message=message, timestamp=_now_ms())

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type.value, "timestamp": self.timestamp}
        if self.job_id is not None:
            payload["jobId"] = self.job_id
        if self.data is not None:
            payload["data"] = self.data.to_payload()
        if self.message is not None:
            payload["message"] = self.message
        return payload


class StatusPublisher:
    def __init__(
        self,
        store: JobStore,
        debounce_seconds: float = 0.5,
        heartbeat_seconds: float = 30.0,
    ):
        self._store = store
        self._debounce = debounce_seconds
        self._heartbeat = heartbeat_seconds

    async def stream(self, job_ids: Sequence[str], user_id: str) -> AsyncIterator[StatusEvent]:
        requested = list(dict.fromkeys(j for j in job_ids if j))
        try:
            jobs = await self._store.get_jobs(requested)
        except Exception:
            logger.exception("Failed to fetch jobs for stream")
            yield StatusEvent.make(EventType.ERROR, message="Failed to fetch jobs")
            return

        owned = {job.id: job for job in jobs if job.user_id == user_id}
        watched: Set[str] = set()
        terminal: Set[str] = set()
        initial: Dict[str, JobRecord] = {}
        for job_id in requested:
            job = owned.get(job_id)
            if job is None:
                yield StatusEvent.make(EventType.ERROR, job_id=job_id, message="Job not found")
                continue
            watched.add(job_id)
            initial[job_id] = job
            yield StatusEvent.make(EventType.INITIAL, job_id=job_id, data=JobSnapshot.from_job(job))
            if job.status.is_terminal:
                terminal.add(job_id)

        if terminal >= watched:
            yield StatusEvent.make(EventType.COMPLETE, message="All jobs completed")
            return

        loop = asyncio.get_running_loop()
        queue: "asyncio.Queue[StatusEvent]" = asyncio.Queue()
        pending: Dict[str, JobSnapshot] = {}
        timers: Dict[str, asyncio.TimerHandle] = {}
        finished: List[bool] = [False]

        def flush(job_id: str) -> None:
            timers.pop(job_id, None)
            snapshot = pending.pop(job_id, None)
            if snapshot is None or finished[0]:
                return
            queue.put_nowait(StatusEvent.make(EventType.UPDATE, job_id=job_id, data=snapshot))
            if snapshot.status.is_terminal:
                terminal.add(job_id)
                if terminal >= watched:
                    finished[0] = True
                    queue.put_nowait(StatusEvent.make(EventType.COMPLETE, message="All jobs completed"))

        def handle_change(job: JobRecord) -> None:
            if finished[0] or job.user_id != user_id:
                return
            if job.id not in watched or job.id in terminal:
                return
            pending[job.id] = JobSnapshot.from_job(job)
            if job.status.is_terminal:
                handle = timers.pop(job.id, None)
                if handle is not None:
                    handle.cancel()
                flush(job.id)
            elif job.id not in timers:
                timers[job.id] = loop.call_later(self._debounce, flush, job.id)

        def on_change(job: JobRecord) -> None:
            loop.call_soon_threadsafe(handle_change, job)

        async def heartbeat() -> None:
            while True:
                await asyncio.sleep(self._heartbeat)
                queue.put_nowait(StatusEvent.make(EventType.HEARTBEAT))

        subscription: Optional[JobSubscription] = None
        heartbeat_task: Optional[asyncio.Task] = None
        try:
            subscription = await self._store.subscribe(watched - terminal, on_change)
            heartbeat_task = asyncio.create_task(heartbeat())

            # Catch changes that landed between the initial read and subscribing
            for job in await self._store.get_jobs(list(watched - terminal)):
                before = initial[job.id]
                if (job.status, job.processed_rows) != (before.status, before.processed_rows):
                    handle_change(job)

            while True:
                event = await queue.get()
                yield event
                if event.type == EventType.COMPLETE:
                    return
        except Exception as e:
            logger.exception("Status stream failed")
            yield StatusEvent.make(EventType.ERROR, message=str(e) or "Stream error")
        finally:
            finished[0] = True
            for handle in timers.values():
                handle.cancel()
            timers.clear()
            if heartbeat_task is not None:
                heartbeat_task.cancel()
            if subscription is not None:
                try:
                    await subscription.close()
                except Exception:
                    logger.warning("Failed to close job subscription", exc_info=True)
