"""Bulk Jobs Backend - FastAPI application."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import List

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulkjobs.config import settings
from bulkjobs.api.v1.router import v1_router
from bulkjobs.api.v1.health import router as health_root_router
from bulkjobs.api.v1 import jobs as jobs_api
from bulkjobs.api.v1 import worker as worker_api
from bulkjobs.cache.backends import InMemoryCacheBackend, SupabaseCacheBackend
from bulkjobs.cache.response_cache import ResponseCache
from bulkjobs.db.supabase_client import get_supabase
from bulkjobs.jobs.in_process_store import InMemoryJobStore
from bulkjobs.jobs.supabase_store import SupabaseJobStore
from bulkjobs.processing.executor import JobExecutor
from bulkjobs.processing.scheduler import WorkerScheduler
from bulkjobs.streaming.publisher import StatusPublisher

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _build_stores():
    if settings.job_store_mode == "memory":
        return InMemoryJobStore(), InMemoryCacheBackend()
    if settings.job_store_mode != "supabase":
        raise RuntimeError(f"Unknown JOB_STORE_MODE: {settings.job_store_mode}")
    client = await get_supabase()
    return SupabaseJobStore(client), SupabaseCacheBackend(client)


async def _sweep_cache_forever(cache: ResponseCache, interval: float, stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
        except asyncio.TimeoutError:
            await cache.sweep()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logger.info("Starting Bulk Jobs Backend on port %s", settings.port)
    logger.info("Job store mode: %s", settings.job_store_mode)

    store, cache_backend = await _build_stores()
    cache = ResponseCache(cache_backend)
    http_client = httpx.AsyncClient(timeout=settings.model_timeout_seconds)

    executor = JobExecutor(
        store,
        cache,
        http_client,
        encryption_salt=settings.encryption_salt,
        batch_size=settings.batch_size,
        strict_positional=settings.strict_positional_fallback,
        max_output_tokens=settings.max_output_tokens,
    )
    scheduler = WorkerScheduler(
        store,
        executor,
        parallel_jobs=settings.parallel_jobs,
        stale_after=timedelta(seconds=settings.stale_after_seconds),
        max_stale_retries=settings.max_stale_retries,
    )
    publisher = StatusPublisher(
        store,
        debounce_seconds=settings.stream_debounce_ms / 1000,
        heartbeat_seconds=settings.stream_heartbeat_seconds,
    )

    # Wire services into API endpoints
    jobs_api.set_store(store)
    jobs_api.set_publisher(publisher)
    worker_api.set_scheduler(scheduler)

    stop = asyncio.Event()
    loops: List[asyncio.Task] = []
    if settings.worker_poll_interval_seconds > 0:
        loops.append(asyncio.create_task(
            scheduler.run_forever(settings.worker_poll_interval_seconds, stop)
        ))
        logger.info("Worker loop started (every %ss)", settings.worker_poll_interval_seconds)
    if settings.cache_sweep_interval_seconds > 0:
        loops.append(asyncio.create_task(
            _sweep_cache_forever(cache, settings.cache_sweep_interval_seconds, stop)
        ))

    yield

    # Shutdown
    logger.info("Shutting down Bulk Jobs Backend")
    stop.set()
    await asyncio.gather(*loops, return_exceptions=True)
    await executor.drain()
    await cache.drain()
    await http_client.aclose()


app = FastAPI(
    title="Bulk Jobs Service",
    description="Asynchronous bulk text processing through generative models",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints
