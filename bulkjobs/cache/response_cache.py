"""Content-addressed cache of model responses.

Identical (model, instructions, input) requests return the stored output
instead of calling the provider again. Every operation is best-effort: a
backend failure degrades to a miss or a skipped write, never an error.
"""

import asyncio
import hashlib
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Set

from pydantic import BaseModel

from bulkjobs.cache.backends import CacheBackend, CacheEntry
from bulkjobs.jobs.models import utc_now

logger = logging.getLogger(__name__)

DAY = 24 * 60 * 60

# Expensive models are cached longer
CACHE_TTL_SECONDS: Dict[str, int] = {
    "gpt-5.2": 7 * DAY,
    "gpt-5.1": 7 * DAY,
    "gpt-5-mini": 3 * DAY,
    "claude-opus-4-5": 7 * DAY,
    "claude-sonnet-4-5": 5 * DAY,
    "claude-haiku-4-5": 3 * DAY,
    "gemini-3-pro": 5 * DAY,
    "gemini-2.5-pro": 5 * DAY,
    "gemini-2.5-flash": 3 * DAY,
    "llama-3.3-70b-versatile": 1 * DAY,
}
DEFAULT_TTL_SECONDS = 1 * DAY

_WHITESPACE = re.compile(r"\s+")


class CacheHit(BaseModel):
    response: str
    tokens_used: int = 0


def generate_cache_key(model: str, system_prompt: Optional[str], user_prompt: str) -> str:
    """SHA-256 over the normalized request.

    The user prompt is trimmed, case-folded and whitespace-collapsed so
    incidental formatting differences share one entry.
    """
    normalized = "::".join([
        model.strip().lower(),
        (system_prompt or "").strip(),
        _WHITESPACE.sub(" ", user_prompt.strip().casefold()),
    ])
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def ttl_for_model(model: str) -> int:
    return CACHE_TTL_SECONDS.get(model.strip().lower(), DEFAULT_TTL_SECONDS)


class ResponseCache:
    def __init__(
        self,
        backend: CacheBackend,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._backend = backend
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()

    key = staticmethod(generate_cache_key)

    async def get(self, cache_key: str) -> Optional[CacheHit]:
        """Return the cached response, or None on miss, expiry or backend error."""
        try:
            entry = await self._backend.fetch(cache_key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                await self._backend.delete(cache_key)
                return None
        except Exception:
            logger.exception("Cache lookup failed for %s", cache_key[:16])
            return None

        task = asyncio.create_task(self._record_hit(cache_key))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return CacheHit(response=entry.response, tokens_used=entry.tokens_used)

    async def put(self, cache_key: str, model: str, response: str, tokens_used: int) -> None:
        now = self._clock()
        entry = CacheEntry(
            cache_key=cache_key,
            model=model,
            response=response,
            tokens_used=tokens_used,
            expires_at=now + timedelta(seconds=ttl_for_model(model)),
            created_at=now,
            last_hit_at=now,
        )
        try:
            await self._backend.upsert(entry)
        except Exception:
            logger.exception("Cache write failed for %s", cache_key[:16])

    async def sweep(self) -> int:
        """Delete every expired entry. Returns how many were removed."""
        try:
            removed = await self._backend.delete_expired(self._clock())
        except Exception:
            logger.exception("Cache sweep failed")
            return 0
        if removed:
            logger.info("Cache sweep removed %d expired entries", removed)
        return removed

    async def drain(self) -> None:
        """Wait for outstanding hit-metadata updates."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    async def _record_hit(self, cache_key: str) -> None:
        try:
            await self._backend.record_hit(cache_key)
        except Exception:
            logger.warning("Cache hit update failed for %s", cache_key[:16], exc_info=True)
