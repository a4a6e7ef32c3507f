"""Storage backends for the response cache."""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field
from supabase import AsyncClient

from bulkjobs.jobs.models import utc_now

CACHE_TABLE = "response_cache"


class CacheEntry(BaseModel):
    cache_key: str
    model: str
    response: str
    tokens_used: int = 0
    expires_at: datetime
    hit_count: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    last_hit_at: datetime = Field(default_factory=utc_now)


class CacheBackend(ABC):
    @abstractmethod
    async def fetch(self, cache_key: str) -> Optional[CacheEntry]:
        ...

    @abstractmethod
    async def upsert(self, entry: CacheEntry) -> None:
        ...

    @abstractmethod
    async def delete(self, cache_key: str) -> None:
        ...

    @abstractmethod
    async def record_hit(self, cache_key: str) -> None:
        """Increment hit_count and set last_hit_at."""
        ...

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        ...


class InMemoryCacheBackend(CacheBackend):
    def __init__(self):
        self.entries: Dict[str, CacheEntry] = {}

    async def fetch(self, cache_key: str) -> Optional[CacheEntry]:
        entry = self.entries.get(cache_key)
        return entry.model_copy() if entry else None

    async def upsert(self, entry: CacheEntry) -> None:
        self.entries[entry.cache_key] = entry.model_copy()

    async def delete(self, cache_key: str) -> None:
        self.entries.pop(cache_key, None)

    async def record_hit(self, cache_key: str) -> None:
        entry = self.entries.get(cache_key)
        if entry is not None:
            entry.hit_count += 1
            entry.last_hit_at = utc_now()

    async def delete_expired(self, now: datetime) -> int:
        expired = [k for k, e in self.entries.items() if e.expires_at <= now]
        for key in expired:
            self.entries.pop(key, None)
        return len(expired)


class SupabaseCacheBackend(CacheBackend):
    def __init__(self, client: AsyncClient):
        self._client = client

    def _table(self):
        return self._client.table(CACHE_TABLE)

    async def fetch(self, cache_key: str) -> Optional[CacheEntry]:
        response = await (
            self._table()
            .select("cache_key, model, response, tokens_used, expires_at, hit_count, created_at, last_hit_at")
            .eq("cache_key", cache_key)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        row = response.data[0]
        row["tokens_used"] = row.get("tokens_used") or 0
        row["hit_count"] = row.get("hit_count") or 0
        return CacheEntry.model_validate(row)

    async def upsert(self, entry: CacheEntry) -> None:
        await self._table().upsert(
            entry.model_dump(mode="json"), on_conflict="cache_key"
        ).execute()

    async def delete(self, cache_key: str) -> None:
        await self._table().delete().eq("cache_key", cache_key).execute()

    async def record_hit(self, cache_key: str) -> None:
        await self._client.rpc("increment_cache_hit", {"p_cache_key": cache_key}).execute()

    async def delete_expired(self, now: datetime) -> int:
        response = await self._table().delete().lt("expires_at", now.isoformat()).execute()
        return len(response.data or [])
