from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from pydantic import BaseModel

from ..core import metrics
from ..core.config import CacheSettings
from ..core.logging import get_logger
from ..schemas.agents import DiscoverySource, provider_id

logger = get_logger(name=__name__)

T = TypeVar("T")
Clock = Callable[[], float]


@dataclass(slots=True)
class CacheEntry(Generic[T]):
    key: str
    value: T
    expires_at: float
    access_count: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.expires_at


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    errors: int = 0
    evictions: int = 0
    coalesced: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def _consume_exception(task: asyncio.Task[Any]) -> None:
    # Every waiter may have gone; mark the failure retrieved so it is not logged as lost.
    if not task.cancelled():
        task.exception()


def discovery_key(paper_id: str, source: DiscoverySource | str) -> str:
    """Canonical cache key for one paper looked up against one discovery source."""
    return f"{provider_id(source)}:{paper_id.strip().lower()}"


class DiscoveryCache:
    """TTL cache that collapses concurrent fetches of the same key.

    The first caller to miss on a key starts the fetch as its own task; it
    and every later caller for that key await the same task instead of
    fetching again. Cancelling a caller never cancels the fetch. A failed
    fetch is propagated to every waiter and nothing is stored, so the next
    caller retries from scratch. Expired entries are dropped on read.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 21_600.0,
        max_entries: int = 1000,
        name: str = "discovery",
        clock: Clock | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._name = name
        self._clock: Clock = clock or time.monotonic
        self._entries: dict[str, CacheEntry[Any]] = {}
        self._inflight: dict[str, asyncio.Task[Any]] = {}
        self._hits = 0
        self._misses = 0
        self._errors = 0
        self._evictions = 0
        self._coalesced = 0

    @classmethod
    def from_settings(cls, settings: CacheSettings, **kwargs: Any) -> "DiscoveryCache":
        return cls(ttl_seconds=settings.ttl_seconds, max_entries=settings.max_entries, **kwargs)

    @property
    def name(self) -> str:
        return self._name

    async def get_or_fetch(
        self,
        key: str,
        fetch_fn: Callable[[], Awaitable[T]],
        *,
        ttl: float | None = None,
    ) -> T:
        entry = self._lookup(key)
        if entry is not None:
            entry.access_count += 1
            self._hits += 1
            metrics.increment_cache_hit(cache=self._name)
            return entry.value

        pending = self._inflight.get(key)
        if pending is not None:
            self._coalesced += 1
            metrics.increment_cache_coalesced(cache=self._name)
        else:
            self._misses += 1
            metrics.increment_cache_miss(cache=self._name)
            pending = asyncio.create_task(self._fetch(key, fetch_fn, ttl), name=f"{self._name}:{key}")
            pending.add_done_callback(_consume_exception)
            self._inflight[key] = pending
        # A cancelled caller only stops waiting; the shared fetch keeps running for the others.
        return await asyncio.shield(pending)

    async def _fetch(self, key: str, fetch_fn: Callable[[], Awaitable[T]], ttl: float | None) -> T:
        try:
            value = await fetch_fn()
        except Exception as exc:
            self._errors += 1
            logger.warning("cache_fetch_failed", cache=self._name, key=key, error=str(exc))
            raise
        else:
            self._store(key, value, ttl)
            return value
        finally:
            self._inflight.pop(key, None)

    def get(self, key: str) -> Any | None:
        entry = self._lookup(key)
        return entry.value if entry is not None else None

    def invalidate(self, key: str) -> bool:
        removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("cache_entry_invalidated", cache=self._name, key=key)
        return removed

    def clear(self) -> None:
        dropped = len(self._entries)
        self._entries.clear()
        logger.info("cache_cleared", cache=self._name, dropped=dropped)

    def stats(self) -> CacheStats:
        self._purge_expired()
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            errors=self._errors,
            evictions=self._evictions,
            coalesced=self._coalesced,
            size=len(self._entries),
        )

    def __len__(self) -> int:
        return len(self._entries)

    def _lookup(self, key: str) -> CacheEntry[Any] | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self._clock()):
            del self._entries[key]
            return None
        return entry

    def _store(self, key: str, value: Any, ttl: float | None) -> None:
        lifetime = self._ttl if ttl is None else ttl
        if lifetime <= 0:
            return
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + lifetime)
        if len(self._entries) > self._max_entries:
            self._purge_expired()
        while len(self._entries) > self._max_entries:
            victim = min(self._entries.values(), key=lambda item: item.expires_at)
            del self._entries[victim.key]
            self._evictions += 1
            logger.debug("cache_entry_evicted", cache=self._name, key=victim.key)

    def _purge_expired(self) -> None:
        now = self._clock()
        for key in [key for key, entry in self._entries.items() if entry.expired(now)]:
            del self._entries[key]


__all__ = ["CacheEntry", "CacheStats", "DiscoveryCache", "discovery_key"]
