from __future__ import annotations

import asyncio

import pytest

from scholarflow.core.config import CacheSettings
from scholarflow.schemas.agents import DiscoverySource
from scholarflow.services.cache import DiscoveryCache, discovery_key
from tests.helpers.stubs import FakeClock


class _CountingFetch:
    def __init__(self, value: object = "payload", *, delay: float = 0.0, error: Exception | None = None) -> None:
        self.value = value
        self.delay = delay
        self.error = error
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.value


def test_discovery_key_is_normalised() -> None:
    assert discovery_key(" 10.1000/XYZ ", DiscoverySource.CROSSREF) == "crossref:10.1000/xyz"
    assert discovery_key("abc", "Semantic-Scholar") == "semantic-scholar:abc"


@pytest.mark.asyncio
async def test_hit_within_ttl_does_not_refetch() -> None:
    clock = FakeClock()
    cache = DiscoveryCache(ttl_seconds=60, clock=clock)
    fetch = _CountingFetch({"title": "Attention"})

    first = await cache.get_or_fetch("crossref:p1", fetch)
    clock.advance(59)
    second = await cache.get_or_fetch("crossref:p1", fetch)

    assert first == second == {"title": "Attention"}
    assert fetch.calls == 1
    stats = cache.stats()
    assert (stats.hits, stats.misses, stats.size) == (1, 1, 1)


@pytest.mark.asyncio
async def test_expired_entry_is_refetched() -> None:
    clock = FakeClock()
    cache = DiscoveryCache(ttl_seconds=60, clock=clock)
    fetch = _CountingFetch()

    await cache.get_or_fetch("k", fetch)
    clock.advance(60)
    assert cache.get("k") is None
    await cache.get_or_fetch("k", fetch)

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_per_call_ttl_overrides_default() -> None:
    clock = FakeClock()
    cache = DiscoveryCache(ttl_seconds=3600, clock=clock)
    fetch = _CountingFetch()

    await cache.get_or_fetch("k", fetch, ttl=5)
    clock.advance(6)
    await cache.get_or_fetch("k", fetch)

    assert fetch.calls == 2


@pytest.mark.asyncio
async def test_concurrent_misses_collapse_into_one_fetch() -> None:
    cache = DiscoveryCache()
    fetch = _CountingFetch({"doi": "10.1/x"}, delay=0.01)

    results = await asyncio.gather(*(cache.get_or_fetch("crossref:x", fetch) for _ in range(10)))

    assert fetch.calls == 1
    assert all(result == {"doi": "10.1/x"} for result in results)
    stats = cache.stats()
    assert stats.misses == 1
    assert stats.coalesced == 9


@pytest.mark.asyncio
async def test_failed_fetch_propagates_to_all_waiters_and_is_not_cached() -> None:
    cache = DiscoveryCache()
    failing = _CountingFetch(delay=0.01, error=RuntimeError("source down"))

    results = await asyncio.gather(
        *(cache.get_or_fetch("k", failing) for _ in range(5)),
        return_exceptions=True,
    )

    assert failing.calls == 1
    assert all(isinstance(result, RuntimeError) for result in results)
    assert cache.stats().errors == 1
    assert len(cache) == 0

    recovered = _CountingFetch("fresh")
    assert await cache.get_or_fetch("k", recovered) == "fresh"
    assert recovered.calls == 1


@pytest.mark.asyncio
async def test_cancelled_first_caller_does_not_cancel_shared_fetch() -> None:
    cache = DiscoveryCache()
    fetch = _CountingFetch({"title": "Shared"}, delay=0.1)

    first = asyncio.create_task(cache.get_or_fetch("crossref:p1", fetch))
    await asyncio.sleep(0.01)
    second = asyncio.create_task(cache.get_or_fetch("crossref:p1", fetch))
    await asyncio.sleep(0.01)

    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(first, timeout=0.01)

    assert await second == {"title": "Shared"}
    assert fetch.calls == 1
    assert cache.get("crossref:p1") == {"title": "Shared"}


@pytest.mark.asyncio
async def test_size_bound_evicts_soonest_expiring_entry() -> None:
    clock = FakeClock()
    cache = DiscoveryCache(ttl_seconds=100, max_entries=2, clock=clock)

    await cache.get_or_fetch("a", _CountingFetch("a"))
    clock.advance(1)
    await cache.get_or_fetch("b", _CountingFetch("b"))
    clock.advance(1)
    await cache.get_or_fetch("c", _CountingFetch("c"))

    assert cache.get("a") is None
    assert cache.get("b") == "b"
    assert cache.get("c") == "c"
    assert cache.stats().evictions == 1


@pytest.mark.asyncio
async def test_invalidate_and_clear() -> None:
    cache = DiscoveryCache.from_settings(CacheSettings(ttl_seconds=10, max_entries=5))
    await cache.get_or_fetch("a", _CountingFetch())
    await cache.get_or_fetch("b", _CountingFetch())

    assert cache.invalidate("a") is True
    assert cache.invalidate("a") is False
    cache.clear()
    assert cache.stats().size == 0


def test_invalid_configuration_is_rejected() -> None:
    with pytest.raises(ValueError):
        DiscoveryCache(ttl_seconds=0)
    with pytest.raises(ValueError):
        DiscoveryCache(max_entries=0)
