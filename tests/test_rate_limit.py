from __future__ import annotations

import asyncio

import pytest

from scholarflow.core.config import ProviderLimitSettings
from scholarflow.core.exceptions import RateLimitExceededError
from scholarflow.schemas.agents import AIProvider
from scholarflow.services.rate_limit import ProviderRateLimiter, TokenBucket
from tests.helpers.stubs import FakeClock


def _limiter(clock: FakeClock, **limits: ProviderLimitSettings) -> ProviderRateLimiter:
    return ProviderRateLimiter(limits, clock=clock, sleep=clock.sleep)


def test_token_bucket_refill_is_capped_at_capacity() -> None:
    bucket = TokenBucket.full(capacity=3.0, refill_rate=1.0, now=0.0)
    bucket.consume(3.0)
    bucket.refill(1.5)
    assert bucket.tokens == pytest.approx(1.5)
    bucket.refill(100.0)
    assert bucket.tokens == 3.0
    assert bucket.seconds_until(1.0) == 0.0


@pytest.mark.asyncio
async def test_non_blocking_acquire_never_over_grants() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, openai=ProviderLimitSettings(requests_per_second=3, requests_per_minute=200))

    for _ in range(3):
        permit = await limiter.acquire(AIProvider.OPENAI, blocking=False)
        assert permit.provider == "openai"
        assert permit.waited_seconds == 0.0

    with pytest.raises(RateLimitExceededError) as excinfo:
        await limiter.acquire("openai", blocking=False)
    assert excinfo.value.retry_after == pytest.approx(1 / 3)

    status = limiter.status("openai")
    assert status is not None
    assert status.granted == 3
    assert status.rejected == 1


@pytest.mark.asyncio
async def test_blocking_acquire_waits_for_refill() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, anthropic=ProviderLimitSettings(requests_per_second=2))

    await limiter.acquire("anthropic")
    await limiter.acquire("anthropic")
    permit = await limiter.acquire("anthropic")

    assert permit.waited_seconds == pytest.approx(0.5)
    assert clock.sleeps == [pytest.approx(0.5)]


@pytest.mark.asyncio
async def test_per_minute_bucket_governs_sustained_rate() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, anthropic=ProviderLimitSettings(requests_per_second=2, requests_per_minute=3))

    for _ in range(3):
        await limiter.acquire("anthropic")
        clock.advance(1.0)

    with pytest.raises(RateLimitExceededError) as excinfo:
        await limiter.acquire("anthropic", blocking=False)
    # One token per 20 seconds, two seconds of which have already elapsed.
    assert excinfo.value.retry_after == pytest.approx(17.0)


@pytest.mark.asyncio
async def test_blocking_acquire_respects_timeout() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, **{"semantic-scholar": ProviderLimitSettings(requests_per_second=0.3)})

    await limiter.acquire("semantic-scholar")
    with pytest.raises(RateLimitExceededError):
        await limiter.acquire("semantic-scholar", timeout=1.0)
    assert clock.sleeps == []

    permit = await limiter.acquire("semantic-scholar", timeout=5.0)
    assert permit.waited_seconds == pytest.approx(1 / 0.3)


@pytest.mark.asyncio
async def test_cost_above_capacity_fails_immediately() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, openai=ProviderLimitSettings(requests_per_second=3))

    with pytest.raises(RateLimitExceededError):
        await limiter.acquire("openai", cost=4)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_unconfigured_provider_passes_through() -> None:
    limiter = _limiter(FakeClock())
    permit = await limiter.acquire(AIProvider.OLLAMA)
    assert permit.throttled is False
    assert limiter.status("ollama") is None


@pytest.mark.asyncio
async def test_concurrent_callers_are_serialised_per_provider() -> None:
    clock = FakeClock()
    limiter = _limiter(
        clock,
        openai=ProviderLimitSettings(requests_per_second=3),
        perplexity=ProviderLimitSettings(requests_per_second=10),
    )
    start = clock.now

    permits = await asyncio.gather(*(limiter.acquire("openai") for _ in range(9)))
    other = await limiter.acquire("perplexity", blocking=False)

    assert len(permits) == 9
    assert other.waited_seconds == 0.0
    # Nine permits at three per second: the burst of three, then six refills.
    assert clock.now - start == pytest.approx(2.0)
    status = limiter.status("openai")
    assert status is not None
    assert 0.0 <= status.buckets["second"].available <= status.buckets["second"].capacity


@pytest.mark.asyncio
async def test_reset_refills_buckets() -> None:
    clock = FakeClock()
    limiter = _limiter(clock, openai=ProviderLimitSettings(requests_per_second=1))
    await limiter.acquire("openai")
    with pytest.raises(RateLimitExceededError):
        await limiter.acquire("openai", blocking=False)

    limiter.reset("openai")
    await limiter.acquire("openai", blocking=False)
    assert set(limiter.statuses()) == {"openai"}
