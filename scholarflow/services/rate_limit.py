from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Mapping

from pydantic import BaseModel

from ..core import metrics
from ..core.config import ProviderLimitSettings, Settings
from ..core.exceptions import RateLimitExceededError
from ..core.logging import get_logger
from ..schemas.agents import AIProvider, DiscoverySource, provider_id

logger = get_logger(name=__name__)

Clock = Callable[[], float]
Sleeper = Callable[[float], Awaitable[None]]

_EPSILON = 1e-9


@dataclass(slots=True)
class TokenBucket:
    """Continuously refilled bucket; refill is computed lazily from elapsed time."""

    capacity: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def full(cls, *, capacity: float, refill_rate: float, now: float) -> "TokenBucket":
        return cls(capacity=capacity, refill_rate=refill_rate, tokens=capacity, last_refill=now)

    def refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed <= 0:
            return
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def projected(self, now: float) -> float:
        elapsed = max(0.0, now - self.last_refill)
        return min(self.capacity, self.tokens + elapsed * self.refill_rate)

    def has(self, cost: float) -> bool:
        return self.tokens + _EPSILON >= cost

    def consume(self, cost: float) -> None:
        self.tokens = max(0.0, self.tokens - cost)

    def seconds_until(self, cost: float) -> float:
        deficit = cost - self.tokens
        if deficit <= _EPSILON:
            return 0.0
        return deficit / self.refill_rate


@dataclass(frozen=True, slots=True)
class RatePermit:
    provider: str
    cost: float
    waited_seconds: float
    throttled: bool = True


class BucketStatus(BaseModel):
    capacity: float
    available: float
    refill_rate: float


class RateLimiterStatus(BaseModel):
    provider: str
    buckets: dict[str, BucketStatus]
    waiting: int
    granted: int
    rejected: int


class _ProviderGovernor:
    def __init__(self, provider: str, buckets: Mapping[str, TokenBucket]) -> None:
        self.provider = provider
        self.buckets = dict(buckets)
        self.lock = asyncio.Lock()
        self.waiting = 0
        self.granted = 0
        self.rejected = 0

    @property
    def capacity(self) -> float:
        return min(bucket.capacity for bucket in self.buckets.values())

    def try_acquire(self, cost: float, now: float) -> float | None:
        """Consume ``cost`` from every bucket, or return the seconds to wait. Caller holds ``lock``."""
        for bucket in self.buckets.values():
            bucket.refill(now)
        if all(bucket.has(cost) for bucket in self.buckets.values()):
            for bucket in self.buckets.values():
                bucket.consume(cost)
            self.granted += 1
            return None
        return max(bucket.seconds_until(cost) for bucket in self.buckets.values())


def _buckets_from_limits(limits: ProviderLimitSettings, now: float) -> dict[str, TokenBucket]:
    buckets: dict[str, TokenBucket] = {}
    if limits.requests_per_second:
        rate = float(limits.requests_per_second)
        buckets["second"] = TokenBucket.full(capacity=max(1.0, rate), refill_rate=rate, now=now)
    if limits.requests_per_minute:
        per_minute = float(limits.requests_per_minute)
        buckets["minute"] = TokenBucket.full(capacity=max(1.0, per_minute), refill_rate=per_minute / 60.0, now=now)
    return buckets


class ProviderRateLimiter:
    """Per-provider token-bucket governors for AI providers and discovery sources.

    Each provider owns independent buckets (a per-second burst window and a
    per-minute sustained window). ``acquire`` refills lazily, then either
    consumes a token from every bucket or suspends until the slowest bucket
    can cover the cost. Access to one provider's buckets is serialised by an
    ``asyncio.Lock``; different providers never contend with each other.
    Providers without configured limits pass through unthrottled.
    """

    def __init__(
        self,
        limits: Mapping[str, ProviderLimitSettings] | None = None,
        *,
        clock: Clock | None = None,
        sleep: Sleeper | None = None,
    ) -> None:
        self._clock: Clock = clock or time.monotonic
        self._sleep: Sleeper = sleep or asyncio.sleep
        self._governors: dict[str, _ProviderGovernor] = {}
        self._limits: dict[str, ProviderLimitSettings] = {}
        for provider, rule in (limits or {}).items():
            self.configure(provider, rule)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ProviderRateLimiter":
        return cls(settings.providers.limits, **kwargs)

    def configure(
        self,
        provider: AIProvider | DiscoverySource | str,
        limits: ProviderLimitSettings,
    ) -> None:
        key = provider_id(provider)
        assert key is not None
        buckets = _buckets_from_limits(limits, self._clock())
        if not buckets:
            self._governors.pop(key, None)
            self._limits.pop(key, None)
            return
        self._governors[key] = _ProviderGovernor(key, buckets)
        self._limits[key] = limits
        logger.info(
            "rate_limiter_configured",
            provider=key,
            requests_per_second=limits.requests_per_second,
            requests_per_minute=limits.requests_per_minute,
        )

    def providers(self) -> list[str]:
        return sorted(self._governors)

    async def acquire(
        self,
        provider: AIProvider | DiscoverySource | str,
        cost: float = 1,
        *,
        blocking: bool = True,
        timeout: float | None = None,
    ) -> RatePermit:
        key = provider_id(provider)
        if key is None:
            raise ValueError("provider is required")
        if cost <= 0:
            raise ValueError("cost must be positive")
        governor = self._governors.get(key)
        if governor is None:
            logger.debug("rate_limiter_unthrottled", provider=key)
            return RatePermit(provider=key, cost=cost, waited_seconds=0.0, throttled=False)
        if cost > governor.capacity:
            self._reject(governor, reason="over_capacity")
            raise RateLimitExceededError(key)

        started = self._clock()
        deadline = None if timeout is None else started + max(0.0, timeout)
        while True:
            async with governor.lock:
                now = self._clock()
                wait = governor.try_acquire(cost, now)
                if wait is None:
                    waited = max(0.0, now - started)
                    metrics.observe_rate_limit_wait(provider=key, seconds=waited)
                    return RatePermit(provider=key, cost=cost, waited_seconds=waited)

            if not blocking:
                self._reject(governor, reason="non_blocking")
                raise RateLimitExceededError(key, retry_after=wait)
            if deadline is not None and self._clock() + wait > deadline:
                self._reject(governor, reason="timeout")
                raise RateLimitExceededError(key, retry_after=wait)

            logger.debug("rate_limiter_waiting", provider=key, wait_seconds=round(wait, 4))
            governor.waiting += 1
            try:
                await self._sleep(wait)
            finally:
                governor.waiting -= 1

    def status(self, provider: AIProvider | DiscoverySource | str) -> RateLimiterStatus | None:
        key = provider_id(provider)
        governor = self._governors.get(key) if key else None
        if governor is None:
            return None
        now = self._clock()
        return RateLimiterStatus(
            provider=governor.provider,
            buckets={
                name: BucketStatus(
                    capacity=bucket.capacity,
                    available=bucket.projected(now),
                    refill_rate=bucket.refill_rate,
                )
                for name, bucket in governor.buckets.items()
            },
            waiting=governor.waiting,
            granted=governor.granted,
            rejected=governor.rejected,
        )

    def statuses(self) -> dict[str, RateLimiterStatus]:
        result: dict[str, RateLimiterStatus] = {}
        for key in self.providers():
            status = self.status(key)
            if status is not None:
                result[key] = status
        return result

    def reset(self, provider: AIProvider | DiscoverySource | str | None = None) -> None:
        targets = [provider_id(provider)] if provider is not None else list(self._limits)
        for key in targets:
            limits = self._limits.get(key) if key else None
            if limits is None:
                continue
            self._governors[key] = _ProviderGovernor(key, _buckets_from_limits(limits, self._clock()))
            logger.warning("rate_limiter_reset", provider=key)

    def _reject(self, governor: _ProviderGovernor, *, reason: str) -> None:
        governor.rejected += 1
        metrics.increment_rate_limit_rejection(provider=governor.provider, reason=reason)
        logger.warning("rate_limit_exceeded", provider=governor.provider, reason=reason)


__all__ = [
    "BucketStatus",
    "ProviderRateLimiter",
    "RateLimiterStatus",
    "RatePermit",
    "TokenBucket",
]
