from __future__ import annotations

import threading
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Mapping

from ..core import metrics
from ..core.config import ProviderPricingSettings, Settings
from ..core.exceptions import InvalidUsageRecordError
from ..core.logging import get_logger
from ..schemas.agents import AIProvider, provider_id
from ..schemas.usage import ProviderCallRecord, RunningTotal, UsageFilter

logger = get_logger(name=__name__)

_THOUSAND = Decimal(1000)
_ZERO = Decimal("0")


class PricingTable:
    """Per-provider cost per 1K input/output tokens. Unknown providers are free."""

    def __init__(self, prices: Mapping[str, ProviderPricingSettings] | None = None) -> None:
        self._prices: dict[str, ProviderPricingSettings] = {}
        for provider, price in (prices or {}).items():
            self.set_price(provider, price)

    @classmethod
    def from_settings(cls, settings: Settings) -> "PricingTable":
        return cls(settings.providers.pricing)

    def set_price(self, provider: AIProvider | str, price: ProviderPricingSettings) -> None:
        key = provider_id(provider)
        assert key is not None
        self._prices[key] = price

    def price_for(self, provider: AIProvider | str) -> ProviderPricingSettings:
        key = provider_id(provider)
        return self._prices.get(key or "", ProviderPricingSettings())

    def cost(self, provider: AIProvider | str, input_tokens: int, output_tokens: int) -> Decimal:
        price = self.price_for(provider)
        return (
            Decimal(input_tokens) * price.input_per_1k + Decimal(output_tokens) * price.output_per_1k
        ) / _THOUSAND

    def as_dict(self) -> dict[str, ProviderPricingSettings]:
        return dict(self._prices)


class UsageAccountant:
    """Append-only ledger of provider calls with running totals.

    Records are kept in arrival order together with per-provider, per-agent
    and per-user running totals updated on write. All state is guarded by a
    ``threading.Lock`` so recording from worker threads is safe; filtered
    aggregates are computed from a snapshot copied under that lock.
    """

    def __init__(self, pricing: PricingTable | None = None) -> None:
        self._pricing = pricing or PricingTable()
        self._lock = threading.Lock()
        self._records: list[ProviderCallRecord] = []
        self._by_provider: dict[str, RunningTotal] = defaultdict(RunningTotal)
        self._by_agent: dict[str, RunningTotal] = defaultdict(RunningTotal)
        self._by_user: dict[str, RunningTotal] = defaultdict(RunningTotal)
        self._global = RunningTotal()

    @property
    def pricing(self) -> PricingTable:
        return self._pricing

    def build_record(
        self,
        *,
        provider: AIProvider | str,
        agent_type: str,
        input_tokens: int,
        output_tokens: int,
        latency_ms: float = 0.0,
        success: bool = True,
        user_id: str | None = None,
        task_id: str | None = None,
        correlation_id: str | None = None,
        model: str | None = None,
        timestamp: datetime | None = None,
    ) -> ProviderCallRecord:
        key = provider_id(provider)
        assert key is not None
        fields: dict[str, object] = {}
        if timestamp is not None:
            fields["timestamp"] = timestamp
        return ProviderCallRecord(
            provider=key,
            agent_type=agent_type,
            user_id=user_id,
            task_id=task_id,
            correlation_id=correlation_id,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=self._pricing.cost(key, max(0, input_tokens), max(0, output_tokens)),
            latency_ms=latency_ms,
            success=success,
            **fields,
        )

    def record(self, record: ProviderCallRecord) -> ProviderCallRecord:
        self._validate(record)
        with self._lock:
            self._records.append(record)
            self._by_provider[record.provider] = self._by_provider[record.provider].add(record)
            self._by_agent[record.agent_type] = self._by_agent[record.agent_type].add(record)
            if record.user_id is not None:
                self._by_user[record.user_id] = self._by_user[record.user_id].add(record)
            self._global = self._global.add(record)
        metrics.record_provider_call(
            provider=record.provider,
            agent=record.agent_type,
            success=record.success,
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cost=record.cost,
        )
        metrics.observe_provider_latency(provider=record.provider, latency=record.latency_ms / 1000.0)
        logger.debug(
            "provider_call_recorded",
            provider=record.provider,
            agent_type=record.agent_type,
            task_id=record.task_id,
            correlation_id=record.correlation_id,
            total_tokens=record.total_tokens,
            cost=str(record.cost),
            success=record.success,
        )
        return record

    def aggregate(self, usage_filter: UsageFilter | None = None) -> RunningTotal:
        total = RunningTotal()
        for record in self.records(usage_filter):
            total = total.add(record)
        return total

    def records(self, usage_filter: UsageFilter | None = None) -> list[ProviderCallRecord]:
        snapshot = self._snapshot()
        if usage_filter is None:
            return snapshot
        return [record for record in snapshot if usage_filter.matches(record)]

    def provider_statistics(self) -> dict[str, RunningTotal]:
        with self._lock:
            return dict(self._by_provider)

    def agent_statistics(self) -> dict[str, RunningTotal]:
        with self._lock:
            return dict(self._by_agent)

    def user_statistics(self, user_id: str) -> RunningTotal:
        with self._lock:
            return self._by_user.get(user_id, RunningTotal())

    def global_totals(self) -> RunningTotal:
        with self._lock:
            return self._global

    def top_users(self, limit: int = 10) -> list[tuple[str, RunningTotal]]:
        with self._lock:
            items = list(self._by_user.items())
        items.sort(key=lambda item: (-item[1].cost, -item[1].total_tokens, item[0]))
        return items[: max(0, limit)]

    def reset(self) -> None:
        with self._lock:
            dropped = len(self._records)
            self._records.clear()
            self._by_provider.clear()
            self._by_agent.clear()
            self._by_user.clear()
            self._global = RunningTotal()
        logger.warning("usage_ledger_reset", dropped_records=dropped)

    def _snapshot(self) -> list[ProviderCallRecord]:
        with self._lock:
            return list(self._records)

    @staticmethod
    def _validate(record: ProviderCallRecord) -> None:
        problems: list[str] = []
        if record.input_tokens < 0:
            problems.append("input_tokens must be non-negative")
        if record.output_tokens < 0:
            problems.append("output_tokens must be non-negative")
        if record.cost < _ZERO:
            problems.append("cost must be non-negative")
        if record.latency_ms < 0:
            problems.append("latency_ms must be non-negative")
        if problems:
            metrics.increment_rejected_usage_record(provider=record.provider)
            raise InvalidUsageRecordError("; ".join(problems))


__all__ = ["PricingTable", "UsageAccountant"]
