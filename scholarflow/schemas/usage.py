from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator


class ProviderCallRecord(BaseModel):
    """One metered provider call. Immutable once written."""

    model_config = ConfigDict(frozen=True)

    record_id: str = Field(default_factory=lambda: uuid4().hex)
    provider: str = Field(min_length=1)
    agent_type: str = Field(min_length=1)
    user_id: str | None = None
    task_id: str | None = None
    correlation_id: str | None = None
    model: str | None = None
    input_tokens: int
    output_tokens: int
    cost: Decimal = Decimal("0")
    latency_ms: float = 0.0
    success: bool = True
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UsageFilter(BaseModel):
    provider: str | None = None
    agent_type: str | None = None
    user_id: str | None = None
    task_id: str | None = None
    correlation_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None

    @field_validator("since", "until")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def matches(self, record: ProviderCallRecord) -> bool:
        if self.provider is not None and record.provider != self.provider:
            return False
        if self.agent_type is not None and record.agent_type != self.agent_type:
            return False
        if self.user_id is not None and record.user_id != self.user_id:
            return False
        if self.task_id is not None and record.task_id != self.task_id:
            return False
        if self.correlation_id is not None and record.correlation_id != self.correlation_id:
            return False
        if self.since is not None and record.timestamp < self.since:
            return False
        if self.until is not None and record.timestamp >= self.until:
            return False
        return True


class RunningTotal(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Decimal = Decimal("0")
    request_count: int = 0
    success_count: int = 0

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, record: ProviderCallRecord) -> "RunningTotal":
        return RunningTotal(
            input_tokens=self.input_tokens + record.input_tokens,
            output_tokens=self.output_tokens + record.output_tokens,
            cost=self.cost + record.cost,
            request_count=self.request_count + 1,
            success_count=self.success_count + (1 if record.success else 0),
        )


__all__ = ["ProviderCallRecord", "RunningTotal", "UsageFilter"]
