from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderLimitSettings(BaseModel):
    requests_per_second: float | None = Field(
        None,
        gt=0.0,
        description="Short-window ceiling; also the burst capacity of the per-second bucket.",
    )
    requests_per_minute: float | None = Field(
        None,
        gt=0.0,
        description="Long-window ceiling enforced by the per-minute bucket.",
    )


class ProviderPricingSettings(BaseModel):
    input_per_1k: Decimal = Field(Decimal("0"), ge=0, description="USD per 1K input tokens.")
    output_per_1k: Decimal = Field(Decimal("0"), ge=0, description="USD per 1K output tokens.")


class EndpointSettings(BaseModel):
    base_url: str
    api_key: str | None = Field(default=None, description="Optional API key sent with each request.")
    timeout_seconds: float = Field(60.0, gt=0.0)


def _default_endpoints() -> dict[str, EndpointSettings]:
    return {
        "openai": EndpointSettings(base_url="https://api.openai.com/v1"),
        "anthropic": EndpointSettings(base_url="https://api.anthropic.com/v1"),
        "perplexity": EndpointSettings(base_url="https://api.perplexity.ai"),
        "ollama": EndpointSettings(base_url="http://localhost:11434/v1", timeout_seconds=180.0),
        "crossref": EndpointSettings(base_url="https://api.crossref.org", timeout_seconds=15.0),
        "semantic-scholar": EndpointSettings(base_url="https://api.semanticscholar.org", timeout_seconds=15.0),
    }


def _default_limits() -> dict[str, ProviderLimitSettings]:
    return {
        "openai": ProviderLimitSettings(requests_per_second=3, requests_per_minute=200),
        "anthropic": ProviderLimitSettings(requests_per_second=2, requests_per_minute=50),
        "perplexity": ProviderLimitSettings(requests_per_second=10, requests_per_minute=600),
        # Discovery sources share the limiter with the AI providers.
        "crossref": ProviderLimitSettings(requests_per_second=45),
        "semantic-scholar": ProviderLimitSettings(requests_per_second=0.3),
    }


def _default_pricing() -> dict[str, ProviderPricingSettings]:
    return {
        "openai": ProviderPricingSettings(input_per_1k=Decimal("0.0025"), output_per_1k=Decimal("0.01")),
        "anthropic": ProviderPricingSettings(input_per_1k=Decimal("0.003"), output_per_1k=Decimal("0.015")),
        "perplexity": ProviderPricingSettings(input_per_1k=Decimal("0.001"), output_per_1k=Decimal("0.001")),
        "ollama": ProviderPricingSettings(),
    }


class ProviderSettings(BaseModel):
    limits: dict[str, ProviderLimitSettings] = Field(default_factory=_default_limits)
    pricing: dict[str, ProviderPricingSettings] = Field(default_factory=_default_pricing)
    endpoints: dict[str, EndpointSettings] = Field(default_factory=_default_endpoints)
    default_models: dict[str, str] = Field(
        default_factory=lambda: {
            "openai": "gpt-4o",
            "anthropic": "claude-3-5-sonnet",
            "perplexity": "sonar",
            "ollama": "llama3.1:8b",
        },
        description="Model identifier sent with each provider request when an agent does not override it.",
    )
    max_output_tokens: int = Field(2048, ge=1)
    fallback_provider: str | None = Field(
        "ollama",
        description="Provider tried once after an agent's preferred provider exhausts its retries.",
    )


class CacheSettings(BaseModel):
    ttl_seconds: float = Field(21_600.0, gt=0.0, description="Lifetime of a cached discovery lookup.")
    max_entries: int = Field(1000, ge=1)


class SchedulingSettings(BaseModel):
    max_concurrency: int = Field(8, ge=1, description="Upper bound on tasks dispatched at once per workflow.")
    max_retries: int = Field(2, ge=0)
    base_backoff_seconds: float = Field(1.0, ge=0.0)
    backoff_multiplier: float = Field(2.0, ge=1.0)
    max_backoff_seconds: float = Field(30.0, ge=0.0)
    call_timeout_seconds: float = Field(120.0, gt=0.0)
    workflow_timeout_seconds: float = Field(900.0, gt=0.0)
    rate_limit_wait_seconds: float = Field(
        60.0,
        ge=0.0,
        description="Longest a dispatch waits for a rate permit before counting the attempt as failed.",
    )


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    providers: ProviderSettings = Field(default_factory=ProviderSettings)  # type: ignore[arg-type]
    cache: CacheSettings = Field(default_factory=CacheSettings)  # type: ignore[arg-type]
    scheduling: SchedulingSettings = Field(default_factory=SchedulingSettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_prefix="SCHOLARFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
