from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, Field


class AIProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    PERPLEXITY = "perplexity"
    OLLAMA = "ollama"


class DiscoverySource(str, Enum):
    CROSSREF = "crossref"
    SEMANTIC_SCHOLAR = "semantic-scholar"


class AgentCapability(str, Enum):
    PAPER_PROCESSOR = "paper-processor"
    CROSSREF_LOOKUP = "crossref-lookup"
    SEMANTIC_SCHOLAR_LOOKUP = "semantic-scholar-lookup"
    METADATA_ENHANCER = "metadata-enhancer"
    CONTENT_SUMMARIZER = "content-summarizer"
    CONCEPT_EXPLAINER = "concept-explainer"
    CITATION_FORMATTER = "citation-formatter"
    RELATED_PAPER_DISCOVERY = "related-paper-discovery"
    PAPER_COMPARATOR = "paper-comparator"
    QUALITY_CHECKER = "quality-checker"
    PERPLEXITY_RESEARCHER = "perplexity-researcher"
    CITATION_VERIFIER = "citation-verifier"
    CHAT = "chat"


class AgentScope(str, Enum):
    SYSTEM = "system"
    USER = "user"


def capability_id(value: AgentCapability | str) -> str:
    """Normalise a capability enum or raw identifier into its string id."""
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def provider_id(value: AIProvider | DiscoverySource | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, Enum):
        return str(value.value)
    return str(value).strip().lower()


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    """Static facts about an agent.

    ``provider`` is the preferred provider; ``providers`` lists every provider
    the agent can be asked to call, preferred one first. ``fallback_provider``
    is tried once after the preferred provider's transient failures use up
    the retry budget.
    """

    name: str
    capability: str
    provider: str | None = None
    scope: AgentScope = AgentScope.SYSTEM
    concurrency_limit: int = 4
    description: str = ""
    providers: tuple[str, ...] = ()
    fallback_provider: str | None = None

    def supports(self, provider: str | None) -> bool:
        return provider is None or provider in self.providers

    @classmethod
    def create(
        cls,
        name: str,
        capability: AgentCapability | str,
        *,
        provider: AIProvider | DiscoverySource | str | None = None,
        scope: AgentScope = AgentScope.SYSTEM,
        concurrency_limit: int = 4,
        description: str = "",
        alternates: Iterable[AIProvider | str] = (),
        fallback_provider: AIProvider | str | None = None,
    ) -> "AgentDescriptor":
        primary = provider_id(provider)
        fallback = provider_id(fallback_provider)
        if fallback == primary:
            fallback = None
        candidates = [primary, *(provider_id(item) for item in alternates), fallback]
        providers = tuple(dict.fromkeys(item for item in candidates if item))
        return cls(
            name=name,
            capability=capability_id(capability),
            provider=primary,
            scope=scope,
            concurrency_limit=max(1, int(concurrency_limit)),
            description=description,
            providers=providers,
            fallback_provider=fallback,
        )


class TokenUsage(BaseModel):
    """Token counts reported by a provider for one call."""

    provider: str
    model: str | None = None
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class AgentInput(BaseModel):
    task_id: str
    correlation_id: str
    capability: str
    user_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    upstream: dict[str, Any] = Field(default_factory=dict)
    attempt: int = Field(1, ge=1)
    provider: str | None = Field(
        None,
        description="Provider the orchestrator holds a rate permit for; None means the agent's preferred one.",
    )


class AgentOutput(BaseModel):
    agent: str
    capability: str
    payload: Any = None
    usage: TokenUsage | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "AIProvider",
    "AgentCapability",
    "AgentDescriptor",
    "AgentInput",
    "AgentOutput",
    "AgentScope",
    "DiscoverySource",
    "TokenUsage",
    "capability_id",
    "provider_id",
]
