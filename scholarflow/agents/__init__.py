from __future__ import annotations

from typing import Mapping

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.agents import AIProvider, AgentCapability, AgentScope
from ..services.cache import DiscoveryCache
from ..services.providers import ProviderClient
from ..services.rate_limit import ProviderRateLimiter
from ..services.sources import DiscoverySourceClient
from .base import BaseAgent, ProviderBackedAgent, default_model
from .chat import ChatAgent
from .discovery import MetadataEnhancerAgent, RelatedPaperDiscoveryAgent, SourceLookupAgent
from .paper import (
    CitationFormatterAgent,
    ConceptExplainerAgent,
    ContentSummarizerAgent,
    PaperComparatorAgent,
    PaperProcessorAgent,
    QualityCheckerAgent,
)
from .registry import AgentRegistry
from .research import CitationVerifierAgent, PerplexityResearchAgent

logger = get_logger(name=__name__)

# Preferred provider per provider-backed agent.
PROVIDER_AFFINITY: dict[type[ProviderBackedAgent], AIProvider] = {
    PaperProcessorAgent: AIProvider.OPENAI,
    ContentSummarizerAgent: AIProvider.ANTHROPIC,
    ConceptExplainerAgent: AIProvider.OPENAI,
    CitationFormatterAgent: AIProvider.OPENAI,
    CitationVerifierAgent: AIProvider.OPENAI,
    PerplexityResearchAgent: AIProvider.PERPLEXITY,
    QualityCheckerAgent: AIProvider.ANTHROPIC,
    PaperComparatorAgent: AIProvider.ANTHROPIC,
    ChatAgent: AIProvider.ANTHROPIC,
}

_SOURCE_CAPABILITIES = {
    "crossref": AgentCapability.CROSSREF_LOOKUP,
    "semantic-scholar": AgentCapability.SEMANTIC_SCHOLAR_LOOKUP,
}


def _pick_client(
    clients: Mapping[str, ProviderClient],
    preferred: AIProvider,
    fallback: str | None,
) -> ProviderClient | None:
    for candidate in (preferred.value, fallback):
        if candidate is not None and candidate in clients:
            return clients[candidate]
    return next(iter(clients.values()), None)


def build_default_registry(
    settings: Settings,
    *,
    provider_clients: Mapping[str, ProviderClient],
    sources: Mapping[str, DiscoverySourceClient],
    cache: DiscoveryCache,
    limiter: ProviderRateLimiter,
) -> AgentRegistry:
    """Register the standard agent fleet against whichever clients are available.

    Each provider-backed agent gets its preferred client when configured,
    every other configured client as an alternate, and the fallback client
    (Ollama unless configured otherwise) for runtime fallback.
    """
    registry = AgentRegistry()
    models = settings.providers.default_models
    max_tokens = settings.providers.max_output_tokens
    fallback_name = settings.providers.fallback_provider
    wait = settings.scheduling.rate_limit_wait_seconds

    for agent_cls, preferred in PROVIDER_AFFINITY.items():
        client = _pick_client(provider_clients, preferred, fallback_name)
        if client is None:
            logger.warning("agent_skipped_no_provider", agent=agent_cls.capability.value)
            continue
        fallback = provider_clients.get(fallback_name) if fallback_name else None
        if fallback is client:
            fallback = None
        model = default_model(models, client.provider)
        if agent_cls is ChatAgent:
            chat_client = client

            def chat_factory(
                user_id: str,
                _client: ProviderClient = chat_client,
                _model: str = model,
                _fallback: ProviderClient | None = fallback,
            ) -> BaseAgent:
                return ChatAgent(
                    _client,
                    model=_model,
                    user_id=user_id,
                    alternates=provider_clients,
                    fallback=_fallback,
                    models=models,
                )

            registry.register(AgentCapability.CHAT, chat_factory, AgentScope.USER)
            continue
        registry.register(
            agent_cls.capability,
            agent_cls(
                client,
                model=model,
                max_output_tokens=min(max_tokens, agent_cls.max_output_tokens),
                alternates=provider_clients,
                fallback=fallback,
                models=models,
            ),
        )

    for source, source_client in sources.items():
        capability = _SOURCE_CAPABILITIES.get(source)
        if capability is None:
            logger.warning("discovery_source_unmapped", source=source)
            continue
        registry.register(
            capability,
            SourceLookupAgent(capability, source_client, cache=cache, limiter=limiter, rate_limit_wait=wait),
        )
    registry.register(AgentCapability.METADATA_ENHANCER, MetadataEnhancerAgent())
    if sources:
        registry.register(
            AgentCapability.RELATED_PAPER_DISCOVERY,
            RelatedPaperDiscoveryAgent(sources, cache=cache, limiter=limiter, rate_limit_wait=wait),
        )
    return registry


__all__ = [
    "AgentRegistry",
    "BaseAgent",
    "ChatAgent",
    "CitationFormatterAgent",
    "CitationVerifierAgent",
    "ConceptExplainerAgent",
    "ContentSummarizerAgent",
    "MetadataEnhancerAgent",
    "PaperComparatorAgent",
    "PaperProcessorAgent",
    "PerplexityResearchAgent",
    "ProviderBackedAgent",
    "QualityCheckerAgent",
    "RelatedPaperDiscoveryAgent",
    "SourceLookupAgent",
    "build_default_registry",
]
