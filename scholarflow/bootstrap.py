from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Mapping

from .agents import build_default_registry
from .agents.registry import AgentRegistry
from .core.config import Settings, get_settings
from .core.logging import get_logger
from .orchestration.orchestrator import Orchestrator
from .orchestration.workflows import WorkflowCatalog, default_catalog
from .services.cache import DiscoveryCache
from .services.providers import ProviderClient, build_provider_clients
from .services.rate_limit import ProviderRateLimiter
from .services.sources import DiscoverySourceClient, build_source_clients
from .services.usage import PricingTable, UsageAccountant

logger = get_logger(name=__name__)


@dataclass(slots=True)
class Runtime:
    settings: Settings
    limiter: ProviderRateLimiter
    accountant: UsageAccountant
    cache: DiscoveryCache
    registry: AgentRegistry
    catalog: WorkflowCatalog
    orchestrator: Orchestrator
    provider_clients: dict[str, ProviderClient] = field(default_factory=dict)
    sources: dict[str, DiscoverySourceClient] = field(default_factory=dict)

    async def aclose(self) -> None:
        await self.registry.close()
        for client in [*self.provider_clients.values(), *self.sources.values()]:
            close = getattr(client, "close", None)
            if callable(close):
                result = close()
                if inspect.isawaitable(result):
                    await result
        logger.info("runtime_closed")


def build_runtime(
    settings: Settings | None = None,
    provider_clients: Mapping[str, ProviderClient] | None = None,
    sources: Mapping[str, DiscoverySourceClient] | None = None,
    *,
    registry: AgentRegistry | None = None,
    catalog: WorkflowCatalog | None = None,
    limiter_options: Mapping[str, Any] | None = None,
) -> Runtime:
    """Wire limiter, accountant, cache, agents and orchestrator into one runtime.

    Clients default to HTTP clients built from the configured endpoints.
    Passing ``registry`` replaces the default agent fleet entirely.
    """
    settings = settings or get_settings()
    clients = dict(provider_clients) if provider_clients is not None else build_provider_clients(
        settings.providers.endpoints
    )
    source_clients = dict(sources) if sources is not None else build_source_clients(settings.providers.endpoints)

    limiter = ProviderRateLimiter.from_settings(settings, **dict(limiter_options or {}))
    accountant = UsageAccountant(PricingTable.from_settings(settings))
    cache = DiscoveryCache.from_settings(settings.cache)
    if registry is None:
        registry = build_default_registry(
            settings,
            provider_clients=clients,
            sources=source_clients,
            cache=cache,
            limiter=limiter,
        )
    catalog = catalog or default_catalog()
    orchestrator = Orchestrator(
        registry=registry,
        catalog=catalog,
        limiter=limiter,
        accountant=accountant,
        settings=settings.scheduling,
    )
    logger.info(
        "runtime_built",
        providers=sorted(clients),
        sources=sorted(source_clients),
        capabilities=registry.capabilities(),
        workflows=catalog.names(),
    )
    return Runtime(
        settings=settings,
        limiter=limiter,
        accountant=accountant,
        cache=cache,
        registry=registry,
        catalog=catalog,
        orchestrator=orchestrator,
        provider_clients=clients,
        sources=source_clients,
    )


__all__ = ["Runtime", "build_runtime"]
