from __future__ import annotations

import asyncio
from typing import Any, Mapping

from ..core.exceptions import AgentError, ProviderError
from ..core.logging import get_logger
from ..schemas.agents import AgentCapability, AgentDescriptor, AgentInput, AgentOutput
from ..schemas.papers import RelatedPaper
from ..services.cache import DiscoveryCache, discovery_key
from ..services.rate_limit import ProviderRateLimiter
from ..services.sources import DiscoverySourceClient

logger = get_logger(name=__name__)

# Field precedence when sources disagree; the first source with a value wins.
_FIELD_PRIORITY: dict[str, tuple[str, ...]] = {
    "title": ("crossref", "semantic-scholar"),
    "authors": ("crossref", "semantic-scholar"),
    "year": ("crossref", "semantic-scholar"),
    "doi": ("crossref", "semantic-scholar"),
    "venue": ("crossref", "semantic-scholar"),
    "abstract": ("semantic-scholar", "crossref"),
    "citation_count": ("semantic-scholar", "crossref"),
    "reference_count": ("crossref", "semantic-scholar"),
}


def _translate(exc: ProviderError) -> AgentError:
    return AgentError(str(exc), transient=exc.transient)


class SourceLookupAgent:
    """Looks a paper up in one discovery source, through the shared cache and limiter."""

    def __init__(
        self,
        capability: AgentCapability,
        client: DiscoverySourceClient,
        *,
        cache: DiscoveryCache,
        limiter: ProviderRateLimiter,
        rate_limit_wait: float | None = None,
        concurrency_limit: int = 4,
    ) -> None:
        self._client = client
        self._cache = cache
        self._limiter = limiter
        self._rate_limit_wait = rate_limit_wait
        self.descriptor = AgentDescriptor.create(
            f"{client.source}-lookup",
            capability,
            concurrency_limit=concurrency_limit,
            description=f"Metadata lookup against {client.source}",
        )

    async def _fetch(self, paper_id: str) -> dict[str, Any]:
        await self._limiter.acquire(self._client.source, timeout=self._rate_limit_wait)
        try:
            metadata = await self._client.lookup(paper_id)
        except ProviderError as exc:
            if exc.status_code == 404:
                logger.info("discovery_paper_not_found", source=self._client.source, paper_id=paper_id)
                return {"source": self._client.source, "paper_id": paper_id, "found": False}
            raise
        return {**metadata.model_dump(), "found": True}

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        paper_id = str(agent_input.payload.get("paper_id") or "").strip()
        if not paper_id:
            raise AgentError.permanent_error("paper_id is required for a discovery lookup")
        try:
            payload = await self._cache.get_or_fetch(
                discovery_key(paper_id, self._client.source),
                lambda: self._fetch(paper_id),
            )
        except ProviderError as exc:
            raise _translate(exc) from exc
        return AgentOutput(
            agent=self.descriptor.name,
            capability=self.descriptor.capability,
            payload=dict(payload),
            metadata={"source": self._client.source},
        )


class MetadataEnhancerAgent:
    """Merges per-source metadata into one enriched record."""

    def __init__(self, *, concurrency_limit: int = 8) -> None:
        self.descriptor = AgentDescriptor.create(
            "metadata-enhancer",
            AgentCapability.METADATA_ENHANCER,
            concurrency_limit=concurrency_limit,
            description="Merges Crossref and Semantic Scholar metadata",
        )

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        by_source: dict[str, Mapping[str, Any]] = {}
        for output in agent_input.upstream.values():
            if isinstance(output, Mapping) and output.get("found") and output.get("source"):
                by_source[str(output["source"])] = output
        merged = merge_metadata(by_source)
        merged.setdefault("paper_id", agent_input.payload.get("paper_id"))
        for key in ("title", "doi"):
            if not merged.get(key) and agent_input.payload.get(key):
                merged[key] = agent_input.payload[key]
        return AgentOutput(
            agent=self.descriptor.name,
            capability=self.descriptor.capability,
            payload=merged,
            metadata={"sources": sorted(by_source)},
        )


def merge_metadata(by_source: Mapping[str, Mapping[str, Any]]) -> dict[str, Any]:
    merged: dict[str, Any] = {"sources": sorted(by_source)}
    for field_name, priority in _FIELD_PRIORITY.items():
        ordered = [*priority, *(source for source in by_source if source not in priority)]
        for source in ordered:
            value = (by_source.get(source) or {}).get(field_name)
            if value not in (None, "", []):
                merged[field_name] = value
                break
    if by_source:
        merged["paper_id"] = next(iter(by_source.values())).get("paper_id")
    return merged


class RelatedPaperDiscoveryAgent:
    """Collects related papers from every configured discovery source."""

    def __init__(
        self,
        clients: Mapping[str, DiscoverySourceClient],
        *,
        cache: DiscoveryCache,
        limiter: ProviderRateLimiter,
        rate_limit_wait: float | None = None,
        concurrency_limit: int = 2,
    ) -> None:
        self._clients = dict(clients)
        self._cache = cache
        self._limiter = limiter
        self._rate_limit_wait = rate_limit_wait
        self.descriptor = AgentDescriptor.create(
            "related-paper-discovery",
            AgentCapability.RELATED_PAPER_DISCOVERY,
            concurrency_limit=concurrency_limit,
            description="Related papers from citation and recommendation sources",
        )

    async def _related(self, client: DiscoverySourceClient, paper_id: str, limit: int) -> list[dict[str, Any]]:
        async def fetch() -> list[dict[str, Any]]:
            await self._limiter.acquire(client.source, timeout=self._rate_limit_wait)
            papers = await client.related(paper_id, limit=limit)
            return [paper.model_dump() for paper in papers]

        return await self._cache.get_or_fetch(discovery_key(paper_id, f"{client.source}:related"), fetch)

    async def invoke(self, agent_input: AgentInput) -> AgentOutput:
        metadata = agent_input.upstream.get("metadata")
        paper_id = str(
            (metadata.get("doi") if isinstance(metadata, Mapping) else None)
            or agent_input.payload.get("paper_id")
            or ""
        ).strip()
        if not paper_id:
            raise AgentError.permanent_error("paper_id is required for related-paper discovery")
        if not self._clients:
            raise AgentError.permanent_error("No discovery sources configured")
        limit = int(agent_input.payload.get("limit") or 10)

        sources = sorted(self._clients)
        results = await asyncio.gather(
            *(self._related(self._clients[source], paper_id, limit) for source in sources),
            return_exceptions=True,
        )
        papers: list[RelatedPaper] = []
        failures: dict[str, str] = {}
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                failures[source] = str(result)
                logger.warning("related_paper_source_failed", source=source, paper_id=paper_id, error=str(result))
                continue
            papers.extend(RelatedPaper.model_validate(item) for item in result)

        if failures and len(failures) == len(sources):
            transient = any(
                not isinstance(exc, ProviderError) or exc.transient
                for exc in results
                if isinstance(exc, Exception)
            )
            raise AgentError(f"All discovery sources failed: {failures}", transient=transient)

        return AgentOutput(
            agent=self.descriptor.name,
            capability=self.descriptor.capability,
            payload={"paper_id": paper_id, "related": [paper.model_dump() for paper in _dedupe(papers)[:limit]]},
            metadata={"sources": sources, "failed_sources": sorted(failures)},
        )


def _dedupe(papers: list[RelatedPaper]) -> list[RelatedPaper]:
    seen: set[str] = set()
    unique: list[RelatedPaper] = []
    for paper in papers:
        key = (paper.doi or paper.paper_id or paper.title or "").strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        unique.append(paper)
    return unique


__all__ = [
    "MetadataEnhancerAgent",
    "RelatedPaperDiscoveryAgent",
    "SourceLookupAgent",
    "merge_metadata",
]
