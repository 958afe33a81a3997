from __future__ import annotations

from typing import Any, Mapping, Protocol
from urllib.parse import quote

import httpx

from ..core.config import EndpointSettings
from ..core.exceptions import ProviderError
from ..core.logging import get_logger
from ..schemas.agents import DiscoverySource
from ..schemas.papers import PaperMetadata, RelatedPaper
from .providers import raise_for_provider_status

logger = get_logger(name=__name__)

_USER_AGENT = "ScholarFlow/0.1 (mailto:ops@scholarflow.dev)"
_SEMANTIC_SCHOLAR_FIELDS = "title,authors,year,venue,abstract,citationCount,referenceCount,externalIds"


class DiscoverySourceClient(Protocol):
    source: str

    async def lookup(self, paper_id: str) -> PaperMetadata:
        ...

    async def related(self, paper_id: str, *, limit: int = 10) -> list[RelatedPaper]:
        ...


class _HTTPSourceClient:
    source: str

    def __init__(self, endpoint: EndpointSettings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._endpoint = endpoint
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=endpoint.timeout_seconds)

    def _headers(self) -> dict[str, str]:
        return {"User-Agent": _USER_AGENT, "Accept": "application/json"}

    async def _get(self, path: str, params: Mapping[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._endpoint.base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            response = await self._client.get(
                url,
                params=dict(params or {}),
                headers=self._headers(),
                timeout=self._endpoint.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderError(self.source, f"request timed out: {exc}", transient=True) from exc
        except httpx.TransportError as exc:
            raise ProviderError(self.source, f"transport error: {exc}", transient=True) from exc
        raise_for_provider_status(self.source, response)
        return response.json()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class CrossrefClient(_HTTPSourceClient):
    """Crossref works API. Papers are addressed by DOI."""

    source = DiscoverySource.CROSSREF.value

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._endpoint.api_key:
            headers["Crossref-Plus-API-Token"] = f"Bearer {self._endpoint.api_key}"
        return headers

    async def _work(self, doi: str) -> dict[str, Any]:
        data = await self._get(f"works/{quote(doi, safe='/')}")
        return data.get("message") or {}

    async def lookup(self, paper_id: str) -> PaperMetadata:
        work = await self._work(paper_id)
        authors = [
            " ".join(part for part in (author.get("given"), author.get("family")) if part)
            for author in work.get("author") or []
        ]
        issued = (work.get("issued") or {}).get("date-parts") or [[None]]
        titles = work.get("title") or []
        venues = work.get("container-title") or []
        return PaperMetadata(
            source=self.source,
            paper_id=paper_id,
            title=titles[0] if titles else None,
            authors=[name for name in authors if name],
            year=issued[0][0] if issued and issued[0] else None,
            doi=work.get("DOI") or paper_id,
            venue=venues[0] if venues else None,
            abstract=work.get("abstract"),
            citation_count=work.get("is-referenced-by-count"),
            reference_count=work.get("references-count"),
        )

    async def related(self, paper_id: str, *, limit: int = 10) -> list[RelatedPaper]:
        work = await self._work(paper_id)
        related: list[RelatedPaper] = []
        for reference in (work.get("reference") or [])[:limit]:
            related.append(
                RelatedPaper(
                    source=self.source,
                    title=reference.get("article-title") or reference.get("unstructured"),
                    doi=reference.get("DOI"),
                    year=_parse_year(reference.get("year")),
                    relation="reference",
                )
            )
        return related


class SemanticScholarClient(_HTTPSourceClient):
    source = DiscoverySource.SEMANTIC_SCHOLAR.value

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self._endpoint.api_key:
            headers["x-api-key"] = self._endpoint.api_key
        return headers

    @staticmethod
    def _paper_ref(paper_id: str) -> str:
        # DOIs need the DOI: prefix; corpus ids and S2 hashes pass through.
        if paper_id.startswith("10."):
            return f"DOI:{paper_id}"
        return paper_id

    async def lookup(self, paper_id: str) -> PaperMetadata:
        data = await self._get(
            f"graph/v1/paper/{quote(self._paper_ref(paper_id), safe=':/')}",
            {"fields": _SEMANTIC_SCHOLAR_FIELDS},
        )
        external = data.get("externalIds") or {}
        return PaperMetadata(
            source=self.source,
            paper_id=paper_id,
            title=data.get("title"),
            authors=[author.get("name") for author in data.get("authors") or [] if author.get("name")],
            year=data.get("year"),
            doi=external.get("DOI"),
            venue=data.get("venue") or None,
            abstract=data.get("abstract"),
            citation_count=data.get("citationCount"),
            reference_count=data.get("referenceCount"),
        )

    async def related(self, paper_id: str, *, limit: int = 10) -> list[RelatedPaper]:
        data = await self._get(
            f"recommendations/v1/papers/forpaper/{quote(self._paper_ref(paper_id), safe=':/')}",
            {"limit": limit, "fields": "title,year,externalIds"},
        )
        related: list[RelatedPaper] = []
        for paper in data.get("recommendedPapers") or []:
            external = paper.get("externalIds") or {}
            related.append(
                RelatedPaper(
                    source=self.source,
                    title=paper.get("title"),
                    doi=external.get("DOI"),
                    paper_id=paper.get("paperId"),
                    year=paper.get("year"),
                    relation="recommended",
                )
            )
        return related


def _parse_year(value: Any) -> int | None:
    try:
        return int(str(value)[:4])
    except (TypeError, ValueError):
        return None


def build_source_clients(
    endpoints: Mapping[str, EndpointSettings],
    *,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, DiscoverySourceClient]:
    clients: dict[str, DiscoverySourceClient] = {}
    crossref = endpoints.get(DiscoverySource.CROSSREF.value)
    if crossref is not None:
        clients[CrossrefClient.source] = CrossrefClient(crossref, http_client=http_client)
    semantic = endpoints.get(DiscoverySource.SEMANTIC_SCHOLAR.value)
    if semantic is not None:
        clients[SemanticScholarClient.source] = SemanticScholarClient(semantic, http_client=http_client)
    logger.info("discovery_sources_built", sources=sorted(clients))
    return clients


__all__ = [
    "CrossrefClient",
    "DiscoverySourceClient",
    "SemanticScholarClient",
    "build_source_clients",
]
