from __future__ import annotations

import re
from typing import Any, Mapping

from ..core.exceptions import AgentError
from ..schemas.agents import AgentCapability, AgentInput
from ..services.providers import ProviderResponse
from .base import ProviderBackedAgent, parse_json_object

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+(?=[A-Z])")
_QUANTITATIVE = re.compile(r"\b\d+(?:\.\d+)?\s*(?:%|fold|times)")
_STATISTICAL = re.compile(r"\b(?:p\s*[<>=]\s*0\.\d+|significant|correlation|odds ratio|confidence interval)", re.I)

_FINDING_PHRASES = (
    "we found",
    "results show",
    "findings indicate",
    "we demonstrate",
    "we report",
    "we observed",
    "suggests that",
    "indicates that",
    "shows that",
    "outperform",
)
_BACKGROUND_PHRASES = (
    "previous studies",
    "has been shown",
    "it is known",
    "we used",
    "we conducted",
    "future work",
    "further research",
)


def extract_claims(abstract: str, *, limit: int = 5) -> list[str]:
    """Pick the sentences of an abstract that read most like findings.

    Sentences announcing results, carrying numbers or statistics score up;
    background and methodology sentences score down. Ties keep text order.
    """
    sentences = [item.strip() for item in _SENTENCE_SPLIT.split(" ".join(abstract.split())) if item.strip()]
    scored: list[tuple[int, int, str]] = []
    for index, sentence in enumerate(sentences):
        lower = sentence.lower()
        if len(sentence.split()) < 5:
            continue
        score = sum(2 for phrase in _FINDING_PHRASES if phrase in lower)
        score += 2 if _QUANTITATIVE.search(sentence) else 0
        score += 1 if _STATISTICAL.search(sentence) else 0
        score -= sum(2 for phrase in _BACKGROUND_PHRASES if phrase in lower)
        if score > 0:
            scored.append((score, index, sentence))
    best = sorted(scored, key=lambda item: (-item[0], item[1]))[:limit]
    return [sentence for _, _, sentence in sorted(best, key=lambda item: item[1])]


class PerplexityResearchAgent(ProviderBackedAgent):
    """Checks a paper's key claims against current external research."""

    capability = AgentCapability.PERPLEXITY_RESEARCHER
    system_prompt = "You are a research analyst who verifies scientific claims against published literature."

    def build_prompt(self, agent_input: AgentInput) -> str:
        extracted = agent_input.upstream.get("extract")
        extracted = extracted if isinstance(extracted, Mapping) else {}
        topic = agent_input.payload.get("topic") or extracted.get("title") or agent_input.payload.get("paper_id")
        claims = [str(claim) for claim in agent_input.payload.get("claims") or []]
        if not claims and extracted.get("abstract"):
            claims = extract_claims(str(extracted["abstract"]))
        if not claims:
            raise AgentError.permanent_error(f"No claims to research for '{topic}'")
        listing = "\n".join(f"{index}. {claim}" for index, claim in enumerate(claims, start=1))
        return (
            f"Research topic: {topic}\n"
            "For each claim below, say whether current literature supports, contradicts or does not "
            "address it, citing sources. Respond with a JSON object "
            '{"findings": [{"claim": ..., "assessment": "supported|contradicted|unclear", '
            '"sources": [<string>]}], "summary": <string>}.\n\n'
            f"{listing}"
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        try:
            data = parse_json_object(response.output)
        except ValueError:
            summary = response.output.strip()
            if not summary:
                raise
            data = {"summary": summary}
        findings = [
            {
                "claim": str(item.get("claim", "")),
                "assessment": str(item.get("assessment") or "unclear").lower(),
                "sources": [str(source) for source in item.get("sources") or []],
            }
            for item in data.get("findings") or []
            if isinstance(item, Mapping)
        ]
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "findings": findings,
            "summary": str(data.get("summary") or ""),
        }


def _normalise(text: Any) -> str:
    return " ".join(re.sub(r"[^\w\s]", " ", str(text or "")).lower().split())


def compare_citation(citation: str, metadata: Mapping[str, Any]) -> dict[str, bool | None]:
    """Check a formatted citation against enriched metadata; None means nothing to compare."""
    normalised = _normalise(citation)
    checks: dict[str, bool | None] = {"title": None, "year": None, "doi": None}
    if metadata.get("title"):
        checks["title"] = _normalise(metadata["title"]) in normalised
    if metadata.get("year"):
        checks["year"] = str(metadata["year"]) in citation
    if metadata.get("doi"):
        checks["doi"] = str(metadata["doi"]).lower() in citation.lower()
    return checks


class CitationVerifierAgent(ProviderBackedAgent):
    """Verifies a formatted citation against the paper's enriched metadata."""

    capability = AgentCapability.CITATION_VERIFIER
    max_output_tokens = 512

    def build_prompt(self, agent_input: AgentInput) -> str:
        formatted = agent_input.upstream.get("citations")
        citation = formatted.get("citation") if isinstance(formatted, Mapping) else None
        if not citation:
            raise AgentError.permanent_error("No formatted citation to verify")
        metadata = self._metadata(agent_input)
        details = "\n".join(f"{key}: {value}" for key, value in metadata.items() if value) or "(none)"
        return (
            "Verify that the citation below correctly describes the paper. Respond with a JSON object "
            '{"verified": <bool>, "confidence": <0-1>, "issues": [<string>]}.\n\n'
            f"Citation: {citation}\n\nKnown metadata:\n{details}"
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        data = parse_json_object(response.output)
        citation = str(agent_input.upstream["citations"]["citation"])
        checks = compare_citation(citation, self._metadata(agent_input))
        mismatched = sorted(field for field, ok in checks.items() if ok is False)
        issues = [str(issue) for issue in data.get("issues") or []]
        issues.extend(f"citation does not match metadata {field}" for field in mismatched)
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "citation": citation,
            "verified": bool(data.get("verified")) and not mismatched,
            "confidence": min(1.0, max(0.0, float(data.get("confidence", 0.0)))),
            "checks": checks,
            "issues": issues,
        }

    @staticmethod
    def _metadata(agent_input: AgentInput) -> dict[str, Any]:
        metadata = agent_input.upstream.get("metadata")
        if isinstance(metadata, Mapping):
            return {key: metadata.get(key) for key in ("title", "authors", "year", "doi", "venue")}
        return {}


__all__ = [
    "CitationVerifierAgent",
    "PerplexityResearchAgent",
    "compare_citation",
    "extract_claims",
]
