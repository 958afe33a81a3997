from __future__ import annotations

from typing import Any, Mapping

from ..core.exceptions import AgentError
from ..schemas.agents import AgentCapability, AgentInput
from ..services.providers import ProviderResponse
from .base import ProviderBackedAgent, parse_json_object, upstream_text

MAX_PROMPT_CHARS = 12_000


def _clip(text: str, limit: int = MAX_PROMPT_CHARS) -> str:
    return text if len(text) <= limit else text[:limit]


class PaperProcessorAgent(ProviderBackedAgent):
    """Extracts title, abstract and section structure from raw paper text."""

    capability = AgentCapability.PAPER_PROCESSOR
    max_output_tokens = 2048

    def build_prompt(self, agent_input: AgentInput) -> str:
        text = str(agent_input.payload.get("text") or "").strip()
        if not text:
            raise AgentError.permanent_error(
                f"No text available for paper '{agent_input.payload.get('paper_id')}'"
            )
        return (
            "Extract the structure of the following paper. Respond with a JSON object "
            'with keys "title", "abstract" and "sections" (a list of objects with '
            '"heading" and "content").\n\n'
            f"{_clip(text)}"
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        text = str(agent_input.payload.get("text") or "")
        try:
            structure = parse_json_object(response.output)
        except ValueError:
            structure = {}
        sections = [
            {"heading": str(item.get("heading", "")), "content": str(item.get("content", ""))}
            for item in structure.get("sections") or []
            if isinstance(item, Mapping)
        ]
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "title": structure.get("title") or agent_input.payload.get("title"),
            "abstract": structure.get("abstract"),
            "sections": sections,
            "text": text,
        }


class ContentSummarizerAgent(ProviderBackedAgent):
    """Summarises extracted paper text."""

    capability = AgentCapability.CONTENT_SUMMARIZER

    _STYLES = {
        "brief": "in three sentences",
        "standard": "in one paragraph",
        "detailed": "in four to six paragraphs covering motivation, method, results and limitations",
    }

    def build_prompt(self, agent_input: AgentInput) -> str:
        text = upstream_text(agent_input)
        if not text:
            raise AgentError.permanent_error("Nothing to summarise")
        style = str(agent_input.payload.get("style") or "standard")
        instruction = self._STYLES.get(style, self._STYLES["standard"])
        return f"Summarise the following paper {instruction}.\n\n{_clip(text)}"

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        summary = response.output.strip()
        if not summary:
            raise ValueError("empty summary")
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "style": agent_input.payload.get("style") or "standard",
            "summary": summary,
        }


class ConceptExplainerAgent(ProviderBackedAgent):
    """Explains key technical terms at a requested education level."""

    capability = AgentCapability.CONCEPT_EXPLAINER

    def build_prompt(self, agent_input: AgentInput) -> str:
        text = upstream_text(agent_input)
        if not text:
            raise AgentError.permanent_error("No text to extract concepts from")
        level = agent_input.payload.get("level") or "graduate"
        return (
            f"Identify the key technical concepts in this paper and explain each for a {level} reader. "
            'Respond with a JSON object {"concepts": [{"term": ..., "explanation": ...}]}.\n\n'
            f"{_clip(text)}"
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        data = parse_json_object(response.output)
        concepts = [
            {"term": str(item["term"]), "explanation": str(item.get("explanation", ""))}
            for item in data.get("concepts") or []
            if isinstance(item, Mapping) and item.get("term")
        ]
        return {"paper_id": agent_input.payload.get("paper_id"), "concepts": concepts}


class CitationFormatterAgent(ProviderBackedAgent):
    """Formats a bibliography entry from enriched metadata."""

    capability = AgentCapability.CITATION_FORMATTER
    max_output_tokens = 512

    def build_prompt(self, agent_input: AgentInput) -> str:
        style = agent_input.payload.get("style") or "APA"
        metadata = agent_input.upstream.get("metadata")
        if isinstance(metadata, Mapping):
            details = "\n".join(
                f"{key}: {value}"
                for key, value in metadata.items()
                if key in {"title", "authors", "year", "doi", "venue"} and value
            )
        else:
            extracted = agent_input.upstream.get("extract") or {}
            details = f"title: {extracted.get('title') or agent_input.payload.get('paper_id')}"
        return f"Format a {style} citation for the paper below. Reply with the citation only.\n\n{details}"

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "style": agent_input.payload.get("style") or "APA",
            "citation": response.output.strip(),
        }


class QualityCheckerAgent(ProviderBackedAgent):
    """Reviews generated artefacts for accuracy and consistency."""

    capability = AgentCapability.QUALITY_CHECKER

    def build_prompt(self, agent_input: AgentInput) -> str:
        sections: list[str] = []
        for task_id, output in agent_input.upstream.items():
            if isinstance(output, Mapping):
                body = output.get("summary") or output.get("citation") or output.get("concepts")
                sections.append(f"## {task_id}\n{body}")
        if not sections:
            raise AgentError.permanent_error("Nothing to review")
        return (
            "Review the generated material below for factual consistency and clarity. "
            'Respond with a JSON object {"score": <0-1>, "issues": [<string>]}.\n\n'
            + _clip("\n\n".join(sections))
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        data = parse_json_object(response.output)
        score = float(data.get("score", 0.0))
        return {
            "paper_id": agent_input.payload.get("paper_id"),
            "score": min(1.0, max(0.0, score)),
            "issues": [str(issue) for issue in data.get("issues") or []],
            "reviewed": sorted(agent_input.upstream),
        }


class PaperComparatorAgent(ProviderBackedAgent):
    """Compares several papers using their summaries."""

    capability = AgentCapability.PAPER_COMPARATOR
    max_output_tokens = 2048

    def build_prompt(self, agent_input: AgentInput) -> str:
        summaries = [
            f"Paper {output.get('paper_id')}:\n{output.get('summary')}"
            for output in agent_input.upstream.values()
            if isinstance(output, Mapping) and output.get("summary")
        ]
        if len(summaries) < 2:
            raise AgentError.permanent_error("Comparison needs at least two summaries")
        aspects = agent_input.payload.get("aspects") or ["methodology", "results", "limitations"]
        return (
            f"Compare the following papers with respect to {', '.join(aspects)}.\n\n"
            + _clip("\n\n".join(summaries))
        )

    def parse_output(self, response: ProviderResponse, agent_input: AgentInput) -> Any:
        return {
            "paper_ids": list(agent_input.payload.get("paper_ids") or []),
            "comparison": response.output.strip(),
        }


__all__ = [
    "CitationFormatterAgent",
    "ConceptExplainerAgent",
    "ContentSummarizerAgent",
    "PaperComparatorAgent",
    "PaperProcessorAgent",
    "QualityCheckerAgent",
]
