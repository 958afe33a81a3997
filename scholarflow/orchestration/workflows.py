"""Named workflow builders.

A builder is a pure function ``(params) -> TaskGraph``. It lays out the tasks
for one kind of request and never performs I/O; the orchestrator assigns the
correlation id, validates the graph and runs it.
"""

from __future__ import annotations

from typing import Any, Callable, Mapping

from ..core.exceptions import InvalidWorkflowError, WorkflowNotFoundError
from ..core.logging import get_logger
from ..schemas.agents import AgentCapability
from .graph import TaskGraph

logger = get_logger(name=__name__)

WorkflowBuilder = Callable[[Mapping[str, Any]], TaskGraph]

PAPER_PROCESSING = "paper_processing"
PAPER_COMPARISON = "paper_comparison"
METADATA_ENRICHMENT = "metadata_enrichment"
CHAT = "chat"


class WorkflowCatalog:
    def __init__(self) -> None:
        self._builders: dict[str, WorkflowBuilder] = {}

    def register(self, name: str, builder: WorkflowBuilder, *, replace: bool = False) -> None:
        key = name.strip()
        if not key:
            raise ValueError("Workflow name must not be empty")
        if key in self._builders and not replace:
            raise ValueError(f"Workflow '{key}' is already registered")
        self._builders[key] = builder
        logger.debug("workflow_registered", workflow=key)

    def get(self, name: str) -> WorkflowBuilder:
        try:
            return self._builders[name]
        except KeyError:
            raise WorkflowNotFoundError(name) from None

    def build(self, name: str, params: Mapping[str, Any] | None = None) -> TaskGraph:
        builder = self.get(name)
        try:
            return builder(dict(params or {}))
        except (TypeError, ValueError, KeyError, AttributeError) as exc:
            raise InvalidWorkflowError(f"Invalid parameters for workflow '{name}': {exc}") from exc

    def names(self) -> list[str]:
        return sorted(self._builders)

    def __contains__(self, name: object) -> bool:
        return name in self._builders


def _require(params: Mapping[str, Any], key: str) -> Any:
    value = params.get(key)
    if value in (None, "", [], ()):
        raise InvalidWorkflowError(f"Missing required parameter '{key}'")
    return value


def _flag(params: Mapping[str, Any], key: str, default: bool) -> bool:
    value = params.get(key, default)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _string_list(params: Mapping[str, Any], key: str, *, allow_scalar: bool = True) -> list[str]:
    """A list parameter; a lone string counts as one item only where ``allow_scalar`` says so."""
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        if not allow_scalar:
            raise InvalidWorkflowError(f"Parameter '{key}' must be a list, not a string")
        return [value] if value.strip() else []
    if not isinstance(value, (list, tuple, set, frozenset)):
        raise InvalidWorkflowError(f"Parameter '{key}' must be a list")
    return [str(item) for item in value]


def _int_param(params: Mapping[str, Any], key: str, default: int, *, minimum: int = 1) -> int:
    value = params.get(key, default)
    if isinstance(value, bool):
        raise InvalidWorkflowError(f"Parameter '{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidWorkflowError(f"Parameter '{key}' must be an integer") from None
    if number < minimum:
        raise InvalidWorkflowError(f"Parameter '{key}' must be at least {minimum}")
    return number


def _mapping_param(params: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = params.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise InvalidWorkflowError(f"Parameter '{key}' must be an object")
    return value


def _paper_payload(params: Mapping[str, Any], paper_id: str) -> dict[str, Any]:
    payload: dict[str, Any] = {"paper_id": paper_id}
    for key in ("title", "text", "doi"):
        if params.get(key):
            payload[key] = params[key]
    return payload


def _add_metadata_branches(graph: TaskGraph, paper: Mapping[str, Any]) -> str:
    lookup_payload = {"paper_id": paper.get("doi") or paper["paper_id"]}
    crossref = graph.add_task(AgentCapability.CROSSREF_LOOKUP, lookup_payload, task_id="crossref")
    semantic = graph.add_task(
        AgentCapability.SEMANTIC_SCHOLAR_LOOKUP,
        lookup_payload,
        task_id="semantic_scholar",
    )
    return graph.add_task(
        AgentCapability.METADATA_ENHANCER,
        dict(paper),
        depends_on=(crossref, semantic),
        task_id="metadata",
    )


def build_paper_processing(params: Mapping[str, Any]) -> TaskGraph:
    """Full paper pipeline.

    Extraction feeds summarisation and concept explanation; metadata is
    enriched from Crossref and Semantic Scholar in parallel. Citation
    formatting, citation verification, related-paper discovery and external
    claim research are optional stages, and the quality check always runs
    last over whatever the earlier stages produced.
    """
    paper_id = str(_require(params, "paper_id"))
    paper = _paper_payload(params, paper_id)
    graph = TaskGraph(PAPER_PROCESSING)

    extract = graph.add_task(AgentCapability.PAPER_PROCESSOR, paper, task_id="extract", required=True)
    summarize = graph.add_task(
        AgentCapability.CONTENT_SUMMARIZER,
        {"paper_id": paper_id, "style": params.get("summary_style", "detailed")},
        depends_on=(extract,),
        task_id="summarize",
        required=True,
    )
    concepts = graph.add_task(
        AgentCapability.CONCEPT_EXPLAINER,
        {"paper_id": paper_id, "level": params.get("concept_level", "graduate")},
        depends_on=(extract,),
        task_id="concepts",
    )
    quality_inputs = [summarize, concepts]

    metadata: str | None = None
    if _flag(params, "include_metadata", True):
        metadata = _add_metadata_branches(graph, paper)

    if _flag(params, "include_citations", True):
        citation_deps = (extract,) if metadata is None else (extract, metadata)
        citations = graph.add_task(
            AgentCapability.CITATION_FORMATTER,
            {"paper_id": paper_id, "style": params.get("citation_style", "APA")},
            depends_on=citation_deps,
            task_id="citations",
        )
        quality_inputs.append(citations)
        if _flag(params, "verify_citations", False):
            quality_inputs.append(
                graph.add_task(
                    AgentCapability.CITATION_VERIFIER,
                    {"paper_id": paper_id},
                    depends_on=(citations,) if metadata is None else (citations, metadata),
                    task_id="citation_check",
                )
            )

    if _flag(params, "include_discovery", False):
        graph.add_task(
            AgentCapability.RELATED_PAPER_DISCOVERY,
            {"paper_id": paper.get("doi") or paper_id, "limit": _int_param(params, "discovery_limit", 10)},
            depends_on=(metadata,) if metadata is not None else (),
            task_id="discovery",
        )

    if _flag(params, "include_research", False):
        quality_inputs.append(
            graph.add_task(
                AgentCapability.PERPLEXITY_RESEARCHER,
                {
                    "paper_id": paper_id,
                    "topic": params.get("research_topic"),
                    "claims": _string_list(params, "claims"),
                },
                depends_on=(extract,),
                task_id="research",
            )
        )

    if _flag(params, "quality_check", True):
        graph.add_task(
            AgentCapability.QUALITY_CHECKER,
            {"paper_id": paper_id},
            depends_on=tuple(quality_inputs),
            task_id="quality",
        )
    return graph


def build_metadata_enrichment(params: Mapping[str, Any]) -> TaskGraph:
    paper_id = str(_require(params, "paper_id"))
    graph = TaskGraph(METADATA_ENRICHMENT)
    metadata = _add_metadata_branches(graph, _paper_payload(params, paper_id))
    graph.get(metadata).required = True
    return graph


def build_paper_comparison(params: Mapping[str, Any]) -> TaskGraph:
    _require(params, "paper_ids")
    paper_ids = _string_list(params, "paper_ids", allow_scalar=False)
    if len(set(paper_ids)) < 2:
        raise InvalidWorkflowError("Comparison needs at least two distinct papers")
    texts = _mapping_param(params, "texts")
    graph = TaskGraph(PAPER_COMPARISON)
    summaries: list[str] = []
    for index, paper_id in enumerate(dict.fromkeys(paper_ids), start=1):
        payload: dict[str, Any] = {"paper_id": paper_id}
        if texts.get(paper_id):
            payload["text"] = texts[paper_id]
        extract = graph.add_task(
            AgentCapability.PAPER_PROCESSOR,
            payload,
            task_id=f"extract_{index}",
        )
        summaries.append(
            graph.add_task(
                AgentCapability.CONTENT_SUMMARIZER,
                {"paper_id": paper_id, "style": "brief"},
                depends_on=(extract,),
                task_id=f"summarize_{index}",
            )
        )
    graph.add_task(
        AgentCapability.PAPER_COMPARATOR,
        {"paper_ids": list(dict.fromkeys(paper_ids)), "aspects": _string_list(params, "aspects")},
        depends_on=tuple(summaries),
        task_id="compare",
        required=True,
    )
    return graph


def build_chat(params: Mapping[str, Any]) -> TaskGraph:
    message = str(_require(params, "message"))
    provider = params.get("provider")
    if provider is not None and (not isinstance(provider, str) or not provider.strip()):
        raise InvalidWorkflowError("Parameter 'provider' must be a provider name")
    graph = TaskGraph(CHAT)
    graph.add_task(
        AgentCapability.CHAT,
        {"message": message, "paper_ids": _string_list(params, "paper_ids", allow_scalar=False)},
        task_id="reply",
        required=True,
        provider=provider,
    )
    return graph


def default_catalog() -> WorkflowCatalog:
    catalog = WorkflowCatalog()
    catalog.register(PAPER_PROCESSING, build_paper_processing)
    catalog.register(PAPER_COMPARISON, build_paper_comparison)
    catalog.register(METADATA_ENRICHMENT, build_metadata_enrichment)
    catalog.register(CHAT, build_chat)
    return catalog


__all__ = [
    "CHAT",
    "METADATA_ENRICHMENT",
    "PAPER_COMPARISON",
    "PAPER_PROCESSING",
    "WorkflowBuilder",
    "WorkflowCatalog",
    "build_chat",
    "build_metadata_enrichment",
    "build_paper_comparison",
    "build_paper_processing",
    "default_catalog",
]
