from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from scholarflow.agents.discovery import SourceLookupAgent
from scholarflow.agents.registry import AgentRegistry
from scholarflow.core.config import ProviderLimitSettings, Settings
from scholarflow.core.exceptions import AgentError
from scholarflow.orchestration.graph import TaskGraph
from scholarflow.orchestration.orchestrator import DEADLINE_REASON, Orchestrator
from scholarflow.orchestration.workflows import (
    WorkflowCatalog,
    build_chat,
    build_metadata_enrichment,
    build_paper_comparison,
)
from scholarflow.schemas.agents import AgentCapability, TokenUsage
from scholarflow.schemas.tasks import TaskStatus, WorkflowStatus
from scholarflow.schemas.usage import UsageFilter
from scholarflow.services.cache import DiscoveryCache
from scholarflow.services.rate_limit import ProviderRateLimiter
from scholarflow.services.usage import PricingTable, UsageAccountant
from tests.helpers.stubs import FakeClock, ScriptedAgent, StubSourceClient, fast_scheduling, permanent, transient


def _chain(params: Mapping[str, Any]) -> TaskGraph:
    graph = TaskGraph("chain")
    graph.add_task("extract", {"paper_id": params.get("paper_id", "p1")}, task_id="a", required=params.get("required", False))
    graph.add_task("summarize", {}, depends_on=["a"], task_id="b")
    graph.add_task("quality", {}, depends_on=["b"], task_id="c")
    graph.add_task("concepts", {}, task_id="d")
    return graph


def _single(params: Mapping[str, Any]) -> TaskGraph:
    graph = TaskGraph("single")
    graph.add_task("step", dict(params), task_id="only")
    return graph


def _fan_out(params: Mapping[str, Any]) -> TaskGraph:
    graph = TaskGraph("fan_out")
    for index in range(int(params.get("width", 5))):
        graph.add_task("step", {"index": index}, task_id=f"step_{index}")
    return graph


def _cyclic(params: Mapping[str, Any]) -> TaskGraph:
    graph = TaskGraph("cyclic")
    graph.add_task("step", {}, depends_on=["y"], task_id="x")
    graph.add_task("step", {}, depends_on=["x"], task_id="y")
    return graph


def _catalog() -> WorkflowCatalog:
    catalog = WorkflowCatalog()
    catalog.register("chain", _chain)
    catalog.register("single", _single)
    catalog.register("fan_out", _fan_out)
    catalog.register("cyclic", _cyclic)
    catalog.register("metadata_enrichment", build_metadata_enrichment)
    return catalog


def _orchestrator(
    registry: AgentRegistry,
    *,
    limiter: ProviderRateLimiter | None = None,
    **scheduling: Any,
) -> tuple[Orchestrator, UsageAccountant]:
    accountant = UsageAccountant(PricingTable.from_settings(Settings()))
    orchestrator = Orchestrator(
        registry=registry,
        catalog=_catalog(),
        limiter=limiter or ProviderRateLimiter({}),
        accountant=accountant,
        settings=fast_scheduling(**scheduling),
    )
    return orchestrator, accountant


def _registry(*agents: ScriptedAgent) -> AgentRegistry:
    registry = AgentRegistry()
    for agent in agents:
        registry.register(agent.descriptor.capability, agent)
    return registry


@pytest.mark.asyncio
async def test_chain_completes_and_passes_upstream_results() -> None:
    extract = ScriptedAgent("extract", [{"text": "body"}])
    summarize = ScriptedAgent("summarize", [{"summary": "short"}])
    quality = ScriptedAgent("quality", [{"score": 0.9}])
    concepts = ScriptedAgent("concepts", [{"concepts": []}])
    orchestrator, _ = _orchestrator(_registry(extract, summarize, quality, concepts))

    result = await orchestrator.execute("chain", {"paper_id": "p9"}, user_id="u1")

    assert result.status is WorkflowStatus.COMPLETED
    assert result.succeeded
    assert result.outputs == {
        "a": {"text": "body"},
        "b": {"summary": "short"},
        "c": {"score": 0.9},
        "d": {"concepts": []},
    }
    assert extract.inputs[0].payload == {"paper_id": "p9"}
    assert summarize.inputs[0].upstream == {"a": {"text": "body"}}
    assert quality.inputs[0].upstream == {"b": {"summary": "short"}}
    assert {agent_input.correlation_id for agent_input in extract.inputs + quality.inputs} == {result.correlation_id}
    assert result.usage.request_count == 4
    assert result.usage.total_tokens == 4 * 150


@pytest.mark.asyncio
async def test_permanent_failure_skips_dependents_only() -> None:
    extract = ScriptedAgent("extract", [permanent("pdf is encrypted")])
    summarize = ScriptedAgent("summarize")
    quality = ScriptedAgent("quality")
    concepts = ScriptedAgent("concepts")
    orchestrator, _ = _orchestrator(_registry(extract, summarize, quality, concepts))

    result = await orchestrator.execute("chain")

    assert result.status is WorkflowStatus.PARTIALLY_FAILED
    assert result.failed_task_ids() == ["a"]
    assert sorted(result.skipped_task_ids()) == ["b", "c"]
    assert extract.calls == 1
    assert summarize.calls == 0
    assert quality.calls == 0
    assert concepts.calls == 1
    assert "d" in result.outputs
    failures = {failure.task_id: failure for failure in result.failures}
    assert "pdf is encrypted" in (failures["a"].reason or "")
    assert failures["b"].reason == "dependency 'a' failed"


@pytest.mark.asyncio
async def test_required_task_failure_fails_workflow() -> None:
    agents = [
        ScriptedAgent("extract", [permanent()]),
        ScriptedAgent("summarize"),
        ScriptedAgent("quality"),
        ScriptedAgent("concepts"),
    ]
    orchestrator, _ = _orchestrator(_registry(*agents))

    result = await orchestrator.execute("chain", {"required": True})

    assert result.status is WorkflowStatus.FAILED
    assert any(failure.required for failure in result.failures)


@pytest.mark.asyncio
async def test_merge_waits_for_both_branches() -> None:
    crossref = ScriptedAgent("crossref-lookup", [{"source": "crossref", "title": "A"}], provider=None, delay=0.02)
    semantic = ScriptedAgent("semantic-scholar-lookup", [{"source": "semantic-scholar", "year": 2017}], provider=None, delay=0.05)
    merged_at: list[tuple[int, int]] = []

    class _Merger(ScriptedAgent):
        async def invoke(self, agent_input):  # type: ignore[override]
            merged_at.append((crossref.calls, semantic.calls))
            return await super().invoke(agent_input)

    merger = _Merger("metadata-enhancer", [{"title": "A", "year": 2017}], provider=None)
    orchestrator, accountant = _orchestrator(_registry(crossref, semantic, merger))

    result = await orchestrator.execute("metadata_enrichment", {"paper_id": "10.1/abc"})

    assert result.status is WorkflowStatus.COMPLETED
    assert merger.calls == 1
    assert merged_at == [(1, 1)]
    assert set(merger.inputs[0].upstream) == {"crossref", "semantic_scholar"}
    assert merger.inputs[0].upstream["semantic_scholar"] == {"source": "semantic-scholar", "year": 2017}
    # Agents without a provider never produce provider call records.
    assert accountant.records() == []


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success() -> None:
    flaky = ScriptedAgent("step", [transient(), transient(), {"answer": 42}])
    orchestrator, accountant = _orchestrator(_registry(flaky), max_retries=2)

    result = await orchestrator.execute("single", {"q": "x"}, user_id="u7")

    assert result.status is WorkflowStatus.COMPLETED
    assert result.outputs == {"only": {"answer": 42}}
    assert flaky.calls == 3
    assert [agent_input.attempt for agent_input in flaky.inputs] == [1, 2, 3]
    records = accountant.records(UsageFilter(correlation_id=result.correlation_id))
    assert [record.success for record in records] == [False, False, True]
    assert all(record.user_id == "u7" and record.task_id == "only" for record in records)
    assert result.usage.request_count == 3
    assert result.usage.success_count == 1


@pytest.mark.asyncio
async def test_retry_budget_exhaustion_fails_task() -> None:
    flaky = ScriptedAgent("step", [transient("still overloaded")])
    orchestrator, _ = _orchestrator(_registry(flaky), max_retries=1)

    result = await orchestrator.execute("single")

    assert result.status is WorkflowStatus.PARTIALLY_FAILED
    assert flaky.calls == 2
    failure = result.failures[0]
    assert failure.status is TaskStatus.FAILED
    assert failure.attempts == 2
    assert "still overloaded" in (failure.reason or "")


@pytest.mark.asyncio
async def test_permanent_failures_are_not_retried() -> None:
    broken = ScriptedAgent("step", [permanent()])
    orchestrator, _ = _orchestrator(_registry(broken), max_retries=3)

    await orchestrator.execute("single")

    assert broken.calls == 1


@pytest.mark.asyncio
async def test_call_timeout_counts_as_transient() -> None:
    slow = ScriptedAgent("step", [{"late": True}], delay=0.2)
    orchestrator, accountant = _orchestrator(_registry(slow), max_retries=1, call_timeout_seconds=0.01)

    result = await orchestrator.execute("single")

    assert slow.calls == 2
    assert result.failures[0].reason == "agent call timed out"
    assert accountant.global_totals().request_count == 2
    assert accountant.global_totals().success_count == 0


@pytest.mark.asyncio
async def test_workflow_deadline_skips_unstarted_tasks() -> None:
    agents = [
        ScriptedAgent("extract", [{"text": "body"}], delay=0.2),
        ScriptedAgent("summarize"),
        ScriptedAgent("quality"),
        ScriptedAgent("concepts"),
    ]
    orchestrator, _ = _orchestrator(_registry(*agents))

    result = await orchestrator.execute("chain", timeout=0.05)

    assert result.timed_out is True
    assert result.status is WorkflowStatus.PARTIALLY_FAILED
    # The in-flight extraction is allowed to finish; nothing new starts.
    assert "a" in result.outputs
    assert agents[1].calls == 0
    skipped = {failure.task_id: failure.reason for failure in result.failures}
    assert skipped == {"b": DEADLINE_REASON, "c": DEADLINE_REASON}


@pytest.mark.asyncio
async def test_missing_capability_fails_only_that_task() -> None:
    extract = ScriptedAgent("extract")
    summarize = ScriptedAgent("summarize")
    concepts = ScriptedAgent("concepts")
    orchestrator, _ = _orchestrator(_registry(extract, summarize, concepts))

    result = await orchestrator.execute("chain")

    assert result.status is WorkflowStatus.PARTIALLY_FAILED
    assert result.failed_task_ids() == ["c"]
    assert "quality" in (result.failures[0].reason or "")
    assert set(result.outputs) == {"a", "b", "d"}


@pytest.mark.asyncio
async def test_unknown_workflow_is_reported_not_raised() -> None:
    orchestrator, _ = _orchestrator(AgentRegistry())

    result = await orchestrator.execute("does_not_exist")

    assert result.status is WorkflowStatus.FAILED
    assert "does_not_exist" in (result.error or "")
    assert result.outputs == {}


@pytest.mark.asyncio
async def test_cyclic_workflow_is_rejected_before_any_dispatch() -> None:
    step = ScriptedAgent("step")
    orchestrator, _ = _orchestrator(_registry(step))

    result = await orchestrator.execute("cyclic")

    assert result.status is WorkflowStatus.FAILED
    assert result.error is not None
    assert step.calls == 0


@pytest.mark.asyncio
async def test_agent_concurrency_limit_is_enforced() -> None:
    step = ScriptedAgent("step", concurrency_limit=2, delay=0.01)
    orchestrator, _ = _orchestrator(_registry(step), max_concurrency=10)

    result = await orchestrator.execute("fan_out", {"width": 6})

    assert result.status is WorkflowStatus.COMPLETED
    assert step.calls == 6
    assert step.peak_active == 2


@pytest.mark.asyncio
async def test_global_concurrency_limit_is_enforced() -> None:
    step = ScriptedAgent("step", concurrency_limit=10, delay=0.01)
    orchestrator, _ = _orchestrator(_registry(step), max_concurrency=3)

    await orchestrator.execute("fan_out", {"width": 7})

    assert step.peak_active == 3


@pytest.mark.asyncio
async def test_provider_calls_go_through_rate_limiter() -> None:
    clock = FakeClock()
    limiter = ProviderRateLimiter(
        {"openai": ProviderLimitSettings(requests_per_second=1)},
        clock=clock,
        sleep=clock.sleep,
    )
    step = ScriptedAgent("step")
    orchestrator, _ = _orchestrator(_registry(step), limiter=limiter, max_concurrency=1)

    result = await orchestrator.execute("fan_out", {"width": 3})

    assert result.status is WorkflowStatus.COMPLETED
    status = limiter.status("openai")
    assert status is not None
    assert status.granted == 3
    assert clock.sleeps == [pytest.approx(1.0), pytest.approx(1.0)]


@pytest.mark.asyncio
async def test_concurrent_workflows_keep_usage_separate() -> None:
    step = ScriptedAgent("step", delay=0.01)
    orchestrator, accountant = _orchestrator(_registry(step))

    first, second = await asyncio.gather(
        orchestrator.execute("fan_out", {"width": 2}, user_id="alice"),
        orchestrator.execute("fan_out", {"width": 3}, user_id="bob"),
    )

    assert first.correlation_id != second.correlation_id
    assert first.usage.request_count == 2
    assert second.usage.request_count == 3
    assert accountant.user_statistics("bob").request_count == 3
    assert accountant.global_totals().request_count == 5


def _lookup(params: Mapping[str, Any]) -> TaskGraph:
    graph = TaskGraph("lookup")
    graph.add_task(AgentCapability.CROSSREF_LOOKUP, {"paper_id": "10.1/shared"}, task_id="crossref", max_retries=1)
    return graph


@pytest.mark.asyncio
async def test_timed_out_lookup_does_not_strand_runs_sharing_the_fetch() -> None:
    source = StubSourceClient("crossref", title="Shared", delay=0.3)
    limiter = ProviderRateLimiter({})
    registry = AgentRegistry()
    registry.register(
        AgentCapability.CROSSREF_LOOKUP,
        SourceLookupAgent(AgentCapability.CROSSREF_LOOKUP, source, cache=DiscoveryCache(), limiter=limiter),
    )
    orchestrator, _ = _orchestrator(
        registry,
        limiter=limiter,
        call_timeout_seconds=0.2,
        workflow_timeout_seconds=1.0,
    )
    orchestrator.catalog.register("lookup", _lookup)

    async def delayed() -> Any:
        await asyncio.sleep(0.05)
        return await orchestrator.execute("lookup")

    first, second = await asyncio.wait_for(
        asyncio.gather(orchestrator.execute("lookup"), delayed()),
        timeout=5,
    )

    assert first.status is WorkflowStatus.COMPLETED
    assert second.status is WorkflowStatus.COMPLETED
    assert first.outputs["crossref"]["title"] == "Shared"
    assert second.outputs["crossref"]["title"] == "Shared"
    assert source.lookups == 1


@pytest.mark.asyncio
async def test_cancellation_inside_a_call_fails_the_task_instead_of_hanging() -> None:
    cancelled = ScriptedAgent("step", [asyncio.CancelledError()], provider=None)
    orchestrator, _ = _orchestrator(_registry(cancelled))

    result = await asyncio.wait_for(orchestrator.execute("single"), timeout=5)

    assert result.status is WorkflowStatus.PARTIALLY_FAILED
    assert result.failures[0].status is TaskStatus.FAILED
    assert result.failures[0].reason == "agent call cancelled"


@pytest.mark.asyncio
async def test_stuck_call_after_deadline_is_failed_not_awaited_forever() -> None:
    stuck = ScriptedAgent("step", [{"late": True}], delay=1.0)
    orchestrator, _ = _orchestrator(_registry(stuck), call_timeout_seconds=0.3)

    result = await asyncio.wait_for(orchestrator.execute("single", timeout=0.05), timeout=5)

    assert result.timed_out
    assert result.failures[0].status is TaskStatus.FAILED
    assert result.failures[0].reason in {"agent call timed out", DEADLINE_REASON}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "params",
    [
        {"paper_ids": 5},
        {"paper_ids": "ab"},
        {"paper_ids": ["a", "b"], "texts": "not a mapping"},
    ],
)
async def test_malformed_parameters_yield_failed_result(params: dict[str, Any]) -> None:
    orchestrator, _ = _orchestrator(AgentRegistry())
    orchestrator.catalog.register("paper_comparison", build_paper_comparison)

    result = await orchestrator.execute("paper_comparison", params)

    assert result.status is WorkflowStatus.FAILED
    assert result.error is not None
    assert result.outputs == {}


@pytest.mark.asyncio
async def test_builder_errors_are_wrapped_as_invalid_workflow() -> None:
    def broken(params: Mapping[str, Any]) -> TaskGraph:
        return _single({"limit": int(params["limit"])})

    orchestrator, _ = _orchestrator(AgentRegistry())
    orchestrator.catalog.register("broken", broken)

    result = await orchestrator.execute("broken", {"limit": "many"})

    assert result.status is WorkflowStatus.FAILED
    assert "Invalid parameters for workflow 'broken'" in (result.error or "")


def _limited_clock_limiter(*providers: str) -> ProviderRateLimiter:
    clock = FakeClock()
    return ProviderRateLimiter(
        {provider: ProviderLimitSettings(requests_per_second=10) for provider in providers},
        clock=clock,
        sleep=clock.sleep,
    )


@pytest.mark.asyncio
async def test_requested_provider_is_used_for_permit_call_and_record() -> None:
    chat = ScriptedAgent("chat", [{"reply": "hi"}], provider="anthropic", alternates=["perplexity"])
    limiter = _limited_clock_limiter("anthropic", "perplexity")
    orchestrator, accountant = _orchestrator(_registry(chat), limiter=limiter)
    orchestrator.catalog.register("chat", build_chat)

    result = await orchestrator.execute("chat", {"message": "hi", "provider": "perplexity"}, user_id="u")

    assert result.status is WorkflowStatus.COMPLETED
    assert chat.inputs[0].provider == "perplexity"
    assert limiter.status("perplexity").granted == 1
    assert limiter.status("anthropic").granted == 0
    assert [record.provider for record in accountant.records()] == ["perplexity"]


@pytest.mark.asyncio
async def test_unsupported_provider_fails_without_taking_a_permit() -> None:
    chat = ScriptedAgent("chat", provider="anthropic")
    limiter = _limited_clock_limiter("anthropic", "openai")
    orchestrator, accountant = _orchestrator(_registry(chat), limiter=limiter)
    orchestrator.catalog.register("chat", build_chat)

    result = await orchestrator.execute("chat", {"message": "hi", "provider": "openai"})

    assert result.status is WorkflowStatus.FAILED
    assert "cannot call provider 'openai'" in (result.failures[0].reason or "")
    assert chat.calls == 0
    assert limiter.status("openai").granted == 0
    assert accountant.records() == []


@pytest.mark.asyncio
async def test_fallback_provider_runs_after_retries_are_exhausted() -> None:
    step = ScriptedAgent("step", [{"answer": "local"}], fallback_provider="ollama", fail_on=["openai"])
    orchestrator, accountant = _orchestrator(_registry(step), max_retries=1)

    result = await orchestrator.execute("single")

    assert result.status is WorkflowStatus.COMPLETED
    assert result.outputs == {"only": {"answer": "local"}}
    assert [agent_input.provider for agent_input in step.inputs] == ["openai", "openai", "ollama"]
    assert [agent_input.attempt for agent_input in step.inputs] == [1, 2, 3]
    records = accountant.records(UsageFilter(correlation_id=result.correlation_id))
    assert [(record.provider, record.success) for record in records] == [
        ("openai", False),
        ("openai", False),
        ("ollama", True),
    ]


@pytest.mark.asyncio
async def test_failed_fallback_fails_task_with_fallback_reason() -> None:
    step = ScriptedAgent("step", fallback_provider="ollama", fail_on=["openai", "ollama"])
    orchestrator, _ = _orchestrator(_registry(step), max_retries=0)

    result = await orchestrator.execute("single")

    failure = result.failures[0]
    assert failure.status is TaskStatus.FAILED
    assert failure.attempts == 2
    assert failure.reason == "AgentError: ollama unavailable"


@pytest.mark.asyncio
async def test_permanent_failure_does_not_fall_back() -> None:
    step = ScriptedAgent("step", [permanent()], fallback_provider="ollama")
    orchestrator, _ = _orchestrator(_registry(step), max_retries=2)

    await orchestrator.execute("single")

    assert [agent_input.provider for agent_input in step.inputs] == ["openai"]


@pytest.mark.asyncio
async def test_unrecordable_usage_keeps_the_agent_error() -> None:
    broken_usage = TokenUsage(provider="", input_tokens=5)
    step = ScriptedAgent("step", [AgentError.permanent_error("schema drift", usage=broken_usage)])
    orchestrator, accountant = _orchestrator(_registry(step))

    result = await orchestrator.execute("single")

    assert result.failures[0].reason == "AgentError: schema drift"
    assert accountant.records() == []
