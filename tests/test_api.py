from __future__ import annotations

import httpx
import pytest

from scholarflow.agents.registry import AgentRegistry
from scholarflow.bootstrap import Runtime, build_runtime
from scholarflow.core.config import Settings
from scholarflow.main import create_app
from scholarflow.schemas.agents import AgentScope
from tests.helpers.stubs import ScriptedAgent, fast_scheduling


def _runtime() -> Runtime:
    registry = AgentRegistry()
    registry.register(
        "chat",
        lambda user_id: ScriptedAgent("chat", [{"reply": "hello"}], name=f"chat:{user_id}", scope=AgentScope.USER),
        AgentScope.USER,
    )
    registry.register("paper-processor", ScriptedAgent("paper-processor"))
    settings = Settings(environment="test", scheduling=fast_scheduling())
    return build_runtime(settings, provider_clients={}, sources={}, registry=registry)


def _client(runtime: Runtime | None) -> tuple[httpx.AsyncClient, httpx.ASGITransport]:
    app = create_app(runtime) if runtime is not None else create_app()
    transport = httpx.ASGITransport(app=app)
    return httpx.AsyncClient(transport=transport, base_url="http://testserver"), transport


@pytest.mark.asyncio
async def test_health_lists_capabilities_and_workflows() -> None:
    client, transport = _client(_runtime())
    try:
        async with client:
            response = await client.get("/api/v1/health")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["capabilities"] == ["chat", "paper-processor"]
    assert "paper_processing" in body["workflows"]


@pytest.mark.asyncio
async def test_workflow_run_is_metered_per_user() -> None:
    runtime = _runtime()
    client, transport = _client(runtime)
    try:
        async with client:
            run = await client.post(
                "/api/v1/workflows/chat",
                json={"params": {"message": "What is a transformer?"}, "user_id": "u1"},
            )
            usage = await client.get("/api/v1/usage", params={"user_id": "u1", "include_records": "true"})
            providers = await client.get("/api/v1/usage/providers")
            agents = await client.get("/api/v1/usage/agents")
            top = await client.get("/api/v1/usage/top-users", params={"limit": 5})
            user = await client.get("/api/v1/usage/users/u1")
    finally:
        await transport.aclose()

    assert run.status_code == 200
    result = run.json()
    assert result["status"] == "completed"
    assert result["outputs"] == {"reply": {"reply": "hello"}}
    assert result["usage"]["request_count"] == 1

    body = usage.json()
    assert body["totals"]["request_count"] == 1
    assert body["records"][0]["correlation_id"] == result["correlation_id"]
    assert body["records"][0]["agent_type"] == "chat"
    assert set(providers.json()) == {"openai"}
    assert set(agents.json()) == {"chat"}
    assert [entry["user_id"] for entry in top.json()] == ["u1"]
    assert user.json()["totals"]["total_tokens"] == 150


@pytest.mark.asyncio
async def test_workflow_errors() -> None:
    client, transport = _client(_runtime())
    try:
        async with client:
            unknown = await client.post("/api/v1/workflows/nope", json={})
            invalid = await client.post("/api/v1/workflows/chat", json={"params": {}})
            bad_timeout = await client.post("/api/v1/workflows/chat", json={"timeout_seconds": 0})
    finally:
        await transport.aclose()

    assert unknown.status_code == 404
    assert invalid.status_code == 200
    assert invalid.json()["status"] == "failed"
    assert "message" in invalid.json()["error"]
    assert bad_timeout.status_code == 422


@pytest.mark.asyncio
async def test_rate_limit_and_cache_endpoints() -> None:
    client, transport = _client(_runtime())
    try:
        async with client:
            limits = await client.get("/api/v1/rate-limits")
            openai = await client.get("/api/v1/rate-limits/openai")
            ollama = await client.get("/api/v1/rate-limits/ollama")
            stats = await client.get("/api/v1/cache")
            cleared = await client.delete("/api/v1/cache")
    finally:
        await transport.aclose()

    assert {"openai", "anthropic", "crossref", "semantic-scholar"} <= set(limits.json())
    assert openai.json()["buckets"]["second"]["capacity"] == 3.0
    assert ollama.status_code == 404
    assert stats.json()["size"] == 0
    assert cleared.status_code == 204


@pytest.mark.asyncio
async def test_ending_a_session_closes_user_agents() -> None:
    runtime = _runtime()
    agent = runtime.registry.resolve("chat", user_id="u2")
    client, transport = _client(runtime)
    try:
        async with client:
            response = await client.delete("/api/v1/sessions/u2")
    finally:
        await transport.aclose()

    assert response.json() == {"user_id": "u2", "closed_agents": 1}
    assert agent.closed is True


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_workflow_series() -> None:
    runtime = _runtime()
    await runtime.orchestrator.execute("chat", {"message": "hi"}, user_id="u3")
    client, transport = _client(runtime)
    try:
        async with client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")
    assert "scholarflow_workflow_runs_total" in response.text
    assert "scholarflow_provider_calls_total" in response.text


@pytest.mark.asyncio
async def test_endpoints_report_unavailable_before_startup() -> None:
    client, transport = _client(None)
    try:
        async with client:
            response = await client.get("/api/v1/usage")
    finally:
        await transport.aclose()

    assert response.status_code == 503
