from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from ..bootstrap import Runtime
from ..core.logging import get_logger
from ..orchestration.orchestrator import Orchestrator
from ..schemas.tasks import WorkflowResult
from ..schemas.usage import ProviderCallRecord, RunningTotal, UsageFilter
from ..services.cache import CacheStats
from ..services.rate_limit import RateLimiterStatus
from ..services.usage import UsageAccountant
from .dependencies import get_accountant, get_orchestrator, get_runtime

router = APIRouter()
logger = get_logger(name=__name__)


class HealthResponse(BaseModel):
    status: str = "ok"
    capabilities: list[str]
    workflows: list[str]
    providers: list[str]
    sources: list[str]


class UsageResponse(BaseModel):
    filter: UsageFilter
    totals: RunningTotal
    records: list[ProviderCallRecord] | None = None


class UserUsage(BaseModel):
    user_id: str
    totals: RunningTotal


class WorkflowRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)
    user_id: str | None = None
    timeout_seconds: float | None = Field(default=None, gt=0.0)


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(runtime: Runtime = Depends(get_runtime)) -> HealthResponse:
    return HealthResponse(
        capabilities=runtime.registry.capabilities(),
        workflows=runtime.catalog.names(),
        providers=sorted(runtime.provider_clients),
        sources=sorted(runtime.sources),
    )


@router.get("/usage", response_model=UsageResponse, tags=["usage"])
async def usage_totals(
    provider: str | None = Query(default=None),
    agent_type: str | None = Query(default=None),
    user_id: str | None = Query(default=None),
    task_id: str | None = Query(default=None),
    correlation_id: str | None = Query(default=None),
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    include_records: bool = Query(default=False),
    accountant: UsageAccountant = Depends(get_accountant),
) -> UsageResponse:
    usage_filter = UsageFilter(
        provider=provider,
        agent_type=agent_type,
        user_id=user_id,
        task_id=task_id,
        correlation_id=correlation_id,
        since=since,
        until=until,
    )
    return UsageResponse(
        filter=usage_filter,
        totals=accountant.aggregate(usage_filter),
        records=accountant.records(usage_filter) if include_records else None,
    )


@router.get("/usage/providers", response_model=dict[str, RunningTotal], tags=["usage"])
async def usage_by_provider(accountant: UsageAccountant = Depends(get_accountant)) -> dict[str, RunningTotal]:
    return accountant.provider_statistics()


@router.get("/usage/agents", response_model=dict[str, RunningTotal], tags=["usage"])
async def usage_by_agent(accountant: UsageAccountant = Depends(get_accountant)) -> dict[str, RunningTotal]:
    return accountant.agent_statistics()


@router.get("/usage/top-users", response_model=list[UserUsage], tags=["usage"])
async def usage_top_users(
    limit: int = Query(default=10, ge=1, le=100),
    accountant: UsageAccountant = Depends(get_accountant),
) -> list[UserUsage]:
    return [UserUsage(user_id=user_id, totals=totals) for user_id, totals in accountant.top_users(limit)]


@router.get("/usage/users/{user_id}", response_model=UserUsage, tags=["usage"])
async def usage_for_user(user_id: str, accountant: UsageAccountant = Depends(get_accountant)) -> UserUsage:
    return UserUsage(user_id=user_id, totals=accountant.user_statistics(user_id))


@router.get("/rate-limits", response_model=dict[str, RateLimiterStatus], tags=["rate-limits"])
async def rate_limits(runtime: Runtime = Depends(get_runtime)) -> dict[str, RateLimiterStatus]:
    return runtime.limiter.statuses()


@router.get("/rate-limits/{provider}", response_model=RateLimiterStatus, tags=["rate-limits"])
async def rate_limit_for_provider(provider: str, runtime: Runtime = Depends(get_runtime)) -> RateLimiterStatus:
    limiter_status = runtime.limiter.status(provider)
    if limiter_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No rate limit configured for '{provider}'")
    return limiter_status


@router.get("/cache", response_model=CacheStats, tags=["cache"])
async def cache_stats(runtime: Runtime = Depends(get_runtime)) -> CacheStats:
    return runtime.cache.stats()


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT, tags=["cache"])
async def clear_cache(runtime: Runtime = Depends(get_runtime)) -> Response:
    runtime.cache.clear()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/workflows", response_model=list[str], tags=["workflows"])
async def list_workflows(orchestrator: Orchestrator = Depends(get_orchestrator)) -> list[str]:
    return orchestrator.catalog.names()


@router.post("/workflows/{name}", response_model=WorkflowResult, tags=["workflows"])
async def run_workflow(
    name: str,
    payload: WorkflowRequest,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> WorkflowResult:
    if name not in orchestrator.catalog:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown workflow '{name}'")
    logger.info("workflow_requested", workflow=name, user_id=payload.user_id)
    return await orchestrator.execute(
        name,
        payload.params,
        user_id=payload.user_id,
        timeout=payload.timeout_seconds,
    )


@router.delete("/sessions/{user_id}", tags=["sessions"])
async def end_session(user_id: str, runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    closed = await runtime.registry.end_session(user_id)
    return {"user_id": user_id, "closed_agents": closed}
