from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status

from ..bootstrap import Runtime
from ..orchestration.orchestrator import Orchestrator
from ..services.usage import UsageAccountant


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Runtime not initialised")
    return runtime


def get_accountant(runtime: Runtime = Depends(get_runtime)) -> UsageAccountant:
    return runtime.accountant


def get_orchestrator(runtime: Runtime = Depends(get_runtime)) -> Orchestrator:
    return runtime.orchestrator
