from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from .api.routes import router as api_router
from .bootstrap import Runtime, build_runtime
from .core.config import get_settings
from .core.logging import configure_logging, get_logger

logger = get_logger(name=__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    """Build the HTTP app. Without a runtime, one is built from settings at startup."""
    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging(settings.observability.log_level, environment=settings.environment)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        owned = runtime is None
        app.state.runtime = runtime if runtime is not None else build_runtime(settings)
        logger.info("app_started", environment=settings.environment)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()
            logger.info("app_stopped")

    app = FastAPI(title="ScholarFlow", version="0.1.0", lifespan=app_lifespan)
    if runtime is not None:
        app.state.runtime = runtime
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/", tags=["health"])
    async def root() -> dict[str, str]:
        return {"message": "ScholarFlow orchestration engine running"}

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
