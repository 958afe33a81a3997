from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import structlog


def configure_logging(level: str = "INFO", *, environment: str = "production") -> None:
    """Route structlog through stdlib logging; JSON everywhere except local runs."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
    )

    renderer: Any
    if environment == "local":
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(*, name: str | None = None, **kwargs: Any) -> structlog.stdlib.BoundLogger:
    logger = structlog.get_logger(name)
    if kwargs:
        return logger.bind(**kwargs)
    return logger


@contextmanager
def workflow_log_context(*, correlation_id: str, workflow: str, user_id: str | None = None) -> Iterator[None]:
    """Attach workflow identifiers to every log line emitted inside the block.

    Tasks spawned inside the block copy the context, so agent and limiter
    logs of one run share its ``correlation_id``.
    """
    with structlog.contextvars.bound_contextvars(
        correlation_id=correlation_id,
        workflow=workflow,
        user_id=user_id,
    ):
        yield


__all__ = ["configure_logging", "get_logger", "workflow_log_context"]
