from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..schemas.agents import TokenUsage


class ScholarFlowError(RuntimeError):
    """Base class for orchestration engine failures."""


class CapabilityNotFoundError(ScholarFlowError):
    """Raised when no registered agent advertises the requested capability."""

    def __init__(self, capability: str, *, user_id: str | None = None) -> None:
        detail = f"No agent registered for capability '{capability}'"
        if user_id is not None:
            detail = f"{detail} (user {user_id})"
        super().__init__(detail)
        self.capability = capability
        self.user_id = user_id


class AgentInitializationError(ScholarFlowError):
    """Raised when lazy creation of a user-scoped agent fails."""

    def __init__(self, capability: str, user_id: str | None, cause: BaseException) -> None:
        super().__init__(f"Failed to initialise agent for '{capability}' (user {user_id}): {cause}")
        self.capability = capability
        self.user_id = user_id
        self.__cause__ = cause


class InvalidWorkflowError(ScholarFlowError):
    """Raised when a workflow definition is structurally malformed."""


class CyclicDependencyError(InvalidWorkflowError):
    """Raised when a task graph contains a dependency cycle."""

    def __init__(self, task_ids: Sequence[str]) -> None:
        ordered = sorted(task_ids)
        super().__init__(f"Dependency cycle detected among tasks: {', '.join(ordered)}")
        self.task_ids = tuple(ordered)


class InvalidTaskTransitionError(ScholarFlowError):
    """Raised when a task is moved through an illegal state transition."""

    def __init__(self, task_id: str, current: str, target: str) -> None:
        super().__init__(f"Task '{task_id}' cannot move from {current} to {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


class WorkflowNotFoundError(ScholarFlowError):
    """Raised when no builder is registered for a workflow name."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown workflow '{name}'")
        self.name = name


class RateLimitExceededError(ScholarFlowError):
    """Raised when a provider permit cannot be granted in time."""

    def __init__(self, provider: str, *, retry_after: float | None = None) -> None:
        message = f"Rate limit exceeded for provider '{provider}'"
        if retry_after is not None:
            message = f"{message}; retry after {retry_after:.3f}s"
        super().__init__(message)
        self.provider = provider
        self.retry_after = retry_after


class AgentError(ScholarFlowError):
    """Failure reported across the agent invocation boundary.

    ``transient`` errors (network hiccups, provider overload) are eligible for
    retry; permanent ones (invalid input, unsupported operation) fail the task
    immediately. Provider-backed agents attach the token usage of the failed
    call when the provider reported one.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool,
        usage: "TokenUsage | None" = None,
    ) -> None:
        super().__init__(message)
        self.transient = transient
        self.usage = usage

    @classmethod
    def transient_error(cls, message: str, *, usage: "TokenUsage | None" = None) -> "AgentError":
        return cls(message, transient=True, usage=usage)

    @classmethod
    def permanent_error(cls, message: str, *, usage: "TokenUsage | None" = None) -> "AgentError":
        return cls(message, transient=False, usage=usage)


class ProviderError(ScholarFlowError):
    """Raised by provider and discovery clients when a remote call fails."""

    def __init__(self, provider: str, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.transient = transient
        self.status_code = status_code


class InvalidUsageRecordError(ScholarFlowError, ValueError):
    """Raised when a provider call record carries malformed accounting data."""


__all__ = [
    "AgentError",
    "AgentInitializationError",
    "CapabilityNotFoundError",
    "CyclicDependencyError",
    "InvalidTaskTransitionError",
    "InvalidUsageRecordError",
    "InvalidWorkflowError",
    "ProviderError",
    "RateLimitExceededError",
    "ScholarFlowError",
    "WorkflowNotFoundError",
]
