from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Iterator, Mapping

from ..core.exceptions import CyclicDependencyError, InvalidTaskTransitionError, InvalidWorkflowError
from ..schemas.agents import AIProvider, AgentCapability, DiscoverySource, capability_id, provider_id
from ..schemas.tasks import GraphStatus, TaskStatus

DEFAULT_MAX_RETRIES = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Task:
    task_id: str
    capability: str
    input: dict[str, Any]
    depends_on: tuple[str, ...] = ()
    provider: str | None = None
    required: bool = False
    max_retries: int = DEFAULT_MAX_RETRIES
    status: TaskStatus = TaskStatus.PENDING
    result: Any = None
    error: str | None = None
    retry_count: int = 0
    attempts: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """Result of one task attempt as reported to ``TaskGraph.advance``."""

    succeeded: bool
    result: Any = None
    reason: str | None = None
    retryable: bool = False

    @classmethod
    def success(cls, result: Any = None) -> "TaskOutcome":
        return cls(succeeded=True, result=result)

    @classmethod
    def failure(cls, reason: str, *, retryable: bool = False) -> "TaskOutcome":
        return cls(succeeded=False, reason=reason, retryable=retryable)


class TaskGraph:
    """Directed acyclic graph of tasks for one workflow run.

    Tasks are added while the graph is open; ``build`` validates dependency
    references and rejects cycles with a Kahn topological sort. After that
    the graph only changes through the state transitions below:

    ``PENDING -> READY -> RUNNING -> SUCCEEDED | FAILED | RETRYING``
    and ``RETRYING -> RUNNING`` while the retry budget lasts. A task that
    ends ``FAILED`` marks every transitive dependent ``SKIPPED``.
    """

    def __init__(
        self,
        workflow: str,
        *,
        correlation_id: str | None = None,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.workflow = workflow
        self.correlation_id = correlation_id
        self._default_max_retries = max(0, default_max_retries)
        self._explicit_retries: set[str] = set()
        self._tasks: dict[str, Task] = {}
        self._dependents: dict[str, list[str]] = {}
        self._order: list[str] = []
        self._built = False
        self._deadline_skipped = False

    def add_task(
        self,
        capability: AgentCapability | str,
        input: Mapping[str, Any] | None = None,
        depends_on: Iterable[str] = (),
        *,
        task_id: str | None = None,
        provider: AIProvider | DiscoverySource | str | None = None,
        required: bool = False,
        max_retries: int | None = None,
    ) -> str:
        if self._built:
            raise InvalidWorkflowError("Tasks cannot be added after the graph is built")
        capability_key = capability_id(capability)
        key = task_id or f"{capability_key}-{len(self._tasks) + 1}"
        if key in self._tasks:
            raise InvalidWorkflowError(f"Duplicate task id '{key}'")
        dependencies = tuple(dict.fromkeys(depends_on))
        self._tasks[key] = Task(
            task_id=key,
            capability=capability_key,
            input=dict(input or {}),
            depends_on=dependencies,
            provider=provider_id(provider),
            required=required,
            max_retries=self._default_max_retries if max_retries is None else max(0, max_retries),
        )
        if max_retries is not None:
            self._explicit_retries.add(key)
        return key

    def apply_retry_default(self, max_retries: int) -> None:
        """Set the retry budget of every task added without an explicit one."""
        if self._built:
            raise InvalidWorkflowError("Retry defaults must be applied before the graph is built")
        self._default_max_retries = max(0, max_retries)
        for task_id, task in self._tasks.items():
            if task_id not in self._explicit_retries:
                task.max_retries = self._default_max_retries

    def build(self) -> "TaskGraph":
        for task in self._tasks.values():
            missing = [dep for dep in task.depends_on if dep not in self._tasks]
            if missing:
                raise InvalidWorkflowError(
                    f"Task '{task.task_id}' depends on unknown task(s): {', '.join(sorted(missing))}"
                )

        dependents: dict[str, list[str]] = {task_id: [] for task_id in self._tasks}
        in_degree: dict[str, int] = {}
        for task in self._tasks.values():
            in_degree[task.task_id] = len(task.depends_on)
            for dep in task.depends_on:
                dependents[dep].append(task.task_id)

        queue = deque(task_id for task_id, degree in in_degree.items() if degree == 0)
        order: list[str] = []
        while queue:
            current = queue.popleft()
            order.append(current)
            for child in dependents[current]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

        if len(order) != len(self._tasks):
            raise CyclicDependencyError([task_id for task_id, degree in in_degree.items() if degree > 0])

        self._dependents = dependents
        self._order = order
        self._built = True
        return self

    @property
    def built(self) -> bool:
        return self._built

    @property
    def tasks(self) -> dict[str, Task]:
        return dict(self._tasks)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise InvalidWorkflowError(f"Unknown task id '{task_id}'") from None

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[Task]:
        for task_id in self.topological_order():
            yield self._tasks[task_id]

    def topological_order(self) -> list[str]:
        self._require_built()
        return list(self._order)

    def dependents(self, task_id: str) -> list[str]:
        self._require_built()
        return list(self._dependents.get(task_id, ()))

    def ready_tasks(self) -> list[Task]:
        """Tasks whose dependencies have all succeeded, promoted to ``READY``."""
        self._require_built()
        ready: list[Task] = []
        for task_id in self._order:
            task = self._tasks[task_id]
            if task.status not in (TaskStatus.PENDING, TaskStatus.READY):
                continue
            if all(self._tasks[dep].status is TaskStatus.SUCCEEDED for dep in task.depends_on):
                task.status = TaskStatus.READY
                ready.append(task)
        return ready

    def mark_running(self, task_id: str) -> Task:
        task = self.get(task_id)
        if task.status not in (TaskStatus.READY, TaskStatus.RETRYING):
            raise InvalidTaskTransitionError(task_id, task.status.value, TaskStatus.RUNNING.value)
        task.status = TaskStatus.RUNNING
        task.attempts += 1
        if task.started_at is None:
            task.started_at = _utcnow()
        return task

    def advance(self, task_id: str, outcome: TaskOutcome) -> TaskStatus:
        task = self.get(task_id)
        if task.status is not TaskStatus.RUNNING:
            target = TaskStatus.SUCCEEDED if outcome.succeeded else TaskStatus.FAILED
            raise InvalidTaskTransitionError(task_id, task.status.value, target.value)

        if outcome.succeeded:
            task.status = TaskStatus.SUCCEEDED
            task.result = outcome.result
            task.error = None
            task.finished_at = _utcnow()
            return task.status

        task.error = outcome.reason or "task failed"
        if outcome.retryable and task.retry_count < task.max_retries:
            task.retry_count += 1
            task.status = TaskStatus.RETRYING
            return task.status

        task.status = TaskStatus.FAILED
        task.finished_at = _utcnow()
        self._skip_downstream(task_id)
        return task.status

    def begin_fallback(self, task_id: str, reason: str) -> Task:
        """Count one more attempt of a running task on its fallback provider."""
        task = self.get(task_id)
        if task.status is not TaskStatus.RUNNING:
            raise InvalidTaskTransitionError(task_id, task.status.value, TaskStatus.RUNNING.value)
        task.attempts += 1
        task.error = reason
        return task

    def skip_remaining(self, reason: str) -> list[str]:
        """Skip every task that is neither terminal nor running."""
        skipped: list[str] = []
        for task_id in self._order or list(self._tasks):
            task = self._tasks[task_id]
            if task.is_terminal or task.status is TaskStatus.RUNNING:
                continue
            task.status = TaskStatus.SKIPPED
            task.error = reason
            task.finished_at = _utcnow()
            skipped.append(task_id)
        if skipped:
            self._deadline_skipped = True
        return skipped

    @property
    def is_terminal(self) -> bool:
        return all(task.is_terminal for task in self._tasks.values())

    @property
    def status(self) -> GraphStatus:
        tasks = list(self._tasks.values())
        if not all(task.is_terminal for task in tasks):
            if all(task.status in (TaskStatus.PENDING, TaskStatus.READY) for task in tasks):
                return GraphStatus.PENDING
            return GraphStatus.RUNNING
        if self._deadline_skipped or any(task.status is TaskStatus.FAILED for task in tasks):
            return GraphStatus.PARTIALLY_FAILED
        return GraphStatus.COMPLETED

    def outputs(self) -> dict[str, Any]:
        return {
            task_id: task.result
            for task_id, task in self._tasks.items()
            if task.status is TaskStatus.SUCCEEDED
        }

    def _skip_downstream(self, task_id: str) -> None:
        pending = deque(self._dependents.get(task_id, ()))
        while pending:
            child_id = pending.popleft()
            child = self._tasks[child_id]
            if child.is_terminal:
                continue
            child.status = TaskStatus.SKIPPED
            child.error = f"dependency '{task_id}' failed"
            child.finished_at = _utcnow()
            pending.extend(self._dependents.get(child_id, ()))

    def _require_built(self) -> None:
        if not self._built:
            raise InvalidWorkflowError("Task graph has not been built")


__all__ = ["DEFAULT_MAX_RETRIES", "Task", "TaskGraph", "TaskOutcome"]
