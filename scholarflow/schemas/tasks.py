from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .usage import RunningTotal


class TaskStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATES


_TERMINAL_TASK_STATES = frozenset({TaskStatus.SUCCEEDED, TaskStatus.FAILED, TaskStatus.SKIPPED})


class GraphStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"


class WorkflowStatus(str, Enum):
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    FAILED = "failed"


class TaskFailure(BaseModel):
    task_id: str
    capability: str
    status: TaskStatus
    reason: str | None = None
    attempts: int = Field(0, ge=0)
    required: bool = False


class WorkflowResult(BaseModel):
    correlation_id: str
    workflow: str
    status: WorkflowStatus
    outputs: dict[str, Any] = Field(default_factory=dict)
    failures: list[TaskFailure] = Field(default_factory=list)
    timed_out: bool = False
    error: str | None = None
    usage: RunningTotal = Field(default_factory=RunningTotal)
    started_at: datetime
    finished_at: datetime

    @property
    def succeeded(self) -> bool:
        return self.status is WorkflowStatus.COMPLETED

    def failed_task_ids(self) -> list[str]:
        return [failure.task_id for failure in self.failures if failure.status is TaskStatus.FAILED]

    def skipped_task_ids(self) -> list[str]:
        return [failure.task_id for failure in self.failures if failure.status is TaskStatus.SKIPPED]


__all__ = [
    "GraphStatus",
    "TaskFailure",
    "TaskStatus",
    "WorkflowResult",
    "WorkflowStatus",
]
