from .graph import Task, TaskGraph, TaskOutcome
from .orchestrator import Orchestrator
from .workflows import WorkflowBuilder, WorkflowCatalog, default_catalog

__all__ = [
    "Orchestrator",
    "Task",
    "TaskGraph",
    "TaskOutcome",
    "WorkflowBuilder",
    "WorkflowCatalog",
    "default_catalog",
]
