from .agents import (
    AIProvider,
    AgentCapability,
    AgentDescriptor,
    AgentInput,
    AgentOutput,
    AgentScope,
    DiscoverySource,
    TokenUsage,
    capability_id,
    provider_id,
)
from .papers import PaperMetadata, RelatedPaper
from .tasks import GraphStatus, TaskFailure, TaskStatus, WorkflowResult, WorkflowStatus
from .usage import ProviderCallRecord, RunningTotal, UsageFilter

__all__ = [
    "AIProvider",
    "AgentCapability",
    "AgentDescriptor",
    "AgentInput",
    "AgentOutput",
    "AgentScope",
    "DiscoverySource",
    "GraphStatus",
    "PaperMetadata",
    "ProviderCallRecord",
    "RelatedPaper",
    "RunningTotal",
    "TaskFailure",
    "TaskStatus",
    "TokenUsage",
    "UsageFilter",
    "WorkflowResult",
    "WorkflowStatus",
    "capability_id",
    "provider_id",
]
