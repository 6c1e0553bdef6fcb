from agentdispatch_mcp.models.event import Event
from agentdispatch_mcp.models.project import ProjectConfig, ProjectMeta
from agentdispatch_mcp.models.session import (
    AgentSession,
    CompletionResult,
    CompletionStatus,
    SessionStatus,
)
from agentdispatch_mcp.models.work_item import (
    Artifact,
    Priority,
    WorkItem,
    WorkItemCreate,
    WorkItemStatus,
)

__all__ = [
    "AgentSession",
    "Artifact",
    "CompletionResult",
    "CompletionStatus",
    "Event",
    "Priority",
    "ProjectConfig",
    "ProjectMeta",
    "SessionStatus",
    "WorkItem",
    "WorkItemCreate",
    "WorkItemStatus",
]
