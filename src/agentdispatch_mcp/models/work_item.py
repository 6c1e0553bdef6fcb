from __future__ import annotations

import secrets
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


# Lower rank claims first.
PRIORITY_RANK: dict[Priority, int] = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class WorkItemStatus(str, Enum):
    INBOX = "inbox"
    PLANNING = "planning"
    READY = "ready"
    IN_FLIGHT = "in_flight"
    REVIEW = "review"
    BLOCKED = "blocked"
    DONE = "done"


TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    WorkItemStatus.INBOX: frozenset({WorkItemStatus.PLANNING, WorkItemStatus.READY}),
    WorkItemStatus.PLANNING: frozenset({WorkItemStatus.INBOX, WorkItemStatus.READY}),
    WorkItemStatus.READY: frozenset({WorkItemStatus.PLANNING, WorkItemStatus.IN_FLIGHT}),
    WorkItemStatus.IN_FLIGHT: frozenset(
        {WorkItemStatus.REVIEW, WorkItemStatus.DONE, WorkItemStatus.BLOCKED}
    ),
    WorkItemStatus.REVIEW: frozenset({WorkItemStatus.DONE}),
    WorkItemStatus.BLOCKED: frozenset({WorkItemStatus.READY}),
    WorkItemStatus.DONE: frozenset(),
}


def can_transition(current: WorkItemStatus, target: WorkItemStatus) -> bool:
    return target in TRANSITIONS[current]


def generate_item_id() -> str:
    return secrets.token_hex(8)


class Artifact(BaseModel):
    """A deliverable file produced by an agent session."""

    id: str = Field(default_factory=lambda: secrets.token_hex(4))
    kind: str = "file"
    location: str
    description: str = ""
    name: Optional[str] = None
    size: Optional[int] = None


class WorkItem(BaseModel):
    """A schedulable unit of work owned by exactly one project."""

    id: str = Field(default_factory=generate_item_id)
    project_id: Optional[str] = None
    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    complexity: str = "m"
    output: Optional[dict[str, Any]] = None
    created_by: str = "unknown"

    status: WorkItemStatus = WorkItemStatus.INBOX
    assigned_agent_id: Optional[str] = None

    artifacts: list[Artifact] = Field(default_factory=list)
    blocked_by: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)

    completion_report: Optional[str] = None
    blocker_report: Optional[str] = None

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.priority]


class WorkItemCreate(BaseModel):
    """Caller-supplied fields accepted by ``WorkItemStore.enqueue``."""

    title: str
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    complexity: str = "m"
    output: Optional[dict[str, Any]] = None
    created_by: str = "unknown"
    blocked_by: list[str] = Field(default_factory=list)
    blocks: list[str] = Field(default_factory=list)


# Fields callers may change through ``update``; everything else is owned by the store.
UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "acceptance_criteria",
        "priority",
        "complexity",
        "output",
        "created_by",
        "status",
        "artifacts",
        "blocked_by",
        "blocks",
        "completion_report",
        "blocker_report",
    }
)
