from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    STARTING = "starting"
    WORKING = "working"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"


class AgentSession(BaseModel):
    """Ephemeral execution context for one claimed work item."""

    id: str
    work_item_id: str
    project_id: str
    workspace_dir: str
    artifacts_dir: str
    task_path: str
    label: str
    status: SessionStatus = SessionStatus.STARTING
    pid: Optional[int] = None
    started_at: datetime = Field(default_factory=datetime.now)
    last_activity_at: datetime = Field(default_factory=datetime.now)


class CompletionStatus(str, Enum):
    COMPLETED = "completed"
    BLOCKED = "blocked"
    WORKING = "working"


class CompletionResult(BaseModel):
    """Outcome of one marker-file probe."""

    session_id: str
    work_item_id: str
    status: CompletionStatus
    report: Optional[str] = None
