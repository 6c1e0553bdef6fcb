from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class ProjectConfig(BaseModel):
    max_concurrent: int = 2
    default_model: str = "sonnet"
    extra: dict[str, Any] = Field(default_factory=dict)


class ProjectMeta(BaseModel):
    """Metadata for one isolated project (tenant)."""

    id: str
    name: str
    description: str = ""
    config: ProjectConfig = Field(default_factory=ProjectConfig)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
