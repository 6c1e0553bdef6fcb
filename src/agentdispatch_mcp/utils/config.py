from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _optional(name: str) -> str | None:
    value = os.environ.get(name)
    return value or None


def _optional_path(name: str) -> Path | None:
    value = _optional(name)
    return Path(value) if value else None


@dataclass(frozen=True)
class Config:
    """Central configuration loaded from environment variables."""

    # Storage
    data_root: Path = field(
        default_factory=lambda: Path(os.environ.get("AGENTDISPATCH_DATA_ROOT", "data"))
    )
    storage_backend: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_STORAGE", "json")
    )
    default_project: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_PROJECT", "default")
    )

    # Dispatcher
    max_concurrent: int = field(
        default_factory=lambda: int(os.environ.get("AGENTDISPATCH_MAX_CONCURRENT", "2"))
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.environ.get("AGENTDISPATCH_POLL_INTERVAL", "5.0"))
    )
    completion_check_interval: float = field(
        default_factory=lambda: float(
            os.environ.get("AGENTDISPATCH_COMPLETION_CHECK_INTERVAL", "10.0")
        )
    )
    completion_status: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_COMPLETION_STATUS", "review")
    )
    backlog_limit: int = field(
        default_factory=lambda: int(os.environ.get("AGENTDISPATCH_BACKLOG_LIMIT", "100"))
    )

    # Events
    event_log_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("AGENTDISPATCH_EVENT_LOG", "data/events.jsonl")
        )
    )
    event_history_size: int = field(
        default_factory=lambda: int(os.environ.get("AGENTDISPATCH_EVENT_HISTORY", "1000"))
    )

    # Agent launch
    agent_mode: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_AGENT_MODE", "external")
    )
    agent_command: str | None = field(
        default_factory=lambda: _optional("AGENTDISPATCH_AGENT_COMMAND")
    )
    agent_model: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_AGENT_MODEL", "sonnet")
    )
    agent_timeout_seconds: int = field(
        default_factory=lambda: int(os.environ.get("AGENTDISPATCH_AGENT_TIMEOUT", "300"))
    )

    # Logging
    log_level: str = field(
        default_factory=lambda: os.environ.get("AGENTDISPATCH_LOG_LEVEL", "INFO")
    )
    log_file: Path | None = field(
        default_factory=lambda: _optional_path("AGENTDISPATCH_LOG_FILE")
    )


def get_config() -> Config:
    """Return a Config instance (singleton-friendly via module caching)."""
    return Config()
