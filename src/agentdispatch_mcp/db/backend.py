from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path

from agentdispatch_mcp.models.work_item import WorkItem

SCHEMA_VERSION = 1


class StorageBackend(ABC):
    """Persistent, ordered collection of work items for one project.

    Backends do no locking of their own: the atomic section is the project
    lock held by ``IsolationRegistry`` around every load → modify → save.
    Any read or write failure is raised as ``StorageIOError``.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create the backing file/tables if missing. Must be idempotent."""

    @abstractmethod
    async def load(self) -> list[WorkItem]:
        """Return every stored item in insertion order."""

    @abstractmethod
    async def save(self, items: list[WorkItem]) -> None:
        """Replace the stored collection with ``items``."""

    async def close(self) -> None:
        return None


def create_backend(kind: str, queue_dir: Path) -> StorageBackend:
    """Build the backend named by ``kind`` rooted in a project's queue directory."""
    from agentdispatch_mcp.db.json_store import JsonFileBackend
    from agentdispatch_mcp.db.sqlite_store import SqliteBackend

    kind = kind.lower()
    if kind == "json":
        return JsonFileBackend(queue_dir / "items.json")
    if kind == "sqlite":
        return SqliteBackend(queue_dir / "items.db")
    raise ValueError(f"Unknown storage backend: {kind!r} (expected 'json' or 'sqlite')")
