from __future__ import annotations

import asyncio
import logging
import re
import secrets
import shutil
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, TypeVar

from pydantic import ValidationError

from agentdispatch_mcp.db.backend import StorageBackend, create_backend
from agentdispatch_mcp.errors import (
    ConfirmationRequiredError,
    ProjectNotFoundError,
    StorageIOError,
)
from agentdispatch_mcp.models.project import ProjectConfig, ProjectMeta
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes

if TYPE_CHECKING:
    from agentdispatch_mcp.services.work_store import WorkItemStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

_PROJECT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


@dataclass(frozen=True)
class ProjectPaths:
    """Isolation boundaries for one project on disk."""

    root: Path
    queue_dir: Path
    agents_dir: Path
    artifacts_dir: Path
    config_path: Path


@dataclass
class ProjectScope:
    """Everything a project owns: its paths, its backend and its lock."""

    project_id: str
    paths: ProjectPaths
    backend: StorageBackend
    lock: asyncio.Lock


class IsolationRegistry:
    """Maps project ids to isolated storage scopes and per-project locks.

    Design:
    - One ``asyncio.Lock`` per project. Waiters are woken in FIFO order and
      locks of different projects never contend.
    - Scopes are provisioned on first reference (directories, metadata, backend)
      and cached for the life of the registry.
    - Deleting a project is irreversible and requires ``confirm=True``.
    """

    def __init__(
        self,
        data_root: str | Path,
        storage_backend: str = "json",
        events: EventBus | None = None,
    ):
        self.data_root = Path(data_root)
        self.projects_root = self.data_root / "projects"
        self.storage_backend = storage_backend
        self.events = events
        self._locks: dict[str, asyncio.Lock] = {}
        self._scopes: dict[str, ProjectScope] = {}
        self._stores: dict[str, WorkItemStore] = {}

    # ------------------------------------------------------------------
    # Scopes and locking
    # ------------------------------------------------------------------

    def paths(self, project_id: str) -> ProjectPaths:
        self._validate_id(project_id)
        root = self.projects_root / project_id
        return ProjectPaths(
            root=root,
            queue_dir=root / "queue",
            agents_dir=root / "agents",
            artifacts_dir=root / "artifacts",
            config_path=root / "config" / "meta.json",
        )

    def lock_for(self, project_id: str) -> asyncio.Lock:
        self._validate_id(project_id)
        return self._locks.setdefault(project_id, asyncio.Lock())

    async def scope(self, project_id: str) -> ProjectScope:
        """Return the project's scope, provisioning it on first reference."""
        cached = self._scopes.get(project_id)
        if cached is not None:
            return cached

        lock = self.lock_for(project_id)
        async with lock:
            cached = self._scopes.get(project_id)
            if cached is not None:
                return cached

            paths = self.paths(project_id)
            try:
                await asyncio.to_thread(self._provision_dirs, paths)
                if not paths.config_path.exists():
                    await self._write_meta(paths, ProjectMeta(id=project_id, name=project_id))
            except OSError as exc:
                raise StorageIOError(f"Cannot provision project {project_id}: {exc}") from exc

            backend = create_backend(self.storage_backend, paths.queue_dir)
            await backend.initialize()

            scope = ProjectScope(project_id=project_id, paths=paths, backend=backend, lock=lock)
            self._scopes[project_id] = scope
            logger.info("Provisioned project scope %s at %s", project_id, paths.root)
            return scope

    async def with_project_lock(
        self, project_id: str, fn: Callable[[ProjectScope], Awaitable[T]]
    ) -> T:
        """Run ``fn(scope)`` with exclusive access to the project's storage.

        ``fn`` must use the scope's backend directly; calling the project's
        ``WorkItemStore`` mutators from inside would wait on the same lock.
        """
        scope = await self.scope(project_id)
        async with scope.lock:
            return await fn(scope)

    async def store(self, project_id: str) -> WorkItemStore:
        from agentdispatch_mcp.services.work_store import WorkItemStore

        existing = self._stores.get(project_id)
        if existing is not None:
            return existing
        scope = await self.scope(project_id)
        store = self._stores.setdefault(project_id, WorkItemStore(scope, self.events))
        return store

    # ------------------------------------------------------------------
    # Project metadata
    # ------------------------------------------------------------------

    async def create_project(
        self,
        name: str,
        description: str = "",
        max_concurrent: int = 2,
        default_model: str = "sonnet",
        project_id: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> ProjectMeta:
        project_id = project_id or secrets.token_hex(8)
        meta = ProjectMeta(
            id=project_id,
            name=name,
            description=description,
            config=ProjectConfig(
                max_concurrent=max_concurrent,
                default_model=default_model,
                extra=extra or {},
            ),
        )

        async def _write(scope: ProjectScope) -> None:
            await self._write_meta(scope.paths, meta)

        await self.with_project_lock(project_id, _write)
        logger.info("Created project %s (%s)", name, project_id)
        if self.events:
            await self.events.publish(
                EventTypes.PROJECT_CREATED, {"project_id": project_id, "name": name}
            )
        return meta

    async def get_project(self, project_id: str) -> ProjectMeta | None:
        paths = self.paths(project_id)
        try:
            raw = await asyncio.to_thread(paths.config_path.read_text, encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageIOError(f"Cannot read project {project_id}: {exc}") from exc
        try:
            return ProjectMeta.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageIOError(f"Corrupt metadata for project {project_id}: {exc}") from exc

    async def require_project(self, project_id: str) -> ProjectMeta:
        meta = await self.get_project(project_id)
        if meta is None:
            raise ProjectNotFoundError(project_id)
        return meta

    async def list_projects(self) -> list[ProjectMeta]:
        if not self.projects_root.exists():
            return []
        projects: list[ProjectMeta] = []
        for entry in sorted(self.projects_root.iterdir()):
            if not entry.is_dir() or not _PROJECT_ID_RE.match(entry.name):
                continue
            meta = await self.get_project(entry.name)
            if meta is not None:
                projects.append(meta)
        return projects

    async def update_project(self, project_id: str, **updates: Any) -> ProjectMeta:
        async def _update(scope: ProjectScope) -> ProjectMeta:
            current = await self.get_project(project_id)
            if current is None:
                raise ProjectNotFoundError(project_id)
            config_updates = updates.pop("config", None) or {}
            data = current.model_dump()
            data.update(updates)
            data["config"] = {**data["config"], **config_updates}
            data["updated_at"] = datetime.now()
            updated = ProjectMeta.model_validate(data)
            await self._write_meta(scope.paths, updated)
            return updated

        if await self.get_project(project_id) is None:
            raise ProjectNotFoundError(project_id)
        return await self.with_project_lock(project_id, _update)

    async def delete_project(self, project_id: str, confirm: bool = False) -> bool:
        """Tear down a project's entire scope. Irreversible."""
        if not confirm:
            raise ConfirmationRequiredError(
                f"Deleting project {project_id} removes its queue, workspaces and "
                "artifacts; pass confirm=True to proceed"
            )
        paths = self.paths(project_id)
        lock = self.lock_for(project_id)
        async with lock:
            scope = self._scopes.pop(project_id, None)
            self._stores.pop(project_id, None)
            if scope is not None:
                await scope.backend.close()
            if not paths.root.exists():
                return False
            try:
                await asyncio.to_thread(shutil.rmtree, paths.root)
            except OSError as exc:
                raise StorageIOError(f"Cannot delete project {project_id}: {exc}") from exc

        logger.warning("Deleted project %s and all of its data", project_id)
        if self.events:
            await self.events.publish(EventTypes.PROJECT_DELETED, {"project_id": project_id})
        return True

    async def close(self) -> None:
        for scope in list(self._scopes.values()):
            await scope.backend.close()
        self._scopes.clear()
        self._stores.clear()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_id(project_id: str) -> None:
        if not isinstance(project_id, str) or not _PROJECT_ID_RE.match(project_id):
            raise ValueError(
                f"Invalid project id {project_id!r}: use letters, digits, '-' or '_'"
            )

    @staticmethod
    def _provision_dirs(paths: ProjectPaths) -> None:
        for directory in (
            paths.root,
            paths.queue_dir,
            paths.agents_dir,
            paths.artifacts_dir,
            paths.config_path.parent,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    @staticmethod
    async def _write_meta(paths: ProjectPaths, meta: ProjectMeta) -> None:
        payload = meta.model_dump_json(indent=2)
        try:
            await asyncio.to_thread(paths.config_path.write_text, payload, encoding="utf-8")
        except OSError as exc:
            raise StorageIOError(f"Cannot write metadata for project {meta.id}: {exc}") from exc
