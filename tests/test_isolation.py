from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from agentdispatch_mcp.errors import ConfirmationRequiredError, ProjectNotFoundError
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes
from agentdispatch_mcp.services.isolation import IsolationRegistry


@pytest.mark.asyncio
class TestProvisioning:
    async def test_scope_creates_layout(self, registry: IsolationRegistry) -> None:
        scope = await registry.scope("alpha")
        root = registry.projects_root / "alpha"

        assert scope.paths.root == root
        assert (root / "queue" / "items.json").exists()
        assert (root / "agents").is_dir()
        assert (root / "artifacts").is_dir()
        assert (root / "config" / "meta.json").exists()

    async def test_scope_is_cached(self, registry: IsolationRegistry) -> None:
        first = await registry.scope("alpha")
        second = await registry.scope("alpha")
        assert first is second
        assert registry.lock_for("alpha") is first.lock

    async def test_auto_provisioned_project_has_default_meta(
        self, registry: IsolationRegistry
    ) -> None:
        await registry.scope("beta")
        meta = await registry.get_project("beta")
        assert meta is not None
        assert meta.name == "beta"
        assert meta.config.max_concurrent == 2

    async def test_invalid_project_id(self, registry: IsolationRegistry) -> None:
        for bad in ("../escape", "a/b", "", "x" * 65):
            with pytest.raises(ValueError):
                registry.paths(bad)

    async def test_sqlite_backend_layout(self, sqlite_registry: IsolationRegistry) -> None:
        await sqlite_registry.scope("gamma")
        assert (sqlite_registry.projects_root / "gamma" / "queue" / "items.db").exists()


@pytest.mark.asyncio
class TestIsolation:
    async def test_items_do_not_leak_between_projects(
        self, registry: IsolationRegistry
    ) -> None:
        store_a = await registry.store("project-a")
        store_b = await registry.store("project-b")

        item = await store_a.enqueue(title="only in A")

        assert await store_b.get(item.id) is None
        assert await store_b.list() == []
        assert [i.title for i in await store_a.list()] == ["only in A"]

    async def test_locks_are_per_project(self, registry: IsolationRegistry) -> None:
        assert registry.lock_for("project-a") is not registry.lock_for("project-b")

    async def test_held_lock_does_not_block_other_project(
        self, registry: IsolationRegistry
    ) -> None:
        store_b = await registry.store("project-b")
        entered = asyncio.Event()
        release = asyncio.Event()

        async def hold_a(scope) -> None:
            entered.set()
            await release.wait()

        holder = asyncio.create_task(registry.with_project_lock("project-a", hold_a))
        await entered.wait()

        item = await asyncio.wait_for(store_b.enqueue(title="unblocked"), timeout=2)
        assert item.title == "unblocked"
        assert registry.lock_for("project-a").locked()

        release.set()
        await holder

    async def test_with_project_lock_returns_result(self, registry: IsolationRegistry) -> None:
        async def count(scope) -> int:
            return len(await scope.backend.load())

        store = await registry.store("counted")
        await store.enqueue(title="x")
        assert await registry.with_project_lock("counted", count) == 1


@pytest.mark.asyncio
class TestProjectMetadata:
    async def test_create_and_list(
        self, registry: IsolationRegistry, event_bus: EventBus
    ) -> None:
        meta = await registry.create_project(
            "Website", description="Marketing site", max_concurrent=4, project_id="web"
        )
        assert meta.id == "web"
        assert meta.config.max_concurrent == 4

        listed = await registry.list_projects()
        assert [p.id for p in listed] == ["web"]
        last = event_bus.recent(event_type=EventTypes.PROJECT_CREATED)[-1]
        assert last.data["project_id"] == "web"

    async def test_create_generates_id(self, registry: IsolationRegistry) -> None:
        meta = await registry.create_project("Generated")
        assert len(meta.id) == 16
        assert await registry.get_project(meta.id) is not None

    async def test_update_merges_config(self, registry: IsolationRegistry) -> None:
        await registry.create_project("Docs", project_id="docs")
        updated = await registry.update_project(
            "docs", description="All docs", config={"max_concurrent": 5}
        )
        assert updated.description == "All docs"
        assert updated.config.max_concurrent == 5
        assert updated.config.default_model == "sonnet"
        assert updated.updated_at >= updated.created_at

    async def test_update_missing_project(self, registry: IsolationRegistry) -> None:
        with pytest.raises(ProjectNotFoundError):
            await registry.update_project("ghost", name="x")

    async def test_require_missing_project(self, registry: IsolationRegistry) -> None:
        with pytest.raises(ProjectNotFoundError):
            await registry.require_project("ghost")


@pytest.mark.asyncio
class TestDeleteProject:
    async def test_delete_requires_confirmation(self, registry: IsolationRegistry) -> None:
        await registry.scope("doomed")
        with pytest.raises(ConfirmationRequiredError):
            await registry.delete_project("doomed")
        assert (registry.projects_root / "doomed").exists()

    async def test_delete_removes_everything(
        self, registry: IsolationRegistry, event_bus: EventBus
    ) -> None:
        store = await registry.store("doomed")
        await store.enqueue(title="gone soon")
        root: Path = registry.projects_root / "doomed"

        assert await registry.delete_project("doomed", confirm=True) is True
        assert not root.exists()
        assert event_bus.recent(event_type=EventTypes.PROJECT_DELETED)[-1].data == {
            "project_id": "doomed"
        }

    async def test_delete_missing_project(self, registry: IsolationRegistry) -> None:
        assert await registry.delete_project("never-existed", confirm=True) is False

    async def test_recreated_project_starts_empty(self, registry: IsolationRegistry) -> None:
        store = await registry.store("phoenix")
        await store.enqueue(title="old")
        await registry.delete_project("phoenix", confirm=True)

        fresh = await registry.store("phoenix")
        assert fresh is not store
        assert await fresh.list() == []
