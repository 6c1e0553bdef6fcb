from __future__ import annotations

from pathlib import Path

import pytest

from agentdispatch_mcp.services.dispatcher import DispatchEngine
from agentdispatch_mcp.services.event_bus import EventBus
from agentdispatch_mcp.services.isolation import IsolationRegistry
from agentdispatch_mcp.services.launcher import ExternalLauncher, MockLauncher
from agentdispatch_mcp.services.session_manager import SessionManager
from agentdispatch_mcp.services.work_store import WorkItemStore
from agentdispatch_mcp.utils.config import Config

PROJECT = "test-project"


@pytest.fixture
def event_bus(tmp_path: Path) -> EventBus:
    return EventBus(log_path=tmp_path / "events.jsonl", max_history=100)


@pytest.fixture
async def registry(tmp_path: Path, event_bus: EventBus) -> IsolationRegistry:
    reg = IsolationRegistry(tmp_path / "data", "json", event_bus)
    yield reg  # type: ignore[misc]
    await reg.close()


@pytest.fixture
async def sqlite_registry(tmp_path: Path, event_bus: EventBus) -> IsolationRegistry:
    reg = IsolationRegistry(tmp_path / "sqlite-data", "sqlite", event_bus)
    yield reg  # type: ignore[misc]
    await reg.close()


@pytest.fixture
async def store(registry: IsolationRegistry) -> WorkItemStore:
    return await registry.store(PROJECT)


@pytest.fixture
def session_manager(registry: IsolationRegistry, event_bus: EventBus) -> SessionManager:
    return SessionManager(registry, event_bus, timeout_seconds=120)


@pytest.fixture
async def engine(
    store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
) -> DispatchEngine:
    # Long intervals so the loops never fire on their own in tests.
    eng = DispatchEngine(
        project_id=PROJECT,
        store=store,
        sessions=session_manager,
        events=event_bus,
        launcher=ExternalLauncher(),
        max_concurrent=2,
        poll_interval=3600,
        completion_check_interval=3600,
    )
    yield eng  # type: ignore[misc]
    await eng.stop()


@pytest.fixture
async def mock_engine(
    store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
) -> DispatchEngine:
    eng = DispatchEngine(
        project_id=PROJECT,
        store=store,
        sessions=session_manager,
        events=event_bus,
        launcher=MockLauncher(),
        max_concurrent=2,
        poll_interval=3600,
        completion_check_interval=3600,
    )
    yield eng  # type: ignore[misc]
    await eng.stop()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        data_root=tmp_path / "data",
        event_log_path=tmp_path / "data" / "events.jsonl",
        agent_mode="mock",
        default_project=PROJECT,
    )
