from __future__ import annotations

import logging
from dataclasses import dataclass

from agentdispatch_mcp.services.dispatcher import DispatchEngine
from agentdispatch_mcp.services.event_bus import EventBus
from agentdispatch_mcp.services.isolation import IsolationRegistry
from agentdispatch_mcp.services.launcher import AgentLauncher, create_launcher
from agentdispatch_mcp.services.session_manager import SessionManager
from agentdispatch_mcp.services.work_store import WorkItemStore
from agentdispatch_mcp.utils.config import Config

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Services wired together for one dispatching project."""

    config: Config
    events: EventBus
    registry: IsolationRegistry
    sessions: SessionManager
    launcher: AgentLauncher
    store: WorkItemStore
    engine: DispatchEngine

    async def close(self) -> None:
        await self.engine.stop()
        await self.launcher.close()
        await self.registry.close()


async def open_runtime(
    config: Config,
    project_id: str | None = None,
    launcher: AgentLauncher | None = None,
    replay_events: bool = True,
) -> Runtime:
    """Build the event bus, registry, session manager and engine from ``config``."""
    project_id = project_id or config.default_project

    events = EventBus(log_path=config.event_log_path, max_history=config.event_history_size)
    if replay_events:
        await events.load_history(limit=config.event_history_size)

    registry = IsolationRegistry(config.data_root, config.storage_backend, events)
    meta = await registry.get_project(project_id)
    max_concurrent = meta.config.max_concurrent if meta else config.max_concurrent
    store = await registry.store(project_id)

    sessions = SessionManager(registry, events, timeout_seconds=config.agent_timeout_seconds)
    launcher = launcher or create_launcher(
        config.agent_mode,
        config.agent_command,
        model=meta.config.default_model if meta else config.agent_model,
        timeout_seconds=config.agent_timeout_seconds,
    )
    engine = DispatchEngine(
        project_id=project_id,
        store=store,
        sessions=sessions,
        events=events,
        launcher=launcher,
        max_concurrent=max_concurrent,
        poll_interval=config.poll_interval,
        completion_check_interval=config.completion_check_interval,
        completion_status=config.completion_status,
        backlog_limit=config.backlog_limit,
    )
    await engine.recover()
    logger.info(
        "Runtime ready for project %s (%s storage, %s launcher)",
        project_id,
        config.storage_backend,
        launcher.mode,
    )
    return Runtime(
        config=config,
        events=events,
        registry=registry,
        sessions=sessions,
        launcher=launcher,
        store=store,
        engine=engine,
    )
