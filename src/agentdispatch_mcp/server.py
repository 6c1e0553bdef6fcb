from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from agentdispatch_mcp.runtime import open_runtime
from agentdispatch_mcp.tools import dispatch as dispatch_tools
from agentdispatch_mcp.tools import work as work_tools
from agentdispatch_mcp.utils.config import get_config
from agentdispatch_mcp.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for AgentDispatch."""
    config = get_config()

    # --- Services ---
    runtime = await open_runtime(config)
    engine = runtime.engine
    await engine.start()

    # --- Register MCP tools ---
    work_tools.register(server, runtime.registry, config.default_project)
    dispatch_tools.register(server, engine, runtime.events)

    # --- Register MCP resource ---
    @server.resource("agentdispatch://stats")
    async def get_stats() -> str:
        stats = await runtime.store.stats()
        status = engine.status()
        by_status = "\n".join(
            f"  - {name}: {count}" for name, count in stats["by_status"].items()
        )
        return (
            "AgentDispatch Status:\n"
            f"- Project: {engine.project_id}\n"
            f"- Work Items: {stats['total']}\n"
            f"{by_status}\n"
            f"- Active Sessions: {len(status['active_sessions'])}/{status['max_concurrent']}\n"
            f"- Backlog: {len(status['backlog'])}\n"
        )

    logger.info("AgentDispatch MCP Server ready (project %s)", engine.project_id)

    try:
        yield
    finally:
        await runtime.close()
        logger.info("AgentDispatch MCP Server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level, config.log_file)

    server = FastMCP("AgentDispatch", lifespan=lifespan)
    return server


# Module-level instance used by the CLI and ``python -m``
mcp = create_server()

if __name__ == "__main__":
    mcp.run()
