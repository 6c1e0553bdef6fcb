from __future__ import annotations

from typing import Optional

from mcp.server.fastmcp import FastMCP

from agentdispatch_mcp.errors import AgentDispatchError
from agentdispatch_mcp.services.dispatcher import DispatchEngine
from agentdispatch_mcp.services.event_bus import EventBus


def register(mcp: FastMCP, engine: DispatchEngine, event_bus: EventBus) -> None:
    """Register dispatcher and event MCP tools."""

    @mcp.tool()
    async def dispatch_next(work_item_id: Optional[str] = None) -> dict:
        """Start an agent session for ready work.

        Without ``work_item_id`` the highest-priority ready item (or the head
        of the backlog) is dispatched. With an id, that item is readied if
        needed and dispatched, or parked in the backlog when every slot is
        busy.
        """
        try:
            if work_item_id:
                session = await engine.dispatch_item(work_item_id)
            else:
                session = await engine.poll()
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}

        if session is None:
            return {
                "success": True,
                "session": None,
                "message": "Nothing dispatched: no ready work or no free slot",
                "available_slots": engine.available_slots,
            }
        return {
            "success": True,
            "session": session.model_dump(mode="json"),
            "task_path": session.task_path,
        }

    @mcp.tool()
    async def check_sessions() -> dict:
        """Probe running sessions for completion or blocker reports.

        Completed sessions move their work item to review (or done), blocked
        sessions move it to blocked; freed slots pull from the backlog.
        """
        results = await engine.check_completions()
        return {
            "success": True,
            "results": [r.model_dump(mode="json") for r in results],
            "status": engine.status(),
        }

    @mcp.tool()
    async def dispatcher_status() -> dict:
        """Show running sessions, free slots, backlog and counters."""
        return engine.status()

    @mcp.tool()
    async def recent_events(count: int = 20, event_type: Optional[str] = None) -> list[dict]:
        """Return the most recent events, oldest first.

        Args:
            count: Maximum number of events
            event_type: Exact type to filter on, e.g. "work:completed"
        """
        return [e.model_dump(mode="json") for e in event_bus.recent(count, event_type)]
