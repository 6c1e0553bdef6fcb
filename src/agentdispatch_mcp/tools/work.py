from __future__ import annotations

from typing import Optional

from mcp.server.fastmcp import FastMCP

from agentdispatch_mcp.errors import AgentDispatchError
from agentdispatch_mcp.models.work_item import WorkItemCreate
from agentdispatch_mcp.services.isolation import IsolationRegistry


def register(mcp: FastMCP, registry: IsolationRegistry, default_project: str) -> None:
    """Register work-queue MCP tools."""

    @mcp.tool()
    async def enqueue_work(
        title: str,
        description: str = "",
        acceptance_criteria: Optional[list[str]] = None,
        priority: str = "medium",
        complexity: str = "m",
        created_by: str = "mcp",
        project_id: Optional[str] = None,
    ) -> dict:
        """Add a new work item to a project's inbox.

        New items start in ``inbox``; call ``ready_work`` once the item is
        specified well enough for an agent to pick it up.

        Args:
            title: Short summary of the work
            description: Full task description handed to the agent
            acceptance_criteria: Checklist the result must satisfy
            priority: One of urgent, high, medium, low
            complexity: Free-form size hint (s, m, l, ...)
            created_by: Who is filing the item
            project_id: Target project (defaults to the server's project)
        """
        try:
            store = await registry.store(project_id or default_project)
            item = await store.enqueue(
                WorkItemCreate(
                    title=title,
                    description=description,
                    acceptance_criteria=acceptance_criteria or [],
                    priority=priority,
                    complexity=complexity,
                    created_by=created_by,
                )
            )
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "work_item": item.model_dump(mode="json")}

    @mcp.tool()
    async def list_work(status: Optional[str] = None, project_id: Optional[str] = None) -> dict:
        """List work items, optionally filtered by status.

        Args:
            status: inbox, planning, ready, in_flight, review, done or blocked
            project_id: Project to list (defaults to the server's project)
        """
        try:
            store = await registry.store(project_id or default_project)
            items = await store.list(status)
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {
            "success": True,
            "count": len(items),
            "work_items": [item.model_dump(mode="json") for item in items],
        }

    @mcp.tool()
    async def ready_work(work_item_id: str, project_id: Optional[str] = None) -> dict:
        """Mark a work item ready for dispatch. Accepts an id prefix."""
        try:
            store = await registry.store(project_id or default_project)
            item = await store.ready(work_item_id)
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "work_item": item.model_dump(mode="json")}

    @mcp.tool()
    async def claim_work(agent_id: str, project_id: Optional[str] = None) -> dict:
        """Claim the highest-priority ready work item for ``agent_id``.

        Use this when you execute work yourself instead of letting the
        dispatcher spawn a session. Returns ``work_item: null`` when nothing
        is ready.
        """
        try:
            store = await registry.store(project_id or default_project)
            item = await store.claim(agent_id)
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "work_item": item.model_dump(mode="json") if item else None}

    @mcp.tool()
    async def work_stats(project_id: Optional[str] = None) -> dict:
        """Count work items by status."""
        try:
            store = await registry.store(project_id or default_project)
            stats = await store.stats()
        except (AgentDispatchError, ValueError) as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "project_id": store.project_id, **stats}
