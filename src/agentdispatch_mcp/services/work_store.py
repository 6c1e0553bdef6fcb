from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable

from agentdispatch_mcp.errors import InvalidTransitionError, WorkItemNotFoundError
from agentdispatch_mcp.models.work_item import (
    TRANSITIONS,
    UPDATABLE_FIELDS,
    Artifact,
    WorkItem,
    WorkItemCreate,
    WorkItemStatus,
    can_transition,
)
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes
from agentdispatch_mcp.services.isolation import ProjectScope

logger = logging.getLogger(__name__)


def _sources_of(target: WorkItemStatus) -> list[str]:
    """States from which ``target`` is reachable."""
    return [src.value for src, targets in TRANSITIONS.items() if target in targets]


def _find_index(items: list[WorkItem], ref: str) -> int:
    """Locate an item by exact id, falling back to the first id with that prefix."""
    for idx, item in enumerate(items):
        if item.id == ref:
            return idx
    if not ref:
        return -1
    matches = [idx for idx, item in enumerate(items) if item.id.startswith(ref)]
    if len(matches) > 1:
        logger.warning(
            "Ambiguous id prefix %r matches %d work items; using %s",
            ref,
            len(matches),
            items[matches[0]].id,
        )
    return matches[0] if matches else -1


class WorkItemStore:
    """Work-item queue for one project scope.

    Every mutation is a single load → modify → save critical section under the
    project's lock, so claims are totally ordered and no two callers can take
    the same item. Reads skip the lock and return a snapshot.
    """

    def __init__(self, scope: ProjectScope, events: EventBus | None = None):
        self.scope = scope
        self.events = events

    @property
    def project_id(self) -> str:
        return self.scope.project_id

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(self, status: WorkItemStatus | str | None = None) -> list[WorkItem]:
        items = await self.scope.backend.load()
        if status is None:
            return items
        wanted = WorkItemStatus(status)
        return [item for item in items if item.status is wanted]

    async def get(self, id_or_prefix: str) -> WorkItem | None:
        items = await self.scope.backend.load()
        idx = _find_index(items, id_or_prefix)
        return items[idx] if idx >= 0 else None

    async def require(self, id_or_prefix: str) -> WorkItem:
        item = await self.get(id_or_prefix)
        if item is None:
            raise WorkItemNotFoundError(id_or_prefix, self.project_id)
        return item

    async def stats(self) -> dict[str, Any]:
        items = await self.scope.backend.load()
        by_status = {status.value: 0 for status in WorkItemStatus}
        for item in items:
            by_status[item.status.value] += 1
        return {"total": len(items), "by_status": by_status}

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def enqueue(
        self, item: WorkItemCreate | dict[str, Any] | None = None, **fields: Any
    ) -> WorkItem:
        """Append a new inbox item. Always succeeds; there is no deduplication."""
        if isinstance(item, WorkItemCreate):
            request = item.model_copy(update=fields)
        else:
            request = WorkItemCreate.model_validate({**(item or {}), **fields})

        now = datetime.now()
        work_item = WorkItem(
            **request.model_dump(),
            project_id=self.project_id,
            status=WorkItemStatus.INBOX,
            created_at=now,
            updated_at=now,
        )

        async with self.scope.lock:
            items = await self.scope.backend.load()
            items.append(work_item)
            await self.scope.backend.save(items)

        logger.info(
            "Enqueued work item %s (%s) in %s", work_item.id, work_item.title, self.project_id
        )
        await self._publish(
            EventTypes.WORK_ADDED,
            {
                "work_item_id": work_item.id,
                "title": work_item.title,
                "priority": work_item.priority.value,
            },
        )
        return work_item

    async def update(self, item_id: str, **fields: Any) -> WorkItem:
        """Merge ``fields`` into an item, validating any status change."""
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be updated directly: {', '.join(sorted(unknown))}")

        async with self.scope.lock:
            items = await self.scope.backend.load()
            idx = self._index_or_raise(items, item_id)
            before = items[idx]
            after = self._apply(before, fields)
            items[idx] = after
            await self.scope.backend.save(items)

        await self._publish(
            EventTypes.WORK_UPDATED,
            {"work_item_id": after.id, "fields": sorted(fields)},
        )
        await self._publish_transition(before, after)
        return after

    async def ready(self, item_id: str) -> WorkItem:
        """Move an inbox/planning item to ready."""
        return await self._transition(
            item_id,
            WorkItemStatus.READY,
            allowed=(WorkItemStatus.INBOX, WorkItemStatus.PLANNING, WorkItemStatus.READY),
        )

    async def requeue(self, item_id: str) -> WorkItem:
        """Operator re-ready of a blocked item."""
        return await self._transition(
            item_id,
            WorkItemStatus.READY,
            allowed=(WorkItemStatus.BLOCKED,),
            blocker_report=None,
        )

    async def claim(self, agent_id: str) -> WorkItem | None:
        """Atomically take the highest-priority ready item for ``agent_id``.

        Priority order is urgent > high > medium > low; within one priority the
        earliest enqueued item wins. Returns ``None`` when nothing is ready.
        """
        async with self.scope.lock:
            items = await self.scope.backend.load()
            candidates = [
                (item.rank, idx)
                for idx, item in enumerate(items)
                if item.status is WorkItemStatus.READY
            ]
            if not candidates:
                return None
            _, idx = min(candidates)
            before = items[idx]
            after = self._assign(before, agent_id)
            items[idx] = after
            await self.scope.backend.save(items)

        logger.info("Agent %s claimed work item %s", agent_id, after.id)
        await self._publish_transition(before, after)
        return after

    async def claim_item(self, item_id: str, agent_id: str) -> WorkItem:
        """Claim one specific item; it must currently be ready."""
        async with self.scope.lock:
            items = await self.scope.backend.load()
            idx = self._index_or_raise(items, item_id)
            before = items[idx]
            if before.status is not WorkItemStatus.READY:
                raise InvalidTransitionError(
                    before.id, before.status.value, WorkItemStatus.READY.value
                )
            after = self._assign(before, agent_id)
            items[idx] = after
            await self.scope.backend.save(items)

        logger.info("Agent %s claimed work item %s", agent_id, after.id)
        await self._publish_transition(before, after)
        return after

    async def complete(
        self,
        item_id: str,
        artifacts: Iterable[Artifact | dict[str, Any]] | None = None,
        report: str | None = None,
    ) -> WorkItem:
        """Mark an in-flight or in-review item done, replacing its artifacts."""
        changes: dict[str, Any] = {
            "artifacts": [Artifact.model_validate(a) for a in (artifacts or [])],
        }
        if report is not None:
            changes["completion_report"] = report
        return await self._transition(
            item_id,
            WorkItemStatus.DONE,
            allowed=(WorkItemStatus.IN_FLIGHT, WorkItemStatus.REVIEW),
            **changes,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _transition(
        self,
        item_id: str,
        target: WorkItemStatus,
        allowed: Iterable[WorkItemStatus],
        **changes: Any,
    ) -> WorkItem:
        allowed = tuple(allowed)
        async with self.scope.lock:
            items = await self.scope.backend.load()
            idx = self._index_or_raise(items, item_id)
            before = items[idx]
            if before.status not in allowed:
                raise InvalidTransitionError(
                    before.id, before.status.value, [s.value for s in allowed]
                )
            after = self._apply(before, {**changes, "status": target})
            items[idx] = after
            await self.scope.backend.save(items)

        await self._publish_transition(before, after)
        return after

    def _index_or_raise(self, items: list[WorkItem], item_id: str) -> int:
        idx = _find_index(items, item_id)
        if idx < 0:
            raise WorkItemNotFoundError(item_id, self.project_id)
        return idx

    @staticmethod
    def _touch(item: WorkItem) -> datetime:
        return max(datetime.now(), item.created_at)

    def _apply(self, item: WorkItem, fields: dict[str, Any]) -> WorkItem:
        """Return a validated copy of ``item`` with ``fields`` merged in.

        Status and assignment move together: leaving in_flight clears the
        assignment, and entering in_flight is only possible through a claim.
        """
        data = item.model_dump()
        data.update(fields)

        if "status" in fields:
            target = WorkItemStatus(fields["status"])
            if target is WorkItemStatus.IN_FLIGHT and item.status is not WorkItemStatus.IN_FLIGHT:
                raise ValueError("Use claim() or claim_item() to move a work item in flight")
            if target is not item.status and not can_transition(item.status, target):
                raise InvalidTransitionError(item.id, item.status.value, _sources_of(target))
            if target is not WorkItemStatus.IN_FLIGHT:
                data["assigned_agent_id"] = None
            if target is WorkItemStatus.DONE and item.status is not WorkItemStatus.DONE:
                data["completed_at"] = datetime.now()

        data["updated_at"] = self._touch(item)
        return WorkItem.model_validate(data)

    def _assign(self, item: WorkItem, agent_id: str) -> WorkItem:
        return item.model_copy(
            update={
                "status": WorkItemStatus.IN_FLIGHT,
                "assigned_agent_id": agent_id,
                "updated_at": self._touch(item),
            }
        )

    async def _publish_transition(self, before: WorkItem, after: WorkItem) -> None:
        if before.status is after.status:
            return
        logger.debug(
            "Work item %s: %s -> %s", after.id, before.status.value, after.status.value
        )
        await self._publish(
            EventTypes.WORK_STATUS_CHANGED,
            {
                "work_item_id": after.id,
                "from": before.status.value,
                "to": after.status.value,
                "assigned_agent_id": after.assigned_agent_id,
            },
        )

    async def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            await self.events.publish(event_type, {"project_id": self.project_id, **data})
