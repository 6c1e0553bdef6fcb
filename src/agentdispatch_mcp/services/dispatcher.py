from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Optional

from agentdispatch_mcp.errors import (
    AgentDispatchError,
    InvalidTransitionError,
    SessionNotFoundError,
    StorageIOError,
)
from agentdispatch_mcp.models.session import (
    AgentSession,
    CompletionResult,
    CompletionStatus,
    SessionStatus,
)
from agentdispatch_mcp.models.work_item import WorkItem, WorkItemStatus
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes
from agentdispatch_mcp.services.launcher import AgentLauncher, ExternalLauncher
from agentdispatch_mcp.services.session_manager import SessionManager
from agentdispatch_mcp.services.work_store import WorkItemStore

logger = logging.getLogger(__name__)

COMPLETION_TARGETS = (WorkItemStatus.REVIEW, WorkItemStatus.DONE)


class DispatchEngine:
    """Turns ready work items into running agent sessions for one project.

    Design:
    - Two cadences: a poll tick claims and spawns, a completion tick probes
      marker files of running sessions.
    - ``max_concurrent`` caps running sessions. At capacity a poll is a no-op.
    - Items that could not start for lack of capacity wait in a bounded FIFO
      backlog, which is drained before any new ready item is considered.
    - Ticks are serialised by an engine-internal lock so two overlapping ticks
      can never exceed the cap.
    """

    def __init__(
        self,
        project_id: str,
        store: WorkItemStore,
        sessions: SessionManager,
        events: EventBus | None = None,
        launcher: AgentLauncher | None = None,
        max_concurrent: int = 2,
        poll_interval: float = 5.0,
        completion_check_interval: float = 10.0,
        completion_status: WorkItemStatus | str = WorkItemStatus.REVIEW,
        backlog_limit: int = 100,
    ):
        target = WorkItemStatus(completion_status)
        if target not in COMPLETION_TARGETS:
            raise ValueError(f"completion_status must be review or done, not {target.value}")
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.project_id = project_id
        self.store = store
        self.sessions = sessions
        self.events = events
        self.launcher = launcher or ExternalLauncher()
        self.max_concurrent = max_concurrent
        self.poll_interval = poll_interval
        self.completion_check_interval = completion_check_interval
        self.completion_status = target
        self.backlog_limit = backlog_limit

        self.running: dict[str, str] = {}  # session id -> work item id
        self.backlog: deque[str] = deque()
        self.dispatched_count = 0
        self.completed_count = 0
        self.blocked_count = 0

        self._mu = asyncio.Lock()
        self._poll_task: Optional[asyncio.Task] = None
        self._check_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._poll_task = asyncio.create_task(
            self._run_every(self.poll_interval, self.poll, "poll")
        )
        self._check_task = asyncio.create_task(
            self._run_every(self.completion_check_interval, self.check_completions, "check")
        )
        logger.info(
            "Dispatcher started for %s (max %d concurrent, poll %.1fs, check %.1fs)",
            self.project_id,
            self.max_concurrent,
            self.poll_interval,
            self.completion_check_interval,
        )
        await self._publish(EventTypes.DISPATCHER_STARTED, {"max_concurrent": self.max_concurrent})

    async def stop(self) -> None:
        was_running = self.is_running
        for task in (self._poll_task, self._check_task):
            if task:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._check_task = None
        if was_running:
            logger.info("Dispatcher stopped for %s", self.project_id)
            await self._publish(
                EventTypes.DISPATCHER_STOPPED, {"active_sessions": len(self.running)}
            )

    async def recover(self) -> int:
        """Track in-flight items whose session directory survived a restart.

        Items claimed by agents outside the engine have no session on disk
        and are left alone.
        """
        recovered = 0
        async with self._mu:
            for item in await self.store.list(WorkItemStatus.IN_FLIGHT):
                session_id = item.assigned_agent_id
                if not session_id or session_id in self.running:
                    continue
                session = await self.sessions.restore(self.project_id, session_id)
                if session is None:
                    continue
                if session.work_item_id != item.id:
                    logger.warning(
                        "Session %s on disk belongs to work item %s, not %s",
                        session_id,
                        session.work_item_id,
                        item.id,
                    )
                    await self.sessions.cleanup(session_id, keep_artifacts=True)
                    continue
                self.running[session_id] = item.id
                recovered += 1
        if recovered:
            logger.info("Recovered %d running sessions for %s", recovered, self.project_id)
        return recovered

    async def _run_every(
        self, interval: float, tick: Callable[[], Awaitable[Any]], phase: str
    ) -> None:
        while True:
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Dispatcher %s tick failed for %s: %s", phase, self.project_id, exc)
                await self._publish(
                    EventTypes.DISPATCHER_ERROR, {"phase": phase, "error": str(exc)}
                )
            await asyncio.sleep(interval)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    @property
    def available_slots(self) -> int:
        return max(0, self.max_concurrent - len(self.running))

    async def poll(self) -> AgentSession | None:
        """Dispatch at most one item: the backlog head, else the best ready item."""
        async with self._mu:
            if not self.available_slots:
                return None
            item = await self._next_from_backlog()
            if item is None:
                ready = await self._ready_by_priority()
                if not ready:
                    return None
                item = ready[0]
            return await self._dispatch_locked(item)

    async def dispatch(self, item: WorkItem) -> AgentSession:
        """Spawn, claim and launch ``item`` regardless of the backlog.

        The caller is responsible for checking capacity.
        """
        async with self._mu:
            return await self._dispatch_locked(item)

    async def dispatch_item(self, item_id: str) -> AgentSession | None:
        """Dispatch one item by id, readying it first if it is still being triaged.

        At capacity the item is parked in the backlog and ``None`` is returned.
        """
        async with self._mu:
            item = await self.store.require(item_id)
            if item.status in (WorkItemStatus.INBOX, WorkItemStatus.PLANNING):
                item = await self.store.ready(item.id)
            if item.status is not WorkItemStatus.READY:
                raise InvalidTransitionError(
                    item.id, item.status.value, ["inbox", "planning", "ready"]
                )
            if not self.available_slots:
                self._park(item.id)
                return None
            return await self._dispatch_locked(item)

    async def dispatch_ready(self, limit: int | None = None) -> list[AgentSession]:
        """Start as many ready items as capacity allows; park the rest in the backlog."""
        async with self._mu:
            started: list[AgentSession] = []
            while self.available_slots:
                item = await self._next_from_backlog()
                if item is None:
                    break
                started.append(await self._dispatch_locked(item))

            ready = [
                item for item in await self._ready_by_priority() if item.id not in self.backlog
            ]
            if limit is not None:
                ready = ready[: max(0, limit - len(started))]
            for item in ready:
                if self.available_slots:
                    started.append(await self._dispatch_locked(item))
                else:
                    self._park(item.id)
            return started

    async def _dispatch_locked(self, item: WorkItem) -> AgentSession:
        session = await self.sessions.spawn(item, self.project_id)
        try:
            claimed = await self.store.claim_item(item.id, session.id)
        except AgentDispatchError:
            try:
                await self.sessions.cleanup(session.id, keep_artifacts=False)
            except StorageIOError as exc:
                logger.error("Could not roll back session %s: %s", session.id, exc)
            raise

        self.running[session.id] = claimed.id
        try:
            launched = await self.launcher.launch(session, claimed)
        except Exception as exc:
            await self._fail_launch(session, claimed, exc)
            return session

        await self.sessions.update_status(
            session.id, SessionStatus.WORKING, pid=launched.get("pid")
        )
        self.dispatched_count += 1
        logger.info("Dispatched work item %s to session %s", claimed.id, session.id)
        await self._publish(
            EventTypes.WORK_DISPATCHED,
            {
                "work_item_id": claimed.id,
                "session_id": session.id,
                "title": claimed.title,
                "launcher": self.launcher.mode,
            },
        )
        return session

    async def _fail_launch(self, session: AgentSession, item: WorkItem, exc: Exception) -> None:
        logger.error("Launch failed for session %s (work item %s): %s", session.id, item.id, exc)
        self.running.pop(session.id, None)
        await self.sessions.update_status(session.id, SessionStatus.FAILED)
        await self.store.update(
            item.id, status=WorkItemStatus.BLOCKED, blocker_report=f"Launch failed: {exc}"
        )
        await self.sessions.cleanup(session.id, keep_artifacts=True)
        self.blocked_count += 1
        await self._publish(
            EventTypes.DISPATCHER_ERROR,
            {
                "phase": "launch",
                "session_id": session.id,
                "work_item_id": item.id,
                "error": str(exc),
            },
        )

    # ------------------------------------------------------------------
    # Completion checks
    # ------------------------------------------------------------------

    async def check_completions(self) -> list[CompletionResult]:
        """Probe every running session once and settle finished ones."""
        async with self._mu:
            outcomes: list[CompletionResult] = []
            for session_id in list(self.running):
                try:
                    outcomes.append(await self._check_locked(session_id))
                except Exception as exc:
                    logger.error("Completion check failed for session %s: %s", session_id, exc)
                    await self._publish(
                        EventTypes.DISPATCHER_ERROR,
                        {"phase": "check", "session_id": session_id, "error": str(exc)},
                    )
            await self._drain_backlog()
            return outcomes

    async def check_session(self, session_id: str) -> CompletionResult:
        async with self._mu:
            if session_id not in self.running:
                raise SessionNotFoundError(session_id, self.project_id)
            result = await self._check_locked(session_id)
            await self._drain_backlog()
            return result

    async def _check_locked(self, session_id: str) -> CompletionResult:
        result = await self.sessions.check_completion(session_id)
        if result.status is CompletionStatus.WORKING:
            return result

        item_id = self.running[session_id]
        item = await self.store.get(item_id)
        if item is None or item.assigned_agent_id != session_id:
            logger.warning(
                "Work item %s is no longer assigned to session %s; releasing session",
                item_id,
                session_id,
            )
            await self._release(session_id)
            return result

        if result.status is CompletionStatus.COMPLETED:
            artifacts = await self.sessions.collect_artifacts(session_id)
            await self.store.update(
                item_id,
                status=self.completion_status,
                artifacts=artifacts,
                completion_report=result.report,
            )
            await self._release(session_id)
            self.completed_count += 1
            logger.info(
                "Session %s completed work item %s (%d artifacts)",
                session_id,
                item_id,
                len(artifacts),
            )
            await self._publish(
                EventTypes.WORK_COMPLETED,
                {
                    "work_item_id": item_id,
                    "session_id": session_id,
                    "status": self.completion_status.value,
                    "artifacts": [a.location for a in artifacts],
                },
            )
        else:
            await self.store.update(
                item_id, status=WorkItemStatus.BLOCKED, blocker_report=result.report
            )
            await self._release(session_id)
            self.blocked_count += 1
            logger.warning("Session %s blocked on work item %s", session_id, item_id)
            await self._publish(
                EventTypes.WORK_BLOCKED,
                {"work_item_id": item_id, "session_id": session_id, "report": result.report},
            )
        return result

    async def _release(self, session_id: str) -> None:
        self.running.pop(session_id, None)
        await self.sessions.cleanup(session_id, keep_artifacts=True)

    # ------------------------------------------------------------------
    # Backlog
    # ------------------------------------------------------------------

    def _park(self, item_id: str) -> bool:
        if item_id in self.backlog:
            return True
        if len(self.backlog) >= self.backlog_limit:
            logger.warning(
                "Backlog full (%d); work item %s stays ready for a later poll",
                self.backlog_limit,
                item_id,
            )
            return False
        self.backlog.append(item_id)
        return True

    async def _next_from_backlog(self) -> WorkItem | None:
        while self.backlog:
            item_id = self.backlog.popleft()
            item = await self.store.get(item_id)
            if item is not None and item.status is WorkItemStatus.READY:
                return item
            logger.debug("Dropping stale backlog entry %s", item_id)
        return None

    async def _drain_backlog(self) -> list[AgentSession]:
        started: list[AgentSession] = []
        while self.available_slots and self.backlog:
            item = await self._next_from_backlog()
            if item is None:
                break
            try:
                started.append(await self._dispatch_locked(item))
            except AgentDispatchError as exc:
                logger.error("Could not dispatch backlog item %s: %s", item.id, exc)
        return started

    async def _ready_by_priority(self) -> list[WorkItem]:
        ready = await self.store.list(WorkItemStatus.READY)
        return sorted(ready, key=lambda item: item.rank)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "project_id": self.project_id,
            "running": self.is_running,
            "launcher": self.launcher.mode,
            "max_concurrent": self.max_concurrent,
            "available_slots": self.available_slots,
            "completion_status": self.completion_status.value,
            "active_sessions": [
                {"session_id": sid, "work_item_id": wid} for sid, wid in self.running.items()
            ],
            "backlog": list(self.backlog),
            "dispatched": self.dispatched_count,
            "completed": self.completed_count,
            "blocked": self.blocked_count,
        }

    async def _publish(self, event_type: str, data: dict[str, Any]) -> None:
        if self.events:
            await self.events.publish(event_type, {"project_id": self.project_id, **data})
