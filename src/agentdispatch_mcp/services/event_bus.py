from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from pydantic import ValidationError

from agentdispatch_mcp.models.event import Event

logger = logging.getLogger(__name__)

Listener = Callable[[Event], Union[Awaitable[None], None]]

WILDCARD = "*"


class EventTypes:
    # Queue events
    WORK_ADDED = "work:added"
    WORK_UPDATED = "work:updated"
    WORK_STATUS_CHANGED = "work:status_changed"
    WORK_DISPATCHED = "work:dispatched"
    WORK_COMPLETED = "work:completed"
    WORK_BLOCKED = "work:blocked"

    # Agent session events
    AGENT_SPAWNED = "agent:spawned"
    AGENT_STATUS_CHANGED = "agent:status_changed"
    AGENT_CLEANED = "agent:cleaned"

    # Dispatcher events
    DISPATCHER_STARTED = "dispatcher:started"
    DISPATCHER_STOPPED = "dispatcher:stopped"
    DISPATCHER_ERROR = "dispatcher:error"

    # Project events
    PROJECT_CREATED = "project:created"
    PROJECT_DELETED = "project:deleted"


@dataclass
class _Subscription:
    callback: Listener
    event_types: frozenset[str]

    def matches(self, event_type: str) -> bool:
        return WILDCARD in self.event_types or event_type in self.event_types


class EventBus:
    """Async pub/sub event bus with a capped history and a JSONL audit log.

    Subscribers register under an id for specific event types (or ``"*"`` for
    all events). Callbacks may be plain functions or coroutines; both run before
    ``publish`` returns. A failing subscriber or a failing log write is logged
    and never propagates to the publisher.
    """

    def __init__(self, log_path: str | Path | None = None, max_history: int = 1000) -> None:
        self.log_path = Path(log_path) if log_path else None
        self.max_history = max_history
        self._history: deque[Event] = deque(maxlen=max_history)
        self._subscribers: dict[str, _Subscription] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        subscriber_id: str,
        callback: Listener,
        event_types: str | Iterable[str] = (WILDCARD,),
    ) -> Callable[[], None]:
        """Register ``callback`` and return a handle that unsubscribes it.

        ``event_types`` is a single event type or a collection of them.
        """
        if isinstance(event_types, str):
            event_types = (event_types,)
        self._subscribers[subscriber_id] = _Subscription(callback, frozenset(event_types))
        return lambda: self.unsubscribe(subscriber_id)

    def unsubscribe(self, subscriber_id: str) -> bool:
        return self._subscribers.pop(subscriber_id, None) is not None

    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def publish(self, event_type: str, data: Optional[dict[str, Any]] = None) -> Event:
        """Record an event, fan it out to matching subscribers, and append it to the log."""
        event = Event(type=event_type, data=dict(data or {}))

        self._history.append(event)
        await self._fan_out(event)
        await self._append_to_log(event)
        return event

    async def _fan_out(self, event: Event) -> None:
        targets = [
            (sid, sub.callback)
            for sid, sub in list(self._subscribers.items())
            if sub.matches(event.type)
        ]
        if not targets:
            return

        pending: list[tuple[str, Awaitable[None]]] = []
        for sid, callback in targets:
            try:
                result = callback(event)
            except Exception as exc:
                logger.error("Event listener %s failed for %s: %s", sid, event.type, exc)
                continue
            if inspect.isawaitable(result):
                pending.append((sid, result))

        if not pending:
            return

        results = await asyncio.gather(*(aw for _, aw in pending), return_exceptions=True)
        for (sid, _), result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error("Event listener %s failed for %s: %s", sid, event.type, result)

    async def _append_to_log(self, event: Event) -> None:
        if self.log_path is None:
            return
        try:
            line = event.model_dump_json() + "\n"
            await asyncio.to_thread(self._append_line, line)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Failed to log event %s: %s", event.type, exc)

    def _append_line(self, line: str) -> None:
        assert self.log_path is not None
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def recent(self, count: int = 50, event_type: str | None = None) -> list[Event]:
        events = list(self._history)
        if event_type:
            events = [e for e in events if e.type == event_type]
        return events[-count:] if count > 0 else []

    async def load_history(self, limit: int = 100) -> list[Event]:
        """Replay the most recent ``limit`` log records into the in-memory ring."""
        if self.log_path is None:
            return []
        try:
            lines = await asyncio.to_thread(self._read_lines)
        except FileNotFoundError:
            return []
        except OSError as exc:
            logger.error("Failed to load event history: %s", exc)
            return []

        events: list[Event] = []
        for line in lines[-limit:] if limit > 0 else []:
            try:
                events.append(Event.model_validate_json(line))
            except ValidationError:
                logger.debug("Skipping unparseable event log line")

        self._history = deque(events, maxlen=self.max_history)
        logger.info("Loaded %d events from %s", len(events), self.log_path)
        return list(self._history)

    def _read_lines(self) -> list[str]:
        assert self.log_path is not None
        text = self.log_path.read_text(encoding="utf-8")
        return [line for line in text.splitlines() if line.strip()]
