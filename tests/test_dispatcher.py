from __future__ import annotations

import json
from pathlib import Path

import pytest

from agentdispatch_mcp.errors import (
    InvalidTransitionError,
    LaunchError,
    SessionNotFoundError,
    StorageIOError,
)
from agentdispatch_mcp.models.session import CompletionStatus, SessionStatus
from agentdispatch_mcp.models.work_item import WorkItemStatus
from agentdispatch_mcp.services.dispatcher import DispatchEngine
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes
from agentdispatch_mcp.services.launcher import AgentLauncher, CommandLauncher
from agentdispatch_mcp.services.session_manager import (
    BLOCKED_MARKER,
    COMPLETION_MARKER,
    SessionManager,
)
from agentdispatch_mcp.services.work_store import WorkItemStore

PROJECT = "test-project"


class FailingLauncher(AgentLauncher):
    mode = "failing"

    async def launch(self, session, work_item):
        raise LaunchError("agent binary missing")


class CrashingLauncher(AgentLauncher):
    mode = "crashing"

    async def launch(self, session, work_item):
        raise RuntimeError("launcher crashed")


async def _ready(store: WorkItemStore, title: str, priority: str = "medium"):
    item = await store.enqueue(title=title, priority=priority)
    return await store.ready(item.id)


def _finish(session, report: str = "# Completion Report\nAll done\n") -> None:
    artifacts = Path(session.artifacts_dir)
    (artifacts / "result.txt").write_text("result")
    (artifacts / COMPLETION_MARKER).write_text(report)


def _block(session, report: str = "Need database credentials") -> None:
    (Path(session.workspace_dir) / BLOCKED_MARKER).write_text(report)


def _make_engine(store, sessions, events, **kwargs) -> DispatchEngine:
    options = {"poll_interval": 3600, "completion_check_interval": 3600}
    options.update(kwargs)
    return DispatchEngine(PROJECT, store, sessions, events, **options)


@pytest.mark.asyncio
class TestPoll:
    async def test_poll_with_no_ready_work(self, engine: DispatchEngine) -> None:
        assert await engine.poll() is None
        assert engine.running == {}

    async def test_poll_dispatches_highest_priority(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        await _ready(store, "low", "low")
        urgent = await _ready(store, "urgent", "urgent")

        session = await engine.poll()

        assert session is not None
        assert session.work_item_id == urgent.id
        item = await store.get(urgent.id)
        assert item.status is WorkItemStatus.IN_FLIGHT
        assert item.assigned_agent_id == session.id
        assert engine.running == {session.id: urgent.id}

    async def test_capacity_caps_dispatch(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        for title in ("one", "two", "three"):
            await _ready(store, title)

        first = await engine.poll()
        second = await engine.poll()
        third = await engine.poll()

        assert first is not None and second is not None
        assert third is None
        assert len(engine.running) == 2
        assert len(await store.list(WorkItemStatus.READY)) == 1

        _finish(first)
        await engine.check_completions()
        assert len(engine.running) == 1

        fourth = await engine.poll()
        assert fourth is not None
        assert await store.list(WorkItemStatus.READY) == []

    async def test_dispatch_publishes_event(
        self, engine: DispatchEngine, store: WorkItemStore, event_bus: EventBus
    ) -> None:
        item = await _ready(store, "evented")
        session = await engine.poll()
        dispatched = event_bus.recent(event_type=EventTypes.WORK_DISPATCHED)[-1]
        assert dispatched.data["work_item_id"] == item.id
        assert dispatched.data["session_id"] == session.id
        assert dispatched.data["project_id"] == PROJECT
        assert session.status is SessionStatus.WORKING


@pytest.mark.asyncio
class TestCompletion:
    async def test_completed_session_moves_item_to_review(
        self, engine: DispatchEngine, store: WorkItemStore, event_bus: EventBus
    ) -> None:
        item = await _ready(store, "feature")
        session = await engine.poll()
        _finish(session, "# Completion Report\nShipped\n")

        results = await engine.check_completions()

        assert [r.status for r in results] == [CompletionStatus.COMPLETED]
        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.REVIEW
        assert updated.assigned_agent_id is None
        assert updated.completion_report == "# Completion Report\nShipped\n"
        assert sorted(a.name for a in updated.artifacts) == [COMPLETION_MARKER, "result.txt"]
        assert engine.running == {}
        assert engine.sessions.get_session(session.id) is None
        assert Path(session.artifacts_dir).exists()
        last = event_bus.recent(event_type=EventTypes.WORK_COMPLETED)[-1]
        assert last.data["status"] == "review"

    async def test_completion_status_done(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(store, session_manager, event_bus, completion_status="done")
        item = await _ready(store, "straight to done")
        session = await engine.poll()
        _finish(session)

        await engine.check_completions()

        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.DONE
        assert updated.completed_at is not None

    async def test_blocked_session_blocks_item(
        self, engine: DispatchEngine, store: WorkItemStore, event_bus: EventBus
    ) -> None:
        item = await _ready(store, "needs creds")
        session = await engine.poll()
        _block(session, "Need database credentials")

        results = await engine.check_completions()

        assert results[0].status is CompletionStatus.BLOCKED
        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.BLOCKED
        assert updated.blocker_report == "Need database credentials"
        assert engine.running == {}
        last = event_bus.recent(event_type=EventTypes.WORK_BLOCKED)[-1]
        assert last.data["work_item_id"] == item.id

    async def test_working_session_stays_running(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        await _ready(store, "slow")
        session = await engine.poll()
        results = await engine.check_completions()
        assert results[0].status is CompletionStatus.WORKING
        assert session.id in engine.running

    async def test_failed_check_keeps_session(
        self,
        engine: DispatchEngine,
        store: WorkItemStore,
        event_bus: EventBus,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _ready(store, "flaky disk")
        session = await engine.poll()

        async def broken(session_id: str):
            raise StorageIOError("disk on fire")

        monkeypatch.setattr(engine.sessions, "check_completion", broken)
        assert await engine.check_completions() == []
        assert session.id in engine.running
        errors = event_bus.recent(event_type=EventTypes.DISPATCHER_ERROR)
        assert errors[-1].data["session_id"] == session.id

    async def test_undecodable_marker_does_not_stall_other_sessions(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        garbled_item = await _ready(store, "garbled", "high")
        clean_item = await _ready(store, "clean", "low")
        garbled = await engine.poll()
        clean = await engine.poll()
        (Path(garbled.workspace_dir) / BLOCKED_MARKER).write_bytes(b"\xff\xfe")
        _finish(clean)

        results = await engine.check_completions()

        assert len(results) == 2
        assert engine.running == {}
        assert (await store.get(garbled_item.id)).status is WorkItemStatus.BLOCKED
        assert (await store.get(clean_item.id)).status is WorkItemStatus.REVIEW

    async def test_unexpected_check_error_is_isolated(
        self,
        engine: DispatchEngine,
        store: WorkItemStore,
        event_bus: EventBus,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        await _ready(store, "broken", "high")
        clean_item = await _ready(store, "clean", "low")
        broken = await engine.poll()
        clean = await engine.poll()
        _finish(clean)
        real_check = engine.sessions.check_completion

        async def check(session_id: str):
            if session_id == broken.id:
                raise RuntimeError("unexpected marker state")
            return await real_check(session_id)

        monkeypatch.setattr(engine.sessions, "check_completion", check)
        results = await engine.check_completions()

        assert [r.session_id for r in results] == [clean.id]
        assert engine.running == {broken.id: broken.work_item_id}
        assert (await store.get(clean_item.id)).status is WorkItemStatus.REVIEW
        last = event_bus.recent(event_type=EventTypes.DISPATCHER_ERROR)[-1]
        assert last.data["phase"] == "check"
        assert last.data["session_id"] == broken.id

    async def test_reassigned_item_releases_session(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        item = await _ready(store, "taken over")
        session = await engine.poll()
        await store.update(item.id, status="blocked", blocker_report="operator stopped it")
        _finish(session)

        await engine.check_completions()

        assert engine.running == {}
        unchanged = await store.get(item.id)
        assert unchanged.status is WorkItemStatus.BLOCKED

    async def test_check_session_unknown(self, engine: DispatchEngine) -> None:
        with pytest.raises(SessionNotFoundError):
            await engine.check_session("nope")


@pytest.mark.asyncio
class TestFailures:
    async def test_claim_failure_rolls_back_spawn(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        stale = await _ready(store, "contested")
        await store.claim("someone-else")

        with pytest.raises(InvalidTransitionError):
            await engine.dispatch(stale)

        assert engine.running == {}
        assert engine.sessions.list_sessions() == []
        agents_dir = store.scope.paths.agents_dir
        assert list(agents_dir.iterdir()) == []

    async def test_launch_failure_blocks_item(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(store, session_manager, event_bus, launcher=FailingLauncher())
        item = await _ready(store, "cannot start")

        session = await engine.poll()

        assert session.status is SessionStatus.FAILED
        assert engine.running == {}
        assert engine.sessions.get_session(session.id) is None
        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.BLOCKED
        assert "agent binary missing" in updated.blocker_report
        last = event_bus.recent(event_type=EventTypes.DISPATCHER_ERROR)[-1]
        assert last.data["phase"] == "launch"

    async def test_unparseable_command_blocks_item(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        launcher = CommandLauncher("echo {task_file}")
        launcher.command_template = 'echo "unclosed {task_file}'
        engine = _make_engine(store, session_manager, event_bus, launcher=launcher)
        item = await _ready(store, "bad quoting")

        session = await engine.poll()

        assert session.status is SessionStatus.FAILED
        assert engine.running == {}
        assert engine.sessions.get_session(session.id) is None
        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.BLOCKED
        assert updated.blocker_report.startswith("Launch failed")

    async def test_unexpected_launch_error_blocks_item(
        self, store: WorkItemStore, session_manager: SessionManager
    ) -> None:
        engine = _make_engine(store, session_manager, None, launcher=CrashingLauncher())
        item = await _ready(store, "crashy")

        session = await engine.poll()

        assert engine.running == {}
        assert engine.sessions.get_session(session.id) is None
        updated = await store.get(item.id)
        assert updated.status is WorkItemStatus.BLOCKED
        assert updated.blocker_report == "Launch failed: launcher crashed"

    async def test_invalid_completion_status(
        self, store: WorkItemStore, session_manager: SessionManager
    ) -> None:
        with pytest.raises(ValueError):
            _make_engine(store, session_manager, None, completion_status="blocked")


@pytest.mark.asyncio
class TestBacklog:
    async def test_dispatch_ready_parks_overflow(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        items = [await _ready(store, f"task-{i}") for i in range(3)]

        started = await engine.dispatch_ready()

        assert len(started) == 2
        assert list(engine.backlog) == [items[2].id]

        _finish(started[0])
        await engine.check_completions()

        assert list(engine.backlog) == []
        assert items[2].id in engine.running.values()

    async def test_backlog_drains_before_higher_priority(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(store, session_manager, event_bus, max_concurrent=1)
        first = await _ready(store, "first", "low")
        second = await _ready(store, "second", "low")

        started = await engine.dispatch_ready()
        assert [s.work_item_id for s in started] == [first.id]
        assert list(engine.backlog) == [second.id]

        urgent = await _ready(store, "urgent", "urgent")
        _finish(started[0])
        await engine.check_completions()

        assert list(engine.running.values()) == [second.id]
        still_ready = await store.get(urgent.id)
        assert still_ready.status is WorkItemStatus.READY

    async def test_backlog_is_bounded(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(
            store, session_manager, event_bus, max_concurrent=1, backlog_limit=1
        )
        for i in range(3):
            await _ready(store, f"task-{i}")

        await engine.dispatch_ready()

        assert len(engine.running) == 1
        assert len(engine.backlog) == 1

    async def test_stale_backlog_entries_are_skipped(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(store, session_manager, event_bus, max_concurrent=1)
        await _ready(store, "running")
        parked = await _ready(store, "parked")
        started = await engine.dispatch_ready()
        assert list(engine.backlog) == [parked.id]

        await store.update(parked.id, status="planning")
        _finish(started[0])
        await engine.check_completions()

        assert engine.running == {}
        assert list(engine.backlog) == []


@pytest.mark.asyncio
class TestDispatchItem:
    async def test_dispatch_item_readies_inbox_item(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        item = await store.enqueue(title="manual")
        session = await engine.dispatch_item(item.id[:8])
        assert session is not None
        assert session.work_item_id == item.id

    async def test_dispatch_item_at_capacity_parks(
        self, store: WorkItemStore, session_manager: SessionManager, event_bus: EventBus
    ) -> None:
        engine = _make_engine(store, session_manager, event_bus, max_concurrent=1)
        await _ready(store, "busy")
        await engine.poll()
        waiting = await store.enqueue(title="waiting")

        assert await engine.dispatch_item(waiting.id) is None
        assert list(engine.backlog) == [waiting.id]

    async def test_dispatch_item_rejects_done(
        self, engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        item = await _ready(store, "finished")
        await store.claim("human")
        await store.complete(item.id)
        with pytest.raises(InvalidTransitionError):
            await engine.dispatch_item(item.id)


@pytest.mark.asyncio
class TestLifecycle:
    async def test_start_and_stop(self, engine: DispatchEngine, event_bus: EventBus) -> None:
        await engine.start()
        assert engine.is_running
        assert engine.status()["running"] is True

        await engine.stop()
        assert not engine.is_running
        types = [e.type for e in event_bus.recent()]
        assert EventTypes.DISPATCHER_STARTED in types
        assert EventTypes.DISPATCHER_STOPPED in types

    async def test_status_snapshot(self, engine: DispatchEngine, store: WorkItemStore) -> None:
        item = await _ready(store, "tracked")
        session = await engine.poll()
        status = engine.status()

        assert status["project_id"] == PROJECT
        assert status["max_concurrent"] == 2
        assert status["available_slots"] == 1
        assert status["active_sessions"] == [
            {"session_id": session.id, "work_item_id": item.id}
        ]
        assert status["dispatched"] == 1
        assert status["launcher"] == "external"

    async def test_recover_after_restart(
        self, engine: DispatchEngine, store: WorkItemStore, registry, event_bus: EventBus
    ) -> None:
        item = await _ready(store, "survivor")
        session = await engine.poll()
        await store.enqueue(title="unrelated")
        await _ready(store, "claimed by a human")
        await store.claim("human-agent")

        restarted = _make_engine(store, SessionManager(registry, event_bus), event_bus)
        assert await restarted.recover() == 1
        assert restarted.running == {session.id: item.id}

        _finish(session)
        await restarted.check_completions()
        assert (await store.get(item.id)).status is WorkItemStatus.REVIEW

    async def test_recover_releases_mismatched_session(
        self, engine: DispatchEngine, store: WorkItemStore, registry, event_bus: EventBus
    ) -> None:
        item = await _ready(store, "survivor")
        session = await engine.poll()
        metadata_path = Path(session.workspace_dir).parent / "WORK_ITEM.json"
        metadata = json.loads(metadata_path.read_text())
        metadata["work_item_id"] = "another-item"
        metadata_path.write_text(json.dumps(metadata))

        sessions = SessionManager(registry, event_bus)
        restarted = _make_engine(store, sessions, event_bus)
        assert await restarted.recover() == 0
        assert restarted.running == {}
        assert sessions.get_session(session.id) is None
        assert (await store.get(item.id)).status is WorkItemStatus.IN_FLIGHT

    async def test_mock_launcher_round_trip(
        self, mock_engine: DispatchEngine, store: WorkItemStore
    ) -> None:
        item = await _ready(store, "mocked")
        await mock_engine.poll()
        await mock_engine.check_completions()

        done = await store.get(item.id)
        assert done.status is WorkItemStatus.REVIEW
        assert "output.txt" in [a.name for a in done.artifacts]
