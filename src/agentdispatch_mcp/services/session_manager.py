from __future__ import annotations

import asyncio
import json
import logging
import secrets
import shutil
import stat
from datetime import datetime
from pathlib import Path

from agentdispatch_mcp.errors import SessionNotFoundError, StorageIOError
from agentdispatch_mcp.models.session import (
    AgentSession,
    CompletionResult,
    CompletionStatus,
    SessionStatus,
)
from agentdispatch_mcp.models.work_item import Artifact, WorkItem
from agentdispatch_mcp.services.event_bus import EventBus, EventTypes
from agentdispatch_mcp.services.isolation import IsolationRegistry

logger = logging.getLogger(__name__)

COMPLETION_MARKER = "COMPLETION.md"
BLOCKED_MARKER = "BLOCKED.md"
TASK_FILENAME = "TASK.md"
METADATA_FILENAME = "WORK_ITEM.json"


class SessionManager:
    """Provisions isolated agent workspaces and reads back their outcome.

    Each session owns ``<project>/agents/<session_id>/`` with a ``workspace``
    directory (working files, ``TASK.md``, the blocked marker) and an
    ``artifacts`` directory (deliverables and the completion marker). The
    marker files are the only completion signal; probes never block.
    """

    def __init__(
        self,
        registry: IsolationRegistry,
        events: EventBus | None = None,
        timeout_seconds: int = 300,
    ):
        self.registry = registry
        self.events = events
        self.timeout_seconds = timeout_seconds
        self._sessions: dict[str, AgentSession] = {}

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def spawn(self, work_item: WorkItem, project_id: str) -> AgentSession:
        """Create the session's workspace and artifacts sink and write its task."""
        if work_item.project_id and work_item.project_id != project_id:
            raise ValueError(
                f"Work item {work_item.id} belongs to project {work_item.project_id}, "
                f"not {project_id}"
            )

        scope = await self.registry.scope(project_id)
        session_id = secrets.token_hex(8)
        session_dir = scope.paths.agents_dir / session_id
        workspace_dir = session_dir / "workspace"
        artifacts_dir = session_dir / "artifacts"

        session = AgentSession(
            id=session_id,
            work_item_id=work_item.id,
            project_id=project_id,
            workspace_dir=str(workspace_dir),
            artifacts_dir=str(artifacts_dir),
            task_path=str(workspace_dir / TASK_FILENAME),
            label=f"worker-{session_id[:8]}",
        )
        task = self.build_task_description(work_item, session, scope.paths.root)
        metadata = {
            "work_item_id": work_item.id,
            "session_id": session_id,
            "project_id": project_id,
            "started_at": session.started_at.isoformat(),
            "work_item": work_item.model_dump(mode="json"),
        }

        try:
            await asyncio.to_thread(
                self._materialize, session_dir, workspace_dir, artifacts_dir, task, metadata
            )
        except OSError as exc:
            raise StorageIOError(f"Cannot provision workspace for {work_item.id}: {exc}") from exc

        self._sessions[session_id] = session
        logger.info(
            "Spawned session %s for work item %s in %s", session_id, work_item.id, project_id
        )
        await self._publish(
            EventTypes.AGENT_SPAWNED,
            {
                "session_id": session_id,
                "work_item_id": work_item.id,
                "project_id": project_id,
                "workspace_dir": session.workspace_dir,
            },
        )
        return session

    async def update_status(
        self, session_id: str, status: SessionStatus, pid: int | None = None
    ) -> AgentSession:
        session = self._require(session_id)
        previous = session.status
        session.status = status
        session.last_activity_at = datetime.now()
        if pid is not None:
            session.pid = pid
        if previous is not status:
            await self._publish(
                EventTypes.AGENT_STATUS_CHANGED,
                {
                    "session_id": session_id,
                    "work_item_id": session.work_item_id,
                    "from": previous.value,
                    "to": status.value,
                },
            )
        return session

    async def cleanup(self, session_id: str, keep_artifacts: bool = True) -> None:
        """Forget a session; with ``keep_artifacts=False`` also delete its files."""
        session = self._require(session_id)
        del self._sessions[session_id]

        if not keep_artifacts:
            session_dir = Path(session.workspace_dir).parent
            try:
                await asyncio.to_thread(_remove_tree, session_dir)
            except OSError as exc:
                raise StorageIOError(f"Cannot remove session {session_id}: {exc}") from exc

        logger.info("Cleaned up session %s (files kept: %s)", session_id, keep_artifacts)
        await self._publish(
            EventTypes.AGENT_CLEANED,
            {"session_id": session_id, "work_item_id": session.work_item_id},
        )

    # ------------------------------------------------------------------
    # Probes
    # ------------------------------------------------------------------

    async def check_completion(self, session_id: str) -> CompletionResult:
        """Probe the marker files. Completion wins if both markers exist."""
        session = self._require(session_id)
        completion_file = Path(session.artifacts_dir) / COMPLETION_MARKER
        blocked_file = Path(session.workspace_dir) / BLOCKED_MARKER

        try:
            report = await asyncio.to_thread(_read_marker, completion_file)
            if report is not None:
                status = CompletionStatus.COMPLETED
            else:
                report = await asyncio.to_thread(_read_marker, blocked_file)
                status = (
                    CompletionStatus.BLOCKED if report is not None else CompletionStatus.WORKING
                )
        except OSError as exc:
            raise StorageIOError(f"Cannot read markers for session {session_id}: {exc}") from exc

        if status is CompletionStatus.COMPLETED:
            await self.update_status(session_id, SessionStatus.COMPLETED)
        elif status is CompletionStatus.BLOCKED:
            await self.update_status(session_id, SessionStatus.BLOCKED)

        return CompletionResult(
            session_id=session_id,
            work_item_id=session.work_item_id,
            status=status,
            report=report,
        )

    async def collect_artifacts(self, session_id: str) -> list[Artifact]:
        """List regular files in the artifacts directory (non-recursive)."""
        session = self._require(session_id)
        try:
            return await asyncio.to_thread(_scan_artifacts, Path(session.artifacts_dir))
        except OSError as exc:
            logger.warning("Could not collect artifacts for %s: %s", session_id, exc)
            return []

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def restore(self, project_id: str, session_id: str) -> AgentSession | None:
        """Re-register a session left on disk by an earlier process.

        Returns ``None`` when no session directory with metadata exists.
        """
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        scope = await self.registry.scope(project_id)
        session_dir = scope.paths.agents_dir / session_id
        try:
            raw = await asyncio.to_thread(_read_marker, session_dir / METADATA_FILENAME)
        except OSError as exc:
            raise StorageIOError(f"Cannot read session {session_id}: {exc}") from exc
        if raw is None:
            return None

        try:
            metadata = json.loads(raw)
            started_at = datetime.fromisoformat(metadata["started_at"])
            work_item_id = metadata["work_item_id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise StorageIOError(f"Corrupt metadata for session {session_id}: {exc}") from exc

        workspace_dir = session_dir / "workspace"
        session = AgentSession(
            id=session_id,
            work_item_id=work_item_id,
            project_id=project_id,
            workspace_dir=str(workspace_dir),
            artifacts_dir=str(session_dir / "artifacts"),
            task_path=str(workspace_dir / TASK_FILENAME),
            label=f"worker-{session_id[:8]}",
            status=SessionStatus.WORKING,
            started_at=started_at,
        )
        self._sessions[session_id] = session
        logger.info("Restored session %s for work item %s", session_id, work_item_id)
        return session

    def get_session(self, session_id: str) -> AgentSession | None:
        return self._sessions.get(session_id)

    def list_sessions(
        self, status: SessionStatus | None = None, project_id: str | None = None
    ) -> list[AgentSession]:
        sessions = list(self._sessions.values())
        if status is not None:
            sessions = [s for s in sessions if s.status is status]
        if project_id is not None:
            sessions = [s for s in sessions if s.project_id == project_id]
        return sessions

    # ------------------------------------------------------------------
    # Task description
    # ------------------------------------------------------------------

    def build_task_description(
        self, work_item: WorkItem, session: AgentSession, project_root: Path
    ) -> str:
        """Render the contract handed to the executing agent."""
        lines = [
            "# Work Assignment - ISOLATED",
            "",
            "You are an isolated worker agent in a project sandbox.",
            f"- Project ID: {session.project_id}",
            f"- Session ID: {session.id}",
            f"- Work item ID: {work_item.id}",
            "- You must not read or write files outside the directories below.",
            "",
            "## Workspace Boundaries",
            f"- **Working Directory**: {session.workspace_dir}",
            f"- **Output Directory**: {session.artifacts_dir}",
            f"- **Project Root**: {project_root}",
            "",
            "## Task",
            "",
            f"**{work_item.title}**",
            "",
            f"Priority: {work_item.priority.value} | Complexity: {work_item.complexity}",
            "",
            work_item.description or "No description provided.",
            "",
        ]

        if work_item.acceptance_criteria:
            lines.append("### Acceptance Criteria")
            lines.extend(
                f"{i}. {criterion}"
                for i, criterion in enumerate(work_item.acceptance_criteria, start=1)
            )
            lines.append("")

        lines.extend(
            [
                "## Deliverables",
                "",
                f"1. Place ALL output files in: `{session.artifacts_dir}`",
                f"2. When done, create `{COMPLETION_MARKER}` in the output directory:",
                "",
                "```markdown",
                "# Completion Report",
                "## Summary",
                "[What you accomplished]",
                "## Files",
                "[List of artifacts created]",
                "## Verification",
                "[How to test/verify the work]",
                "```",
                "",
                f"3. If you are blocked, create `{BLOCKED_MARKER}` in the working directory",
                f"   (`{Path(session.workspace_dir) / BLOCKED_MARKER}`) explaining the blocker",
                "   in free text. Do not create the completion report in that case.",
                "",
                "## Constraints",
                f"- Time budget: about {self.timeout_seconds} seconds (advisory).",
                "- Stay within your workspace boundaries.",
                "- Focus only on this task.",
                "",
                "Begin now.",
                "",
            ]
        )
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, session_id: str) -> AgentSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    @staticmethod
    def _materialize(
        session_dir: Path,
        workspace_dir: Path,
        artifacts_dir: Path,
        task: str,
        metadata: dict,
    ) -> None:
        workspace_dir.mkdir(parents=True, exist_ok=True)
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        (workspace_dir / TASK_FILENAME).write_text(task, encoding="utf-8")
        (session_dir / METADATA_FILENAME).write_text(
            json.dumps(metadata, indent=2), encoding="utf-8"
        )

    async def _publish(self, event_type: str, data: dict) -> None:
        if self.events:
            await self.events.publish(event_type, data)


def _read_marker(path: Path) -> str | None:
    # Marker text comes from agents and is not guaranteed to be valid UTF-8.
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return None


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


def _scan_artifacts(artifacts_dir: Path) -> list[Artifact]:
    try:
        entries = sorted(artifacts_dir.iterdir(), key=lambda p: p.name)
    except FileNotFoundError:
        return []

    artifacts: list[Artifact] = []
    for entry in entries:
        try:
            info = entry.stat()
        except OSError:
            # Removed or unreadable since the listing; skip just this entry.
            continue
        if not stat.S_ISREG(info.st_mode):
            continue
        artifacts.append(
            Artifact(
                kind=entry.suffix.lstrip(".") or "file",
                location=str(entry),
                description=entry.name,
                name=entry.name,
                size=info.st_size,
            )
        )
    return artifacts
