from __future__ import annotations

import asyncio
import logging
import os
import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from agentdispatch_mcp.errors import LaunchError
from agentdispatch_mcp.models.session import AgentSession
from agentdispatch_mcp.models.work_item import WorkItem
from agentdispatch_mcp.services.session_manager import BLOCKED_MARKER, COMPLETION_MARKER

logger = logging.getLogger(__name__)

AGENT_LOG_FILENAME = "agent.log"
TEMPLATE_PLACEHOLDERS = ("task_file", "workspace", "artifacts", "model", "session_id")


class AgentLauncher(ABC):
    """Hands a provisioned session to whatever executes the work.

    ``launch`` returns a small dict describing what was started; it raises
    ``LaunchError`` when the agent could not be started at all.
    """

    mode: str = "abstract"

    def __init__(self, model: str = "sonnet", timeout_seconds: int = 300):
        self.model = model
        self.timeout_seconds = timeout_seconds

    @abstractmethod
    async def launch(self, session: AgentSession, work_item: WorkItem) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        """Release launcher resources. Running agents are left alone."""

    def spawn_config(self, session: AgentSession) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "session_id": session.id,
            "label": session.label,
            "task_path": session.task_path,
            "workspace_dir": session.workspace_dir,
            "artifacts_dir": session.artifacts_dir,
            "model": self.model,
            "timeout_seconds": self.timeout_seconds,
        }


class ExternalLauncher(AgentLauncher):
    """Leaves the session for an operator (or another tool) to pick up."""

    mode = "external"

    async def launch(self, session: AgentSession, work_item: WorkItem) -> dict[str, Any]:
        logger.info(
            "Session %s ready for work item %s: start an agent on %s",
            session.id,
            work_item.id,
            session.task_path,
        )
        return self.spawn_config(session)


class CommandLauncher(AgentLauncher):
    """Starts a configured command in the session workspace.

    The template may use ``{task_file}``, ``{workspace}``, ``{artifacts}``,
    ``{model}`` and ``{session_id}``; values are shell-quoted before the
    rendered line is split into argv. The child runs detached from the engine:
    its exit is logged, never awaited by the dispatcher.
    """

    mode = "command"

    def __init__(self, command_template: str, model: str = "sonnet", timeout_seconds: int = 300):
        super().__init__(model=model, timeout_seconds=timeout_seconds)
        if not command_template or not command_template.strip():
            raise ValueError("Command launcher requires a non-empty command template")
        self.command_template = command_template.strip()
        self._watchers: set[asyncio.Task] = set()

        try:
            self._render(dict.fromkeys(TEMPLATE_PLACEHOLDERS, "x"))
        except LaunchError as exc:
            raise ValueError(
                f"Invalid command template {self.command_template!r}: {exc}"
            ) from exc

    def build_argv(self, session: AgentSession) -> list[str]:
        return self._render(
            {
                "task_file": session.task_path,
                "workspace": session.workspace_dir,
                "artifacts": session.artifacts_dir,
                "model": self.model,
                "session_id": session.id,
            }
        )

    def _render(self, values: dict[str, str]) -> list[str]:
        quoted = {name: shlex.quote(value) for name, value in values.items()}
        try:
            rendered = self.command_template.format(**quoted)
        except (KeyError, IndexError, ValueError) as exc:
            raise LaunchError(f"Cannot render command template: {exc}") from exc
        try:
            argv = shlex.split(rendered)
        except ValueError as exc:
            raise LaunchError(f"Cannot parse command template: {exc}") from exc
        if not argv:
            raise LaunchError("Command template rendered an empty command")
        return argv

    def build_env(self, session: AgentSession, work_item: WorkItem) -> dict[str, str]:
        env = os.environ.copy()
        env["AGENTDISPATCH_SESSION_ID"] = session.id
        env["AGENTDISPATCH_WORK_ITEM_ID"] = work_item.id
        env["AGENTDISPATCH_PROJECT_ID"] = session.project_id
        env["AGENTDISPATCH_TASK_FILE"] = session.task_path
        env["AGENTDISPATCH_ARTIFACTS_DIR"] = session.artifacts_dir
        env["AGENTDISPATCH_TIMEOUT_SECONDS"] = str(self.timeout_seconds)
        return env

    async def launch(self, session: AgentSession, work_item: WorkItem) -> dict[str, Any]:
        argv = self.build_argv(session)
        log_path = Path(session.workspace_dir) / AGENT_LOG_FILENAME
        try:
            with log_path.open("w", encoding="utf-8") as log_handle:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=session.workspace_dir,
                    env=self.build_env(session, work_item),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                )
        except FileNotFoundError as exc:
            raise LaunchError(f"Agent command not found: {argv[0]}") from exc
        except OSError as exc:
            raise LaunchError(f"Agent command failed to start: {exc}") from exc

        logger.info("Started agent pid %s for session %s", proc.pid, session.id)
        watcher = asyncio.create_task(self._watch(session.id, proc))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)

        config = self.spawn_config(session)
        config.update({"pid": proc.pid, "argv": argv, "log_path": str(log_path)})
        return config

    async def _watch(self, session_id: str, proc: asyncio.subprocess.Process) -> None:
        code = await proc.wait()
        if code:
            logger.warning("Agent for session %s exited with code %s", session_id, code)
        else:
            logger.info("Agent for session %s exited", session_id)

    async def close(self) -> None:
        for watcher in list(self._watchers):
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        self._watchers.clear()


class MockLauncher(AgentLauncher):
    """Completes every session immediately by writing its deliverables."""

    mode = "mock"

    def __init__(self, model: str = "sonnet", timeout_seconds: int = 300, blocked: bool = False):
        super().__init__(model=model, timeout_seconds=timeout_seconds)
        self.blocked = blocked
        self.launched: list[str] = []

    async def launch(self, session: AgentSession, work_item: WorkItem) -> dict[str, Any]:
        await asyncio.to_thread(self._write_outcome, session, work_item)
        self.launched.append(session.id)
        return self.spawn_config(session)

    def _write_outcome(self, session: AgentSession, work_item: WorkItem) -> None:
        if self.blocked:
            (Path(session.workspace_dir) / BLOCKED_MARKER).write_text(
                f"Mock agent blocked on {work_item.title}\n", encoding="utf-8"
            )
            return
        artifacts = Path(session.artifacts_dir)
        (artifacts / "output.txt").write_text(
            f"Output for {work_item.title}\n", encoding="utf-8"
        )
        (artifacts / COMPLETION_MARKER).write_text(
            "# Completion Report\n"
            "## Summary\n"
            f"Completed {work_item.title}\n"
            "## Files\n"
            "- output.txt\n"
            "## Verification\n"
            "Mock run, nothing to verify.\n",
            encoding="utf-8",
        )


def create_launcher(
    mode: str,
    command: str | None = None,
    model: str = "sonnet",
    timeout_seconds: int = 300,
) -> AgentLauncher:
    if mode == "external":
        return ExternalLauncher(model=model, timeout_seconds=timeout_seconds)
    if mode == "command":
        if not command:
            raise ValueError("AGENTDISPATCH_AGENT_COMMAND must be set for the command launcher")
        return CommandLauncher(command, model=model, timeout_seconds=timeout_seconds)
    if mode == "mock":
        return MockLauncher(model=model, timeout_seconds=timeout_seconds)
    raise ValueError(f"Unknown agent mode {mode!r}: expected external, command or mock")
