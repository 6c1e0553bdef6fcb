from __future__ import annotations

import asyncio
import dataclasses
import json
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from agentdispatch_mcp import __version__
from agentdispatch_mcp.errors import AgentDispatchError
from agentdispatch_mcp.models.work_item import Priority, WorkItemStatus
from agentdispatch_mcp.utils.config import Config, get_config

T = TypeVar("T")

_STATUS_CHOICE = click.Choice([s.value for s in WorkItemStatus])
_PRIORITY_CHOICE = click.Choice([p.value for p in Priority])


def _config(ctx: click.Context) -> Config:
    return ctx.obj["config"]


def _project(ctx: click.Context) -> str:
    return ctx.obj["project"]


def _run(fn: Callable[[], Awaitable[T]]) -> T:
    try:
        return asyncio.run(fn())
    except (AgentDispatchError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version=__version__, prog_name="agentdispatch-mcp")
@click.option("--data-root", type=click.Path(path_type=Path), default=None,
              help="Root directory for project data (AGENTDISPATCH_DATA_ROOT).")
@click.option("--storage", type=click.Choice(["json", "sqlite"]), default=None,
              help="Queue storage backend (AGENTDISPATCH_STORAGE).")
@click.option("--project", "-p", default=None,
              help="Project id to operate on (AGENTDISPATCH_PROJECT).")
@click.option("--log-level", default=None, help="Logging level (AGENTDISPATCH_LOG_LEVEL).")
@click.pass_context
def main(
    ctx: click.Context,
    data_root: Optional[Path],
    storage: Optional[str],
    project: Optional[str],
    log_level: Optional[str],
) -> None:
    """AgentDispatch MCP: work queue and agent dispatcher."""
    from agentdispatch_mcp.utils.logger import setup_logging

    config = get_config()
    overrides: dict[str, Any] = {}
    if data_root is not None:
        overrides["data_root"] = data_root
        overrides["event_log_path"] = data_root / "events.jsonl"
    if storage is not None:
        overrides["storage_backend"] = storage
    if log_level is not None:
        overrides["log_level"] = log_level
    if overrides:
        config = dataclasses.replace(config, **overrides)

    setup_logging(config.log_level, config.log_file)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["project"] = project or config.default_project


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Provision the current project's directories and queue storage."""
    from agentdispatch_mcp.services.isolation import IsolationRegistry

    config = _config(ctx)
    project_id = _project(ctx)

    async def _init() -> Path:
        registry = IsolationRegistry(config.data_root, config.storage_backend)
        try:
            scope = await registry.scope(project_id)
            return scope.paths.root
        finally:
            await registry.close()

    root = _run(_init)
    click.echo(f"Project {project_id} initialized at {root}")


@main.command()
@click.pass_context
def projects(ctx: click.Context) -> None:
    """List known projects."""
    from agentdispatch_mcp.services.isolation import IsolationRegistry

    config = _config(ctx)

    async def _list():
        return await IsolationRegistry(config.data_root, config.storage_backend).list_projects()

    metas = _run(_list)
    if not metas:
        click.echo("No projects.")
        return
    for meta in metas:
        click.echo(
            f"{meta.id}  {meta.name}  (max {meta.config.max_concurrent} concurrent, "
            f"model {meta.config.default_model})"
        )


@main.command("create-project")
@click.argument("name")
@click.option("--id", "project_id", default=None, help="Explicit project id.")
@click.option("--description", default="", help="Project description.")
@click.option("--max-concurrent", default=2, show_default=True, type=int)
@click.option("--model", "default_model", default="sonnet", show_default=True)
@click.pass_context
def create_project(
    ctx: click.Context,
    name: str,
    project_id: Optional[str],
    description: str,
    max_concurrent: int,
    default_model: str,
) -> None:
    """Create a project with its own queue and workspaces."""
    from agentdispatch_mcp.services.event_bus import EventBus
    from agentdispatch_mcp.services.isolation import IsolationRegistry

    config = _config(ctx)

    async def _create():
        events = EventBus(log_path=config.event_log_path)
        registry = IsolationRegistry(config.data_root, config.storage_backend, events)
        try:
            return await registry.create_project(
                name,
                description=description,
                max_concurrent=max_concurrent,
                default_model=default_model,
                project_id=project_id,
            )
        finally:
            await registry.close()

    meta = _run(_create)
    click.echo(f"Created project {meta.id} ({meta.name})")


@main.command("delete-project")
@click.argument("project_id")
@click.option("--yes", is_flag=True, help="Confirm irreversible deletion.")
@click.pass_context
def delete_project(ctx: click.Context, project_id: str, yes: bool) -> None:
    """Delete a project and all of its data."""
    from agentdispatch_mcp.services.event_bus import EventBus
    from agentdispatch_mcp.services.isolation import IsolationRegistry

    config = _config(ctx)

    async def _delete() -> bool:
        events = EventBus(log_path=config.event_log_path)
        registry = IsolationRegistry(config.data_root, config.storage_backend, events)
        return await registry.delete_project(project_id, confirm=yes)

    if _run(_delete):
        click.echo(f"Deleted project {project_id}")
    else:
        click.echo(f"Project {project_id} does not exist")


# ----------------------------------------------------------------------
# Work items
# ----------------------------------------------------------------------


def _with_runtime(ctx: click.Context, fn: Callable[[Any], Awaitable[T]]) -> T:
    from agentdispatch_mcp.runtime import open_runtime

    config = _config(ctx)
    project_id = _project(ctx)

    async def _go() -> T:
        runtime = await open_runtime(config, project_id=project_id)
        try:
            return await fn(runtime)
        finally:
            await runtime.close()

    return _run(_go)


@main.command()
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description.")
@click.option("--criterion", "-c", "criteria", multiple=True,
              help="Acceptance criterion (repeatable).")
@click.option("--priority", type=_PRIORITY_CHOICE, default="medium", show_default=True)
@click.option("--complexity", default="m", show_default=True)
@click.option("--created-by", default="cli", show_default=True)
@click.option("--ready", "mark_ready", is_flag=True, help="Mark ready immediately.")
@click.pass_context
def enqueue(
    ctx: click.Context,
    title: str,
    description: str,
    criteria: tuple[str, ...],
    priority: str,
    complexity: str,
    created_by: str,
    mark_ready: bool,
) -> None:
    """Add a work item to the project's inbox."""

    async def _enqueue(runtime):
        item = await runtime.store.enqueue(
            title=title,
            description=description,
            acceptance_criteria=list(criteria),
            priority=priority,
            complexity=complexity,
            created_by=created_by,
        )
        if mark_ready:
            item = await runtime.store.ready(item.id)
        return item

    item = _with_runtime(ctx, _enqueue)
    click.echo(f"{item.id}  [{item.status.value}]  {item.title}")


@main.command("list")
@click.option("--status", type=_STATUS_CHOICE, default=None)
@click.pass_context
def list_items(ctx: click.Context, status: Optional[str]) -> None:
    """List work items in insertion order."""

    async def _list(runtime):
        return await runtime.store.list(status)

    items = _with_runtime(ctx, _list)
    if not items:
        click.echo("No work items.")
        return
    for item in items:
        agent = f"  -> {item.assigned_agent_id}" if item.assigned_agent_id else ""
        click.echo(
            f"{item.id[:8]}  {item.status.value:<9}  {item.priority.value:<6}  "
            f"{item.title}{agent}"
        )


@main.command()
@click.argument("item_id")
@click.pass_context
def show(ctx: click.Context, item_id: str) -> None:
    """Show one work item (id or unique prefix) as JSON."""

    async def _show(runtime):
        return await runtime.store.require(item_id)

    _echo_json(_with_runtime(ctx, _show).model_dump(mode="json"))


@main.command()
@click.argument("item_id")
@click.pass_context
def ready(ctx: click.Context, item_id: str) -> None:
    """Mark an inbox or planning item ready."""

    async def _ready(runtime):
        return await runtime.store.ready(item_id)

    item = _with_runtime(ctx, _ready)
    click.echo(f"{item.id} is ready")


@main.command()
@click.argument("item_id")
@click.pass_context
def requeue(ctx: click.Context, item_id: str) -> None:
    """Return a blocked item to ready."""

    async def _requeue(runtime):
        return await runtime.store.requeue(item_id)

    item = _with_runtime(ctx, _requeue)
    click.echo(f"{item.id} requeued")


@main.command()
@click.argument("agent_id")
@click.pass_context
def claim(ctx: click.Context, agent_id: str) -> None:
    """Claim the highest-priority ready item for AGENT_ID."""

    async def _claim(runtime):
        return await runtime.store.claim(agent_id)

    item = _with_runtime(ctx, _claim)
    if item is None:
        click.echo("No ready work items.")
        return
    click.echo(f"{agent_id} claimed {item.id}  {item.title}")


@main.command()
@click.argument("item_id")
@click.option("--artifact", "-a", "artifacts", multiple=True,
              help="Artifact location (repeatable).")
@click.option("--report", default=None, help="Completion report text.")
@click.pass_context
def complete(
    ctx: click.Context, item_id: str, artifacts: tuple[str, ...], report: Optional[str]
) -> None:
    """Mark an in-flight or in-review item done."""

    async def _complete(runtime):
        return await runtime.store.complete(
            item_id,
            artifacts=[{"location": loc, "name": Path(loc).name} for loc in artifacts],
            report=report,
        )

    item = _with_runtime(ctx, _complete)
    click.echo(f"{item.id} done ({len(item.artifacts)} artifacts)")


@main.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Count work items by status."""

    async def _stats(runtime):
        return await runtime.store.stats()

    result = _with_runtime(ctx, _stats)
    click.echo(f"Project {_project(ctx)}: {result['total']} work items")
    for name, count in result["by_status"].items():
        click.echo(f"  {name:<9} {count}")


# ----------------------------------------------------------------------
# Dispatching
# ----------------------------------------------------------------------


@main.command()
@click.argument("item_id", required=False)
@click.option("--all", "dispatch_all", is_flag=True, help="Fill every free slot.")
@click.pass_context
def dispatch(ctx: click.Context, item_id: Optional[str], dispatch_all: bool) -> None:
    """Start agent sessions for ready work."""

    async def _dispatch(runtime):
        if dispatch_all:
            return await runtime.engine.dispatch_ready()
        if item_id:
            session = await runtime.engine.dispatch_item(item_id)
        else:
            session = await runtime.engine.poll()
        return [session] if session else []

    sessions = _with_runtime(ctx, _dispatch)
    if not sessions:
        click.echo("Nothing dispatched.")
        return
    for session in sessions:
        click.echo(f"Session {session.id} [{session.status.value}] -> {session.task_path}")


@main.command()
@click.pass_context
def check(ctx: click.Context) -> None:
    """Probe running sessions once and settle finished ones."""

    async def _check(runtime):
        return await runtime.engine.check_completions()

    results = _with_runtime(ctx, _check)
    if not results:
        click.echo("No running sessions.")
        return
    for result in results:
        click.echo(f"{result.session_id}  {result.work_item_id}  {result.status.value}")


@main.command()
@click.option("--once", is_flag=True, help="Dispatch and check a single time, then exit.")
@click.pass_context
def run(ctx: click.Context, once: bool) -> None:
    """Run the dispatcher loops in the foreground."""

    async def _run_engine(runtime):
        engine = runtime.engine
        if once:
            await engine.dispatch_ready()
            await engine.check_completions()
            return engine.status()
        await engine.start()
        click.echo(f"Dispatching project {engine.project_id} (Ctrl-C to stop)")
        await asyncio.Event().wait()

    try:
        status = _with_runtime(ctx, _run_engine)
    except KeyboardInterrupt:
        click.echo("Dispatcher stopped.")
        return
    _echo_json(status)


@main.command()
@click.option("--count", "-n", default=20, show_default=True, type=int)
@click.option("--type", "event_type", default=None, help="Exact event type to show.")
@click.pass_context
def events(ctx: click.Context, count: int, event_type: Optional[str]) -> None:
    """Show recent events from the durable log."""
    from agentdispatch_mcp.services.event_bus import EventBus

    config = _config(ctx)

    async def _events():
        bus = EventBus(log_path=config.event_log_path, max_history=config.event_history_size)
        await bus.load_history(limit=config.event_history_size)
        return bus.recent(count, event_type)

    for event in _run(_events):
        click.echo(f"{event.timestamp.isoformat()}  {event.type:<22}  {json.dumps(event.data)}")


# ----------------------------------------------------------------------
# Server
# ----------------------------------------------------------------------


@main.command()
def start() -> None:
    """Start the AgentDispatch MCP server."""
    from agentdispatch_mcp.server import mcp

    click.echo("Starting AgentDispatch MCP Server...")
    mcp.run()


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"agentdispatch-mcp {__version__}")


if __name__ == "__main__":
    main()
