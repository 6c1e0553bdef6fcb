#!/usr/bin/env python3
"""Demo: three work items, two agent slots, one agent that gets stuck.

Runs the dispatcher against a throwaway project with the mock launcher so the
whole enqueue → dispatch → completion → review cycle is visible without a
real coding agent installed.
"""

import asyncio
import shutil
import sys
from pathlib import Path

# Add src to path so we can import without installing
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from agentdispatch_mcp.runtime import open_runtime
from agentdispatch_mcp.services.launcher import MockLauncher
from agentdispatch_mcp.utils.config import Config

DATA_ROOT = Path(__file__).parent.parent / "data" / "demo"


async def main():
    shutil.rmtree(DATA_ROOT, ignore_errors=True)
    config = Config(
        data_root=DATA_ROOT,
        event_log_path=DATA_ROOT / "events.jsonl",
        default_project="demo",
        max_concurrent=2,
    )
    runtime = await open_runtime(config, launcher=MockLauncher())
    store, engine = runtime.store, runtime.engine

    print("=" * 60)
    print("AgentDispatch Demo")
    print("=" * 60)

    titles = [
        ("Fix login redirect", "critical"),
        ("Add OAuth2 support", "high"),
        ("Update README", "low"),
    ]
    for title, priority in titles:
        item = await store.enqueue(title=title, priority=priority)
        await store.ready(item.id)
        print(f"[queue] {item.id[:8]} {priority:<8} {title}")

    print(f"\n[dispatcher] {engine.available_slots} slots free")
    for session in await engine.dispatch_ready():
        print(f"[dispatcher] Session {session.id} -> {session.task_path}")

    print(f"[dispatcher] {len(engine.backlog)} item(s) parked in the backlog")

    # The mock agents finished instantly; settling them frees a slot for the backlog.
    for result in await engine.check_completions():
        print(f"[check] {result.session_id} {result.status.value}")
    print(f"[dispatcher] {len(engine.running)} session(s) running after drain")
    for result in await engine.check_completions():
        print(f"[check] {result.session_id} {result.status.value}")

    print("\n--- Queue ---")
    for item in await store.list():
        print(f"  {item.id[:8]} {item.status.value:<9} {item.title}")

    stats = await store.stats()
    print(f"\n{stats['total']} items: {stats['by_status']}")
    await runtime.close()


if __name__ == "__main__":
    asyncio.run(main())
