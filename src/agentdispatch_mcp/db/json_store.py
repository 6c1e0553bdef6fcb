from __future__ import annotations

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from agentdispatch_mcp.db.backend import SCHEMA_VERSION, StorageBackend
from agentdispatch_mcp.errors import StorageIOError
from agentdispatch_mcp.models.work_item import WorkItem

logger = logging.getLogger(__name__)


class JsonFileBackend(StorageBackend):
    """Queue stored as a single ``{"items": [...], "version": 1}`` JSON document.

    Writes go to a sibling temp file and are swapped in with ``os.replace`` so a
    crash mid-write never leaves a truncated queue behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self._initialize_sync)
        except OSError as exc:
            raise StorageIOError(f"Cannot initialize queue file {self.path}: {exc}") from exc

    async def load(self) -> list[WorkItem]:
        try:
            raw = await asyncio.to_thread(self._read_sync)
        except OSError as exc:
            raise StorageIOError(f"Cannot read queue file {self.path}: {exc}") from exc

        if raw is None:
            return []
        try:
            document: dict[str, Any] = json.loads(raw)
            return [WorkItem.model_validate(item) for item in document.get("items", [])]
        except (json.JSONDecodeError, ValidationError, AttributeError) as exc:
            raise StorageIOError(f"Corrupt queue file {self.path}: {exc}") from exc

    async def save(self, items: list[WorkItem]) -> None:
        document = {
            "items": [item.model_dump(mode="json") for item in items],
            "version": SCHEMA_VERSION,
        }
        payload = json.dumps(document, indent=2)
        try:
            await asyncio.to_thread(self._write_sync, payload)
        except OSError as exc:
            raise StorageIOError(f"Cannot write queue file {self.path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Blocking helpers (run in a worker thread)
    # ------------------------------------------------------------------

    def _initialize_sync(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self._write_sync(json.dumps({"items": [], "version": SCHEMA_VERSION}, indent=2))
            logger.debug("Initialized empty queue at %s", self.path)

    def _read_sync(self) -> str | None:
        try:
            return self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    def _write_sync(self, payload: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        os.replace(tmp_path, self.path)
