from __future__ import annotations

import asyncio
import logging
from importlib import resources
from pathlib import Path

import aiosqlite
from pydantic import ValidationError

from agentdispatch_mcp.db.backend import SCHEMA_VERSION, StorageBackend
from agentdispatch_mcp.errors import StorageIOError
from agentdispatch_mcp.models.work_item import WorkItem

logger = logging.getLogger(__name__)


class SqliteBackend(StorageBackend):
    """Async SQLite queue storage for one project.

    Holds a single persistent connection with WAL mode. Items are stored as
    JSON documents keyed by id, with an explicit ``position`` column that
    preserves insertion order for claim tie-breaking.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._conn: aiosqlite.Connection | None = None
        # Serialises use of the shared connection so a load never sees a half-written save.
        self._io = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        if self._conn is not None:
            return
        schema_sql = (
            resources.files("agentdispatch_mcp.db").joinpath("schema.sql").read_text()
        )
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.db_path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.executescript(schema_sql)
            await self._conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('version', ?)",
                (str(SCHEMA_VERSION),),
            )
            await self._conn.commit()
        except (OSError, aiosqlite.Error) as exc:
            raise StorageIOError(f"Cannot open queue database {self.db_path}: {exc}") from exc

        logger.info("Queue database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Backend not initialized; call initialize() first"
        return self._conn

    # ------------------------------------------------------------------
    # Collection operations
    # ------------------------------------------------------------------

    async def load(self) -> list[WorkItem]:
        try:
            async with self._io:
                cursor = await self.conn.execute(
                    "SELECT data FROM work_items ORDER BY position ASC"
                )
                rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageIOError(f"Cannot read queue database {self.db_path}: {exc}") from exc

        try:
            return [WorkItem.model_validate_json(row["data"]) for row in rows]
        except ValidationError as exc:
            raise StorageIOError(f"Corrupt row in {self.db_path}: {exc}") from exc

    async def save(self, items: list[WorkItem]) -> None:
        rows = [
            (position, item.id, item.status.value, item.model_dump_json())
            for position, item in enumerate(items)
        ]
        async with self._io:
            try:
                await self.conn.execute("DELETE FROM work_items")
                await self.conn.executemany(
                    "INSERT INTO work_items (position, id, status, data) VALUES (?, ?, ?, ?)",
                    rows,
                )
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                raise StorageIOError(
                    f"Cannot write queue database {self.db_path}: {exc}"
                ) from exc

    async def schema_version(self) -> int:
        cursor = await self.conn.execute("SELECT value FROM meta WHERE key = 'version'")
        row = await cursor.fetchone()
        return int(row["value"]) if row else SCHEMA_VERSION
