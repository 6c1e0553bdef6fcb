from agentdispatch_mcp.db.backend import SCHEMA_VERSION, StorageBackend, create_backend
from agentdispatch_mcp.db.json_store import JsonFileBackend
from agentdispatch_mcp.db.sqlite_store import SqliteBackend

__all__ = [
    "SCHEMA_VERSION",
    "JsonFileBackend",
    "SqliteBackend",
    "StorageBackend",
    "create_backend",
]
