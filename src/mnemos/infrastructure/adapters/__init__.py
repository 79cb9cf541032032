# Infrastructure Adapters Package
from .memory_store import InMemoryStore
from .sqlite_store import SqliteStore

__all__ = ["InMemoryStore", "SqliteStore"]
