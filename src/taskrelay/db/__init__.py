from __future__ import annotations

from taskrelay.db.base import (
    DocumentError,
    ItemExistsError,
    ItemNotFoundError,
    MoveResult,
    StateStore,
    StoreError,
    StoreInconsistencyError,
)
from taskrelay.db.database import SqliteStore
from taskrelay.db.files import FileStore
from taskrelay.db.memory import MemoryStore
from taskrelay.utils.config import Config

__all__ = [
    "DocumentError",
    "FileStore",
    "ItemExistsError",
    "ItemNotFoundError",
    "MemoryStore",
    "MoveResult",
    "SqliteStore",
    "StateStore",
    "StoreError",
    "StoreInconsistencyError",
    "create_store",
]


def create_store(config: Config) -> StateStore:
    """Instantiate the store adapter named by ``config.store``."""
    kind = config.store.lower()
    if kind == "sqlite":
        return SqliteStore(config.db_path)
    if kind == "files":
        return FileStore(config.data_dir)
    if kind == "memory":
        return MemoryStore()
    raise ValueError(f"unknown store type {config.store!r} (expected sqlite, files or memory)")
