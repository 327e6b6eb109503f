"""
Store Factory — Build the context store named by the database settings.

Configuration in settings.yaml:
    database:
      url: "sqlite:///./flowpilot.db"   # used by the sql backend
      store_backend: "memory"           # "sql" | "memory" | "file"
      store_file_dir: "./data"          # used by the file backend

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(settings.database)        # DatabaseConfig
    store = create_store({"store_backend": "file"}) # overrides on the defaults
    store = get_store()                              # process-wide instance
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional, Union

from config.settings import DatabaseConfig, merge_section
from database.store_base import BaseContextStore

logger = structlog.get_logger()

_instance: Optional[BaseContextStore] = None


def _sql_store(config: DatabaseConfig) -> BaseContextStore:
    from database.store import SqlContextStore
    return SqlContextStore(config.url, echo=config.echo)


def _file_store(config: DatabaseConfig) -> BaseContextStore:
    from database.store_file import FileContextStore
    return FileContextStore(data_dir=config.store_file_dir)


def _memory_store(config: DatabaseConfig) -> BaseContextStore:
    from database.store_memory import InMemoryContextStore
    return InMemoryContextStore()


BACKENDS: dict[str, Callable[[DatabaseConfig], BaseContextStore]] = {
    "sql": _sql_store,
    "file": _file_store,
    "memory": _memory_store,
}


def create_store(config: Union[DatabaseConfig, dict[str, Any], None] = None) -> BaseContextStore:
    """
    Create the process-wide context store, or return the one already built.

    A plain dict is read as overrides on the DatabaseConfig defaults, the
    same way the `database` section of settings.yaml is. An unknown
    `store_backend` raises ValueError.
    """
    global _instance
    if _instance is not None:
        return _instance

    if not isinstance(config, DatabaseConfig):
        config = merge_section(DatabaseConfig, config, DatabaseConfig())

    build = BACKENDS.get(config.store_backend)
    if build is None:
        raise ValueError(
            f"unknown store_backend {config.store_backend!r}; expected one of {sorted(BACKENDS)}")

    _instance = build(config)
    logger.info("store_created", backend=config.store_backend,
                store=type(_instance).__name__)
    return _instance


def get_store() -> BaseContextStore:
    """Return the process-wide store, creating a memory store if none exists."""
    return _instance if _instance is not None else create_store()


def reset_store() -> None:
    """Forget the process-wide store (for testing)."""
    global _instance
    _instance = None
