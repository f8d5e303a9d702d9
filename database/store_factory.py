"""
Store Factory: pick the store backend named by `database.store_backend`.

    database:
      url: "sqlite:///./lms_engage.db"   # postgresql:// | mysql:// | sqlite://
      store_backend: "memory"            # "sql" uses the url above

Usage:
    store = create_store(settings.database)
    store = get_store()
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import DatabaseConfig
from database.store_base import BaseStore

logger = structlog.get_logger()

BACKENDS = ("memory", "sql")

_instance: Optional[BaseStore] = None


def create_store(config: Optional[DatabaseConfig] = None) -> BaseStore:
    """Create the process-wide store once; later calls return the same instance."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or DatabaseConfig()
    backend = config.store_backend
    if backend not in BACKENDS:
        raise ValueError(f"Unknown store backend {backend!r}; expected one of {', '.join(BACKENDS)}")

    if backend == "sql":
        from database.store import SqlStore
        _instance = SqlStore()
    else:
        from database.store_memory import InMemoryStore
        _instance = InMemoryStore()

    logger.info("store_created", backend=backend)
    return _instance


def get_store() -> BaseStore:
    global _instance
    if _instance is None:
        _instance = create_store()
    return _instance


def reset_store() -> None:
    """Forget the singleton (for testing)."""
    global _instance
    _instance = None
