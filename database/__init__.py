"""
Database layer: Multi-backend persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from config.settings import DatabaseConfig
  from database import create_store, seed_all
  store = create_store(DatabaseConfig(store_backend="memory"))
  await seed_all(store)
"""
from database.models import (
    Base, TemplateRow, NotificationRow, PreferenceRow,
    ConversationRow, MessageRow, ArticleRow, SuggestionRow,
)
from database.session import (
    build_engine, build_session_factory, create_tables,
    get_engine, init_db, close_db, session_scope,
)
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_factory import create_store, get_store, reset_store
from database.seed import seed_all

__all__ = [
    # ORM models
    "Base", "TemplateRow", "NotificationRow", "PreferenceRow",
    "ConversationRow", "MessageRow", "ArticleRow", "SuggestionRow",
    # Session management
    "build_engine", "build_session_factory", "create_tables",
    "get_engine", "init_db", "close_db", "session_scope",
    # Store interface + backends
    "BaseStore", "SqlStore", "InMemoryStore",
    # Factory
    "create_store", "get_store", "reset_store",
    # Seed data
    "seed_all",
]
