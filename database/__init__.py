"""
Database layer — Multi-backend persistence for the follow-up core.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="memory"))
  ticket = await store.get_ticket("t1")
"""
from database.models import (
    Base, FollowUpConfigRow, FollowUpStepRow, TicketRow,
    ScheduledMessageRow, WebhookEventRow,
)
from database.session import (
    create_engine_for, create_session_factory, session_scope, init_db, close_db,
)
from database.store_base import BaseFollowUpStore
from database.store import SqlFollowUpStore
from database.store_memory import InMemoryFollowUpStore
from database.store_factory import create_store

__all__ = [
    # ORM models
    "Base", "FollowUpConfigRow", "FollowUpStepRow", "TicketRow",
    "ScheduledMessageRow", "WebhookEventRow",
    # Session management
    "create_engine_for", "create_session_factory", "session_scope", "init_db", "close_db",
    # Store interface
    "BaseFollowUpStore",
    # Store backends
    "SqlFollowUpStore", "InMemoryFollowUpStore",
    # Factory
    "create_store",
]
