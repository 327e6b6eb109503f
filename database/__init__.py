"""
Database layer — Multi-backend persistence for chatbots and conversation contexts.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  context = await store.load_active("conv-1")
"""
from database.models import (
    Base, ChatbotRow, WhatsAppFlowRow, ConversationRow, ContextRow, NodeOutputIndexRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseContextStore
from database.store import SqlContextStore
from database.store_memory import InMemoryContextStore
from database.store_file import FileContextStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ChatbotRow", "WhatsAppFlowRow", "ConversationRow",
    "ContextRow", "NodeOutputIndexRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseContextStore",
    # Store backends
    "SqlContextStore", "InMemoryContextStore", "FileContextStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
