"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - "One live context per conversation" is enforced with a unique
    `active_key` column that holds the conversation id while the context is
    live and NULL once it is terminal (NULLs never collide), instead of a
    PostgreSQL partial unique index.
  - Node outputs are mirrored into `context_node_outputs` so contexts can be
    found by the node that produced an output without JSON containment SQL.
  - String primary keys (uuid) — no database-specific sequences.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, String, Integer, DateTime, Text, ForeignKey,
    Index, JSON,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Chatbots (flow definitions)
# ──────────────────────────────────────────────────────────────

class ChatbotRow(Base):
    __tablename__ = "chatbots"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    nodes: Mapped[Any] = mapped_column(JSON, default=list)
    edges: Mapped[Any] = mapped_column(JSON, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(32), default="draft")
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    version: Mapped[int] = mapped_column(Integer, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_chatbots_active", "is_active"),
    )


# ──────────────────────────────────────────────────────────────
#  WhatsApp Flows (interactive forms)
# ──────────────────────────────────────────────────────────────

class WhatsAppFlowRow(Base):
    __tablename__ = "whatsapp_flows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    whatsapp_flow_id: Mapped[Optional[str]] = mapped_column(String(255), unique=True, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    status: Mapped[str] = mapped_column(String(32), default="DRAFT")
    categories: Mapped[Any] = mapped_column(JSON, default=list)
    flow_json: Mapped[Any] = mapped_column(JSON, default=dict)
    endpoint_uri: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    metadata_: Mapped[Any] = mapped_column("metadata", JSON, default=dict)
    data_source: Mapped[Any] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversations (window tracking)
# ──────────────────────────────────────────────────────────────

class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    phone_number: Mapped[str] = mapped_column(String(32), default="")
    contact_name: Mapped[str] = mapped_column(String(255), default="")
    last_customer_message_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_window_open: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index("ix_conversations_phone", "phone_number"),
    )


# ──────────────────────────────────────────────────────────────
#  Conversation Contexts (execution state)
# ──────────────────────────────────────────────────────────────

class ContextRow(Base):
    __tablename__ = "conversation_contexts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    conversation_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    chatbot_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chatbots.id", ondelete="CASCADE"), nullable=False)
    chatbot_version: Mapped[int] = mapped_column(Integer, default=1)
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)

    variables: Mapped[Any] = mapped_column(JSON, default=dict)
    node_history: Mapped[Any] = mapped_column(JSON, default=list)
    node_outputs: Mapped[Any] = mapped_column(JSON, default=dict)
    processed_event_ids: Mapped[Any] = mapped_column(JSON, default=list)

    status: Mapped[str] = mapped_column(String(32), default="running")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)    # legacy mirror of status
    active_key: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completion_reason: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    closed_by: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    is_test_session: Mapped[bool] = mapped_column(Boolean, default=False)
    test_metadata: Mapped[Any] = mapped_column(JSON, nullable=True)
    paused: Mapped[bool] = mapped_column(Boolean, default=False)
    revision: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_contexts_conversation", "conversation_id", "created_at"),
        Index("ix_contexts_status_expiry", "is_active", "expires_at"),
        Index("ix_contexts_chatbot", "chatbot_id"),
        Index("ix_contexts_test", "is_test_session"),
    )


class NodeOutputIndexRow(Base):
    __tablename__ = "context_node_outputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    context_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("conversation_contexts.id", ondelete="CASCADE"), nullable=False)
    node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    node_type: Mapped[str] = mapped_column(String(32), default="")
    success: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_node_outputs_node", "node_id", "success"),
        Index("ix_node_outputs_context", "context_id"),
    )
