"""
Abstract Context Store — Interface for all storage backends.

Implementations:
  - SqlContextStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryContextStore (dict-based, single-process, no persistence)
  - FileContextStore     (JSON files on disk, single-process, durable)

Every backend guarantees:
  - at most one non-terminal context per conversation
    (create_context raises ConflictError(CONCURRENT_CONTEXT) otherwise)
  - save() writes the whole context or nothing, and refuses a write based
    on an outdated revision with ConflictError(STALE_WRITE)
  - returned models are copies; mutating them has no effect until save()
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from models.schemas import (
    Chatbot, ClosedBy, ContextStatus, Conversation, ConversationContext,
    NodeOutput, WhatsAppFlow,
)


def output_matches(output: NodeOutput, match: dict[str, Any]) -> bool:
    """
    Containment test for node outputs: every key in `match` must equal the
    output attribute, except `data` where a dict is matched as a subset.
    """
    dumped = output.model_dump(mode="json")
    for key, expected in match.items():
        actual = dumped.get(key)
        if key == "data" and isinstance(expected, dict):
            if not isinstance(actual, dict):
                return False
            if any(actual.get(k) != v for k, v in expected.items()):
                return False
        elif actual != expected:
            return False
    return True


class BaseContextStore(ABC):
    """Interface that all context store backends must implement."""

    # ── Chatbots ──────────────────────────────────────────────

    @abstractmethod
    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        ...

    @abstractmethod
    async def find_active_chatbot(self) -> Optional[Chatbot]:
        """The most recently updated chatbot with is_active set."""
        ...

    @abstractmethod
    async def list_chatbots(self) -> list[Chatbot]:
        ...

    @abstractmethod
    async def save_chatbot(self, chatbot: Chatbot) -> Chatbot:
        ...

    # ── WhatsApp Flows ────────────────────────────────────────

    @abstractmethod
    async def get_whatsapp_flow(self, flow_id: str) -> Optional[WhatsAppFlow]:
        ...

    @abstractmethod
    async def save_whatsapp_flow(self, flow: WhatsAppFlow) -> WhatsAppFlow:
        ...

    # ── Conversations ─────────────────────────────────────────

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def find_conversation_by_phone(self, phone_number: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def save_conversation(self, conversation: Conversation) -> Conversation:
        ...

    # ── Contexts ──────────────────────────────────────────────

    @abstractmethod
    async def get_context(self, context_id: str) -> Optional[ConversationContext]:
        ...

    @abstractmethod
    async def load_active(self, conversation_id: str) -> Optional[ConversationContext]:
        ...

    @abstractmethod
    async def latest_context(self, conversation_id: str) -> Optional[ConversationContext]:
        """Most recently created context for the conversation, live or terminal."""
        ...

    @abstractmethod
    async def create_context(
        self, conversation_id: str, chatbot_id: str, start_node_id: str,
        **fields: Any,
    ) -> ConversationContext:
        ...

    @abstractmethod
    async def save(self, context: ConversationContext) -> ConversationContext:
        ...

    @abstractmethod
    async def list_stale(self, now: datetime, limit: int = 100) -> list[ConversationContext]:
        """Non-terminal contexts whose expires_at is before `now`."""
        ...

    @abstractmethod
    async def expire_context(self, context_id: str, now: datetime) -> bool:
        """Expire one context if it is still live and stale. Returns whether it changed."""
        ...

    @abstractmethod
    async def list_contexts(
        self, status: Optional[ContextStatus] = None, chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None, include_test_sessions: bool = False,
        only_test_sessions: bool = False, limit: int = 50, offset: int = 0,
    ) -> list[ConversationContext]:
        """Newest first."""
        ...

    @abstractmethod
    async def list_active(self) -> list[ConversationContext]:
        ...

    @abstractmethod
    async def find_by_node_output(self, node_id: str, **match: Any) -> list[ConversationContext]:
        """Contexts where `node_id` produced an output containing `match`."""
        ...

    # ── Shared helpers ────────────────────────────────────────

    async def mark_completed(
        self, context: ConversationContext, reason: str,
        closed_by: ClosedBy = ClosedBy.ENGINE, now: Optional[datetime] = None,
    ) -> ConversationContext:
        context.close(ContextStatus.COMPLETED, reason, closed_by, now=now)
        return await self.save(context)

    async def mark_failed(
        self, context: ConversationContext, reason: str,
        closed_by: ClosedBy = ClosedBy.ENGINE, now: Optional[datetime] = None,
    ) -> ConversationContext:
        context.close(ContextStatus.FAILED, reason, closed_by, now=now)
        return await self.save(context)

    async def expire_stale(self, now: datetime, limit: int = 1000) -> int:
        """Batch sweep of stale contexts. Returns how many were expired."""
        count = 0
        for context in await self.list_stale(now, limit=limit):
            if await self.expire_context(context.id, now):
                count += 1
        return count

    async def close(self) -> None:
        """Flush pending writes and release backend resources. No-op by default."""
