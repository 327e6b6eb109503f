"""
InMemoryContextStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlContextStore
  - Records are kept as JSON-ready dicts, so every read returns a fresh
    model and nothing leaks into the store before save()
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from core.errors import ConflictError, ConflictErrorKind
from database.store_base import BaseContextStore, output_matches
from models.schemas import (
    Chatbot, ClosedBy, CompletionReason, ContextStatus, Conversation,
    ConversationContext, WhatsAppFlow, TERMINAL_STATUSES,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryContextStore(BaseContextStore):
    """
    Full-featured in-memory store with the same interface as SqlContextStore.
    """

    def __init__(self):
        self._chatbots: dict[str, dict] = {}            # id → chatbot dict
        self._whatsapp_flows: dict[str, dict] = {}      # id → flow dict
        self._conversations: dict[str, dict] = {}       # id → conversation dict
        self._contexts: dict[str, dict] = {}            # id → context dict

        # Indexes
        self._phone_index: dict[str, str] = {}          # phone → conversation_id
        self._active_index: dict[str, str] = {}         # conversation_id → live context_id
        self._latest_index: dict[str, str] = {}         # conversation_id → newest context_id
        logger.info("inmemory_store_initialized")

    # ── Chatbots ──────────────────────────────────────────

    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        data = self._chatbots.get(chatbot_id)
        return Chatbot.model_validate(data) if data else None

    async def find_active_chatbot(self) -> Optional[Chatbot]:
        active = [c for c in self._chatbots.values() if c.get("is_active")]
        if not active:
            return None
        active.sort(key=lambda c: c.get("updated_at", ""), reverse=True)
        return Chatbot.model_validate(active[0])

    async def list_chatbots(self) -> list[Chatbot]:
        return [Chatbot.model_validate(c) for c in self._chatbots.values()]

    async def save_chatbot(self, chatbot: Chatbot) -> Chatbot:
        existing = self._chatbots.get(chatbot.id)
        if existing:
            chatbot.version = max(chatbot.version, existing.get("version", 1) + 1)
        chatbot.updated_at = _utcnow()
        self._chatbots[chatbot.id] = chatbot.model_dump(mode="json", by_alias=True)
        return chatbot

    # ── WhatsApp Flows ────────────────────────────────────

    async def get_whatsapp_flow(self, flow_id: str) -> Optional[WhatsAppFlow]:
        data = self._whatsapp_flows.get(flow_id)
        if data is None:
            # Node configs may reference the Graph API id instead of ours
            data = next(
                (f for f in self._whatsapp_flows.values() if f.get("whatsapp_flow_id") == flow_id),
                None,
            )
        return WhatsAppFlow.model_validate(data) if data else None

    async def save_whatsapp_flow(self, flow: WhatsAppFlow) -> WhatsAppFlow:
        flow.updated_at = _utcnow()
        self._whatsapp_flows[flow.id] = flow.model_dump(mode="json")
        return flow

    # ── Conversations ─────────────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        data = self._conversations.get(conversation_id)
        return Conversation.model_validate(data) if data else None

    async def find_conversation_by_phone(self, phone_number: str) -> Optional[Conversation]:
        cid = self._phone_index.get(phone_number)
        if not cid:
            return None
        return await self.get_conversation(cid)

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        conversation.updated_at = _utcnow()
        self._conversations[conversation.id] = conversation.model_dump(mode="json")
        if conversation.phone_number:
            self._phone_index[conversation.phone_number] = conversation.id
        return conversation

    # ── Contexts ──────────────────────────────────────────

    async def get_context(self, context_id: str) -> Optional[ConversationContext]:
        data = self._contexts.get(context_id)
        return ConversationContext.model_validate(data) if data else None

    async def load_active(self, conversation_id: str) -> Optional[ConversationContext]:
        ctx_id = self._active_index.get(conversation_id)
        if not ctx_id:
            return None
        return await self.get_context(ctx_id)

    async def latest_context(self, conversation_id: str) -> Optional[ConversationContext]:
        ctx_id = self._latest_index.get(conversation_id)
        if not ctx_id:
            return None
        return await self.get_context(ctx_id)

    async def create_context(
        self, conversation_id: str, chatbot_id: str, start_node_id: str,
        **fields: Any,
    ) -> ConversationContext:
        if conversation_id in self._active_index:
            raise ConflictError(
                ConflictErrorKind.CONCURRENT_CONTEXT,
                conversation_id=conversation_id,
                context_id=self._active_index[conversation_id],
            )
        context = ConversationContext(
            conversation_id=conversation_id,
            chatbot_id=chatbot_id,
            current_node_id=start_node_id,
            **fields,
        )
        self._contexts[context.id] = context.model_dump(mode="json")
        self._active_index[conversation_id] = context.id
        self._latest_index[conversation_id] = context.id
        logger.info("context_created", context_id=context.id,
                    conversation_id=conversation_id, chatbot_id=chatbot_id)
        return context

    async def save(self, context: ConversationContext) -> ConversationContext:
        stored = self._contexts.get(context.id)
        if stored is None or stored.get("revision", 0) != context.revision:
            raise ConflictError(
                ConflictErrorKind.STALE_WRITE,
                conversation_id=context.conversation_id, context_id=context.id,
            )
        context.revision += 1
        # Single dict assignment: the whole record is replaced at once
        self._contexts[context.id] = context.model_dump(mode="json")
        self._reindex(context.conversation_id, context.id, context.status)
        return context

    def _reindex(self, conversation_id: str, context_id: str, status: ContextStatus):
        if status in TERMINAL_STATUSES:
            if self._active_index.get(conversation_id) == context_id:
                del self._active_index[conversation_id]
        else:
            self._active_index[conversation_id] = context_id

    async def list_stale(self, now: datetime, limit: int = 100) -> list[ConversationContext]:
        stale = []
        for ctx_id in list(self._active_index.values()):
            context = await self.get_context(ctx_id)
            if context and context.is_expired(now):
                stale.append(context)
                if len(stale) >= limit:
                    break
        return stale

    async def expire_context(self, context_id: str, now: datetime) -> bool:
        context = await self.get_context(context_id)
        if context is None or not context.is_expired(now):
            return False
        context.close(ContextStatus.EXPIRED, CompletionReason.SESSION_TIMEOUT.value,
                      ClosedBy.SWEEPER, now=now)
        await self.save(context)
        return True

    async def list_contexts(
        self, status: Optional[ContextStatus] = None, chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None, include_test_sessions: bool = False,
        only_test_sessions: bool = False, limit: int = 50, offset: int = 0,
    ) -> list[ConversationContext]:
        rows = list(self._contexts.values())
        if status is not None:
            rows = [r for r in rows if r["status"] == ContextStatus(status).value]
        if chatbot_id:
            rows = [r for r in rows if r["chatbot_id"] == chatbot_id]
        if conversation_id:
            rows = [r for r in rows if r["conversation_id"] == conversation_id]
        if only_test_sessions:
            rows = [r for r in rows if r.get("is_test_session")]
        elif not include_test_sessions:
            rows = [r for r in rows if not r.get("is_test_session")]
        rows.sort(key=lambda r: r.get("created_at", ""), reverse=True)
        return [ConversationContext.model_validate(r) for r in rows[offset:offset + limit]]

    async def list_active(self) -> list[ConversationContext]:
        contexts = [await self.get_context(cid) for cid in self._active_index.values()]
        return [c for c in contexts if c is not None]

    async def find_by_node_output(self, node_id: str, **match: Any) -> list[ConversationContext]:
        found = []
        for data in self._contexts.values():
            if node_id not in (data.get("node_outputs") or {}):
                continue
            context = ConversationContext.model_validate(data)
            if output_matches(context.node_outputs[node_id], match):
                found.append(context)
        return found
