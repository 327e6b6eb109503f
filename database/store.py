"""
SqlContextStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Portability notes:
  - One live context per conversation relies on the unique `active_key`
    column, so a concurrent create surfaces as an IntegrityError.
  - save() is a conditional UPDATE on (id, revision): a writer holding an
    outdated copy updates zero rows and gets ConflictError(STALE_WRITE).
  - Node-output containment queries narrow by the `context_node_outputs`
    index table, then match the JSON payload Python-side.
  - SQLite hands back naive datetimes; every value read is treated as UTC.
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update, delete, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from core.errors import ConflictError, ConflictErrorKind, StoreError
from database.models import (
    ChatbotRow, WhatsAppFlowRow, ConversationRow, ContextRow, NodeOutputIndexRow,
)
from database.session import configure_engine, get_session
from database.store_base import BaseContextStore, output_matches
from models.schemas import (
    Chatbot, ClosedBy, CompletionReason, ContextStatus, Conversation,
    ConversationContext, DataSourceRef, NodeOutput, TestMetadata, WhatsAppFlow,
    TERMINAL_STATUSES,
)

logger = structlog.get_logger()


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlContextStore(BaseContextStore):
    """
    Persistent context store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, db_url: Optional[str] = None, echo: bool = False):
        if db_url:
            configure_engine(db_url, echo=echo)

    # ── Chatbot operations ─────────────────────────────────

    async def get_chatbot(self, chatbot_id: str) -> Optional[Chatbot]:
        async with get_session() as db:
            row = await db.get(ChatbotRow, chatbot_id)
            return self._row_to_chatbot(row) if row else None

    async def find_active_chatbot(self) -> Optional[Chatbot]:
        async with get_session() as db:
            stmt = (
                select(ChatbotRow)
                .where(ChatbotRow.is_active.is_(True))
                .order_by(ChatbotRow.updated_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_chatbot(row) if row else None

    async def list_chatbots(self) -> list[Chatbot]:
        async with get_session() as db:
            result = await db.execute(select(ChatbotRow).order_by(ChatbotRow.created_at))
            return [self._row_to_chatbot(r) for r in result.scalars()]

    async def save_chatbot(self, chatbot: Chatbot) -> Chatbot:
        dumped = chatbot.model_dump(mode="json", by_alias=True)
        async with get_session() as db:
            row = await db.get(ChatbotRow, chatbot.id)
            chatbot.updated_at = _utcnow()
            if row:
                chatbot.version = max(chatbot.version, row.version + 1)
            else:
                row = ChatbotRow(id=chatbot.id, created_at=chatbot.created_at)
                db.add(row)
            row.name = chatbot.name
            row.description = chatbot.description
            row.nodes = dumped["nodes"]
            row.edges = dumped["edges"]
            row.is_active = chatbot.is_active
            row.status = chatbot.status.value
            row.metadata_ = chatbot.metadata
            row.version = chatbot.version
            row.updated_at = chatbot.updated_at
        return chatbot

    # ── WhatsApp Flow operations ───────────────────────────

    async def get_whatsapp_flow(self, flow_id: str) -> Optional[WhatsAppFlow]:
        async with get_session() as db:
            row = await db.get(WhatsAppFlowRow, flow_id)
            if row is None:
                stmt = select(WhatsAppFlowRow).where(WhatsAppFlowRow.whatsapp_flow_id == flow_id)
                row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_flow(row) if row else None

    async def save_whatsapp_flow(self, flow: WhatsAppFlow) -> WhatsAppFlow:
        async with get_session() as db:
            row = await db.get(WhatsAppFlowRow, flow.id)
            flow.updated_at = _utcnow()
            if row is None:
                row = WhatsAppFlowRow(id=flow.id, created_at=flow.created_at)
                db.add(row)
            row.whatsapp_flow_id = flow.whatsapp_flow_id
            row.name = flow.name
            row.description = flow.description
            row.status = flow.status
            row.categories = list(flow.categories)
            row.flow_json = flow.flow_json
            row.endpoint_uri = flow.endpoint_uri
            row.is_active = flow.is_active
            row.metadata_ = flow.metadata
            row.data_source = flow.data_source.model_dump() if flow.data_source else None
            row.updated_at = flow.updated_at
        return flow

    # ── Conversation operations ────────────────────────────

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation_id)
            return self._row_to_conversation(row) if row else None

    async def find_conversation_by_phone(self, phone_number: str) -> Optional[Conversation]:
        async with get_session() as db:
            stmt = (
                select(ConversationRow)
                .where(ConversationRow.phone_number == phone_number)
                .order_by(ConversationRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_conversation(row) if row else None

    async def save_conversation(self, conversation: Conversation) -> Conversation:
        async with get_session() as db:
            row = await db.get(ConversationRow, conversation.id)
            conversation.updated_at = _utcnow()
            if row is None:
                row = ConversationRow(id=conversation.id, created_at=conversation.created_at)
                db.add(row)
            row.phone_number = conversation.phone_number
            row.contact_name = conversation.contact_name
            row.last_customer_message_at = conversation.last_customer_message_at
            row.is_window_open = conversation.is_window_open
            row.updated_at = conversation.updated_at
        return conversation

    # ── Context operations ─────────────────────────────────

    async def get_context(self, context_id: str) -> Optional[ConversationContext]:
        async with get_session() as db:
            row = await db.get(ContextRow, context_id)
            return self._row_to_context(row) if row else None

    async def load_active(self, conversation_id: str) -> Optional[ConversationContext]:
        async with get_session() as db:
            stmt = select(ContextRow).where(ContextRow.active_key == conversation_id)
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_context(row) if row else None

    async def latest_context(self, conversation_id: str) -> Optional[ConversationContext]:
        async with get_session() as db:
            stmt = (
                select(ContextRow)
                .where(ContextRow.conversation_id == conversation_id)
                .order_by(ContextRow.created_at.desc())
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            return self._row_to_context(row) if row else None

    async def create_context(
        self, conversation_id: str, chatbot_id: str, start_node_id: str,
        **fields: Any,
    ) -> ConversationContext:
        context = ConversationContext(
            conversation_id=conversation_id,
            chatbot_id=chatbot_id,
            current_node_id=start_node_id,
            **fields,
        )
        try:
            async with get_session() as db:
                db.add(ContextRow(id=context.id, created_at=context.created_at,
                                  **self._context_values(context)))
        except IntegrityError as e:
            existing = await self.load_active(conversation_id)
            raise ConflictError(
                ConflictErrorKind.CONCURRENT_CONTEXT,
                conversation_id=conversation_id,
                context_id=existing.id if existing else "",
            ) from e
        except SQLAlchemyError as e:
            raise StoreError(f"create_context failed: {e}") from e
        logger.info("context_created", context_id=context.id,
                    conversation_id=conversation_id, chatbot_id=chatbot_id)
        return context

    async def save(self, context: ConversationContext) -> ConversationContext:
        expected = context.revision
        context.revision = expected + 1
        values = self._context_values(context)
        try:
            async with get_session() as db:
                result = await db.execute(
                    update(ContextRow)
                    .where(and_(ContextRow.id == context.id, ContextRow.revision == expected))
                    .values(**values)
                )
                if result.rowcount != 1:
                    raise ConflictError(
                        ConflictErrorKind.STALE_WRITE,
                        conversation_id=context.conversation_id, context_id=context.id,
                    )
                await db.execute(delete(NodeOutputIndexRow).where(NodeOutputIndexRow.context_id == context.id))
                db.add_all([
                    NodeOutputIndexRow(
                        context_id=context.id, node_id=node_id,
                        node_type=output.node_type.value, success=output.success,
                    )
                    for node_id, output in context.node_outputs.items()
                ])
        except ConflictError:
            context.revision = expected
            raise
        except IntegrityError as e:
            # active_key collision: another live context was created meanwhile
            context.revision = expected
            raise ConflictError(
                ConflictErrorKind.CONCURRENT_CONTEXT,
                conversation_id=context.conversation_id, context_id=context.id,
            ) from e
        except SQLAlchemyError as e:
            context.revision = expected
            raise StoreError(f"save failed for context {context.id}: {e}") from e
        return context

    async def list_stale(self, now: datetime, limit: int = 100) -> list[ConversationContext]:
        async with get_session() as db:
            stmt = (
                select(ContextRow)
                .where(and_(
                    ContextRow.active_key.is_not(None),
                    ContextRow.expires_at.is_not(None),
                    ContextRow.expires_at < now,
                ))
                .order_by(ContextRow.expires_at)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_context(r) for r in result.scalars()]

    async def expire_context(self, context_id: str, now: datetime) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ContextRow)
                .where(and_(
                    ContextRow.id == context_id,
                    ContextRow.active_key.is_not(None),
                    ContextRow.expires_at.is_not(None),
                    ContextRow.expires_at < now,
                ))
                .values(
                    status=ContextStatus.EXPIRED.value,
                    is_active=False,
                    active_key=None,
                    completed_at=now,
                    completion_reason=CompletionReason.SESSION_TIMEOUT.value,
                    closed_by=ClosedBy.SWEEPER.value,
                    expires_at=None,
                    updated_at=now,
                    revision=ContextRow.revision + 1,
                )
            )
            return result.rowcount == 1

    async def list_contexts(
        self, status: Optional[ContextStatus] = None, chatbot_id: Optional[str] = None,
        conversation_id: Optional[str] = None, include_test_sessions: bool = False,
        only_test_sessions: bool = False, limit: int = 50, offset: int = 0,
    ) -> list[ConversationContext]:
        stmt = select(ContextRow)
        if status is not None:
            stmt = stmt.where(ContextRow.status == ContextStatus(status).value)
        if chatbot_id:
            stmt = stmt.where(ContextRow.chatbot_id == chatbot_id)
        if conversation_id:
            stmt = stmt.where(ContextRow.conversation_id == conversation_id)
        if only_test_sessions:
            stmt = stmt.where(ContextRow.is_test_session.is_(True))
        elif not include_test_sessions:
            stmt = stmt.where(ContextRow.is_test_session.is_(False))
        stmt = stmt.order_by(ContextRow.created_at.desc()).offset(offset).limit(limit)
        async with get_session() as db:
            result = await db.execute(stmt)
            return [self._row_to_context(r) for r in result.scalars()]

    async def list_active(self) -> list[ConversationContext]:
        async with get_session() as db:
            stmt = select(ContextRow).where(ContextRow.active_key.is_not(None)).order_by(ContextRow.updated_at.desc())
            result = await db.execute(stmt)
            return [self._row_to_context(r) for r in result.scalars()]

    async def find_by_node_output(self, node_id: str, **match: Any) -> list[ConversationContext]:
        stmt = (
            select(ContextRow)
            .join(NodeOutputIndexRow, NodeOutputIndexRow.context_id == ContextRow.id)
            .where(NodeOutputIndexRow.node_id == node_id)
        )
        if "success" in match:
            stmt = stmt.where(NodeOutputIndexRow.success.is_(bool(match["success"])))
        async with get_session() as db:
            result = await db.execute(stmt)
            contexts = [self._row_to_context(r) for r in result.scalars().unique()]
        return [
            c for c in contexts
            if node_id in c.node_outputs and output_matches(c.node_outputs[node_id], match)
        ]

    # ── Row converters ─────────────────────────────────────

    @staticmethod
    def _context_values(context: ConversationContext) -> dict[str, Any]:
        dumped = context.model_dump(mode="json")
        live = context.status not in TERMINAL_STATUSES
        return {
            "conversation_id": context.conversation_id,
            "chatbot_id": context.chatbot_id,
            "chatbot_version": context.chatbot_version,
            "current_node_id": context.current_node_id,
            "variables": dumped["variables"],
            "node_history": dumped["node_history"],
            "node_outputs": dumped["node_outputs"],
            "processed_event_ids": dumped["processed_event_ids"],
            "status": context.status.value,
            "is_active": live,
            "active_key": context.conversation_id if live else None,
            "expires_at": context.expires_at,
            "completed_at": context.completed_at,
            "completion_reason": context.completion_reason,
            "closed_by": context.closed_by.value if context.closed_by else None,
            "is_test_session": context.is_test_session,
            "test_metadata": dumped["test_metadata"],
            "paused": context.paused,
            "revision": context.revision,
            "updated_at": context.updated_at,
        }

    @staticmethod
    def _row_to_context(row: ContextRow) -> ConversationContext:
        return ConversationContext(
            id=row.id,
            conversation_id=row.conversation_id,
            chatbot_id=row.chatbot_id,
            chatbot_version=row.chatbot_version or 1,
            current_node_id=row.current_node_id,
            variables=row.variables or {},
            node_history=row.node_history or [],
            node_outputs={k: NodeOutput.model_validate(v) for k, v in (row.node_outputs or {}).items()},
            processed_event_ids=row.processed_event_ids or [],
            status=ContextStatus(row.status),
            expires_at=_as_utc(row.expires_at),
            completed_at=_as_utc(row.completed_at),
            completion_reason=row.completion_reason,
            closed_by=ClosedBy(row.closed_by) if row.closed_by else None,
            is_test_session=bool(row.is_test_session),
            test_metadata=TestMetadata.model_validate(row.test_metadata) if row.test_metadata else None,
            paused=bool(row.paused),
            revision=row.revision or 0,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_chatbot(row: ChatbotRow) -> Chatbot:
        return Chatbot(
            id=row.id, name=row.name, description=row.description or "",
            nodes=row.nodes or [], edges=row.edges or [],
            is_active=bool(row.is_active), status=row.status,
            metadata=row.metadata_ or {}, version=row.version or 1,
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_flow(row: WhatsAppFlowRow) -> WhatsAppFlow:
        return WhatsAppFlow(
            id=row.id, whatsapp_flow_id=row.whatsapp_flow_id, name=row.name,
            description=row.description or "", status=row.status,
            categories=row.categories or [], flow_json=row.flow_json or {},
            endpoint_uri=row.endpoint_uri, is_active=bool(row.is_active),
            metadata=row.metadata_ or {},
            data_source=DataSourceRef.model_validate(row.data_source) if row.data_source else None,
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, phone_number=row.phone_number or "",
            contact_name=row.contact_name or "",
            last_customer_message_at=_as_utc(row.last_customer_message_at),
            is_window_open=bool(row.is_window_open),
            created_at=_as_utc(row.created_at), updated_at=_as_utc(row.updated_at),
        )
