"""
Orchestrator — The central coordinator for inbound events and admin actions.

Architecture:
  Inbound:  webhook → parse_webhook → resolve conversation by phone
            → per-conversation lock
              → WindowTracker.record_customer_message
              → ExecutionEngine.process (load/create → resume → advance → save)
              → OutboundDispatcher.dispatch_all (after the save, in order)

  Admin:    stop / skip / force-complete / cleanup, under the same lock as
            live traffic for the conversation they touch.

  Test:     test sessions run the same engine against synthetic
            conversations; `simulate` mode sends through SimulatedSender and
            the engine reports every step to the observer.

Events for different conversations run fully in parallel; events for the
same conversation are serialized by ConversationLocks.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from typing import Any, Optional

from channels.base import MessageSender
from channels.simulator import SimulatedSender
from channels.whatsapp_adapter import normalize_phone, parse_webhook
from config.settings import Settings, get_settings
from context.locks import ConversationLocks
from context.window import WindowTracker
from core.dispatcher import OutboundDispatcher
from core.engine import ExecutionEngine, flow_token_for
from core.errors import ConflictError, ConflictErrorKind, ContextNotFoundError
from core.observer import TEST_PAUSED, TEST_RESUMED, TEST_STARTED, ExecutionObserver, TestSessionRecorder
from database.store_base import BaseContextStore
from flows.registry import ChatbotRegistry
from models.schemas import (
    ClosedBy, CompletionReason, ContextStatus, Conversation, ConversationContext,
    ExecutionResult, InboundEvent, InboundKind, TestEvent, TestMetadata, TestMode,
)

logger = structlog.get_logger()


class FlowOrchestrator:
    """
    Owns the per-conversation serialization and the persist-then-send
    ordering. The engine decides; this class applies.
    """

    def __init__(
        self,
        store: BaseContextStore,
        engine: ExecutionEngine,
        dispatcher: OutboundDispatcher,
        locks: Optional[ConversationLocks] = None,
        simulator: Optional[SimulatedSender] = None,
    ):
        self.store = store
        self.engine = engine
        self.dispatcher = dispatcher
        self.window: WindowTracker = engine.window
        self.registry: ChatbotRegistry = engine.registry
        self.observer: ExecutionObserver = engine.observer
        self.locks = locks or ConversationLocks()
        self.simulator = simulator or SimulatedSender()

    # ══════════════════════════════════════════════════════════
    #  INBOUND: customer events
    # ══════════════════════════════════════════════════════════

    async def handle_event(
        self, event: InboundEvent, chatbot_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Run one event through the engine and deliver what it produced.
        ConflictError propagates to the caller, which drops or requeues.
        """
        async with self.locks.hold(event.conversation_id):
            await self.window.record_customer_message(
                event.conversation_id, at=event.received_at,
                phone_number=event.sender_phone, contact_name=event.sender_name,
            )
            try:
                result = await self.engine.process(event, chatbot_id=chatbot_id)
            except ConflictError as e:
                if e.kind != ConflictErrorKind.CONCURRENT_CONTEXT:
                    raise
                # Another writer created the context first: run against it
                logger.info("concurrent_context_reused", conversation_id=event.conversation_id,
                            context_id=e.context_id)
                result = await self.engine.process(event, chatbot_id=chatbot_id)
            return await self._deliver(result)

    async def handle_webhook(
        self, payload: dict[str, Any], chatbot_id: Optional[str] = None,
    ) -> list[ExecutionResult]:
        """
        Process a WhatsApp webhook delivery. Conversations are handled in
        parallel; messages of one conversation keep their payload order.
        Refused events are logged and skipped so the webhook is acknowledged.
        """
        by_conversation: dict[str, list[InboundEvent]] = {}
        for event in parse_webhook(payload):
            conversation = await self._conversation_for_phone(event.sender_phone, event.sender_name)
            event = event.model_copy(update={"conversation_id": conversation.id})
            by_conversation.setdefault(conversation.id, []).append(event)

        async def run(events: list[InboundEvent]) -> list[ExecutionResult]:
            results = []
            for event in events:
                try:
                    results.append(await self.handle_event(event, chatbot_id=chatbot_id))
                except ConflictError as e:
                    logger.warning("inbound_event_refused", conversation_id=event.conversation_id,
                                   event_id=event.event_id, kind=e.kind.value)
                    results.append(ExecutionResult(error=e.kind.value))
                except LookupError as e:
                    logger.warning("inbound_event_unroutable", conversation_id=event.conversation_id,
                                   event_id=event.event_id, error=str(e))
                    results.append(ExecutionResult(error=str(e)))
            return results

        batches = await asyncio.gather(*(run(events) for events in by_conversation.values()))
        return [result for batch in batches for result in batch]

    async def _conversation_for_phone(self, phone: str, name: str = "") -> Conversation:
        phone = normalize_phone(phone)
        async with self.locks.hold(f"phone:{phone}"):
            conversation = await self.store.find_conversation_by_phone(phone)
            if conversation is None:
                conversation = await self.store.save_conversation(
                    Conversation(phone_number=phone, contact_name=name))
                logger.info("conversation_created", conversation_id=conversation.id, phone=phone)
            return conversation

    async def _deliver(self, result: ExecutionResult) -> ExecutionResult:
        if result.outbound:
            result.receipts = await self.dispatcher.dispatch_all(
                result.outbound, sender=self._sender_for(result.context))
        return result

    def _sender_for(self, context: Optional[ConversationContext]) -> Optional[MessageSender]:
        if context is not None and context.is_test_session:
            mode = context.test_metadata.test_mode if context.test_metadata else TestMode.SIMULATE
            if mode == TestMode.SIMULATE:
                return self.simulator
        return None

    # ══════════════════════════════════════════════════════════
    #  ADMIN OPERATIONS
    # ══════════════════════════════════════════════════════════

    async def stop(self, conversation_id: str) -> Optional[ConversationContext]:
        """Stop the live context. Later events are refused until a restart."""
        async with self.locks.hold(conversation_id):
            context = await self.store.load_active(conversation_id)
            if context is None:
                return None
            context.close(ContextStatus.STOPPED, CompletionReason.USER_STOPPED.value,
                          ClosedBy.OPERATOR, now=self.engine.now())
            saved = await self.store.save(context)
        logger.info("context_stopped", context_id=saved.id, conversation_id=conversation_id)
        return saved

    async def skip_current_node(self, conversation_id: str) -> ExecutionResult:
        async with self.locks.hold(conversation_id):
            context = await self.store.load_active(conversation_id)
            if context is None:
                raise ContextNotFoundError(f"active context for conversation {conversation_id}")
            result = await self.engine.skip_current_node(context)
            return await self._deliver(result)

    async def force_complete(self, context_id: str) -> ConversationContext:
        context = await self.store.get_context(context_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        async with self.locks.hold(context.conversation_id):
            context = await self.store.get_context(context_id)
            if context.is_terminal:
                raise ConflictError(
                    ConflictErrorKind.ALREADY_TERMINAL,
                    conversation_id=context.conversation_id, context_id=context.id,
                )
            saved = await self.store.mark_completed(
                context, CompletionReason.FORCE_COMPLETED.value, ClosedBy.OPERATOR, now=self.engine.now())
        logger.info("context_force_completed", context_id=context_id)
        return saved

    async def get_context(self, context_id: str) -> ConversationContext:
        context = await self.store.get_context(context_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        return context

    async def list_active(self) -> list[ConversationContext]:
        return await self.store.list_active()

    async def has_active(self, conversation_id: str) -> bool:
        return await self.store.load_active(conversation_id) is not None

    async def list_contexts(self, **filters: Any) -> list[ConversationContext]:
        return await self.store.list_contexts(**filters)

    async def find_by_node_output(self, node_id: str, **match: Any) -> list[ConversationContext]:
        return await self.store.find_by_node_output(node_id, **match)

    async def stats(self) -> dict[str, int]:
        now = self.engine.now()
        active = await self.store.list_active()
        return {
            "active": len(active),
            "running": sum(1 for c in active if c.status == ContextStatus.RUNNING),
            "waiting_input": sum(1 for c in active if c.status == ContextStatus.WAITING_INPUT),
            "waiting_flow": sum(1 for c in active if c.status == ContextStatus.WAITING_FLOW),
            "expired_unswept": sum(1 for c in active if c.is_expired(now)),
            "test_sessions": sum(1 for c in active if c.is_test_session),
        }

    async def cleanup(self) -> int:
        """Expire stale contexts now instead of waiting for the sweeper."""
        count = await self.store.expire_stale(self.engine.now())
        logger.info("stale_contexts_cleaned", count=count)
        return count

    # ══════════════════════════════════════════════════════════
    #  TEST SESSIONS
    # ══════════════════════════════════════════════════════════

    async def start_test_session(
        self, chatbot_id: Optional[str] = None, metadata: Optional[TestMetadata] = None,
    ) -> ExecutionResult:
        metadata = metadata or TestMetadata()
        conversation = await self.store.save_conversation(Conversation(
            id=f"test-{uuid.uuid4().hex[:16]}",
            phone_number=normalize_phone(metadata.test_phone_number or ""),
            contact_name="Test session",
        ))
        async with self.locks.hold(conversation.id):
            if metadata.test_mode == TestMode.LIVE:
                await self.window.record_customer_message(conversation.id, at=self.engine.now())
            result = await self.engine.start(
                conversation.id, chatbot_id=chatbot_id,
                is_test_session=True, test_metadata=metadata,
            )
            await self.observer.emit(result.context.id, TEST_STARTED, {
                "chatbot_id": result.context.chatbot_id,
                "conversation_id": conversation.id,
                "test_mode": metadata.test_mode.value,
            })
            return await self._deliver(result)

    async def send_test_message(
        self, context_id: str, text: str = "",
        button_id: Optional[str] = None, list_row_id: Optional[str] = None,
        flow_response: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        context = await self.get_context(context_id)
        if not context.is_test_session:
            raise ConflictError(
                ConflictErrorKind.ALREADY_TERMINAL, f"context {context_id} is not a test session",
                conversation_id=context.conversation_id, context_id=context_id,
            )
        event = InboundEvent(
            conversation_id=context.conversation_id,
            context_id=context_id,
            event_id=f"test.{uuid.uuid4().hex}",
            text=text,
            button_id=button_id,
            list_row_id=list_row_id,
        )
        if flow_response is not None:
            event.kind = InboundKind.FLOW_RESPONSE
            event.flow_response = flow_response
            event.flow_token = flow_token_for(context_id, context.current_node_id)
        return await self.handle_event(event)

    async def pause_test_session(self, context_id: str) -> ConversationContext:
        return await self._set_paused(context_id, True)

    async def resume_test_session(self, context_id: str) -> ConversationContext:
        return await self._set_paused(context_id, False)

    async def _set_paused(self, context_id: str, paused: bool) -> ConversationContext:
        context = await self.get_context(context_id)
        async with self.locks.hold(context.conversation_id):
            context = await self.get_context(context_id)
            if context.is_terminal:
                raise ConflictError(
                    ConflictErrorKind.ALREADY_TERMINAL,
                    conversation_id=context.conversation_id, context_id=context_id,
                )
            if context.paused != paused:
                context.paused = paused
                context = await self.store.save(context)
                await self.observer.emit(context_id, TEST_PAUSED if paused else TEST_RESUMED,
                                         {"node_id": context.current_node_id})
        return context

    def test_events(self, context_id: str) -> list[TestEvent]:
        if isinstance(self.observer, TestSessionRecorder):
            return self.observer.events(context_id)
        return []

    # ══════════════════════════════════════════════════════════
    #  LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def close(self) -> None:
        await self.dispatcher.close()
        await self.simulator.shutdown()
        await self.store.close()


def build_orchestrator(
    settings: Optional[Settings] = None,
    store: Optional[BaseContextStore] = None,
    sender: Optional[MessageSender] = None,
    executor: Any = None,
    observer: Optional[ExecutionObserver] = None,
    clock: Any = None,
) -> FlowOrchestrator:
    """Wire store, registry, window tracker, engine and dispatcher from settings."""
    from backend.connector import RestActionExecutor
    from channels.whatsapp_adapter import WhatsAppCloudSender
    from database.store_factory import create_store

    settings = settings or get_settings()
    store = store or create_store(settings.database)
    sender = sender or WhatsAppCloudSender(settings.whatsapp)
    executor = executor or RestActionExecutor(
        default_timeout=settings.engine.external_call_timeout_seconds)
    dispatcher = OutboundDispatcher(sender, executor)
    engine = ExecutionEngine(
        store=store,
        registry=ChatbotRegistry(store),
        dispatcher=dispatcher,
        config=settings.engine,
        whatsapp=settings.whatsapp,
        observer=observer or TestSessionRecorder(max_sessions=settings.engine.test_sessions_retained),
        window=WindowTracker(store, settings.engine.window_hours),
        clock=clock,
    )
    return FlowOrchestrator(store, engine, dispatcher)
