"""
Execution Engine — walks a chatbot graph for one conversation.

For every inbound event the engine:
  - loads the conversation's live context (or creates one at the start node)
  - drops events it has already processed
  - binds the customer's answer to the node the context is waiting on
  - advances through start/message/condition/action nodes until it reaches
    a node that needs input, a terminal outcome, or the per-event step limit
  - persists the context exactly once and returns the rendered outbound
    messages; sending them is the orchestrator's job

Architecture:
  FlowOrchestrator.handle_event(event)
    → ExecutionEngine.process(event)
      → resolve context → bind answer → advance loop → store.save(context)
    → OutboundDispatcher.dispatch_all(result.outbound)

The engine works on a copy of the stored context; a failure before save()
leaves the stored record untouched.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from config.settings import EngineConfig, WhatsAppConfig
from context.window import WindowTracker
from core.dispatcher import OutboundDispatcher
from core.errors import (
    ConflictError, ConflictErrorKind, ContextNotFoundError,
    ExternalCallError, GraphError, GraphErrorKind,
)
from core.observer import (
    BOT_RESPONSE, COMPLETED, ERROR, FLOW_RESPONSE, FLOW_SENT, NODE_ENTERED,
    NODE_EXECUTED, NODE_EXITED, VARIABLE_CHANGED, WAITING_INPUT,
    ExecutionObserver,
)
from database.store_base import BaseContextStore
from flows.graph import FlowGraph
from flows.registry import ChatbotRegistry
from models.schemas import (
    ButtonOption, ClosedBy, ConditionClause, CompletionReason, ContextStatus, Conversation,
    ConversationContext, ExecutionResult, InboundEvent, InboundKind, ListRow,
    ListSection, Node, NodeOutput, NodeType, OutboundKind, OutboundMessage,
    QuestionNodeData, QuestionType, TestMode,
)
from utils.conditions import (
    evaluate_conditions, get_nested_value, has_path, references_missing_variable,
)
from utils.templating import format_for_display, render, render_value

logger = structlog.get_logger()

PAGE_PREV = "__PAGE_PREV__"
PAGE_NEXT = "__PAGE_NEXT__"

# WhatsApp interactive limits
MAX_BUTTON_TITLE = 20
MAX_ROW_TITLE = 24
MAX_ROW_DESCRIPTION = 72

LAST_API_STATUS = "__last_api_status__"
LAST_API_ERROR = "__last_api_error__"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def flow_token_for(context_id: str, node_id: str) -> str:
    return f"{context_id}:{node_id}"


def parse_flow_token(token: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    """Split a flow token into (context_id, node_id); (None, None) when malformed."""
    if not token or ":" not in token:
        return None, None
    context_id, _, node_id = token.partition(":")
    return (context_id or None), (node_id or None)


@dataclass
class _Run:
    """Per-event scratch state shared by the node executors."""
    now: datetime
    conversation: Optional[Conversation]
    window_open: bool
    recipient: str = ""
    outbound: list[OutboundMessage] = field(default_factory=list)
    steps: int = 0


@dataclass
class _Step:
    """What a node executor decided: move on, or park the context."""
    next_node_id: Optional[str] = None
    wait: bool = False


class ExecutionEngine:
    """
    Stateless between events: everything it needs is loaded from the
    store, and everything it decides is written back in one save().
    """

    def __init__(
        self,
        store: BaseContextStore,
        registry: ChatbotRegistry,
        dispatcher: OutboundDispatcher,
        config: Optional[EngineConfig] = None,
        whatsapp: Optional[WhatsAppConfig] = None,
        observer: Optional[ExecutionObserver] = None,
        window: Optional[WindowTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.config = config or EngineConfig()
        self.whatsapp = whatsapp or WhatsAppConfig()
        self.observer = observer or ExecutionObserver()
        self.window = window or WindowTracker(store, self.config.window_hours)
        self._clock = clock or _utcnow

    def now(self) -> datetime:
        return self._clock()

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.session_timeout_minutes)

    @property
    def flow_timeout(self) -> timedelta:
        return timedelta(minutes=self.config.flow_response_timeout_minutes)

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def process(
        self, event: InboundEvent, chatbot_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Process one inbound event. Raises ConflictError when the event may
        not be applied (terminal context, paused test session, concurrent
        writer) and ContextNotFoundError for an unknown addressed context.
        """
        now = self.now()
        context_id = event.context_id
        if not context_id and event.kind == InboundKind.FLOW_RESPONSE:
            context_id, _ = parse_flow_token(event.flow_token)

        if context_id:
            context = await self._addressed_context(context_id, event)
        else:
            context = await self.store.load_active(event.conversation_id)

        if context is not None and context.is_expired(now):
            # Stale but not yet swept: close it and start over
            await self.store.expire_context(context.id, now)
            logger.info("context_expired_inline", context_id=context.id,
                        conversation_id=context.conversation_id)
            if context_id:
                raise ConflictError(
                    ConflictErrorKind.ALREADY_TERMINAL,
                    conversation_id=context.conversation_id, context_id=context.id,
                )
            context = None

        if context is None:
            latest = await self.store.latest_context(event.conversation_id)
            if latest is not None and latest.has_processed(event.event_id):
                logger.info("duplicate_event_dropped", event_id=event.event_id,
                            context_id=latest.id)
                return ExecutionResult(context=latest, duplicate=True)
            if latest is not None and latest.closed_by == ClosedBy.OPERATOR and not event.restart:
                raise ConflictError(
                    ConflictErrorKind.ALREADY_TERMINAL,
                    f"conversation {event.conversation_id} was stopped by an operator",
                    conversation_id=event.conversation_id, context_id=latest.id,
                )
            if event.kind == InboundKind.FLOW_RESPONSE:
                logger.warning("flow_response_without_context",
                               conversation_id=event.conversation_id,
                               flow_token=event.flow_token)
                return ExecutionResult(error="no live context for flow response")
            return await self.start(event.conversation_id, chatbot_id=chatbot_id, event=event)

        if context.has_processed(event.event_id):
            logger.info("duplicate_event_dropped", event_id=event.event_id, context_id=context.id)
            return ExecutionResult(context=context, duplicate=True)
        if context.paused:
            raise ConflictError(
                ConflictErrorKind.SESSION_PAUSED,
                conversation_id=context.conversation_id, context_id=context.id,
            )

        graph = await self.registry.get_graph(context.chatbot_id)
        run = await self._new_run(context, now)
        try:
            step = await self._resume(context, graph, event, run)
            if step is not None and not step.wait:
                await self._advance_from(context, graph, step, run)
        except GraphError as e:
            await self._fail(context, e.completion_reason, run, node_id=e.node_id, error=str(e))
        except ExternalCallError as e:
            await self._fail(context, CompletionReason.EXTERNAL_CALL_FAILED.value, run,
                             node_id=context.current_node_id, error=str(e))
        return await self._persist(context, event, run)

    async def start(
        self, conversation_id: str, chatbot_id: Optional[str] = None,
        event: Optional[InboundEvent] = None, **fields: Any,
    ) -> ExecutionResult:
        """
        Create a context at the chatbot's start node and advance it until
        it waits or finishes. Extra fields (test-session flags) are stored
        on the new context.
        """
        now = self.now()
        chatbot = await self.registry.select_chatbot(chatbot_id)
        graph = self.registry.graph_for(chatbot)
        try:
            start_node_id = graph.resolve_start_node()
            start_error: Optional[GraphError] = None
        except GraphError as e:
            start_node_id, start_error = "", e

        context = await self.store.create_context(
            conversation_id, chatbot.id, start_node_id,
            chatbot_version=chatbot.version,
            expires_at=now + self.session_timeout,
            **fields,
        )
        logger.info("execution_started", context_id=context.id,
                    conversation_id=conversation_id, chatbot_id=chatbot.id,
                    start_node_id=start_node_id, test_session=context.is_test_session)

        run = await self._new_run(context, now)
        if start_error is not None:
            await self._fail(context, start_error.completion_reason, run, error=str(start_error))
        else:
            try:
                await self._advance(context, graph, start_node_id, run)
            except GraphError as e:
                await self._fail(context, e.completion_reason, run, node_id=e.node_id, error=str(e))
            except ExternalCallError as e:
                await self._fail(context, CompletionReason.EXTERNAL_CALL_FAILED.value, run,
                                 node_id=context.current_node_id, error=str(e))
        result = await self._persist(context, event, run)
        result.created = True
        return result

    async def skip_current_node(self, context: ConversationContext) -> ExecutionResult:
        """
        Operator action: leave the node the context is parked on through its
        default edge without binding an answer, then advance as usual.
        """
        if context.is_terminal:
            raise ConflictError(
                ConflictErrorKind.ALREADY_TERMINAL,
                conversation_id=context.conversation_id, context_id=context.id,
            )
        now = self.now()
        graph = await self.registry.get_graph(context.chatbot_id)
        run = await self._new_run(context, now)
        try:
            node = graph.node_by_id(context.current_node_id)
            context.push_history(node.id)
            logger.info("node_skipped", context_id=context.id, node_id=node.id)
            await self._advance_from(
                context, graph, _Step(next_node_id=graph.single_successor(node.id)), run, node=node,
            )
        except GraphError as e:
            await self._fail(context, e.completion_reason, run, node_id=e.node_id, error=str(e))
        except ExternalCallError as e:
            await self._fail(context, CompletionReason.EXTERNAL_CALL_FAILED.value, run,
                             node_id=context.current_node_id, error=str(e))
        return await self._persist(context, None, run)

    # ══════════════════════════════════════════════════════════
    #  CONTEXT RESOLUTION & PERSISTENCE
    # ══════════════════════════════════════════════════════════

    async def _addressed_context(self, context_id: str, event: InboundEvent) -> ConversationContext:
        context = await self.store.get_context(context_id)
        if context is None:
            raise ContextNotFoundError(context_id)
        if context.has_processed(event.event_id):
            return context
        if context.is_terminal:
            raise ConflictError(
                ConflictErrorKind.ALREADY_TERMINAL,
                conversation_id=context.conversation_id, context_id=context.id,
            )
        if event.conversation_id and context.conversation_id != event.conversation_id:
            logger.warning("event_conversation_mismatch", context_id=context.id,
                           event_conversation_id=event.conversation_id,
                           context_conversation_id=context.conversation_id)
        return context

    async def _new_run(self, context: ConversationContext, now: datetime) -> _Run:
        conversation = await self.store.get_conversation(context.conversation_id)
        simulated = (
            context.is_test_session
            and (context.test_metadata is None or context.test_metadata.test_mode == TestMode.SIMULATE)
        )
        window_open = simulated or self.window.is_within_window(conversation, now)
        recipient = conversation.phone_number if conversation else ""
        if not recipient and context.test_metadata and context.test_metadata.test_phone_number:
            recipient = context.test_metadata.test_phone_number
        return _Run(now=now, conversation=conversation, window_open=window_open, recipient=recipient)

    async def _persist(
        self, context: ConversationContext, event: Optional[InboundEvent], run: _Run,
    ) -> ExecutionResult:
        if event is not None:
            context.remember_event(event.event_id)
        if context.status == ContextStatus.WAITING_INPUT:
            context.touch(run.now, self.session_timeout)
        elif context.status == ContextStatus.WAITING_FLOW:
            context.touch(run.now, self.flow_timeout)
        else:
            context.updated_at = run.now
        saved = await self.store.save(context)
        logger.info("context_saved", context_id=saved.id, status=saved.status.value,
                    node_id=saved.current_node_id, revision=saved.revision,
                    outbound=len(run.outbound), steps=run.steps)
        return ExecutionResult(context=saved, outbound=run.outbound)

    # ══════════════════════════════════════════════════════════
    #  ADVANCE LOOP
    # ══════════════════════════════════════════════════════════

    async def _advance(
        self, context: ConversationContext, graph: FlowGraph, node_id: str, run: _Run,
    ) -> None:
        """Execute nodes from `node_id` until one waits or the walk ends."""
        while True:
            if run.steps >= self.config.max_steps_per_event:
                raise GraphError(
                    GraphErrorKind.STEP_LIMIT_EXCEEDED,
                    f"more than {self.config.max_steps_per_event} nodes executed for one event",
                    node_id=node_id,
                )
            run.steps += 1
            node = graph.node_by_id(node_id)
            context.current_node_id = node.id
            context.status = ContextStatus.RUNNING
            await self._observe(context, NODE_ENTERED, node_id=node.id, node_type=node.type.value,
                                label=node.label)

            step = await self._execute_node(node, context, graph, run)
            if step.wait:
                return
            context.push_history(node.id)
            await self._observe(context, NODE_EXITED, node_id=node.id, next_node_id=step.next_node_id)
            if step.next_node_id is None:
                await self._finish_without_edge(context, node, run)
                return
            node_id = step.next_node_id

    async def _advance_from(
        self, context: ConversationContext, graph: FlowGraph, step: _Step, run: _Run,
        node: Optional[Node] = None,
    ) -> None:
        """Continue after a resumed node: follow its chosen edge, or finish."""
        if step.next_node_id is not None:
            await self._advance(context, graph, step.next_node_id, run)
            return
        node = node or graph.node_by_id(context.current_node_id)
        await self._finish_without_edge(context, node, run)

    async def _finish_without_edge(self, context: ConversationContext, node: Node, run: _Run) -> None:
        if node.is_terminal:
            await self._complete(context, CompletionReason.TERMINAL_NODE_REACHED.value, run)
        elif self.config.strict_dead_ends:
            raise GraphError(
                GraphErrorKind.DEAD_END,
                f"node {node.id!r} has no outgoing edge and is not terminal",
                node_id=node.id,
            )
        else:
            await self._complete(context, CompletionReason.FLOW_COMPLETED.value, run)

    async def _complete(self, context: ConversationContext, reason: str, run: _Run) -> None:
        context.close(ContextStatus.COMPLETED, reason, ClosedBy.ENGINE, now=run.now)
        logger.info("execution_completed", context_id=context.id, reason=reason,
                    node_id=context.current_node_id)
        await self._observe(context, COMPLETED, reason=reason, node_history=list(context.node_history))

    async def _fail(
        self, context: ConversationContext, reason: str, run: _Run,
        node_id: Optional[str] = None, error: str = "",
    ) -> None:
        context.close(ContextStatus.FAILED, reason, ClosedBy.ENGINE, now=run.now)
        logger.error("execution_failed", context_id=context.id,
                     conversation_id=context.conversation_id, reason=reason,
                     node_id=node_id or context.current_node_id, error=error)
        await self._observe(context, ERROR, reason=reason, node_id=node_id, error=error)

    # ══════════════════════════════════════════════════════════
    #  NODE EXECUTORS
    # ══════════════════════════════════════════════════════════

    async def _execute_node(
        self, node: Node, context: ConversationContext, graph: FlowGraph, run: _Run,
    ) -> _Step:
        executor = {
            NodeType.START: self._exec_start,
            NodeType.MESSAGE: self._exec_message,
            NodeType.QUESTION: self._exec_question,
            NodeType.CONDITION: self._exec_condition,
            NodeType.ACTION: self._exec_action,
            NodeType.WHATSAPP_FLOW: self._exec_whatsapp_flow,
        }.get(node.type)
        if executor is None:
            raise GraphError(GraphErrorKind.INVALID_NODE, f"unsupported node type {node.type}",
                             node_id=node.id)
        return await executor(node, context, graph, run)

    async def _exec_start(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        self._record(context, node, run)
        return _Step(next_node_id=graph.single_successor(node.id))

    async def _exec_message(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        text = render(node.data.content, context.variables)
        self._emit(context, node, run, kind=OutboundKind.TEXT, text=text)
        self._record(context, node, run, data={"content": text})
        await self._observe(context, BOT_RESPONSE, node_id=node.id, text=text)
        await self._observe(context, NODE_EXECUTED, node_id=node.id, output={"content": text})
        return _Step(next_node_id=graph.single_successor(node.id))

    async def _exec_question(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        message = self._question_message(node, context, run)
        run.outbound.append(message)
        context.status = ContextStatus.WAITING_INPUT
        logger.debug("waiting_for_input", context_id=context.id, node_id=node.id,
                     question_type=node.data.question_type.value)
        await self._observe(context, BOT_RESPONSE, node_id=node.id, text=message.text,
                            kind=message.kind.value)
        await self._observe(context, WAITING_INPUT, node_id=node.id,
                            variable=node.data.variable,
                            question_type=node.data.question_type.value)
        return _Step(wait=True)

    async def _exec_condition(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        data = node.data
        variables = context.variables
        handle: Optional[str]

        if data.switch_variable:
            if has_path(variables, data.switch_variable):
                value = get_nested_value(variables, data.switch_variable)
                handle = format_for_display(value) if value is not None else None
            else:
                handle = None
        else:
            clauses = list(data.conditions)
            if not clauses and data.variable:
                clauses = [ConditionClause(variable=data.variable, operator=data.operator,
                                           value=data.value)]
            if not clauses:
                raise GraphError(GraphErrorKind.INVALID_NODE, "condition node has no conditions",
                                 node_id=node.id)
            result = evaluate_conditions(clauses, variables, data.logic)
            if result and data.logic == "or":
                handle = "true"
            elif references_missing_variable(clauses, variables):
                # A missing variable selects only the default branch
                handle = None
            else:
                handle = "true" if result else "false"

        edge = graph.edge_for_handle(node.id, handle)
        if edge is None:
            raise GraphError(
                GraphErrorKind.NO_MATCHING_BRANCH,
                f"condition {node.id!r} produced {handle!r} and has no matching or default edge",
                node_id=node.id,
            )
        self._record(context, node, run, data={"result": handle, "handle": edge.source_handle})
        await self._observe(context, NODE_EXECUTED, node_id=node.id, output={"result": handle})
        return _Step(next_node_id=edge.target)

    async def _exec_action(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        data = node.data
        try:
            result = await self.dispatcher.call_external(data, context.variables)
        except ExternalCallError as e:
            if data.error_variable:
                await self._set_variable(context, data.error_variable, str(e))
            context.variables[LAST_API_ERROR] = str(e)
            self._record(context, node, run, success=False, error=str(e),
                         status_code=e.status_code, output_variable=data.error_variable or None)
            error_edge = next(
                (edge for edge in graph.outgoing_edges(node.id) if edge.source_handle == "error"),
                None,
            )
            if error_edge is None:
                raise
            logger.info("action_error_branch", context_id=context.id, node_id=node.id,
                        status_code=e.status_code)
            return _Step(next_node_id=error_edge.target)

        if data.output_variable:
            await self._set_variable(context, data.output_variable, result.data)
        context.variables[LAST_API_STATUS] = result.status_code
        context.variables.pop(LAST_API_ERROR, None)
        self._record(context, node, run, data=result.data, status_code=result.status_code,
                     duration_ms=result.duration_ms, output_variable=data.output_variable or None)
        await self._observe(context, NODE_EXECUTED, node_id=node.id,
                            output={"status_code": result.status_code})
        return _Step(next_node_id=graph.next_node_id(node.id, "success"))

    async def _exec_whatsapp_flow(self, node: Node, context, graph: FlowGraph, run: _Run) -> _Step:
        data = node.data
        if not data.flow_id:
            raise GraphError(GraphErrorKind.INVALID_NODE, "whatsapp_flow node has no flow id",
                             node_id=node.id)
        stored = await self.store.get_whatsapp_flow(data.flow_id)
        remote_id = data.flow_id
        draft = False
        if stored is not None:
            remote_id = stored.whatsapp_flow_id or data.flow_id
            draft = stored.status.upper() == "DRAFT"
        else:
            logger.warning("whatsapp_flow_not_registered", flow_id=data.flow_id, node_id=node.id)

        token = flow_token_for(context.id, node.id)
        flow = {
            "flow_id": remote_id,
            "flow_token": token,
            "cta": render(data.cta, context.variables),
            "mode": data.mode,
            "screen": data.initial_screen,
            "data": render_value(data.initial_data, context.variables),
            "draft": draft,
        }
        self._emit(
            context, node, run, kind=OutboundKind.FLOW,
            text=render(data.body, context.variables),
            header=render(data.header, context.variables),
            footer=render(data.footer, context.variables),
            flow=flow,
        )
        context.status = ContextStatus.WAITING_FLOW
        await self._observe(context, FLOW_SENT, node_id=node.id, flow_id=remote_id, flow_token=token)
        return _Step(wait=True)

    # ══════════════════════════════════════════════════════════
    #  RESUMING A WAITING CONTEXT
    # ══════════════════════════════════════════════════════════

    async def _resume(
        self, context: ConversationContext, graph: FlowGraph, event: InboundEvent, run: _Run,
    ) -> Optional[_Step]:
        """
        Bind the event to the node the context waits on. Returns the step
        to continue with, or None when the event does not move the context.
        """
        if context.status == ContextStatus.RUNNING:
            # Created but never advanced (e.g. the process died before save)
            logger.debug("message_ignored_while_running", context_id=context.id,
                         node_id=context.current_node_id, event_id=event.event_id)
            await self._advance(context, graph, context.current_node_id, run)
            return None

        node = graph.node_by_id(context.current_node_id)
        if context.status == ContextStatus.WAITING_FLOW:
            if event.kind != InboundKind.FLOW_RESPONSE:
                logger.info("message_ignored_while_waiting_flow", context_id=context.id,
                            node_id=node.id)
                return None
            return await self._resume_flow(node, context, graph, event, run)

        if event.kind == InboundKind.FLOW_RESPONSE:
            logger.info("unexpected_flow_response", context_id=context.id, node_id=node.id)
            return None
        if node.type != NodeType.QUESTION:
            raise GraphError(GraphErrorKind.INVALID_NODE,
                             f"context waits for input on non-question node {node.id!r}",
                             node_id=node.id)
        return await self._resume_question(node, context, graph, event, run)

    async def _resume_question(
        self, node: Node, context: ConversationContext, graph: FlowGraph,
        event: InboundEvent, run: _Run,
    ) -> _Step:
        data: QuestionNodeData = node.data
        selection = event.selection_id

        if selection and data.dynamic_source and selection.startswith((PAGE_PREV, PAGE_NEXT)):
            page = selection[len(PAGE_PREV):] if selection.startswith(PAGE_PREV) \
                else selection[len(PAGE_NEXT):]
            context.variables[f"{data.dynamic_source}_page"] = int(page) if page.isdigit() else 0
            run.outbound.append(self._question_message(node, context, run))
            logger.debug("question_page_changed", context_id=context.id, node_id=node.id, page=page)
            return _Step(wait=True)

        handle = "default"
        value = event.text
        item: Any = None
        matched = False
        options = self._options(data, context.variables)
        if data.question_type in (QuestionType.BUTTONS, QuestionType.LIST):
            answer = event.text.strip().lower()
            for option_id, title, _, option_item in options:
                if (selection and option_id == selection) or \
                        (not selection and answer and title.lower() == answer):
                    handle, value, item, matched = option_id, title, option_item, True
                    break
            else:
                if selection:
                    handle = selection

        if data.question_type != QuestionType.TEXT and options and not matched \
                and graph.edge_for_handle(node.id, handle) is None:
            # Not one of the offered choices and no fallback branch: ask again
            logger.info("question_answer_rejected", context_id=context.id, node_id=node.id,
                        answer=event.text, selection=selection)
            run.outbound.append(self._question_message(node, context, run))
            return _Step(wait=True)

        if data.variable:
            await self._set_variable(context, data.variable, value)
            if data.dynamic_source and item is not None:
                await self._set_variable(context, f"{data.variable}_item", item)
        self._record(
            context, node, run, data={"value": value, "handle": handle},
            user_response=value, button_id=event.button_id, list_row_id=event.list_row_id,
            output_variable=data.variable or None,
        )
        context.push_history(node.id)
        context.status = ContextStatus.RUNNING
        await self._observe(context, NODE_EXITED, node_id=node.id, handle=handle)

        edge = graph.edge_for_handle(node.id, handle)
        next_node_id = edge.target if edge else None
        if next_node_id is None and data.question_type == QuestionType.TEXT:
            next_node_id = graph.single_successor(node.id)
        return _Step(next_node_id=next_node_id)

    async def _resume_flow(
        self, node: Node, context: ConversationContext, graph: FlowGraph,
        event: InboundEvent, run: _Run,
    ) -> Optional[_Step]:
        _, token_node_id = parse_flow_token(event.flow_token)
        if token_node_id and token_node_id != node.id:
            logger.warning("stale_flow_response", context_id=context.id,
                           expected_node_id=node.id, token_node_id=token_node_id)
            return None
        response = event.flow_response or {}
        output_variable = node.data.output_variable
        if output_variable:
            await self._set_variable(context, output_variable, response)
        self._record(context, node, run, data=response, flow_response=response,
                     output_variable=output_variable or None)
        context.push_history(node.id)
        context.status = ContextStatus.RUNNING
        await self._observe(context, FLOW_RESPONSE, node_id=node.id, response=response)
        return _Step(next_node_id=graph.single_successor(node.id))

    # ══════════════════════════════════════════════════════════
    #  MESSAGE BUILDING
    # ══════════════════════════════════════════════════════════

    def _options(self, data: QuestionNodeData, variables: dict[str, Any]) -> list[tuple[str, str, str, Any]]:
        """(id, title, description, source item) for each selectable option."""
        if data.dynamic_source:
            items = get_nested_value(variables, data.dynamic_source)
            if not isinstance(items, list):
                return []
            options = []
            for index, item in enumerate(items):
                if isinstance(item, dict):
                    option_id = item.get(data.dynamic_id_field, index)
                    title = item.get(data.dynamic_label_field, option_id)
                    description = item.get(data.dynamic_description_field) or "" \
                        if data.dynamic_description_field else ""
                else:
                    option_id, title, description = index, item, ""
                options.append((str(option_id), format_for_display(title),
                                format_for_display(description), item))
            return options
        if data.question_type == QuestionType.BUTTONS:
            return [(b.id, b.title, "", None) for b in data.buttons]
        if data.question_type == QuestionType.LIST:
            return [(r.id, r.title, r.description, None)
                    for section in data.list_sections for r in section.rows]
        return []

    def _question_message(self, node: Node, context: ConversationContext, run: _Run) -> OutboundMessage:
        data: QuestionNodeData = node.data
        variables = context.variables
        text = render(data.content, variables)
        header = render(data.header, variables)
        footer = render(data.footer, variables)

        if data.question_type == QuestionType.BUTTONS:
            options = self._options(data, variables)
            if data.dynamic_source:
                options = options[:self.config.max_dynamic_buttons]
            if options:
                buttons = [ButtonOption(id=o[0], title=o[1][:MAX_BUTTON_TITLE]) for o in options]
                return self._build(context, node, run, kind=OutboundKind.BUTTONS, text=text,
                                   header=header, footer=footer, buttons=buttons)

        if data.question_type == QuestionType.LIST:
            if data.dynamic_source:
                sections = self._dynamic_sections(data, variables)
            else:
                sections = [ListSection(title=render(s.title, variables), rows=s.rows)
                            for s in data.list_sections]
            if any(s.rows for s in sections):
                return self._build(context, node, run, kind=OutboundKind.LIST, text=text,
                                   header=header, footer=footer, list_sections=sections,
                                   list_button_text=data.list_button_text)

        return self._build(context, node, run, kind=OutboundKind.TEXT, text=text,
                           header=header, footer=footer)

    def _dynamic_sections(self, data: QuestionNodeData, variables: dict[str, Any]) -> list[ListSection]:
        options = self._options(data, variables)
        size = self.config.list_page_size
        pages = max(1, -(-len(options) // size))
        try:
            page = int(variables.get(f"{data.dynamic_source}_page", 0))
        except (TypeError, ValueError):
            page = 0
        page = min(max(page, 0), pages - 1)

        rows = [
            ListRow(id=o[0], title=o[1][:MAX_ROW_TITLE], description=o[2][:MAX_ROW_DESCRIPTION])
            for o in options[page * size:(page + 1) * size]
        ]
        if page > 0:
            rows.insert(0, ListRow(id=f"{PAGE_PREV}{page - 1}", title="Previous page"))
        if page < pages - 1:
            rows.append(ListRow(id=f"{PAGE_NEXT}{page + 1}", title="Next page",
                                description=f"Page {page + 2} of {pages}"))
        return [ListSection(title=data.label[:MAX_ROW_TITLE] if data.label else "Options", rows=rows)]

    def _build(self, context: ConversationContext, node: Node, run: _Run, **fields: Any) -> OutboundMessage:
        message = OutboundMessage(
            conversation_id=context.conversation_id,
            context_id=context.id,
            node_id=node.id,
            recipient=run.recipient,
            **fields,
        )
        if not run.window_open:
            message.requires_template = True
            message.template_name = self.whatsapp.default_template
            message.template_language = self.whatsapp.template_language
            logger.warning("window_closed_template_required", context_id=context.id,
                           node_id=node.id, template=message.template_name)
        return message

    def _emit(self, context: ConversationContext, node: Node, run: _Run, **fields: Any) -> None:
        run.outbound.append(self._build(context, node, run, **fields))

    # ══════════════════════════════════════════════════════════
    #  HELPERS
    # ══════════════════════════════════════════════════════════

    def _record(self, context: ConversationContext, node: Node, run: _Run, **fields: Any) -> None:
        context.node_outputs[node.id] = NodeOutput(
            node_id=node.id, node_type=node.type, node_label=node.label,
            executed_at=run.now, **fields,
        )

    async def _set_variable(self, context: ConversationContext, name: str, value: Any) -> None:
        previous = context.variables.get(name)
        context.variables[name] = value
        if previous != value:
            await self._observe(context, VARIABLE_CHANGED, variable=name, old=previous, new=value)

    async def _observe(self, context: ConversationContext, event: str, **payload: Any) -> None:
        # Production contexts never reach the observer
        if not context.is_test_session:
            return
        await self.observer.emit(context.id, event, payload)
