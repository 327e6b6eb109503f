"""
Core data models for the FlowPilot chatbot engine.
These are the universal types shared across all modules.

Graph models (Node, Edge, node data) accept the flow builder's camelCase
JSON as well as snake_case keyword construction; dumping with
``by_alias=True`` reproduces the builder format.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    QUESTION = "question"
    CONDITION = "condition"
    ACTION = "action"
    WHATSAPP_FLOW = "whatsapp_flow"


# Builder node types that execute as one of the NodeType variants
NODE_TYPE_ALIASES: dict[str, NodeType] = {
    "rest_api": NodeType.ACTION,
    "webhook": NodeType.ACTION,
    "api_call": NodeType.ACTION,
}


class ChatbotStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DRAFT = "draft"


class ContextStatus(str, Enum):
    RUNNING = "running"
    WAITING_INPUT = "waiting_input"
    WAITING_FLOW = "waiting_flow"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    STOPPED = "stopped"


TERMINAL_STATUSES = frozenset({
    ContextStatus.COMPLETED, ContextStatus.FAILED,
    ContextStatus.EXPIRED, ContextStatus.STOPPED,
})


class CompletionReason(str, Enum):
    TERMINAL_NODE_REACHED = "terminal_node_reached"
    FLOW_COMPLETED = "flow_completed"
    NO_START_NODE = "no_start_node"
    DEAD_END = "dead_end"
    NO_MATCHING_BRANCH = "no_matching_branch"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    NODE_NOT_FOUND = "node_not_found"
    INVALID_NODE = "invalid_node"
    EXTERNAL_CALL_FAILED = "external_call_failed"
    SESSION_TIMEOUT = "session_timeout"
    USER_STOPPED = "user_stopped"
    FORCE_COMPLETED = "force_completed"


class ClosedBy(str, Enum):
    ENGINE = "engine"
    OPERATOR = "operator"
    SWEEPER = "sweeper"


class QuestionType(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"


class InboundKind(str, Enum):
    MESSAGE = "message"
    FLOW_RESPONSE = "flow_response"


class OutboundKind(str, Enum):
    TEXT = "text"
    BUTTONS = "buttons"
    LIST = "list"
    FLOW = "flow"


class TestMode(str, Enum):
    SIMULATE = "simulate"
    LIVE = "live"


# ──────────────────────────────────────────────────────────────
#  Graph: node data variants (tagged union on `type`)
# ──────────────────────────────────────────────────────────────

class BuilderModel(BaseModel):
    """Base for models that round-trip through the flow builder's JSON."""
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow",
    )


class ButtonOption(BuilderModel):
    id: str
    title: str


class ListRow(BuilderModel):
    id: str
    title: str
    description: str = ""


class ListSection(BuilderModel):
    title: str = ""
    rows: list[ListRow] = []


class ConditionClause(BuilderModel):
    """One comparison inside a condition node."""
    variable: str
    operator: str = "eq"      # see utils.conditions.OPERATORS
    value: Any = None


class _NodeDataBase(BuilderModel):
    label: str = ""
    terminal: bool = False    # reaching this node with no outgoing edge completes the flow


class StartNodeData(_NodeDataBase):
    type: Literal["start"] = "start"


class MessageNodeData(_NodeDataBase):
    type: Literal["message"] = "message"
    content: str = ""


class QuestionNodeData(_NodeDataBase):
    type: Literal["question"] = "question"
    content: str = ""
    variable: str = ""
    question_type: QuestionType = QuestionType.TEXT
    buttons: list[ButtonOption] = []
    list_button_text: str = "Select"
    list_sections: list[ListSection] = []
    header: str = Field("", validation_alias=AliasChoices("header", "headerText"))
    footer: str = Field("", validation_alias=AliasChoices("footer", "footerText"))
    # Options built at runtime from a list held in `variables`
    dynamic_source: str = Field(
        "", validation_alias=AliasChoices(
            "dynamic_source", "dynamicSource", "dynamicListSource", "dynamicButtonsSource"))
    dynamic_id_field: str = "id"
    dynamic_label_field: str = "name"
    dynamic_description_field: str = Field(
        "", validation_alias=AliasChoices(
            "dynamic_description_field", "dynamicDescriptionField", "dynamicDescField"))


class ConditionNodeData(_NodeDataBase):
    """
    Either a single comparison (variable/operator/value), a group of
    comparisons joined by `logic`, or a switch on a variable's value.
    Comparisons produce the handle "true"/"false"; a switch produces
    the variable's stringified value.
    """
    type: Literal["condition"] = "condition"
    variable: str = Field("", validation_alias=AliasChoices("variable", "conditionVar"))
    operator: str = Field("eq", validation_alias=AliasChoices("operator", "conditionOp"))
    value: Any = Field(None, validation_alias=AliasChoices("value", "conditionVal"))
    conditions: list[ConditionClause] = []
    logic: Literal["and", "or"] = "and"
    switch_variable: str = ""

    @model_validator(mode="before")
    @classmethod
    def _flatten_group(cls, raw: Any) -> Any:
        # Builder format: {"conditionGroup": {"conditions": [...], "logicalOperator": "AND"}}
        if isinstance(raw, dict) and isinstance(raw.get("conditionGroup"), dict):
            raw = dict(raw)
            group = raw.pop("conditionGroup")
            raw.setdefault("conditions", group.get("conditions", []))
            raw.setdefault("logic", str(group.get("logicalOperator", "and")).lower())
        return raw


class ActionNodeData(_NodeDataBase):
    """Outbound REST call. Accepts the builder's legacy `api*` keys."""
    type: Literal["action"] = "action"
    url: str = Field("", validation_alias=AliasChoices("url", "apiUrl"))
    method: str = Field("GET", validation_alias=AliasChoices("method", "apiMethod"))
    headers: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("headers", "apiHeaders"))
    body: Any = Field(None, validation_alias=AliasChoices("body", "apiBody"))
    query_params: dict[str, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("query_params", "queryParams", "apiQueryParams"))
    timeout_seconds: Optional[float] = Field(
        None, validation_alias=AliasChoices("timeout_seconds", "timeoutSeconds"))
    timeout_ms: Optional[int] = Field(
        None, validation_alias=AliasChoices("timeout_ms", "timeoutMs", "apiTimeout"))
    response_path: str = Field(
        "", validation_alias=AliasChoices("response_path", "responsePath", "apiResponsePath"))
    output_variable: str = Field(
        "", validation_alias=AliasChoices("output_variable", "outputVariable", "apiOutputVariable"))
    error_variable: str = Field(
        "", validation_alias=AliasChoices("error_variable", "errorVariable", "apiErrorVariable"))

    def effective_timeout(self, default: float) -> float:
        if self.timeout_seconds:
            return self.timeout_seconds
        if self.timeout_ms:
            return self.timeout_ms / 1000
        return default


class WhatsAppFlowNodeData(_NodeDataBase):
    """Interactive WhatsApp Flow. Accepts the builder's `flow*` keys."""
    type: Literal["whatsapp_flow"] = "whatsapp_flow"
    flow_id: str = Field(                   # remote WhatsApp flow id
        "", validation_alias=AliasChoices("flow_id", "flowId", "whatsappFlowId"))
    body: str = Field(
        "Please complete this form",
        validation_alias=AliasChoices("body", "flowBodyText", "content"))
    cta: str = Field("Start", validation_alias=AliasChoices("cta", "flowCta"))
    header: str = Field("", validation_alias=AliasChoices("header", "flowHeaderText", "headerText"))
    footer: str = Field("", validation_alias=AliasChoices("footer", "flowFooterText", "footerText"))
    mode: Literal["navigate", "data_exchange"] = Field(
        "navigate", validation_alias=AliasChoices("mode", "flowMode"))
    initial_screen: str = Field(
        "", validation_alias=AliasChoices("initial_screen", "initialScreen", "flowInitialScreen"))
    initial_data: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("initial_data", "initialData", "flowInitialData"))
    output_variable: str = Field(
        "", validation_alias=AliasChoices("output_variable", "outputVariable", "flowOutputVariable"))


NodeData = Annotated[
    Union[
        StartNodeData, MessageNodeData, QuestionNodeData,
        ConditionNodeData, ActionNodeData, WhatsAppFlowNodeData,
    ],
    Field(discriminator="type"),
]


def canonical_node_type(raw: Any) -> Optional[NodeType]:
    """Map a builder type marker to a NodeType (None when unrecognised)."""
    if isinstance(raw, NodeType):
        return raw
    if not isinstance(raw, str) or not raw:
        return None
    if raw in NODE_TYPE_ALIASES:
        return NODE_TYPE_ALIASES[raw]
    try:
        return NodeType(raw)
    except ValueError:
        return None


def resolve_node_type(root_marker: Any, data_marker: Any) -> Optional[NodeType]:
    """
    The builder marks node types either on the node itself or inside
    `data.type`. Either marker saying "start" makes it a start node;
    otherwise a recognised root marker wins over the nested one.
    """
    root = canonical_node_type(root_marker)
    nested = canonical_node_type(data_marker)
    if NodeType.START in (root, nested):
        return NodeType.START
    return root or nested


# ──────────────────────────────────────────────────────────────
#  Graph: nodes, edges, chatbot
# ──────────────────────────────────────────────────────────────

class Node(BuilderModel):
    id: str
    type: NodeType
    data: NodeData
    position: dict[str, float] = {}       # layout only

    @model_validator(mode="before")
    @classmethod
    def _normalize_type(cls, raw: Any) -> Any:
        if not isinstance(raw, dict):
            return raw
        raw = dict(raw)
        data = raw.get("data") or {}
        data_marker = data.type if isinstance(data, BaseModel) else data.get("type")
        node_type = resolve_node_type(raw.get("type"), data_marker)
        if node_type is None:
            raise ValueError(
                f"node {raw.get('id')!r} has no recognised type "
                f"(type={raw.get('type')!r}, data.type={data_marker!r})"
            )
        raw["type"] = node_type
        if isinstance(data, BaseModel):
            if data.type != node_type.value:
                data = data.model_dump(by_alias=True)
        if isinstance(data, dict):
            data = {**data, "type": node_type.value}
        raw["data"] = data
        return raw

    @property
    def label(self) -> str:
        return self.data.label or self.id

    @property
    def is_terminal(self) -> bool:
        return self.data.terminal


class Edge(BuilderModel):
    id: str = Field(default_factory=_new_id)
    source: str
    target: str
    source_handle: Optional[str] = None   # branch selector of the source node


class Chatbot(BaseModel):
    """A stored flow definition. Read-only input to the execution engine."""
    id: str = Field(default_factory=_new_id)
    name: str
    description: str = ""
    nodes: list[Node] = []
    edges: list[Edge] = []
    is_active: bool = False
    status: ChatbotStatus = ChatbotStatus.DRAFT
    metadata: dict[str, Any] = {}
    version: int = 1                      # bumped on every edit
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class DataSourceRef(BaseModel):
    id: str
    name: str = ""
    type: str = ""


class WhatsAppFlow(BaseModel):
    """A WhatsApp Flow (interactive form) definition."""
    id: str = Field(default_factory=_new_id)
    whatsapp_flow_id: Optional[str] = None   # id assigned by the Graph API
    name: str
    description: str = ""
    status: str = "DRAFT"
    categories: list[str] = []
    flow_json: dict[str, Any] = {}
    endpoint_uri: Optional[str] = None
    is_active: bool = True
    metadata: dict[str, Any] = {}
    data_source: Optional[DataSourceRef] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Conversation: owns the WhatsApp messaging window
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    id: str = Field(default_factory=_new_id)
    phone_number: str = ""
    contact_name: str = ""
    last_customer_message_at: Optional[datetime] = None
    is_window_open: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Execution state
# ──────────────────────────────────────────────────────────────

class NodeOutput(BaseModel):
    """What a node produced the last time it executed."""
    node_id: str
    node_type: NodeType
    node_label: str = ""
    executed_at: datetime = Field(default_factory=_utcnow)
    success: bool = True
    duration_ms: float = 0.0
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    user_response: Optional[str] = None
    button_id: Optional[str] = None
    list_row_id: Optional[str] = None
    flow_response: Optional[dict[str, Any]] = None
    output_variable: Optional[str] = None


class TestMetadata(BaseModel):
    __test__ = False

    selected_user_id: Optional[str] = None
    test_phone_number: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    test_mode: TestMode = TestMode.SIMULATE
    notes: str = ""
    user_agent: str = ""


MAX_REMEMBERED_EVENTS = 50


class ConversationContext(BaseModel):
    """
    Persisted execution state binding one conversation to its position
    within a chatbot graph. At most one non-terminal context exists per
    conversation at a time.
    """
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    chatbot_id: str
    chatbot_version: int = 1
    current_node_id: str
    variables: dict[str, Any] = {}
    node_history: list[str] = []              # append-only
    node_outputs: dict[str, NodeOutput] = {}
    status: ContextStatus = ContextStatus.RUNNING
    expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    completion_reason: Optional[str] = None
    closed_by: Optional[ClosedBy] = None
    processed_event_ids: list[str] = []
    is_test_session: bool = False
    test_metadata: Optional[TestMetadata] = None
    paused: bool = False
    revision: int = 0                         # bumped on every save
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    def is_expired(self, now: datetime) -> bool:
        return self.is_active and self.expires_at is not None and self.expires_at < now

    def has_processed(self, event_id: str) -> bool:
        return bool(event_id) and event_id in self.processed_event_ids

    def remember_event(self, event_id: str) -> None:
        if not event_id or event_id in self.processed_event_ids:
            return
        self.processed_event_ids.append(event_id)
        del self.processed_event_ids[:-MAX_REMEMBERED_EVENTS]

    def push_history(self, node_id: str) -> None:
        if not self.node_history or self.node_history[-1] != node_id:
            self.node_history.append(node_id)

    def touch(self, now: datetime, timeout: timedelta) -> None:
        self.updated_at = now
        self.expires_at = now + timeout

    def close(
        self, status: ContextStatus, reason: str,
        closed_by: ClosedBy = ClosedBy.ENGINE, now: Optional[datetime] = None,
    ) -> None:
        now = now or _utcnow()
        self.status = status
        self.completion_reason = reason
        self.completed_at = now
        self.closed_by = closed_by
        self.expires_at = None
        self.updated_at = now


# ──────────────────────────────────────────────────────────────
#  Events: inbound customer input, outbound messages
# ──────────────────────────────────────────────────────────────

class InboundEvent(BaseModel):
    """A customer message (or WhatsApp Flow completion) for one conversation."""
    conversation_id: str
    kind: InboundKind = InboundKind.MESSAGE
    event_id: str = ""                        # channel message id, used for dedup
    text: str = ""
    message_type: str = "text"
    button_id: Optional[str] = None
    list_row_id: Optional[str] = None
    flow_token: Optional[str] = None
    flow_response: Optional[dict[str, Any]] = None
    sender_phone: str = ""
    sender_name: str = ""
    context_id: Optional[str] = None          # set when addressed to a specific context
    restart: bool = False                     # allow a new context after an operator stop
    received_at: datetime = Field(default_factory=_utcnow)
    metadata: dict[str, Any] = {}

    @property
    def selection_id(self) -> Optional[str]:
        return self.button_id or self.list_row_id


class OutboundMessage(BaseModel):
    """A rendered message queued by the engine, sent after persistence."""
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    context_id: str = ""
    node_id: str = ""
    recipient: str = ""
    kind: OutboundKind = OutboundKind.TEXT
    text: str = ""
    header: str = ""
    footer: str = ""
    buttons: list[ButtonOption] = []
    list_button_text: str = ""
    list_sections: list[ListSection] = []
    flow: dict[str, Any] = {}                 # flow_id, flow_token, cta, mode, screen, data
    requires_template: bool = False           # window closed: only an approved template may be sent
    template_name: Optional[str] = None
    template_language: str = "en"


class DeliveryReceipt(BaseModel):
    outbound_id: str
    message_id: Optional[str] = None
    delivered: bool = True
    error: Optional[str] = None
    transient: bool = False


class ExecutionResult(BaseModel):
    """Outcome of processing one inbound event."""
    context: Optional[ConversationContext] = None
    outbound: list[OutboundMessage] = []
    receipts: list[DeliveryReceipt] = []
    created: bool = False
    duplicate: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> Optional[ContextStatus]:
        return self.context.status if self.context else None


class TestEvent(BaseModel):
    """Observability event recorded for a test session."""
    __test__ = False

    session_id: str
    event: str                                # e.g. "node-entered", "variable-changed"
    timestamp: datetime = Field(default_factory=_utcnow)
    payload: dict[str, Any] = {}
