"""
Engine error taxonomy.

GraphError and ExternalCallError are caught inside the execution engine and
converted into a failed context (or an error branch for action nodes).
ConflictError and StoreError are surfaced to the caller, which drops,
requeues or reports the event.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class FlowEngineError(Exception):
    """Base exception for the execution engine."""


class GraphErrorKind(str, Enum):
    NO_START_NODE = "no_start_node"
    DEAD_END = "dead_end"
    NO_MATCHING_BRANCH = "no_matching_branch"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    NODE_NOT_FOUND = "node_not_found"
    INVALID_NODE = "invalid_node"


class GraphError(FlowEngineError):
    """The chatbot graph cannot be walked from the current position."""

    def __init__(self, kind: GraphErrorKind, message: str = "", node_id: Optional[str] = None):
        self.kind = kind
        self.node_id = node_id
        super().__init__(message or f"{kind.value} at node {node_id!r}")

    @property
    def completion_reason(self) -> str:
        return self.kind.value


class ConflictErrorKind(str, Enum):
    ALREADY_TERMINAL = "already_terminal"
    CONCURRENT_CONTEXT = "concurrent_context"
    STALE_WRITE = "stale_write"
    SESSION_PAUSED = "session_paused"


class ConflictError(FlowEngineError):
    """The requested transition collides with the stored context state."""

    def __init__(
        self, kind: ConflictErrorKind, message: str = "",
        conversation_id: str = "", context_id: str = "",
    ):
        self.kind = kind
        self.conversation_id = conversation_id
        self.context_id = context_id
        super().__init__(message or f"{kind.value} (conversation={conversation_id}, context={context_id})")


class StoreError(FlowEngineError):
    """The context store could not complete an operation."""


class ExternalCallError(FlowEngineError):
    """
    An action node's REST call failed after the executor's own retries.
    The engine never retries; it treats this as the node's final outcome.
    """

    def __init__(
        self, message: str, status_code: Optional[int] = None,
        transient: bool = False, response: Any = None,
    ):
        self.status_code = status_code
        self.transient = transient
        self.response = response
        super().__init__(message)


class ContextNotFoundError(FlowEngineError, LookupError):
    """An event or operation addressed a context id that does not exist."""

    def __init__(self, context_id: str):
        self.context_id = context_id
        super().__init__(f"context {context_id} not found")
