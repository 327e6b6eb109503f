"""
Execution observability hooks for test sessions.

The engine reports what it does to an ExecutionObserver only when the
context is a test session; production contexts never reach an observer.

Event names:
  test-started, node-entered, node-executed, node-exited, variable-changed,
  waiting-input, bot-response, flow-sent, flow-response, completed, error,
  test-paused, test-resumed
"""
from __future__ import annotations

import structlog
from collections import OrderedDict, deque
from typing import Any, Awaitable, Callable

from models.schemas import TestEvent

logger = structlog.get_logger()

TEST_STARTED = "test-started"
NODE_ENTERED = "node-entered"
NODE_EXECUTED = "node-executed"
NODE_EXITED = "node-exited"
VARIABLE_CHANGED = "variable-changed"
WAITING_INPUT = "waiting-input"
BOT_RESPONSE = "bot-response"
FLOW_SENT = "flow-sent"
FLOW_RESPONSE = "flow-response"
COMPLETED = "completed"
ERROR = "error"
TEST_PAUSED = "test-paused"
TEST_RESUMED = "test-resumed"

Listener = Callable[[TestEvent], Awaitable[None]]


class ExecutionObserver:
    """No-op observer. Subclasses override emit()."""

    async def emit(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        return None


class TestSessionRecorder(ExecutionObserver):
    """
    Buffers events per test session so a client can replay them, and fans
    them out to live listeners (e.g. a WebSocket bridge).

    Only the `max_sessions` most recently active sessions keep a buffer;
    older ones are evicted whole when a new session starts emitting.
    """
    __test__ = False

    def __init__(self, max_events_per_session: int = 500, max_sessions: int = 200):
        self.max_events_per_session = max_events_per_session
        self.max_sessions = max_sessions
        self._events: OrderedDict[str, deque[TestEvent]] = OrderedDict()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def emit(self, session_id: str, event: str, payload: dict[str, Any]) -> None:
        record = TestEvent(session_id=session_id, event=event, payload=payload)
        self._buffer(session_id).append(record)
        for listener in list(self._listeners):
            try:
                await listener(record)
            except Exception as e:
                # Listener failures never reach the engine
                logger.warning("test_listener_failed", session_id=session_id,
                               test_event=event, error=str(e))

    def _buffer(self, session_id: str) -> deque[TestEvent]:
        buffer = self._events.get(session_id)
        if buffer is not None:
            self._events.move_to_end(session_id)
            return buffer
        while len(self._events) >= self.max_sessions:
            evicted, _ = self._events.popitem(last=False)
            logger.debug("test_events_evicted", session_id=evicted)
        buffer = self._events[session_id] = deque(maxlen=self.max_events_per_session)
        return buffer

    def events(self, session_id: str) -> list[TestEvent]:
        return list(self._events.get(session_id, ()))

    def names(self, session_id: str) -> list[str]:
        return [e.event for e in self.events(session_id)]

    def clear(self, session_id: str) -> None:
        self._events.pop(session_id, None)

    @property
    def session_count(self) -> int:
        return len(self._events)
