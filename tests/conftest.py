"""Shared test fixtures for FlowPilot."""
import uuid
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import httpx
from tenacity import wait_none

from backend.connector import RestActionExecutor
from channels.simulator import SimulatedSender
from config.settings import Settings
from core.orchestrator import FlowOrchestrator, build_orchestrator
from database.store_memory import InMemoryContextStore
from models.schemas import Chatbot, ChatbotStatus, Edge, InboundEvent, Node


class FakeClock:
    """Deterministic clock injected into the engine and sweeper."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ──────────────────────────────────────────────────────────────
#  Graph builders
# ──────────────────────────────────────────────────────────────

def node(node_id: str, node_type: str, **data: Any) -> Node:
    return Node.model_validate({"id": node_id, "type": node_type, "data": {"type": node_type, **data}})


def edge(source: str, target: str, handle: Optional[str] = None) -> Edge:
    return Edge(id=f"{source}->{target}:{handle or ''}", source=source, target=target,
                source_handle=handle)


def make_chatbot(
    nodes: list[Node], edges: list[Edge], chatbot_id: str = "bot-1",
    active: bool = True, name: str = "Test bot",
) -> Chatbot:
    return Chatbot(
        id=chatbot_id, name=name, nodes=nodes, edges=edges, is_active=active,
        status=ChatbotStatus.ACTIVE if active else ChatbotStatus.DRAFT,
    )


def mock_executor(handler: Callable[[httpx.Request], httpx.Response]) -> RestActionExecutor:
    """RestActionExecutor whose HTTP calls are answered by `handler`."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RestActionExecutor(client=client, retry_wait=wait_none())


async def say(
    orchestrator: FlowOrchestrator, conversation_id: str, text: str = "",
    event_id: Optional[str] = None, **fields: Any,
):
    """Deliver a customer message stamped with the engine's clock."""
    event = InboundEvent(
        conversation_id=conversation_id,
        text=text,
        event_id=event_id or f"wamid.{uuid.uuid4().hex}",
        received_at=orchestrator.engine.now(),
        **fields,
    )
    return await orchestrator.handle_event(event)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest.fixture
def greeting_bot() -> Chatbot:
    """start → "Hi" → ask name → "Hello {{name}}" (terminal)."""
    return make_chatbot(
        nodes=[
            node("start", "start"),
            node("hi", "message", content="Hi"),
            node("ask", "question", content="What is your name?", variable="name"),
            node("hello", "message", content="Hello {{name}}", terminal=True),
        ],
        edges=[edge("start", "hi"), edge("hi", "ask"), edge("ask", "hello")],
    )


@pytest.fixture
def store() -> InMemoryContextStore:
    return InMemoryContextStore()


@pytest.fixture
def sender() -> SimulatedSender:
    return SimulatedSender()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    settings = Settings()
    settings.sweeper.enabled = False
    return settings


@pytest.fixture
def make_orchestrator(store, sender, clock, settings):
    def factory(executor: Optional[RestActionExecutor] = None, **engine_overrides: Any) -> FlowOrchestrator:
        for key, value in engine_overrides.items():
            setattr(settings.engine, key, value)
        return build_orchestrator(
            settings, store=store, sender=sender,
            executor=executor or RestActionExecutor(retry_wait=wait_none()),
            clock=clock,
        )
    return factory
