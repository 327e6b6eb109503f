"""
Chatbot Registry — Resolves which chatbot drives a conversation and caches
its indexed graph.

Graphs are cached per (chatbot_id, version). A chatbot edit bumps its
version, so the next lookup rebuilds the graph; contexts created before the
edit keep executing against the current graph and fail with
GraphError(NODE_NOT_FOUND) if their position was removed.

Resolution order for a new context:
  1. Explicit chatbot id (test sessions, API callers). Must exist.
  2. The most recently updated chatbot with is_active set.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseContextStore
from flows.graph import FlowGraph
from models.schemas import Chatbot

logger = structlog.get_logger()


class ChatbotNotFoundError(LookupError):
    """No chatbot matches the requested id (or none is active)."""


class ChatbotRegistry:
    """Read-through cache of FlowGraphs backed by the context store."""

    def __init__(self, store: BaseContextStore):
        self._store = store
        self._graphs: dict[tuple[str, int], FlowGraph] = {}

    def graph_for(self, chatbot: Chatbot) -> FlowGraph:
        key = (chatbot.id, chatbot.version)
        graph = self._graphs.get(key)
        if graph is None:
            # Older versions of this chatbot are never needed again
            for stale in [k for k in self._graphs if k[0] == chatbot.id]:
                del self._graphs[stale]
            graph = FlowGraph(chatbot)
            self._graphs[key] = graph
            for warning in graph.warnings():
                logger.warning("chatbot_graph_warning", chatbot_id=chatbot.id, warning=warning)
        return graph

    async def get_graph(self, chatbot_id: str) -> FlowGraph:
        chatbot = await self._store.get_chatbot(chatbot_id)
        if chatbot is None:
            raise ChatbotNotFoundError(f"chatbot {chatbot_id} not found")
        return self.graph_for(chatbot)

    async def select_chatbot(self, chatbot_id: Optional[str] = None) -> Chatbot:
        """Pick the chatbot that should start a new context."""
        if chatbot_id:
            chatbot = await self._store.get_chatbot(chatbot_id)
            if chatbot is None:
                raise ChatbotNotFoundError(f"chatbot {chatbot_id} not found")
            return chatbot
        chatbot = await self._store.find_active_chatbot()
        if chatbot is None:
            raise ChatbotNotFoundError("no active chatbot")
        return chatbot

    def invalidate(self, chatbot_id: Optional[str] = None) -> None:
        if chatbot_id is None:
            self._graphs.clear()
            return
        for key in [k for k in self._graphs if k[0] == chatbot_id]:
            del self._graphs[key]
