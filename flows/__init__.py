"""Chatbot graphs: indexed execution view, registry, export/import."""
from flows.graph import FlowGraph
from flows.registry import ChatbotRegistry, ChatbotNotFoundError

__all__ = ["FlowGraph", "ChatbotRegistry", "ChatbotNotFoundError"]
