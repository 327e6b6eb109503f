"""
Flow Graph — read-only, indexed view over a chatbot's nodes and edges.

Usage:
    graph = FlowGraph(chatbot)
    start = graph.resolve_start_node()          # first start marker in node order
    edges = graph.outgoing_edges(start)
    nxt = graph.next_node_id(node_id, "true")   # handle match, then default edge
"""
from __future__ import annotations

from typing import Optional

from core.errors import GraphError, GraphErrorKind
from models.schemas import Chatbot, Edge, Node, NodeType

# Edge handles that mark the fallback branch of a node
DEFAULT_HANDLES = frozenset({None, "", "default", "else"})

# Builder spellings that mean the same branch of a comparison
HANDLE_EQUIVALENTS: dict[str, tuple[str, ...]] = {
    "true": ("true", "yes"),
    "false": ("false", "no"),
}


class FlowGraph:
    """A chatbot graph indexed for execution. Never mutated after construction."""

    def __init__(self, chatbot: Chatbot):
        self.chatbot_id = chatbot.id
        self.version = chatbot.version
        self._nodes: dict[str, Node] = {}
        self._order: list[str] = []
        self._outgoing: dict[str, list[Edge]] = {}
        for node in chatbot.nodes:
            # Duplicate ids: first definition wins, like start resolution
            if node.id not in self._nodes:
                self._nodes[node.id] = node
                self._order.append(node.id)
        for edge in chatbot.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def nodes(self) -> list[Node]:
        return [self._nodes[n] for n in self._order]

    # ── Lookups ───────────────────────────────────────────

    def resolve_start_node(self) -> str:
        for node_id in self._order:
            if self._nodes[node_id].type == NodeType.START:
                return node_id
        raise GraphError(GraphErrorKind.NO_START_NODE, f"chatbot {self.chatbot_id} has no start node")

    def node_by_id(self, node_id: str) -> Node:
        node = self._nodes.get(node_id)
        if node is None:
            raise GraphError(
                GraphErrorKind.NODE_NOT_FOUND,
                f"node {node_id!r} not found in chatbot {self.chatbot_id}",
                node_id=node_id,
            )
        return node

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def default_edge(self, node_id: str) -> Optional[Edge]:
        return next(
            (e for e in self._outgoing.get(node_id, []) if e.source_handle in DEFAULT_HANDLES),
            None,
        )

    def edge_for_handle(self, node_id: str, handle: Optional[str]) -> Optional[Edge]:
        """
        Exact handle match first, then builder-equivalent spellings
        (true/yes, false/no), then the node's default edge.
        """
        edges = self._outgoing.get(node_id, [])
        if handle is not None:
            for edge in edges:
                if edge.source_handle == handle:
                    return edge
            for alias in HANDLE_EQUIVALENTS.get(handle, ()):
                for edge in edges:
                    if edge.source_handle == alias:
                        return edge
        return self.default_edge(node_id)

    def single_successor(self, node_id: str) -> Optional[str]:
        """
        Target of a linear node's outgoing edge. Prefers the default edge
        when a node carries several; None when there are no edges.
        """
        edges = self._outgoing.get(node_id, [])
        if not edges:
            return None
        edge = self.default_edge(node_id) or edges[0]
        return edge.target

    def next_node_id(self, node_id: str, handle: Optional[str] = None) -> Optional[str]:
        edge = self.edge_for_handle(node_id, handle)
        return edge.target if edge else None

    # ── Validation ────────────────────────────────────────

    def validate(self) -> list[str]:
        """Structural problems that would make execution fail. Empty when sound."""
        errors: list[str] = []
        starts = [n for n in self._order if self._nodes[n].type == NodeType.START]
        if not starts:
            errors.append("no start node")
        for source, edges in self._outgoing.items():
            if source not in self._nodes:
                errors.append(f"edge source {source!r} does not exist")
            for edge in edges:
                if edge.target not in self._nodes:
                    errors.append(f"edge {edge.id} target {edge.target!r} does not exist")
        return errors

    def warnings(self) -> list[str]:
        """Non-fatal ambiguities worth surfacing to the builder."""
        starts = [n for n in self._order if self._nodes[n].type == NodeType.START]
        found: list[str] = []
        if len(starts) > 1:
            found.append(f"multiple start nodes {starts}; {starts[0]!r} is used")
        for node_id in self._order:
            node = self._nodes[node_id]
            if node.type in (NodeType.MESSAGE, NodeType.START) and not self._outgoing.get(node_id) \
                    and not node.is_terminal:
                found.append(f"node {node_id!r} has no outgoing edge and is not terminal")
        return found
