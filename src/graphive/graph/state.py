"""Indexed node/edge containers and the immutable snapshot handed to observers."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from graphive.models import GraphEdge, GraphNode


@dataclass(frozen=True)
class GraphSnapshot:
    """Read-only view of the store after one transition."""

    nodes: tuple[GraphNode, ...] = ()
    edges: tuple[GraphEdge, ...] = ()
    in_flight: frozenset[str] = frozenset()
    # ids removed from view whose backend delete has not been confirmed
    pending_delete: frozenset[str] = frozenset()
    is_syncing: bool = False
    sync_error: str | None = None
    is_loading: bool = False
    query_error: str | None = None
    is_connected: bool = False
    version: int = 0
    _node_index: Mapping[str, GraphNode] = field(default_factory=dict, repr=False, compare=False)
    _edge_index: Mapping[str, GraphEdge] = field(default_factory=dict, repr=False, compare=False)

    def node(self, node_id: str) -> GraphNode | None:
        return self._node_index.get(node_id)

    def edge(self, edge_id: str) -> GraphEdge | None:
        return self._edge_index.get(edge_id)


class GraphState:
    """Insertion-ordered id -> entity maps. Every write replaces one entry."""

    def __init__(self) -> None:
        self.nodes: dict[str, GraphNode] = {}
        self.edges: dict[str, GraphEdge] = {}

    def node(self, node_id: str) -> GraphNode | None:
        return self.nodes.get(node_id)

    def edge(self, edge_id: str) -> GraphEdge | None:
        return self.edges.get(edge_id)

    def put_node(self, node: GraphNode) -> None:
        self.nodes[node.id] = node

    def put_edge(self, edge: GraphEdge) -> None:
        self.edges[edge.id] = edge

    def edges_touching(self, node_ids: set[str] | str) -> list[GraphEdge]:
        ids = {node_ids} if isinstance(node_ids, str) else node_ids
        return [e for e in self.edges.values() if e.source in ids or e.target in ids]

    def remove_edge(self, edge_id: str) -> GraphEdge | None:
        return self.edges.pop(edge_id, None)

    def remove_node(self, node_id: str) -> tuple[GraphNode | None, list[GraphEdge]]:
        """Remove a node and every edge referencing it; returns both for restore."""
        node = self.nodes.pop(node_id, None)
        if node is None:
            return None, []
        cascaded = self.edges_touching(node_id)
        for edge in cascaded:
            del self.edges[edge.id]
        return node, cascaded

    def restore_edge(self, edge: GraphEdge) -> bool:
        """Reinsert ``edge`` if both endpoints exist and the id is free."""
        if edge.id in self.edges or edge.source not in self.nodes or edge.target not in self.nodes:
            return False
        self.edges[edge.id] = edge
        return True

    def replace(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> None:
        self.nodes = {n.id: n for n in nodes}
        self.edges = {}
        for edge in edges:
            self.restore_edge(edge)

    def clear(self) -> None:
        self.nodes = {}
        self.edges = {}

    def snapshot(self, **flags: object) -> GraphSnapshot:
        return GraphSnapshot(
            nodes=tuple(self.nodes.values()),
            edges=tuple(self.edges.values()),
            _node_index=MappingProxyType(dict(self.nodes)),
            _edge_index=MappingProxyType(dict(self.edges)),
            **flags,  # type: ignore[arg-type]
        )
