"""Hierarchical placement for nodes that arrive from a query.

A pure function of ``(nodes, edges)``: the store calls it only for nodes it
has never positioned before.
"""

from __future__ import annotations

from typing import Callable, Iterable

import networkx as nx

from graphive.config import LayoutConfig
from graphive.models import GraphEdge, GraphNode, Position

LayoutFn = Callable[[list[GraphNode], list[GraphEdge]], list[GraphNode]]


def build_digraph(node_ids: Iterable[str], edges: Iterable[GraphEdge]) -> nx.DiGraph:
    graph = nx.DiGraph()
    graph.add_nodes_from(node_ids)
    for edge in edges:
        if edge.source in graph and edge.target in graph and edge.source != edge.target:
            graph.add_edge(edge.source, edge.target)
    return graph


def rank_nodes(graph: nx.DiGraph) -> dict[str, int]:
    """Longest-path style rank per node; cycles are collapsed onto one rank."""
    condensed = nx.condensation(graph)
    ranks: dict[str, int] = {}
    for rank, generation in enumerate(nx.topological_generations(condensed)):
        for component in generation:
            for member in condensed.nodes[component]["members"]:
                ranks[member] = rank
    return ranks


def layered_layout(
    nodes: list[GraphNode],
    edges: list[GraphEdge],
    config: LayoutConfig | None = None,
) -> list[GraphNode]:
    """Assign positions rank by rank, top-to-bottom (or left-to-right)."""
    cfg = config or LayoutConfig()
    if not nodes:
        return []
    order = {node.id: i for i, node in enumerate(nodes)}
    ranks = rank_nodes(build_digraph(order, edges))

    rows: dict[int, list[str]] = {}
    for node_id in sorted(ranks, key=lambda n: (ranks[n], order[n])):
        rows.setdefault(ranks[node_id], []).append(node_id)

    positions: dict[str, Position] = {}
    for rank, members in rows.items():
        for index, node_id in enumerate(members):
            node = nodes[order[node_id]]
            width = node.width or cfg.node_width
            height = node.height or cfg.node_height
            across = index * (cfg.node_width + cfg.node_sep)
            down = rank * (cfg.node_height + cfg.rank_sep)
            x, y = (down, across) if cfg.direction == "LR" else (across, down)
            # Positions are top-left corners centred on the slot
            positions[node_id] = Position(
                x=x + (cfg.node_width - width) / 2,
                y=y + (cfg.node_height - height) / 2,
            )

    return [node.model_copy(update={"position": positions[node.id]}) for node in nodes]


def make_layout(config: LayoutConfig | None = None) -> LayoutFn:
    def layout(nodes: list[GraphNode], edges: list[GraphEdge]) -> list[GraphNode]:
        return layered_layout(nodes, edges, config)

    return layout


def descendants(node_id: str, edges: Iterable[GraphEdge]) -> set[str]:
    """Every node reachable from ``node_id`` along edge direction."""
    edges = list(edges)
    ids = {e.source for e in edges} | {e.target for e in edges} | {node_id}
    return nx.descendants(build_digraph(ids, edges), node_id)
