"""Swap a local placeholder id for the id the backend assigned."""

from __future__ import annotations

import logging

from graphive.graph.state import GraphState

logger = logging.getLogger("graphive.graph.reconcile")


def reconcile_node_id(state: GraphState, old_id: str, new_id: str) -> bool:
    """Rename node ``old_id`` to ``new_id`` on the node and every edge.

    Position, size and data are kept, as is the node's place in iteration
    order. If ``new_id`` is already on the canvas (a query brought it in
    while the commit was in flight) the placeholder wins and the duplicate's
    edges are repointed to it.
    """
    node = state.nodes.get(old_id)
    if node is None:
        return False
    if old_id == new_id:
        return True

    if new_id in state.nodes:
        logger.debug("Reconciled id %s already on canvas; merging into placeholder", new_id)
        del state.nodes[new_id]

    renamed = node.model_copy(update={"id": new_id})
    state.nodes = {(new_id if k == old_id else k): (renamed if k == old_id else v) for k, v in state.nodes.items()}

    for edge_id, edge in list(state.edges.items()):
        if old_id not in (edge.source, edge.target):
            continue
        source = new_id if edge.source == old_id else edge.source
        target = new_id if edge.target == old_id else edge.target
        if source == target:
            # Only a draft edge to the merged duplicate can collapse like this
            del state.edges[edge_id]
            continue
        state.edges[edge_id] = edge.model_copy(update={"source": source, "target": target})
    return True
