"""Tests for placeholder id reconciliation."""

from __future__ import annotations

from graphive.graph.reconcile import reconcile_node_id
from graphive.graph.state import GraphState

from conftest import make_edge, make_node


def _state(nodes, edges=()) -> GraphState:
    state = GraphState()
    state.replace(list(nodes), list(edges))
    return state


def test_rename_keeps_order_and_repoints_edges():
    state = _state(
        [make_node("a"), make_node("draft-1", x=50), make_node("c")],
        [make_edge("e1", "a", "draft-1"), make_edge("e2", "draft-1", "c")],
    )
    assert reconcile_node_id(state, "draft-1", "42") is True
    assert list(state.nodes) == ["a", "42", "c"]
    assert state.nodes["42"].position.x == 50
    assert state.edges["e1"].target == "42"
    assert state.edges["e2"].source == "42"


def test_collision_keeps_placeholder_and_drops_duplicate():
    state = _state(
        [make_node("draft-1", label="mine"), make_node("42", label="theirs"), make_node("b")],
        [make_edge("dup", "42", "b"), make_edge("loop", "draft-1", "42")],
    )
    reconcile_node_id(state, "draft-1", "42")
    assert list(state.nodes) == ["42", "b"]
    assert state.nodes["42"].label == "mine"
    # Edges of the duplicate now hang off the reconciled node
    assert state.edges["dup"].source == "42"
    assert "loop" not in state.edges


def test_unknown_placeholder():
    state = _state([make_node("a")])
    assert reconcile_node_id(state, "missing", "42") is False
    assert list(state.nodes) == ["a"]
