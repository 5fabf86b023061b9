"""Tests for draft node lifecycle and id reconciliation in GraphStore."""

from __future__ import annotations

import pytest

from graphive.errors import ErrorCode, GraphiveError
from graphive.graph.notifications import NotificationLevel
from graphive.models import Connection, EntityStatus, GraphNode, GraphProjection

from conftest import make_node


# ------------------------------------------------------------------ #
#  Drafts                                                             #
# ------------------------------------------------------------------ #

class TestCreateDraft:
    def test_draft_is_local_only(self, store, adapter):
        node_id = store.create_draft_node(position=(10, 20))
        node = store.snapshot.node(node_id)
        assert node.status == EntityStatus.DRAFT
        assert node.data["isDraft"] is True
        assert node.data["isEditing"] is True
        assert (node.position.x, node.position.y) == (10, 20)
        assert adapter.calls == []

    def test_placeholder_ids_are_unique(self, store):
        first = store.create_draft_node()
        second = store.create_draft_node()
        assert first != second

    def test_discard_removes_draft_and_its_edges(self, store):
        store.replace_graph([make_node("p")], [])
        draft = store.create_draft_node()
        store.create_draft_edge(Connection(source=draft, target="p"))
        assert store.discard_draft_node(draft) is True
        assert store.snapshot.node(draft) is None
        assert store.snapshot.edges == ()

    def test_discard_ignores_persisted_node(self, seeded):
        assert seeded.discard_draft_node("a") is False
        assert seeded.snapshot.node("a") is not None


class TestCommitDraft:
    @pytest.mark.asyncio
    async def test_commit_swaps_placeholder_for_permanent_id(self, store, adapter):
        adapter.results["create_node"] = "42"
        draft = store.create_draft_node()
        task = store.commit_draft_node(draft, "  Alice ")

        committing = store.snapshot.node(draft)
        assert committing.status == EntityStatus.COMMITTING
        assert committing.label == "Alice"
        assert draft in store.snapshot.in_flight
        assert store.snapshot.is_syncing is True

        await task
        snap = store.snapshot
        assert snap.node(draft) is None
        node = snap.node("42")
        assert node.status == EntityStatus.PERSISTED
        assert node.data["_elementId"] == "42"
        assert node.data["isDraft"] is False
        assert snap.in_flight == frozenset()
        assert snap.is_syncing is False
        assert adapter.called("create_node") == [("Alice",)]

    @pytest.mark.asyncio
    async def test_commit_keeps_position_and_order(self, store, adapter):
        adapter.results["create_node"] = "42"
        store.replace_graph([make_node("first")], [])
        draft = store.create_draft_node(position=(5, 6))
        store.replace_graph([*store.snapshot.nodes, make_node("last")], [])
        await store.commit_draft_node(draft, "New")
        assert [n.id for n in store.snapshot.nodes] == ["first", "42", "last"]
        assert store.snapshot.node("42").position.x == 5

    @pytest.mark.asyncio
    async def test_edges_follow_reconciled_id(self, store, adapter):
        adapter.results["create_node"] = "42"
        store.replace_graph([make_node("p")], [])
        draft = store.create_draft_node()
        edge_id = store.create_draft_edge(Connection(source=draft, target="p"))
        await store.commit_draft_node(draft, "New")
        edge = store.snapshot.edge(edge_id)
        assert edge.source == "42"
        assert edge.target == "p"

    @pytest.mark.asyncio
    async def test_empty_label_discards(self, store, adapter):
        draft = store.create_draft_node()
        assert store.commit_draft_node(draft, "   ") is None
        assert store.snapshot.node(draft) is None
        assert adapter.calls == []

    @pytest.mark.asyncio
    async def test_failure_removes_node_and_notifies(self, store, adapter):
        adapter.fail("create_node", GraphiveError("boom"))
        draft = store.create_draft_node()
        await store.commit_draft_node(draft, "Alice")
        assert store.snapshot.node(draft) is None
        note = store.notifications.history[-1]
        assert note.level == NotificationLevel.ERROR
        assert "Failed to create node" in note.message
        assert store.snapshot.in_flight == frozenset()

    @pytest.mark.asyncio
    async def test_uniqueness_failure_names_the_value(self, store, adapter):
        adapter.fail("create_node", GraphiveError("Node already exists", code=ErrorCode.CONSTRAINT_VIOLATION))
        draft = store.create_draft_node()
        await store.commit_draft_node(draft, "Alice")
        note = store.notifications.history[-1]
        assert note.code == ErrorCode.CONSTRAINT_VIOLATION
        assert note.message == 'Name "Alice" already exists'

    @pytest.mark.asyncio
    async def test_not_connected_is_a_distinct_failure(self, store, registry):
        registry._adapter = None
        draft = store.create_draft_node()
        await store.commit_draft_node(draft, "Alice")
        note = store.notifications.history[-1]
        assert note.code == ErrorCode.NOT_CONNECTED
        assert "Not connected" in note.message

    @pytest.mark.asyncio
    async def test_second_commit_is_ignored_while_in_flight(self, store, adapter):
        gate = adapter.hold("create_node")
        draft = store.create_draft_node()
        task = store.commit_draft_node(draft, "Alice")
        assert store.commit_draft_node(draft, "Bob") is None
        assert store.discard_draft_node(draft) is False
        gate.set()
        await task
        assert len(adapter.called("create_node")) == 1

    @pytest.mark.asyncio
    async def test_node_removed_before_answer_is_not_resurrected(self, store, adapter):
        gate = adapter.hold("create_node")
        draft = store.create_draft_node()
        task = store.commit_draft_node(draft, "Alice")
        store.clear_canvas()
        gate.set()
        await task
        assert store.snapshot.nodes == ()

    @pytest.mark.asyncio
    async def test_query_bringing_permanent_id_mid_commit_leaves_one_node(self, store, adapter):
        adapter.results["create_node"] = "42"
        gate = adapter.hold("create_node")
        draft = store.create_draft_node()
        task = store.commit_draft_node(draft, "Alice")
        store.merge_projection(GraphProjection(nodes=[GraphNode(id="42", data={"label": "Alice"})]))
        gate.set()
        await task
        ids = [n.id for n in store.snapshot.nodes]
        assert ids == ["42"]
