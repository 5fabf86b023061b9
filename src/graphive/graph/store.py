"""Graph state store: the canonical canvas graph and its optimistic writes.

Every mutating method runs synchronously up to the point where the local
state reflects the intent, then schedules exactly one backend call as an
asyncio task and returns it (or ``None`` when the intent was rejected or
needs no backend call). The task applies success or rollback when the call
resolves and always clears the entity's in-flight marker.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import Counter
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable

from graphive.adapters.base import DEFAULT_REL_TYPE, GraphAdapter, validate_identifier
from graphive.config import Config
from graphive.errors import (
    NETWORK_CODES,
    ErrorCode,
    Failure,
    InvalidIdentifierError,
    describe_failure,
)
from graphive.graph.notifications import NotificationCenter
from graphive.graph.protocol import (
    MISSING,
    FieldPath,
    Patch,
    apply_patch,
    attr_path,
    data_path,
    revert_patch,
)
from graphive.graph.reconcile import reconcile_node_id
from graphive.graph.state import GraphSnapshot, GraphState
from graphive.layout import LayoutFn, descendants, make_layout
from graphive.logging_setup import operation_scope
from graphive.models import (
    Connection,
    EntityStatus,
    GraphEdge,
    GraphNode,
    GraphProjection,
    Position,
)
from graphive.registry import AdapterRegistry

logger = logging.getLogger("graphive.graph.store")

Listener = Callable[[GraphSnapshot], None]

# data keys the canvas and the sync protocol own; not editable as properties
RESERVED_KEYS = frozenset({"id", "label", "_elementId", "_labels", "isDraft", "isEditing", "collapsed", "_displayKey", "_type"})
# Canvas-only data keys kept across a refresh
_VIEW_KEYS = ("isEditing", "collapsed", "_displayKey")

# Failures whose raw backend text is replaced by a fixed message
_DESCRIBED_CODES = frozenset({ErrorCode.NOT_CONNECTED, ErrorCode.PARTIAL_FAILURE, ErrorCode.CONSTRAINT_VIOLATION})


class DeleteMode(str, Enum):
    HIDE_ONLY = "hide_only"
    HIDE_AND_PERSIST_DELETE = "hide_and_persist_delete"


class GraphStore:
    """Authoritative in-memory graph plus sync and health flags."""

    def __init__(
        self,
        registry: AdapterRegistry,
        layout: LayoutFn | None = None,
        config: Config | None = None,
        notifications: NotificationCenter | None = None,
    ) -> None:
        cfg = config or registry.config
        self._registry = registry
        self._config = cfg
        self._state = GraphState()
        self._layout = layout or make_layout(cfg.layout)
        self.notifications = notifications or NotificationCenter(cfg.sync.notification_history)
        self._listeners: list[Listener] = []
        # entity id -> structural operation holding it (commit/delete/migrate/reverse)
        self._owners: dict[str, str] = {}
        self._in_flight: Counter[str] = Counter()
        # removed entities kept, status pending_delete, until the backend confirms
        self._pending_delete: dict[str, GraphNode | GraphEdge] = {}
        self._tasks: set[asyncio.Task] = set()
        self._draft_seq = itertools.count(1)
        self._sync_error: str | None = None
        self._is_loading = False
        self._query_error: str | None = None
        self._is_connected = False
        self._version = 0
        self._snapshot = self._state.snapshot()

    # ------------------------------------------------------------------ #
    #  Observation                                                         #
    # ------------------------------------------------------------------ #

    @property
    def snapshot(self) -> GraphSnapshot:
        return self._snapshot

    @property
    def registry(self) -> AdapterRegistry:
        return self._registry

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        self._version += 1
        in_flight = frozenset(k for k, v in self._in_flight.items() if v > 0)
        self._snapshot = self._state.snapshot(
            in_flight=in_flight,
            pending_delete=frozenset(self._pending_delete),
            is_syncing=bool(in_flight),
            sync_error=self._sync_error,
            is_loading=self._is_loading,
            query_error=self._query_error,
            is_connected=self._is_connected,
            version=self._version,
        )
        for listener in list(self._listeners):
            try:
                listener(self._snapshot)
            except Exception:
                logger.exception("Store listener failed")

    def is_owned(self, entity_id: str) -> bool:
        return entity_id in self._owners

    # ------------------------------------------------------------------ #
    #  Task plumbing                                                       #
    # ------------------------------------------------------------------ #

    def _spawn(
        self,
        name: str,
        entity_ids: list[str],
        call: Callable[[GraphAdapter], Awaitable[Any]],
        on_success: Callable[[Any], None],
        on_failure: Callable[[Failure], None],
        owner: bool = False,
    ) -> asyncio.Task:
        for eid in entity_ids:
            self._in_flight[eid] += 1
            if owner:
                self._owners[eid] = name
        task = asyncio.get_running_loop().create_task(
            self._run(name, entity_ids, call, on_success, on_failure, owner),
            name=f"graphive:{name}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        name: str,
        entity_ids: list[str],
        call: Callable[[GraphAdapter], Awaitable[Any]],
        on_success: Callable[[Any], None],
        on_failure: Callable[[Failure], None],
        owner: bool,
    ) -> None:
        try:
            with operation_scope(name, entity_ids):
                result = await self._registry.call(call, name=name)
                if result.ok:
                    on_success(result.value)
                else:
                    self._sync_error = result.failure.message
                    on_failure(result.failure)
        finally:
            self._release(entity_ids, owner)
            self._publish()

    def _release(self, entity_ids: list[str], owner: bool) -> None:
        for eid in entity_ids:
            self._in_flight[eid] -= 1
            if self._in_flight[eid] <= 0:
                del self._in_flight[eid]
                self._settle(eid)
            if owner:
                self._owners.pop(eid, None)

    def _settle(self, entity_id: str) -> None:
        """PENDING_WRITE becomes PERSISTED once nothing is in flight."""
        node = self._state.node(entity_id)
        if node is not None and node.status == EntityStatus.PENDING_WRITE:
            self._state.put_node(node.model_copy(update={"status": EntityStatus.PERSISTED}))
        edge = self._state.edge(entity_id)
        if edge is not None and edge.status == EntityStatus.PENDING_WRITE:
            self._state.put_edge(edge.model_copy(update={"status": EntityStatus.PERSISTED}))

    async def drain(self) -> None:
        """Wait until every scheduled backend call has resolved."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _notify_failure(
        self,
        failure: Failure,
        action: str,
        entity_id: str | None = None,
        constraint: str | None = None,
        subject: str | None = None,
    ) -> None:
        """Emit one error notification; backend text is shown only for unclassified failures."""
        if failure.code == ErrorCode.CONSTRAINT_VIOLATION and constraint:
            message = constraint
        elif failure.code in NETWORK_CODES or failure.code in _DESCRIBED_CODES:
            message = f"{action}: {describe_failure(failure, subject or entity_id or '')}"
        else:
            message = f"{action}: {failure.message}"
        self.notifications.error(message, code=failure.code, entity_id=entity_id)

    # ------------------------------------------------------------------ #
    #  Patch helpers                                                       #
    # ------------------------------------------------------------------ #

    def _patch_node(self, node_id: str, values: dict[FieldPath, Any], pending: bool = False) -> Patch:
        node = self._state.nodes[node_id]
        updated, patch = apply_patch(node, values)
        if pending and not patch.is_empty and updated.status == EntityStatus.PERSISTED:
            updated = updated.model_copy(update={"status": EntityStatus.PENDING_WRITE})
        self._state.put_node(updated)
        return patch

    def _revert_node(self, patch: Patch) -> None:
        node = self._state.node(patch.entity_id)
        if node is not None:
            self._state.put_node(revert_patch(node, patch))

    def _patch_edge(self, edge_id: str, values: dict[FieldPath, Any], pending: bool = False) -> Patch:
        edge = self._state.edges[edge_id]
        updated, patch = apply_patch(edge, values)
        if pending and not patch.is_empty and updated.status == EntityStatus.PERSISTED:
            updated = updated.model_copy(update={"status": EntityStatus.PENDING_WRITE})
        self._state.put_edge(updated)
        return patch

    def _revert_edge(self, patch: Patch) -> None:
        edge = self._state.edge(patch.entity_id)
        if edge is not None:
            self._state.put_edge(revert_patch(edge, patch))

    def _writable(self, entity: GraphNode | GraphEdge | None, kind: str) -> bool:
        """True for a persisted entity no structural operation currently holds.

        Edits refused on an existing entity raise a warning notification.
        """
        if entity is None:
            return False
        if entity.id in self._owners or entity.status == EntityStatus.COMMITTING:
            self.notifications.warning(f"This {kind} is still saving; try again when it finishes", entity_id=entity.id)
            return False
        if entity.status not in (EntityStatus.PERSISTED, EntityStatus.PENDING_WRITE):
            self.notifications.warning(f"Save the {kind} before changing it", entity_id=entity.id)
            return False
        return True

    def _writable_node(self, node_id: str) -> GraphNode | None:
        node = self._state.node(node_id)
        return node if self._writable(node, "node") else None

    def _writable_edge(self, edge_id: str) -> GraphEdge | None:
        edge = self._state.edge(edge_id)
        return edge if self._writable(edge, "connection") else None

    # ------------------------------------------------------------------ #
    #  Draft nodes                                                         #
    # ------------------------------------------------------------------ #

    def create_draft_node(self, type: str = "rectangle", position: Position | tuple[float, float] | None = None) -> str:
        """Add a local-only node awaiting a label. Returns its placeholder id."""
        if isinstance(position, tuple):
            position = Position(x=position[0], y=position[1])
        node_id = f"draft-{next(self._draft_seq)}"
        while node_id in self._state.nodes:
            node_id = f"draft-{next(self._draft_seq)}"
        self._state.put_node(GraphNode(
            id=node_id,
            type=type,
            position=position or Position(),
            data={"label": "", "isDraft": True, "isEditing": True},
            status=EntityStatus.DRAFT,
        ))
        self._publish()
        return node_id

    def commit_draft_node(self, node_id: str, label: str) -> asyncio.Task | None:
        node = self._state.node(node_id)
        if node is None or node.status != EntityStatus.DRAFT or node_id in self._owners:
            return None
        name = label.strip()
        if not name:
            self.discard_draft_node(node_id)
            return None

        self._patch_node(node_id, {
            data_path("label"): name,
            data_path("name"): name,
            data_path("isDraft"): False,
            data_path("isEditing"): False,
            attr_path("status"): EntityStatus.COMMITTING,
        })

        def on_success(permanent_id: str) -> None:
            current = self._state.node(node_id)
            if current is None:
                logger.info("Committed node %s was removed locally before the backend answered", node_id)
                return
            data = {**current.data, "_elementId": permanent_id}
            self._state.put_node(current.model_copy(update={"status": EntityStatus.PERSISTED, "data": data}))
            reconcile_node_id(self._state, node_id, permanent_id)
            logger.debug("Node %s persisted as %s", node_id, permanent_id)

        def on_failure(failure: Failure) -> None:
            self._state.remove_node(node_id)
            self._notify_failure(failure, "Failed to create node", node_id, constraint=f'Name "{name}" already exists')

        task = self._spawn(
            "commit_node", [node_id], lambda a: a.create_node(name), on_success, on_failure, owner=True
        )
        self._publish()
        return task

    def discard_draft_node(self, node_id: str) -> bool:
        """Remove a draft and its edges locally. No-op unless the node is still a draft."""
        node = self._state.node(node_id)
        if node is None or node.status != EntityStatus.DRAFT or node_id in self._owners:
            return False
        self._state.remove_node(node_id)
        self._publish()
        return True

    # ------------------------------------------------------------------ #
    #  Node writes                                                         #
    # ------------------------------------------------------------------ #

    def update_node_label(self, node_id: str, label: str) -> asyncio.Task | None:
        name = label.strip()
        node = self._state.node(node_id)
        if node is None or not name:
            return None
        if node.status == EntityStatus.DRAFT:
            # Drafts are only named locally until commit
            self._patch_node(node_id, {data_path("label"): name, data_path("name"): name})
            self._publish()
            return None
        if self._writable_node(node_id) is None:
            return None

        patch = self._patch_node(node_id, {data_path("label"): name, data_path("name"): name}, pending=True)
        if patch.is_empty:
            return None

        def on_failure(failure: Failure) -> None:
            self._revert_node(patch)
            self._notify_failure(failure, "Failed to rename node", node_id, constraint=f'Name "{name}" already exists')

        task = self._spawn("rename_node", [node_id], lambda a: a.rename_node(node_id, name), lambda _: None, on_failure)
        self._publish()
        return task

    def update_node_property(self, node_id: str, key: str, value: Any) -> asyncio.Task | None:
        key = key.strip()
        if not key or key in RESERVED_KEYS or self._writable_node(node_id) is None:
            return None
        patch = self._patch_node(node_id, {data_path(key): value}, pending=True)
        if patch.is_empty:
            return None

        def on_failure(failure: Failure) -> None:
            self._revert_node(patch)
            self._notify_failure(failure, "Failed to update property", node_id, constraint=f"Value for '{key}' is already taken")

        task = self._spawn("set_property", [node_id], lambda a: a.set_property(node_id, key, value), lambda _: None, on_failure)
        self._publish()
        return task

    # SET upserts, so adding and updating a property are the same write
    add_node_property = update_node_property

    def delete_node_property(self, node_id: str, key: str) -> asyncio.Task | None:
        node = self._writable_node(node_id)
        if node is None or key in RESERVED_KEYS or key not in node.data:
            return None
        patch = self._patch_node(node_id, {data_path(key): MISSING}, pending=True)

        def on_failure(failure: Failure) -> None:
            self._revert_node(patch)
            self._notify_failure(failure, "Failed to delete property", node_id)

        task = self._spawn("delete_property", [node_id], lambda a: a.delete_property(node_id, key), lambda _: None, on_failure)
        self._publish()
        return task

    def _check_label(self, label: str) -> bool:
        try:
            validate_identifier(label)
        except InvalidIdentifierError as e:
            self.notifications.warning(e.message, code=e.code)
            return False
        return True

    def add_label(self, node_id: str, label: str) -> asyncio.Task | None:
        node = self._writable_node(node_id)
        if node is None or not self._check_label(label) or label in node.backend_labels:
            return None
        patch = self._patch_node(node_id, {data_path("_labels"): [*node.backend_labels, label]}, pending=True)

        def on_success(_: Any) -> None:
            self.notifications.success(f'Label "{label}" added', entity_id=node_id)

        def on_failure(failure: Failure) -> None:
            self._revert_node(patch)
            self._notify_failure(failure, "Failed to add label", node_id)

        task = self._spawn("add_label", [node_id], lambda a: a.add_label(node_id, label), on_success, on_failure)
        self._publish()
        return task

    def remove_label(self, node_id: str, label: str) -> asyncio.Task | None:
        node = self._writable_node(node_id)
        if node is None or not self._check_label(label) or label not in node.backend_labels:
            return None
        remaining = [lbl for lbl in node.backend_labels if lbl != label]
        patch = self._patch_node(node_id, {data_path("_labels"): remaining}, pending=True)

        def on_failure(failure: Failure) -> None:
            self._revert_node(patch)
            self._notify_failure(failure, "Failed to remove label", node_id)

        task = self._spawn("remove_label", [node_id], lambda a: a.remove_label(node_id, label), lambda _: None, on_failure)
        self._publish()
        return task

    # ------------------------------------------------------------------ #
    #  Local-only view state                                               #
    # ------------------------------------------------------------------ #

    def select(self, ids: Iterable[str], additive: bool = False) -> None:
        wanted = set(ids)
        for node in list(self._state.nodes.values()):
            selected = node.id in wanted or (additive and node.selected)
            if selected != node.selected:
                self._state.put_node(node.model_copy(update={"selected": selected}))
        for edge in list(self._state.edges.values()):
            selected = edge.id in wanted or (additive and edge.selected)
            if selected != edge.selected:
                self._state.put_edge(edge.model_copy(update={"selected": selected}))
        self._publish()

    def clear_selection(self) -> None:
        self.select([])

    def set_node_editing(self, node_id: str, editing: bool) -> None:
        if self._state.node(node_id) is not None:
            self._patch_node(node_id, {data_path("isEditing"): editing})
            self._publish()

    def set_edge_editing(self, edge_id: str, editing: bool) -> None:
        if self._state.edge(edge_id) is not None:
            self._patch_edge(edge_id, {data_path("isEditing"): editing})
            self._publish()

    def set_display_key(self, node_id: str, key: str | None) -> None:
        """Choose which property the canvas shows for a node (client-side only)."""
        if self._state.node(node_id) is not None:
            self._patch_node(node_id, {data_path("_displayKey"): key if key else MISSING})
            self._publish()

    def toggle_collapse(self, node_id: str) -> bool:
        """Hide or show everything reachable from ``node_id``. Returns the new collapsed state."""
        node = self._state.node(node_id)
        if node is None:
            return False
        collapsed = not bool(node.data.get("collapsed", False))
        hidden_ids = descendants(node_id, self._state.edges.values())
        self._patch_node(node_id, {data_path("collapsed"): collapsed})
        for nid in hidden_ids:
            if nid in self._state.nodes:
                self._patch_node(nid, {attr_path("hidden"): collapsed})
        for edge in self._state.edges_touching(hidden_ids):
            self._patch_edge(edge.id, {attr_path("hidden"): collapsed})
        self._publish()
        return collapsed

    def restore_selected(self) -> int:
        """Unhide selected hidden entities. Returns how many were restored."""
        count = 0
        for node in list(self._state.nodes.values()):
            if node.selected and node.hidden:
                self._state.put_node(node.model_copy(update={"hidden": False, "selected": False}))
                count += 1
        for edge in list(self._state.edges.values()):
            if edge.selected and edge.hidden:
                self._state.put_edge(edge.model_copy(update={"hidden": False, "selected": False}))
                count += 1
        if count:
            self._publish()
        return count

    # ------------------------------------------------------------------ #
    #  Deletion                                                            #
    # ------------------------------------------------------------------ #

    def delete_selection(self, mode: DeleteMode = DeleteMode.HIDE_AND_PERSIST_DELETE) -> list[asyncio.Task]:
        nodes = [n for n in self._state.nodes.values() if n.selected and n.id not in self._owners]
        edges = [e for e in self._state.edges.values() if e.selected and e.id not in self._owners]
        if not nodes and not edges:
            return []

        if mode == DeleteMode.HIDE_ONLY:
            node_ids = {n.id for n in nodes}
            for node in nodes:
                self._state.put_node(node.model_copy(update={"hidden": True, "selected": False}))
            for edge in {e.id: e for e in [*edges, *self._state.edges_touching(node_ids)]}.values():
                current = self._state.edges[edge.id]
                self._state.put_edge(current.model_copy(update={"hidden": True, "selected": False}))
            self._publish()
            return []

        tasks: list[asyncio.Task] = []
        busy = {e.id for e in edges if self._in_flight[e.id]}
        for node in nodes:
            touching = self._state.edges_touching(node.id)
            if self._in_flight[node.id] or any(self._in_flight[e.id] for e in touching):
                busy.add(node.id)
        if busy:
            # Nothing with a write in flight is deleted
            self.notifications.warning(
                "Some items are still saving; delete them again once they finish",
                entity_id=next(iter(busy)) if len(busy) == 1 else None,
            )
            nodes = [n for n in nodes if n.id not in busy]
            edges = [e for e in edges if e.id not in busy]

        deleted_nodes = {n.id for n in nodes}
        for node in nodes:
            if node.status == EntityStatus.DRAFT:
                self._state.remove_node(node.id)
                continue
            tasks.append(self._delete_node(node.id))
        for edge in edges:
            if edge.id not in self._state.edges:
                continue  # went with its node
            if edge.source in deleted_nodes or edge.target in deleted_nodes:
                continue
            if edge.status in (EntityStatus.DRAFT, EntityStatus.FAILED):
                self._state.remove_edge(edge.id)
                continue
            tasks.append(self._delete_edge(edge.id))
        self._publish()
        return tasks

    def _hold_deleted(self, entity: GraphNode | GraphEdge) -> None:
        self._pending_delete[entity.id] = entity.model_copy(update={"selected": False, "status": EntityStatus.PENDING_DELETE})

    def _release_deleted(self, entity_id: str) -> GraphNode | GraphEdge | None:
        held = self._pending_delete.pop(entity_id, None)
        return held.model_copy(update={"status": EntityStatus.PERSISTED}) if held is not None else None

    def _delete_node(self, node_id: str) -> asyncio.Task:
        node, cascaded = self._state.remove_node(node_id)
        for entity in (node, *cascaded):
            self._hold_deleted(entity)

        def on_success(_: Any) -> None:
            for entity in (node, *cascaded):
                self._pending_delete.pop(entity.id, None)

        def on_failure(failure: Failure) -> None:
            restored = self._release_deleted(node_id)
            if node_id not in self._state.nodes:
                self._state.put_node(restored)
            for edge in cascaded:
                self._pending_delete.pop(edge.id, None)
                self._state.restore_edge(edge)
            self._notify_failure(failure, "Failed to delete node", node_id)

        return self._spawn("delete_node", [node_id], lambda a: a.delete_node(node_id), on_success, on_failure, owner=True)

    def _delete_edge(self, edge_id: str) -> asyncio.Task:
        self._hold_deleted(self._state.remove_edge(edge_id))

        def on_failure(failure: Failure) -> None:
            self._state.restore_edge(self._release_deleted(edge_id))
            self._notify_failure(failure, "Failed to delete connection", edge_id)

        return self._spawn(
            "delete_edge", [edge_id], lambda a: a.delete_edge(edge_id),
            lambda _: self._pending_delete.pop(edge_id, None), on_failure, owner=True,
        )

    # ------------------------------------------------------------------ #
    #  Edges                                                               #
    # ------------------------------------------------------------------ #

    def create_draft_edge(self, connection: Connection, drag_origin: str | None = None) -> str | None:
        """Add a local-only edge. ``drag_origin`` is the node the drag started from."""
        source, target = connection.source, connection.target
        if drag_origin is not None and drag_origin == target and drag_origin != source:
            source, target = target, source
        if source == target:
            logger.debug("Self-loop on %s rejected", source)
            return None
        if source not in self._state.nodes or target not in self._state.nodes:
            return None

        edge_id = f"e{source}-{target}-{int(time.time() * 1000)}"
        suffix = itertools.count(1)
        while edge_id in self._state.edges:
            edge_id = f"e{source}-{target}-{int(time.time() * 1000)}-{next(suffix)}"
        self._state.put_edge(GraphEdge(
            id=edge_id,
            source=source,
            target=target,
            sourceHandle=connection.sourceHandle,
            targetHandle=connection.targetHandle,
            data={"label": "", "isDraft": True, "isEditing": True},
            status=EntityStatus.DRAFT,
        ))
        self._publish()
        return edge_id

    def commit_draft_edge(self, edge_id: str, label: str | None = None) -> asyncio.Task | None:
        edge = self._state.edge(edge_id)
        if edge is None or edge.status not in (EntityStatus.DRAFT, EntityStatus.FAILED) or edge_id in self._owners:
            return None
        for endpoint in (edge.source, edge.target):
            node = self._state.node(endpoint)
            if node is None or node.status in (EntityStatus.DRAFT, EntityStatus.COMMITTING) or endpoint in self._owners:
                self.notifications.warning("Save both nodes before saving the connection", entity_id=edge_id)
                return None
        if label is None:
            # A relationship lost mid-rewrite is recommitted with its old type
            label = str(edge.data.get("_type") or edge.label)
        rel_type = label.strip() or DEFAULT_REL_TYPE
        if not self._check_label(rel_type):
            return None

        source, target = edge.source, edge.target
        self._patch_edge(edge_id, {
            data_path("label"): rel_type,
            data_path("_type"): rel_type,
            data_path("isDraft"): False,
            data_path("isEditing"): False,
            data_path("syncError"): MISSING,
            attr_path("status"): EntityStatus.COMMITTING,
        })

        def on_success(_: Any) -> None:
            current = self._state.edge(edge_id)
            if current is not None:
                self._state.put_edge(current.model_copy(update={"status": EntityStatus.PERSISTED}))
            self.notifications.success("Connection saved", entity_id=edge_id)

        def on_failure(failure: Failure) -> None:
            current = self._state.edge(edge_id)
            if current is not None:
                data = {**current.data, "isDraft": True, "isEditing": False}
                self._state.put_edge(current.model_copy(update={"status": EntityStatus.DRAFT, "data": data}))
            self._notify_failure(failure, "Failed to save connection", edge_id)

        task = self._spawn(
            "commit_edge", [edge_id], lambda a: a.create_edge(edge_id, source, target, rel_type),
            on_success, on_failure, owner=True,
        )
        self._publish()
        return task

    def discard_draft_edge(self, edge_id: str) -> bool:
        edge = self._state.edge(edge_id)
        if edge is None or edge.status not in (EntityStatus.DRAFT, EntityStatus.FAILED) or edge_id in self._owners:
            return False
        self._state.remove_edge(edge_id)
        self._publish()
        return True

    def update_edge_label(self, edge_id: str, label: str) -> asyncio.Task | None:
        edge = self._state.edge(edge_id)
        if edge is None:
            return None
        if edge.status == EntityStatus.DRAFT:
            self._patch_edge(edge_id, {data_path("label"): label})
            self._publish()
            return None
        if self._writable_edge(edge_id) is None:
            return None
        patch = self._patch_edge(edge_id, {data_path("label"): label}, pending=True)
        if patch.is_empty:
            return None

        def on_failure(failure: Failure) -> None:
            self._revert_edge(patch)
            self._notify_failure(failure, "Failed to update edge label", edge_id)

        task = self._spawn("update_edge_label", [edge_id], lambda a: a.update_edge_label(edge_id, label), lambda _: None, on_failure)
        self._publish()
        return task

    def _mark_partial(self, edge_id: str, failure: Failure) -> None:
        """The backend dropped the relationship and could not recreate it."""
        current = self._state.edge(edge_id)
        if current is not None:
            data = {**current.data, "isDraft": True, "syncError": failure.message}
            self._state.put_edge(current.model_copy(update={"status": EntityStatus.FAILED, "data": data}))
        logger.error("Relationship %s lost on the backend: %s", edge_id, failure.details)
        self._notify_failure(failure, "Connection lost", edge_id)

    def reconnect_edge(self, edge_id: str, connection: Connection) -> asyncio.Task | None:
        """Point an edge at new endpoints, keeping its id, type and properties."""
        edge = self._state.edge(edge_id)
        if edge is None or (edge_id in self._owners and not self._writable(edge, "connection")):
            return None
        source, target = connection.source, connection.target
        if source == target or source not in self._state.nodes or target not in self._state.nodes:
            return None
        values = {
            attr_path("source"): source,
            attr_path("target"): target,
            attr_path("sourceHandle"): connection.sourceHandle,
            attr_path("targetHandle"): connection.targetHandle,
        }
        endpoints_changed = (source, target) != (edge.source, edge.target)
        if edge.status == EntityStatus.DRAFT or not endpoints_changed:
            self._patch_edge(edge_id, values)
            self._publish()
            return None
        if self._writable_edge(edge_id) is None:
            return None
        if any(self._state.nodes[n].status in (EntityStatus.DRAFT, EntityStatus.COMMITTING) for n in (source, target)):
            return None

        patch = self._patch_edge(edge_id, values, pending=True)

        def on_failure(failure: Failure) -> None:
            if failure.code == ErrorCode.PARTIAL_FAILURE:
                self._mark_partial(edge_id, failure)
                return
            self._revert_edge(patch)
            self._notify_failure(failure, "Failed to move connection", edge_id)

        task = self._spawn(
            "migrate_edge", [edge_id], lambda a: a.migrate_edge(edge_id, source, target),
            lambda _: None, on_failure, owner=True,
        )
        self._publish()
        return task

    def reverse_edge(self, edge_id: str) -> asyncio.Task | None:
        """Swap source and target (and their handles)."""
        edge = self._state.edge(edge_id)
        if edge is None or (edge_id in self._owners and not self._writable(edge, "connection")):
            return None
        values = {
            attr_path("source"): edge.target,
            attr_path("target"): edge.source,
            attr_path("sourceHandle"): edge.targetHandle,
            attr_path("targetHandle"): edge.sourceHandle,
        }
        if edge.status == EntityStatus.DRAFT:
            self._patch_edge(edge_id, values)
            self._publish()
            return None
        if self._writable_edge(edge_id) is None:
            return None

        patch = self._patch_edge(edge_id, values, pending=True)

        def on_success(ends: tuple[str, str]) -> None:
            current = self._state.edge(edge_id)
            new_source, new_target = ends
            if current is None or (current.source, current.target) == (new_source, new_target):
                return
            if new_source in self._state.nodes and new_target in self._state.nodes:
                self._state.put_edge(current.model_copy(update={"source": new_source, "target": new_target}))

        def on_failure(failure: Failure) -> None:
            if failure.code == ErrorCode.PARTIAL_FAILURE:
                self._mark_partial(edge_id, failure)
                return
            self._revert_edge(patch)
            self._notify_failure(failure, "Failed to reverse edge", edge_id)

        task = self._spawn("reverse_edge", [edge_id], lambda a: a.reverse_edge(edge_id), on_success, on_failure, owner=True)
        self._publish()
        return task

    # ------------------------------------------------------------------ #
    #  Queries                                                             #
    # ------------------------------------------------------------------ #

    def _offset_right(self, nodes: list[GraphNode]) -> list[GraphNode]:
        if not self._state.nodes:
            return nodes
        shift = max(n.position.x for n in self._state.nodes.values()) + self._config.layout.merge_offset
        return [n.model_copy(update={"position": Position(x=n.position.x + shift, y=n.position.y)}) for n in nodes]

    def merge_projection(self, projection: GraphProjection, merge: bool = True) -> tuple[int, int]:
        """Bring a projection onto the canvas. Returns (new nodes, new edges).

        Replace mode lays out everything. Merge mode adds only unseen ids,
        lays out only those, and leaves existing entities untouched.
        """
        if not merge:
            self._state.replace(self._layout(projection.nodes, projection.edges), projection.edges)
            return len(self._state.nodes), len(self._state.edges)

        new_nodes = [n for n in projection.nodes if n.id not in self._state.nodes]
        new_edges = [e for e in projection.edges if e.id not in self._state.edges]
        if new_nodes:
            placed = self._offset_right(self._layout(new_nodes, new_edges))
            for node in placed:
                self._state.put_node(node)
        added_edges = sum(1 for edge in new_edges if self._state.restore_edge(edge))
        return len(new_nodes), added_edges

    def execute_query(self, query: str, merge: bool = False) -> asyncio.Task | None:
        query = query.strip()
        if not query:
            return None
        self._is_loading = True
        self._query_error = None

        def on_success(projection: GraphProjection) -> None:
            self._is_loading = False
            self.merge_projection(projection, merge)

        def on_failure(failure: Failure) -> None:
            self._is_loading = False
            self._query_error = failure.message
            self._notify_failure(failure, "Query failed")

        task = self._spawn("execute_query", [], lambda a: a.execute_query(query), on_success, on_failure)
        self._publish()
        return task

    def expand_neighbors(self, node_id: str) -> asyncio.Task | None:
        origin = self._state.node(node_id)
        if origin is None or origin.status in (EntityStatus.DRAFT, EntityStatus.COMMITTING):
            return None
        self._is_loading = True

        def on_success(projection: GraphProjection) -> None:
            self._is_loading = False
            new_nodes = [n for n in projection.nodes if n.id not in self._state.nodes]
            new_edges = [e for e in projection.edges if e.id not in self._state.edges]
            if new_nodes:
                anchor = self._state.node(node_id) or origin
                below = anchor.position.y + self._config.layout.node_height + self._config.layout.rank_sep
                for node in self._layout(new_nodes, new_edges):
                    self._state.put_node(node.model_copy(update={"position": Position(
                        x=node.position.x + anchor.position.x, y=node.position.y + below,
                    )}))
            for edge in new_edges:
                self._state.restore_edge(edge)
            if new_nodes:
                plural = "" if len(new_nodes) == 1 else "s"
                self.notifications.success(f"Found {len(new_nodes)} new node{plural}", entity_id=node_id)
            else:
                self.notifications.info("No additional neighbors found", entity_id=node_id)

        def on_failure(failure: Failure) -> None:
            self._is_loading = False
            self._notify_failure(failure, "Failed to expand neighbors", node_id)

        task = self._spawn("fetch_neighbors", [], lambda a: a.fetch_neighbors(node_id), on_success, on_failure)
        self._publish()
        return task

    def _idle(self, entity: GraphNode | GraphEdge | None) -> bool:
        return (
            entity is not None
            and entity.status == EntityStatus.PERSISTED
            and not self._in_flight[entity.id]
            and entity.id not in self._owners
        )

    def refresh_elements(self, node_ids: Iterable[str] = (), edge_ids: Iterable[str] = ()) -> asyncio.Task | None:
        """Reload the backend data of persisted entities already on the canvas.

        Position and view flags are kept. Entities with a write in flight are
        skipped so a pending local value is never overwritten.
        """
        node_ids = [i for i in node_ids if self._idle(self._state.node(i))]
        edge_ids = [i for i in edge_ids if self._idle(self._state.edge(i))]
        if not node_ids and not edge_ids:
            return None

        def fresh_data(current: dict[str, Any], loaded: dict[str, Any]) -> dict[str, Any]:
            view = {k: current[k] for k in _VIEW_KEYS if k in current}
            return {**loaded, **view}

        def on_success(projection: GraphProjection) -> None:
            refreshed = 0
            for loaded in projection.nodes:
                current = self._state.node(loaded.id)
                if loaded.id in node_ids and self._idle(current):
                    self._state.put_node(current.model_copy(update={"data": fresh_data(current.data, loaded.data)}))
                    refreshed += 1
            for loaded in projection.edges:
                current = self._state.edge(loaded.id)
                if loaded.id in edge_ids and self._idle(current):
                    self._state.put_edge(current.model_copy(update={"data": fresh_data(current.data, loaded.data)}))
                    refreshed += 1
            logger.debug("Refreshed %d of %d elements", refreshed, len(node_ids) + len(edge_ids))

        def on_failure(failure: Failure) -> None:
            self._notify_failure(failure, "Failed to refresh")

        return self._spawn(
            "fetch_elements", [], lambda a: a.fetch_elements(node_ids, edge_ids), on_success, on_failure,
        )

    def lay_out(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> list[GraphNode]:
        return self._layout(nodes, edges)

    def replace_graph(self, nodes: list[GraphNode], edges: list[GraphEdge]) -> None:
        self._state.replace(nodes, edges)
        self._publish()

    def clear_canvas(self) -> None:
        self._state.clear()
        self._query_error = None
        self._publish()

    def set_loading(self, loading: bool) -> None:
        self._is_loading = loading
        self._publish()

    # ------------------------------------------------------------------ #
    #  Health                                                              #
    # ------------------------------------------------------------------ #

    def set_connected(self, connected: bool) -> None:
        self._is_connected = connected
        if connected:
            self._sync_error = None
        self._publish()

    async def check_connection(self) -> bool:
        if not self._registry.is_connected:
            self.set_connected(False)
            return False
        connected = await self._registry.check_connection()
        self._is_connected = connected
        self._sync_error = None if connected else "Connection check failed"
        self._publish()
        return connected
