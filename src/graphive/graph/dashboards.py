"""Saved dashboards: a named query plus the canvas geometry it was left in."""

from __future__ import annotations

import logging

from pydantic import ValidationError

from graphive.graph.state import GraphSnapshot
from graphive.graph.store import GraphStore
from graphive.models import (
    DashboardLayout,
    DashboardMeta,
    EdgeLayout,
    EntityStatus,
    GraphEdge,
    GraphNode,
    NodeLayout,
    Position,
)
from graphive.registry import AdapterRegistry

logger = logging.getLogger("graphive.graph.dashboards")

UNTITLED = "Untitled"


def build_layout(snapshot: GraphSnapshot) -> DashboardLayout:
    """Capture positions, sizes, visibility and custom edge handles."""
    layout = DashboardLayout()
    for node in snapshot.nodes:
        if node.status == EntityStatus.DRAFT:
            continue
        layout.nodes[node.id] = NodeLayout(
            x=node.position.x, y=node.position.y, w=node.width, h=node.height, hidden=node.hidden,
        )
    for edge in snapshot.edges:
        if edge.status in (EntityStatus.DRAFT, EntityStatus.FAILED):
            continue
        if edge.sourceHandle or edge.targetHandle or edge.hidden:
            layout.edges[edge.id] = EdgeLayout(
                sourceHandle=edge.sourceHandle, targetHandle=edge.targetHandle, hidden=edge.hidden,
            )
    return layout


def parse_layout(raw: str) -> DashboardLayout:
    if not raw:
        return DashboardLayout()
    try:
        return DashboardLayout.model_validate_json(raw)
    except ValidationError as e:
        logger.warning("Ignoring unreadable dashboard layout: %s", e)
        return DashboardLayout()


def apply_layout(
    nodes: list[GraphNode], edges: list[GraphEdge], layout: DashboardLayout
) -> tuple[list[GraphNode], list[GraphEdge]]:
    """Overlay saved geometry by id. Entities the layout does not mention keep theirs."""
    placed: list[GraphNode] = []
    for node in nodes:
        saved = layout.nodes.get(node.id)
        if saved is None:
            placed.append(node)
            continue
        placed.append(node.model_copy(update={
            "position": Position(x=saved.x, y=saved.y),
            "width": saved.w if saved.w is not None else node.width,
            "height": saved.h if saved.h is not None else node.height,
            "hidden": saved.hidden,
        }))
    routed: list[GraphEdge] = []
    for edge in edges:
        saved_edge = layout.edges.get(edge.id)
        if saved_edge is None:
            routed.append(edge)
            continue
        routed.append(edge.model_copy(update={
            "sourceHandle": saved_edge.sourceHandle or edge.sourceHandle,
            "targetHandle": saved_edge.targetHandle or edge.targetHandle,
            "hidden": saved_edge.hidden,
        }))
    return placed, routed


class DashboardService:
    """List, load and save dashboards against the live adapter.

    Tracks which dashboard is active and whether the canvas has drifted
    from what was last loaded or saved.
    """

    def __init__(self, store: GraphStore, registry: AdapterRegistry | None = None) -> None:
        self._store = store
        self._registry = registry or store.registry
        self.dashboards: list[DashboardMeta] = []
        self.active_id: str | None = None
        self.name = UNTITLED
        self.query = ""
        self._saved: tuple[str, str] | None = None

    @property
    def notifications(self):
        return self._store.notifications

    @property
    def is_dirty(self) -> bool:
        if self._saved is None:
            return bool(self._store.snapshot.nodes)
        return self._saved != (self.query, build_layout(self._store.snapshot).model_dump_json())

    def _mark_clean(self) -> None:
        self._saved = (self.query, build_layout(self._store.snapshot).model_dump_json())

    async def refresh(self) -> list[DashboardMeta]:
        result = await self._registry.call(lambda a: a.list_dashboards(), name="list_dashboards")
        if not result.ok:
            self.notifications.error(f"Failed to load dashboards: {result.failure.message}", code=result.failure.code)
            return self.dashboards
        self.dashboards = sorted(result.value, key=lambda d: d.order)
        return self.dashboards

    async def load(self, dashboard_id: str) -> bool:
        """Replay a dashboard's query and restore its saved geometry."""
        self._store.set_loading(True)
        try:
            found = await self._registry.call(lambda a: a.get_dashboard(dashboard_id), name="get_dashboard")
            if not found.ok:
                self.notifications.error(f"Failed to load dashboard: {found.failure.message}", code=found.failure.code)
                return False
            meta = found.value
            if meta is None:
                self.notifications.error("Dashboard not found")
                return False

            nodes: list[GraphNode] = []
            edges: list[GraphEdge] = []
            if meta.query.strip():
                projected = await self._registry.call(lambda a: a.execute_query(meta.query), name="execute_query")
                if not projected.ok:
                    self.notifications.error(f"Dashboard query failed: {projected.failure.message}", code=projected.failure.code)
                    return False
                edges = projected.value.edges
                nodes = self._store.lay_out(projected.value.nodes, edges)
            nodes, edges = apply_layout(nodes, edges, parse_layout(meta.layout))
            self._store.replace_graph(nodes, edges)
        finally:
            self._store.set_loading(False)

        self.active_id = meta.id
        self.name = meta.name or UNTITLED
        self.query = meta.query
        self._mark_clean()
        logger.info("Loaded dashboard %s (%d nodes)", meta.id, len(nodes))
        return True

    async def _upsert(self, dashboard_id: str | None, name: str) -> str | None:
        layout = build_layout(self._store.snapshot).model_dump_json()
        query = self.query
        result = await self._registry.call(
            lambda a: a.upsert_dashboard(dashboard_id, name, query, layout), name="save_dashboard"
        )
        if not result.ok:
            self.notifications.error(f"Failed to save dashboard: {result.failure.message}", code=result.failure.code)
            return None
        self.active_id = result.value
        self.name = name
        self._mark_clean()
        self.notifications.success(f'Dashboard "{name}" saved')
        await self.refresh()
        return result.value

    async def save(self, name: str | None = None, query: str | None = None) -> str | None:
        """Save over the active dashboard, or create one if none is active."""
        if query is not None:
            self.query = query
        return await self._upsert(self.active_id, (name or self.name).strip() or UNTITLED)

    async def save_as(self, name: str, query: str | None = None) -> str | None:
        if query is not None:
            self.query = query
        return await self._upsert(None, name.strip() or UNTITLED)

    async def rename(self, dashboard_id: str, name: str) -> bool:
        name = name.strip()
        if not name:
            return False
        result = await self._registry.call(lambda a: a.rename_dashboard(dashboard_id, name), name="rename_dashboard")
        if not result.ok:
            self.notifications.error(f"Failed to rename dashboard: {result.failure.message}", code=result.failure.code)
            return False
        self.dashboards = [d.model_copy(update={"name": name}) if d.id == dashboard_id else d for d in self.dashboards]
        if dashboard_id == self.active_id:
            self.name = name
        return True

    async def reorder(self, ids: list[str]) -> bool:
        """Apply the new order locally, then persist it; roll back on failure."""
        previous = self.dashboards
        by_id = {d.id: d for d in previous}
        ordered = [by_id[i].model_copy(update={"order": n}) for n, i in enumerate(ids) if i in by_id]
        ordered += [d for d in previous if d.id not in set(ids)]
        self.dashboards = ordered
        result = await self._registry.call(lambda a: a.reorder_dashboards(list(ids)), name="reorder_dashboards")
        if not result.ok:
            self.dashboards = previous
            self.notifications.error(f"Failed to reorder dashboards: {result.failure.message}", code=result.failure.code)
            return False
        return True

    async def delete(self, dashboard_id: str) -> bool:
        previous = self.dashboards
        self.dashboards = [d for d in previous if d.id != dashboard_id]
        result = await self._registry.call(lambda a: a.delete_dashboard(dashboard_id), name="delete_dashboard")
        if not result.ok:
            self.dashboards = previous
            self.notifications.error(f"Failed to delete dashboard: {result.failure.message}", code=result.failure.code)
            return False
        if dashboard_id == self.active_id:
            self.active_id = None
            self.name = UNTITLED
            self._saved = None
        return True

    async def initialize(self) -> bool:
        """Load the first dashboard unless the canvas already has content."""
        if self._store.snapshot.nodes:
            return False
        dashboards = await self.refresh()
        if not dashboards:
            return False
        return await self.load(dashboards[0].id)
