"""Shared pytest fixtures for the graphive test suite."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Any

import pytest

from graphive.adapters.base import DEFAULT_REL_TYPE, GraphAdapter
from graphive.config import Config, ConnectionConfig
from graphive.graph.store import GraphStore
from graphive.models import (
    DashboardMeta,
    EntityStatus,
    GraphEdge,
    GraphNode,
    GraphProjection,
    Position,
    QueryResult,
)
from graphive.registry import AdapterRegistry


class FakeAdapter(GraphAdapter):
    """In-memory adapter that records calls.

    ``hold(name)`` gates an operation until the returned event is set;
    ``queue(name, *outcomes)`` scripts per-call results (exceptions are raised).
    """

    provider = "neo4j"

    def __init__(self) -> None:
        super().__init__()
        self.calls: list[tuple[str, tuple]] = []
        self.results: dict[str, Any] = {}
        self.outcomes: dict[str, deque] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.healthy = True
        self.closed = False

    def hold(self, name: str) -> asyncio.Event:
        self.gates[name] = asyncio.Event()
        return self.gates[name]

    def queue(self, name: str, *outcomes: Any) -> None:
        self.outcomes.setdefault(name, deque()).extend(outcomes)

    def fail(self, name: str, exc: Exception) -> None:
        self.results[name] = exc

    def called(self, name: str) -> list[tuple]:
        return [args for op, args in self.calls if op == name]

    async def _op(self, name: str, *args: Any, default: Any = None) -> Any:
        self.calls.append((name, args))
        pending = self.outcomes.get(name)
        outcome = pending.popleft() if pending else self.results.get(name, default)
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    # --- Lifecycle ---

    async def initialize(self, config: ConnectionConfig) -> None:
        self.config = config

    async def verify_connectivity(self, config: ConnectionConfig) -> None:
        await self._op("verify_connectivity", config)

    async def check_connection(self) -> bool:
        return self.healthy

    async def close(self) -> None:
        self.closed = True
        self.config = None

    # --- Queries ---

    async def execute_query(self, query: str) -> GraphProjection:
        return await self._op("execute_query", query, default=GraphProjection())

    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        return await self._op("run_query", query, params, default=QueryResult())

    # --- Nodes ---

    async def create_node(self, label: str) -> str:
        return await self._op("create_node", label, default="100")

    async def rename_node(self, node_id: str, label: str) -> None:
        await self._op("rename_node", node_id, label)

    async def delete_node(self, node_id: str) -> None:
        await self._op("delete_node", node_id)

    async def set_property(self, node_id: str, key: str, value: Any) -> None:
        await self._op("set_property", node_id, key, value)

    async def delete_property(self, node_id: str, key: str) -> None:
        await self._op("delete_property", node_id, key)

    async def add_label(self, node_id: str, label: str) -> None:
        await self._op("add_label", node_id, label)

    async def remove_label(self, node_id: str, label: str) -> None:
        await self._op("remove_label", node_id, label)

    async def fetch_neighbors(self, node_id: str) -> GraphProjection:
        return await self._op("fetch_neighbors", node_id, default=GraphProjection())

    async def fetch_elements(self, node_ids: list[str], edge_ids: list[str]) -> GraphProjection:
        return await self._op("fetch_elements", node_ids, edge_ids, default=GraphProjection())

    # --- Relationships ---

    async def create_edge(self, edge_id: str, source_id: str, target_id: str, rel_type: str = DEFAULT_REL_TYPE) -> None:
        await self._op("create_edge", edge_id, source_id, target_id, rel_type)

    async def update_edge_label(self, edge_id: str, label: str) -> None:
        await self._op("update_edge_label", edge_id, label)

    async def delete_edge(self, edge_id: str) -> None:
        await self._op("delete_edge", edge_id)

    async def reverse_edge(self, edge_id: str) -> tuple[str, str]:
        return await self._op("reverse_edge", edge_id)

    async def migrate_edge(self, edge_id: str, new_source: str, new_target: str) -> None:
        await self._op("migrate_edge", edge_id, new_source, new_target)

    # --- Dashboards ---

    async def list_dashboards(self) -> list[DashboardMeta]:
        return await self._op("list_dashboards", default=[])

    async def get_dashboard(self, dashboard_id: str) -> DashboardMeta | None:
        return await self._op("get_dashboard", dashboard_id)

    async def upsert_dashboard(self, dashboard_id: str | None, name: str, query: str, layout: str) -> str:
        return await self._op("upsert_dashboard", dashboard_id, name, query, layout, default=dashboard_id or "d-new")

    async def delete_dashboard(self, dashboard_id: str) -> None:
        await self._op("delete_dashboard", dashboard_id)

    async def rename_dashboard(self, dashboard_id: str, name: str) -> None:
        await self._op("rename_dashboard", dashboard_id, name)

    async def reorder_dashboards(self, ids: list[str]) -> None:
        await self._op("reorder_dashboards", ids)


def make_node(node_id: str, label: str | None = None, x: float = 0.0, y: float = 0.0, **data: Any) -> GraphNode:
    """Persisted node as a query would project it."""
    return GraphNode(
        id=node_id,
        position=Position(x=x, y=y),
        data={"label": label or node_id, "name": label or node_id, "_labels": [], **data},
    )


def make_edge(edge_id: str, source: str, target: str, rel_type: str = "LINK", **kwargs: Any) -> GraphEdge:
    return GraphEdge(
        id=edge_id,
        source=source,
        target=target,
        sourceHandle="bottom-h",
        targetHandle="top-h",
        data={"label": rel_type, "_type": rel_type},
        status=kwargs.pop("status", EntityStatus.PERSISTED),
        **kwargs,
    )


@pytest.fixture
def config():
    return Config()


@pytest.fixture
def adapter():
    """FakeAdapter already initialized."""
    fake = FakeAdapter()
    fake.config = ConnectionConfig()
    return fake


@pytest.fixture
def registry(config, adapter):
    """Registry with the fake adapter live."""
    reg = AdapterRegistry(config, factories={"neo4j": lambda _cfg: adapter})
    reg._adapter = adapter
    return reg


@pytest.fixture
def store(registry, config):
    return GraphStore(registry, config=config)


@pytest.fixture
def seeded(store):
    """Store holding a -> b -> c plus an unconnected d."""
    store.replace_graph(
        [make_node("a", x=0), make_node("b", x=200), make_node("c", x=400), make_node("d", x=600)],
        [make_edge("ab", "a", "b", "KNOWS"), make_edge("bc", "b", "c")],
    )
    return store
