"""Abstract base class for graph database adapters."""

from __future__ import annotations

import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, TypeVar

from pydantic import BaseModel

from graphive.config import ConnectionConfig
from graphive.errors import USER_MESSAGES, InvalidIdentifierError, Result, classify_error
from graphive.models import (
    DEFAULT_SOURCE_HANDLE,
    DEFAULT_TARGET_HANDLE,
    DashboardMeta,
    GraphEdge,
    GraphNode,
    GraphProjection,
    QueryResult,
)

logger = logging.getLogger("graphive.adapters")

T = TypeVar("T")

# Label carried by the nodes that store saved dashboards
DASHBOARD_LABEL = "_GraphiveDashboard"
DEFAULT_REL_TYPE = "LINK"

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9_]+$")


def validate_identifier(name: str, kind: str = "label") -> str:
    """Return ``name`` if it is a safe label/relationship type, else raise.

    Labels and relationship types are spliced into query text, so anything
    outside ``[A-Za-z0-9_]`` is rejected before a request is built.
    """
    if not isinstance(name, str) or not _IDENTIFIER_RE.match(name):
        raise InvalidIdentifierError(
            f"Invalid {kind} {name!r}: only letters, digits and underscore are allowed",
            details={"kind": kind, "value": name},
        )
    return name


def escape_cypher_string(value: str) -> str:
    """Escape a string for a single-quoted Cypher literal.

    Order matters: backslashes first so later escapes are not doubled.
    """
    return (
        value.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )


def display_label(properties: dict[str, Any], labels: list[str], fallback: str) -> str:
    for key in ("name", "title", "label", "id"):
        if properties.get(key) not in (None, ""):
            return str(properties[key])
    return labels[0] if labels else fallback


class ProjectionBuilder:
    """Collects raw nodes and relationships and emits a deduplicated projection.

    Nodes are keyed by resolved id (the ``id`` property when present, else the
    backend's internal identity). Relationships are resolved after all nodes
    are known so their endpoints can be mapped from internal to resolved ids.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode] = {}
        self._resolved: dict[str, str] = {}
        self._hidden_internal: set[str] = set()
        self._rels: list[tuple[str, str, str, str, dict[str, Any]]] = []

    def add_node(self, internal_id: str, labels: list[str], properties: dict[str, Any]) -> None:
        internal_id = str(internal_id)
        if DASHBOARD_LABEL in labels:
            self._hidden_internal.add(internal_id)
            return
        resolved = str(properties["id"]) if properties.get("id") is not None else internal_id
        self._resolved[internal_id] = resolved
        if resolved in self._nodes:
            return
        data = dict(properties)
        data["_elementId"] = internal_id
        data["_labels"] = list(labels)
        data["label"] = display_label(properties, labels, f"Node {resolved}")
        self._nodes[resolved] = GraphNode(id=resolved, data=data)

    def add_relationship(
        self,
        internal_id: str,
        rel_type: str,
        start_internal: str,
        end_internal: str,
        properties: dict[str, Any],
    ) -> None:
        self._rels.append((str(internal_id), rel_type, str(start_internal), str(end_internal), dict(properties)))

    def build(self) -> GraphProjection:
        edges: dict[str, GraphEdge] = {}
        for internal_id, rel_type, start, end, props in self._rels:
            if start in self._hidden_internal or end in self._hidden_internal:
                continue
            source = self._resolved.get(start)
            target = self._resolved.get(end)
            if source is None or target is None:
                logger.debug("Dropping relationship %s: endpoint not in result", internal_id)
                continue
            resolved = str(props["id"]) if props.get("id") is not None else internal_id
            if resolved in edges:
                continue
            data = dict(props)
            data["label"] = props.get("label") or rel_type
            data["_type"] = rel_type
            edges[resolved] = GraphEdge(
                id=resolved,
                source=source,
                target=target,
                sourceHandle=DEFAULT_SOURCE_HANDLE,
                targetHandle=DEFAULT_TARGET_HANDLE,
                data=data,
            )
        return GraphProjection(nodes=list(self._nodes.values()), edges=list(edges.values()))


class AdapterStats(BaseModel):
    """Runtime stats tracked per adapter."""

    call_count: int = 0
    error_count: int = 0
    consecutive_errors: int = 0
    total_latency_ms: float = 0.0

    @property
    def avg_latency_ms(self) -> float:
        return self.total_latency_ms / self.call_count if self.call_count else 0.0


class GraphAdapter(ABC):
    """Capability surface every graph backend implements.

    Every operation raises on failure; the registry turns calls into
    ``Result`` values so the store never sees an exception.
    """

    provider: str = ""

    def __init__(self) -> None:
        self.config: ConnectionConfig | None = None
        self.stats = AdapterStats()

    @property
    def is_initialized(self) -> bool:
        return self.config is not None

    async def tracked(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        """Await ``call`` with stats tracking and logging; re-raises failures."""
        start = time.monotonic()
        try:
            value = await call()
        except Exception as e:
            self.stats.call_count += 1
            self.stats.error_count += 1
            self.stats.consecutive_errors += 1
            self.stats.total_latency_ms += (time.monotonic() - start) * 1000
            logger.warning("[%s] %s failed: %s", self.provider, operation, e)
            raise
        elapsed_ms = (time.monotonic() - start) * 1000
        self.stats.call_count += 1
        self.stats.consecutive_errors = 0
        self.stats.total_latency_ms += elapsed_ms
        logger.debug("[%s] %s ok (%.1f ms)", self.provider, operation, elapsed_ms)
        return value

    # --- Lifecycle ---

    @abstractmethod
    async def initialize(self, config: ConnectionConfig) -> None:
        """Open the backend connection described by ``config``."""

    @abstractmethod
    async def verify_connectivity(self, config: ConnectionConfig) -> None:
        """Round-trip a trivial query against ``config`` without keeping the connection."""

    async def test_connection(self, config: ConnectionConfig) -> Result[None]:
        """Try ``config``; a failure carries a human-readable diagnostic."""
        try:
            await self.verify_connectivity(config)
        except Exception as e:
            failure = classify_error(e)
            message = USER_MESSAGES.get(failure.code, failure.message)
            logger.info("[%s] connection test failed: %s", self.provider, failure.code.value)
            return Result.fail(failure.code, message, {"raw": failure.message})
        return Result.success(None)

    @abstractmethod
    async def check_connection(self) -> bool:
        """Health check for the live connection."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend connection objects. Safe to call twice."""

    # --- Queries ---

    @abstractmethod
    async def execute_query(self, query: str) -> GraphProjection: ...

    @abstractmethod
    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> QueryResult: ...

    # --- Nodes ---

    @abstractmethod
    async def create_node(self, label: str) -> str:
        """Create a node named ``label`` and return its permanent id."""

    @abstractmethod
    async def rename_node(self, node_id: str, label: str) -> None: ...

    @abstractmethod
    async def delete_node(self, node_id: str) -> None:
        """Detach-delete: incident relationships go with the node."""

    @abstractmethod
    async def set_property(self, node_id: str, key: str, value: Any) -> None: ...

    @abstractmethod
    async def delete_property(self, node_id: str, key: str) -> None: ...

    @abstractmethod
    async def add_label(self, node_id: str, label: str) -> None: ...

    @abstractmethod
    async def remove_label(self, node_id: str, label: str) -> None: ...

    @abstractmethod
    async def fetch_neighbors(self, node_id: str) -> GraphProjection: ...

    @abstractmethod
    async def fetch_elements(self, node_ids: list[str], edge_ids: list[str]) -> GraphProjection: ...

    # --- Relationships ---

    @abstractmethod
    async def create_edge(self, edge_id: str, source_id: str, target_id: str, rel_type: str = DEFAULT_REL_TYPE) -> None: ...

    @abstractmethod
    async def update_edge_label(self, edge_id: str, label: str) -> None: ...

    @abstractmethod
    async def delete_edge(self, edge_id: str) -> None: ...

    @abstractmethod
    async def reverse_edge(self, edge_id: str) -> tuple[str, str]:
        """Swap endpoints keeping type, properties and id. Returns (new_source, new_target)."""

    @abstractmethod
    async def migrate_edge(self, edge_id: str, new_source: str, new_target: str) -> None:
        """Re-point a relationship keeping type, properties and id."""

    # --- Dashboards ---

    @abstractmethod
    async def list_dashboards(self) -> list[DashboardMeta]: ...

    @abstractmethod
    async def get_dashboard(self, dashboard_id: str) -> DashboardMeta | None: ...

    @abstractmethod
    async def upsert_dashboard(self, dashboard_id: str | None, name: str, query: str, layout: str) -> str: ...

    @abstractmethod
    async def delete_dashboard(self, dashboard_id: str) -> None: ...

    @abstractmethod
    async def rename_dashboard(self, dashboard_id: str, name: str) -> None: ...

    @abstractmethod
    async def reorder_dashboards(self, ids: list[str]) -> None: ...


def dashboard_from_record(record: dict[str, Any]) -> DashboardMeta:
    order = record.get("order")
    return DashboardMeta(
        id=str(record["id"]),
        name=record.get("name") or "",
        query=record.get("query") or "",
        layout=record.get("layout") or "{}",
        order=int(order) if order is not None else 0,
        created_at=str(record.get("createdAt") or ""),
        updated_at=str(record.get("updatedAt") or ""),
    )
