"""Data models for the graph canvas, backend projections and dashboards."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# Anchor ids assigned to edges that arrive from a backend projection
DEFAULT_SOURCE_HANDLE = "bottom-h"
DEFAULT_TARGET_HANDLE = "top-h"


class EntityStatus(str, Enum):
    DRAFT = "draft"
    COMMITTING = "committing"
    PERSISTED = "persisted"
    PENDING_WRITE = "pending_write"
    PENDING_DELETE = "pending_delete"
    FAILED = "failed"


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0


class GraphNode(BaseModel):
    """A node on the canvas. ``data`` always carries ``label``."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: str = "rectangle"
    data: dict[str, Any] = Field(default_factory=lambda: {"label": ""})
    position: Position = Field(default_factory=Position)
    width: float | None = None
    height: float | None = None
    selected: bool = False
    hidden: bool = False
    status: EntityStatus = EntityStatus.PERSISTED

    @property
    def label(self) -> str:
        return str(self.data.get("label", ""))

    @property
    def is_draft(self) -> bool:
        return bool(self.data.get("isDraft"))

    @property
    def backend_labels(self) -> list[str]:
        return list(self.data.get("_labels", []))


class GraphEdge(BaseModel):
    """A relationship on the canvas between two node ids."""

    model_config = ConfigDict(frozen=True)

    id: str
    source: str
    target: str
    sourceHandle: str | None = None
    targetHandle: str | None = None
    type: str = "custom"
    data: dict[str, Any] = Field(default_factory=lambda: {"label": ""})
    selected: bool = False
    hidden: bool = False
    status: EntityStatus = EntityStatus.PERSISTED

    @property
    def label(self) -> str:
        return str(self.data.get("label", ""))

    @property
    def is_draft(self) -> bool:
        return bool(self.data.get("isDraft"))


class Connection(BaseModel):
    """A connect intent reported by the canvas."""

    source: str
    target: str
    sourceHandle: str | None = None
    targetHandle: str | None = None


class GraphProjection(BaseModel):
    """Normalized ``{nodes, edges}`` result of a bulk query or expansion."""

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)


class QueryResult(BaseModel):
    """Rows and write counters of a generic parameterized query."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    counters: dict[str, int] = Field(default_factory=dict)

    def first(self) -> dict[str, Any] | None:
        return self.records[0] if self.records else None


class DashboardMeta(BaseModel):
    id: str
    name: str
    query: str = ""
    layout: str = "{}"  # JSON-encoded DashboardLayout
    order: int = 0
    created_at: str = ""
    updated_at: str = ""


class NodeLayout(BaseModel):
    x: float
    y: float
    w: float | None = None
    h: float | None = None
    hidden: bool = False


class EdgeLayout(BaseModel):
    sourceHandle: str | None = None
    targetHandle: str | None = None
    hidden: bool = False


class DashboardLayout(BaseModel):
    """Saved canvas geometry keyed by entity id."""

    nodes: dict[str, NodeLayout] = Field(default_factory=dict)
    edges: dict[str, EdgeLayout] = Field(default_factory=dict)
