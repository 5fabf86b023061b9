"""Neo4j adapter over the official async driver.

Nodes are matched by either identity: ``elementId(n)`` (assigned by Neo4j)
or the ``id`` property (application id). Relationship reversal and
migration each run as one write transaction.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from neo4j import AsyncDriver, AsyncGraphDatabase

from graphive.adapters.base import (
    DASHBOARD_LABEL,
    DEFAULT_REL_TYPE,
    GraphAdapter,
    ProjectionBuilder,
    dashboard_from_record,
    validate_identifier,
)
from graphive.config import ConnectionConfig
from graphive.errors import EntityNotFoundError, GraphiveError, NotConnectedError
from graphive.models import DashboardMeta, GraphProjection, QueryResult

logger = logging.getLogger("graphive.adapters.neo4j")

_COUNTER_NAMES = (
    "nodes_created",
    "nodes_deleted",
    "relationships_created",
    "relationships_deleted",
    "properties_set",
    "labels_added",
    "labels_removed",
)

_MATCH_NODE = "MATCH (n) WHERE elementId(n) = $id OR n.id = $id WITH n LIMIT 1"
_MATCH_PAIR = (
    "MATCH (a), (b) WHERE (elementId(a) = $sID OR a.id = $sID) "
    "AND (elementId(b) = $tID OR b.id = $tID) WITH a, b LIMIT 1"
)
_READ_REL = (
    "MATCH (a)-[r {id: $rID}]->(b) "
    "RETURN type(r) AS relType, properties(r) AS props, "
    "coalesce(a.id, elementId(a)) AS source, coalesce(b.id, elementId(b)) AS target LIMIT 1"
)
_DASHBOARD_FIELDS = (
    "elementId(d) AS id, d.name AS name, d.query AS query, d.layout AS layout, "
    "d.createdAt AS createdAt, d.updatedAt AS updatedAt, d.order AS order"
)


def build_uri(config: ConnectionConfig) -> str:
    return f"{config.protocol}://{config.host}:{config.resolved_port}"


def quote_type(rel_type: str) -> str:
    """Backtick-quote a relationship type read back from the database."""
    return "`" + rel_type.replace("`", "``") + "`"


def _is_path(value: Any) -> bool:
    return hasattr(value, "relationships") and hasattr(value, "nodes") and not callable(value.nodes)


def _is_relationship(value: Any) -> bool:
    return hasattr(value, "type") and hasattr(value, "start_node") and hasattr(value, "end_node")


def _is_node(value: Any) -> bool:
    return hasattr(value, "labels") and hasattr(value, "element_id")


def _walk(value: Any, nodes: list[Any], rels: list[Any]) -> None:
    if value is None:
        return
    if _is_path(value):
        nodes.extend(value.nodes)
        rels.extend(value.relationships)
    elif _is_relationship(value):
        rels.append(value)
    elif _is_node(value):
        nodes.append(value)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _walk(item, nodes, rels)
    elif isinstance(value, dict):
        for item in value.values():
            _walk(item, nodes, rels)


def project(records: list[dict[str, Any]]) -> GraphProjection:
    """Build the canvas projection from raw driver values (nodes first, then relationships)."""
    nodes: list[Any] = []
    rels: list[Any] = []
    for record in records:
        for value in record.values():
            _walk(value, nodes, rels)

    builder = ProjectionBuilder()
    for node in nodes:
        builder.add_node(node.element_id, list(node.labels), dict(node.items()))
    for rel in rels:
        builder.add_relationship(
            rel.element_id,
            rel.type,
            rel.start_node.element_id,
            rel.end_node.element_id,
            dict(rel.items()),
        )
    return builder.build()


class Neo4jAdapter(GraphAdapter):
    """Talks to Neo4j over bolt/neo4j with real transactions."""

    provider = "neo4j"

    def __init__(self, driver_factory: Callable[..., AsyncDriver] | None = None) -> None:
        super().__init__()
        self._driver_factory = driver_factory or AsyncGraphDatabase.driver
        self._driver: AsyncDriver | None = None
        self._connection_key: str | None = None

    # --- Connection ---

    def _new_driver(self, config: ConnectionConfig) -> AsyncDriver:
        return self._driver_factory(build_uri(config), auth=(config.username, config.password))

    async def initialize(self, config: ConnectionConfig) -> None:
        if self._driver is not None and self._connection_key == config.key:
            self.config = config
            return
        if self._driver is not None:
            await self._driver.close()
        self._driver = self._new_driver(config)
        self._connection_key = config.key
        self.config = config
        logger.info("Neo4j driver initialized: %s", build_uri(config))

    def _require_driver(self) -> AsyncDriver:
        if self._driver is None:
            raise NotConnectedError()
        return self._driver

    def _session(self, driver: AsyncDriver | None = None, config: ConnectionConfig | None = None):
        cfg = config or self.config
        kwargs: dict[str, Any] = {}
        if cfg is not None and cfg.database:
            kwargs["database"] = cfg.database
        return (driver or self._require_driver()).session(**kwargs)

    async def verify_connectivity(self, config: ConnectionConfig) -> None:
        driver = self._new_driver(config)
        try:
            async with self._session(driver, config) as session:
                result = await session.run("RETURN 1 AS ok")
                await result.consume()
        finally:
            await driver.close()

    async def check_connection(self) -> bool:
        if self._driver is None:
            return False
        try:
            await self.run_query("RETURN 1 AS ok")
        except Exception as e:
            logger.info("Neo4j health check failed: %s", e)
            return False
        return True

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
        self._driver = None
        self._connection_key = None
        self.config = None

    # --- Queries ---

    async def _records(self, query: str, params: dict[str, Any] | None = None) -> tuple[list[dict[str, Any]], Any]:
        async with self._session() as session:
            result = await session.run(query, params or {})
            records = [{key: record[key] for key in record.keys()} async for record in result]
            summary = await result.consume()
        return records, summary

    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        records, summary = await self._records(query, params)
        counters = getattr(summary, "counters", None)
        return QueryResult(
            records=records,
            counters={name: int(getattr(counters, name, 0) or 0) for name in _COUNTER_NAMES},
        )

    async def execute_query(self, query: str) -> GraphProjection:
        records, _ = await self._records(query)
        return project(records)

    # --- Nodes ---

    async def create_node(self, label: str) -> str:
        row = (await self.run_query("CREATE (n {name: $name}) RETURN elementId(n) AS id", {"name": label})).first()
        if row is None:
            raise GraphiveError("No ID returned")
        return str(row["id"])

    async def _write_node(self, node_id: str, clause: str, params: dict[str, Any] | None = None) -> None:
        result = await self.run_query(f"{_MATCH_NODE} {clause} RETURN count(n) AS matched", {"id": node_id, **(params or {})})
        row = result.first()
        if row is None or not row.get("matched"):
            raise EntityNotFoundError(f"Node {node_id} not found")

    async def rename_node(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, "SET n.name = $name", {"name": label})

    async def delete_node(self, node_id: str) -> None:
        await self.run_query(
            "MATCH (n) WHERE elementId(n) = $id OR n.id = $id DETACH DELETE n", {"id": node_id}
        )

    async def set_property(self, node_id: str, key: str, value: Any) -> None:
        await self._write_node(node_id, "SET n += $props", {"props": {key: value}})

    async def delete_property(self, node_id: str, key: str) -> None:
        # A null value in a += map removes the property
        await self._write_node(node_id, "SET n += $props", {"props": {key: None}})

    async def add_label(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, f"SET n:`{validate_identifier(label)}`")

    async def remove_label(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, f"REMOVE n:`{validate_identifier(label)}`")

    async def fetch_neighbors(self, node_id: str) -> GraphProjection:
        records, _ = await self._records(
            "MATCH (n) WHERE elementId(n) = $id OR n.id = $id "
            "MATCH (n)-[r]-(neighbor) RETURN n, r, neighbor",
            {"id": node_id},
        )
        return project(records)

    async def fetch_elements(self, node_ids: list[str], edge_ids: list[str]) -> GraphProjection:
        if not node_ids and not edge_ids:
            return GraphProjection()
        if node_ids:
            query = (
                "MATCH (n) WHERE elementId(n) IN $nodeIds OR n.id IN $nodeIds "
                "OPTIONAL MATCH (n)-[r]-(m) WHERE r.id IN $edgeIds RETURN n, r, m"
            )
        else:
            query = "MATCH (n)-[r]-(m) WHERE r.id IN $edgeIds RETURN n, r, m"
        records, _ = await self._records(query, {"nodeIds": list(node_ids), "edgeIds": list(edge_ids)})
        return project(records)

    # --- Relationships ---

    async def create_edge(self, edge_id: str, source_id: str, target_id: str, rel_type: str = DEFAULT_REL_TYPE) -> None:
        rel_type = validate_identifier(rel_type, "relationship type")
        result = await self.run_query(
            f"{_MATCH_PAIR} CREATE (a)-[r:`{rel_type}` {{id: $rID}}]->(b) RETURN count(r) AS created",
            {"sID": source_id, "tID": target_id, "rID": edge_id},
        )
        row = result.first()
        if row is None or not row.get("created"):
            raise EntityNotFoundError(f"Endpoint not found for relationship {edge_id}")

    async def update_edge_label(self, edge_id: str, label: str) -> None:
        result = await self.run_query(
            "MATCH ()-[r {id: $rID}]->() SET r.label = $label RETURN count(r) AS updated",
            {"rID": edge_id, "label": label},
        )
        row = result.first()
        if row is None or not row.get("updated"):
            raise EntityNotFoundError(f"Edge with id {edge_id} not found")

    async def delete_edge(self, edge_id: str) -> None:
        await self.run_query("MATCH ()-[r {id: $rID}]->() DELETE r", {"rID": edge_id})

    @staticmethod
    async def _rewrite_tx(tx: Any, edge_id: str, new_source: str | None, new_target: str | None) -> tuple[str, str]:
        """Read, delete and recreate one relationship inside ``tx``.

        ``None`` endpoints mean "swap the current ones" (reversal).
        """
        record = await (await tx.run(_READ_REL, {"rID": edge_id})).single()
        if record is None:
            raise EntityNotFoundError(f"Edge with id {edge_id} not found")
        rel_type = record["relType"]
        props = dict(record["props"] or {})
        props.setdefault("id", edge_id)
        source = new_source if new_source is not None else record["target"]
        target = new_target if new_target is not None else record["source"]

        await (await tx.run("MATCH ()-[r {id: $rID}]->() DELETE r", {"rID": edge_id})).consume()
        created = await (await tx.run(
            f"{_MATCH_PAIR} CREATE (a)-[r:{quote_type(rel_type)}]->(b) SET r = $props RETURN count(r) AS created",
            {"sID": source, "tID": target, "props": props},
        )).single()
        if created is None or created["created"] != 1:
            # Raising inside execute_write rolls the delete back
            raise EntityNotFoundError(f"Endpoint not found while rewriting relationship {edge_id}")
        return str(source), str(target)

    async def reverse_edge(self, edge_id: str) -> tuple[str, str]:
        async with self._session() as session:
            return await session.execute_write(self._rewrite_tx, edge_id, None, None)

    async def migrate_edge(self, edge_id: str, new_source: str, new_target: str) -> None:
        async with self._session() as session:
            await session.execute_write(self._rewrite_tx, edge_id, new_source, new_target)

    # --- Dashboards ---

    async def list_dashboards(self) -> list[DashboardMeta]:
        result = await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) RETURN {_DASHBOARD_FIELDS} ORDER BY d.order ASC, d.updatedAt DESC"
        )
        return [dashboard_from_record(r) for r in result.records]

    async def get_dashboard(self, dashboard_id: str) -> DashboardMeta | None:
        row = (await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE elementId(d) = $id RETURN {_DASHBOARD_FIELDS}",
            {"id": dashboard_id},
        )).first()
        return dashboard_from_record(row) if row else None

    async def upsert_dashboard(self, dashboard_id: str | None, name: str, query: str, layout: str) -> str:
        now = datetime.now(timezone.utc).isoformat()
        params = {"name": name, "query": query, "layout": layout, "now": now}
        if dashboard_id:
            await self.run_query(
                f"MATCH (d:{DASHBOARD_LABEL}) WHERE elementId(d) = $id "
                "SET d.name = $name, d.query = $query, d.layout = $layout, d.updatedAt = $now",
                {**params, "id": dashboard_id},
            )
            return dashboard_id
        row = (await self.run_query(
            f"CREATE (d:{DASHBOARD_LABEL} {{name: $name, query: $query, layout: $layout, "
            "createdAt: $now, updatedAt: $now, order: 999}) RETURN elementId(d) AS id",
            params,
        )).first()
        if row is None:
            raise GraphiveError("Failed to create dashboard")
        return str(row["id"])

    async def delete_dashboard(self, dashboard_id: str) -> None:
        await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE elementId(d) = $id DETACH DELETE d", {"id": dashboard_id}
        )

    async def rename_dashboard(self, dashboard_id: str, name: str) -> None:
        await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE elementId(d) = $id SET d.name = $name, d.updatedAt = $now",
            {"id": dashboard_id, "name": name, "now": datetime.now(timezone.utc).isoformat()},
        )

    async def reorder_dashboards(self, ids: list[str]) -> None:
        if not ids:
            return
        await self.run_query(
            "UNWIND range(0, size($ids) - 1) AS i "
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE elementId(d) = $ids[i] SET d.order = i",
            {"ids": list(ids)},
        )
