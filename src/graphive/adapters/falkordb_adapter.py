"""FalkorDB adapter over the FalkorDB browser HTTP API.

The API has no multi-statement transactions and no bound parameters: every
call is one interpolated query string, answered with an event stream.
Reversal and migration are therefore delete-then-create; if the create half
fails the relationship is gone and PartialWriteError says so.
"""

from __future__ import annotations

import json
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any

import httpx
import jwt

from graphive.adapters.base import (
    DASHBOARD_LABEL,
    DEFAULT_REL_TYPE,
    GraphAdapter,
    ProjectionBuilder,
    dashboard_from_record,
    escape_cypher_string,
    validate_identifier,
)
from graphive.adapters.sse import read_query_stream
from graphive.config import ConnectionConfig
from graphive.errors import (
    EntityNotFoundError,
    ErrorCode,
    GraphiveError,
    NotConnectedError,
    PartialWriteError,
)
from graphive.models import DashboardMeta, GraphProjection, QueryResult

logger = logging.getLogger("graphive.adapters.falkordb")

DEFAULT_GRAPH = "Graphive"
# String literals and backtick identifiers are matched first so a "$" inside
# them is never taken for a placeholder
_PARAM_RE = re.compile(
    r"'(?:[^'\\]|\\.)*'"
    r'|"(?:[^"\\]|\\.)*"'
    r"|`(?:[^`]|``)*`"
    r"|\$(\w+)\b"
)
# Refresh the token this many seconds before its exp claim
_TOKEN_SKEW = 30.0


class _Unauthorized(Exception):
    """The query endpoint answered 401; the token must be renewed."""


def to_literal(value: Any) -> str:
    """Render a Python value as a Cypher literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return f"'{escape_cypher_string(value)}'"
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(to_literal(v) for v in value) + "]"
    if isinstance(value, dict):
        return map_literal(value)
    return f"'{escape_cypher_string(str(value))}'"


def quote_key(key: str) -> str:
    return "`" + str(key).replace("`", "``") + "`"


def map_literal(props: dict[str, Any]) -> str:
    return "{" + ", ".join(f"{quote_key(k)}: {to_literal(v)}" for k, v in props.items()) + "}"


def interpolate_params(query: str, params: dict[str, Any] | None) -> str:
    """Replace ``$name`` placeholders with literals in a single pass.

    Quoted strings and identifiers already in ``query`` are copied unchanged.
    """
    if not params:
        return query

    def repl(m: re.Match[str]) -> str:
        name = m.group(1)
        if name is None:
            return m.group(0)
        return to_literal(params[name]) if name in params else m.group(0)

    return _PARAM_RE.sub(repl, query)


def match_node(var: str, node_id: str) -> str:
    """WHERE fragment matching a node by internal id or ``id`` property."""
    node_id = str(node_id)
    if node_id.isdigit():
        return f"(id({var}) = {node_id} OR {var}.id = {to_literal(node_id)})"
    return f"{var}.id = {to_literal(node_id)}"


def parse_jwt_expiry(token: str) -> float | None:
    """Read the exp claim of a JWT without verifying it."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return None
    exp = claims.get("exp")
    return float(exp) if exp is not None else None


def normalize_result(payload: dict[str, Any] | None) -> QueryResult:
    """Turn ``{header, data, statistics}`` into a QueryResult."""
    if not payload:
        return QueryResult()

    columns = [h["name"] if isinstance(h, dict) else str(h) for h in payload.get("header") or []]
    records: list[dict[str, Any]] = []
    for row in payload.get("data") or []:
        if isinstance(row, dict):
            records.append(row)
        else:
            records.append({col: val for col, val in zip(columns, row)})

    counters: dict[str, int] = {}
    stats = payload.get("statistics") or payload.get("stats") or []
    items = stats.items() if isinstance(stats, dict) else (
        s.split(": ", 1) for s in stats if isinstance(s, str) and ": " in s
    )
    for name, raw in items:
        try:
            counters[str(name).strip().lower().replace(" ", "_")] = int(str(raw).strip())
        except ValueError:
            continue  # e.g. "Query internal execution time: 0.3 milliseconds"
    return QueryResult(records=records, counters=counters)


def _collect(builder: ProjectionBuilder, value: Any) -> None:
    if isinstance(value, list):
        for item in value:
            _collect(builder, item)
        return
    if not isinstance(value, dict):
        return
    if "id" in value and isinstance(value.get("labels"), list) and "properties" in value:
        builder.add_node(str(value["id"]), value["labels"], value.get("properties") or {})
        return
    rel_type = value.get("relationshipType", value.get("type"))
    source = value.get("sourceId", value.get("start", value.get("startNode")))
    target = value.get("destinationId", value.get("end", value.get("endNode")))
    if "id" in value and rel_type is not None and source is not None and target is not None:
        builder.add_relationship(f"e{value['id']}", rel_type, str(source), str(target), value.get("properties") or {})
        return
    # Paths and nested maps
    for item in value.values():
        if isinstance(item, (list, dict)):
            _collect(builder, item)


def project(result: QueryResult) -> GraphProjection:
    builder = ProjectionBuilder()
    for record in result.records:
        for value in record.values():
            _collect(builder, value)
    return builder.build()


class FalkorDBAdapter(GraphAdapter):
    """Talks to FalkorDB through its browser API with a bearer token."""

    provider = "falkordb"

    def __init__(
        self,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        db_host: str = "localhost",
        db_port: str = "6379",
    ) -> None:
        super().__init__()
        self._timeout = timeout
        self._transport = transport
        # Where the browser API itself reaches the database
        self._db_host = db_host
        self._db_port = db_port
        self._client: httpx.AsyncClient | None = None
        self._graph = DEFAULT_GRAPH
        self._token: str | None = None
        self._token_expires_at: float | None = None

    # --- Connection ---

    @staticmethod
    def base_url(config: ConnectionConfig) -> str:
        scheme = "https" if config.protocol in ("https", "rediss") or config.is_secure else "http"
        return f"{scheme}://{config.host}:{config.resolved_port}/api"

    def _new_client(self, config: ConnectionConfig) -> httpx.AsyncClient:
        kwargs: dict[str, Any] = {"base_url": self.base_url(config), "timeout": self._timeout}
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    async def initialize(self, config: ConnectionConfig) -> None:
        if self._client is not None:
            await self._client.aclose()
        self.config = config
        self._graph = config.database or DEFAULT_GRAPH
        self._client = self._new_client(config)
        self._token = None
        self._token_expires_at = None
        logger.info("FalkorDB client initialized: %s graph=%s", self.base_url(config), self._graph)

    async def _login(self, client: httpx.AsyncClient, config: ConnectionConfig) -> str:
        payload: dict[str, Any] = {
            "username": config.username or "default",
            "password": config.password,
            "host": self._db_host,
            "port": self._db_port,
        }
        if config.is_secure or config.protocol in ("https", "rediss"):
            payload["tls"] = True
        resp = await client.post("/auth/tokens/credentials", json=payload)
        if resp.status_code >= 400:
            code = ErrorCode.AUTH_FAILED if resp.status_code in (401, 403) else ErrorCode.BACKEND_ERROR
            raise GraphiveError(f"Auth failed: {resp.status_code} - {resp.text[:200]}", code=code)
        text = resp.text
        try:
            body = json.loads(text)
        except ValueError:
            token = text.strip()
        else:
            token = body.get("token", "") if isinstance(body, dict) else str(body)
        if not token:
            raise GraphiveError("Authentication failed (no token returned)", code=ErrorCode.AUTH_FAILED)
        return token

    async def _ensure_token(self) -> None:
        """Log in lazily; also refreshes a token whose exp claim is near."""
        if self._client is None or self.config is None:
            raise NotConnectedError()
        if self._token and (self._token_expires_at is None or time.time() < self._token_expires_at - _TOKEN_SKEW):
            return
        logger.debug("Restoring FalkorDB session")
        self._token = await self._login(self._client, self.config)
        self._token_expires_at = parse_jwt_expiry(self._token)

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise NotConnectedError()
        return self._client

    async def _send(self, client: httpx.AsyncClient, graph: str, token: str, text: str) -> dict[str, Any] | None:
        headers = {"Authorization": f"Bearer {token}", "Accept": "text/event-stream"}
        async with client.stream("GET", f"/graph/{graph}", params={"query": text}, headers=headers) as resp:
            if resp.status_code == 401:
                raise _Unauthorized()
            if resp.status_code >= 400:
                body = (await resp.aread()).decode("utf-8", errors="replace")
                raise GraphiveError(f"Query failed: {resp.status_code} - {body[:500]}")
            return await read_query_stream(resp.aiter_lines())

    async def verify_connectivity(self, config: ConnectionConfig) -> None:
        async with self._new_client(config) as client:
            token = await self._login(client, config)
            await self._send(client, config.database or DEFAULT_GRAPH, token, "RETURN 1")

    async def check_connection(self) -> bool:
        if self._client is None:
            return False
        try:
            await self.run_query("RETURN 1")
        except (GraphiveError, httpx.HTTPError) as e:
            logger.info("FalkorDB health check failed: %s", e)
            return False
        return True

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
        self._client = None
        self._token = None
        self._token_expires_at = None
        self.config = None

    # --- Queries ---

    async def run_query(self, query: str, params: dict[str, Any] | None = None) -> QueryResult:
        text = interpolate_params(query, params)
        client = self._require_client()
        await self._ensure_token()
        try:
            payload = await self._send(client, self._graph, self._token or "", text)
        except _Unauthorized:
            logger.info("FalkorDB token rejected; logging in again")
            self._token = None
            await self._ensure_token()
            try:
                payload = await self._send(client, self._graph, self._token or "", text)
            except _Unauthorized:
                raise GraphiveError("Unauthorized: session could not be restored", code=ErrorCode.AUTH_FAILED)
        return normalize_result(payload)

    async def execute_query(self, query: str) -> GraphProjection:
        return project(await self.run_query(query))

    # --- Nodes ---

    async def create_node(self, label: str) -> str:
        result = await self.run_query("CREATE (n {name: $name}) RETURN id(n) AS id", {"name": label})
        row = result.first()
        if row is None or row.get("id") is None:
            raise GraphiveError("No ID returned")
        return str(row["id"])

    async def rename_node(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, "SET n.name = $name", {"name": label})

    async def delete_node(self, node_id: str) -> None:
        await self.run_query(f"MATCH (n) WHERE {match_node('n', node_id)} DETACH DELETE n")

    async def set_property(self, node_id: str, key: str, value: Any) -> None:
        await self._write_node(node_id, f"SET n.{quote_key(key)} = $value", {"value": value})

    async def delete_property(self, node_id: str, key: str) -> None:
        await self._write_node(node_id, f"REMOVE n.{quote_key(key)}")

    async def add_label(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, f"SET n:{validate_identifier(label)}")

    async def remove_label(self, node_id: str, label: str) -> None:
        await self._write_node(node_id, f"REMOVE n:{validate_identifier(label)}")

    async def _write_node(self, node_id: str, clause: str, params: dict[str, Any] | None = None) -> None:
        result = await self.run_query(
            f"MATCH (n) WHERE {match_node('n', node_id)} WITH n LIMIT 1 {clause} RETURN count(n) AS matched",
            params,
        )
        row = result.first()
        if row is not None and not row.get("matched"):
            raise EntityNotFoundError(f"Node {node_id} not found")

    async def fetch_neighbors(self, node_id: str) -> GraphProjection:
        return await self.execute_query(f"MATCH (n)-[r]-(m) WHERE {match_node('n', node_id)} RETURN n, r, m")

    async def fetch_elements(self, node_ids: list[str], edge_ids: list[str]) -> GraphProjection:
        if not node_ids and not edge_ids:
            return GraphProjection()
        edge_list = to_literal([str(e) for e in edge_ids])
        if node_ids:
            numeric = [int(n) for n in node_ids if str(n).isdigit()]
            query = (
                f"MATCH (n) WHERE id(n) IN {to_literal(numeric)} OR n.id IN {to_literal([str(n) for n in node_ids])} "
                f"OPTIONAL MATCH (n)-[r]-(m) WHERE r.id IN {edge_list} RETURN n, r, m"
            )
        else:
            query = f"MATCH (n)-[r]-(m) WHERE r.id IN {edge_list} RETURN n, r, m"
        return await self.execute_query(query)

    # --- Relationships ---

    async def create_edge(self, edge_id: str, source_id: str, target_id: str, rel_type: str = DEFAULT_REL_TYPE) -> None:
        rel_type = validate_identifier(rel_type, "relationship type")
        await self._create_relationship(source_id, target_id, rel_type, {"id": edge_id})

    async def _create_relationship(self, source_id: str, target_id: str, rel_type: str, props: dict[str, Any]) -> None:
        result = await self.run_query(
            f"MATCH (a), (b) WHERE {match_node('a', source_id)} AND {match_node('b', target_id)} "
            f"WITH a, b LIMIT 1 CREATE (a)-[r:{rel_type} {map_literal(props)}]->(b) RETURN count(r) AS created"
        )
        row = result.first()
        created = result.counters.get("relationships_created", row.get("created") if row else 0)
        if not created:
            raise EntityNotFoundError(f"Endpoint not found for relationship {props.get('id')}")

    async def update_edge_label(self, edge_id: str, label: str) -> None:
        result = await self.run_query(
            "MATCH ()-[r]->() WHERE r.id = $rid SET r.label = $label RETURN count(r) AS updated",
            {"rid": edge_id, "label": label},
        )
        row = result.first()
        if row is not None and not row.get("updated"):
            raise EntityNotFoundError(f"Edge with id {edge_id} not found")

    async def delete_edge(self, edge_id: str) -> None:
        await self.run_query("MATCH ()-[r]->() WHERE r.id = $rid DELETE r", {"rid": edge_id})

    async def _read_relationship(self, edge_id: str) -> dict[str, Any]:
        result = await self.run_query(
            "MATCH (a)-[r]->(b) WHERE r.id = $rid "
            "RETURN id(a) AS sourceId, id(b) AS targetId, a.id AS sourceAppId, b.id AS targetAppId, "
            "type(r) AS relType, properties(r) AS props LIMIT 1",
            {"rid": edge_id},
        )
        row = result.first()
        if row is None:
            raise EntityNotFoundError(f"Edge with id {edge_id} not found")
        props = dict(row.get("props") or {})
        props.setdefault("id", edge_id)
        return {
            "edge_id": edge_id,
            "source": str(row["sourceId"]),
            "target": str(row["targetId"]),
            "source_app_id": row.get("sourceAppId"),
            "target_app_id": row.get("targetAppId"),
            "type": row["relType"],
            "properties": props,
        }

    async def _rewrite(self, snapshot: dict[str, Any], source: str, target: str, operation: str) -> None:
        """Delete then recreate; the gap between the two calls is not atomic."""
        await self.delete_edge(snapshot["edge_id"])
        try:
            await self._create_relationship(source, target, snapshot["type"], snapshot["properties"])
        except Exception as e:
            details = {"operation": operation, "relationship": snapshot, "new_source": source, "new_target": target}
            logger.error(
                "%s of relationship %s left it deleted without replacement: %s; snapshot=%s",
                operation, snapshot["edge_id"], e, json.dumps(details, default=str),
            )
            raise PartialWriteError(
                f"Relationship {snapshot['edge_id']} was deleted but could not be recreated: {e}",
                details=details,
            ) from e

    async def reverse_edge(self, edge_id: str) -> tuple[str, str]:
        snap = await self._read_relationship(edge_id)
        await self._rewrite(snap, snap["target"], snap["source"], "reverse")
        new_source = snap["target_app_id"] if snap["target_app_id"] is not None else snap["target"]
        new_target = snap["source_app_id"] if snap["source_app_id"] is not None else snap["source"]
        return str(new_source), str(new_target)

    async def migrate_edge(self, edge_id: str, new_source: str, new_target: str) -> None:
        snap = await self._read_relationship(edge_id)
        await self._rewrite(snap, new_source, new_target, "migrate")

    # --- Dashboards ---

    _DASHBOARD_FIELDS = (
        "id(d) AS id, d.name AS name, d.query AS query, d.layout AS layout, "
        "d.createdAt AS createdAt, d.updatedAt AS updatedAt, d.order AS order"
    )

    async def list_dashboards(self) -> list[DashboardMeta]:
        result = await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) RETURN {self._DASHBOARD_FIELDS} ORDER BY d.order ASC, d.updatedAt DESC"
        )
        return [dashboard_from_record(r) for r in result.records]

    async def get_dashboard(self, dashboard_id: str) -> DashboardMeta | None:
        result = await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE id(d) = {int(dashboard_id)} RETURN {self._DASHBOARD_FIELDS}"
        )
        row = result.first()
        return dashboard_from_record(row) if row else None

    async def upsert_dashboard(self, dashboard_id: str | None, name: str, query: str, layout: str) -> str:
        now = datetime.now(timezone.utc).isoformat()
        params = {"name": name, "query": query, "layout": layout, "now": now}
        if dashboard_id:
            await self.run_query(
                f"MATCH (d:{DASHBOARD_LABEL}) WHERE id(d) = {int(dashboard_id)} "
                "SET d.name = $name, d.query = $query, d.layout = $layout, d.updatedAt = $now",
                params,
            )
            return dashboard_id
        result = await self.run_query(
            f"CREATE (d:{DASHBOARD_LABEL} {{name: $name, query: $query, layout: $layout, "
            "createdAt: $now, updatedAt: $now, order: 999}) RETURN id(d) AS id",
            params,
        )
        row = result.first()
        if row is None:
            raise GraphiveError("Failed to create dashboard")
        return str(row["id"])

    async def delete_dashboard(self, dashboard_id: str) -> None:
        await self.run_query(f"MATCH (d:{DASHBOARD_LABEL}) WHERE id(d) = {int(dashboard_id)} DETACH DELETE d")

    async def rename_dashboard(self, dashboard_id: str, name: str) -> None:
        await self.run_query(
            f"MATCH (d:{DASHBOARD_LABEL}) WHERE id(d) = {int(dashboard_id)} SET d.name = $name, d.updatedAt = $now",
            {"name": name, "now": datetime.now(timezone.utc).isoformat()},
        )

    async def reorder_dashboards(self, ids: list[str]) -> None:
        # One statement per dashboard; there is no UNWIND over bound lists here
        for index, dashboard_id in enumerate(ids):
            await self.run_query(f"MATCH (d:{DASHBOARD_LABEL}) WHERE id(d) = {int(dashboard_id)} SET d.order = {index}")
