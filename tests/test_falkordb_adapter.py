"""Tests for FalkorDBAdapter over a mocked HTTP transport."""

from __future__ import annotations

import json
import logging
import re
import time
from collections import deque

import httpx
import jwt
import pytest

from graphive.adapters.falkordb_adapter import (
    FalkorDBAdapter,
    interpolate_params,
    map_literal,
    match_node,
    normalize_result,
    parse_jwt_expiry,
    project,
    to_literal,
)
from graphive.config import ConnectionConfig
from graphive.errors import ErrorCode, GraphiveError, InvalidIdentifierError, PartialWriteError


# ------------------------------------------------------------------ #
#  Helpers                                                            #
# ------------------------------------------------------------------ #

def sse(header=None, data=None, statistics=None) -> str:
    payload = {"header": header or [], "data": data or [], "statistics": statistics or []}
    return f"event: result\ndata: {json.dumps(payload)}\n\n"


def sse_error(message: str) -> str:
    return f"event: err\ndata: {message}\n\n"


class FakeFalkor:
    """Browser API stand-in: credential login plus streamed graph queries."""

    def __init__(self) -> None:
        self.queries: list[str] = []
        self.auth_headers: list[str | None] = []
        self.login_bodies: list[dict] = []
        self.responses: deque[str] = deque()
        self.login_status = 200
        self.reject_next = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/tokens/credentials":
            self.login_bodies.append(json.loads(request.content))
            if self.login_status != 200:
                return httpx.Response(self.login_status, text="invalid credentials")
            return httpx.Response(200, json={"token": f"tok{len(self.login_bodies)}"})
        self.queries.append(request.url.params["query"])
        self.auth_headers.append(request.headers.get("authorization"))
        if self.reject_next:
            self.reject_next -= 1
            return httpx.Response(401, text="expired")
        body = self.responses.popleft() if self.responses else sse()
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


class OneRelationshipFalkor(FakeFalkor):
    """Keeps one KNOWS relationship between internal nodes 1 ("a") and 2 ("b")."""

    def __init__(self, props: dict) -> None:
        super().__init__()
        self.app_ids = {1: "a", 2: "b"}
        self.props = props
        self.ends: tuple[int, int] | None = (1, 2)
        self.created: list[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/tokens/credentials":
            return super().handler(request)
        query = request.url.params["query"]
        self.queries.append(query)
        if "DELETE r" in query:
            self.ends = None
            body = sse(statistics=["Relationships deleted: 1"])
        elif "CREATE (a)-[r:" in query:
            source = int(re.search(r"id\(a\) = (\d+)", query).group(1))
            target = int(re.search(r"id\(b\) = (\d+)", query).group(1))
            self.created.append(re.search(r"\[r:KNOWS (\{.*\})\]->", query).group(1))
            self.ends = (source, target)
            body = sse(["created"], [[1]], ["Relationships created: 1"])
        else:
            source, target = self.ends
            body = sse(
                ["sourceId", "targetId", "sourceAppId", "targetAppId", "relType", "props"],
                [[source, target, self.app_ids[source], self.app_ids[target], "KNOWS", self.props]],
            )
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})


CONN = ConnectionConfig(provider="falkordb", protocol="http", host="db", username="u", password="p")


async def _adapter(fake: FakeFalkor) -> FalkorDBAdapter:
    adapter = FalkorDBAdapter(transport=httpx.MockTransport(fake.handler))
    await adapter.initialize(CONN)
    return adapter


# ------------------------------------------------------------------ #
#  Literals / helpers                                                 #
# ------------------------------------------------------------------ #

class TestLiterals:
    def test_string_escaping_order(self):
        assert to_literal("O'Brien\\") == "'O\\'Brien\\\\'"
        assert to_literal("a\nb") == "'a\\nb'"

    def test_scalars_and_collections(self):
        assert to_literal(None) == "null"
        assert to_literal(True) == "true"
        assert to_literal(3) == "3"
        assert to_literal(["a", 1]) == "['a', 1]"
        assert to_literal({"k": "v"}) == "{`k`: 'v'}"

    def test_interpolation_is_single_pass(self):
        query = interpolate_params("RETURN $a, $b, $missing", {"a": "$b", "b": "x"})
        assert query == "RETURN '$b', 'x', $missing"

    def test_placeholders_inside_rendered_literals_are_left_alone(self):
        query = interpolate_params("MATCH (n) WHERE n.id = 'user$name' SET n.`a$value` = $value", {"name": "x", "value": 1})
        assert query == "MATCH (n) WHERE n.id = 'user$name' SET n.`a$value` = 1"

    def test_match_node_by_internal_or_app_id(self):
        assert match_node("n", "7") == "(id(n) = 7 OR n.id = '7')"
        assert match_node("n", "app'1") == "n.id = 'app\\'1'"


class TestResultShapes:
    def test_rows_and_statistics(self):
        result = normalize_result({
            "header": ["name", "age"],
            "data": [["A", 1], ["B", 2]],
            "statistics": ["Nodes created: 1", "Query internal execution time: 0.2 milliseconds"],
        })
        assert result.records == [{"name": "A", "age": 1}, {"name": "B", "age": 2}]
        assert result.counters == {"nodes_created": 1}

    def test_projection_resolves_ids_and_hides_dashboards(self):
        result = normalize_result({
            "header": ["n", "r", "m"],
            "data": [[
                {"id": 1, "labels": ["Person"], "properties": {"name": "A"}},
                {"id": 5, "relationshipType": "KNOWS", "sourceId": 1, "destinationId": 2, "properties": {}},
                {"id": 2, "labels": [], "properties": {"id": "app-2"}},
            ], [
                {"id": 9, "labels": ["_GraphiveDashboard"], "properties": {"name": "Main"}},
                None,
                None,
            ]],
        })
        projection = project(result)
        assert [n.id for n in projection.nodes] == ["1", "app-2"]
        assert projection.nodes[0].label == "A"
        assert projection.nodes[0].backend_labels == ["Person"]
        (edge,) = projection.edges
        assert (edge.id, edge.source, edge.target, edge.label) == ("e5", "1", "app-2", "KNOWS")

    def test_jwt_expiry(self):
        token = jwt.encode({"exp": 1700000000}, "falkordb-test-signing-key-0123456789", algorithm="HS256")
        assert parse_jwt_expiry(token) == 1700000000.0
        assert parse_jwt_expiry("not-a-jwt") is None

    def test_base_url_scheme(self):
        assert FalkorDBAdapter.base_url(CONN) == "http://db:3000/api"
        secure = CONN.model_copy(update={"protocol": "https", "port": 443})
        assert FalkorDBAdapter.base_url(secure) == "https://db:443/api"


# ------------------------------------------------------------------ #
#  Session handling                                                   #
# ------------------------------------------------------------------ #

class TestSession:
    @pytest.mark.asyncio
    async def test_lazy_login_and_bearer_token(self):
        fake = FakeFalkor()
        fake.responses.append(sse(["name"], [["Alice"]]))
        adapter = await _adapter(fake)
        assert fake.login_bodies == []
        result = await adapter.run_query("MATCH (n) RETURN n.name AS name")
        assert result.records == [{"name": "Alice"}]
        assert fake.auth_headers == ["Bearer tok1"]
        assert fake.login_bodies[0]["username"] == "u"
        assert fake.login_bodies[0]["password"] == "p"

    @pytest.mark.asyncio
    async def test_token_is_reused(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        await adapter.run_query("RETURN 1")
        await adapter.run_query("RETURN 2")
        assert len(fake.login_bodies) == 1

    @pytest.mark.asyncio
    async def test_expired_token_is_renewed_once_and_retried(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        await adapter.run_query("RETURN 1")
        fake.reject_next = 1
        await adapter.run_query("RETURN 2")
        assert len(fake.login_bodies) == 2
        assert fake.queries == ["RETURN 1", "RETURN 2", "RETURN 2"]
        assert fake.auth_headers[-1] == "Bearer tok2"

    @pytest.mark.asyncio
    async def test_second_rejection_is_an_auth_failure(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        fake.reject_next = 2
        with pytest.raises(GraphiveError) as exc:
            await adapter.run_query("RETURN 1")
        assert exc.value.code == ErrorCode.AUTH_FAILED

    @pytest.mark.asyncio
    async def test_bad_credentials(self):
        fake = FakeFalkor()
        fake.login_status = 401
        adapter = await _adapter(fake)
        with pytest.raises(GraphiveError) as exc:
            await adapter.run_query("RETURN 1")
        assert exc.value.code == ErrorCode.AUTH_FAILED

    @pytest.mark.asyncio
    async def test_token_near_expiry_is_refreshed(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        adapter._token = "old"
        adapter._token_expires_at = time.time() + 5
        await adapter.run_query("RETURN 1")
        assert len(fake.login_bodies) == 1
        assert fake.auth_headers == ["Bearer tok1"]

    @pytest.mark.asyncio
    async def test_error_event_surfaces_backend_message(self):
        fake = FakeFalkor()
        fake.responses.append(sse_error("Unknown function 'foo'"))
        adapter = await _adapter(fake)
        with pytest.raises(GraphiveError, match="Unknown function"):
            await adapter.run_query("RETURN foo()")

    @pytest.mark.asyncio
    async def test_trial_connection_uses_a_throwaway_client(self):
        fake = FakeFalkor()
        adapter = FalkorDBAdapter(transport=httpx.MockTransport(fake.handler))
        await adapter.verify_connectivity(CONN)
        assert fake.queries == ["RETURN 1"]
        assert adapter.is_initialized is False

    @pytest.mark.asyncio
    async def test_calls_before_initialize_fail(self):
        adapter = FalkorDBAdapter()
        with pytest.raises(GraphiveError) as exc:
            await adapter.run_query("RETURN 1")
        assert exc.value.code == ErrorCode.NOT_CONNECTED


# ------------------------------------------------------------------ #
#  Writes                                                             #
# ------------------------------------------------------------------ #

class TestWrites:
    @pytest.mark.asyncio
    async def test_create_node_escapes_name(self):
        fake = FakeFalkor()
        fake.responses.append(sse(["id"], [[7]], ["Nodes created: 1"]))
        adapter = await _adapter(fake)
        assert await adapter.create_node("O'Brien\\") == "7"
        assert "{name: 'O\\'Brien\\\\'}" in fake.queries[0]

    @pytest.mark.asyncio
    async def test_invalid_identifiers_never_reach_the_wire(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        with pytest.raises(InvalidIdentifierError):
            await adapter.add_label("1", "Bad Label")
        with pytest.raises(InvalidIdentifierError):
            await adapter.create_edge("e1", "1", "2", "REL]->() DELETE n //")
        assert fake.queries == []

    @pytest.mark.asyncio
    async def test_reverse_recreates_with_type_and_properties(self):
        fake = FakeFalkor()
        fake.responses.extend([
            sse(["sourceId", "targetId", "sourceAppId", "targetAppId", "relType", "props"],
                [[1, 2, "a", "b", "KNOWS", {"id": "e1", "since": 2020}]]),
            sse(statistics=["Relationships deleted: 1"]),
            sse(["created"], [[1]], ["Relationships created: 1"]),
        ])
        adapter = await _adapter(fake)
        assert await adapter.reverse_edge("e1") == ("b", "a")
        create = fake.queries[2]
        assert "(id(a) = 2 OR a.id = '2')" in create
        assert "(id(b) = 1 OR b.id = '1')" in create
        assert "[r:KNOWS {`id`: 'e1', `since`: 2020}]" in create

    @pytest.mark.asyncio
    async def test_failed_recreate_is_a_partial_write(self, caplog):
        fake = FakeFalkor()
        fake.responses.extend([
            sse(["sourceId", "targetId", "sourceAppId", "targetAppId", "relType", "props"],
                [[1, 2, None, None, "KNOWS", {"id": "e1"}]]),
            sse(statistics=["Relationships deleted: 1"]),
            sse(["created"], [[0]]),
        ])
        adapter = await _adapter(fake)
        with caplog.at_level(logging.ERROR, logger="graphive.adapters.falkordb"):
            with pytest.raises(PartialWriteError) as exc:
                await adapter.migrate_edge("e1", "3", "4")
        assert exc.value.code == ErrorCode.PARTIAL_FAILURE
        assert exc.value.details["relationship"]["type"] == "KNOWS"
        assert exc.value.details["new_source"] == "3"
        assert "KNOWS" in caplog.text

    @pytest.mark.asyncio
    async def test_dollar_signs_in_ids_and_keys_stay_quoted(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        await adapter.rename_node("user$name", "Bob")
        await adapter.set_property("user$name", "a$value`", "v")
        assert "WHERE n.id = 'user$name' WITH n LIMIT 1 SET n.name = 'Bob'" in fake.queries[0]
        assert "SET n.`a$value``` = 'v'" in fake.queries[1]

    @pytest.mark.asyncio
    async def test_reversing_twice_restores_endpoints_and_properties(self):
        props = {"id": "e1", "since": 2020, "tags": ["x", "y"], "note": "it's \\ fine"}
        fake = OneRelationshipFalkor(props)
        adapter = await _adapter(fake)
        assert await adapter.reverse_edge("e1") == ("b", "a")
        assert await adapter.reverse_edge("e1") == ("a", "b")
        assert fake.ends == (1, 2)
        assert fake.created == [map_literal(props), map_literal(props)]

    @pytest.mark.asyncio
    async def test_missing_node_on_write(self):
        fake = FakeFalkor()
        fake.responses.append(sse(["matched"], [[0]]))
        adapter = await _adapter(fake)
        with pytest.raises(GraphiveError) as exc:
            await adapter.rename_node("99", "x")
        assert exc.value.code == ErrorCode.NOT_FOUND


class TestDashboards:
    @pytest.mark.asyncio
    async def test_new_dashboard_goes_last(self):
        fake = FakeFalkor()
        fake.responses.append(sse(["id"], [[12]]))
        adapter = await _adapter(fake)
        assert await adapter.upsert_dashboard(None, "Main", "MATCH (n) RETURN n", "{}") == "12"
        assert "order: 999" in fake.queries[0]
        assert "name: 'Main'" in fake.queries[0]

    @pytest.mark.asyncio
    async def test_reorder_writes_each_position(self):
        fake = FakeFalkor()
        adapter = await _adapter(fake)
        await adapter.reorder_dashboards(["5", "3"])
        assert "id(d) = 5" in fake.queries[0] and "SET d.order = 0" in fake.queries[0]
        assert "id(d) = 3" in fake.queries[1] and "SET d.order = 1" in fake.queries[1]
