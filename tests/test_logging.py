"""Tests for structured logging and the per-write operation context."""

from __future__ import annotations

import json
import logging

import pytest

from graphive.config import Config, LoggingConfig
from graphive.errors import GraphiveError
from graphive.logging_setup import (
    StructuredFormatter,
    _OperationFilter,
    _TextFormatter,
    bind_provider,
    current_operation,
    operation_scope,
    setup_logging,
)


def _record(message: str = "hello") -> logging.LogRecord:
    record = logging.LogRecord("graphive.test", logging.INFO, __file__, 1, message, None, None)
    _OperationFilter().filter(record)
    return record


class TestOperationScope:
    def test_json_line_carries_operation_fields(self):
        with operation_scope("rename_node", ["a"]) as ctx:
            bind_provider("falkordb")
            payload = json.loads(StructuredFormatter().format(_record()))
        assert ctx.id.startswith("rename_node-")
        assert payload["operation_id"] == ctx.id
        assert payload["entities"] == ["a"]
        assert payload["provider"] == "falkordb"
        assert payload["logger"] == "graphive.test"
        assert payload["message"] == "hello"

    def test_fields_omitted_outside_a_scope(self):
        payload = json.loads(StructuredFormatter().format(_record()))
        assert not {"operation_id", "entities", "provider"} & payload.keys()

    def test_scope_restores_the_outer_operation(self):
        with operation_scope("outer") as outer:
            with operation_scope("inner", ["x"]):
                bind_provider("neo4j")
            assert current_operation.get() == outer
        assert current_operation.get() is None

    def test_bind_provider_outside_a_scope_is_ignored(self):
        bind_provider("neo4j")
        assert current_operation.get() is None

    def test_text_prefix(self):
        formatter = _TextFormatter("%(name)s: %(message)s")
        with operation_scope("delete_edge", ["ab"]) as ctx:
            bind_provider("neo4j")
            line = formatter.format(_record("gone"))
        assert line == f"[{ctx.id} neo4j ab] graphive.test: gone"
        assert formatter.format(_record("plain")) == "graphive.test: plain"


class TestStoreWrites:
    @pytest.mark.asyncio
    async def test_failure_log_names_the_operation(self, seeded, adapter, caplog):
        adapter.fail("rename_node", GraphiveError("boom"))
        handler_filter = _OperationFilter()
        caplog.handler.addFilter(handler_filter)
        try:
            with caplog.at_level(logging.INFO, logger="graphive"):
                await seeded.update_node_label("a", "Alice")
        finally:
            caplog.handler.removeFilter(handler_filter)
        failed = [r for r in caplog.records if r.name == "graphive.registry"]
        assert failed and failed[0].operation_id.startswith("rename_node-")
        assert failed[0].entities == ("a",)
        assert failed[0].provider == "neo4j"


def test_setup_logging_json_mode():
    root = logging.getLogger()
    saved = (root.level, list(root.handlers))
    try:
        setup_logging(Config(logging=LoggingConfig(format="json", level="debug")))
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("neo4j").level == logging.ERROR
    finally:
        root.setLevel(saved[0])
        root.handlers[:] = saved[1]
