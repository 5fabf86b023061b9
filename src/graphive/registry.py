"""Adapter registry - holds the single live graph adapter."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from graphive.adapters.base import GraphAdapter
from graphive.config import Config, ConnectionConfig
from graphive.errors import USER_MESSAGES, ErrorCode, Result, classify_error
from graphive.logging_setup import bind_provider

logger = logging.getLogger("graphive.registry")

T = TypeVar("T")

AdapterFactory = Callable[[Config], GraphAdapter]


def _neo4j(config: Config) -> GraphAdapter:
    from graphive.adapters.neo4j_adapter import Neo4jAdapter
    return Neo4jAdapter()


def _falkordb(config: Config) -> GraphAdapter:
    from graphive.adapters.falkordb_adapter import FalkorDBAdapter
    return FalkorDBAdapter(timeout=config.sync.query_timeout)


# Closed set of supported backends
_ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    "neo4j": _neo4j,
    "falkordb": _falkordb,
}


class AdapterRegistry:
    """Owns at most one live adapter and turns adapter calls into Results."""

    def __init__(
        self,
        config: Config | None = None,
        factories: dict[str, AdapterFactory] | None = None,
    ) -> None:
        self.config = config or Config()
        self._factories = factories or _ADAPTER_FACTORIES
        self._adapter: GraphAdapter | None = None
        self._lock = asyncio.Lock()

    @property
    def adapter(self) -> GraphAdapter | None:
        return self._adapter

    @property
    def is_connected(self) -> bool:
        return self._adapter is not None and self._adapter.is_initialized

    def _build(self, provider: str) -> GraphAdapter:
        factory = self._factories.get(provider)
        if factory is None:
            raise ValueError(f"Unknown provider {provider!r}; expected one of {sorted(self._factories)}")
        return factory(self.config)

    async def connect(self, connection: ConnectionConfig) -> GraphAdapter:
        """Initialize the adapter for ``connection``.

        A different provider closes the previous adapter before the new one
        is constructed, so two adapters are never live at once.
        """
        async with self._lock:
            if self._adapter is not None and self._adapter.provider != connection.provider:
                await self._close_current()
            if self._adapter is None:
                self._adapter = self._build(connection.provider)
            await self._adapter.initialize(connection)
            logger.info("Connected to %s at %s", connection.provider, connection.host)
            return self._adapter

    async def try_connect(self, connection: ConnectionConfig) -> Result[None]:
        """Like ``connect`` but reports failure as a Result."""
        try:
            await self.connect(connection)
        except Exception as e:
            return Result(failure=classify_error(e))
        return Result.success(None)

    async def disconnect(self) -> None:
        async with self._lock:
            await self._close_current()

    async def _close_current(self) -> None:
        adapter, self._adapter = self._adapter, None
        if adapter is None:
            return
        try:
            await adapter.close()
        except Exception as e:
            logger.warning("Error closing %s adapter: %s", adapter.provider, e)

    async def call(self, operation: Callable[[GraphAdapter], Awaitable[T]], name: str = "call") -> Result[T]:
        """Run ``operation`` against the live adapter; never raises."""
        adapter = self._adapter
        if adapter is None or not adapter.is_initialized:
            logger.debug("%s rejected: not connected", name)
            return Result.fail(ErrorCode.NOT_CONNECTED, USER_MESSAGES[ErrorCode.NOT_CONNECTED])
        bind_provider(adapter.provider)
        try:
            value = await adapter.tracked(name, lambda: operation(adapter))
        except Exception as e:
            failure = classify_error(e)
            logger.warning("%s failed (%s): %s", name, failure.code.value, failure.message)
            return Result(failure=failure)
        return Result.success(value)

    async def test_connection(self, connection: ConnectionConfig) -> Result[None]:
        """Test ``connection`` within the configured timeout."""
        if self._adapter is not None and self._adapter.provider == connection.provider:
            adapter = self._adapter
        else:
            adapter = self._build(connection.provider)
        timeout = self.config.sync.connect_timeout
        try:
            return await asyncio.wait_for(adapter.test_connection(connection), timeout)
        except asyncio.TimeoutError:
            logger.info("Connection test to %s timed out after %.1fs", connection.host, timeout)
            return Result.fail(ErrorCode.TIMEOUT, USER_MESSAGES[ErrorCode.TIMEOUT])

    async def check_connection(self) -> bool:
        adapter = self._adapter
        if adapter is None or not adapter.is_initialized:
            return False
        try:
            return await asyncio.wait_for(adapter.check_connection(), self.config.sync.connect_timeout)
        except asyncio.TimeoutError:
            logger.warning("Health check timed out")
            return False
