"""Process-scoped session: one registry, one store, one dashboard service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

from graphive.config import Config, ConnectionConfig, load_config
from graphive.errors import Result
from graphive.graph.dashboards import DashboardService
from graphive.graph.store import GraphStore
from graphive.registry import AdapterRegistry

logger = logging.getLogger("graphive.runtime")


@dataclass
class Session:
    config: Config
    registry: AdapterRegistry
    store: GraphStore
    dashboards: DashboardService

    async def connect(self, connection: ConnectionConfig | None = None) -> Result[None]:
        """Test, then initialize the adapter for ``connection``.

        A failed connection test leaves any previous connection untouched.
        """
        connection = connection or self.config.connection
        check = await self.registry.test_connection(connection)
        if not check.ok:
            self.store.set_connected(self.registry.is_connected)
            return check
        result = await self.registry.try_connect(connection)
        self.store.set_connected(result.ok)
        return result


_session: Session | None = None


def init_session(config: Config | None = None) -> Session:
    """Create the session, replacing any earlier one."""
    global _session
    cfg = config or load_config()
    registry = AdapterRegistry(cfg)
    store = GraphStore(registry, config=cfg)
    _session = Session(cfg, registry, store, DashboardService(store, registry))
    return _session


def get_session() -> Session:
    if _session is None:
        return init_session()
    return _session


async def teardown() -> None:
    """Wait for in-flight writes, then release the adapter."""
    global _session
    session, _session = _session, None
    if session is None:
        return
    await session.store.drain()
    await session.registry.disconnect()
    logger.debug("Session closed")


@asynccontextmanager
async def session_scope(config: Config | None = None) -> AsyncIterator[Session]:
    """Fresh session for one unit of work, torn down on exit."""
    session = init_session(config)
    try:
        yield session
    finally:
        await teardown()
