"""Structured logging setup for graphive.

Every backend call the store schedules runs inside an ``operation_scope``.
The scope names the store operation, the canvas entities it touches and,
once the registry has picked an adapter, the provider serving it. A logging
filter copies that context onto each record so the lines of one optimistic
write can be grepped together, in text or JSON-line output.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Iterable, Iterator

if TYPE_CHECKING:
    from graphive.config import Config


@dataclass(frozen=True)
class OperationContext:
    id: str
    name: str
    entities: tuple[str, ...] = ()
    provider: str = ""


current_operation: ContextVar[OperationContext | None] = ContextVar("current_operation", default=None)


@contextmanager
def operation_scope(name: str, entity_ids: Iterable[str] = ()) -> Iterator[OperationContext]:
    """Bind a fresh operation context for the duration of one backend call."""
    ctx = OperationContext(id=f"{name}-{uuid.uuid4().hex[:8]}", name=name, entities=tuple(entity_ids))
    token = current_operation.set(ctx)
    try:
        yield ctx
    finally:
        current_operation.reset(token)


def bind_provider(provider: str) -> None:
    """Record which backend serves the running operation; no-op outside a scope."""
    ctx = current_operation.get()
    if ctx is not None and ctx.provider != provider:
        current_operation.set(replace(ctx, provider=provider))


class _OperationFilter(logging.Filter):
    """Copy the running operation onto every record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = current_operation.get()
        record.operation_id = ctx.id if ctx else ""  # type: ignore[attr-defined]
        record.entities = ctx.entities if ctx else ()  # type: ignore[attr-defined]
        record.provider = ctx.provider if ctx else ""  # type: ignore[attr-defined]
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line; operation fields appear only inside a scope."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if getattr(record, "operation_id", ""):
            payload["operation_id"] = record.operation_id  # type: ignore[attr-defined]
        if getattr(record, "entities", ()):
            payload["entities"] = list(record.entities)  # type: ignore[attr-defined]
        if getattr(record, "provider", ""):
            payload["provider"] = record.provider  # type: ignore[attr-defined]
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class _TextFormatter(logging.Formatter):
    """``[rename_node-1a2b3c4d neo4j a] graphive.graph.store: ...``"""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        tags = [getattr(record, "operation_id", ""), getattr(record, "provider", "")]
        tags.extend(getattr(record, "entities", ()))
        tags = [t for t in tags if t]
        return f"[{' '.join(tags)}] {line}" if tags else line


def setup_logging(config: "Config") -> None:
    log_cfg = config.logging
    level = getattr(logging, log_cfg.level.upper(), logging.WARNING)

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.addFilter(_OperationFilter())
    if log_cfg.format.lower() == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(_TextFormatter("%(name)s: %(message)s"))
    root.addHandler(handler)

    # Driver and transport chatter
    for noisy in ("neo4j", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.ERROR)
