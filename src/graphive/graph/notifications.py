"""User-visible notification events emitted by the store."""

from __future__ import annotations

import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Callable

from pydantic import BaseModel, Field

from graphive.errors import ErrorCode

logger = logging.getLogger("graphive.notifications")


class NotificationLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    level: NotificationLevel
    message: str
    code: ErrorCode | None = None
    entity_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


NotificationListener = Callable[[Notification], None]


class NotificationCenter:
    """Observer list plus a bounded history of recent notifications."""

    def __init__(self, history: int = 50) -> None:
        self._listeners: list[NotificationListener] = []
        self.history: deque[Notification] = deque(maxlen=history)

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(
        self,
        level: NotificationLevel,
        message: str,
        code: ErrorCode | None = None,
        entity_id: str | None = None,
    ) -> Notification:
        note = Notification(level=level, message=message, code=code, entity_id=entity_id)
        self.history.append(note)
        if level == NotificationLevel.ERROR:
            logger.warning("%s (%s)", message, code.value if code else "-")
        for listener in list(self._listeners):
            try:
                listener(note)
            except Exception:
                logger.exception("Notification listener failed")
        return note

    def error(self, message: str, code: ErrorCode | None = None, entity_id: str | None = None) -> Notification:
        return self.emit(NotificationLevel.ERROR, message, code, entity_id)

    def info(self, message: str, entity_id: str | None = None) -> Notification:
        return self.emit(NotificationLevel.INFO, message, entity_id=entity_id)

    def success(self, message: str, entity_id: str | None = None) -> Notification:
        return self.emit(NotificationLevel.SUCCESS, message, entity_id=entity_id)

    def warning(self, message: str, code: ErrorCode | None = None, entity_id: str | None = None) -> Notification:
        return self.emit(NotificationLevel.WARNING, message, code, entity_id)
