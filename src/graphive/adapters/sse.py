"""Incremental parser for the event-tagged query stream of the FalkorDB browser API.

Wire format::

    event: result
    data: {"header": [...],
    data:  "data": [...]}

    event: err
    data: Unknown function 'foo'

``data:`` lines of one event are joined with newlines; a blank line ends the
event. A trailing event without the blank line is still delivered on close.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterable

from graphive.errors import ErrorCode, GraphiveError


@dataclass
class StreamEvent:
    event: str
    data: str


class EventStreamParser:
    """Feed lines in, get completed events out."""

    def __init__(self) -> None:
        self._event: str | None = None
        self._data: list[str] = []

    def feed(self, line: str) -> StreamEvent | None:
        stripped = line.strip()
        if not stripped:
            return self._dispatch()
        if stripped.startswith("event:"):
            # A new event header without a blank separator closes the previous one
            pending = self._dispatch() if self._event else None
            self._event = stripped[len("event:"):].strip()
            return pending
        if stripped.startswith("data:"):
            self._data.append(line[line.index("data:") + len("data:"):].strip())
        # Comments (":") and unknown fields are ignored
        return None

    def close(self) -> StreamEvent | None:
        return self._dispatch()

    def _dispatch(self) -> StreamEvent | None:
        if self._event is None:
            self._data = []
            return None
        event = StreamEvent(self._event, "\n".join(self._data))
        self._event = None
        self._data = []
        return event


async def read_query_stream(lines: AsyncIterable[str]) -> dict[str, Any] | None:
    """Consume a response stream and return the decoded ``result`` payload.

    Raises GraphiveError for an ``err`` event or an undecodable result.
    Returns None when the stream carried no result (e.g. an empty write).
    """
    parser = EventStreamParser()
    result: dict[str, Any] | None = None
    error: str | None = None

    def handle(event: StreamEvent | None) -> None:
        nonlocal result, error
        if event is None:
            return
        if event.event == "err":
            error = event.data
        elif event.event == "result" and event.data.strip():
            try:
                result = json.loads(event.data)
            except json.JSONDecodeError as e:
                raise GraphiveError(
                    "Invalid JSON in query response",
                    code=ErrorCode.BACKEND_ERROR,
                    details={"payload": event.data[:500]},
                ) from e

    async for line in lines:
        handle(parser.feed(line))
    handle(parser.close())

    if error is not None:
        raise GraphiveError(f"FalkorDB error: {error}", code=ErrorCode.BACKEND_ERROR)
    return result
