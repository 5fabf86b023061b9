"""Structured error codes, typed failures and the result envelope for graphive."""

from __future__ import annotations

__all__ = [
    "ErrorCode",
    "GraphiveError",
    "InvalidIdentifierError",
    "NotConnectedError",
    "PartialWriteError",
    "EntityNotFoundError",
    "Failure",
    "Result",
    "classify_error",
    "describe_failure",
]

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx
from neo4j import exceptions as neo4j_exc
from pydantic import BaseModel, Field

T = TypeVar("T")


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_CONNECTED = "NOT_CONNECTED"
    CONSTRAINT_VIOLATION = "CONSTRAINT_VIOLATION"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    AUTH_FAILED = "AUTH_FAILED"
    HOST_UNREACHABLE = "HOST_UNREACHABLE"
    DNS_FAILURE = "DNS_FAILURE"
    TLS_FAILURE = "TLS_FAILURE"
    TIMEOUT = "TIMEOUT"
    NOT_FOUND = "NOT_FOUND"
    BACKEND_ERROR = "BACKEND_ERROR"


# Codes that describe the transport rather than the request itself
NETWORK_CODES = frozenset({
    ErrorCode.AUTH_FAILED,
    ErrorCode.HOST_UNREACHABLE,
    ErrorCode.DNS_FAILURE,
    ErrorCode.TLS_FAILURE,
    ErrorCode.TIMEOUT,
})


class GraphiveError(Exception):
    """Structured application error raised by adapters and the registry."""

    code: ErrorCode = ErrorCode.BACKEND_ERROR

    def __init__(
        self,
        message: str,
        code: ErrorCode | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.message = message
        self.details: dict = details or {}


class InvalidIdentifierError(GraphiveError):
    """A label or relationship type contains characters outside [A-Za-z0-9_]."""

    code = ErrorCode.VALIDATION_ERROR


class NotConnectedError(GraphiveError):
    code = ErrorCode.NOT_CONNECTED

    def __init__(self, message: str = "Not connected to a database", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)


class EntityNotFoundError(GraphiveError):
    code = ErrorCode.NOT_FOUND


class PartialWriteError(GraphiveError):
    """Delete half of a non-atomic relationship rewrite succeeded, create half did not.

    ``details["relationship"]`` holds the snapshot needed to repair it by hand.
    """

    code = ErrorCode.PARTIAL_FAILURE


class Failure(BaseModel):
    """Typed failure carried by a Result instead of a raised exception."""

    code: ErrorCode
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_constraint(self) -> bool:
        return self.code == ErrorCode.CONSTRAINT_VIOLATION

    @property
    def is_network(self) -> bool:
        return self.code in NETWORK_CODES


@dataclass(frozen=True)
class Result(Generic[T]):
    """Success-or-failure union returned by every registry call."""

    value: T | None = None
    failure: Failure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: T | None = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, details: dict | None = None) -> "Result[T]":
        return cls(failure=Failure(code=code, message=message, details=details or {}))

    def unwrap(self) -> T:
        if self.failure is not None:
            raise GraphiveError(self.failure.message, code=self.failure.code, details=self.failure.details)
        return self.value  # type: ignore[return-value]


# --- Classification ---

# (code, substrings) checked in order against the lowercased message
_MESSAGE_RULES: list[tuple[ErrorCode, tuple[str, ...]]] = [
    (ErrorCode.CONSTRAINT_VIOLATION, ("already exists", "constraintvalidationfailed", "constraint")),
    (ErrorCode.AUTH_FAILED, ("unauthorized", "authentication", "invalid credentials")),
    (ErrorCode.DNS_FAILURE, ("getaddrinfo", "name or service not known", "nodename nor servname", "dns")),
    (ErrorCode.TLS_FAILURE, ("certificate", "ssl", "tls")),
    (ErrorCode.TIMEOUT, ("timed out", "timeout")),
    (ErrorCode.HOST_UNREACHABLE, ("serviceunavailable", "connection refused", "unreachable", "failed to establish")),
]

USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.AUTH_FAILED: "Incorrect username or password",
    ErrorCode.HOST_UNREACHABLE: "Server unreachable. Check the host and port.",
    ErrorCode.DNS_FAILURE: "Host not found. Check the server address.",
    ErrorCode.TLS_FAILURE: "SSL/TLS error. Try a different protocol (e.g., bolt+s or neo4j+s).",
    ErrorCode.TIMEOUT: "Connection timed out. The server may be slow or blocked by a firewall.",
    ErrorCode.NOT_CONNECTED: "Not connected to a database",
}


def _classify_message(message: str) -> ErrorCode:
    lowered = message.lower()
    for code, needles in _MESSAGE_RULES:
        if any(n in lowered for n in needles):
            return code
    return ErrorCode.BACKEND_ERROR


def classify_error(exc: BaseException) -> Failure:
    """Map any exception raised by an adapter call onto a typed Failure."""
    message = str(exc) or exc.__class__.__name__

    if isinstance(exc, GraphiveError):
        code = exc.code
        if code == ErrorCode.BACKEND_ERROR:
            code = _classify_message(exc.message)
        return Failure(code=code, message=exc.message, details=exc.details)
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return Failure(code=ErrorCode.TIMEOUT, message=message)
    if isinstance(exc, neo4j_exc.ConstraintError):
        return Failure(code=ErrorCode.CONSTRAINT_VIOLATION, message=message)
    if isinstance(exc, neo4j_exc.AuthError):
        return Failure(code=ErrorCode.AUTH_FAILED, message=message)
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code in (401, 403):
        return Failure(code=ErrorCode.AUTH_FAILED, message=message)

    code = _classify_message(message)
    if code == ErrorCode.BACKEND_ERROR and isinstance(
        exc, (neo4j_exc.ServiceUnavailable, httpx.ConnectError)
    ):
        code = ErrorCode.HOST_UNREACHABLE
    return Failure(code=code, message=message)


def describe_failure(failure: Failure, subject: str = "") -> str:
    """Human-readable notification text for a failed mutation."""
    if failure.code == ErrorCode.CONSTRAINT_VIOLATION:
        return f'Name "{subject}" is already taken' if subject else "Name is already taken"
    if failure.code == ErrorCode.PARTIAL_FAILURE:
        name = f"Relationship {subject}" if subject else "Relationship"
        return f"{name} was deleted but could not be recreated; repair it manually or commit it again"
    if failure.code in USER_MESSAGES:
        return USER_MESSAGES[failure.code]
    return f"Database error: {failure.message}"
