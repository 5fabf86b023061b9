"""Tests for error classification and user-facing failure text."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from graphive.errors import (
    ErrorCode,
    Failure,
    GraphiveError,
    PartialWriteError,
    Result,
    classify_error,
    describe_failure,
)


class TestClassify:
    @pytest.mark.parametrize("message,code", [
        ("Node(1) already exists with label `Person` and property `name` = 'A'", ErrorCode.CONSTRAINT_VIOLATION),
        ("The client is unauthorized due to authentication failure.", ErrorCode.AUTH_FAILED),
        ("[Errno -2] Name or service not known", ErrorCode.DNS_FAILURE),
        ("SSL: CERTIFICATE_VERIFY_FAILED", ErrorCode.TLS_FAILURE),
        ("Connection refused", ErrorCode.HOST_UNREACHABLE),
        ("Invalid input 'MTCH'", ErrorCode.BACKEND_ERROR),
    ])
    def test_message_heuristics(self, message, code):
        assert classify_error(RuntimeError(message)).code == code

    def test_explicit_code_wins(self):
        failure = classify_error(PartialWriteError("gone", details={"relationship": {"id": "e1"}}))
        assert failure.code == ErrorCode.PARTIAL_FAILURE
        assert failure.details["relationship"] == {"id": "e1"}

    def test_backend_error_is_refined_by_message(self):
        failure = classify_error(GraphiveError("FalkorDB error: already exists"))
        assert failure.code == ErrorCode.CONSTRAINT_VIOLATION

    def test_timeouts(self):
        assert classify_error(asyncio.TimeoutError()).code == ErrorCode.TIMEOUT
        assert classify_error(httpx.ReadTimeout("slow")).code == ErrorCode.TIMEOUT

    def test_http_auth_status(self):
        request = httpx.Request("GET", "http://db/api")
        response = httpx.Response(401, request=request)
        exc = httpx.HTTPStatusError("401", request=request, response=response)
        assert classify_error(exc).code == ErrorCode.AUTH_FAILED

    def test_connect_error_is_unreachable(self):
        assert classify_error(httpx.ConnectError("boom")).code == ErrorCode.HOST_UNREACHABLE


class TestDescribe:
    def test_constraint_names_the_value(self):
        failure = Failure(code=ErrorCode.CONSTRAINT_VIOLATION, message="x")
        assert describe_failure(failure, "Alice") == 'Name "Alice" is already taken'

    def test_network_failures_use_friendly_text(self):
        failure = Failure(code=ErrorCode.AUTH_FAILED, message="raw")
        assert describe_failure(failure) == "Incorrect username or password"

    def test_generic(self):
        failure = Failure(code=ErrorCode.BACKEND_ERROR, message="boom")
        assert describe_failure(failure) == "Database error: boom"


class TestResult:
    def test_success_and_unwrap(self):
        assert Result.success(3).unwrap() == 3

    def test_failure_unwrap_raises_with_code(self):
        result = Result.fail(ErrorCode.NOT_FOUND, "gone")
        assert result.ok is False
        with pytest.raises(GraphiveError) as exc:
            result.unwrap()
        assert exc.value.code == ErrorCode.NOT_FOUND
