"""Tests for the error classifier."""

from __future__ import annotations

import socket

import httpx
import pytest

from harness_resilience.classifier import ErrorClassifier
from harness_resilience.clock import ManualClock
from harness_resilience.types import ErrorKind


class _ApiError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimitError(Exception):
    pass


class _Response:
    def __init__(self, status_code: int) -> None:
        self.status_code = status_code


class _WrappedError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__("request failed")
        self.response = _Response(status_code)


class _Unprintable(Exception):
    def __str__(self) -> str:
        raise RuntimeError("boom")


@pytest.fixture
def classifier(clock: ManualClock) -> ErrorClassifier:
    return ErrorClassifier(clock=clock)


# ═══════════════════════════════════════════════════════════════
#  Status codes
# ═══════════════════════════════════════════════════════════════
class TestStatusCodes:
    @pytest.mark.parametrize(
        ("code", "kind"),
        [
            (401, ErrorKind.AUTHENTICATION),
            (403, ErrorKind.AUTHENTICATION),
            (429, ErrorKind.RATE_LIMIT),
            (408, ErrorKind.TIMEOUT),
            (500, ErrorKind.SERVER_ERROR),
            (503, ErrorKind.SERVER_ERROR),
        ],
    )
    def test_attribute_status(self, classifier: ErrorClassifier, code: int, kind: ErrorKind) -> None:
        result = classifier.classify(_ApiError("something", code))
        assert result.error_kind == kind
        assert result.status_code == code

    def test_status_beats_message(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify(_ApiError("connection reset", 429))
        assert result.error_kind == ErrorKind.RATE_LIMIT

    def test_context_status(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify("weird", {"status_code": 502})
        assert result.error_kind == ErrorKind.SERVER_ERROR

    def test_response_status(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(_WrappedError(429)).error_kind == ErrorKind.RATE_LIMIT

    def test_unmapped_status_falls_through(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify(_ApiError("bad request", 400))
        assert result.error_kind == ErrorKind.DEFAULT


# ═══════════════════════════════════════════════════════════════
#  Exception types & messages
# ═══════════════════════════════════════════════════════════════
class TestTypesAndMessages:
    def test_builtin_timeout(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(TimeoutError("slow")).error_kind == ErrorKind.TIMEOUT

    def test_httpx_timeout(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(httpx.ReadTimeout("read")).error_kind == ErrorKind.TIMEOUT

    def test_connection_errors(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(ConnectionRefusedError()).error_kind == ErrorKind.NETWORK_ERROR
        assert classifier.classify(socket.gaierror("dns")).error_kind == ErrorKind.NETWORK_ERROR
        assert classifier.classify(httpx.ConnectError("no route")).error_kind == ErrorKind.NETWORK_ERROR

    def test_class_name_hint(self, classifier: ErrorClassifier) -> None:
        assert classifier.classify(RateLimitError("slow down")).error_kind == ErrorKind.RATE_LIMIT

    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            ("Rate limit reached for requests", ErrorKind.RATE_LIMIT),
            ("Too Many Requests", ErrorKind.RATE_LIMIT),
            ("Permission denied for model", ErrorKind.PERMISSION_DENIED),
            ("Invalid API key provided", ErrorKind.AUTHENTICATION),
            ("Request timed out", ErrorKind.TIMEOUT),
            ("Connection reset by peer", ErrorKind.NETWORK_ERROR),
            ("Internal Server Error", ErrorKind.SERVER_ERROR),
            ("model is overloaded", ErrorKind.SERVER_ERROR),
            ("something odd happened", ErrorKind.DEFAULT),
        ],
    )
    def test_message_keywords(self, classifier: ErrorClassifier, message: str, kind: ErrorKind) -> None:
        assert classifier.classify(Exception(message)).error_kind == kind
        assert classifier.classify(message).error_kind == kind


# ═══════════════════════════════════════════════════════════════
#  Robustness
# ═══════════════════════════════════════════════════════════════
class TestRobustness:
    def test_none_is_default(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify(None)
        assert result.error_kind == ErrorKind.DEFAULT
        assert result.message == "Unknown error"
        assert result.error_type is None

    def test_unprintable_error_uses_type_name(self, classifier: ErrorClassifier) -> None:
        result = classifier.classify(_Unprintable())
        assert result.message == "_Unprintable"
        assert result.error_kind == ErrorKind.DEFAULT

    def test_context_and_timestamp(self, classifier: ErrorClassifier, clock: ManualClock) -> None:
        clock.advance(5)
        result = classifier.classify(TimeoutError(), {"provider": "A", "model": "a-large"})
        assert result.provider == "A"
        assert result.model == "a-large"
        assert result.timestamp == clock.now()
        assert result.error_type == "TimeoutError"
