"""Error classifier: maps raw failures onto the canonical error taxonomy.

Precedence:
    1. explicit HTTP status code (context, attribute, or ``error.response``)
    2. structural exception type
    3. case-insensitive message keywords
    4. ``default``
"""

from __future__ import annotations

import socket
from collections.abc import Mapping
from typing import Any

import httpx
import structlog

from harness_resilience.clock import Clock, SystemClock
from harness_resilience.types import ClassifiedError, ErrorKind

logger = structlog.get_logger(__name__)

_TIMEOUT_TYPES: tuple[type[BaseException], ...] = (TimeoutError, httpx.TimeoutException)
_NETWORK_TYPES: tuple[type[BaseException], ...] = (
    ConnectionError,
    socket.gaierror,
    httpx.NetworkError,
)

# Checked in order; the first kind with a matching keyword wins.
_KEYWORDS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMIT, (
        "rate limit", "rate-limit", "ratelimit", "too many requests",
        "quota exceeded", "usage limit",
    )),
    (ErrorKind.PERMISSION_DENIED, (
        "permission denied", "forbidden", "access denied", "not permitted",
        "insufficient permissions",
    )),
    (ErrorKind.AUTHENTICATION, (
        "unauthorized", "authentication", "invalid api key", "api key",
        "invalid token", "expired token", "auth",
    )),
    (ErrorKind.TIMEOUT, ("timeout", "timed out", "deadline exceeded")),
    (ErrorKind.NETWORK_ERROR, (
        "connection", "network", "dns", "econnrefused", "econnreset",
        "unreachable", "socket",
    )),
    (ErrorKind.SERVER_ERROR, (
        "internal server error", "server error", "service unavailable",
        "bad gateway", "gateway timeout", "overloaded",
    )),
)

# Class-name fragments, last structural hint for SDK-specific exceptions.
_NAME_HINTS: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMIT, ("ratelimit",)),
    (ErrorKind.PERMISSION_DENIED, ("permissiondenied", "forbidden")),
    (ErrorKind.AUTHENTICATION, ("authentication", "unauthorized")),
    (ErrorKind.TIMEOUT, ("timeout",)),
    (ErrorKind.NETWORK_ERROR, ("connect", "network")),
)


class ErrorClassifier:
    """Stateless apart from its clock; safe to share between threads."""

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()

    def classify(self, error: Any, context: Mapping[str, Any] | None = None) -> ClassifiedError:
        """Classify ``error`` (exception, message string or ``None``). Never raises."""
        context = context or {}
        message = _message_of(error)
        status_code: int | None = None
        try:
            status_code = _status_code_of(error, context)
            kind = (
                _kind_from_status(status_code)
                or _kind_from_type(error)
                or _kind_from_message(message)
                or ErrorKind.DEFAULT
            )
        except Exception:
            logger.debug("error_classification_failed", error_type=type(error).__name__, exc_info=True)
            kind = ErrorKind.DEFAULT

        return ClassifiedError(
            error_kind=kind,
            message=message,
            timestamp=self._clock.now(),
            provider=_str_or_none(context.get("provider")),
            model=_str_or_none(context.get("model")),
            status_code=status_code,
            error_type=type(error).__name__ if isinstance(error, BaseException) else None,
        )


# ── Helpers ──────────────────────────────────────────────────
def _message_of(error: Any) -> str:
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    try:
        text = str(error)
    except Exception:
        text = ""
    return text or type(error).__name__


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def _as_status(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _status_code_of(error: Any, context: Mapping[str, Any]) -> int | None:
    code = _as_status(context.get("status_code"))
    if code is not None:
        return code
    for attr in ("status_code", "status"):
        code = _as_status(getattr(error, attr, None))
        if code is not None:
            return code
    response = getattr(error, "response", None)
    if response is not None:
        return _as_status(getattr(response, "status_code", None))
    return None


def _kind_from_status(code: int | None) -> ErrorKind | None:
    if code is None:
        return None
    if code in (401, 403):
        return ErrorKind.AUTHENTICATION
    if code == 429:
        return ErrorKind.RATE_LIMIT
    if code == 408:
        return ErrorKind.TIMEOUT
    if 500 <= code <= 599:
        return ErrorKind.SERVER_ERROR
    return None


def _kind_from_type(error: Any) -> ErrorKind | None:
    if not isinstance(error, BaseException):
        return None
    if isinstance(error, _TIMEOUT_TYPES):
        return ErrorKind.TIMEOUT
    if isinstance(error, _NETWORK_TYPES):
        return ErrorKind.NETWORK_ERROR
    names = [cls.__name__.lower() for cls in type(error).__mro__]
    for kind, fragments in _NAME_HINTS:
        if any(fragment in name for name in names for fragment in fragments):
            return kind
    return None


def _kind_from_message(message: str) -> ErrorKind | None:
    lowered = message.lower()
    for kind, keywords in _KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return kind
    return None
