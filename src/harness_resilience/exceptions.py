"""Resilience-core exception hierarchy.

All exceptions inherit from ``ResilienceError`` so callers can catch the
entire family in one clause while still discriminating on subclass.

Runtime failures of provider calls are never raised from here: they are
classified and returned as structured decisions.  Only misuse that must fail
fast (invalid configuration) raises.
"""

from __future__ import annotations

from typing import Any


class ResilienceError(Exception):
    """Base class for all resilience-core errors."""

    def __init__(self, message: str, *, code: str = "RESILIENCE_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(ResilienceError):
    """Thresholds or strategy tables failed validation."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR")
        self.errors = errors or []

    @classmethod
    def from_validation(cls, subject: str, exc: Exception) -> ConfigurationError:
        """Wrap a pydantic ``ValidationError`` without leaking its type."""
        errors = exc.errors() if hasattr(exc, "errors") else []
        details = "; ".join(
            f"{'.'.join(str(p) for p in e.get('loc', ()))}: {e.get('msg', '')}"
            for e in errors
        )
        return cls(f"Invalid {subject}: {details or exc}", errors=list(errors))
