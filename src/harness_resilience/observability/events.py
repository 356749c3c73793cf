"""Observation record handed to a metrics sink."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Event types
CIRCUIT_TRANSITION = "circuit_transition"
CALL_SUCCESS = "call_success"
CALL_FAILURE = "call_failure"
RETRY = "retry"
FALLBACK = "fallback"
RATE_LIMIT = "rate_limit"


@dataclass(frozen=True, slots=True)
class ResilienceEvent:
    event_type: str
    provider: str
    model: str | None
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
