"""Test doubles shared across the unit suite."""

from __future__ import annotations

from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink

T0 = 1_000.0


class RecordingMetricsSink(MetricsSink):
    """Keeps every event for assertions."""

    def __init__(self) -> None:
        self.events: list[ResilienceEvent] = []

    def record_event(self, event: ResilienceEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[ResilienceEvent]:
        return [e for e in self.events if e.event_type == event_type]
