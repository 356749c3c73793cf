"""Prometheus metrics for the resilience core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink

# ── Circuit breaker metrics ──────────────────────────────────
CIRCUIT_STATE = Gauge(
    "resilience_circuit_state",
    "Circuit breaker state (0=closed, 0.5=half-open, 1=open)",
    ["provider", "model"],
)

CIRCUIT_TRANSITIONS = Counter(
    "resilience_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["provider", "to_state", "reason"],
)

# ── Call metrics ─────────────────────────────────────────────
CALLS_TOTAL = Counter(
    "resilience_calls_total",
    "Provider calls reported to the resilience core",
    ["provider", "model", "outcome", "error_kind"],
)

CALL_LATENCY = Histogram(
    "resilience_call_latency_seconds",
    "Provider call latency reported on success",
    ["provider"],
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

# ── Recovery metrics ─────────────────────────────────────────
RETRIES_TOTAL = Counter(
    "resilience_retries_total",
    "Retry-in-place decisions",
    ["provider", "error_kind", "outcome"],
)

FALLBACKS_TOTAL = Counter(
    "resilience_fallbacks_total",
    "Fallback decisions by resulting action",
    ["provider", "error_kind", "action"],
)

RATE_LIMITS_TOTAL = Counter(
    "resilience_rate_limits_total",
    "Rate-limit events by chosen routing strategy",
    ["provider", "strategy", "action"],
)

_STATE_VALUES = {"closed": 0.0, "half_open": 0.5, "open": 1.0}


class PrometheusMetricsSink(MetricsSink):
    """Maps resilience events onto the module-level collectors."""

    def record_event(self, event: ResilienceEvent) -> None:
        provider = event.provider
        model = event.model or ""
        data = event.data

        if event.event_type == events.CIRCUIT_TRANSITION:
            to_state = str(data.get("to_state", ""))
            if to_state in _STATE_VALUES:
                CIRCUIT_STATE.labels(provider=provider, model=model).set(_STATE_VALUES[to_state])
            CIRCUIT_TRANSITIONS.labels(
                provider=provider, to_state=to_state, reason=str(data.get("reason", ""))
            ).inc()
        elif event.event_type == events.CALL_SUCCESS:
            CALLS_TOTAL.labels(
                provider=provider, model=model, outcome="success", error_kind=""
            ).inc()
            latency_ms = data.get("latency_ms")
            if latency_ms is not None:
                CALL_LATENCY.labels(provider=provider).observe(float(latency_ms) / 1000)
        elif event.event_type == events.CALL_FAILURE:
            CALLS_TOTAL.labels(
                provider=provider,
                model=model,
                outcome="failure",
                error_kind=str(data.get("error_kind", "")),
            ).inc()
        elif event.event_type == events.RETRY:
            RETRIES_TOTAL.labels(
                provider=provider,
                error_kind=str(data.get("error_kind", "")),
                outcome=str(data.get("outcome", "")),
            ).inc()
        elif event.event_type == events.FALLBACK:
            FALLBACKS_TOTAL.labels(
                provider=provider,
                error_kind=str(data.get("error_kind", "")),
                action=str(data.get("action", "")),
            ).inc()
        elif event.event_type == events.RATE_LIMIT:
            RATE_LIMITS_TOTAL.labels(
                provider=provider,
                strategy=str(data.get("strategy", "")),
                action=str(data.get("action", "")),
            ).inc()


__all__ = [
    "CALLS_TOTAL",
    "CALL_LATENCY",
    "CIRCUIT_STATE",
    "CIRCUIT_TRANSITIONS",
    "FALLBACKS_TOTAL",
    "NullMetricsSink",
    "PrometheusMetricsSink",
    "RATE_LIMITS_TOTAL",
    "RETRIES_TOTAL",
]
