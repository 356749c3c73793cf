"""Tests for the resilience facade call lifecycle."""

from __future__ import annotations

import random

import httpx
import pytest

from harness_resilience.catalog import StaticProviderCatalog
from harness_resilience.clock import ManualClock
from harness_resilience.exceptions import ConfigurationError
from harness_resilience.facade import CallMetrics, ResilienceFacade
from harness_resilience.observability import events
from harness_resilience.types import (
    CircuitState,
    DecisionAction,
    ErrorKind,
    Outcome,
    TargetKey,
    TargetStatus,
)

from tests.support import T0, RecordingMetricsSink


class _ApiError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


def _http_error(status: int, headers: dict[str, str] | None = None) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/messages")
    response = httpx.Response(status, headers=headers or {}, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


@pytest.fixture
def facade(
    catalog: StaticProviderCatalog, clock: ManualClock, sink: RecordingMetricsSink
) -> ResilienceFacade:
    return ResilienceFacade(
        catalog,
        {"breaker": {"failure_threshold": 3, "timeout_seconds": 60}},
        clock=clock,
        metrics=sink,
        rng=random.Random(0),
    )


# ═══════════════════════════════════════════════════════════════
#  before_call
# ═══════════════════════════════════════════════════════════════
class TestBeforeCall:
    def test_allows_healthy_target(self, facade: ResilienceFacade) -> None:
        permit = facade.before_call("A", "a-large")
        assert permit.allowed
        assert permit.reason == "ok"
        assert permit.target == TargetKey("A", "a-large")

    def test_provider_circuit_open(self, facade: ResilienceFacade) -> None:
        facade.force_open("A")
        permit = facade.before_call("A", "a-large")
        assert not permit.allowed
        assert permit.reason == "provider_circuit_open"

    def test_model_circuit_open(self, facade: ResilienceFacade) -> None:
        facade.force_open("A", "a-large")
        assert facade.before_call("A", "a-large").reason == "model_circuit_open"
        assert facade.before_call("A", "a-small").allowed

    def test_quota_exhausted_until_retry_after(self, facade: ResilienceFacade, clock: ManualClock) -> None:
        facade.after_failure("A", "a-large", _ApiError("slow down", 429), {"retry_after": 5})
        assert facade.before_call("A", "a-large").reason == "quota_exhausted"
        clock.advance(5)
        assert facade.before_call("A", "a-large").allowed

    def test_tier_budget(self, catalog: StaticProviderCatalog, clock: ManualClock) -> None:
        facade = ResilienceFacade(
            catalog, {"tier_limits": {"mini": {"rank": 0, "rpm_limit": 2}}}, clock=clock
        )
        for _ in range(2):
            assert facade.before_call("B", "b-mini").allowed
            facade.after_success("B", "b-mini", {"tokens": 10})
        assert facade.before_call("B", "b-mini").reason == "tier_budget_exhausted"
        assert facade.before_call("B", "b-large").allowed

    def test_config_model_tiers_fill_catalog_gaps(self, clock: ManualClock) -> None:
        catalog = StaticProviderCatalog({"D": ["d-1", "d-2"]}, tiers={"d-2": "advanced"})
        facade = ResilienceFacade(
            catalog,
            {
                "model_tiers": {"d-1": "mini", "d-2": "mini"},
                "tier_limits": {
                    "mini": {"rank": 0, "rpm_limit": 1},
                    "advanced": {"rank": 2, "rpm_limit": 5},
                },
            },
            clock=clock,
        )
        facade.after_success("D", "d-1")
        assert facade.before_call("D", "d-1").reason == "tier_budget_exhausted"
        facade.after_success("D", "d-2")
        assert facade.before_call("D", "d-2").allowed

    def test_abandon_call_frees_probe_slot(self, facade: ResilienceFacade, clock: ManualClock) -> None:
        facade.force_open("A")
        clock.advance(61)
        assert facade.before_call("A", "a-large").allowed
        assert facade.before_call("A", "a-large").reason == "provider_circuit_open"
        facade.abandon_call("A", "a-large")
        assert facade.before_call("A", "a-large").allowed

    def test_silent_caller_does_not_wedge_provider(self, facade: ResilienceFacade, clock: ManualClock) -> None:
        facade.force_open("A")
        clock.advance(61)
        assert facade.before_call("A", "a-large").allowed
        clock.advance(10_000)
        assert facade.before_call("A", "a-large").allowed
        assert facade.breaker.state("A") == CircuitState.HALF_OPEN


# ═══════════════════════════════════════════════════════════════
#  after_failure decisions
# ═══════════════════════════════════════════════════════════════
class TestAfterFailure:
    def test_network_error_retries(self, facade: ResilienceFacade) -> None:
        decision = facade.after_failure("A", "a-large", ConnectionError("reset"))
        assert decision.action == DecisionAction.RETRY
        assert decision.error_kind == ErrorKind.NETWORK_ERROR
        assert decision.retry_count == 1
        assert 0.0 < decision.delay <= 30.0
        assert decision.should_retry

    def test_server_errors_retry_then_switch(self, facade: ResilienceFacade) -> None:
        error = _ApiError("upstream failed", 503)
        actions = [facade.after_failure("A", "a-large", error).action for _ in range(2)]
        assert actions == [DecisionAction.RETRY, DecisionAction.RETRY]
        decision = facade.after_failure("A", "a-large", error)
        assert decision.action == DecisionAction.SWITCH
        assert (decision.new_provider, decision.new_model) == ("B", "b-large")
        assert decision.retry_count == 2
        assert facade.breaker.is_open("A", "a-large")

    def test_short_rate_limit_waits(self, facade: ResilienceFacade) -> None:
        decision = facade.after_failure("A", "a-large", _ApiError("slow down", 429), {"retry_after": 5})
        assert decision.action == DecisionAction.WAIT_AND_RETRY
        assert decision.wait_time == 5.0
        assert decision.outcome == Outcome.WAIT_AND_RETRY

    def test_rate_limit_headers_drive_switch(self, facade: ResilienceFacade) -> None:
        decision = facade.after_failure("A", "a-large", _http_error(429, {"retry-after": "120"}))
        assert decision.error_kind == ErrorKind.RATE_LIMIT
        assert decision.action == DecisionAction.SWITCH
        assert decision.new_provider == "B"
        assert facade.quota.entry(TargetKey("A", "a-large")).retry_after == 120.0

    def test_authentication_escalates(self, facade: ResilienceFacade) -> None:
        decision = facade.after_failure("A", None, _http_error(401))
        assert decision.action == DecisionAction.ESCALATE
        assert decision.requires_manual_intervention
        assert not decision.should_retry

    def test_cooldown_becomes_wait(self, facade: ResilienceFacade, clock: ManualClock) -> None:
        context = {"retry_overrides": {"max_retries": 0}}
        first = facade.after_failure("A", "a-large", _ApiError("boom", 500), context)
        assert first.action == DecisionAction.SWITCH
        clock.advance(10)
        second = facade.after_failure("A", "a-large", _ApiError("boom", 500), context)
        assert second.action == DecisionAction.WAIT_AND_RETRY
        assert second.outcome == Outcome.SWITCH_COOLDOWN_ACTIVE
        assert second.wait_time == pytest.approx(110.0)

    def test_abort_strategy(self, facade: ResilienceFacade) -> None:
        facade.configure_strategies(fallback={"default": {"action": "abort"}})
        decision = facade.after_failure(
            "A", None, "mysterious failure", {"retry_overrides": {"max_retries": 0}}
        )
        assert decision.error_kind == ErrorKind.DEFAULT
        assert decision.action == DecisionAction.ABORT

    def test_failure_is_recorded_everywhere(
        self, facade: ResilienceFacade, sink: RecordingMetricsSink
    ) -> None:
        facade.after_failure("A", "a-large", TimeoutError("slow"), {"latency_ms": 30_000})
        assert facade.breaker.status("A", "a-large").failure_count == 1
        assert facade.health("A", "a-large").last_error == "slow"
        assert [e.error_kind for e in facade.error_history()] == [ErrorKind.TIMEOUT]
        (event,) = sink.of_type(events.CALL_FAILURE)
        assert event.data["error_kind"] == "timeout"


# ═══════════════════════════════════════════════════════════════
#  after_success
# ═══════════════════════════════════════════════════════════════
class TestAfterSuccess:
    def test_success_resets_retry_counters(self, facade: ResilienceFacade) -> None:
        facade.after_failure("A", "a-large", ConnectionError("reset"))
        facade.after_success("A", "a-large", {"latency_ms": 120})
        assert facade.retry.retry_status(TargetKey("A", "a-large")) == {}
        decision = facade.after_failure("A", "a-large", ConnectionError("reset"))
        assert decision.retry_count == 1

    def test_quota_headers_are_recorded(self, facade: ResilienceFacade) -> None:
        facade.after_success(
            "B", None, CallMetrics(latency_ms=90, headers={"x-ratelimit-remaining-requests": "10"})
        )
        health = facade.health("B")
        assert health.quota_remaining == 10
        assert not health.quota_exhausted
        assert health.latency_avg_ms == 90.0

    def test_non_finite_quota_header_is_ignored(self, facade: ResilienceFacade) -> None:
        facade.after_success("A", None, {"headers": {"x-ratelimit-remaining": "inf"}})
        health = facade.health("A")
        assert health.quota_remaining is None
        assert facade.before_call("A").allowed

    def test_model_success_closes_half_open_provider(
        self, facade: ResilienceFacade, clock: ManualClock
    ) -> None:
        facade.force_open("A")
        clock.advance(61)
        for _ in range(3):
            assert facade.before_call("A", "a-large").allowed
            facade.after_success("A", "a-large")
        assert facade.breaker.state("A") == CircuitState.CLOSED

    def test_model_failure_reopens_half_open_provider(
        self, facade: ResilienceFacade, clock: ManualClock
    ) -> None:
        facade.force_open("A")
        clock.advance(61)
        assert facade.before_call("A", "a-large").allowed
        facade.after_failure("A", "a-large", _ApiError("boom", 500))
        status = facade.breaker.status("A")
        assert status.state == CircuitState.OPEN
        assert status.opened_at == T0 + 61

    def test_emits_success_event(self, facade: ResilienceFacade, sink: RecordingMetricsSink) -> None:
        facade.after_success("C", "c-large", {"latency_ms": 250, "tokens": 40})
        (event,) = sink.of_type(events.CALL_SUCCESS)
        assert event.data == {"latency_ms": 250.0, "tokens": 40}


# ═══════════════════════════════════════════════════════════════
#  Admin & observation
# ═══════════════════════════════════════════════════════════════
class TestAdmin:
    def test_health_reports_open_circuit(self, facade: ResilienceFacade) -> None:
        for _ in range(3):
            facade.after_failure("A", None, ConnectionError("refused"))
        health = facade.health("A")
        assert health.status == TargetStatus.CIRCUIT_OPEN
        assert health.circuit_state == "open"
        assert health.total_failures == 3
        assert health.health_score == 0.0

    def test_reset_breaker(self, facade: ResilienceFacade) -> None:
        facade.force_open("A")
        facade.force_open("B")
        facade.reset_breaker("A")
        assert not facade.breaker.is_open("A")
        facade.reset_breaker()
        assert not facade.breaker.is_open("B")

    def test_force_close(self, facade: ResilienceFacade) -> None:
        facade.force_open("A", reason="maintenance")
        facade.force_close("A")
        assert facade.before_call("A").allowed

    def test_configure_breaker(self, facade: ResilienceFacade) -> None:
        config = facade.configure_breaker("A", failure_threshold=10)
        assert config.failure_threshold == 10
        with pytest.raises(ConfigurationError):
            facade.configure_breaker("A", failure_threshold=-1)

    def test_reset_helpers(self, facade: ResilienceFacade) -> None:
        facade.after_failure("A", "a-large", _ApiError("slow", 429), {"retry_after": 200})
        facade.after_failure("B", None, ConnectionError("reset"))
        facade.reset_exhaustion()
        facade.reset_quotas()
        facade.reset_retries()
        assert facade.fallback.status()["exhausted"] == {}
        assert facade.before_call("A", "a-large").allowed
        assert facade.retry.retry_status(TargetKey("B")) == {}

    def test_status(self, facade: ResilienceFacade) -> None:
        facade.force_open("A")
        status = facade.status()
        assert status["circuit_breakers"]["states"]["open"] == 1
        assert {"target": "A", "state": "open", "health_score": 0.25} in status["targets"]
        assert "fallback" in status
        assert "rate_limits" in status

    def test_error_history_range(self, facade: ResilienceFacade, clock: ManualClock) -> None:
        facade.after_failure("A", None, "first")
        clock.advance(10)
        facade.after_failure("A", None, "second")
        assert [e.message for e in facade.error_history(start=T0 + 5)] == ["second"]
        facade.clear_error_history()
        assert facade.error_history() == []

    def test_invalid_configuration_fails_fast(self, catalog: StaticProviderCatalog) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            ResilienceFacade(catalog, {"breaker": {"failure_threshold": 0}})
        assert exc_info.value.errors
