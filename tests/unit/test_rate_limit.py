"""Tests for rate-limit recovery routing."""

from __future__ import annotations

import pytest

from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.clock import ManualClock
from harness_resilience.exceptions import ConfigurationError
from harness_resilience.fallback import FallbackOrchestrator
from harness_resilience.observability import events
from harness_resilience.quota import QuotaTracker, RateLimitInfo
from harness_resilience.rate_limit import RateLimitRecovery
from harness_resilience.types import ErrorKind, Outcome, TargetKey

from tests.support import RecordingMetricsSink

A = TargetKey("A")
A_LARGE = TargetKey("A", "a-large")


@pytest.fixture
def recovery(
    orchestrator: FallbackOrchestrator,
    tracker: QuotaTracker,
    clock: ManualClock,
    sink: RecordingMetricsSink,
) -> RateLimitRecovery:
    return RateLimitRecovery(orchestrator, tracker, clock=clock, metrics=sink)


# ═══════════════════════════════════════════════════════════════
#  Strategy choice
# ═══════════════════════════════════════════════════════════════
class TestDetermineStrategy:
    def test_short_retry_after_waits(self, recovery: RateLimitRecovery, orchestrator: FallbackOrchestrator) -> None:
        result = recovery.handle_rate_limit(A, {"retry_after": 10})
        assert result.action == Outcome.WAIT_AND_RETRY
        assert result.strategy == "wait_and_retry"
        assert result.wait_time == 10.0
        assert not orchestrator.is_exhausted(A, ErrorKind.RATE_LIMIT)

    def test_waiting_gives_up_after_max_attempts(self, recovery: RateLimitRecovery) -> None:
        for _ in range(3):
            assert recovery.handle_rate_limit(A, {"retry_after": 10}).action == Outcome.WAIT_AND_RETRY
        result = recovery.handle_rate_limit(A, {"retry_after": 10})
        assert result.strategy == "immediate_provider_switch"
        assert result.new_provider == "B"
        assert result.details["consecutive_rate_limits"] == 4

    def test_long_retry_after_switches_provider(
        self, recovery: RateLimitRecovery, orchestrator: FallbackOrchestrator
    ) -> None:
        result = recovery.handle_rate_limit(A, {"retry_after": 120})
        assert result.strategy == "immediate_provider_switch"
        assert result.action == Outcome.PROVIDER_SWITCH
        assert orchestrator.is_exhausted(A, ErrorKind.RATE_LIMIT)

    def test_zero_quota_picks_best_combination(
        self, recovery: RateLimitRecovery, tracker: QuotaTracker
    ) -> None:
        tracker.record_observation(TargetKey("B"), {"quota_remaining": 500})
        tracker.record_observation(TargetKey("C"), {"quota_remaining": 200})
        result = recovery.handle_rate_limit(A, RateLimitInfo(quota_remaining=0))
        assert result.strategy == "quota_aware"
        assert result.action == Outcome.QUOTA_AWARE_SWITCH
        assert result.new_provider == "B"
        assert result.quota_remaining == 500

    def test_cost_sensitive(self, recovery: RateLimitRecovery) -> None:
        result = recovery.handle_rate_limit(A_LARGE, None, {"cost_sensitive": True})
        assert result.strategy == "cost_optimized"
        assert result.new_target == TargetKey("B", "b-mini")

    def test_performance_critical(self, recovery: RateLimitRecovery) -> None:
        result = recovery.handle_rate_limit(A, None, {"performance_critical": True})
        assert result.strategy == "performance_optimized"
        assert result.action == Outcome.PERFORMANCE_OPTIMIZED_SWITCH

    def test_force_escalation(self, recovery: RateLimitRecovery) -> None:
        result = recovery.handle_rate_limit(A, {"retry_after": 5}, {"force_escalation": True})
        assert result.strategy == "escalate"
        assert result.action == Outcome.ESCALATED
        assert result.requires_manual_intervention

    def test_explicit_strategy_wins(self, recovery: RateLimitRecovery) -> None:
        result = recovery.handle_rate_limit(
            A_LARGE, {"retry_after": 5}, {"switch_strategy": "immediate_model_switch"}
        )
        assert result.action == Outcome.MODEL_SWITCH
        assert result.new_target == TargetKey("A", "a-small")

    def test_model_switch_when_providers_unavailable(
        self, recovery: RateLimitRecovery, breaker: CircuitBreakerEngine
    ) -> None:
        breaker.open("B")
        breaker.open("C")
        result = recovery.handle_rate_limit(A_LARGE)
        assert result.strategy == "immediate_model_switch"
        assert result.new_target == TargetKey("A", "a-small")

    def test_escalates_when_nothing_is_left(
        self, recovery: RateLimitRecovery, breaker: CircuitBreakerEngine
    ) -> None:
        breaker.open("B")
        breaker.open("C")
        breaker.open("A", "a-small")
        result = recovery.handle_rate_limit(A_LARGE)
        assert result.strategy == "escalate"
        assert result.requires_manual_intervention


# ═══════════════════════════════════════════════════════════════
#  Bookkeeping
# ═══════════════════════════════════════════════════════════════
class TestBookkeeping:
    def test_records_limit_in_quota_ledger(self, recovery: RateLimitRecovery, tracker: QuotaTracker) -> None:
        recovery.handle_rate_limit(A, {"retry_after": 10})
        assert tracker.is_exhausted(A)
        assert tracker.consecutive_limits(A) == 1

    def test_metrics_use_plain_strategy_name(
        self, recovery: RateLimitRecovery, sink: RecordingMetricsSink
    ) -> None:
        recovery.handle_rate_limit(A, {"retry_after": 120})
        (event,) = sink.of_type(events.RATE_LIMIT)
        assert event.data["strategy"] == "immediate_provider_switch"
        assert event.data["action"] == "provider_switch"

    def test_cooldowns_are_kept_apart_from_fallback(self, recovery: RateLimitRecovery) -> None:
        effective = recovery.strategy("quota_aware")
        assert effective.name == "rate_limit:quota_aware"
        assert effective.cooldown_period == 30
        assert "quota_aware" in recovery.strategies

    def test_configure_strategies(self, recovery: RateLimitRecovery) -> None:
        recovery.configure_strategies({"escalate": {"action": "abort"}})
        assert set(recovery.strategies) == {"escalate", "default"}
        with pytest.raises(ConfigurationError):
            recovery.configure_strategies({"escalate": {"cooldown_period": -3}})
        assert recovery.strategies["escalate"].action == "abort"

    def test_history_and_status(self, recovery: RateLimitRecovery) -> None:
        recovery.handle_rate_limit(A, {"retry_after": 10, "quota_remaining": 4, "quota_limit": 100})
        assert len(recovery.history()) == 1
        status = recovery.status()
        assert status["targets"]["A"]["quota_remaining"] == 4
        assert status["targets"]["A"]["exhausted"] is True
        assert status["targets"]["A"]["consecutive_rate_limits"] == 1
        recovery.clear_history()
        assert recovery.history() == []
