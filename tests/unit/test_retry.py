"""Tests for the retry policy engine."""

from __future__ import annotations

import random

import pytest

from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.clock import ManualClock
from harness_resilience.exceptions import ConfigurationError
from harness_resilience.observability import events
from harness_resilience.retry import RetryPolicyEngine
from harness_resilience.types import ErrorKind, Outcome, TargetKey

from tests.support import T0, RecordingMetricsSink

TARGET = TargetKey("A", "a-large")


@pytest.fixture
def retry(
    breaker: CircuitBreakerEngine, clock: ManualClock, sink: RecordingMetricsSink
) -> RetryPolicyEngine:
    return RetryPolicyEngine(breaker, clock=clock, metrics=sink, rng=random.Random(1))


# ═══════════════════════════════════════════════════════════════
#  should_retry
# ═══════════════════════════════════════════════════════════════
class TestShouldRetry:
    @pytest.mark.parametrize("kind", [ErrorKind.RATE_LIMIT, ErrorKind.AUTHENTICATION])
    def test_never_retried_kinds(self, retry: RetryPolicyEngine, kind: ErrorKind) -> None:
        assert not retry.should_retry(TARGET, kind)

    def test_never_retried_even_when_strategy_allows(self, retry: RetryPolicyEngine) -> None:
        generous = retry.strategy_for(ErrorKind.RATE_LIMIT, {"max_retries": 5})
        assert not retry.should_retry(TARGET, ErrorKind.RATE_LIMIT, generous)

    def test_retryable_until_max(self, retry: RetryPolicyEngine) -> None:
        for _ in range(3):
            assert retry.should_retry(TARGET, ErrorKind.NETWORK_ERROR)
            retry.execute_retry(TARGET, ErrorKind.NETWORK_ERROR)
        assert not retry.should_retry(TARGET, ErrorKind.NETWORK_ERROR)

    def test_open_breaker_blocks_retry(self, retry: RetryPolicyEngine, breaker: CircuitBreakerEngine) -> None:
        breaker.open(TARGET)
        assert not retry.should_retry(TARGET, ErrorKind.SERVER_ERROR)

    def test_open_provider_breaker_blocks_model_retry(
        self, retry: RetryPolicyEngine, breaker: CircuitBreakerEngine
    ) -> None:
        breaker.open("A")
        assert not retry.should_retry(TARGET, ErrorKind.SERVER_ERROR)
        assert retry.should_retry(TargetKey("B", "b-large"), ErrorKind.SERVER_ERROR)

    def test_counters_are_per_kind(self, retry: RetryPolicyEngine) -> None:
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        assert not retry.should_retry(TARGET, ErrorKind.TIMEOUT)
        assert retry.should_retry(TARGET, ErrorKind.SERVER_ERROR)

    def test_unknown_kind_uses_default(self, retry: RetryPolicyEngine) -> None:
        assert retry.strategy_for("mystery").name == "default"
        assert retry.should_retry(TARGET, "mystery")


# ═══════════════════════════════════════════════════════════════
#  execute_retry
# ═══════════════════════════════════════════════════════════════
class TestExecuteRetry:
    def test_linear_delays(self, retry: RetryPolicyEngine) -> None:
        first = retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        second = retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        assert first.action == Outcome.RETRIED
        assert (first.retry_count, first.delay) == (1, 2.0)
        assert (second.retry_count, second.delay) == (2, 4.0)
        assert first.strategy == "timeout"

    def test_exhaustion_leaves_counter_unchanged(self, retry: RetryPolicyEngine) -> None:
        for _ in range(2):
            retry.execute_retry(TARGET, ErrorKind.SERVER_ERROR)
        result = retry.execute_retry(TARGET, ErrorKind.SERVER_ERROR)
        assert result.action == Outcome.EXHAUSTED_RETRIES
        assert result.retry_count == 2
        assert result.delay == 0.0
        assert retry.retry_status(TARGET)["server_error"].retry_count == 2

    def test_jittered_delay_within_cap(self, retry: RetryPolicyEngine) -> None:
        for _ in range(3):
            result = retry.execute_retry(TARGET, ErrorKind.NETWORK_ERROR)
            assert 0.0 < result.delay <= 30.0

    def test_status_records_times(self, retry: RetryPolicyEngine, clock: ManualClock) -> None:
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        clock.advance(3)
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        record = retry.retry_status(TARGET)["timeout"]
        assert record.first_seen == T0
        assert record.last_attempt == T0 + 3

    def test_reset(self, retry: RetryPolicyEngine) -> None:
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        retry.execute_retry(TARGET, ErrorKind.SERVER_ERROR)
        retry.reset(TARGET, ErrorKind.TIMEOUT)
        assert set(retry.retry_status(TARGET)) == {"server_error"}
        retry.reset_all()
        assert retry.retry_status(TARGET) == {}

    def test_emits_metrics(self, retry: RetryPolicyEngine, sink: RecordingMetricsSink) -> None:
        retry.execute_retry(TARGET, ErrorKind.TIMEOUT)
        (event,) = sink.of_type(events.RETRY)
        assert event.data["outcome"] == "retried"
        assert event.data["error_kind"] == "timeout"


# ═══════════════════════════════════════════════════════════════
#  Strategy table
# ═══════════════════════════════════════════════════════════════
class TestStrategies:
    def test_override_does_not_mutate_table(self, retry: RetryPolicyEngine) -> None:
        custom = retry.strategy_for(ErrorKind.TIMEOUT, {"max_retries": 9, "unknown": 1})
        assert custom.max_retries == 9
        assert retry.strategy_for(ErrorKind.TIMEOUT).max_retries == 2

    def test_invalid_override_rejected(self, retry: RetryPolicyEngine) -> None:
        with pytest.raises(ConfigurationError):
            retry.strategy_for(ErrorKind.TIMEOUT, {"max_retries": -1})

    def test_configure_replaces_table(self, retry: RetryPolicyEngine) -> None:
        retry.configure_strategies({"timeout": {"max_retries": 1, "backoff": "fixed", "base_delay": 5}})
        assert retry.strategy_for(ErrorKind.TIMEOUT).max_retries == 1
        assert retry.strategy_for(ErrorKind.SERVER_ERROR).name == "default"
        assert ErrorKind.DEFAULT in retry.strategies

    def test_configure_rejects_bad_table(self, retry: RetryPolicyEngine) -> None:
        with pytest.raises(ConfigurationError):
            retry.configure_strategies({"timeout": {"backoff": "quadratic"}})
        assert retry.strategy_for(ErrorKind.TIMEOUT).backoff.value == "linear"
