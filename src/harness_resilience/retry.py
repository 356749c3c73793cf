"""Retry policy engine: decides whether to retry against the same target.

Counters are kept per ``(target, error_kind)``.  The engine never sleeps:
``execute_retry`` returns the backoff delay and the caller waits.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

import structlog

from harness_resilience.backoff import compute_delay
from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.clock import Clock, SystemClock
from harness_resilience.concurrency import StripedLock
from harness_resilience.config import (
    DEFAULT_RETRY_STRATEGIES,
    RetryStrategy,
    build_strategy_table,
    merge_strategy,
)
from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink
from harness_resilience.types import (
    NEVER_RETRIED,
    ErrorKind,
    Outcome,
    RetryRecord,
    RetryResult,
    TargetKey,
)

logger = structlog.get_logger(__name__)


class RetryPolicyEngine:
    def __init__(
        self,
        breaker: CircuitBreakerEngine,
        *,
        strategies: Mapping[ErrorKind, RetryStrategy] | None = None,
        clock: Clock | None = None,
        metrics: MetricsSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._breaker = breaker
        self._strategies: dict[ErrorKind, RetryStrategy] = dict(strategies or DEFAULT_RETRY_STRATEGIES)
        self._strategies.setdefault(ErrorKind.DEFAULT, DEFAULT_RETRY_STRATEGIES[ErrorKind.DEFAULT])
        self._clock = clock or SystemClock()
        self._metrics = metrics or NullMetricsSink()
        self._rng = rng

        self._records: dict[TargetKey, dict[ErrorKind, RetryRecord]] = {}
        self._stripes = StripedLock()

    # ── Strategy table ───────────────────────────────────────
    def strategy_for(
        self, error_kind: ErrorKind | str, overrides: Mapping[str, Any] | None = None
    ) -> RetryStrategy:
        """Effective strategy for ``error_kind``; the shared table is never mutated."""
        kind = _as_kind(error_kind)
        base = self._strategies.get(kind) or self._strategies[ErrorKind.DEFAULT]
        return merge_strategy(base, overrides)

    def configure_strategies(self, table: Mapping[Any, Any]) -> None:
        """Replace the strategy table wholesale.

        Raises:
            ConfigurationError: an entry fails validation; the table is unchanged.
        """
        self._strategies = build_strategy_table(
            table, RetryStrategy, DEFAULT_RETRY_STRATEGIES, key_type=ErrorKind
        )
        logger.info("retry_strategies_configured", kinds=sorted(k.value for k in self._strategies))

    @property
    def strategies(self) -> dict[ErrorKind, RetryStrategy]:
        return dict(self._strategies)

    # ── Decisions ────────────────────────────────────────────
    def should_retry(
        self,
        target: TargetKey,
        error_kind: ErrorKind | str,
        strategy: RetryStrategy | None = None,
    ) -> bool:
        kind = _as_kind(error_kind)
        if kind in NEVER_RETRIED:
            return False
        if self._breaker.is_open(target) or (
            not target.is_provider_level and self._breaker.is_open(target.provider_level())
        ):
            return False
        strategy = strategy or self.strategy_for(kind)
        return self._count(target, kind) < strategy.max_retries

    def execute_retry(
        self,
        target: TargetKey,
        error_kind: ErrorKind | str,
        strategy: RetryStrategy | None = None,
    ) -> RetryResult:
        """Count one retry and compute its delay, or report exhaustion."""
        kind = _as_kind(error_kind)
        strategy = strategy or self.strategy_for(kind)
        now = self._clock.now()

        with self._stripes.for_key(target):
            record = self._records.setdefault(target, {}).setdefault(kind, RetryRecord())
            if record.retry_count >= strategy.max_retries:
                result = RetryResult(
                    action=Outcome.EXHAUSTED_RETRIES,
                    retry_count=record.retry_count,
                    delay=0.0,
                    strategy=strategy.name,
                    error_kind=kind,
                )
            else:
                record.retry_count += 1
                if record.first_seen is None:
                    record.first_seen = now
                record.last_attempt = now
                result = RetryResult(
                    action=Outcome.RETRIED,
                    retry_count=record.retry_count,
                    delay=compute_delay(
                        record.retry_count,
                        strategy.backoff,
                        strategy.base_delay,
                        strategy.max_delay,
                        jitter=strategy.jitter,
                        rng=self._rng,
                    ),
                    strategy=strategy.name,
                    error_kind=kind,
                )

        if result.action == Outcome.RETRIED:
            logger.info(
                "retry_scheduled",
                provider=target.provider,
                model=target.model,
                error_kind=kind.value,
                attempt=result.retry_count,
                max_retries=strategy.max_retries,
                delay_s=float(f"{result.delay:.3f}"),
            )
        else:
            logger.warning(
                "retries_exhausted",
                provider=target.provider,
                model=target.model,
                error_kind=kind.value,
                retry_count=result.retry_count,
            )
        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.RETRY,
                provider=target.provider,
                model=target.model,
                timestamp=now,
                data={
                    "error_kind": kind.value,
                    "outcome": result.action.value,
                    "retry_count": result.retry_count,
                    "delay": result.delay,
                },
            )
        )
        return result

    # ── Ledger ───────────────────────────────────────────────
    def retry_status(self, target: TargetKey) -> dict[str, RetryRecord]:
        with self._stripes.for_key(target):
            return {kind.value: replace(rec) for kind, rec in self._records.get(target, {}).items()}

    def reset(self, target: TargetKey, error_kind: ErrorKind | str | None = None) -> None:
        with self._stripes.for_key(target):
            if error_kind is None:
                self._records.pop(target, None)
            else:
                self._records.get(target, {}).pop(_as_kind(error_kind), None)

    def reset_all(self) -> None:
        for target in list(self._records):
            self.reset(target)

    def _count(self, target: TargetKey, kind: ErrorKind) -> int:
        with self._stripes.for_key(target):
            record = self._records.get(target, {}).get(kind)
            return record.retry_count if record else 0


def _as_kind(error_kind: ErrorKind | str) -> ErrorKind:
    try:
        return ErrorKind(error_kind)
    except ValueError:
        return ErrorKind.DEFAULT
