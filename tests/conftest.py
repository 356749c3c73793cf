"""Shared test fixtures."""

from __future__ import annotations

import pytest

from harness_resilience.catalog import StaticProviderCatalog
from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.clock import ManualClock
from harness_resilience.config import DEFAULT_TIERS, BreakerConfig
from harness_resilience.fallback import FallbackOrchestrator
from harness_resilience.health import TargetHealthTracker
from harness_resilience.quota import QuotaTracker
from harness_resilience.types import TargetKey

from tests.support import T0, RecordingMetricsSink


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(T0)


@pytest.fixture
def sink() -> RecordingMetricsSink:
    return RecordingMetricsSink()


@pytest.fixture
def catalog() -> StaticProviderCatalog:
    return StaticProviderCatalog(
        {
            "A": ["a-large", "a-small"],
            "B": ["b-large", "b-mini"],
            "C": ["c-large"],
        },
        tiers={
            "a-large": "advanced",
            "a-small": "standard",
            "b-large": "advanced",
            "b-mini": "mini",
            "c-large": "standard",
        },
    )


@pytest.fixture
def breaker(clock: ManualClock, sink: RecordingMetricsSink) -> CircuitBreakerEngine:
    return CircuitBreakerEngine(
        BreakerConfig(failure_threshold=3, timeout_seconds=60),
        clock=clock,
        metrics=sink,
    )


@pytest.fixture
def health(clock: ManualClock) -> TargetHealthTracker:
    return TargetHealthTracker(clock=clock)


@pytest.fixture
def tracker(clock: ManualClock) -> QuotaTracker:
    return QuotaTracker(clock=clock)


@pytest.fixture
def orchestrator(
    catalog: StaticProviderCatalog,
    breaker: CircuitBreakerEngine,
    health: TargetHealthTracker,
    tracker: QuotaTracker,
    clock: ManualClock,
    sink: RecordingMetricsSink,
) -> FallbackOrchestrator:
    def tier_rank(key: TargetKey) -> int | None:
        tier = catalog.tier_of(key.provider, key.model)
        return DEFAULT_TIERS[tier].rank if tier else None

    return FallbackOrchestrator(
        catalog,
        breaker,
        health=health,
        quota=tracker,
        tier_rank=tier_rank,
        clock=clock,
        metrics=sink,
    )
