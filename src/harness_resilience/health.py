"""Sliding-window health tracking per target.

Maintains rolling success/failure counts, latency percentiles and the
number of in-flight calls over a configurable time window.  These feed the
load-balanced and performance-based selection strategies.
"""

from __future__ import annotations

import bisect
import threading
from collections import deque
from dataclasses import dataclass

from harness_resilience.clock import Clock, SystemClock
from harness_resilience.concurrency import StripedLock
from harness_resilience.types import TargetHealth, TargetKey, TargetStatus


@dataclass
class _Sample:
    timestamp: float
    success: bool
    latency_ms: float
    error: str | None = None


class _HealthWindow:
    """Health of a single target. Not shared outside the tracker."""

    def __init__(
        self,
        key: TargetKey,
        clock: Clock,
        *,
        window_seconds: float,
        degraded_threshold: float,
        unhealthy_threshold: float,
    ) -> None:
        self._key = key
        self._clock = clock
        self._window = window_seconds
        self._degraded_thr = degraded_threshold
        self._unhealthy_thr = unhealthy_threshold

        self._samples: deque[_Sample] = deque()
        self._latencies: list[float] = []  # sorted for percentile calcs
        self._lock = threading.Lock()

        # Cumulative counters (cleared only by reset)
        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._consecutive_failures = 0
        self._in_flight = 0
        self._last_error: str | None = None
        self._last_error_time: float | None = None

    # ── Recording ────────────────────────────────────────────
    def call_started(self) -> None:
        with self._lock:
            self._in_flight += 1

    def call_finished(self) -> None:
        with self._lock:
            self._in_flight = max(0, self._in_flight - 1)

    def record_success(self, latency_ms: float) -> None:
        with self._lock:
            self._samples.append(_Sample(self._clock.now(), success=True, latency_ms=latency_ms))
            if latency_ms > 0:
                bisect.insort(self._latencies, latency_ms)
            self._total_requests += 1
            self._total_successes += 1
            self._consecutive_failures = 0
            self._in_flight = max(0, self._in_flight - 1)
            self._evict()

    def record_failure(self, error: str, latency_ms: float = 0.0) -> None:
        with self._lock:
            now = self._clock.now()
            self._samples.append(_Sample(now, success=False, latency_ms=latency_ms, error=error))
            if latency_ms > 0:
                bisect.insort(self._latencies, latency_ms)
            self._total_requests += 1
            self._total_failures += 1
            self._consecutive_failures += 1
            self._in_flight = max(0, self._in_flight - 1)
            self._last_error = error
            self._last_error_time = now
            self._evict()

    # ── Derived signals ──────────────────────────────────────
    def load(self) -> int:
        """In-flight calls plus calls recorded in the window."""
        with self._lock:
            self._evict()
            return self._in_flight + len(self._samples)

    def performance(self) -> tuple[float, float]:
        """``(success_rate, average latency ms)``; no samples means ``(1.0, 0.0)``."""
        with self._lock:
            self._evict()
            return self._success_rate(), self._avg_latency()

    def snapshot(self) -> TargetHealth:
        """Produce a read-only health snapshot."""
        with self._lock:
            self._evict()
            success_rate = self._success_rate()
            return TargetHealth(
                target=self._key,
                status=self._status(success_rate),
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                consecutive_failures=self._consecutive_failures,
                success_rate=float(f"{success_rate:.4f}"),
                latency_avg_ms=float(f"{self._avg_latency():.2f}"),
                latency_p50_ms=self._percentile(0.50),
                latency_p95_ms=self._percentile(0.95),
                in_flight=self._in_flight,
                recent_requests=len(self._samples),
                last_error=self._last_error,
                last_error_time=self._last_error_time,
            )

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._latencies.clear()
            self._total_requests = 0
            self._total_successes = 0
            self._total_failures = 0
            self._consecutive_failures = 0
            self._last_error = None
            self._last_error_time = None

    # ── Internals (caller holds lock) ────────────────────────
    def _evict(self) -> None:
        cutoff = self._clock.now() - self._window
        while self._samples and self._samples[0].timestamp < cutoff:
            old = self._samples.popleft()
            if old.latency_ms > 0:
                idx = bisect.bisect_left(self._latencies, old.latency_ms)
                if idx < len(self._latencies) and self._latencies[idx] == old.latency_ms:
                    del self._latencies[idx]

    def _success_rate(self) -> float:
        if not self._samples:
            return 1.0
        return sum(1 for s in self._samples if s.success) / len(self._samples)

    def _avg_latency(self) -> float:
        if not self._latencies:
            return 0.0
        return sum(self._latencies) / len(self._latencies)

    def _status(self, success_rate: float) -> TargetStatus:
        failure_rate = 1.0 - success_rate
        if failure_rate >= self._unhealthy_thr:
            return TargetStatus.UNHEALTHY
        if failure_rate >= self._degraded_thr:
            return TargetStatus.DEGRADED
        return TargetStatus.HEALTHY

    def _percentile(self, p: float) -> float:
        if not self._latencies:
            return 0.0
        idx = min(int(len(self._latencies) * p), len(self._latencies) - 1)
        return float(f"{self._latencies[idx]:.2f}")


class TargetHealthTracker:
    """Thread-safe registry of per-target health windows."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        window_seconds: float = 60.0,
        degraded_threshold: float = 0.30,
        unhealthy_threshold: float = 0.60,
    ) -> None:
        self._clock = clock or SystemClock()
        self._window = window_seconds
        self._degraded_thr = degraded_threshold
        self._unhealthy_thr = unhealthy_threshold
        self._windows: dict[TargetKey, _HealthWindow] = {}
        self._stripes = StripedLock()

    def call_started(self, key: TargetKey) -> None:
        self._get(key).call_started()

    def call_finished(self, key: TargetKey) -> None:
        self._get(key).call_finished()

    def record_success(self, key: TargetKey, latency_ms: float = 0.0) -> None:
        self._get(key).record_success(latency_ms)

    def record_failure(self, key: TargetKey, error: str, latency_ms: float = 0.0) -> None:
        self._get(key).record_failure(error, latency_ms)

    def load(self, key: TargetKey) -> int:
        return self._get(key).load()

    def performance(self, key: TargetKey) -> tuple[float, float]:
        return self._get(key).performance()

    def snapshot(self, key: TargetKey) -> TargetHealth:
        return self._get(key).snapshot()

    def reset(self, key: TargetKey) -> None:
        self._get(key).reset()

    def targets(self) -> list[TargetKey]:
        return list(self._windows)

    def _get(self, key: TargetKey) -> _HealthWindow:
        window = self._windows.get(key)
        if window is None:
            with self._stripes.for_key(key):
                window = self._windows.get(key)
                if window is None:
                    window = _HealthWindow(
                        key,
                        self._clock,
                        window_seconds=self._window,
                        degraded_threshold=self._degraded_thr,
                        unhealthy_threshold=self._unhealthy_thr,
                    )
                    self._windows[key] = window
        return window
