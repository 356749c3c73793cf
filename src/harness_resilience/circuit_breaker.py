"""Circuit breaker engine: isolates failing providers and models.

One breaker per ``TargetKey``, created lazily and never destroyed.  A
provider-level breaker (``model=None``) and the breakers of its models are
independent and can be open at the same time.

State machine:
    CLOSED    → (failure count or failure rate reaches threshold) → OPEN
    OPEN      → (timeout elapsed, next can_execute)                 → HALF_OPEN
    HALF_OPEN → (success_threshold consecutive successes)           → CLOSED
    HALF_OPEN → (any failure)                                       → OPEN

Both opening predicates are evaluated in one synchronized check per
failure: the count predicate first, then the rate predicate.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from harness_resilience.clock import Clock, SystemClock
from harness_resilience.concurrency import StripedLock
from harness_resilience.config import BreakerConfig
from harness_resilience.exceptions import ConfigurationError
from harness_resilience.history import EventLog
from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink
from harness_resilience.types import CircuitState, CircuitStatus, TargetKey, TransitionRecord

logger = structlog.get_logger(__name__)

# Accepted spellings for ``configure`` overrides.
_OVERRIDE_ALIASES = {"timeout": "timeout_seconds"}


@dataclass
class _Breaker:
    """Mutable state of one breaker. Every field is guarded by ``lock``."""

    config: BreakerConfig
    history: EventLog[TransitionRecord]
    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    success_count: int = 0
    last_failure_time: float | None = None
    opened_at: float | None = None
    probes: deque[float] = field(default_factory=deque)  # admission times of half-open probes
    total_successes: int = 0
    total_failures: int = 0
    outcomes: deque[bool] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def __post_init__(self) -> None:
        self.outcomes = deque(self.outcomes, maxlen=self.config.window_size)

    @property
    def rate_enabled(self) -> bool:
        return self.config.failure_rate_threshold > 0

    @property
    def failure_count(self) -> int:
        if self.rate_enabled:
            return sum(1 for ok in self.outcomes if not ok)
        return self.consecutive_failures

    @property
    def request_count(self) -> int:
        return len(self.outcomes)

    @property
    def success_ratio(self) -> float:
        if not self.outcomes:
            return 1.0
        return sum(1 for ok in self.outcomes if ok) / len(self.outcomes)

    def timeout_elapsed(self, now: float) -> bool:
        return self.opened_at is not None and now >= self.opened_at + self.config.timeout_seconds

    def reclaim_stale_probes(self, now: float) -> None:
        """Drop probe slots whose caller never reported within the timeout."""
        while self.probes and now - self.probes[0] > self.config.timeout_seconds:
            self.probes.popleft()

    def return_probe(self) -> None:
        if self.probes:
            self.probes.popleft()

    def clear_counts(self) -> None:
        self.outcomes.clear()
        self.consecutive_failures = 0
        self.success_count = 0
        self.probes.clear()


class CircuitBreakerEngine:
    """Thread-safe registry of per-target circuit breakers.

    A single instance is shared by retry, fallback and the facade so every
    consumer sees the same view of a target.
    """

    def __init__(
        self,
        config: BreakerConfig | None = None,
        *,
        clock: Clock | None = None,
        metrics: MetricsSink | None = None,
        history_limit: int = 100,
        history_window_seconds: float | None = None,
    ) -> None:
        self._default_config = config or BreakerConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or NullMetricsSink()
        self._history_limit = history_limit
        self._history_window = history_window_seconds

        self._breakers: dict[TargetKey, _Breaker] = {}
        self._stripes = StripedLock()

    @property
    def default_config(self) -> BreakerConfig:
        return self._default_config

    # ── Call gating ──────────────────────────────────────────
    def can_execute(self, provider: str | TargetKey, model: str | None = None) -> bool:
        """Whether a call may be attempted; may move OPEN → HALF_OPEN.

        In HALF_OPEN each ``True`` takes one probe slot, returned by the next
        recorded outcome or by ``release``. A slot held longer than
        ``timeout_seconds`` is reclaimed, so a caller that never reports back
        cannot wedge the breaker.
        """
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        now = self._clock.now()
        transition = None
        with breaker.lock:
            if breaker.state == CircuitState.CLOSED:
                return True
            if breaker.state == CircuitState.OPEN:
                if not breaker.timeout_elapsed(now):
                    return False
                transition = self._transition(key, breaker, CircuitState.HALF_OPEN, "timeout_elapsed", now)
            breaker.reclaim_stale_probes(now)
            if len(breaker.probes) < breaker.config.half_open_max_requests:
                breaker.probes.append(now)
                allowed = True
            else:
                allowed = False
        if transition:
            self._publish(transition)
        return allowed

    def release(self, provider: str | TargetKey, model: str | None = None) -> None:
        """Return a half-open probe slot for a call that was never reported."""
        breaker = self._get(TargetKey.of(provider, model))
        with breaker.lock:
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.return_probe()

    # ── Outcome recording ────────────────────────────────────
    def record_success(self, provider: str | TargetKey, model: str | None = None) -> None:
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        now = self._clock.now()
        transition = None
        with breaker.lock:
            breaker.outcomes.append(True)
            breaker.total_successes += 1
            breaker.consecutive_failures = 0
            breaker.success_count += 1
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.return_probe()
                if breaker.success_count >= breaker.config.success_threshold:
                    transition = self._transition(
                        key, breaker, CircuitState.CLOSED, "success_threshold_reached", now
                    )
        if transition:
            self._publish(transition)

    def record_failure(
        self, provider: str | TargetKey, model: str | None = None, error: Any = None
    ) -> None:
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        now = self._clock.now()
        transition = None
        with breaker.lock:
            breaker.outcomes.append(False)
            breaker.total_failures += 1
            breaker.consecutive_failures += 1
            breaker.success_count = 0
            breaker.last_failure_time = now

            if breaker.state == CircuitState.HALF_OPEN:
                breaker.return_probe()
                transition = self._transition(key, breaker, CircuitState.OPEN, "half_open_failure", now)
            elif breaker.state == CircuitState.CLOSED:
                reason = self._open_reason(breaker)
                if reason:
                    transition = self._transition(key, breaker, CircuitState.OPEN, reason, now)
        if transition:
            self._publish(transition, error=error)

    # ── Manual overrides ─────────────────────────────────────
    def open(self, provider: str | TargetKey, model: str | None = None, reason: str = "manual_open") -> None:
        self._force(TargetKey.of(provider, model), CircuitState.OPEN, reason)

    def close(self, provider: str | TargetKey, model: str | None = None, reason: str = "manual_close") -> None:
        self._force(TargetKey.of(provider, model), CircuitState.CLOSED, reason)

    def half_open(
        self, provider: str | TargetKey, model: str | None = None, reason: str = "manual_half_open"
    ) -> None:
        self._force(TargetKey.of(provider, model), CircuitState.HALF_OPEN, reason)

    def reset(self, provider: str | TargetKey, model: str | None = None) -> None:
        """Back to a fresh closed breaker; configuration and history are kept."""
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        now = self._clock.now()
        with breaker.lock:
            breaker.clear_counts()
            breaker.total_successes = 0
            breaker.total_failures = 0
            breaker.last_failure_time = None
            transition = self._transition(key, breaker, CircuitState.CLOSED, "reset", now)
        self._publish(transition)

    def reset_all(self) -> None:
        for key in list(self._breakers):
            self.reset(key)

    # ── Configuration ────────────────────────────────────────
    def configure(self, provider: str | TargetKey, model: str | None = None, **overrides: Any) -> BreakerConfig:
        """Override thresholds for one target.

        Raises:
            ConfigurationError: any threshold is out of range; the breaker is
                left unchanged.
        """
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        data = {_OVERRIDE_ALIASES.get(k, k): v for k, v in overrides.items()}
        with breaker.lock:
            try:
                new_config = BreakerConfig.model_validate({**breaker.config.model_dump(), **data})
            except ValidationError as exc:
                raise ConfigurationError.from_validation(f"breaker configuration for {key}", exc) from exc
            breaker.config = new_config
            if breaker.outcomes.maxlen != new_config.window_size:
                breaker.outcomes = deque(breaker.outcomes, maxlen=new_config.window_size)
        logger.info("circuit_breaker_configured", target=str(key), **data)
        return new_config

    # ── Queries ──────────────────────────────────────────────
    def state(self, provider: str | TargetKey, model: str | None = None) -> CircuitState:
        """Current state without side effects."""
        breaker = self._get(TargetKey.of(provider, model))
        with breaker.lock:
            return breaker.state

    def is_open(self, provider: str | TargetKey, model: str | None = None) -> bool:
        return self.state(provider, model) == CircuitState.OPEN

    def health_score(self, provider: str | TargetKey, model: str | None = None) -> float:
        breaker = self._get(TargetKey.of(provider, model))
        with breaker.lock:
            return _score(breaker)

    def status(self, provider: str | TargetKey, model: str | None = None) -> CircuitStatus:
        key = TargetKey.of(provider, model)
        breaker = self._get(key)
        with breaker.lock:
            cfg = breaker.config
            next_attempt = (
                breaker.opened_at + cfg.timeout_seconds
                if breaker.state == CircuitState.OPEN and breaker.opened_at is not None
                else None
            )
            return CircuitStatus(
                target=key,
                state=breaker.state,
                failure_count=breaker.failure_count,
                success_count=breaker.success_count,
                request_count=breaker.request_count,
                last_failure_time=breaker.last_failure_time,
                opened_at=breaker.opened_at,
                failure_threshold=cfg.failure_threshold,
                success_threshold=cfg.success_threshold,
                timeout_seconds=cfg.timeout_seconds,
                failure_rate_threshold=cfg.failure_rate_threshold,
                minimum_requests=cfg.minimum_requests,
                half_open_max_requests=cfg.half_open_max_requests,
                next_attempt_time=next_attempt,
                health_score=_score(breaker),
            )

    def is_available(self, provider: str | TargetKey, model: str | None = None) -> bool:
        """Whether ``can_execute`` would admit a call right now, without taking a slot."""
        breaker = self._get(TargetKey.of(provider, model))
        now = self._clock.now()
        with breaker.lock:
            if breaker.state == CircuitState.CLOSED:
                return True
            if breaker.state == CircuitState.OPEN:
                return breaker.timeout_elapsed(now)
            live = sum(1 for ts in breaker.probes if now - ts <= breaker.config.timeout_seconds)
            return live < breaker.config.half_open_max_requests

    def available_providers(self, providers: Iterable[str]) -> list[str]:
        return [p for p in providers if self.is_available(TargetKey(p))]

    def available_models(self, provider: str, models: Iterable[str]) -> list[str]:
        return [m for m in models if self.is_available(TargetKey(provider, m))]

    def targets(self) -> list[TargetKey]:
        return list(self._breakers)

    # ── History & statistics ─────────────────────────────────
    def history(
        self,
        provider: str | TargetKey | None = None,
        model: str | None = None,
        *,
        start: float | None = None,
        end: float | None = None,
    ) -> list[TransitionRecord]:
        if provider is not None:
            key = TargetKey.of(provider, model)
            breaker = self._breakers.get(key)
            return breaker.history.query(start, end) if breaker else []
        merged: list[TransitionRecord] = []
        for breaker in list(self._breakers.values()):
            merged.extend(breaker.history.query(start, end))
        merged.sort(key=lambda r: r.timestamp)
        return merged

    def clear_history(self, provider: str | TargetKey | None = None, model: str | None = None) -> None:
        if provider is not None:
            breaker = self._breakers.get(TargetKey.of(provider, model))
            if breaker:
                breaker.history.clear()
            return
        for breaker in list(self._breakers.values()):
            breaker.history.clear()

    def statistics(self) -> dict[str, Any]:
        """Aggregate view across every breaker."""
        by_state = {s.value: 0 for s in CircuitState}
        total_failures = 0
        total_successes = 0
        rates: list[float] = []
        most_failing: TargetKey | None = None
        most_failures = 0

        for key, breaker in list(self._breakers.items()):
            with breaker.lock:
                by_state[breaker.state.value] += 1
                failures, successes = breaker.total_failures, breaker.total_successes
            total_failures += failures
            total_successes += successes
            if failures + successes:
                rates.append(failures / (failures + successes))
            if failures > most_failures:
                most_failing, most_failures = key, failures

        return {
            "total_breakers": len(self._breakers),
            "states": by_state,
            "total_failures": total_failures,
            "total_successes": total_successes,
            "average_failure_rate": float(f"{(sum(rates) / len(rates) if rates else 0.0):.4f}"),
            "most_failing": str(most_failing) if most_failing else None,
        }

    # ── Internals ────────────────────────────────────────────
    def _get(self, key: TargetKey) -> _Breaker:
        breaker = self._breakers.get(key)
        if breaker is None:
            with self._stripes.for_key(key):
                breaker = self._breakers.get(key)
                if breaker is None:
                    breaker = _Breaker(
                        config=self._default_config,
                        history=EventLog(
                            limit=self._history_limit,
                            window_seconds=self._history_window,
                            clock=self._clock,
                        ),
                    )
                    self._breakers[key] = breaker
        return breaker

    def _force(self, key: TargetKey, to_state: CircuitState, reason: str) -> None:
        breaker = self._get(key)
        now = self._clock.now()
        with breaker.lock:
            transition = self._transition(key, breaker, to_state, reason, now)
        self._publish(transition)

    @staticmethod
    def _open_reason(breaker: _Breaker) -> str | None:
        """Caller holds lock."""
        cfg = breaker.config
        if breaker.failure_count >= cfg.failure_threshold:
            return "failure_threshold_reached"
        if breaker.rate_enabled and breaker.request_count >= max(cfg.minimum_requests, 1):
            failures = sum(1 for ok in breaker.outcomes if not ok)
            if failures / breaker.request_count >= cfg.failure_rate_threshold:
                return "failure_rate_exceeded"
        return None

    @staticmethod
    def _transition(
        key: TargetKey, breaker: _Breaker, to_state: CircuitState, reason: str, now: float
    ) -> TransitionRecord:
        """Apply a state change and record it. Caller holds lock."""
        record = TransitionRecord(
            timestamp=now, target=key, from_state=breaker.state, to_state=to_state, reason=reason
        )
        breaker.state = to_state
        if to_state == CircuitState.OPEN:
            breaker.opened_at = now
            breaker.probes.clear()
        elif to_state == CircuitState.HALF_OPEN:
            breaker.success_count = 0
            breaker.probes.clear()
        else:
            breaker.opened_at = None
            breaker.clear_counts()
        breaker.history.append(record)
        return record

    def _publish(self, record: TransitionRecord, *, error: Any = None) -> None:
        log = logger.bind(
            provider=record.target.provider,
            model=record.target.model,
            from_state=record.from_state.value if record.from_state else None,
            reason=record.reason,
        )
        if record.reason == "reset":
            log.info("circuit_breaker_force_reset")
        elif record.to_state == CircuitState.OPEN:
            event = (
                "circuit_breaker_reopened"
                if record.from_state == CircuitState.HALF_OPEN
                else "circuit_breaker_opened"
            )
            log.warning(event, error=str(error) if error is not None else None)
        elif record.to_state == CircuitState.HALF_OPEN:
            log.info("circuit_breaker_half_open")
        else:
            log.info("circuit_breaker_closed")

        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.CIRCUIT_TRANSITION,
                provider=record.target.provider,
                model=record.target.model,
                timestamp=record.timestamp,
                data={
                    "from_state": record.from_state.value if record.from_state else None,
                    "to_state": record.to_state.value,
                    "reason": record.reason,
                },
            )
        )


def _score(breaker: _Breaker) -> float:
    """Health in [0, 1]: state band scaled by recent success ratio. Caller holds lock."""
    ratio = breaker.success_ratio
    if breaker.state == CircuitState.CLOSED:
        score = 0.5 + 0.5 * ratio
    elif breaker.state == CircuitState.HALF_OPEN:
        score = 0.25 + 0.25 * ratio
    else:
        score = 0.25 * ratio
    return float(f"{min(1.0, max(0.0, score)):.4f}")
