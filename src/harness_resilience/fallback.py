"""Fallback orchestrator: routes away from a target once retrying is over.

Entry point is ``handle_exhaustion``: it marks the target exhausted for the
error kind, resolves the effective strategy (explicit override, then the
table entry for the kind, then ``default``, with caller overrides merged on
top) and dispatches on the strategy's action.

Candidate filtering, for both providers and models:
    catalog order − current target − exhausted for this kind − breaker open
The breaker state comes from the shared ``CircuitBreakerEngine``; this
module keeps no breaker-like state of its own.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

import structlog

from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.clock import Clock, SystemClock
from harness_resilience.concurrency import StripedLock
from harness_resilience.config import (
    DEFAULT_FALLBACK_STRATEGIES,
    FallbackStrategy,
    build_strategy_table,
    merge_strategy,
)
from harness_resilience.health import TargetHealthTracker
from harness_resilience.history import EventLog
from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink, ProviderCatalog
from harness_resilience.quota import QuotaTracker
from harness_resilience.selection import RoundRobinSelector, SelectionSnapshot, select
from harness_resilience.types import (
    ErrorKind,
    FallbackAction,
    FallbackResult,
    Outcome,
    SelectionStrategy,
    TargetKey,
)

logger = structlog.get_logger(__name__)

# Context keys merged on top of the resolved strategy.
_CONTEXT_OVERRIDES = ("priority", "cooldown_period", "max_attempts", "selection_strategy")

_SWITCHING_ACTIONS = frozenset({
    FallbackAction.SWITCH_PROVIDER,
    FallbackAction.SWITCH_MODEL,
    FallbackAction.SWITCH_PROVIDER_MODEL,
    FallbackAction.LOAD_BALANCE,
    FallbackAction.CIRCUIT_BREAKER_AWARE,
    FallbackAction.QUOTA_AWARE_SWITCH,
    FallbackAction.COST_OPTIMIZED_SWITCH,
    FallbackAction.PERFORMANCE_OPTIMIZED_SWITCH,
})


class FallbackOrchestrator:
    """Thread-safe fallback routing over a shared breaker, health and quota view."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        breaker: CircuitBreakerEngine,
        *,
        health: TargetHealthTracker | None = None,
        quota: QuotaTracker | None = None,
        strategies: Mapping[str, FallbackStrategy] | None = None,
        tier_rank: Callable[[TargetKey], int | None] | None = None,
        exhaustion_ttl_seconds: float | None = 300.0,
        clock: Clock | None = None,
        metrics: MetricsSink | None = None,
        history_limit: int = 1000,
        history_window_seconds: float | None = None,
    ) -> None:
        self._catalog = catalog
        self._breaker = breaker
        self._clock = clock or SystemClock()
        self._health = health or TargetHealthTracker(clock=self._clock)
        self._quota = quota or QuotaTracker(clock=self._clock)
        self._strategies: dict[str, FallbackStrategy] = dict(strategies or DEFAULT_FALLBACK_STRATEGIES)
        self._strategies.setdefault("default", DEFAULT_FALLBACK_STRATEGIES["default"])
        self._tier_rank = tier_rank or (lambda key: None)
        self._exhaustion_ttl = exhaustion_ttl_seconds
        self._metrics = metrics or NullMetricsSink()

        self._exhausted: dict[TargetKey, dict[ErrorKind, float]] = {}
        self._attempts: dict[TargetKey, dict[ErrorKind, int]] = {}
        self._last_switch: dict[TargetKey, dict[str, float]] = {}
        self._stripes = StripedLock()
        self._round_robin = RoundRobinSelector()
        self._history: EventLog[FallbackResult] = EventLog(
            limit=history_limit, window_seconds=history_window_seconds, clock=self._clock
        )

    # ── Strategy resolution ──────────────────────────────────
    def resolve_strategy(
        self, error_kind: ErrorKind | str, context: Mapping[str, Any] | None = None
    ) -> FallbackStrategy:
        """Effective strategy for one call; the shared table is never mutated."""
        context = context or {}
        kind = _as_kind(error_kind)
        base = None
        override = context.get("switch_strategy") or context.get("fallback_strategy")
        if override:
            base = self._strategies.get(str(getattr(override, "value", override)))
        if base is None:
            base = self._strategies.get(kind.value) or self._strategies["default"]
        return merge_strategy(base, {k: context[k] for k in _CONTEXT_OVERRIDES if k in context})

    def configure_strategies(self, table: Mapping[Any, Any]) -> None:
        """Replace the strategy table wholesale.

        Raises:
            ConfigurationError: an entry fails validation; the table is unchanged.
        """
        self._strategies = build_strategy_table(
            {getattr(k, "value", k): v for k, v in table.items()},
            FallbackStrategy,
            DEFAULT_FALLBACK_STRATEGIES,
        )
        logger.info("fallback_strategies_configured", strategies=sorted(self._strategies))

    @property
    def strategies(self) -> dict[str, FallbackStrategy]:
        return dict(self._strategies)

    # ── Main entry-point ─────────────────────────────────────
    def handle_exhaustion(
        self,
        target: TargetKey,
        error_kind: ErrorKind | str,
        context: Mapping[str, Any] | None = None,
    ) -> FallbackResult:
        """Route away from ``target`` after retries are exhausted or not allowed."""
        context = context or {}
        kind = _as_kind(error_kind)
        self.mark_exhausted(target, kind)
        attempts = self._count_attempt(target, kind)
        strategy = self.resolve_strategy(kind, context)

        if strategy.max_attempts and attempts > strategy.max_attempts:
            result = self._result(
                target, kind, strategy,
                success=False,
                action=Outcome.ESCALATED,
                reason=f"Fallback attempts exceeded ({attempts} > {strategy.max_attempts})",
                requires_manual_intervention=True,
                details={"fallback_attempts": attempts},
            )
        else:
            result = self.dispatch(target, kind, strategy, context)
            result.details.setdefault("fallback_attempts", attempts)

        self.publish(result)
        return result

    def dispatch(
        self,
        target: TargetKey,
        error_kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any] | None = None,
    ) -> FallbackResult:
        """Execute ``strategy.action``; unknown actions switch provider."""
        context = context or {}
        try:
            action = FallbackAction(strategy.action)
        except ValueError:
            logger.warning("fallback_unknown_action", action=str(strategy.action))
            action = FallbackAction.SWITCH_PROVIDER

        if action in _SWITCHING_ACTIONS:
            remaining = self.cooldown_remaining(target, strategy)
            if remaining > 0:
                return self._result(
                    target, error_kind, strategy,
                    success=False,
                    action=Outcome.SWITCH_COOLDOWN_ACTIVE,
                    reason=f"Switch cooldown active for strategy {strategy.name}",
                    cooldown_remaining=remaining,
                )

        if action == FallbackAction.SWITCH_PROVIDER:
            result = self._switch_provider(target, error_kind, strategy, context)
        elif action == FallbackAction.SWITCH_MODEL:
            result = self._switch_model(target, error_kind, strategy, context, fall_through=True)
        elif action == FallbackAction.SWITCH_PROVIDER_MODEL:
            result = self._switch_provider_model(target, error_kind, strategy, context)
        elif action == FallbackAction.LOAD_BALANCE:
            result = self._switch_provider(
                target, error_kind, strategy, context,
                selection=SelectionStrategy.LOAD_BALANCED,
                outcome=Outcome.LOAD_BALANCED_SWITCH,
            )
        elif action == FallbackAction.CIRCUIT_BREAKER_AWARE:
            result = self._switch_provider(
                target, error_kind, strategy, context,
                selection=SelectionStrategy.CIRCUIT_BREAKER_AWARE,
                outcome=Outcome.CIRCUIT_BREAKER_FALLBACK,
            )
        elif action == FallbackAction.QUOTA_AWARE_SWITCH:
            result = self._quota_aware_switch(target, error_kind, strategy, context)
        elif action == FallbackAction.COST_OPTIMIZED_SWITCH:
            result = self._cost_optimized_switch(target, error_kind, strategy, context)
        elif action == FallbackAction.PERFORMANCE_OPTIMIZED_SWITCH:
            result = self._switch_provider(
                target, error_kind, strategy, context,
                selection=SelectionStrategy.PERFORMANCE_BASED,
                outcome=Outcome.PERFORMANCE_OPTIMIZED_SWITCH,
            )
        elif action == FallbackAction.WAIT_AND_RETRY:
            wait = context.get("retry_after")
            wait_time = float(wait) if wait is not None else float(strategy.wait_time or 0.0)
            result = self._result(
                target, error_kind, strategy,
                success=True,
                action=Outcome.WAIT_AND_RETRY,
                reason=f"Waiting {wait_time:g}s before retrying the same target",
                wait_time=wait_time,
            )
        elif action == FallbackAction.ESCALATE:
            result = self._result(
                target, error_kind, strategy,
                success=False,
                action=Outcome.ESCALATED,
                reason=f"{error_kind.value} requires manual intervention",
                requires_manual_intervention=True,
            )
        else:
            result = self._result(
                target, error_kind, strategy,
                success=False,
                action=Outcome.ABORTED,
                reason="Fallback aborted by strategy",
            )

        if result.success and result.new_provider is not None:
            self._record_switch(target, strategy)
        return result

    def publish(self, result: FallbackResult) -> None:
        """Append to history, log and forward to the metrics sink."""
        self._history.append(result)
        log = logger.bind(
            provider=result.target.provider,
            model=result.target.model,
            error_kind=result.error_kind.value,
            strategy=result.strategy,
            action=result.action.value,
        )
        if result.success:
            log.info(
                "fallback_switch" if result.new_provider else "fallback_wait",
                new_provider=result.new_provider,
                new_model=result.new_model,
                wait_time=result.wait_time,
            )
        elif result.action == Outcome.NO_PROVIDERS_AVAILABLE:
            log.warning("fallback_no_providers", reason=result.reason)
        elif result.action == Outcome.SWITCH_COOLDOWN_ACTIVE:
            log.info("fallback_cooldown_active", cooldown_remaining=result.cooldown_remaining)
        elif result.requires_manual_intervention:
            log.error("fallback_escalated", reason=result.reason)
        else:
            log.warning("fallback_failed", reason=result.reason)

        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.FALLBACK,
                provider=result.target.provider,
                model=result.target.model,
                timestamp=result.timestamp,
                data={
                    "error_kind": result.error_kind.value,
                    "action": result.action.value,
                    "strategy": result.strategy,
                    "success": result.success,
                    "new_provider": result.new_provider,
                    "new_model": result.new_model,
                },
            )
        )

    # ── Candidates ───────────────────────────────────────────
    def available_providers(self, target: TargetKey, error_kind: ErrorKind | str | None = None) -> list[str]:
        kind = _as_kind(error_kind) if error_kind is not None else None
        return [
            p for p in self._catalog.providers()
            if p != target.provider
            and not self.is_exhausted(TargetKey(p), kind)
            and self._breaker.is_available(TargetKey(p))
        ]

    def available_models(self, target: TargetKey, error_kind: ErrorKind | str | None = None) -> list[str]:
        kind = _as_kind(error_kind) if error_kind is not None else None
        return self._models_of(target.provider, kind, exclude=target.model)

    # ── Exhaustion ledger ────────────────────────────────────
    def mark_exhausted(self, target: TargetKey, error_kind: ErrorKind) -> None:
        """Mark the target, and its provider, as a poor pick for ``error_kind``."""
        now = self._clock.now()
        for key in {target, target.provider_level()}:
            with self._stripes.for_key(key):
                self._exhausted.setdefault(key, {})[error_kind] = now

    def is_exhausted(self, target: TargetKey, error_kind: ErrorKind | str | None = None) -> bool:
        now = self._clock.now()
        with self._stripes.for_key(target):
            marks = self._exhausted.get(target)
            if not marks:
                return False
            if self._exhaustion_ttl is not None:
                for kind in [k for k, ts in marks.items() if now - ts >= self._exhaustion_ttl]:
                    del marks[kind]
            if error_kind is None:
                return bool(marks)
            return _as_kind(error_kind) in marks

    def reset_exhaustion(
        self, target: TargetKey | None = None, error_kind: ErrorKind | str | None = None
    ) -> None:
        if target is None:
            for key in list(self._exhausted) + list(self._attempts):
                self.reset_exhaustion(key, error_kind)
            if error_kind is None:
                self._round_robin.reset()
            return
        with self._stripes.for_key(target):
            if error_kind is None:
                self._exhausted.pop(target, None)
                self._attempts.pop(target, None)
            else:
                kind = _as_kind(error_kind)
                self._exhausted.get(target, {}).pop(kind, None)
                self._attempts.get(target, {}).pop(kind, None)
        logger.info(
            "fallback_exhaustion_reset",
            provider=target.provider,
            model=target.model,
            error_kind=_as_kind(error_kind).value if error_kind is not None else None,
        )

    def reset_attempts(self, target: TargetKey) -> None:
        """Target succeeded: its fallback attempt counts start over."""
        with self._stripes.for_key(target):
            self._attempts.pop(target, None)

    # ── Cooldowns ────────────────────────────────────────────
    def cooldown_remaining(self, target: TargetKey, strategy: FallbackStrategy) -> float:
        if strategy.cooldown_period <= 0:
            return 0.0
        with self._stripes.for_key(target):
            last = self._last_switch.get(target, {}).get(strategy.name)
        if last is None:
            return 0.0
        return max(0.0, last + strategy.cooldown_period - self._clock.now())

    # ── History & status ─────────────────────────────────────
    def history(self, start: float | None = None, end: float | None = None) -> list[FallbackResult]:
        return self._history.query(start, end)

    def clear_history(self) -> None:
        self._history.clear()

    def status(self) -> dict[str, Any]:
        exhausted: dict[str, list[str]] = {}
        for key in list(self._exhausted):
            kinds = [k.value for k in ErrorKind if self.is_exhausted(key, k)]
            if kinds:
                exhausted[str(key)] = kinds
        attempts = {
            str(key): {k.value: n for k, n in counts.items()}
            for key, counts in list(self._attempts.items())
            if counts
        }
        return {
            "exhausted": exhausted,
            "fallback_attempts": attempts,
            "strategies": sorted(self._strategies),
            "circuit_breakers": self._breaker.statistics(),
        }

    # ── Action implementations ───────────────────────────────
    def _switch_provider(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any],
        *,
        selection: SelectionStrategy | str | None = None,
        outcome: Outcome = Outcome.PROVIDER_SWITCH,
    ) -> FallbackResult:
        candidates = self.available_providers(target, kind)
        if not candidates:
            return self._result(
                target, kind, strategy,
                success=False,
                action=Outcome.NO_PROVIDERS_AVAILABLE,
                reason="No available providers for fallback",
            )
        selection = selection or strategy.selection_strategy
        chosen = select(
            selection,
            candidates,
            self._provider_snapshot(candidates),
            round_robin=self._round_robin,
            scope=context.get("scope", ("providers", kind.value)),
        )
        if chosen is None:
            # Only circuit-breaker-aware selection can drop every candidate.
            return self._result(
                target, kind, strategy,
                success=False,
                action=Outcome.NO_PROVIDERS_AVAILABLE,
                reason="No healthy providers for fallback",
            )
        new_model = None
        if target.model is not None:
            models = self._models_of(chosen, kind)
            new_model = select(
                selection,
                models,
                self._model_snapshot(chosen, models),
                round_robin=self._round_robin,
                scope=("models", chosen, kind.value),
            )
        return self._result(
            target, kind, strategy,
            success=True,
            action=outcome,
            new_provider=chosen,
            new_model=new_model,
            reason=f"Switching from {target} to {chosen} after {kind.value}",
        )

    def _switch_model(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any],
        *,
        fall_through: bool,
    ) -> FallbackResult:
        candidates = self.available_models(target, kind)
        if not candidates:
            if fall_through:
                return self._switch_provider(target, kind, strategy, context)
            return self._result(
                target, kind, strategy,
                success=False,
                action=Outcome.NO_PROVIDERS_AVAILABLE,
                reason=f"No alternative models for {target.provider}",
            )
        chosen = select(
            strategy.selection_strategy,
            candidates,
            self._model_snapshot(target.provider, candidates),
            round_robin=self._round_robin,
            scope=context.get("scope", ("models", target.provider, kind.value)),
        )
        if chosen is None:
            if fall_through:
                return self._switch_provider(target, kind, strategy, context)
            return self._result(
                target, kind, strategy,
                success=False,
                action=Outcome.NO_PROVIDERS_AVAILABLE,
                reason=f"No healthy models for {target.provider}",
            )
        return self._result(
            target, kind, strategy,
            success=True,
            action=Outcome.MODEL_SWITCH,
            new_provider=target.provider,
            new_model=chosen,
            reason=f"Switching {target.provider} to model {chosen} after {kind.value}",
        )

    def _switch_provider_model(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any],
    ) -> FallbackResult:
        model_result = self._switch_model(target, kind, strategy, context, fall_through=False)
        if model_result.success:
            return model_result
        provider_result = self._switch_provider(target, kind, strategy, context)
        if provider_result.success:
            return provider_result
        return self._result(
            target, kind, strategy,
            success=False,
            action=Outcome.PROVIDER_MODEL_SWITCH_FAILED,
            reason="Both model and provider switch failed",
            details={
                "model_result": model_result.action.value,
                "provider_result": provider_result.action.value,
            },
        )

    def _quota_aware_switch(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any],
    ) -> FallbackResult:
        best = self._quota.find_best_combination(self._combinations(target, kind))
        if best is None:
            # No candidate reported positive quota.
            return self._switch_provider(target, kind, strategy, context)
        entry = self._quota.entry(best)
        return self._result(
            target, kind, strategy,
            success=True,
            action=Outcome.QUOTA_AWARE_SWITCH,
            new_provider=best.provider,
            new_model=best.model,
            quota_remaining=entry.quota_remaining if entry else None,
            reason=f"Switching to {best}, the target with the most remaining quota",
        )

    def _cost_optimized_switch(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        context: Mapping[str, Any],
    ) -> FallbackResult:
        combos = [c for c in self._combinations(target, kind) if not c.is_provider_level]
        if not combos:
            result = self._switch_provider(target, kind, strategy, context, selection=SelectionStrategy.COST_BASED)
            result.action = Outcome.COST_OPTIMIZED_SWITCH if result.success else result.action
            return result
        # Index labels avoid collisions between "provider/model" renderings.
        labels = [str(i) for i in range(len(combos))]
        snapshot = SelectionSnapshot(
            tier_ranks={
                label: rank
                for label, combo in zip(labels, combos)
                if (rank := self._tier_rank(combo)) is not None
            }
        )
        chosen = combos[int(select(SelectionStrategy.COST_BASED, labels, snapshot) or 0)]
        return self._result(
            target, kind, strategy,
            success=True,
            action=Outcome.COST_OPTIMIZED_SWITCH,
            new_provider=chosen.provider,
            new_model=chosen.model,
            reason=f"Switching to {chosen}, the cheapest available tier",
        )

    # ── Snapshots ────────────────────────────────────────────
    def _models_of(self, provider: str, kind: ErrorKind | None, exclude: str | None = None) -> list[str]:
        return [
            m for m in self._catalog.models(provider)
            if m != exclude
            and not self.is_exhausted(TargetKey(provider, m), kind)
            and self._breaker.is_available(TargetKey(provider, m))
        ]

    def _combinations(self, target: TargetKey, kind: ErrorKind) -> list[TargetKey]:
        """Every other (provider, model) pair a rate-limited call could move to."""
        combos: list[TargetKey] = []
        available = set(self.available_providers(target, kind))
        for provider in self._catalog.providers():
            if provider == target.provider:
                if target.model is not None:
                    combos.extend(
                        TargetKey(provider, m)
                        for m in self._models_of(provider, kind, exclude=target.model)
                    )
                continue
            if provider not in available:
                continue
            combos.append(TargetKey(provider))
            combos.extend(TargetKey(provider, m) for m in self._models_of(provider, kind))
        return combos

    def _provider_snapshot(self, providers: list[str]) -> SelectionSnapshot:
        known_breakers = self._breaker.targets()
        known_health = self._health.targets()
        scores: dict[str, float] = {}
        loads: dict[str, int] = {}
        performance: dict[str, tuple[float, float]] = {}
        open_set: set[str] = set()
        quota: dict[str, int] = {}
        for p in providers:
            breaker_keys = [k for k in known_breakers if k.provider == p]
            if breaker_keys:
                scores[p] = sum(self._breaker.health_score(k) for k in breaker_keys) / len(breaker_keys)
            if self._breaker.is_open(TargetKey(p)):
                open_set.add(p)
            health_keys = [k for k in known_health if k.provider == p]
            if health_keys:
                loads[p] = sum(self._health.load(k) for k in health_keys)
                perf = [self._health.performance(k) for k in health_keys]
                latencies = [ms for _, ms in perf if ms > 0]
                performance[p] = (
                    sum(rate for rate, _ in perf) / len(perf),
                    sum(latencies) / len(latencies) if latencies else 0.0,
                )
            entry = self._quota.entry(TargetKey(p))
            if entry is not None and entry.quota_remaining is not None:
                quota[p] = entry.quota_remaining
        return SelectionSnapshot(
            health_scores=scores,
            loads=loads,
            performance=performance,
            open=frozenset(open_set),
            quota_remaining=quota,
        )

    def _model_snapshot(self, provider: str, models: list[str]) -> SelectionSnapshot:
        keys = {m: TargetKey(provider, m) for m in models}
        ranks = {m: rank for m, k in keys.items() if (rank := self._tier_rank(k)) is not None}
        quota = {}
        for m, k in keys.items():
            entry = self._quota.entry(k)
            if entry is not None and entry.quota_remaining is not None:
                quota[m] = entry.quota_remaining
        return SelectionSnapshot(
            health_scores={m: self._breaker.health_score(k) for m, k in keys.items()},
            loads={m: self._health.load(k) for m, k in keys.items()},
            performance={m: self._health.performance(k) for m, k in keys.items()},
            open=frozenset(m for m, k in keys.items() if self._breaker.is_open(k)),
            tier_ranks=ranks,
            quota_remaining=quota,
        )

    # ── Internals ────────────────────────────────────────────
    def _count_attempt(self, target: TargetKey, kind: ErrorKind) -> int:
        with self._stripes.for_key(target):
            counts = self._attempts.setdefault(target, {})
            counts[kind] = counts.get(kind, 0) + 1
            return counts[kind]

    def _record_switch(self, target: TargetKey, strategy: FallbackStrategy) -> None:
        with self._stripes.for_key(target):
            self._last_switch.setdefault(target, {})[strategy.name] = self._clock.now()

    def _result(
        self,
        target: TargetKey,
        kind: ErrorKind,
        strategy: FallbackStrategy,
        *,
        success: bool,
        action: Outcome,
        **fields: Any,
    ) -> FallbackResult:
        return FallbackResult(
            success=success,
            action=action,
            target=target,
            error_kind=kind,
            strategy=strategy.name,
            timestamp=self._clock.now(),
            **fields,
        )


def _as_kind(error_kind: ErrorKind | str) -> ErrorKind:
    try:
        return ErrorKind(error_kind)
    except ValueError:
        return ErrorKind.DEFAULT

