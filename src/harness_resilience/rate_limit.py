"""Rate-limit recovery: routing for ``rate_limit`` failures.

Layered on the fallback orchestrator: this module records the limit in the
quota ledger, picks a named switch strategy from the rate-limit table, and
hands the action to ``FallbackOrchestrator.dispatch``.

Strategy order:
    explicit ``switch_strategy`` → wait_and_retry (short ``retry_after``)
    → quota_aware (quota at zero) → cost_optimized → performance_optimized
    → provider switch → model switch → escalate
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from harness_resilience.clock import Clock, SystemClock
from harness_resilience.config import (
    DEFAULT_RATE_LIMIT_STRATEGIES,
    FallbackStrategy,
    RateLimitSettings,
    build_strategy_table,
    merge_strategy,
)
from harness_resilience.fallback import FallbackOrchestrator
from harness_resilience.history import EventLog
from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink
from harness_resilience.quota import QuotaTracker, RateLimitInfo
from harness_resilience.types import ErrorKind, FallbackAction, FallbackResult, Outcome, TargetKey

logger = structlog.get_logger(__name__)

# Cooldowns are tracked per strategy name; keep these apart from fallback names.
_COOLDOWN_PREFIX = "rate_limit:"


class RateLimitRecovery:
    def __init__(
        self,
        orchestrator: FallbackOrchestrator,
        quota: QuotaTracker,
        *,
        settings: RateLimitSettings | None = None,
        clock: Clock | None = None,
        metrics: MetricsSink | None = None,
        history_limit: int = 1000,
        history_window_seconds: float | None = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._quota = quota
        self._settings = settings or RateLimitSettings()
        self._strategies: dict[str, FallbackStrategy] = dict(self._settings.switch_strategies)
        self._clock = clock or SystemClock()
        self._metrics = metrics or NullMetricsSink()
        self._history: EventLog[FallbackResult] = EventLog(
            limit=history_limit, window_seconds=history_window_seconds, clock=self._clock
        )

    # ── Main entry-point ─────────────────────────────────────
    def handle_rate_limit(
        self,
        target: TargetKey,
        info: RateLimitInfo | Mapping[str, Any] | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> FallbackResult:
        context = dict(context or {})
        info = RateLimitInfo.coerce(info)
        self._quota.record_rate_limit(target, info)
        consecutive = self._quota.consecutive_limits(target)

        name = self.determine_strategy(target, info, context, consecutive=consecutive)
        strategy = self.strategy(name, context)

        if strategy.action == FallbackAction.WAIT_AND_RETRY:
            wait = info.retry_after
            if wait is None:
                wait = strategy.wait_time if strategy.wait_time is not None else self._settings.default_wait_seconds
            context["retry_after"] = wait
        else:
            self._orchestrator.mark_exhausted(target, ErrorKind.RATE_LIMIT)

        result = self._orchestrator.dispatch(target, ErrorKind.RATE_LIMIT, strategy, context)
        result.strategy = name
        if result.quota_remaining is None and result.action != Outcome.QUOTA_AWARE_SWITCH:
            result.quota_remaining = info.quota_remaining
        result.details.update(
            {"consecutive_rate_limits": consecutive, "retry_after": info.retry_after}
        )

        self._publish(result, name)
        return result

    def determine_strategy(
        self,
        target: TargetKey,
        info: RateLimitInfo,
        context: Mapping[str, Any] | None = None,
        *,
        consecutive: int = 1,
    ) -> str:
        """Name of the switch strategy for this rate limit."""
        context = context or {}
        explicit = context.get("switch_strategy")
        if explicit and str(explicit) in self._strategies:
            return str(explicit)

        if context.get("force_escalation"):
            return "escalate"
        if (
            info.retry_after is not None
            and info.retry_after < self._settings.temporary_threshold_seconds
            and consecutive <= self._settings.max_wait_attempts
        ):
            return "wait_and_retry"
        if info.quota_remaining is not None and info.quota_remaining <= 0:
            return "quota_aware"
        if context.get("cost_sensitive"):
            return "cost_optimized"
        if context.get("performance_critical"):
            return "performance_optimized"
        if self._orchestrator.available_providers(target, ErrorKind.RATE_LIMIT):
            return "immediate_provider_switch"
        if self._orchestrator.available_models(target, ErrorKind.RATE_LIMIT):
            return "immediate_model_switch"
        return "escalate"

    def strategy(self, name: str, context: Mapping[str, Any] | None = None) -> FallbackStrategy:
        """Effective strategy for ``name`` with caller overrides merged on top."""
        context = context or {}
        base = self._strategies.get(name) or self._strategies["default"]
        overrides = {
            k: context[k] for k in ("priority", "cooldown_period", "selection_strategy") if k in context
        }
        effective = merge_strategy(base, overrides)
        return effective.model_copy(update={"name": f"{_COOLDOWN_PREFIX}{base.name}"})

    def configure_strategies(self, table: Mapping[str, Any]) -> None:
        """Replace the rate-limit strategy table wholesale.

        Raises:
            ConfigurationError: an entry fails validation; the table is unchanged.
        """
        self._strategies = build_strategy_table(table, FallbackStrategy, DEFAULT_RATE_LIMIT_STRATEGIES)
        logger.info("rate_limit_strategies_configured", strategies=sorted(self._strategies))

    @property
    def strategies(self) -> dict[str, FallbackStrategy]:
        return dict(self._strategies)

    # ── History & status ─────────────────────────────────────
    def history(self, start: float | None = None, end: float | None = None) -> list[FallbackResult]:
        return self._history.query(start, end)

    def clear_history(self) -> None:
        self._history.clear()

    def status(self) -> dict[str, Any]:
        now = self._clock.now()
        limited = {}
        for target in self._quota.targets():
            entry = self._quota.entry(target)
            if entry is None:
                continue
            limited[str(target)] = {
                "exhausted": self._quota.is_exhausted(target),
                "quota_remaining": entry.quota_remaining,
                "quota_limit": entry.quota_limit,
                "reset_in": max(0.0, entry.reset_time - now) if entry.reset_time is not None else None,
                "consecutive_rate_limits": self._quota.consecutive_limits(target),
            }
        return {"targets": limited, "strategies": sorted(self._strategies)}

    # ── Internals ────────────────────────────────────────────
    def _publish(self, result: FallbackResult, name: str) -> None:
        self._history.append(result)
        log = logger.bind(
            provider=result.target.provider,
            model=result.target.model,
            strategy=name,
            action=result.action.value,
        )
        if result.action == Outcome.WAIT_AND_RETRY:
            log.info("rate_limit_wait", wait_time=result.wait_time)
        elif result.success:
            log.info("rate_limit_switch", new_provider=result.new_provider, new_model=result.new_model)
        elif result.requires_manual_intervention:
            log.error("rate_limit_escalated", reason=result.reason)
        else:
            log.warning("rate_limit_unresolved", reason=result.reason)

        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.RATE_LIMIT,
                provider=result.target.provider,
                model=result.target.model,
                timestamp=result.timestamp,
                data={
                    "strategy": name,
                    "action": result.action.value,
                    "success": result.success,
                    "wait_time": result.wait_time,
                    "new_provider": result.new_provider,
                    "new_model": result.new_model,
                },
            )
        )
