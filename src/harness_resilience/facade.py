"""Resilience facade: the call-lifecycle entry point for the calling layer.

Composes the breaker engine, classifier, retry engine, fallback orchestrator,
quota tracker and rate-limit recovery into one object.  One shared instance
of every component is injected into each consumer so all of them see the
same state for a target.

Usage::

    resilience = ResilienceFacade(StaticProviderCatalog({...}))

    permit = resilience.before_call("anthropic", "claude-sonnet")
    if permit.allowed:
        try:
            result = call_provider(...)
        except Exception as exc:
            decision = resilience.after_failure("anthropic", "claude-sonnet", exc)
        else:
            resilience.after_success("anthropic", "claude-sonnet", {"latency_ms": 812})

The facade never sleeps: ``decision.delay`` and ``decision.wait_time`` are
advisory values for the caller.
"""

from __future__ import annotations

import random
from collections.abc import Mapping
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.classifier import ErrorClassifier
from harness_resilience.clock import Clock, SystemClock
from harness_resilience.config import BreakerConfig, ResilienceConfig
from harness_resilience.fallback import FallbackOrchestrator
from harness_resilience.health import TargetHealthTracker
from harness_resilience.history import EventLog
from harness_resilience.observability import events
from harness_resilience.observability.events import ResilienceEvent
from harness_resilience.ports import MetricsSink, NullMetricsSink, ProviderCatalog
from harness_resilience.quota import QuotaTracker, RateLimitInfo
from harness_resilience.rate_limit import RateLimitRecovery
from harness_resilience.retry import RetryPolicyEngine
from harness_resilience.types import (
    CallPermit,
    CircuitState,
    ClassifiedError,
    DecisionAction,
    ErrorKind,
    FallbackResult,
    Outcome,
    ResilienceDecision,
    TargetHealth,
    TargetKey,
    TargetStatus,
)

logger = structlog.get_logger(__name__)

_RATE_LIMIT_FIELDS = ("quota_remaining", "quota_limit", "reset_time", "retry_after")


class CallMetrics(BaseModel):
    """What the calling layer observed on a successful call."""

    model_config = ConfigDict(extra="ignore")

    latency_ms: float = Field(0.0, ge=0)
    tokens: int = Field(0, ge=0)
    quota_remaining: int | None = None
    quota_limit: int | None = Field(None, ge=0)
    reset_time: float | None = None
    headers: dict[str, str] = Field(default_factory=dict)

    def rate_limit_info(self, now: float) -> RateLimitInfo | None:
        """Quota data from explicit fields, falling back to response headers."""
        info = RateLimitInfo.from_headers(self.headers, now) if self.headers else RateLimitInfo()
        explicit = {
            k: getattr(self, k) for k in ("quota_remaining", "quota_limit", "reset_time")
            if getattr(self, k) is not None
        }
        if explicit:
            info = info.model_copy(update=explicit)
        if info.quota_remaining is None and info.quota_limit is None and info.reset_time is None:
            return None
        return info


class ResilienceFacade:
    """Autonomous resilience decisions for every outbound provider call."""

    def __init__(
        self,
        catalog: ProviderCatalog,
        config: ResilienceConfig | Mapping[str, Any] | None = None,
        *,
        clock: Clock | None = None,
        metrics: MetricsSink | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if config is None or isinstance(config, ResilienceConfig):
            self._config = config or ResilienceConfig()
        else:
            self._config = ResilienceConfig.from_mapping(config)
        cfg = self._config
        self._catalog = catalog
        self._clock = clock or SystemClock()
        self._metrics = metrics or NullMetricsSink()

        self._breaker = CircuitBreakerEngine(
            cfg.breaker,
            clock=self._clock,
            metrics=self._metrics,
            history_limit=cfg.history_limit,
            history_window_seconds=cfg.history_window_seconds,
        )
        self._classifier = ErrorClassifier(clock=self._clock)
        self._health = TargetHealthTracker(clock=self._clock, window_seconds=cfg.health_window_seconds)
        self._quota = QuotaTracker(
            clock=self._clock,
            tier_limits=cfg.tier_limits,
            tier_of=self._tier_name,
            usage_window_seconds=cfg.rate_limit.usage_window_seconds,
            default_cooldown_seconds=cfg.rate_limit.default_wait_seconds,
            history_limit=cfg.history_limit,
            history_window_seconds=cfg.history_window_seconds,
        )
        self._retry = RetryPolicyEngine(
            self._breaker,
            strategies=cfg.retry_strategies,
            clock=self._clock,
            metrics=self._metrics,
            rng=rng,
        )
        self._fallback = FallbackOrchestrator(
            catalog,
            self._breaker,
            health=self._health,
            quota=self._quota,
            strategies=cfg.fallback_strategies,
            tier_rank=self._tier_rank,
            exhaustion_ttl_seconds=cfg.exhaustion_ttl_seconds,
            clock=self._clock,
            metrics=self._metrics,
            history_limit=cfg.history_limit,
            history_window_seconds=cfg.history_window_seconds,
        )
        self._rate_limit = RateLimitRecovery(
            self._fallback,
            self._quota,
            settings=cfg.rate_limit,
            clock=self._clock,
            metrics=self._metrics,
            history_limit=cfg.history_limit,
            history_window_seconds=cfg.history_window_seconds,
        )
        self._errors: EventLog[ClassifiedError] = EventLog(
            limit=cfg.history_limit, window_seconds=cfg.history_window_seconds, clock=self._clock
        )

    # ── Components ───────────────────────────────────────────
    @property
    def config(self) -> ResilienceConfig:
        return self._config

    @property
    def breaker(self) -> CircuitBreakerEngine:
        return self._breaker

    @property
    def classifier(self) -> ErrorClassifier:
        return self._classifier

    @property
    def retry(self) -> RetryPolicyEngine:
        return self._retry

    @property
    def fallback(self) -> FallbackOrchestrator:
        return self._fallback

    @property
    def quota(self) -> QuotaTracker:
        return self._quota

    @property
    def rate_limit(self) -> RateLimitRecovery:
        return self._rate_limit

    # ── Call lifecycle ───────────────────────────────────────
    def before_call(
        self, provider: str, model: str | None = None, *, estimated_tokens: int = 0
    ) -> CallPermit:
        """Gate a call: quota, tier budget, provider breaker, then model breaker."""
        key = TargetKey.of(provider, model)
        provider_key = key.provider_level()

        if self._quota.is_exhausted(key) or (
            not key.is_provider_level and self._quota.is_exhausted(provider_key)
        ):
            return self._reject(key, "quota_exhausted")
        if not self._quota.can_accept(key, estimated_tokens):
            return self._reject(key, "tier_budget_exhausted")
        if not self._breaker.can_execute(provider_key):
            return self._reject(key, "provider_circuit_open")
        if not key.is_provider_level and not self._breaker.can_execute(key):
            self._breaker.release(provider_key)
            return self._reject(key, "model_circuit_open")

        self._health.call_started(key)
        return CallPermit(allowed=True, reason="ok", target=key)

    def after_success(
        self,
        provider: str,
        model: str | None = None,
        metrics: CallMetrics | Mapping[str, Any] | None = None,
    ) -> None:
        key = TargetKey.of(provider, model)
        observed = metrics if isinstance(metrics, CallMetrics) else CallMetrics.model_validate(dict(metrics or {}))
        now = self._clock.now()

        self._breaker.record_success(key)
        if self._probing_provider(key):
            self._breaker.record_success(key.provider_level())
        self._health.record_success(key, observed.latency_ms)

        info = observed.rate_limit_info(now)
        if info is not None:
            self._quota.record_observation(key, info)
        else:
            self._quota.mark_recovered(key)
        self._quota.record_usage(key, observed.tokens)

        self._retry.reset(key)
        self._fallback.reset_attempts(key)

        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.CALL_SUCCESS,
                provider=key.provider,
                model=key.model,
                timestamp=now,
                data={"latency_ms": observed.latency_ms, "tokens": observed.tokens},
            )
        )

    def after_failure(
        self,
        provider: str,
        model: str | None,
        error: Any,
        context: Mapping[str, Any] | None = None,
    ) -> ResilienceDecision:
        """Classify the failure and decide: retry, switch, wait, escalate or abort."""
        key = TargetKey.of(provider, model)
        ctx = {**(context or {}), "provider": key.provider, "model": key.model}
        classified = self._classifier.classify(error, ctx)
        kind = classified.error_kind

        self._breaker.record_failure(key, error=classified.message)
        if self._probing_provider(key):
            self._breaker.record_failure(key.provider_level(), error=classified.message)
        self._health.record_failure(key, classified.message, float(ctx.get("latency_ms") or 0.0))
        self._errors.append(classified)
        self._metrics.record_event(
            ResilienceEvent(
                event_type=events.CALL_FAILURE,
                provider=key.provider,
                model=key.model,
                timestamp=classified.timestamp,
                data={"error_kind": kind.value, "status_code": classified.status_code},
            )
        )
        logger.info(
            "call_failed",
            provider=key.provider,
            model=key.model,
            error_kind=kind.value,
            status_code=classified.status_code,
            error=classified.message,
        )

        if kind == ErrorKind.RATE_LIMIT:
            info = self._rate_limit_info(error, ctx)
            return self._decide(key, kind, self._rate_limit.handle_rate_limit(key, info, ctx))

        strategy = self._retry.strategy_for(kind, ctx.get("retry_overrides"))
        if self._retry.should_retry(key, kind, strategy):
            retried = self._retry.execute_retry(key, kind, strategy)
            if retried.action == Outcome.RETRIED:
                return ResilienceDecision(
                    action=DecisionAction.RETRY,
                    error_kind=kind,
                    reason=f"Retry {retried.retry_count}/{strategy.max_retries} after {kind.value}",
                    target=key,
                    delay=retried.delay,
                    retry_count=retried.retry_count,
                    outcome=retried.action,
                    detail=retried,
                )

        record = self._retry.retry_status(key).get(kind.value)
        retry_count = record.retry_count if record else 0
        ctx["retry_count"] = retry_count
        return self._decide(key, kind, self._fallback.handle_exhaustion(key, kind, ctx), retry_count)

    def abandon_call(self, provider: str, model: str | None = None) -> None:
        """The call was permitted but will never be reported; free its slots."""
        key = TargetKey.of(provider, model)
        self._health.call_finished(key)
        self._breaker.release(key)
        if not key.is_provider_level:
            self._breaker.release(key.provider_level())

    # ── Admin controls ───────────────────────────────────────
    def force_open(self, provider: str, model: str | None = None, reason: str = "manual_open") -> None:
        self._breaker.open(provider, model, reason=reason)

    def force_close(self, provider: str, model: str | None = None, reason: str = "manual_close") -> None:
        self._breaker.close(provider, model, reason=reason)

    def reset_breaker(self, provider: str | None = None, model: str | None = None) -> None:
        if provider is None:
            self._breaker.reset_all()
        else:
            self._breaker.reset(provider, model)

    def configure_breaker(self, provider: str, model: str | None = None, **overrides: Any) -> BreakerConfig:
        return self._breaker.configure(provider, model, **overrides)

    def reset_exhaustion(
        self,
        provider: str | None = None,
        model: str | None = None,
        error_kind: ErrorKind | str | None = None,
    ) -> None:
        target = TargetKey.of(provider, model) if provider is not None else None
        self._fallback.reset_exhaustion(target, error_kind)

    def reset_quotas(self, provider: str | None = None, model: str | None = None) -> None:
        if provider is None:
            self._quota.reset_all()
        else:
            self._quota.reset(TargetKey.of(provider, model))

    def reset_retries(self, provider: str | None = None, model: str | None = None) -> None:
        if provider is None:
            self._retry.reset_all()
        else:
            self._retry.reset(TargetKey.of(provider, model))

    def configure_strategies(
        self,
        *,
        retry: Mapping[Any, Any] | None = None,
        fallback: Mapping[Any, Any] | None = None,
        rate_limit: Mapping[str, Any] | None = None,
    ) -> None:
        """Replace strategy tables wholesale; each is validated before it is swapped in."""
        if retry is not None:
            self._retry.configure_strategies(retry)
        if fallback is not None:
            self._fallback.configure_strategies(fallback)
        if rate_limit is not None:
            self._rate_limit.configure_strategies(rate_limit)

    # ── Health observation ───────────────────────────────────
    def health(self, provider: str, model: str | None = None) -> TargetHealth:
        key = TargetKey.of(provider, model)
        health = self._health.snapshot(key)
        # Enrich with circuit + quota state
        status = self._breaker.status(key)
        health.circuit_state = status.state.value
        health.health_score = status.health_score
        if status.state == CircuitState.OPEN:
            health.status = TargetStatus.CIRCUIT_OPEN
        entry = self._quota.entry(key)
        if entry is not None:
            health.quota_remaining = entry.quota_remaining
        health.quota_exhausted = self._quota.is_exhausted(key)
        return health

    def status(self) -> dict[str, Any]:
        return {
            "circuit_breakers": self._breaker.statistics(),
            "fallback": self._fallback.status(),
            "rate_limits": self._rate_limit.status(),
            "targets": [
                {
                    "target": str(key),
                    "state": self._breaker.state(key).value,
                    "health_score": self._breaker.health_score(key),
                }
                for key in self._breaker.targets()
            ],
        }

    def error_history(self, start: float | None = None, end: float | None = None) -> list[ClassifiedError]:
        return self._errors.query(start, end)

    def clear_error_history(self) -> None:
        self._errors.clear()

    # ── Internals ────────────────────────────────────────────
    def _tier_name(self, key: TargetKey) -> str | None:
        """The one tier lookup: catalog tiers first, then ``model_tiers`` from config."""
        if key.model is None:
            return None
        return self._catalog.tier_of(key.provider, key.model) or self._config.model_tiers.get(key.model)

    def _tier_rank(self, key: TargetKey) -> int | None:
        tier = self._tier_name(key)
        limits = self._config.tier_limits.get(tier) if tier else None
        return limits.rank if limits else None

    def _reject(self, key: TargetKey, reason: str) -> CallPermit:
        logger.debug("call_rejected", provider=key.provider, model=key.model, reason=reason)
        return CallPermit(allowed=False, reason=reason, target=key)

    def _probing_provider(self, key: TargetKey) -> bool:
        """A model call made while its provider is half-open is the provider's probe."""
        return (
            not key.is_provider_level
            and self._breaker.state(key.provider_level()) == CircuitState.HALF_OPEN
        )

    def _rate_limit_info(self, error: Any, ctx: Mapping[str, Any]) -> RateLimitInfo:
        """Limit details from the error's response headers, overridden by context."""
        info = RateLimitInfo()
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
        if headers:
            try:
                info = RateLimitInfo.from_headers(headers, self._clock.now())
            except Exception:
                logger.debug("rate_limit_headers_unparsed", exc_info=True)
        explicit = ctx.get("rate_limit")
        if isinstance(explicit, RateLimitInfo):
            return explicit
        overrides = dict(explicit or {})
        overrides.update({k: ctx[k] for k in _RATE_LIMIT_FIELDS if ctx.get(k) is not None})
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None and "retry_after" not in overrides:
            overrides["retry_after"] = retry_after
        if overrides:
            info = RateLimitInfo.model_validate({**info.model_dump(), **overrides})
        return info

    def _decide(
        self, key: TargetKey, kind: ErrorKind, result: FallbackResult, retry_count: int = 0
    ) -> ResilienceDecision:
        if result.action == Outcome.WAIT_AND_RETRY:
            action, wait_time = DecisionAction.WAIT_AND_RETRY, result.wait_time
        elif result.success:
            action, wait_time = DecisionAction.SWITCH, None
        elif result.action == Outcome.SWITCH_COOLDOWN_ACTIVE:
            action, wait_time = DecisionAction.WAIT_AND_RETRY, result.cooldown_remaining
        elif result.action == Outcome.ABORTED:
            action, wait_time = DecisionAction.ABORT, None
        else:
            action, wait_time = DecisionAction.ESCALATE, None

        return ResilienceDecision(
            action=action,
            error_kind=kind,
            reason=result.reason,
            target=key,
            wait_time=wait_time,
            new_provider=result.new_provider,
            new_model=result.new_model,
            requires_manual_intervention=action == DecisionAction.ESCALATE,
            retry_count=retry_count,
            outcome=result.action,
            detail=result,
        )
