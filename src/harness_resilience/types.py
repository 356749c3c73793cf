"""Core types for the resilience orchestrator."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any


class ErrorKind(str, enum.Enum):
    """Canonical failure taxonomy produced by the classifier."""

    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    PERMISSION_DENIED = "permission_denied"
    DEFAULT = "default"


# Retrying these against the same target cannot succeed.
NEVER_RETRIED: frozenset[ErrorKind] = frozenset(
    {ErrorKind.RATE_LIMIT, ErrorKind.AUTHENTICATION}
)


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class TargetStatus(str, enum.Enum):
    """Coarse health of a provider or model."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    CIRCUIT_OPEN = "circuit_open"


class BackoffAlgorithm(str, enum.Enum):
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    FIXED = "fixed"
    NONE = "none"


class SelectionStrategy(str, enum.Enum):
    """How a replacement target is picked among candidates."""

    ROUND_ROBIN = "round_robin"
    HEALTH_BASED = "health_based"
    LOAD_BALANCED = "load_balanced"
    PERFORMANCE_BASED = "performance_based"
    CIRCUIT_BREAKER_AWARE = "circuit_breaker_aware"
    QUOTA_BASED = "quota_based"
    COST_BASED = "cost_based"
    NONE = "none"


class FallbackAction(str, enum.Enum):
    SWITCH_PROVIDER = "switch_provider"
    SWITCH_MODEL = "switch_model"
    SWITCH_PROVIDER_MODEL = "switch_provider_model"
    LOAD_BALANCE = "load_balance"
    CIRCUIT_BREAKER_AWARE = "circuit_breaker_aware"
    ESCALATE = "escalate"
    ABORT = "abort"
    # Rate-limit routing only
    QUOTA_AWARE_SWITCH = "quota_aware_switch"
    COST_OPTIMIZED_SWITCH = "cost_optimized_switch"
    PERFORMANCE_OPTIMIZED_SWITCH = "performance_optimized_switch"
    WAIT_AND_RETRY = "wait_and_retry"


class Outcome(str, enum.Enum):
    """Tag carried by every retry / fallback / rate-limit result."""

    RETRIED = "retried"
    EXHAUSTED_RETRIES = "exhausted_retries"
    PROVIDER_SWITCH = "provider_switch"
    MODEL_SWITCH = "model_switch"
    LOAD_BALANCED_SWITCH = "load_balanced_switch"
    CIRCUIT_BREAKER_FALLBACK = "circuit_breaker_fallback"
    QUOTA_AWARE_SWITCH = "quota_aware_switch"
    COST_OPTIMIZED_SWITCH = "cost_optimized_switch"
    PERFORMANCE_OPTIMIZED_SWITCH = "performance_optimized_switch"
    WAIT_AND_RETRY = "wait_and_retry"
    NO_PROVIDERS_AVAILABLE = "no_providers_available"
    PROVIDER_MODEL_SWITCH_FAILED = "provider_model_switch_failed"
    SWITCH_COOLDOWN_ACTIVE = "switch_cooldown_active"
    ESCALATED = "escalated"
    ABORTED = "aborted"


class DecisionAction(str, enum.Enum):
    """What the calling layer should do next."""

    RETRY = "retry"
    SWITCH = "switch"
    WAIT_AND_RETRY = "wait_and_retry"
    ESCALATE = "escalate"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class TargetKey:
    """A provider, optionally narrowed to one of its models.

    ``model=None`` is the provider-wide key.  Kept as a typed composite so
    provider or model names containing separators can never collide.
    """

    provider: str
    model: str | None = None

    @classmethod
    def of(cls, provider: str | TargetKey, model: str | None = None) -> TargetKey:
        if isinstance(provider, TargetKey):
            return provider
        return cls(provider, model)

    @property
    def is_provider_level(self) -> bool:
        return self.model is None

    def provider_level(self) -> TargetKey:
        return self if self.model is None else TargetKey(self.provider)

    def __str__(self) -> str:
        return self.provider if self.model is None else f"{self.provider}/{self.model}"


@dataclass(frozen=True, slots=True)
class ClassifiedError:
    error_kind: ErrorKind
    message: str
    timestamp: float
    provider: str | None = None
    model: str | None = None
    status_code: int | None = None
    error_type: str | None = None


@dataclass(frozen=True, slots=True)
class TransitionRecord:
    """One breaker state change, automatic or manual."""

    timestamp: float
    target: TargetKey
    from_state: CircuitState | None
    to_state: CircuitState
    reason: str


@dataclass
class CircuitStatus:
    """Read-only snapshot of a breaker."""

    target: TargetKey
    state: CircuitState
    failure_count: int
    success_count: int
    request_count: int
    last_failure_time: float | None
    opened_at: float | None
    failure_threshold: int
    success_threshold: int
    timeout_seconds: float
    failure_rate_threshold: float
    minimum_requests: int
    half_open_max_requests: int
    next_attempt_time: float | None
    health_score: float


@dataclass
class RetryRecord:
    retry_count: int = 0
    first_seen: float | None = None
    last_attempt: float | None = None


@dataclass(frozen=True, slots=True)
class RetryResult:
    action: Outcome
    retry_count: int
    delay: float
    strategy: str
    error_kind: ErrorKind
    success: bool = False


@dataclass
class FallbackResult:
    """Tagged outcome of a fallback or rate-limit routing decision."""

    success: bool
    action: Outcome
    target: TargetKey
    error_kind: ErrorKind
    strategy: str | None = None
    new_provider: str | None = None
    new_model: str | None = None
    reason: str = ""
    requires_manual_intervention: bool = False
    cooldown_remaining: float | None = None
    wait_time: float | None = None
    quota_remaining: int | None = None
    timestamp: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def new_target(self) -> TargetKey | None:
        if self.new_provider is None:
            return None
        return TargetKey(self.new_provider, self.new_model)


@dataclass(frozen=True, slots=True)
class CallPermit:
    allowed: bool
    reason: str
    target: TargetKey


@dataclass
class ResilienceDecision:
    """Answer to ``after_failure``: what the caller should do next."""

    action: DecisionAction
    error_kind: ErrorKind
    reason: str
    target: TargetKey
    delay: float | None = None
    wait_time: float | None = None
    new_provider: str | None = None
    new_model: str | None = None
    requires_manual_intervention: bool = False
    retry_count: int = 0
    outcome: Outcome | None = None
    detail: FallbackResult | RetryResult | None = None

    @property
    def should_retry(self) -> bool:
        return self.action in (DecisionAction.RETRY, DecisionAction.WAIT_AND_RETRY)


@dataclass
class TargetHealth:
    """Read-only health snapshot of a provider or model."""

    target: TargetKey
    status: TargetStatus = TargetStatus.HEALTHY
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    success_rate: float = 1.0
    latency_avg_ms: float = 0.0
    latency_p50_ms: float = 0.0
    latency_p95_ms: float = 0.0
    in_flight: int = 0
    recent_requests: int = 0
    last_error: str | None = None
    last_error_time: float | None = None
    circuit_state: str = "closed"
    health_score: float = 1.0
    quota_remaining: int | None = None
    quota_exhausted: bool = False
