"""Resilience core for a multi-provider AI orchestration harness."""

from harness_resilience.backoff import compute_delay
from harness_resilience.catalog import StaticProviderCatalog
from harness_resilience.circuit_breaker import CircuitBreakerEngine
from harness_resilience.classifier import ErrorClassifier
from harness_resilience.clock import Clock, ManualClock, SystemClock
from harness_resilience.config import (
    BreakerConfig,
    FallbackStrategy,
    RateLimitSettings,
    ResilienceConfig,
    RetryStrategy,
    TierLimit,
    get_config,
    merge_strategy,
)
from harness_resilience.exceptions import ConfigurationError, ResilienceError
from harness_resilience.facade import CallMetrics, ResilienceFacade
from harness_resilience.fallback import FallbackOrchestrator
from harness_resilience.health import TargetHealthTracker
from harness_resilience.ports import MetricsSink, NullMetricsSink, ProviderCatalog
from harness_resilience.quota import QuotaTracker, RateLimitInfo
from harness_resilience.rate_limit import RateLimitRecovery
from harness_resilience.retry import RetryPolicyEngine
from harness_resilience.types import (
    BackoffAlgorithm,
    CallPermit,
    CircuitState,
    DecisionAction,
    ErrorKind,
    FallbackAction,
    FallbackResult,
    Outcome,
    ResilienceDecision,
    SelectionStrategy,
    TargetKey,
)

__all__ = [
    "BackoffAlgorithm",
    "BreakerConfig",
    "CallMetrics",
    "CallPermit",
    "CircuitBreakerEngine",
    "CircuitState",
    "Clock",
    "ConfigurationError",
    "DecisionAction",
    "ErrorClassifier",
    "ErrorKind",
    "FallbackAction",
    "FallbackOrchestrator",
    "FallbackResult",
    "FallbackStrategy",
    "ManualClock",
    "MetricsSink",
    "NullMetricsSink",
    "Outcome",
    "ProviderCatalog",
    "QuotaTracker",
    "RateLimitInfo",
    "RateLimitRecovery",
    "RateLimitSettings",
    "ResilienceConfig",
    "ResilienceDecision",
    "ResilienceError",
    "ResilienceFacade",
    "RetryPolicyEngine",
    "RetryStrategy",
    "SelectionStrategy",
    "StaticProviderCatalog",
    "SystemClock",
    "TargetHealthTracker",
    "TargetKey",
    "TierLimit",
    "compute_delay",
    "get_config",
    "merge_strategy",
]
