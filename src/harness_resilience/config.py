"""Resilience configuration: validated, immutable, in-memory.

The surrounding harness owns persistence and hands the core an
already-loaded mapping; everything here is validated with pydantic and
frozen so a single call can never mutate the shared tables.  Caller
overrides go through ``merge_strategy``, which returns a new value.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from harness_resilience.exceptions import ConfigurationError
from harness_resilience.types import (
    BackoffAlgorithm,
    ErrorKind,
    FallbackAction,
    SelectionStrategy,
)


class BreakerConfig(BaseModel):
    """Circuit-breaker thresholds for one target (or the engine default)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    failure_threshold: int = Field(5, gt=0)
    success_threshold: int = Field(3, gt=0)
    timeout_seconds: float = Field(60.0, ge=0)
    failure_rate_threshold: float = Field(0.5, ge=0, le=1)  # 0 disables the rate trigger
    minimum_requests: int = Field(10, ge=0)
    half_open_max_requests: int = Field(1, gt=0)
    window_size: int = Field(100, gt=0)


class RetryStrategy(BaseModel):
    """Retry-in-place policy for one error kind."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = "default"
    max_retries: int = Field(2, ge=0)
    backoff: BackoffAlgorithm = BackoffAlgorithm.EXPONENTIAL
    base_delay: float = Field(1.0, ge=0)
    max_delay: float = Field(20.0, ge=0)
    jitter: bool = True


class FallbackStrategy(BaseModel):
    """Routing policy applied once retrying in place is no longer an option."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = "default"
    action: FallbackAction | str = FallbackAction.SWITCH_PROVIDER
    priority: str = "medium"
    selection_strategy: SelectionStrategy | str = SelectionStrategy.ROUND_ROBIN
    cooldown_period: float = Field(0.0, ge=0)
    max_attempts: int = Field(0, ge=0)  # 0 = unlimited
    wait_time: float | None = Field(None, ge=0)

    # Unknown names are kept as plain strings for forward compatibility.
    @field_validator("action", mode="after")
    @classmethod
    def _coerce_action(cls, v: Any) -> FallbackAction | str:
        try:
            return FallbackAction(v)
        except ValueError:
            return str(v)

    @field_validator("selection_strategy", mode="after")
    @classmethod
    def _coerce_selection(cls, v: Any) -> SelectionStrategy | str:
        try:
            return SelectionStrategy(v)
        except ValueError:
            return str(v)


class TierLimit(BaseModel):
    """Budget and cost rank of a model tier (mini / standard / advanced)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    rank: int = 0  # lower = cheaper
    rpm_limit: int = Field(0, ge=0)  # 0 = unlimited
    tpm_limit: int = Field(0, ge=0)


# ── Default tables ───────────────────────────────────────────
DEFAULT_RETRY_STRATEGIES: dict[ErrorKind, RetryStrategy] = {
    ErrorKind.NETWORK_ERROR: RetryStrategy(
        name="network_error", max_retries=3, backoff=BackoffAlgorithm.EXPONENTIAL,
        base_delay=1.0, max_delay=30.0,
    ),
    ErrorKind.SERVER_ERROR: RetryStrategy(
        name="server_error", max_retries=2, backoff=BackoffAlgorithm.EXPONENTIAL,
        base_delay=2.0, max_delay=30.0,
    ),
    ErrorKind.TIMEOUT: RetryStrategy(
        name="timeout", max_retries=2, backoff=BackoffAlgorithm.LINEAR,
        base_delay=2.0, max_delay=20.0, jitter=False,
    ),
    ErrorKind.RATE_LIMIT: RetryStrategy(
        name="rate_limit", max_retries=0, backoff=BackoffAlgorithm.NONE,
        base_delay=0.0, max_delay=0.0, jitter=False,
    ),
    ErrorKind.AUTHENTICATION: RetryStrategy(
        name="authentication", max_retries=0, backoff=BackoffAlgorithm.NONE,
        base_delay=0.0, max_delay=0.0, jitter=False,
    ),
    ErrorKind.PERMISSION_DENIED: RetryStrategy(
        name="permission_denied", max_retries=0, backoff=BackoffAlgorithm.NONE,
        base_delay=0.0, max_delay=0.0, jitter=False,
    ),
    ErrorKind.DEFAULT: RetryStrategy(
        name="default", max_retries=2, backoff=BackoffAlgorithm.EXPONENTIAL,
        base_delay=1.0, max_delay=20.0,
    ),
}

DEFAULT_FALLBACK_STRATEGIES: dict[str, FallbackStrategy] = {
    "rate_limit": FallbackStrategy(
        name="rate_limit", action=FallbackAction.SWITCH_PROVIDER, priority="high",
        selection_strategy=SelectionStrategy.HEALTH_BASED, cooldown_period=300, max_attempts=3,
    ),
    "network_error": FallbackStrategy(
        name="network_error", action=FallbackAction.SWITCH_PROVIDER, priority="high",
        selection_strategy=SelectionStrategy.LOAD_BALANCED, cooldown_period=60, max_attempts=2,
    ),
    "server_error": FallbackStrategy(
        name="server_error", action=FallbackAction.SWITCH_PROVIDER, priority="medium",
        selection_strategy=SelectionStrategy.CIRCUIT_BREAKER_AWARE, cooldown_period=120,
        max_attempts=2,
    ),
    "timeout": FallbackStrategy(
        name="timeout", action=FallbackAction.SWITCH_MODEL, priority="medium",
        selection_strategy=SelectionStrategy.PERFORMANCE_BASED, cooldown_period=60,
        max_attempts=2,
    ),
    "authentication": FallbackStrategy(
        name="authentication", action=FallbackAction.ESCALATE, priority="critical",
        selection_strategy=SelectionStrategy.NONE,
    ),
    "permission_denied": FallbackStrategy(
        name="permission_denied", action=FallbackAction.ESCALATE, priority="critical",
        selection_strategy=SelectionStrategy.NONE,
    ),
    "default": FallbackStrategy(
        name="default", action=FallbackAction.SWITCH_PROVIDER, priority="low",
        selection_strategy=SelectionStrategy.ROUND_ROBIN, cooldown_period=180, max_attempts=3,
    ),
}

DEFAULT_RATE_LIMIT_STRATEGIES: dict[str, FallbackStrategy] = {
    "immediate_provider_switch": FallbackStrategy(
        name="immediate_provider_switch", action=FallbackAction.SWITCH_PROVIDER,
        priority="high", selection_strategy=SelectionStrategy.HEALTH_BASED,
    ),
    "immediate_model_switch": FallbackStrategy(
        name="immediate_model_switch", action=FallbackAction.SWITCH_MODEL,
        priority="medium", selection_strategy=SelectionStrategy.PERFORMANCE_BASED,
    ),
    "quota_aware": FallbackStrategy(
        name="quota_aware", action=FallbackAction.QUOTA_AWARE_SWITCH, priority="high",
        selection_strategy=SelectionStrategy.QUOTA_BASED, cooldown_period=30,
    ),
    "cost_optimized": FallbackStrategy(
        name="cost_optimized", action=FallbackAction.COST_OPTIMIZED_SWITCH,
        priority="medium", selection_strategy=SelectionStrategy.COST_BASED, cooldown_period=60,
    ),
    "performance_optimized": FallbackStrategy(
        name="performance_optimized", action=FallbackAction.PERFORMANCE_OPTIMIZED_SWITCH,
        priority="high", selection_strategy=SelectionStrategy.PERFORMANCE_BASED,
    ),
    "wait_and_retry": FallbackStrategy(
        name="wait_and_retry", action=FallbackAction.WAIT_AND_RETRY, priority="low",
        selection_strategy=SelectionStrategy.NONE, wait_time=60,
    ),
    "escalate": FallbackStrategy(
        name="escalate", action=FallbackAction.ESCALATE, priority="critical",
        selection_strategy=SelectionStrategy.NONE,
    ),
    "default": FallbackStrategy(
        name="default", action=FallbackAction.SWITCH_PROVIDER, priority="medium",
        selection_strategy=SelectionStrategy.ROUND_ROBIN,
    ),
}

DEFAULT_TIERS: dict[str, TierLimit] = {
    "mini": TierLimit(rank=0),
    "standard": TierLimit(rank=1),
    "advanced": TierLimit(rank=2),
}


_S = TypeVar("_S", RetryStrategy, FallbackStrategy)


def _merge_table(
    defaults: Mapping[Any, _S], value: Any, model: type[_S], *, key_type: type = str
) -> Any:
    """Merge partial per-entry overrides onto the default table."""
    if value is None:
        return dict(defaults)
    if not isinstance(value, Mapping):
        return value  # let pydantic report the type error
    merged: dict[Any, Any] = dict(defaults)
    fallback = defaults.get(key_type("default"))
    for raw_key, entry in value.items():
        key = key_type(raw_key)
        if isinstance(entry, BaseModel):
            merged[key] = entry
            continue
        base = defaults.get(key) or fallback
        data = base.model_dump() if base is not None else {}
        data["name"] = str(getattr(key, "value", key))
        data.update(entry or {})
        merged[key] = data
    return merged


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    temporary_threshold_seconds: float = Field(60.0, ge=0)
    default_wait_seconds: float = Field(60.0, ge=0)
    max_wait_attempts: int = Field(3, ge=0)  # consecutive unresolved limits before escalating
    usage_window_seconds: float = Field(60.0, gt=0)
    switch_strategies: dict[str, FallbackStrategy] = Field(
        default_factory=lambda: dict(DEFAULT_RATE_LIMIT_STRATEGIES)
    )

    @field_validator("switch_strategies", mode="before")
    @classmethod
    def _merge_switch_strategies(cls, v: Any) -> Any:
        return _merge_table(DEFAULT_RATE_LIMIT_STRATEGIES, v, FallbackStrategy)


class ResilienceConfig(BaseModel):
    """Everything the core needs from the host's configuration source."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    breaker: BreakerConfig = Field(default_factory=BreakerConfig)
    retry_strategies: dict[ErrorKind, RetryStrategy] = Field(
        default_factory=lambda: dict(DEFAULT_RETRY_STRATEGIES)
    )
    fallback_strategies: dict[str, FallbackStrategy] = Field(
        default_factory=lambda: dict(DEFAULT_FALLBACK_STRATEGIES)
    )
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    tier_limits: dict[str, TierLimit] = Field(default_factory=lambda: dict(DEFAULT_TIERS))
    model_tiers: dict[str, str] = Field(default_factory=dict)
    exhaustion_ttl_seconds: float | None = Field(300.0, ge=0)  # None = until reset
    history_limit: int = Field(1000, gt=0)
    history_window_seconds: float | None = Field(None, gt=0)
    health_window_seconds: float = Field(60.0, gt=0)

    @field_validator("retry_strategies", mode="before")
    @classmethod
    def _merge_retry(cls, v: Any) -> Any:
        return _merge_table(DEFAULT_RETRY_STRATEGIES, v, RetryStrategy, key_type=ErrorKind)

    @field_validator("fallback_strategies", mode="before")
    @classmethod
    def _merge_fallback(cls, v: Any) -> Any:
        return _merge_table(DEFAULT_FALLBACK_STRATEGIES, v, FallbackStrategy)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None = None) -> ResilienceConfig:
        """Validate a host-supplied mapping, failing fast on bad thresholds."""
        try:
            return cls.model_validate(dict(data or {}))
        except ValidationError as exc:
            raise ConfigurationError.from_validation("resilience configuration", exc) from exc


def get_config(**overrides: Any) -> ResilienceConfig:
    """Factory that allows test-time overrides."""
    return ResilienceConfig.from_mapping(overrides)


def merge_strategy(base: _S, overrides: Mapping[str, Any] | None) -> _S:
    """Return a new strategy with caller overrides applied on top of ``base``.

    Only fields the strategy declares are taken; ``None`` values are ignored.
    """
    if not overrides:
        return base
    fields = type(base).model_fields
    update = {k: v for k, v in overrides.items() if k in fields and v is not None}
    if not update:
        return base
    try:
        return type(base).model_validate({**base.model_dump(), **update})
    except ValidationError as exc:
        raise ConfigurationError.from_validation(f"{base.name} strategy override", exc) from exc


def build_strategy_table(
    table: Mapping[Any, Any], model: type[_S], defaults: Mapping[Any, _S], *, key_type: type = str
) -> dict[Any, _S]:
    """Validate a wholesale replacement table; a ``default`` entry is always present."""
    try:
        result: dict[Any, _S] = {}
        for raw_key, entry in table.items():
            key = key_type(raw_key)
            if isinstance(entry, model):
                result[key] = entry
            else:
                data = {"name": str(getattr(key, "value", key)), **dict(entry)}
                result[key] = model.model_validate(data)
    except (ValidationError, ValueError) as exc:
        if isinstance(exc, ValidationError):
            raise ConfigurationError.from_validation("strategy table", exc) from exc
        raise ConfigurationError(f"Invalid strategy table key: {exc}") from exc
    result.setdefault(key_type("default"), defaults[key_type("default")])
    return result
