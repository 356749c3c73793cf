"""Quota tracker: rate-limit ledger and tier usage budgets per target.

Two concerns share one tracker:

* a ledger of what providers told us (``quota_remaining``, ``reset_time``,
  ``retry_after``), fed by rate-limit responses and quota headers on
  successful calls; exhaustion is derived from it on every read;
* sliding-window RPM/TPM usage per target, enforced against the limits of
  the target's model tier when those are configured.
"""

from __future__ import annotations

import math
import re
import threading
from collections import deque
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from harness_resilience.clock import Clock, SystemClock
from harness_resilience.concurrency import StripedLock
from harness_resilience.config import TierLimit
from harness_resilience.history import EventLog
from harness_resilience.types import TargetKey

logger = structlog.get_logger(__name__)

# Reset headers above this are epoch timestamps rather than deltas.
_EPOCH_CUTOFF = 1_000_000_000
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


class RateLimitInfo(BaseModel):
    """What a provider reported about its limits."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    quota_remaining: int | None = None
    quota_limit: int | None = Field(None, ge=0)
    reset_time: float | None = None  # absolute, clock seconds
    retry_after: float | None = Field(None, ge=0)  # seconds
    limit_type: str | None = None  # requests / tokens

    @classmethod
    def coerce(cls, info: RateLimitInfo | Mapping[str, Any] | None) -> RateLimitInfo:
        if info is None:
            return cls()
        if isinstance(info, cls):
            return info
        return cls.model_validate(dict(info))

    @classmethod
    def from_headers(cls, headers: Mapping[str, str] | httpx.Headers, now: float) -> RateLimitInfo:
        """Parse standard and vendor rate-limit response headers."""
        h = headers if isinstance(headers, httpx.Headers) else httpx.Headers(dict(headers))

        retry_after = _parse_retry_after(h.get("retry-after"), now)
        remaining = _first_int(
            h,
            "x-ratelimit-remaining-requests",
            "x-ratelimit-remaining",
            "anthropic-ratelimit-requests-remaining",
            "ratelimit-remaining",
        )
        limit = _first_int(
            h,
            "x-ratelimit-limit-requests",
            "x-ratelimit-limit",
            "anthropic-ratelimit-requests-limit",
            "ratelimit-limit",
        )
        reset_time = None
        for name in (
            "x-ratelimit-reset-requests",
            "x-ratelimit-reset",
            "anthropic-ratelimit-requests-reset",
            "ratelimit-reset",
        ):
            reset_time = _parse_reset(h.get(name), now)
            if reset_time is not None:
                break

        return cls(
            quota_remaining=remaining,
            quota_limit=limit if limit is None or limit >= 0 else None,
            reset_time=reset_time,
            retry_after=retry_after,
            limit_type="requests" if remaining is not None or limit is not None else None,
        )


@dataclass
class RateLimitEntry:
    quota_remaining: int | None
    quota_limit: int | None
    reset_time: float | None
    retry_after: float | None
    recorded_at: float
    limited: bool = False  # explicit rate-limit signal, not just headers
    limit_type: str | None = None

    def is_exhausted(self, now: float, default_cooldown: float) -> bool:
        if self.quota_remaining is not None and self.quota_remaining <= 0:
            if self.reset_time is None or now < self.reset_time:
                return True
        if self.limited:
            if self.retry_after is not None:
                return now < self.recorded_at + self.retry_after
            if self.reset_time is not None:
                return now < self.reset_time
            return now < self.recorded_at + default_cooldown
        return False


@dataclass(frozen=True, slots=True)
class RateLimitRecord:
    """One observed rate-limit signal."""

    timestamp: float
    target: TargetKey
    quota_remaining: int | None
    quota_limit: int | None
    reset_time: float | None
    retry_after: float | None


@dataclass
class _UsageRecord:
    timestamp: float
    tokens: int


class QuotaTracker:
    """Thread-safe per-target quota ledger and tier usage tracker."""

    def __init__(
        self,
        *,
        clock: Clock | None = None,
        tier_limits: Mapping[str, TierLimit] | None = None,
        tier_of: Callable[[TargetKey], str | None] | None = None,
        usage_window_seconds: float = 60.0,
        default_cooldown_seconds: float = 60.0,
        warning_threshold: float = 0.90,
        history_limit: int = 1000,
        history_window_seconds: float | None = None,
    ) -> None:
        self._clock = clock or SystemClock()
        self._tier_limits = dict(tier_limits or {})
        self._tier_of = tier_of or (lambda key: None)
        self._window = usage_window_seconds
        self._default_cooldown = default_cooldown_seconds
        self._warning_thr = warning_threshold

        self._entries: dict[TargetKey, RateLimitEntry] = {}
        self._consecutive: dict[TargetKey, int] = {}
        self._usage: dict[TargetKey, deque[_UsageRecord]] = {}
        self._warned: set[TargetKey] = set()
        self._stripes = StripedLock()
        self._history: EventLog[RateLimitRecord] = EventLog(
            limit=history_limit, window_seconds=history_window_seconds, clock=self._clock
        )

    # ── Rate-limit ledger ────────────────────────────────────
    def record_rate_limit(
        self, target: TargetKey, info: RateLimitInfo | Mapping[str, Any] | None = None
    ) -> RateLimitEntry:
        """Store an explicit rate-limit signal; returns the resulting entry."""
        info = RateLimitInfo.coerce(info)
        now = self._clock.now()
        entry = RateLimitEntry(
            quota_remaining=info.quota_remaining,
            quota_limit=info.quota_limit,
            reset_time=info.reset_time,
            retry_after=info.retry_after,
            recorded_at=now,
            limited=True,
            limit_type=info.limit_type,
        )
        with self._stripes.for_key(target):
            self._entries[target] = entry
            self._consecutive[target] = self._consecutive.get(target, 0) + 1
            consecutive = self._consecutive[target]
        self._history.append(
            RateLimitRecord(
                timestamp=now,
                target=target,
                quota_remaining=info.quota_remaining,
                quota_limit=info.quota_limit,
                reset_time=info.reset_time,
                retry_after=info.retry_after,
            )
        )
        logger.warning(
            "rate_limit_recorded",
            provider=target.provider,
            model=target.model,
            quota_remaining=info.quota_remaining,
            retry_after=info.retry_after,
            reset_time=info.reset_time,
            consecutive=consecutive,
        )
        return entry

    def record_observation(self, target: TargetKey, info: RateLimitInfo | Mapping[str, Any]) -> None:
        """Quota headers from a successful call; clears any rate-limit signal."""
        info = RateLimitInfo.coerce(info)
        if info.quota_remaining is None and info.quota_limit is None and info.reset_time is None:
            self.mark_recovered(target)
            return
        with self._stripes.for_key(target):
            self._entries[target] = RateLimitEntry(
                quota_remaining=info.quota_remaining,
                quota_limit=info.quota_limit,
                reset_time=info.reset_time,
                retry_after=None,
                recorded_at=self._clock.now(),
                limited=False,
                limit_type=info.limit_type,
            )
            self._consecutive.pop(target, None)

    def mark_recovered(self, target: TargetKey) -> None:
        """A call succeeded: drop the explicit signal, keep observed quota."""
        with self._stripes.for_key(target):
            self._consecutive.pop(target, None)
            entry = self._entries.get(target)
            if entry is not None and entry.limited:
                entry.limited = False
                entry.retry_after = None

    def entry(self, target: TargetKey) -> RateLimitEntry | None:
        with self._stripes.for_key(target):
            entry = self._entries.get(target)
            if entry is None:
                return None
            return RateLimitEntry(**vars(entry))

    def consecutive_limits(self, target: TargetKey) -> int:
        """Rate limits recorded since the target last succeeded."""
        with self._stripes.for_key(target):
            return self._consecutive.get(target, 0)

    def is_exhausted(self, target: TargetKey) -> bool:
        now = self._clock.now()
        with self._stripes.for_key(target):
            entry = self._entries.get(target)
            return entry is not None and entry.is_exhausted(now, self._default_cooldown)

    def find_best_combination(self, candidates: Iterable[TargetKey]) -> TargetKey | None:
        """Candidate with the most remaining quota; ties go to the soonest reset.

        Candidates without a recorded entry, or without positive quota, are
        never chosen.
        """
        best: TargetKey | None = None
        best_rank: tuple[int, float] | None = None
        for candidate in candidates:
            with self._stripes.for_key(candidate):
                entry = self._entries.get(candidate)
                if entry is None or entry.quota_remaining is None or entry.quota_remaining <= 0:
                    continue
                reset = entry.reset_time if entry.reset_time is not None else float("inf")
                rank = (entry.quota_remaining, -reset)
            if best_rank is None or rank > best_rank:
                best, best_rank = candidate, rank
        return best

    # ── Tier usage budgets ───────────────────────────────────
    def can_accept(self, target: TargetKey, estimated_tokens: int = 0) -> bool:
        """Whether the target's tier budget admits another request."""
        limits = self._limits_for(target)
        if limits is None or (limits.rpm_limit <= 0 and limits.tpm_limit <= 0):
            return True
        with self._stripes.for_key(target):
            records = self._evict(target)

            # RPM check
            if limits.rpm_limit > 0 and len(records) >= limits.rpm_limit:
                logger.debug(
                    "quota_rpm_exhausted",
                    provider=target.provider,
                    model=target.model,
                    current=len(records),
                    limit=limits.rpm_limit,
                )
                return False

            # TPM check
            if limits.tpm_limit > 0:
                used_tokens = sum(r.tokens for r in records)
                if used_tokens + estimated_tokens > limits.tpm_limit:
                    logger.debug(
                        "quota_tpm_exhausted",
                        provider=target.provider,
                        model=target.model,
                        used=used_tokens,
                        estimated=estimated_tokens,
                        limit=limits.tpm_limit,
                    )
                    return False
            return True

    def record_usage(self, target: TargetKey, tokens: int = 0) -> None:
        """Record one request and its token usage."""
        with self._stripes.for_key(target):
            records = self._usage.setdefault(target, deque())
            records.append(_UsageRecord(self._clock.now(), max(0, tokens)))
            self._evict(target)
            self._check_warning(target)

    def usage(self, target: TargetKey) -> tuple[int, int]:
        """``(requests, tokens)`` inside the sliding window."""
        with self._stripes.for_key(target):
            records = self._evict(target)
            return len(records), sum(r.tokens for r in records)

    # ── Admin ────────────────────────────────────────────────
    def reset(self, target: TargetKey) -> None:
        with self._stripes.for_key(target):
            self._entries.pop(target, None)
            self._consecutive.pop(target, None)
            self._usage.pop(target, None)
            self._warned.discard(target)
        logger.info("quota_reset", provider=target.provider, model=target.model)

    def reset_all(self) -> None:
        for target in set(self._entries) | set(self._usage) | set(self._consecutive):
            self.reset(target)

    def targets(self) -> list[TargetKey]:
        return list(self._entries)

    def history(self, start: float | None = None, end: float | None = None) -> list[RateLimitRecord]:
        return self._history.query(start, end)

    def clear_history(self) -> None:
        self._history.clear()

    # ── Internals ────────────────────────────────────────────
    def _limits_for(self, target: TargetKey) -> TierLimit | None:
        tier = self._tier_of(target)
        return self._tier_limits.get(tier) if tier else None

    def _evict(self, target: TargetKey) -> deque[_UsageRecord]:
        """Remove records outside the sliding window. Caller holds lock."""
        records = self._usage.get(target)
        if records is None:
            return deque()
        cutoff = self._clock.now() - self._window
        while records and records[0].timestamp < cutoff:
            records.popleft()
        limits = self._limits_for(target)
        # Re-arm the warning once usage drops
        if limits and limits.rpm_limit > 0 and len(records) / limits.rpm_limit < self._warning_thr:
            self._warned.discard(target)
        return records

    def _check_warning(self, target: TargetKey) -> None:
        """Emit early warning when approaching the RPM limit. Caller holds lock."""
        limits = self._limits_for(target)
        if limits is None or limits.rpm_limit <= 0 or target in self._warned:
            return
        used = len(self._usage.get(target, ()))
        usage_pct = used / limits.rpm_limit
        if usage_pct >= self._warning_thr:
            self._warned.add(target)
            logger.warning(
                "quota_warning",
                provider=target.provider,
                model=target.model,
                usage_pct=float(f"{(usage_pct * 100):.1f}"),
                requests_used=used,
                rpm_limit=limits.rpm_limit,
            )


# ── Header parsing ───────────────────────────────────────────
def _finite(raw: str) -> float:
    """Parse a numeric header value; ``inf`` and ``nan`` raise ``ValueError``."""
    value = float(raw)
    if not math.isfinite(value):
        raise ValueError(f"non-finite header value: {raw!r}")
    return value


def _first_int(headers: httpx.Headers, *names: str) -> int | None:
    for name in names:
        raw = headers.get(name)
        if raw is None:
            continue
        try:
            return int(_finite(raw.strip()))
        except (ValueError, OverflowError):
            continue
    return None


def _parse_retry_after(raw: str | None, now: float) -> float | None:
    if raw is None:
        return None
    raw = raw.strip()
    try:
        return max(0.0, _finite(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    return max(0.0, when.timestamp() - now)


def _parse_reset(raw: str | None, now: float) -> float | None:
    if raw is None:
        return None
    raw = raw.strip()
    try:
        value = _finite(raw)
    except ValueError:
        pass
    else:
        return value if value > _EPOCH_CUTOFF else now + max(0.0, value)

    parts = _DURATION_PART.findall(raw)
    if parts and "".join(f"{n}{u}" for n, u in parts) == raw:
        return now + sum(float(n) * _DURATION_UNITS[u] for n, u in parts)

    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None
