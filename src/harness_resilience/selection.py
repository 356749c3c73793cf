"""Selection strategies: pick a replacement among candidate providers or models.

Every ``select_*`` function is pure over a ``SelectionSnapshot`` and returns
a member of ``candidates`` or ``None`` when there are none.  Ties are broken
by declaration order (``min``/``max`` keep the first best element).
"""

from __future__ import annotations

import threading
from collections.abc import Hashable, Mapping, Sequence
from dataclasses import dataclass, field

from harness_resilience.types import SelectionStrategy

_UNKNOWN_RANK = 1_000_000


@dataclass(frozen=True)
class SelectionSnapshot:
    """Signals for each candidate name, captured at decision time."""

    health_scores: Mapping[str, float] = field(default_factory=dict)
    loads: Mapping[str, int] = field(default_factory=dict)
    performance: Mapping[str, tuple[float, float]] = field(default_factory=dict)  # (success_rate, avg_ms)
    open: frozenset[str] = frozenset()
    tier_ranks: Mapping[str, int] = field(default_factory=dict)
    quota_remaining: Mapping[str, int] = field(default_factory=dict)


# ── Strategy implementations ─────────────────────────────────
def select_round_robin(candidates: Sequence[str], position: int) -> str | None:
    if not candidates:
        return None
    return candidates[position % len(candidates)]


def select_health_based(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    if not candidates:
        return None
    return max(candidates, key=lambda c: snapshot.health_scores.get(c, 1.0))


def select_load_balanced(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    if not candidates:
        return None
    return min(candidates, key=lambda c: snapshot.loads.get(c, 0))


def select_performance_based(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    """Highest recent success rate, then lowest average latency."""
    if not candidates:
        return None

    def perf_key(c: str) -> tuple[float, float]:
        success_rate, latency_ms = snapshot.performance.get(c, (1.0, 0.0))
        return (-success_rate, latency_ms if latency_ms > 0 else float("inf"))

    return min(candidates, key=perf_key)


def select_circuit_breaker_aware(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    closed = [c for c in candidates if c not in snapshot.open]
    return select_health_based(closed, snapshot)


def select_cheapest_tier(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    if not candidates:
        return None
    return min(candidates, key=lambda c: snapshot.tier_ranks.get(c, _UNKNOWN_RANK))


def select_quota_based(candidates: Sequence[str], snapshot: SelectionSnapshot) -> str | None:
    """Most remaining quota; unknown quota ranks below any positive known quota."""
    usable = [c for c in candidates if snapshot.quota_remaining.get(c, 1) > 0]
    if not usable:
        return None
    return max(usable, key=lambda c: (c in snapshot.quota_remaining, snapshot.quota_remaining.get(c, 0)))


class RoundRobinSelector:
    """Keeps one rotating position per caller scope."""

    def __init__(self) -> None:
        self._positions: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def next(self, scope: Hashable, candidates: Sequence[str]) -> str | None:
        if not candidates:
            return None
        with self._lock:
            position = self._positions.get(scope, 0)
            self._positions[scope] = position + 1
        return select_round_robin(candidates, position)

    def reset(self, scope: Hashable | None = None) -> None:
        with self._lock:
            if scope is None:
                self._positions.clear()
            else:
                self._positions.pop(scope, None)


def select(
    strategy: SelectionStrategy | str,
    candidates: Sequence[str],
    snapshot: SelectionSnapshot,
    *,
    round_robin: RoundRobinSelector | None = None,
    scope: Hashable = None,
) -> str | None:
    """Dispatch to the named strategy; unknown names rotate round-robin."""
    if not candidates:
        return None
    try:
        strategy = SelectionStrategy(strategy)
    except ValueError:
        strategy = SelectionStrategy.ROUND_ROBIN

    if strategy == SelectionStrategy.HEALTH_BASED:
        return select_health_based(candidates, snapshot)
    elif strategy == SelectionStrategy.LOAD_BALANCED:
        return select_load_balanced(candidates, snapshot)
    elif strategy == SelectionStrategy.PERFORMANCE_BASED:
        return select_performance_based(candidates, snapshot)
    elif strategy == SelectionStrategy.CIRCUIT_BREAKER_AWARE:
        return select_circuit_breaker_aware(candidates, snapshot)
    elif strategy == SelectionStrategy.COST_BASED:
        return select_cheapest_tier(candidates, snapshot)
    elif strategy == SelectionStrategy.QUOTA_BASED:
        return select_quota_based(candidates, snapshot)
    elif strategy == SelectionStrategy.ROUND_ROBIN:
        if round_robin is None:
            return candidates[0]
        return round_robin.next(scope, candidates)
    else:
        return candidates[0]
