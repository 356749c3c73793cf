"""Backoff delay calculation.

Pure function of the attempt number and strategy; the core never sleeps,
so callers receive the delay as an advisory value.
"""

from __future__ import annotations

import random

from harness_resilience.types import BackoffAlgorithm


def compute_delay(
    attempt: int,
    algorithm: BackoffAlgorithm | str,
    base: float,
    cap: float,
    *,
    jitter: bool = True,
    rng: random.Random | None = None,
) -> float:
    """Seconds to wait before retry number ``attempt`` (1-based).

    ``exponential`` doubles from ``base`` with a multiplicative jitter drawn
    from ``[0.5, 1.5)``; ``linear`` grows by ``base`` per attempt; ``fixed``
    is always ``base``; ``none`` is always zero.  The result is clamped to
    ``[0, cap]``.  Jitter can raise a delay as well as lower it, so delays
    only grow monotonically with ``attempt`` when ``jitter`` is off.
    """
    if attempt < 1:
        return 0.0
    algorithm = BackoffAlgorithm(algorithm)
    cap = max(0.0, cap)

    if algorithm == BackoffAlgorithm.NONE:
        return 0.0
    if algorithm == BackoffAlgorithm.EXPONENTIAL:
        # Bound the exponent; anything past 2**64 is far beyond any cap.
        delay = base * (2.0 ** min(attempt - 1, 64))
        if jitter:
            delay *= 0.5 + (rng or random).random()
    elif algorithm == BackoffAlgorithm.LINEAR:
        delay = base * attempt
    else:
        delay = base

    return min(max(0.0, delay), cap)
