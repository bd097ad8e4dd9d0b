"""Exponential backoff with additive jitter, shared by outbox jobs and webhook retries."""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Callable, Optional

from ledgerlink.config import BACKOFF_POLICY


def compute_backoff_seconds(
    attempts: int,
    *,
    base: Optional[float] = None,
    factor: Optional[float] = None,
    max_seconds: Optional[float] = None,
    jitter_seconds: Optional[float] = None,
    rng: Optional[Callable[[float, float], float]] = None,
) -> float:
    """Return ``min(base * factor**attempts, max_seconds) + uniform(0, jitter_seconds)``.

    ``attempts`` is the number of attempts already made (0 for the first retry
    decision). With jitter disabled the result is monotonically non-decreasing
    in ``attempts`` and never exceeds ``max_seconds``.
    """
    attempts = max(int(attempts), 0)
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])
    jitter_seconds = float(jitter_seconds if jitter_seconds is not None else BACKOFF_POLICY["jitter_seconds"])

    try:
        delay = min(base * (factor ** attempts), max_seconds)
    except OverflowError:
        delay = max_seconds
    if jitter_seconds > 0:
        uniform = rng or random.uniform
        delay += uniform(0.0, jitter_seconds)
    return max(delay, 0.0)


def next_attempt_at(now: datetime, attempts: int, **kwargs) -> datetime:
    return now + timedelta(seconds=compute_backoff_seconds(attempts, **kwargs))


__all__ = ["compute_backoff_seconds", "next_attempt_at"]
