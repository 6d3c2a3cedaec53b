"""Exponential backoff helpers with optional jitter."""
from __future__ import annotations

import random
from typing import Optional


def compute_backoff_seconds(attempt: int, *, base: float, factor: float, max_seconds: Optional[float] = None, jitter_pct: float = 0.0) -> float:
    """Delay to wait after failed attempt number `attempt` (1-based).

    attempt 1 -> base, attempt 2 -> base * factor, attempt n -> base * factor ** (n - 1).
    """
    if attempt < 1:
        attempt = 1
    delay = float(base) * (float(factor) ** (attempt - 1))
    if max_seconds is not None:
        delay = min(delay, float(max_seconds))
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def backoff_schedule(max_attempts: int, *, base: float, factor: float, max_seconds: Optional[float] = None) -> list[float]:
    """Deterministic delays between `max_attempts` attempts (len == max_attempts - 1)."""
    return [
        compute_backoff_seconds(attempt, base=base, factor=factor, max_seconds=max_seconds)
        for attempt in range(1, max(max_attempts, 1))
    ]


__all__ = ["compute_backoff_seconds", "backoff_schedule"]
