"""Outbound call pacing.

A `Throttle` guarantees a minimum interval between the *starts* of two
consecutive calls sharing the instance, whatever the outcome of the
previous call. It is not a retry delay.

Usage pattern:
    throttle = Throttle(min_interval=0.1)
    await throttle.wait()
    response = await session.get(...)

Single-consumer by construction (the reconciler processes orders
sequentially); the asyncio.Lock only protects against accidental sharing.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

Sleep = Callable[[float], Awaitable[None]]


class Throttle:
    def __init__(
        self,
        min_interval: float,
        *,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        if min_interval < 0:
            raise ValueError("min_interval must be >= 0")
        self.min_interval = float(min_interval)
        self._monotonic = monotonic
        self._sleep = sleep
        self._last_call: float | None = None
        self._lock = asyncio.Lock()
        self.waited_seconds = 0.0

    async def wait(self) -> float:
        """Block until the next call may start; returns the seconds waited."""
        async with self._lock:
            waited = 0.0
            if self._last_call is not None and self.min_interval > 0:
                remaining = self.min_interval - (self._monotonic() - self._last_call)
                if remaining > 0:
                    await self._sleep(remaining)
                    waited = remaining
            self._last_call = self._monotonic()
            self.waited_seconds += waited
            return waited


__all__ = ["Throttle", "Sleep"]
