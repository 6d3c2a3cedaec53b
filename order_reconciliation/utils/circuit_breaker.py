"""In-memory circuit breaker for gateway calls (process-local).

Counts consecutive orders whose gateway lookups exhausted their retries.
While OPEN the reconciler fails orders fast instead of hammering the gateway.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict

from order_reconciliation.config import CIRCUIT_BREAKER
from order_reconciliation.utils.time import Clock, utc_now


@dataclass
class BreakerState:
    failures: int = 0
    state: str = "CLOSED"
    opened_at: datetime | None = None
    half_open_probes: int = 0


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        cooldown_seconds: float | None = None,
        half_open_probe_count: int | None = None,
        clock: Clock = utc_now,
    ):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.cooldown_seconds = float(cooldown_seconds or CIRCUIT_BREAKER["open_cooldown_seconds"])
        self.half_open_probe_count = int(half_open_probe_count or CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock
        self._states: Dict[str, BreakerState] = {}

    def _get(self, key: str) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def allow_call(self, key: str) -> tuple[bool, str | None]:
        st = self._get(key)
        if st.state == "CLOSED":
            return True, None
        if st.state == "OPEN":
            if st.opened_at and self._clock() - st.opened_at >= timedelta(seconds=self.cooldown_seconds):
                st.state = "HALF_OPEN"
                st.half_open_probes = 0
            else:
                return False, "circuit_open"
        if st.state == "HALF_OPEN":
            if st.half_open_probes >= self.half_open_probe_count:
                return False, "half_open_probe_exhausted"
            st.half_open_probes += 1
            return True, None
        return True, None

    def record_success(self, key: str) -> None:
        st = self._get(key)
        st.failures = 0
        if st.state in {"OPEN", "HALF_OPEN"}:
            st.state = "CLOSED"
            st.opened_at = None
            st.half_open_probes = 0

    def record_failure(self, key: str) -> None:
        st = self._get(key)
        st.failures += 1
        if st.state == "CLOSED" and st.failures >= self.failure_threshold:
            st.state = "OPEN"
            st.opened_at = self._clock()
        elif st.state == "HALF_OPEN":
            st.state = "OPEN"
            st.opened_at = self._clock()

    def snapshot(self) -> dict[str, dict[str, object]]:
        return {
            k: {
                "failures": v.failures,
                "state": v.state,
                "opened_at": v.opened_at.isoformat() if v.opened_at else None,
                "half_open_probes": v.half_open_probes,
            }
            for k, v in self._states.items()
        }


__all__ = ["CircuitBreaker", "BreakerState"]
