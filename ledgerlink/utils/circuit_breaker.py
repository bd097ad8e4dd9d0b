"""In-memory circuit breaker for external dependencies (process-local).

Keys are dependency names such as ``"ledger"`` or a provider name. While a key
is OPEN callers should skip the call entirely; the outbox dispatcher releases
claimed jobs back to pending without charging an attempt. A HALF_OPEN key
admits a limited number of trial calls; if none of them report back within
one cooldown a fresh round is admitted.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict

from ledgerlink.config import CIRCUIT_BREAKER
from ledgerlink.utils.time import Clock, SystemClock


@dataclass
class BreakerState:
    failures: int = 0
    state: str = "CLOSED"
    opened_at: datetime | None = None
    half_open_at: datetime | None = None
    half_open_probes: int = 0


class CircuitBreaker:
    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        open_cooldown_seconds: float | None = None,
        half_open_probe_count: int | None = None,
        clock: Clock | None = None,
    ):
        self.failure_threshold = int(failure_threshold or CIRCUIT_BREAKER["failure_threshold"])
        self.open_cooldown_seconds = float(open_cooldown_seconds or CIRCUIT_BREAKER["open_cooldown_seconds"])
        self.half_open_probe_count = int(half_open_probe_count or CIRCUIT_BREAKER["half_open_probe_count"])
        self._clock = clock or SystemClock()
        self._states: Dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def _get(self, key: str) -> BreakerState:
        return self._states.setdefault(key, BreakerState())

    def allow_call(self, key: str) -> tuple[bool, str | None]:
        with self._lock:
            st = self._get(key)
            if st.state == "CLOSED":
                return True, None
            now = self._clock.now()
            cooldown = timedelta(seconds=self.open_cooldown_seconds)
            if st.state == "OPEN":
                if st.opened_at and now - st.opened_at >= cooldown:
                    st.state = "HALF_OPEN"
                    st.half_open_at = now
                    st.half_open_probes = 0
                else:
                    return False, "circuit_open"
            if st.half_open_probes >= self.half_open_probe_count:
                # trial calls that never reported back stop counting after a cooldown
                if st.half_open_at and now - st.half_open_at >= cooldown:
                    st.half_open_at = now
                    st.half_open_probes = 0
                else:
                    return False, "half_open_probe_exhausted"
            st.half_open_probes += 1
            return True, None

    def record_success(self, key: str) -> None:
        with self._lock:
            st = self._get(key)
            st.failures = 0
            if st.state in {"OPEN", "HALF_OPEN"}:
                st.state = "CLOSED"
                st.opened_at = None
                st.half_open_at = None
                st.half_open_probes = 0

    def record_failure(self, key: str) -> None:
        with self._lock:
            st = self._get(key)
            st.failures += 1
            if st.state == "HALF_OPEN" or (st.state == "CLOSED" and st.failures >= self.failure_threshold):
                st.state = "OPEN"
                st.opened_at = self._clock.now()
                st.half_open_at = None
                st.half_open_probes = 0

    def snapshot(self) -> dict[str, dict[str, object]]:
        with self._lock:
            return {
                k: {
                    "failures": v.failures,
                    "state": v.state,
                    "opened_at": v.opened_at.isoformat() if v.opened_at else None,
                    "half_open_at": v.half_open_at.isoformat() if v.half_open_at else None,
                    "half_open_probes": v.half_open_probes,
                }
                for k, v in self._states.items()
            }


__all__ = ["CircuitBreaker", "BreakerState"]
