"""Fixed-interval background worker.

Runs ``tick()`` in a daemon thread every ``interval_seconds``. Exceptions raised
by a tick are logged and the loop carries on with the next interval, so a bad
tick never kills the worker. Tests drive ``run_once()`` directly instead of
waiting on the thread.
"""
from __future__ import annotations

import threading
import time
from typing import Any, Callable

from ledgerlink.utils import get_logger

logger = get_logger(__name__)


class PeriodicWorker:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        tick: Callable[[], Any],
        *,
        run_immediately: bool = True,
    ):
        self.name = name
        self.interval_seconds = float(interval_seconds)
        self.tick = tick
        self.run_immediately = run_immediately
        self.last_result: Any = None
        self.last_error: str | None = None
        self.ticks = 0
        self._thread: threading.Thread | None = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():  # pragma: no cover
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=f"{self.name}-worker", daemon=True)
        self._thread.start()
        logger.info("Periodic worker started", worker=self.name, interval_seconds=self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        logger.info("Periodic worker stopped", worker=self.name, ticks=self.ticks)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def run_once(self) -> Any:
        started = time.time()
        try:
            self.last_result = self.tick()
            self.last_error = None
            return self.last_result
        except Exception as e:
            self.last_error = f"{type(e).__name__}: {e}"
            logger.error("Periodic worker tick failed", worker=self.name, error=str(e), exc_info=True)
            return None
        finally:
            self.ticks += 1
            logger.debug("Periodic worker tick", worker=self.name, duration_ms=round((time.time() - started) * 1000, 2))

    def _loop(self) -> None:
        if not self.run_immediately and self._stop_event.wait(self.interval_seconds):
            return
        while not self._stop_event.is_set():
            self.run_once()
            if self._stop_event.wait(self.interval_seconds):
                break

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "ticks": self.ticks,
            "last_error": self.last_error,
        }


__all__ = ["PeriodicWorker"]
