"""Bounded execution for blocking external calls."""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

from ledgerlink.exceptions import ExternalCallTimeout

T = TypeVar("T")

_EXECUTOR = ThreadPoolExecutor(max_workers=8, thread_name_prefix="external-call")


def run_with_timeout(func: Callable[..., T], timeout_seconds: float | None, *args, **kwargs) -> T:
    """Run ``func`` and raise ExternalCallTimeout if it does not return in time.

    The underlying thread cannot be killed; a timed-out call keeps running in
    the background and its result is discarded.
    """
    if not timeout_seconds or timeout_seconds <= 0:
        return func(*args, **kwargs)
    future = _EXECUTOR.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeout as exc:
        future.cancel()
        name = getattr(func, "__qualname__", repr(func))
        raise ExternalCallTimeout(f"{name} timed out after {timeout_seconds}s") from exc


__all__ = ["run_with_timeout"]
