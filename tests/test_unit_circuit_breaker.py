from datetime import datetime, timezone

from ledgerlink.utils.circuit_breaker import CircuitBreaker
from ledgerlink.utils.time import FrozenClock


def _breaker(clock):
    return CircuitBreaker(failure_threshold=3, open_cooldown_seconds=60, half_open_probe_count=1, clock=clock)


def test_circuit_opens_and_half_open_cycle():
    clock = FrozenClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    cb = _breaker(clock)
    for _ in range(3):
        cb.record_failure("ledger")
    allowed, reason = cb.allow_call("ledger")
    assert allowed is False and reason == "circuit_open"
    assert cb.snapshot()["ledger"]["state"] == "OPEN"

    clock.advance(61)
    assert cb.allow_call("ledger") == (True, None)
    assert cb.snapshot()["ledger"]["state"] == "HALF_OPEN"
    allowed, reason = cb.allow_call("ledger")
    assert allowed is False and reason == "half_open_probe_exhausted"

    # failed trial call re-opens
    cb.record_failure("ledger")
    assert cb.allow_call("ledger") == (False, "circuit_open")

    clock.advance(61)
    assert cb.allow_call("ledger")[0] is True
    cb.record_success("ledger")
    assert cb.snapshot()["ledger"]["state"] == "CLOSED"
    assert cb.allow_call("ledger") == (True, None)


def test_success_resets_failure_count():
    clock = FrozenClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    cb = _breaker(clock)
    cb.record_failure("ledger")
    cb.record_failure("ledger")
    cb.record_success("ledger")
    cb.record_failure("ledger")
    cb.record_failure("ledger")
    assert cb.allow_call("ledger") == (True, None)


def test_keys_are_independent():
    cb = _breaker(FrozenClock())
    for _ in range(3):
        cb.record_failure("ledger")
    assert cb.allow_call("ledger")[0] is False
    assert cb.allow_call("stripe") == (True, None)


def test_unreported_half_open_trial_is_readmitted_after_cooldown():
    clock = FrozenClock(datetime(2025, 1, 1, tzinfo=timezone.utc))
    cb = _breaker(clock)
    for _ in range(3):
        cb.record_failure("ledger")
    clock.advance(61)
    assert cb.allow_call("ledger") == (True, None)
    # the trial caller never reports back
    clock.advance(30)
    assert cb.allow_call("ledger") == (False, "half_open_probe_exhausted")

    clock.advance(31)
    assert cb.allow_call("ledger") == (True, None)
    assert cb.snapshot()["ledger"]["state"] == "HALF_OPEN"
    assert cb.allow_call("ledger") == (False, "half_open_probe_exhausted")
    cb.record_success("ledger")
    assert cb.snapshot()["ledger"]["state"] == "CLOSED"
