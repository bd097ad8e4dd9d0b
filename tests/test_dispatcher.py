from datetime import timedelta

from ledgerlink.models.db import JobStatus, OutboxJob, Record
from ledgerlink.services import outbox
from ledgerlink.services.dispatcher import LedgerAnchorHandler, OutboxDispatcher

from conftest import no_jitter


def _fresh(session, model, pk):
    session.expire_all()
    return session.get(model, pk)


class CrashOnceApplyHandler(LedgerAnchorHandler):
    """Simulates the process dying after the ledger accepted the transaction."""

    def __init__(self, ledger):
        super().__init__(ledger)
        self.crashed = False

    def apply(self, session, job, prepared, result, now):
        if not self.crashed:
            self.crashed = True
            raise RuntimeError("worker died before local commit")
        super().apply(session, job, prepared, result, now)


class OtherHandler:
    job_type = "other.job"
    breaker_key = None

    def prepare(self, session, job):
        return job.payload

    def execute(self, prepared):
        return "ok"

    def apply(self, session, job, prepared, result, now):
        pass


def test_anchor_happy_path(dispatcher, db_session, fake_ledger, clock):
    record, job = outbox.save_and_anchor_record(db_session, {"order": 1}, now=clock.now())

    stats = dispatcher.run_once()
    assert stats.selected == 1
    assert stats.completed == 1
    assert fake_ledger.submissions == 1

    record = _fresh(db_session, Record, record.id)
    assert record.tx_hash is not None
    assert record.is_anchored
    assert fake_ledger.fetch_memo(record.tx_hash) == record.content_hash
    job = _fresh(db_session, OutboxJob, job.id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at is not None

    # nothing left to do
    assert dispatcher.run_once().selected == 0


def test_crash_between_ledger_and_commit_does_not_double_anchor(session_factory, db_session, fake_ledger, clock):
    handler = CrashOnceApplyHandler(fake_ledger)
    dispatcher = OutboxDispatcher(session_factory, [handler], clock=clock, max_attempts=3, rng=no_jitter)
    record, job = outbox.save_and_anchor_record(db_session, {"order": 2}, now=clock.now())

    first = dispatcher.run_once()
    assert first.retried == 1
    assert fake_ledger.submissions == 1
    assert _fresh(db_session, Record, record.id).tx_hash is None
    row = _fresh(db_session, OutboxJob, job.id)
    assert row.status == JobStatus.PENDING
    assert row.attempts == 1

    clock.advance(seconds=5)
    second = dispatcher.run_once()
    assert second.completed == 1
    # the earlier transaction was found by memo instead of being submitted again
    assert fake_ledger.submissions == 1
    record = _fresh(db_session, Record, record.id)
    assert record.tx_hash == next(iter(fake_ledger.transactions))


def test_already_anchored_record_short_circuits(dispatcher, db_session, fake_ledger, clock):
    record, job = outbox.save_and_anchor_record(db_session, {"order": 3}, now=clock.now())
    record.tx_hash = "ab" * 32
    db_session.commit()

    stats = dispatcher.run_once()
    assert stats.completed == 1
    assert fake_ledger.submissions == 0
    assert _fresh(db_session, OutboxJob, job.id).status == JobStatus.COMPLETED


def test_transient_failures_exhaust_attempts(session_factory, db_session, fake_ledger, clock):
    dispatcher = OutboxDispatcher(
        session_factory, [LedgerAnchorHandler(fake_ledger)], clock=clock, max_attempts=3, rng=no_jitter,
    )
    fake_ledger.fail_submissions = 10
    _, job = outbox.save_and_anchor_record(db_session, {"order": 4}, now=clock.now())

    outcomes = []
    for _ in range(3):
        outcomes.append(dispatcher.run_once().outcomes.get(job.id))
        clock.advance(seconds=120)
    assert outcomes == ["retried", "retried", "failed"]

    row = _fresh(db_session, OutboxJob, job.id)
    assert row.status == JobStatus.FAILED
    assert row.attempts == 3
    assert "ConnectionError" in row.last_error
    # failed jobs are never selected again
    assert dispatcher.run_once().selected == 0


def test_missing_record_fails_permanently(dispatcher, db_session, clock):
    job = outbox.enqueue(db_session, "ledger.anchor", {"record_id": 9999}, "record:9999", now=clock.now())
    db_session.commit()

    stats = dispatcher.run_once()
    assert stats.failed == 1
    row = _fresh(db_session, OutboxJob, job.id)
    assert row.status == JobStatus.FAILED
    assert row.attempts == 1
    assert "not found" in row.last_error


def test_unknown_job_type_fails_permanently(dispatcher, db_session, clock):
    job = outbox.enqueue(db_session, "mystery.job", {}, "mystery:1", now=clock.now())
    db_session.commit()

    assert dispatcher.run_once().outcomes[job.id] == "failed"
    assert "No handler registered" in _fresh(db_session, OutboxJob, job.id).last_error


def test_open_circuit_releases_jobs_without_charging_attempts(dispatcher, db_session, fake_ledger, clock):
    fake_ledger.fail_submissions = 10
    jobs = [outbox.save_and_anchor_record(db_session, {"order": n}, now=clock.now())[1] for n in range(3)]

    stats = dispatcher.run_once()
    assert stats.retried == 2
    assert stats.released == 1
    released = _fresh(db_session, OutboxJob, jobs[2].id)
    assert released.status == JobStatus.PENDING
    assert released.attempts == 0

    # after the cooldown a trial call goes through and closes the circuit
    fake_ledger.fail_submissions = 0
    clock.advance(seconds=61)
    stats = dispatcher.run_once()
    assert stats.completed >= 1
    assert dispatcher.breaker.snapshot()["ledger"]["state"] == "CLOSED"


def test_already_anchored_job_does_not_use_up_half_open_trial(dispatcher, db_session, fake_ledger, clock):
    dispatcher.breaker.record_failure("ledger")
    dispatcher.breaker.record_failure("ledger")
    assert dispatcher.breaker.snapshot()["ledger"]["state"] == "OPEN"

    anchored, anchored_job = outbox.save_and_anchor_record(db_session, {"order": 30}, now=clock.now())
    anchored.tx_hash = "cd" * 32
    db_session.commit()
    _, fresh_job = outbox.save_and_anchor_record(db_session, {"order": 31}, now=clock.now())

    clock.advance(seconds=61)
    stats = dispatcher.run_once()
    assert stats.outcomes == {anchored_job.id: "completed", fresh_job.id: "completed"}
    assert stats.released == 0
    assert fake_ledger.submissions == 1
    assert dispatcher.breaker.snapshot()["ledger"]["state"] == "CLOSED"


def test_slow_ledger_call_times_out_and_is_retried(session_factory, db_session, fake_ledger, clock):
    fake_ledger.delay_seconds = 0.5
    dispatcher = OutboxDispatcher(
        session_factory, [LedgerAnchorHandler(fake_ledger)], clock=clock, call_timeout_seconds=0.05, rng=no_jitter,
    )
    _, job = outbox.save_and_anchor_record(db_session, {"order": 5}, now=clock.now())

    assert dispatcher.run_once().outcomes[job.id] == "retried"
    row = _fresh(db_session, OutboxJob, job.id)
    assert "ExternalCallTimeout" in row.last_error


def test_stale_processing_job_is_recovered(dispatcher, db_session, clock):
    _, job = outbox.save_and_anchor_record(db_session, {"order": 6}, now=clock.now())
    outbox.claim(db_session, job.id, clock.now())

    assert dispatcher.run_once().selected == 0
    clock.advance(minutes=11)
    stats = dispatcher.run_once()
    assert stats.completed == 1
    assert _fresh(db_session, OutboxJob, job.id).attempts == 0


def test_handlers_are_dispatched_by_job_type(session_factory, db_session, fake_ledger, clock):
    dispatcher = OutboxDispatcher(session_factory, [LedgerAnchorHandler(fake_ledger), OtherHandler()], clock=clock)
    other = outbox.enqueue(db_session, "other.job", {"k": "v"}, "other:1", now=clock.now())
    db_session.commit()
    _, anchor = outbox.save_and_anchor_record(db_session, {"order": 7}, now=clock.now() - timedelta(seconds=1))

    stats = dispatcher.run_once()
    assert stats.outcomes == {anchor.id: "completed", other.id: "completed"}
