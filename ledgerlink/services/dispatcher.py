"""Outbox dispatcher: claims due jobs and runs their external side effects.

Per job the flow is claim -> prepare -> execute -> apply:

* ``claim`` is a conditional UPDATE in its own short transaction.
* ``prepare`` reads local state and runs the handler's idempotency guard; a
  ``None`` result means the effect is already recorded and the job is simply
  completed.
* ``execute`` performs the external call with no local transaction open,
  bounded by a timeout.
* ``apply`` writes the external reference and completes the job in one short
  transaction.

Any exception is caught per job and charged as an attempt (or released
without charge when the circuit for the target is open), so one bad job never
aborts the batch.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol

from sqlalchemy.orm import Session

from ledgerlink.config import OUTBOX_SETTINGS
from ledgerlink.exceptions import PermanentJobError
from ledgerlink.integrations.ledger import AnchorReceipt, LedgerClient
from ledgerlink.models.db import JobStatus, JobType, Record
from ledgerlink.services import outbox
from ledgerlink.utils import get_logger, log_business_event, log_performance
from ledgerlink.utils.circuit_breaker import CircuitBreaker
from ledgerlink.utils.time import Clock, SystemClock
from ledgerlink.utils.timeouts import run_with_timeout

logger = get_logger(__name__)


@dataclass(frozen=True)
class JobContext:
    id: int
    type: str
    payload: dict[str, Any]
    attempts: int


class JobHandler(Protocol):
    job_type: str
    breaker_key: Optional[str]

    def prepare(self, session: Session, job: JobContext) -> Any: ...

    def execute(self, prepared: Any) -> Any: ...

    def apply(self, session: Session, job: JobContext, prepared: Any, result: Any, now: datetime) -> None: ...


@dataclass(frozen=True)
class AnchorRequest:
    record_id: int
    memo: str


class LedgerAnchorHandler:
    """Anchors ``Record.content_hash`` on the public ledger."""

    job_type = JobType.LEDGER_ANCHOR.value
    breaker_key = "ledger"

    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    def prepare(self, session: Session, job: JobContext) -> AnchorRequest | None:
        record_id = job.payload.get("record_id")
        if record_id is None:
            raise PermanentJobError("ledger.anchor payload has no record_id")
        record = session.get(Record, record_id)
        if record is None:
            raise PermanentJobError(f"Record {record_id} not found")
        if record.tx_hash:
            logger.info("Record already anchored; skipping ledger call", record_id=record_id, tx_hash=record.tx_hash)
            return None
        return AnchorRequest(record_id=record.id, memo=record.content_hash)

    def execute(self, prepared: AnchorRequest) -> AnchorReceipt:
        # An earlier attempt may have reached the ledger before its local commit failed.
        existing = self.ledger.find_transaction_by_memo(prepared.memo)
        if existing is not None:
            logger.info(
                "Found existing ledger anchor for memo",
                record_id=prepared.record_id,
                tx_hash=existing.tx_hash,
            )
            return existing
        return self.ledger.submit_anchor(prepared.memo)

    def apply(self, session: Session, job: JobContext, prepared: AnchorRequest, result: AnchorReceipt, now: datetime) -> None:
        record = session.get(Record, prepared.record_id)
        if record is None:
            raise PermanentJobError(f"Record {prepared.record_id} disappeared before apply")
        if record.tx_hash and record.tx_hash != result.tx_hash:
            logger.warning(
                "Record anchored concurrently with a different transaction",
                record_id=record.id,
                existing_tx_hash=record.tx_hash,
                new_tx_hash=result.tx_hash,
            )
            return
        record.tx_hash = result.tx_hash
        record.anchored_at = now
        log_business_event(
            "record_anchored",
            {"record_id": record.id, "job_id": job.id, "tx_hash": result.tx_hash, "memo": prepared.memo},
        )


@dataclass
class DispatchStats:
    selected: int = 0
    claimed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    released: int = 0
    skipped: int = 0
    outcomes: dict[int, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, int]:
        return {
            "selected": self.selected,
            "claimed": self.claimed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "released": self.released,
            "skipped": self.skipped,
        }


class OutboxDispatcher:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        handlers: list[JobHandler],
        *,
        clock: Clock | None = None,
        breaker: CircuitBreaker | None = None,
        batch_size: int | None = None,
        max_attempts: int | None = None,
        call_timeout_seconds: float | None = None,
        rng: Optional[Callable[[float, float], float]] = None,
    ):
        self.session_factory = session_factory
        self.handlers = {h.job_type: h for h in handlers}
        self.clock = clock or SystemClock()
        self.breaker = breaker
        self.batch_size = int(batch_size or OUTBOX_SETTINGS["batch_size"])
        self.max_attempts = int(max_attempts or OUTBOX_SETTINGS["max_attempts"])
        self.call_timeout_seconds = float(
            call_timeout_seconds if call_timeout_seconds is not None else OUTBOX_SETTINGS["call_timeout_seconds"]
        )
        self.rng = rng

    def run_once(self) -> DispatchStats:
        """One dispatcher tick: recover orphans, then process a bounded batch."""
        started = time.time()
        stats = DispatchStats()
        now = self.clock.now()
        session = self.session_factory()
        try:
            outbox.recover_stale(session, now)
            job_ids = outbox.select_due(session, now, self.batch_size)
        finally:
            session.close()
        stats.selected = len(job_ids)

        for job_id in job_ids:
            outcome = self._process(job_id)
            stats.outcomes[job_id] = outcome
            if outcome != "skipped":
                stats.claimed += 1
            setattr(stats, outcome, getattr(stats, outcome) + 1)

        if job_ids:
            log_performance("outbox_dispatch", (time.time() - started) * 1000, stats.as_dict())
        return stats

    def _process(self, job_id: int) -> str:
        session = self.session_factory()
        stage = "claim"
        handler: JobHandler | None = None
        try:
            if not outbox.claim(session, job_id, self.clock.now()):
                return "skipped"

            stage = "prepare"
            row = outbox.get_job(session, job_id)
            job = JobContext(id=row.id, type=row.type, payload=dict(row.payload or {}), attempts=row.attempts)
            handler = self.handlers.get(job.type)
            if handler is None:
                raise PermanentJobError(f"No handler registered for job type '{job.type}'")

            prepared = handler.prepare(session, job)
            # end the read transaction before any network I/O
            session.rollback()

            if prepared is None:
                outbox.complete(session, job_id, self.clock.now())
                session.commit()
                logger.info("Outbox job short-circuited by idempotency guard", job_id=job_id, job_type=job.type)
                return "completed"

            # only jobs that will really call out take a breaker slot
            if self.breaker is not None and handler.breaker_key:
                allowed, reason = self.breaker.allow_call(handler.breaker_key)
                if not allowed:
                    outbox.release(session, job_id)
                    logger.warning("Circuit open; job released", job_id=job_id, target=handler.breaker_key, reason=reason)
                    return "released"

            stage = "execute"
            call_started = time.time()
            result = run_with_timeout(handler.execute, self.call_timeout_seconds, prepared)
            if self.breaker is not None and handler.breaker_key:
                self.breaker.record_success(handler.breaker_key)
            log_performance("outbox_external_call", (time.time() - call_started) * 1000, {"job_id": job_id, "job_type": job.type})

            stage = "apply"
            now = self.clock.now()
            handler.apply(session, job, prepared, result, now)
            if not outbox.complete(session, job_id, now):
                raise RuntimeError(f"Job {job_id} was no longer processing at apply time")
            session.commit()
            logger.info("Outbox job completed", job_id=job_id, job_type=job.type)
            return "completed"
        except PermanentJobError as e:
            session.rollback()
            logger.error("Outbox job hit permanent error", job_id=job_id, stage=stage, error=str(e))
            outbox.record_failure(session, job_id, str(e), self.clock.now(), permanent=True, max_attempts=self.max_attempts)
            return "failed"
        except Exception as e:
            session.rollback()
            if stage == "claim":
                logger.error("Outbox claim failed", job_id=job_id, error=str(e), exc_info=True)
                return "skipped"
            if stage == "execute" and self.breaker is not None and handler is not None and handler.breaker_key:
                self.breaker.record_failure(handler.breaker_key)
            logger.error(
                "Outbox job attempt failed",
                job_id=job_id,
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            status = outbox.record_failure(
                session,
                job_id,
                f"{type(e).__name__}: {e}",
                self.clock.now(),
                max_attempts=self.max_attempts,
                rng=self.rng,
            )
            if status is None:
                return "skipped"
            return "failed" if status == JobStatus.FAILED else "retried"
        finally:
            session.close()


__all__ = [
    "JobContext",
    "JobHandler",
    "AnchorRequest",
    "LedgerAnchorHandler",
    "DispatchStats",
    "OutboxDispatcher",
]
