"""Transactional outbox: durable job store for deferred external side effects.

``enqueue`` participates in the caller's transaction so the job commits or
rolls back together with the business change that produced it. Every state
change made by a worker afterwards is a single conditional UPDATE whose
rowcount decides the outcome; no lock service is involved.
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerlink.config import OUTBOX_SETTINGS
from ledgerlink.models.db import JobStatus, JobType, OutboxJob, Record
from ledgerlink.utils import get_logger
from ledgerlink.utils.backoff import compute_backoff_seconds
from ledgerlink.utils.hashing import content_hash
from ledgerlink.utils.time import utc_now

logger = get_logger(__name__)


def find_job(session: Session, job_type: str, idempotency_key: str) -> OutboxJob | None:
    stmt = select(OutboxJob).where(OutboxJob.type == job_type, OutboxJob.idempotency_key == idempotency_key)
    return session.execute(stmt).scalar_one_or_none()


def get_job(session: Session, job_id: int) -> OutboxJob:
    job = session.get(OutboxJob, job_id)
    if job is None:
        raise LookupError(f"Outbox job {job_id} not found")
    return job


def enqueue(
    session: Session,
    job_type: str,
    payload: dict[str, Any],
    idempotency_key: str,
    *,
    now: datetime | None = None,
) -> OutboxJob:
    """Insert a pending job unless one already exists for ``(job_type, idempotency_key)``.

    Does not commit. Returns the existing job on a repeat call.
    """
    existing = find_job(session, job_type, idempotency_key)
    if existing is not None:
        logger.debug("Outbox enqueue no-op (existing job)", job_id=existing.id, job_type=job_type, key=idempotency_key)
        return existing
    job = OutboxJob(
        type=job_type,
        payload=dict(payload),
        status=JobStatus.PENDING,
        attempts=0,
        next_run_at=now or utc_now(),
        idempotency_key=idempotency_key,
    )
    session.add(job)
    session.flush()
    logger.info("Outbox job enqueued", job_id=job.id, job_type=job_type, key=idempotency_key)
    return job


def enqueue_ledger_anchor(session: Session, record_id: int, *, now: datetime | None = None) -> int:
    """Queue anchoring of a record; idempotent per record id. Commits."""
    key = f"record:{record_id}"
    try:
        job = enqueue(session, JobType.LEDGER_ANCHOR.value, {"record_id": record_id}, key, now=now)
        session.commit()
    except IntegrityError:
        # lost an insert race against another enqueue for the same record
        session.rollback()
        job = find_job(session, JobType.LEDGER_ANCHOR.value, key)
        if job is None:
            raise
    return job.id


def save_and_anchor_record(session: Session, content: dict[str, Any], *, now: datetime | None = None) -> tuple[Record, OutboxJob]:
    """Create a record and its anchoring job in one local transaction."""
    record = Record(content=content, content_hash=content_hash(content))
    session.add(record)
    session.flush()
    job = enqueue(session, JobType.LEDGER_ANCHOR.value, {"record_id": record.id}, f"record:{record.id}", now=now)
    session.commit()
    session.refresh(record)
    session.refresh(job)
    return record, job


def select_due(session: Session, now: datetime, limit: int | None = None) -> list[int]:
    """Ids of pending jobs whose ``next_run_at`` has passed, oldest first."""
    limit = int(limit or OUTBOX_SETTINGS["batch_size"])
    stmt = (
        select(OutboxJob.id)
        .where(OutboxJob.status == JobStatus.PENDING, OutboxJob.next_run_at <= now)
        .order_by(OutboxJob.next_run_at, OutboxJob.id)
        .limit(limit)
    )
    return list(session.execute(stmt).scalars())


def claim(session: Session, job_id: int, now: datetime) -> bool:
    """Atomically move a job pending -> processing. Commits.

    False means another worker claimed it first (zero rows affected).
    """
    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.id == job_id, OutboxJob.status == JobStatus.PENDING)
        .values(status=JobStatus.PROCESSING, locked_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    claimed = result.rowcount == 1
    if claimed:
        logger.debug("Outbox job claimed", job_id=job_id)
    else:
        logger.debug("Outbox job already claimed elsewhere", job_id=job_id)
    return claimed


def complete(session: Session, job_id: int, now: datetime) -> bool:
    """processing -> completed. Does not commit; meant for the caller's apply transaction."""
    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.id == job_id, OutboxJob.status == JobStatus.PROCESSING)
        .values(status=JobStatus.COMPLETED, completed_at=now, last_error=None, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def release(session: Session, job_id: int) -> bool:
    """processing -> pending without charging an attempt. Commits."""
    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.id == job_id, OutboxJob.status == JobStatus.PROCESSING)
        .values(status=JobStatus.PENDING, locked_at=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    return result.rowcount == 1


def record_failure(
    session: Session,
    job_id: int,
    error: str,
    now: datetime,
    *,
    permanent: bool = False,
    max_attempts: int | None = None,
    rng: Optional[Callable[[float, float], float]] = None,
) -> JobStatus | None:
    """Charge an attempt to a processing job and schedule the retry. Commits.

    The job becomes terminal ``failed`` once attempts reach ``max_attempts``
    or immediately when ``permanent`` is set.
    """
    max_attempts = int(max_attempts or OUTBOX_SETTINGS["max_attempts"])
    job = session.get(OutboxJob, job_id)
    if job is None or job.status != JobStatus.PROCESSING:
        logger.warning("Failure reported for job not in processing", job_id=job_id)
        session.rollback()
        return None

    attempts = job.attempts + 1
    if permanent or attempts >= max_attempts:
        new_status = JobStatus.FAILED
        next_run_at = job.next_run_at
    else:
        new_status = JobStatus.PENDING
        next_run_at = now + timedelta(seconds=compute_backoff_seconds(attempts, rng=rng or random.uniform))

    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.id == job_id, OutboxJob.status == JobStatus.PROCESSING)
        .values(
            status=new_status,
            attempts=attempts,
            next_run_at=next_run_at,
            last_error=error[:2000],
            locked_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount != 1:
        return None

    if new_status == JobStatus.FAILED:
        logger.error(
            "Outbox job failed permanently",
            job_id=job_id,
            job_type=job.type,
            attempts=attempts,
            error=error,
            permanent=permanent,
        )
    else:
        logger.warning(
            "Outbox job scheduled for retry",
            job_id=job_id,
            job_type=job.type,
            attempts=attempts,
            next_run_at=next_run_at.isoformat(),
            error=error,
        )
    return new_status


def requeue(session: Session, job_id: int, now: datetime | None = None) -> bool:
    """Operator action: failed -> pending with a fresh attempt budget. Commits."""
    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.id == job_id, OutboxJob.status == JobStatus.FAILED)
        .values(status=JobStatus.PENDING, attempts=0, next_run_at=now or utc_now(), last_error=None)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    requeued = result.rowcount == 1
    if requeued:
        logger.info("Outbox job requeued", job_id=job_id)
    return requeued


def recover_stale(session: Session, now: datetime, stale_after_seconds: float | None = None) -> int:
    """Return jobs orphaned in ``processing`` by a crashed worker to pending. Commits.

    The attempt is not charged; the handler's idempotency guard makes the
    re-run safe.
    """
    stale_after = float(stale_after_seconds or OUTBOX_SETTINGS["stale_after_seconds"])
    cutoff = now - timedelta(seconds=stale_after)
    result = session.execute(
        update(OutboxJob)
        .where(OutboxJob.status == JobStatus.PROCESSING, OutboxJob.locked_at < cutoff)
        .values(status=JobStatus.PENDING, locked_at=None, next_run_at=now)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    if result.rowcount:
        logger.warning("Recovered stale outbox jobs", count=result.rowcount)
    return result.rowcount


def list_jobs(
    session: Session,
    *,
    status: JobStatus | None = None,
    job_type: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[OutboxJob]:
    stmt = select(OutboxJob)
    if status is not None:
        stmt = stmt.where(OutboxJob.status == status)
    if job_type:
        stmt = stmt.where(OutboxJob.type == job_type)
    stmt = stmt.order_by(OutboxJob.id.desc()).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars())


__all__ = [
    "enqueue",
    "enqueue_ledger_anchor",
    "save_and_anchor_record",
    "find_job",
    "get_job",
    "select_due",
    "claim",
    "complete",
    "release",
    "record_failure",
    "requeue",
    "recover_stale",
    "list_jobs",
]
