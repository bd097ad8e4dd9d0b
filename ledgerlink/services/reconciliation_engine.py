"""Reconciliation engine.

``run_reconciliation(session, feed, ...)`` walks a provider's transaction feed
and diffs it against the local payment ledger:

1. Creates a ``running`` ReconciliationRun and resolves the start cursor
   (explicit cursor, else the provider's stored cursor, else the beginning).
2. Fetches one page at a time with no local transaction open, bounded by a
   timeout.
3. Classifies every entry against its PaymentRecord and stores one
   ReconciliationItem per mismatch.
4. Commits the page's items together with the advanced cursor, so a crash
   leaves the cursor at the last fully processed page.
5. After a full scan (started from the beginning) runs the inverse pass that
   flags local settled payments the provider never listed.
6. Marks the run completed (or failed with the error in ``summary``) and hands
   new items to the notifier.

PaymentRecords are only read here; follow-up is left to operators.
"""
from __future__ import annotations

import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerlink.config import RECONCILIATION_SETTINGS
from ledgerlink.integrations.feeds.base import FeedEntry, ProviderFeed
from ledgerlink.models.db import (
    MismatchType,
    PaymentRecord,
    PaymentStatus,
    ProviderCursor,
    ReconciliationItem,
    ReconciliationRun,
    RunStatus,
)
from ledgerlink.services.alerting import LoggingNotifier, Notifier, dispatch_pending_alerts
from ledgerlink.services.payment_ledger import find_payment
from ledgerlink.utils import get_logger, log_business_event, log_performance
from ledgerlink.utils.money import quantize
from ledgerlink.utils.time import Clock, SystemClock
from ledgerlink.utils.timeouts import run_with_timeout

logger = get_logger(__name__)

SETTLED_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.REFUNDED)
# Provider statuses that are final enough to compare with the local state.
_COMPARABLE_PROVIDER_STATUSES = {PaymentStatus.COMPLETED.value, PaymentStatus.FAILED.value}


def classify_entry(entry: FeedEntry, local: PaymentRecord | None) -> list[tuple[MismatchType, dict[str, Any]]]:
    """Return every mismatch between one provider entry and its local record."""
    if local is None:
        return [(MismatchType.MISSING_LOCAL, {
            "provider_amount": str(entry.amount),
            "currency": entry.currency,
            "provider_status": entry.status,
        })]

    mismatches: list[tuple[MismatchType, dict[str, Any]]] = []
    local_status = PaymentStatus(local.status)
    local_amount = quantize(Decimal(local.amount))
    provider_amount = quantize(entry.amount)

    if local_amount != provider_amount:
        mismatches.append((MismatchType.AMOUNT_MISMATCH, {
            "local_amount": str(local_amount),
            "provider_amount": str(provider_amount),
            "currency": entry.currency,
        }))
    if entry.refunded and local_status != PaymentStatus.REFUNDED:
        mismatches.append((MismatchType.REFUND_MISSING, {
            "local_status": local_status.value,
            "provider_status": entry.status,
        }))
    if local.currency_code.upper() != entry.currency.upper():
        mismatches.append((MismatchType.OTHER, {
            "reason": "currency_mismatch",
            "local_currency": local.currency_code,
            "provider_currency": entry.currency,
        }))
    elif not entry.refunded and entry.status in _COMPARABLE_PROVIDER_STATUSES and local_status.value != entry.status:
        mismatches.append((MismatchType.OTHER, {
            "reason": "status_drift",
            "local_status": local_status.value,
            "provider_status": entry.status,
        }))
    return mismatches


def _ensure_cursor(session: Session, provider: str) -> ProviderCursor:
    row = session.execute(select(ProviderCursor).where(ProviderCursor.provider_name == provider)).scalar_one_or_none()
    if row is not None:
        return row
    try:
        row = ProviderCursor(provider_name=provider, cursor=None)
        session.add(row)
        session.commit()
        return row
    except IntegrityError:
        session.rollback()
        return session.execute(select(ProviderCursor).where(ProviderCursor.provider_name == provider)).scalar_one()


def _summary(counts: dict[str, Any], **extra: Any) -> dict[str, Any]:
    data = {k: (dict(v) if isinstance(v, dict) else v) for k, v in counts.items()}
    data.update(extra)
    return data


def _record_items(session: Session, run_id: int, entry_id: str, local_id: int | None,
                  mismatches: Iterable[tuple[MismatchType, dict[str, Any]]], counts: dict[str, Any]) -> None:
    for mismatch_type, details in mismatches:
        session.add(ReconciliationItem(
            run_id=run_id,
            external_id=entry_id,
            local_record_id=local_id,
            mismatch_type=mismatch_type,
            details=details,
            alerted=False,
        ))
        counts["mismatches"] += 1
        by_type = counts["by_type"]
        by_type[mismatch_type.value] = by_type.get(mismatch_type.value, 0) + 1


def _inverse_pass(session: Session, run_id: int, provider: str, seen: set[str], started_at: datetime, counts: dict[str, Any]) -> None:
    rows = session.execute(
        select(PaymentRecord.id, PaymentRecord.provider_payment_id, PaymentRecord.status, PaymentRecord.amount, PaymentRecord.currency_code)
        .where(
            PaymentRecord.provider_name == provider,
            PaymentRecord.status.in_(SETTLED_STATUSES),
            PaymentRecord.created_at < started_at,
        )
        .order_by(PaymentRecord.id)
    ).all()
    missing = 0
    for record_id, payment_id, status, amount, currency in rows:
        if payment_id in seen:
            continue
        missing += 1
        _record_items(session, run_id, payment_id, record_id, [(MismatchType.MISSING_PROVIDER, {
            "local_status": PaymentStatus(status).value,
            "local_amount": str(amount),
            "currency": currency,
        })], counts)
    counts["inverse_checked"] = len(rows)
    logger.info("Inverse reconciliation pass finished", run_id=run_id, provider=provider, checked=len(rows), missing=missing)


def run_reconciliation(
    session: Session,
    feed: ProviderFeed,
    *,
    cursor: Optional[str] = None,
    full_scan: bool = False,
    clock: Clock | None = None,
    page_size: int | None = None,
    fetch_timeout_seconds: float | None = None,
    inverse_pass: bool | None = None,
    notifier: Notifier | None = None,
) -> ReconciliationRun:
    """Run one reconciliation pass for ``feed``; never raises for feed or page errors.

    ``cursor`` overrides the stored bookmark; ``full_scan`` ignores it and
    starts from the beginning of the feed.
    """
    clock = clock or SystemClock()
    provider = feed.name
    page_size = int(page_size or RECONCILIATION_SETTINGS["page_size"])
    timeout = float(fetch_timeout_seconds if fetch_timeout_seconds is not None else RECONCILIATION_SETTINGS["fetch_timeout_seconds"])
    inverse_enabled = bool(RECONCILIATION_SETTINGS["inverse_pass_enabled"] if inverse_pass is None else inverse_pass)
    started = time.time()

    cursor_row = _ensure_cursor(session, provider)
    if cursor is not None:
        start_cursor: Optional[str] = cursor
    elif full_scan:
        start_cursor = None
    else:
        start_cursor = cursor_row.cursor
    is_full_scan = start_cursor is None

    started_at = clock.now()
    run = ReconciliationRun(
        provider_name=provider,
        status=RunStatus.RUNNING,
        start_cursor=start_cursor,
        cursor=start_cursor,
        summary={},
        started_at=started_at,
    )
    session.add(run)
    session.commit()
    run_id = run.id
    cursor_row_id = cursor_row.id
    logger.info("Reconciliation run started", run_id=run_id, provider=provider, start_cursor=start_cursor, full_scan=is_full_scan)

    counts: dict[str, Any] = {"pages": 0, "entries": 0, "mismatches": 0, "by_type": {}}
    seen: set[str] = set()
    current = start_cursor
    try:
        while True:
            page = run_with_timeout(feed.fetch_page, timeout, current, page_size)
            for entry in page.entries:
                seen.add(entry.external_id)
                local = find_payment(session, provider, entry.external_id)
                _record_items(session, run_id, entry.external_id, local.id if local else None,
                              classify_entry(entry, local), counts)
            counts["pages"] += 1
            counts["entries"] += len(page.entries)
            current = page.next_cursor

            run_row = session.get(ReconciliationRun, run_id)
            bookmark = session.get(ProviderCursor, cursor_row_id)
            run_row.cursor = current
            run_row.summary = _summary(counts)
            bookmark.cursor = current
            session.commit()
            logger.debug("Reconciliation page committed", run_id=run_id, page=counts["pages"], cursor=current)
            if not page.has_more:
                break

        if is_full_scan and inverse_enabled:
            _inverse_pass(session, run_id, provider, seen, started_at, counts)

        finished_at = clock.now()
        run_row = session.get(ReconciliationRun, run_id)
        bookmark = session.get(ProviderCursor, cursor_row_id)
        run_row.status = RunStatus.COMPLETED
        run_row.finished_at = finished_at
        run_row.summary = _summary(counts, full_scan=is_full_scan)
        bookmark.last_reconciled_at = finished_at
        session.commit()
        logger.info("Reconciliation run completed", run_id=run_id, provider=provider, **_summary(counts))
        log_business_event("reconciliation_completed", {"run_id": run_id, "provider": provider, "mismatches": counts["mismatches"]})
    except Exception as e:
        session.rollback()
        run_row = session.get(ReconciliationRun, run_id)
        run_row.status = RunStatus.FAILED
        run_row.finished_at = clock.now()
        run_row.summary = _summary(counts, error=f"{type(e).__name__}: {e}")
        session.commit()
        logger.error(
            "Reconciliation run failed",
            run_id=run_id,
            provider=provider,
            cursor=run_row.cursor,
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )

    log_performance("reconciliation_run", (time.time() - started) * 1000, {"provider": provider, "run_id": run_id})
    dispatch_pending_alerts(session, run_id, notifier or LoggingNotifier())
    run = session.get(ReconciliationRun, run_id)
    session.refresh(run)
    return run


def list_runs(session: Session, *, provider: str | None = None, limit: int = 50, offset: int = 0) -> list[ReconciliationRun]:
    stmt = select(ReconciliationRun)
    if provider:
        stmt = stmt.where(ReconciliationRun.provider_name == provider)
    stmt = stmt.order_by(ReconciliationRun.id.desc()).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars())


def list_items(
    session: Session,
    run_id: int,
    *,
    mismatch_type: MismatchType | None = None,
    limit: int = 100,
    offset: int = 0,
) -> list[ReconciliationItem]:
    stmt = select(ReconciliationItem).where(ReconciliationItem.run_id == run_id)
    if mismatch_type is not None:
        stmt = stmt.where(ReconciliationItem.mismatch_type == mismatch_type)
    stmt = stmt.order_by(ReconciliationItem.id).limit(limit).offset(offset)
    return list(session.execute(stmt).scalars())


__all__ = ["run_reconciliation", "classify_entry", "list_runs", "list_items", "SETTLED_STATUSES"]
