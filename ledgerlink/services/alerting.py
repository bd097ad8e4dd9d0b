"""Alert hand-off for reconciliation mismatches.

Mismatches are never auto-corrected; they are handed to an injected
``Notifier`` once and flagged ``alerted`` so later runs do not re-send them.
Delivery transports (email, chat, sockets) live behind the Notifier and are
not part of this service.
"""
from __future__ import annotations

from typing import Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledgerlink.models.db import MismatchType, ReconciliationItem, ReconciliationRun
from ledgerlink.utils import get_logger, log_business_event

logger = get_logger(__name__)

# Mismatches that mean money moved without the local ledger knowing.
HIGH_SEVERITY = frozenset({MismatchType.MISSING_LOCAL, MismatchType.REFUND_MISSING, MismatchType.AMOUNT_MISMATCH})


class Notifier(Protocol):
    def notify(self, run: ReconciliationRun, items: Sequence[ReconciliationItem]) -> None: ...


class LoggingNotifier:
    """Default notifier: one structured warning per mismatch plus an audit event."""

    def notify(self, run: ReconciliationRun, items: Sequence[ReconciliationItem]) -> None:
        for item in items:
            mismatch = MismatchType(item.mismatch_type)
            logger.warning(
                "Reconciliation mismatch",
                run_id=run.id,
                provider=run.provider_name,
                item_id=item.id,
                external_id=item.external_id,
                local_record_id=item.local_record_id,
                mismatch_type=mismatch.value,
                severity="HIGH" if mismatch in HIGH_SEVERITY else "MEDIUM",
                details=item.details,
            )
        log_business_event(
            "reconciliation_mismatches_reported",
            {"run_id": run.id, "provider": run.provider_name, "count": len(items)},
        )


def dispatch_pending_alerts(session: Session, run_id: int, notifier: Notifier) -> int:
    """Send a run's unalerted items and mark them alerted; returns how many were sent.

    A notifier failure leaves the items unalerted for the next attempt.
    """
    run = session.get(ReconciliationRun, run_id)
    if run is None:
        return 0
    items = list(session.execute(
        select(ReconciliationItem)
        .where(ReconciliationItem.run_id == run_id, ReconciliationItem.alerted.is_(False))
        .order_by(ReconciliationItem.id)
    ).scalars())
    if not items:
        return 0
    try:
        notifier.notify(run, items)
    except Exception as e:
        session.rollback()
        logger.error("Alert notifier failed", run_id=run_id, count=len(items), error=str(e), exc_info=True)
        return 0
    for item in items:
        item.alerted = True
    session.commit()
    return len(items)


__all__ = ["Notifier", "LoggingNotifier", "dispatch_pending_alerts", "HIGH_SEVERITY"]
