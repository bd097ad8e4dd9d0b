"""Payment ledger state machine.

Every status change of a PaymentRecord goes through ``transition`` so that an
out-of-order provider event (e.g. ``failed`` arriving after ``completed``) is
rejected instead of silently overwriting state.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledgerlink.exceptions import InvalidTransitionError
from ledgerlink.models.db import PaymentRecord, PaymentStatus
from ledgerlink.utils import get_logger, log_business_event
from ledgerlink.utils.time import utc_now

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING,
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.CANCELLED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.CANCELLED: frozenset({PaymentStatus.PENDING}),
    PaymentStatus.REFUNDED: frozenset(),
}

# Columns a caller may seed on creation or refresh on a transition.
_MUTABLE_FIELDS = ("owner_id", "description", "provider_metadata")


@dataclass
class LedgerUpdate:
    record: PaymentRecord
    created: bool
    changed: bool
    previous_status: PaymentStatus | None = None


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _stamp(record: PaymentRecord, target: PaymentStatus, now: datetime, failure_reason: str | None) -> None:
    if target == PaymentStatus.COMPLETED:
        record.completed_at = now
        record.failure_reason = None
    elif target == PaymentStatus.REFUNDED:
        record.refunded_at = now
    elif target == PaymentStatus.FAILED:
        record.failure_reason = failure_reason


def transition(
    record: PaymentRecord,
    target: PaymentStatus,
    *,
    now: datetime | None = None,
    failure_reason: str | None = None,
) -> bool:
    """Move ``record`` to ``target``.

    Returns False (and changes nothing) when the record is already in the
    target state. Raises InvalidTransitionError for moves outside the table.
    """
    current = PaymentStatus(record.status)
    target = PaymentStatus(target)
    if current == target:
        return False
    if not can_transition(current, target):
        logger.warning(
            "Rejected payment status transition",
            payment_id=record.id,
            provider=record.provider_name,
            provider_payment_id=record.provider_payment_id,
            current=current.value,
            target=target.value,
        )
        raise InvalidTransitionError(current.value, target.value)
    record.status = target
    _stamp(record, target, now or utc_now(), failure_reason)
    return True


def find_payment(session: Session, provider_name: str, provider_payment_id: str) -> PaymentRecord | None:
    stmt = select(PaymentRecord).where(
        PaymentRecord.provider_name == provider_name,
        PaymentRecord.provider_payment_id == provider_payment_id,
    )
    return session.execute(stmt).scalar_one_or_none()


def find_or_create(
    session: Session,
    provider_name: str,
    provider_payment_id: str,
    target_status: PaymentStatus,
    initial_fields: Mapping[str, Any],
    *,
    now: datetime | None = None,
) -> LedgerUpdate:
    """Upsert-like entry point used by webhook ingestion.

    ``initial_fields`` carries ``amount``, ``currency_code`` and the optional
    ``owner_id``, ``description``, ``failure_reason``, ``idempotency_key`` and
    ``provider_metadata``. A new record is created directly in
    ``target_status``; an existing one is moved through ``transition``.

    The caller owns the transaction. A concurrent insert for the same
    provider payment surfaces as IntegrityError at flush/commit time and is
    left to the caller's retry path, which will then find the row.
    """
    now = now or utc_now()
    target_status = PaymentStatus(target_status)
    record = find_payment(session, provider_name, provider_payment_id)

    if record is None:
        record = PaymentRecord(
            provider_name=provider_name,
            provider_payment_id=provider_payment_id,
            amount=Decimal(str(initial_fields["amount"])),
            currency_code=str(initial_fields["currency_code"]).upper(),
            status=target_status,
            idempotency_key=initial_fields.get("idempotency_key"),
            created_at=now,
        )
        for field in _MUTABLE_FIELDS:
            if initial_fields.get(field) is not None:
                setattr(record, field, initial_fields[field])
        _stamp(record, target_status, now, initial_fields.get("failure_reason"))
        session.add(record)
        session.flush()
        logger.info(
            "Payment record created",
            payment_id=record.id,
            provider=provider_name,
            provider_payment_id=provider_payment_id,
            status=target_status.value,
        )
        log_business_event(
            "payment_created",
            {"payment_id": record.id, "provider": provider_name, "status": target_status.value},
        )
        return LedgerUpdate(record=record, created=True, changed=True, previous_status=None)

    previous = PaymentStatus(record.status)
    changed = transition(record, target_status, now=now, failure_reason=initial_fields.get("failure_reason"))
    if changed:
        for field in _MUTABLE_FIELDS:
            if initial_fields.get(field) is not None and getattr(record, field) is None:
                setattr(record, field, initial_fields[field])
        session.flush()
        logger.info(
            "Payment status transitioned",
            payment_id=record.id,
            provider=provider_name,
            provider_payment_id=provider_payment_id,
            previous=previous.value,
            status=target_status.value,
        )
        log_business_event(
            "payment_transitioned",
            {
                "payment_id": record.id,
                "provider": provider_name,
                "from_status": previous.value,
                "to_status": target_status.value,
            },
        )
    return LedgerUpdate(record=record, created=False, changed=changed, previous_status=previous)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "LedgerUpdate",
    "can_transition",
    "transition",
    "find_payment",
    "find_or_create",
]
