from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledgerlink.exceptions import InvalidTransitionError
from ledgerlink.models.db import PaymentRecord, PaymentStatus
from ledgerlink.services import payment_ledger


FIELDS = {"amount": Decimal("20.00"), "currency_code": "usd", "owner_id": "user_1", "description": "Order #1"}


def test_pending_to_completed_stamps_completed_at(payment_factory, clock):
    record = payment_factory("pi_1", status=PaymentStatus.PENDING)
    assert payment_ledger.transition(record, PaymentStatus.COMPLETED, now=clock.now()) is True
    assert record.status == PaymentStatus.COMPLETED
    assert record.completed_at == clock.now()


def test_same_state_is_a_no_op(payment_factory, clock):
    record = payment_factory("pi_2", status=PaymentStatus.COMPLETED)
    assert payment_ledger.transition(record, PaymentStatus.COMPLETED, now=clock.now()) is False


@pytest.mark.parametrize("current,target", [
    (PaymentStatus.REFUNDED, PaymentStatus.COMPLETED),
    (PaymentStatus.COMPLETED, PaymentStatus.FAILED),
    (PaymentStatus.COMPLETED, PaymentStatus.PENDING),
    (PaymentStatus.FAILED, PaymentStatus.COMPLETED),
    (PaymentStatus.PENDING, PaymentStatus.REFUNDED),
])
def test_illegal_transitions_raise(payment_factory, current, target):
    record = payment_factory(f"pi_{current.value}_{target.value}", status=current)
    with pytest.raises(InvalidTransitionError) as excinfo:
        payment_ledger.transition(record, target)
    assert excinfo.value.current == current.value
    assert excinfo.value.target == target.value
    assert record.status == current


def test_failed_payment_can_be_retried(payment_factory):
    record = payment_factory("pi_retry", status=PaymentStatus.FAILED)
    assert payment_ledger.can_transition(PaymentStatus.FAILED, PaymentStatus.PENDING)
    assert payment_ledger.transition(record, PaymentStatus.PENDING) is True


def test_failed_transition_records_reason(payment_factory):
    record = payment_factory("pi_fail", status=PaymentStatus.PROCESSING)
    payment_ledger.transition(record, PaymentStatus.FAILED, failure_reason="card_declined")
    assert record.failure_reason == "card_declined"


def test_find_or_create_creates_in_target_status(db_session, clock):
    update = payment_ledger.find_or_create(db_session, "stripe", "pi_new", PaymentStatus.COMPLETED, FIELDS, now=clock.now())
    db_session.commit()
    assert update.created is True
    record = update.record
    assert record.status == PaymentStatus.COMPLETED
    assert record.amount == Decimal("20.00")
    assert record.currency_code == "USD"
    assert record.owner_id == "user_1"
    assert record.completed_at is not None


def test_find_or_create_transitions_existing_record(db_session, clock):
    payment_ledger.find_or_create(db_session, "stripe", "pi_flow", PaymentStatus.PROCESSING, FIELDS, now=clock.now())
    db_session.commit()

    update = payment_ledger.find_or_create(db_session, "stripe", "pi_flow", PaymentStatus.COMPLETED, FIELDS, now=clock.now())
    db_session.commit()
    assert update.created is False
    assert update.changed is True
    assert update.previous_status == PaymentStatus.PROCESSING

    again = payment_ledger.find_or_create(db_session, "stripe", "pi_flow", PaymentStatus.COMPLETED, FIELDS, now=clock.now())
    assert again.changed is False
    assert db_session.scalar(select(func.count(PaymentRecord.id))) == 1


def test_find_or_create_rejects_out_of_order_event(db_session, clock):
    payment_ledger.find_or_create(db_session, "stripe", "pi_ooo", PaymentStatus.COMPLETED, FIELDS, now=clock.now())
    db_session.commit()
    with pytest.raises(InvalidTransitionError):
        payment_ledger.find_or_create(db_session, "stripe", "pi_ooo", PaymentStatus.FAILED, FIELDS, now=clock.now())
    db_session.rollback()
    record = payment_ledger.find_payment(db_session, "stripe", "pi_ooo")
    assert record.status == PaymentStatus.COMPLETED


def test_same_payment_id_under_different_providers_is_distinct(db_session, clock):
    payment_ledger.find_or_create(db_session, "stripe", "shared_1", PaymentStatus.COMPLETED, FIELDS, now=clock.now())
    payment_ledger.find_or_create(db_session, "paystack", "shared_1", PaymentStatus.FAILED, FIELDS, now=clock.now())
    db_session.commit()
    assert db_session.scalar(select(func.count(PaymentRecord.id))) == 2
