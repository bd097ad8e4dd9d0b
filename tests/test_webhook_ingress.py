import json
from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledgerlink.exceptions import ConfigurationError, WebhookSignatureError
from ledgerlink.models.db import PaymentRecord, PaymentStatus, WebhookEvent, WebhookStatus
from ledgerlink.services import payment_ledger
from ledgerlink.services.webhook_ingress import WebhookIngress, get_event_status, resolve_provider
from ledgerlink.services.webhook_signatures import sign_payload

from conftest import WEBHOOK_SECRETS, no_jitter


def stripe_body(event_id="evt_1", event_type="payment_intent.succeeded", payment_id="pi_1", amount=2000, currency="usd"):
    return json.dumps({
        "id": event_id,
        "type": event_type,
        "data": {"object": {"id": payment_id, "amount": amount, "currency": currency, "metadata": {"userId": "user_1"}}},
    }).encode()


def stripe_headers(body, secret=WEBHOOK_SECRETS["stripe"]):
    # signed at wall-clock time; the stripe SDK checks tolerance against time.time()
    return {"Stripe-Signature": sign_payload("stripe", body, secret)}


def count(session, model):
    session.expire_all()
    return session.scalar(select(func.count(model.id)))


# ---------- Service level ----------

def test_ingest_creates_payment_and_dedups_redelivery(db_session, ingress, clock):
    body = stripe_body()
    first = ingress.ingest(db_session, "stripe", body, stripe_headers(body), request_id="req-1")
    assert first.status == WebhookStatus.PROCESSED
    assert first.payment_record_id is not None

    record = db_session.get(PaymentRecord, first.payment_record_id)
    assert record.status == PaymentStatus.COMPLETED
    assert record.amount == Decimal("20.00")
    assert record.currency_code == "USD"
    assert record.idempotency_key == first.webhook_id

    clock.advance(seconds=30)
    second = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert second.duplicate
    assert second.payment_record_id == first.payment_record_id
    assert count(db_session, PaymentRecord) == 1
    assert count(db_session, WebhookEvent) == 2


def test_concurrent_duplicate_delivery_ends_as_duplicate(db_session, ingress, monkeypatch):
    body = stripe_body()
    first = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert first.status == WebhookStatus.PROCESSED

    # second delivery passes the early dedup check before the first one commits
    real = ingress._find_processed
    calls = {"n": 0}

    def racing(session, event):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return real(session, event)

    monkeypatch.setattr(ingress, "_find_processed", racing)
    second = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert second.duplicate
    assert second.payment_record_id == first.payment_record_id
    assert calls["n"] == 2

    db_session.expire_all()
    statuses = sorted(e.status.value for e in db_session.execute(select(WebhookEvent)).scalars())
    assert statuses == ["duplicate", "processed"]
    assert count(db_session, PaymentRecord) == 1


def test_audit_row_keeps_request_context(db_session, ingress):
    body = stripe_body()
    result = ingress.ingest(db_session, "stripe", body, stripe_headers(body),
                            request_id="req-9", ip_address="10.0.0.1", user_agent="Stripe/1.0")
    event = db_session.execute(select(WebhookEvent).where(WebhookEvent.webhook_id == result.webhook_id)).scalar_one()
    assert event.raw_payload == body.decode()
    assert event.payload["id"] == "evt_1"
    assert event.signature_valid is True
    assert (event.request_id, event.ip_address, event.user_agent) == ("req-9", "10.0.0.1", "Stripe/1.0")
    assert event.external_event_id == "evt_1"
    assert event.processed_at is not None


def test_invalid_signature_is_stored_then_raised(db_session, ingress):
    body = stripe_body()
    with pytest.raises(WebhookSignatureError, match="invalid signature"):
        ingress.ingest(db_session, "stripe", body, stripe_headers(body, secret="wrong"))
    event = db_session.execute(select(WebhookEvent)).scalar_one()
    assert event.status == WebhookStatus.FAILED
    assert event.signature_valid is False
    assert event.next_retry_at is None
    assert count(db_session, PaymentRecord) == 0


def test_missing_secret_is_a_configuration_error(db_session, clock):
    ingress = WebhookIngress({"stripe": WEBHOOK_SECRETS["stripe"]}, clock=clock)
    body = b'{"event":"payment.captured"}'
    with pytest.raises(ConfigurationError):
        ingress.ingest(db_session, "razorpay", body, {"X-Razorpay-Signature": "abc"})


def test_out_of_order_event_is_rejected_without_retry(db_session, ingress):
    ok = stripe_body()
    ingress.ingest(db_session, "stripe", ok, stripe_headers(ok))
    late = stripe_body(event_id="evt_2", event_type="payment_intent.payment_failed")
    result = ingress.ingest(db_session, "stripe", late, stripe_headers(late))
    assert result.status == WebhookStatus.FAILED
    assert result.message.startswith("rejected:")
    assert result.retry_scheduled is False
    record = payment_ledger.find_payment(db_session, "stripe", "pi_1")
    assert record.status == PaymentStatus.COMPLETED


def test_malformed_json_fails_permanently(db_session, ingress):
    body = b"not json"
    result = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert result.status == WebhookStatus.FAILED
    assert result.message == "rejected: malformed payload"
    assert result.retry_scheduled is False


def test_transient_failure_is_retried_by_worker(db_session, session_factory, ingress, clock, monkeypatch):
    real = payment_ledger.find_or_create
    calls = {"n": 0}

    def flaky(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("database is locked")
        return real(*args, **kwargs)

    monkeypatch.setattr(payment_ledger, "find_or_create", flaky)
    body = stripe_body()
    result = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert result.status == WebhookStatus.FAILED
    assert result.retry_scheduled is True
    assert result.message == "accepted for retry"

    # not due yet: retry_count=1 -> 2 seconds
    assert ingress.retry_failed_events(session_factory)["selected"] == 0
    clock.advance(seconds=3)
    stats = ingress.retry_failed_events(session_factory)
    assert stats["selected"] == 1
    assert stats["processed"] == 1

    status = get_event_status(db_session, result.webhook_id)
    assert status["status"] == "processed"
    assert status["retry_count"] == 1
    assert count(db_session, PaymentRecord) == 1


def test_retries_stop_at_max_retries(db_session, session_factory, clock, monkeypatch):
    ingress = WebhookIngress(dict(WEBHOOK_SECRETS), clock=clock, max_retries=2, rng=no_jitter)

    def always_fail(*args, **kwargs):
        raise RuntimeError("still broken")

    monkeypatch.setattr(payment_ledger, "find_or_create", always_fail)
    body = stripe_body()
    result = ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    for _ in range(2):
        clock.advance(minutes=5)
        assert ingress.retry_failed_events(session_factory)["failed"] == 1

    status = get_event_status(db_session, result.webhook_id)
    assert status["status"] == "failed"
    assert status["retry_count"] == 2
    assert status["next_retry_at"] is None
    clock.advance(minutes=5)
    assert ingress.retry_failed_events(session_factory)["selected"] == 0


def test_purge_removes_expired_events(db_session, ingress, clock):
    body = stripe_body()
    ingress.ingest(db_session, "stripe", body, stripe_headers(body))
    assert ingress.purge_expired(db_session) == 0
    clock.advance(days=91)
    assert ingress.purge_expired(db_session) == 1
    assert count(db_session, WebhookEvent) == 0
    # payments are not part of the audit retention
    assert count(db_session, PaymentRecord) == 1


def test_resolve_provider_precedence():
    assert resolve_provider("Paystack", {"Stripe-Signature": "x"}) == "paystack"
    assert resolve_provider(None, {"X-Provider": "razorpay", "Stripe-Signature": "x"}) == "razorpay"
    assert resolve_provider(None, {"X-Flutterwave-Signature": "x"}) == "flutterwave"
    assert resolve_provider(None, {}) == "stripe"


# ---------- HTTP ----------

def test_stripe_webhook_endpoint_end_to_end(client, session_factory):
    body = stripe_body()
    headers = {**stripe_headers(body), "Content-Type": "application/json"}

    resp = client.post("/api/v1/payments/webhook/stripe", content=body, headers=headers)
    assert resp.status_code == 200, resp.text
    data = resp.json()
    assert data["success"] is True
    assert data["data"]["status"] == "processed"
    assert "X-Request-ID" in resp.headers

    dup = client.post("/api/v1/payments/webhook/stripe", content=body, headers=headers)
    assert dup.status_code == 200
    assert dup.json()["data"]["status"] == "duplicate"

    session = session_factory()
    try:
        record = session.execute(select(PaymentRecord)).scalar_one()
        assert record.amount == Decimal("20.00")
        assert record.status == PaymentStatus.COMPLETED
    finally:
        session.close()

    status = client.get(f"/api/v1/payments/webhook/status/{data['data']['webhook_id']}")
    assert status.status_code == 200
    info = status.json()["data"]
    assert info["status"] == "processed"
    assert info["provider"] == "stripe"
    assert info["event_type"] == "payment_intent.succeeded"


def test_webhook_provider_detected_from_signature_header(client):
    body = stripe_body(event_id="evt_h")
    resp = client.post("/api/v1/payments/webhook", content=body, headers=stripe_headers(body))
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "processed"


def test_webhook_missing_signature_returns_401(client):
    resp = client.post("/api/v1/payments/webhook/stripe", content=stripe_body())
    assert resp.status_code == 401
    assert resp.json()["success"] is False
    assert resp.json()["message"] == "missing signature"


def test_webhook_invalid_signature_returns_401(client):
    body = stripe_body()
    resp = client.post("/api/v1/payments/webhook/stripe", content=body, headers=stripe_headers(body, secret="nope"))
    assert resp.status_code == 401
    assert resp.json()["message"] == "invalid signature"


def test_webhook_without_configured_secret_returns_500(client, clock):
    client.app.state.webhook_ingress = WebhookIngress({"stripe": WEBHOOK_SECRETS["stripe"]}, clock=clock)
    body = b'{"event":"charge.success","data":{"id":1,"amount":5000,"currency":"NGN"}}'
    resp = client.post("/api/v1/payments/webhook/paystack", content=body, headers={"X-Paystack-Signature": "abc"})
    assert resp.status_code == 500
    assert resp.json()["success"] is False


def test_unsupported_event_still_answers_200(client):
    body = stripe_body(event_type="customer.created")
    resp = client.post("/api/v1/payments/webhook/stripe", content=body, headers=stripe_headers(body))
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["success"] is False
    assert payload["data"]["status"] == "failed"
    assert payload["data"]["retry_scheduled"] is False


def test_paystack_webhook_over_http(client, session_factory):
    body = json.dumps({"event": "charge.success",
                       "data": {"id": 3001, "amount": 500000, "currency": "NGN", "reference": "ref-1"}}).encode()
    signature = sign_payload("paystack", body, WEBHOOK_SECRETS["paystack"])
    resp = client.post("/api/v1/payments/webhook/paystack", content=body, headers={"X-Paystack-Signature": signature})
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "processed"
    session = session_factory()
    try:
        record = payment_ledger.find_payment(session, "paystack", "3001")
        assert record.amount == Decimal("5000.00")
        assert record.description == "ref-1"
    finally:
        session.close()


def test_unknown_webhook_status_returns_404(client):
    resp = client.get("/api/v1/payments/webhook/status/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["success"] is False
