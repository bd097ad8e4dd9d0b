import hashlib
import hmac
import time

import pytest
import stripe

from ledgerlink.exceptions import WebhookSignatureError
from ledgerlink.services.webhook_signatures import (
    extract_signature,
    provider_from_signature_headers,
    sign_payload,
    verify_signature,
)

BODY = b'{"id":"evt_1","type":"payment_intent.succeeded"}'
SECRET = "whsec_test"


def _stripe_header(body=BODY, secret=SECRET, *, age_seconds=0):
    ts = int(time.time()) - age_seconds
    v1 = stripe.WebhookSignature._compute_signature(f"{ts}.{body.decode()}", secret)
    return f"t={ts},v1={v1}"


def test_stripe_signature_round_trip():
    now = int(time.time())
    header = sign_payload("stripe", BODY, SECRET, timestamp=now)
    assert header == f"t={now},v1={stripe.WebhookSignature._compute_signature(f'{now}.{BODY.decode()}', SECRET)}"
    verify_signature("stripe", BODY, header, SECRET)


def test_stripe_header_from_sdk_is_accepted():
    verify_signature("stripe", BODY, _stripe_header(), SECRET)


def test_stripe_signature_outside_tolerance_is_rejected():
    header = _stripe_header(age_seconds=6 * 60)
    with pytest.raises(WebhookSignatureError, match="invalid signature"):
        verify_signature("stripe", BODY, header, SECRET, tolerance_seconds=300)
    # a wider window accepts the same header
    verify_signature("stripe", BODY, header, SECRET, tolerance_seconds=600)


def test_stripe_accepts_any_matching_v1_candidate():
    ts, v1 = _stripe_header().split(",")
    header = f"{ts},v1={'0' * 64},{v1}"
    verify_signature("stripe", BODY, header, SECRET)


def test_stripe_wrong_secret_is_rejected():
    with pytest.raises(WebhookSignatureError, match="invalid signature"):
        verify_signature("stripe", BODY, _stripe_header(secret="whsec_other"), SECRET)


@pytest.mark.parametrize("header", ["garbage", f"t={int(time.time())}"])
def test_stripe_malformed_header_is_rejected(header):
    with pytest.raises(WebhookSignatureError, match="invalid signature"):
        verify_signature("stripe", BODY, header, SECRET)


def test_tampered_body_is_rejected():
    header = _stripe_header()
    with pytest.raises(WebhookSignatureError, match="invalid signature"):
        verify_signature("stripe", BODY + b" ", header, SECRET)


def test_missing_signature():
    with pytest.raises(WebhookSignatureError, match="missing signature"):
        verify_signature("razorpay", BODY, None, SECRET)


@pytest.mark.parametrize("provider,algorithm", [
    ("razorpay", hashlib.sha256),
    ("paystack", hashlib.sha512),
    ("flutterwave", hashlib.sha256),
    ("paypal", hashlib.sha256),
])
def test_hex_hmac_schemes(provider, algorithm):
    expected = hmac.new(SECRET.encode(), BODY, algorithm).hexdigest()
    assert sign_payload(provider, BODY, SECRET) == expected
    verify_signature(provider, BODY, expected, SECRET)
    verify_signature(provider, BODY, expected.upper(), SECRET)
    with pytest.raises(WebhookSignatureError):
        verify_signature(provider, BODY, expected, "other-secret")


def test_provider_detection_from_headers():
    assert provider_from_signature_headers({"Stripe-Signature": "t=1,v1=aa"}) == "stripe"
    assert provider_from_signature_headers({"X-Paystack-Signature": "ab"}) == "paystack"
    # the generic header identifies nobody
    assert provider_from_signature_headers({"X-Webhook-Signature": "ab"}) is None


def test_extract_signature_falls_back_to_generic_header():
    assert extract_signature("razorpay", {"X-Razorpay-Signature": "abc"}) == "abc"
    assert extract_signature("razorpay", {"X-Webhook-Signature": "def"}) == "def"
    assert extract_signature("paypal", {}) is None
