"""Per-provider webhook signature schemes.

Each provider maps to the header it signs with and a verifier over the raw
request body. Adding a provider is a new table entry. Stripe headers are
checked by the stripe SDK (timestamp tolerance against wall-clock time);
the hex-digest schemes compare with ``hmac.compare_digest``.
"""
from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from typing import Callable, Mapping

import stripe

from ledgerlink.config import WEBHOOK_SETTINGS
from ledgerlink.exceptions import WebhookSignatureError

GENERIC_SIGNATURE_HEADER = "X-Webhook-Signature"

Verifier = Callable[[bytes, str, str, int], bool]


def _hmac_hex(algorithm: str, secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, getattr(hashlib, algorithm)).hexdigest()


def _hex_verifier(algorithm: str) -> Verifier:
    def verify(body: bytes, signature: str, secret: str, tolerance: int) -> bool:
        expected = _hmac_hex(algorithm, secret, body)
        return hmac.compare_digest(expected, signature.strip().lower())

    verify.__name__ = f"verify_{algorithm}_hex"
    return verify


def _verify_stripe(body: bytes, signature: str, secret: str, tolerance: int) -> bool:
    """``t=<unix>,v1=<hex>``; any matching ``v1`` within ``tolerance`` seconds passes."""
    try:
        payload = body.decode("utf-8")
    except UnicodeDecodeError:
        return False
    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance=tolerance)
    except stripe.error.SignatureVerificationError:
        return False
    return True


@dataclass(frozen=True)
class SignatureScheme:
    header: str
    verify: Verifier


SIGNATURE_SCHEMES: dict[str, SignatureScheme] = {
    "stripe": SignatureScheme("Stripe-Signature", _verify_stripe),
    "razorpay": SignatureScheme("X-Razorpay-Signature", _hex_verifier("sha256")),
    "paystack": SignatureScheme("X-Paystack-Signature", _hex_verifier("sha512")),
    "flutterwave": SignatureScheme("X-Flutterwave-Signature", _hex_verifier("sha256")),
    "paypal": SignatureScheme(GENERIC_SIGNATURE_HEADER, _hex_verifier("sha256")),
}


def provider_from_signature_headers(headers: Mapping[str, str]) -> str | None:
    """Guess the provider from a provider-specific signature header."""
    for name, scheme in SIGNATURE_SCHEMES.items():
        if scheme.header != GENERIC_SIGNATURE_HEADER and headers.get(scheme.header):
            return name
    return None


def extract_signature(provider: str, headers: Mapping[str, str]) -> str | None:
    scheme = SIGNATURE_SCHEMES.get(provider)
    value = headers.get(scheme.header) if scheme else None
    return value or headers.get(GENERIC_SIGNATURE_HEADER) or None


def verify_signature(
    provider: str,
    body: bytes,
    signature: str | None,
    secret: str,
    *,
    tolerance_seconds: int | None = None,
) -> None:
    """Raise WebhookSignatureError unless ``signature`` is valid for ``body``."""
    if not signature:
        raise WebhookSignatureError("missing signature")
    scheme = SIGNATURE_SCHEMES.get(provider)
    if scheme is None:
        raise WebhookSignatureError("invalid signature")
    tolerance = int(tolerance_seconds if tolerance_seconds is not None else WEBHOOK_SETTINGS["signature_tolerance_seconds"])
    if not scheme.verify(body, signature, secret, tolerance):
        raise WebhookSignatureError("invalid signature")


def sign_payload(provider: str, body: bytes, secret: str, *, timestamp: int | None = None) -> str:
    """Produce the header value a provider would send; used by tests and replay tooling."""
    if provider == "stripe":
        ts = int(timestamp if timestamp is not None else time.time())
        digest = stripe.WebhookSignature._compute_signature(f"{ts}.{body.decode('utf-8')}", secret)
        return f"t={ts},v1={digest}"
    algorithm = "sha512" if provider == "paystack" else "sha256"
    return _hmac_hex(algorithm, secret, body)


__all__ = [
    "GENERIC_SIGNATURE_HEADER",
    "SIGNATURE_SCHEMES",
    "SignatureScheme",
    "provider_from_signature_headers",
    "extract_signature",
    "verify_signature",
    "sign_payload",
]
