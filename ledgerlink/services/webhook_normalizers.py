"""Provider payload normalisation.

Each provider encodes the same facts differently (minor-unit amounts, nested
entities, different names for the description and failure reason). The
``NORMALIZERS`` table maps a provider name to plain extraction functions and
an event-type table, so supporting another provider is a data change.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Mapping

from ledgerlink.exceptions import MalformedPayloadError, UnsupportedEventError
from ledgerlink.models.db import PaymentStatus
from ledgerlink.utils.money import minor_to_major, quantize, to_decimal

Payload = Mapping[str, Any]


@dataclass(frozen=True)
class NormalizedEvent:
    provider: str
    event_type: str
    external_event_id: str
    provider_payment_id: str
    target_status: PaymentStatus
    amount: Decimal
    currency_code: str
    owner_id: str | None = None
    description: str | None = None
    failure_reason: str | None = None
    metadata: dict[str, Any] | None = None

    def initial_fields(self, idempotency_key: str | None = None) -> dict[str, Any]:
        return {
            "amount": self.amount,
            "currency_code": self.currency_code,
            "owner_id": self.owner_id,
            "description": self.description,
            "failure_reason": self.failure_reason,
            "provider_metadata": self.metadata,
            "idempotency_key": idempotency_key,
        }


# ----------------------------- extraction helpers ----------------------------- #

def _dict(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _event_type(payload: Payload) -> str | None:
    value = payload.get("type") or payload.get("event") or payload.get("event_type")
    return str(value) if value else None


def _stripe_entity(payload: Payload) -> dict[str, Any]:
    data = _dict(payload.get("data"))
    nested = data.get("object")
    return dict(nested) if isinstance(nested, Mapping) else data


def _razorpay_entity(payload: Payload) -> dict[str, Any]:
    inner = _dict(payload.get("payload"))
    return _dict(_dict(inner.get("payment")).get("entity"))


def _data_entity(payload: Payload) -> dict[str, Any]:
    return _dict(payload.get("data"))


def _paypal_entity(payload: Payload) -> dict[str, Any]:
    return _dict(payload.get("resource"))


def _payload_id(payload: Payload, entity: Mapping[str, Any], event_type: str) -> str | None:
    value = payload.get("id")
    return str(value) if value else None


def _event_scoped_id(payload: Payload, entity: Mapping[str, Any], event_type: str) -> str | None:
    """Providers without a delivery id: the event type plus the entity id is unique per fact."""
    explicit = payload.get("id")
    if explicit:
        return str(explicit)
    entity_id = entity.get("id")
    return f"{event_type}:{entity_id}" if entity_id is not None else None


def _entity_id(entity: Mapping[str, Any], event_type: str) -> str | None:
    value = entity.get("id")
    return str(value) if value is not None else None


def _stripe_payment_id(entity: Mapping[str, Any], event_type: str) -> str | None:
    # charge.* events carry a charge; the payment is its parent intent
    if event_type.startswith("charge.") and entity.get("payment_intent"):
        return str(entity["payment_intent"])
    return _entity_id(entity, event_type)


def _paypal_payment_id(entity: Mapping[str, Any], event_type: str) -> str | None:
    if event_type == "PAYMENT.SALE.REFUNDED" and entity.get("sale_id"):
        return str(entity["sale_id"])
    return _entity_id(entity, event_type)


def _minor_amount(entity: Mapping[str, Any], currency: str) -> Decimal:
    return minor_to_major(entity["amount"], currency)


def _major_amount(entity: Mapping[str, Any], currency: str) -> Decimal:
    return quantize(to_decimal(entity["amount"]))


def _paypal_amount(entity: Mapping[str, Any], currency: str) -> Decimal:
    return quantize(to_decimal(_dict(entity.get("amount"))["total"]))


def _currency(entity: Mapping[str, Any]) -> str | None:
    value = entity.get("currency")
    return str(value).upper() if value else None


def _paypal_currency(entity: Mapping[str, Any]) -> str | None:
    amount = _dict(entity.get("amount"))
    value = amount.get("currency") or amount.get("currency_code")
    return str(value).upper() if value else None


def _owner_id(entity: Mapping[str, Any]) -> str | None:
    metadata = _dict(entity.get("metadata"))
    owner = metadata.get("userId") or metadata.get("user_id")
    if owner:
        return str(owner)
    customer = entity.get("customer")
    if isinstance(customer, Mapping):
        customer = customer.get("id") or customer.get("email")
    return str(customer) if customer else None


def _field(name: str) -> Callable[[Mapping[str, Any]], Any]:
    return lambda entity: entity.get(name)


def _nested(*path: str) -> Callable[[Mapping[str, Any]], Any]:
    def get(entity: Mapping[str, Any]) -> Any:
        current: Any = entity
        for key in path:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        return current
    return get


# ----------------------------- provider table ----------------------------- #

@dataclass(frozen=True)
class ProviderNormalizer:
    events: dict[str, PaymentStatus]
    entity: Callable[[Payload], dict[str, Any]]
    event_id: Callable[[Payload, Mapping[str, Any], str], str | None]
    payment_id: Callable[[Mapping[str, Any], str], str | None]
    amount: Callable[[Mapping[str, Any], str], Decimal]
    currency: Callable[[Mapping[str, Any]], str | None]
    description: Callable[[Mapping[str, Any]], Any]
    metadata: Callable[[Mapping[str, Any]], Any]
    failure_reason: Callable[[Mapping[str, Any]], Any] = field(default=lambda entity: None)


NORMALIZERS: dict[str, ProviderNormalizer] = {
    "stripe": ProviderNormalizer(
        events={
            "payment_intent.succeeded": PaymentStatus.COMPLETED,
            "payment_intent.payment_failed": PaymentStatus.FAILED,
            "payment_intent.canceled": PaymentStatus.CANCELLED,
            "payment_intent.processing": PaymentStatus.PROCESSING,
            "charge.refunded": PaymentStatus.REFUNDED,
        },
        entity=_stripe_entity,
        event_id=_payload_id,
        payment_id=_stripe_payment_id,
        amount=_minor_amount,
        currency=_currency,
        description=_field("description"),
        metadata=_field("metadata"),
        failure_reason=_nested("last_payment_error", "message"),
    ),
    "razorpay": ProviderNormalizer(
        events={
            "payment.authorized": PaymentStatus.PROCESSING,
            "payment.captured": PaymentStatus.COMPLETED,
            "payment.failed": PaymentStatus.FAILED,
        },
        entity=_razorpay_entity,
        event_id=_event_scoped_id,
        payment_id=_entity_id,
        amount=_minor_amount,
        currency=_currency,
        description=_field("description"),
        metadata=_field("notes"),
        failure_reason=_field("error_description"),
    ),
    "paystack": ProviderNormalizer(
        events={
            "charge.success": PaymentStatus.COMPLETED,
            "charge.failed": PaymentStatus.FAILED,
        },
        entity=_data_entity,
        event_id=_event_scoped_id,
        payment_id=_entity_id,
        amount=_minor_amount,
        currency=_currency,
        description=_field("reference"),
        metadata=_field("metadata"),
        failure_reason=_field("gateway_response"),
    ),
    "flutterwave": ProviderNormalizer(
        events={
            "charge.completed": PaymentStatus.COMPLETED,
            "charge.failed": PaymentStatus.FAILED,
        },
        entity=_data_entity,
        event_id=_event_scoped_id,
        payment_id=_entity_id,
        amount=_major_amount,
        currency=_currency,
        description=_field("narration"),
        metadata=_field("meta"),
        failure_reason=_field("processor_response"),
    ),
    "paypal": ProviderNormalizer(
        events={
            "PAYMENT.SALE.PENDING": PaymentStatus.PROCESSING,
            "PAYMENT.SALE.COMPLETED": PaymentStatus.COMPLETED,
            "PAYMENT.SALE.DENIED": PaymentStatus.FAILED,
            "PAYMENT.SALE.REFUNDED": PaymentStatus.REFUNDED,
        },
        entity=_paypal_entity,
        event_id=_payload_id,
        payment_id=_paypal_payment_id,
        amount=_paypal_amount,
        currency=_paypal_currency,
        description=_field("description"),
        metadata=_field("custom"),
        failure_reason=_field("reason_code"),
    ),
}


def describe_envelope(provider: str, payload: Payload) -> tuple[str | None, str | None]:
    """Best-effort ``(event_type, external_event_id)`` for the audit row; never raises."""
    event_type = _event_type(payload)
    normalizer = NORMALIZERS.get(provider)
    if normalizer is None:
        fallback = payload.get("id") or _dict(payload.get("data")).get("id")
        return event_type, str(fallback) if fallback else None
    try:
        entity = normalizer.entity(payload)
        external_id = normalizer.event_id(payload, entity, event_type or "")
    except (TypeError, ValueError, AttributeError):
        external_id = None
    return event_type, external_id


def normalize(provider: str, payload: Payload) -> NormalizedEvent:
    """Turn a verified provider payload into a ledger instruction.

    Raises UnsupportedEventError for unknown providers or event types and
    MalformedPayloadError when required fields are missing or unparseable.
    """
    normalizer = NORMALIZERS.get(provider)
    if normalizer is None:
        raise UnsupportedEventError(f"Unsupported provider '{provider}'")
    if not isinstance(payload, Mapping):
        raise MalformedPayloadError("Payload must be a JSON object")

    event_type = _event_type(payload)
    if not event_type:
        raise MalformedPayloadError("Payload has no event type")
    target = normalizer.events.get(event_type)
    if target is None:
        raise UnsupportedEventError(f"Unsupported {provider} event type '{event_type}'")

    entity = normalizer.entity(payload)
    if not entity:
        raise MalformedPayloadError(f"{provider} payload has no payment entity")
    external_event_id = normalizer.event_id(payload, entity, event_type)
    payment_id = normalizer.payment_id(entity, event_type)
    currency = normalizer.currency(entity)
    if not external_event_id or not payment_id or not currency:
        raise MalformedPayloadError(f"{provider} payload is missing event id, payment id or currency")
    try:
        amount = normalizer.amount(entity, currency)
    except (KeyError, TypeError, ValueError) as exc:
        raise MalformedPayloadError(f"{provider} payload has no usable amount") from exc

    metadata = normalizer.metadata(entity)
    if metadata is not None and not isinstance(metadata, Mapping):
        metadata = {"custom": metadata}
    description = normalizer.description(entity)
    failure_reason = None
    if target == PaymentStatus.FAILED:
        failure_reason = normalizer.failure_reason(entity) or "Payment failed"

    return NormalizedEvent(
        provider=provider,
        event_type=event_type,
        external_event_id=external_event_id,
        provider_payment_id=payment_id,
        target_status=target,
        amount=amount,
        currency_code=currency,
        owner_id=_owner_id(entity),
        description=str(description) if description is not None else None,
        failure_reason=str(failure_reason) if failure_reason is not None else None,
        metadata=dict(metadata) if metadata else None,
    )


__all__ = ["NormalizedEvent", "ProviderNormalizer", "NORMALIZERS", "describe_envelope", "normalize"]
