"""Stripe charges feed (``stripe`` library, ``starting_after`` pagination)."""
from __future__ import annotations

from typing import Optional

import stripe

from ledgerlink.config import PROVIDER_API_KEYS, RECONCILIATION_SETTINGS
from ledgerlink.exceptions import ConfigurationError
from ledgerlink.utils import get_logger
from ledgerlink.utils.money import minor_to_major
from .base import FeedEntry, FeedPage

logger = get_logger(__name__)

_STATUS_MAP = {
    "succeeded": "completed",
    "pending": "processing",
    "failed": "failed",
}


class StripeChargeFeed:
    """Walks ``/v1/charges`` newest first.

    Entries are keyed by the parent PaymentIntent when there is one, which is
    the id webhook ingestion stores as ``provider_payment_id``. Failed charge
    attempts of an intent that later succeeded are dropped; a succeeded charge
    is listed before its earlier failed attempts, so the intents seen since
    the start of a scan are remembered across pages.
    """

    name = "stripe"

    def __init__(self, api_key: str | None = None, *, timeout_seconds: float | None = None):
        self.api_key = api_key or PROVIDER_API_KEYS.get("stripe")
        if not self.api_key:
            raise ConfigurationError("STRIPE_API_KEY is required for Stripe reconciliation")
        timeout = float(timeout_seconds or RECONCILIATION_SETTINGS["fetch_timeout_seconds"])
        self.client = stripe.RequestsClient(timeout=timeout)
        self._succeeded_intents: set[str] = set()

    def fetch_page(self, cursor: Optional[str], limit: int) -> FeedPage:
        stripe.default_http_client = self.client
        params = {"limit": min(int(limit), 100), "api_key": self.api_key}
        if cursor:
            params["starting_after"] = cursor
        charges = stripe.Charge.list(**params)

        if cursor is None:
            self._succeeded_intents.clear()
        self._succeeded_intents.update(
            str(charge.payment_intent) for charge in charges.data if charge.payment_intent and charge.status == "succeeded"
        )
        entries = []
        for charge in charges.data:
            if charge.status == "failed" and charge.payment_intent and str(charge.payment_intent) in self._succeeded_intents:
                logger.debug("Skipping failed attempt of a succeeded PaymentIntent",
                             charge_id=charge.id, payment_intent=charge.payment_intent)
                continue
            entries.append(self._to_entry(charge))
        has_more = bool(charges.has_more) and bool(charges.data)
        next_cursor = charges.data[-1].id if has_more else None
        logger.debug("Fetched Stripe charges page", count=len(entries), has_more=has_more, cursor=cursor)
        return FeedPage(entries=entries, next_cursor=next_cursor, has_more=has_more)

    @staticmethod
    def _to_entry(charge) -> FeedEntry:
        currency = str(charge.currency).upper()
        refunded = bool(charge.refunded)
        status = "refunded" if refunded else _STATUS_MAP.get(charge.status, str(charge.status))
        return FeedEntry(
            external_id=str(charge.payment_intent or charge.id),
            amount=minor_to_major(charge.amount, currency),
            currency=currency,
            status=status,
            refunded=refunded,
            raw={"charge_id": charge.id, "status": charge.status, "amount_refunded": charge.amount_refunded},
        )
