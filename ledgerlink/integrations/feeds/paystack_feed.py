"""Paystack transactions feed (``aiohttp``, page-number cursor)."""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import aiohttp

from ledgerlink.config import PROVIDER_API_KEYS, RECONCILIATION_SETTINGS
from ledgerlink.exceptions import ConfigurationError
from ledgerlink.utils import get_logger
from ledgerlink.utils.money import minor_to_major
from .base import FeedEntry, FeedPage

logger = get_logger(__name__)

PAYSTACK_API_URL = "https://api.paystack.co"

_STATUS_MAP = {
    "success": "completed",
    "failed": "failed",
    "abandoned": "cancelled",
    "ongoing": "processing",
    "pending": "processing",
    "processing": "processing",
    "reversed": "refunded",
}


class PaystackTransactionFeed:
    """Pages through ``GET /transaction``; the cursor is the next page number."""

    name = "paystack"

    def __init__(self, secret_key: str | None = None, *, base_url: str = PAYSTACK_API_URL, timeout_seconds: float | None = None):
        self.secret_key = secret_key or PROVIDER_API_KEYS.get("paystack")
        if not self.secret_key:
            raise ConfigurationError("PAYSTACK_SECRET_KEY is required for Paystack reconciliation")
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = float(timeout_seconds or RECONCILIATION_SETTINGS["fetch_timeout_seconds"])

    def fetch_page(self, cursor: Optional[str], limit: int) -> FeedPage:
        """Synchronous entry point; the engine calls feeds from worker threads."""
        return asyncio.run(self.fetch_page_async(cursor, limit))

    async def fetch_page_async(self, cursor: Optional[str], limit: int) -> FeedPage:
        page = int(cursor) if cursor else 1
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        headers = {"Authorization": f"Bearer {self.secret_key}", "Accept": "application/json"}
        params = {"perPage": str(int(limit)), "page": str(page)}

        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(f"{self.base_url}/transaction", headers=headers, params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    logger.error("Paystack feed request failed", status=response.status, page=page, body=text[:500])
                    raise RuntimeError(f"Paystack API returned HTTP {response.status}")
                body: dict[str, Any] = await response.json()

        entries = [self._to_entry(tx) for tx in body.get("data") or []]
        meta = body.get("meta") or {}
        page_count = int(meta.get("pageCount") or page)
        has_more = page < page_count and bool(entries)
        next_cursor = str(page + 1) if has_more else None
        logger.debug("Fetched Paystack transactions page", page=page, count=len(entries), has_more=has_more)
        return FeedPage(entries=entries, next_cursor=next_cursor, has_more=has_more)

    @staticmethod
    def _to_entry(tx: dict[str, Any]) -> FeedEntry:
        currency = str(tx.get("currency") or "NGN").upper()
        status = _STATUS_MAP.get(str(tx.get("status")), str(tx.get("status")))
        return FeedEntry(
            external_id=str(tx["id"]),
            amount=minor_to_major(tx.get("amount") or 0, currency),
            currency=currency,
            status=status,
            refunded=status == "refunded",
            raw={"reference": tx.get("reference"), "status": tx.get("status")},
        )
