"""Common shapes for paginated provider transaction feeds."""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class FeedEntry:
    external_id: str
    amount: Decimal
    currency: str
    # Normalised to PaymentStatus values (completed, failed, processing, ...)
    status: str
    refunded: bool = False
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class FeedPage:
    entries: list[FeedEntry]
    # Cursor positioned after this page; None once the provider has no more pages.
    next_cursor: Optional[str]
    has_more: bool


class ProviderFeed(Protocol):
    name: str

    def fetch_page(self, cursor: Optional[str], limit: int) -> FeedPage: ...
