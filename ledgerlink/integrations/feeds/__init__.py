"""Provider transaction feeds consumed by the reconciliation engine."""
from .base import FeedEntry, FeedPage, ProviderFeed
from .stripe_feed import StripeChargeFeed
from .paystack_feed import PaystackTransactionFeed

__all__ = ["FeedEntry", "FeedPage", "ProviderFeed", "StripeChargeFeed", "PaystackTransactionFeed"]
