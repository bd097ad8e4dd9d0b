"""
Integrations package initialization.
External systems: the public ledger and provider transaction feeds.
"""
from .ledger import AnchorReceipt, LedgerClient, StellarLedgerClient
from .feeds import FeedEntry, FeedPage, ProviderFeed, StripeChargeFeed, PaystackTransactionFeed

__all__ = [
    "AnchorReceipt",
    "LedgerClient",
    "StellarLedgerClient",
    "FeedEntry",
    "FeedPage",
    "ProviderFeed",
    "StripeChargeFeed",
    "PaystackTransactionFeed",
]
