"""LedgerLink: outbox dispatch, payment webhook ingestion and provider reconciliation.

The package is laid out as a regular FastAPI service (``ledgerlink.main``)
but every core component can be driven directly from a SQLAlchemy session,
which is how the background workers and the test-suite use them.
"""

__all__: list[str] = []
