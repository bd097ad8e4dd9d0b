"""Central Enum definitions for core domain states.

These replace scattered string literals so DB models, schemas and services
agree on one vocabulary for jobs, payments, webhook deliveries and
reconciliation runs.
"""
from __future__ import annotations
import enum


# ----------------------------- Outbox ----------------------------- #

class JobType(str, enum.Enum):
    LEDGER_ANCHOR = "ledger.anchor"


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

# ----------------------------- Payments ----------------------------- #

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class WebhookStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DUPLICATE = "duplicate"

# ------------------------- Reconciliation ------------------------- #

class RunStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MismatchType(str, enum.Enum):
    MISSING_LOCAL = "MISSING_LOCAL"
    MISSING_PROVIDER = "MISSING_PROVIDER"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    REFUND_MISSING = "REFUND_MISSING"
    OTHER = "OTHER"


__all__ = [
    "JobType",
    "JobStatus",
    "PaymentStatus",
    "WebhookStatus",
    "RunStatus",
    "MismatchType",
]
