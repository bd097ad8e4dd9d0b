from .enums import JobType, JobStatus, PaymentStatus, WebhookStatus, RunStatus, MismatchType
from .jobs import OutboxJob
from .records import Record
from .payments import PaymentRecord
from .webhook_events import WebhookEvent
from .reconciliation import ReconciliationRun, ReconciliationItem, ProviderCursor

__all__ = [
    "JobType",
    "JobStatus",
    "PaymentStatus",
    "WebhookStatus",
    "RunStatus",
    "MismatchType",
    "OutboxJob",
    "Record",
    "PaymentRecord",
    "WebhookEvent",
    "ReconciliationRun",
    "ReconciliationItem",
    "ProviderCursor",
]
