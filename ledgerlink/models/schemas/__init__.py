from .base import ResponseBase
from .webhooks import WebhookAck, WebhookStatusRead
from .reconciliation import ReconciliationRunRead, ReconciliationItemRead
from .outbox import OutboxJobRead

__all__ = [
    "ResponseBase",
    "WebhookAck",
    "WebhookStatusRead",
    "ReconciliationRunRead",
    "ReconciliationItemRead",
    "OutboxJobRead",
]
