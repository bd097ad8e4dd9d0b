"""Domain exceptions shared by the outbox, webhook and reconciliation paths.

Hierarchy:
    LedgerLinkError
    ├── ConfigurationError      - missing secret / bad provider setup (fatal at startup)
    ├── InvalidTransitionError  - payment state machine rejected a transition
    ├── WebhookSignatureError   - missing or invalid signature (401 at the boundary)
    ├── PermanentProcessingError
    │   ├── UnsupportedEventError
    │   └── MalformedPayloadError
    ├── PermanentJobError       - outbox job cannot succeed by retrying
    └── ExternalCallTimeout     - bounded external call exceeded its timeout
"""
from __future__ import annotations


class LedgerLinkError(Exception):
    """Base class for all application errors."""


class ConfigurationError(LedgerLinkError):
    pass


class InvalidTransitionError(LedgerLinkError):
    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Invalid status transition from {current} to {target}")


class WebhookSignatureError(LedgerLinkError):
    pass


class PermanentProcessingError(LedgerLinkError):
    """Retrying the same input can never succeed."""


class UnsupportedEventError(PermanentProcessingError):
    pass


class MalformedPayloadError(PermanentProcessingError):
    pass


class PermanentJobError(LedgerLinkError):
    pass


class ExternalCallTimeout(LedgerLinkError):
    pass


__all__ = [
    "LedgerLinkError",
    "ConfigurationError",
    "InvalidTransitionError",
    "WebhookSignatureError",
    "PermanentProcessingError",
    "UnsupportedEventError",
    "MalformedPayloadError",
    "PermanentJobError",
    "ExternalCallTimeout",
]
