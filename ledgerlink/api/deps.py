"""
Dependencies for database sessions and the service objects wired at startup.
"""
from typing import Generator, Dict
from fastapi import HTTPException, Request, status
from sqlalchemy.orm import Session
from ledgerlink.database import SessionLocal
from ledgerlink.integrations.feeds.base import ProviderFeed
from ledgerlink.services.alerting import Notifier, LoggingNotifier
from ledgerlink.services.webhook_ingress import WebhookIngress
from ledgerlink.utils import get_logger
from ledgerlink.utils.time import Clock, SystemClock

logger = get_logger(__name__)


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.
    Ensures proper session lifecycle management with automatic cleanup.
    """
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error("Database session error", error=str(e), exc_info=True)
        db.rollback()
        raise
    finally:
        db.close()


def get_webhook_ingress(request: Request) -> WebhookIngress:
    ingress = getattr(request.app.state, "webhook_ingress", None)
    if ingress is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook ingress not initialised")
    return ingress


def get_feeds(request: Request) -> Dict[str, ProviderFeed]:
    return getattr(request.app.state, "reconciliation_feeds", {}) or {}


def get_notifier(request: Request) -> Notifier:
    return getattr(request.app.state, "notifier", None) or LoggingNotifier()


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or SystemClock()
