"""Webhook ingress: audit row, signature check, dedup, then one ledger transition.

Every delivery is persisted before anything else happens so even forged or
malformed requests leave an audit trail. Business effects are applied at most
once per ``(provider, external_event_id)``; later deliveries of the same event
are recorded as ``duplicate``.
"""
from __future__ import annotations

import json
import random
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledgerlink.config import SUPPORTED_PROVIDERS, WEBHOOK_SETTINGS
from ledgerlink.exceptions import (
    ConfigurationError,
    InvalidTransitionError,
    PermanentProcessingError,
    WebhookSignatureError,
)
from ledgerlink.models.db import WebhookEvent, WebhookStatus
from ledgerlink.services import payment_ledger
from ledgerlink.services.webhook_normalizers import describe_envelope, normalize
from ledgerlink.services.webhook_signatures import (
    extract_signature,
    provider_from_signature_headers,
    verify_signature,
)
from ledgerlink.utils import get_logger, log_business_event, log_performance
from ledgerlink.utils.backoff import compute_backoff_seconds
from ledgerlink.utils.time import Clock, SystemClock, ensure_utc

logger = get_logger(__name__)

DEFAULT_PROVIDER = "stripe"
PROVIDER_HEADER = "X-Provider"


@dataclass
class IngestResult:
    webhook_id: str
    status: WebhookStatus
    message: str
    payment_record_id: int | None = None
    retry_scheduled: bool = False

    @property
    def duplicate(self) -> bool:
        return self.status == WebhookStatus.DUPLICATE


def resolve_provider(path_provider: str | None, headers: Mapping[str, str]) -> str:
    """Path segment, then X-Provider, then whichever signature header is present."""
    candidate = path_provider or headers.get(PROVIDER_HEADER) or provider_from_signature_headers(headers)
    return (candidate or DEFAULT_PROVIDER).strip().lower()


class WebhookIngress:
    def __init__(
        self,
        secrets: Mapping[str, str],
        *,
        clock: Clock | None = None,
        max_retries: int | None = None,
        retention_days: int | None = None,
        tolerance_seconds: int | None = None,
        rng: Optional[Callable[[float, float], float]] = None,
    ):
        self.secrets = secrets
        self.clock = clock or SystemClock()
        self.max_retries = int(max_retries if max_retries is not None else WEBHOOK_SETTINGS["max_retries"])
        self.retention_days = int(retention_days or WEBHOOK_SETTINGS["retention_days"])
        self.tolerance_seconds = tolerance_seconds
        self.rng = rng or random.uniform

    # ------------------------------------------------------------------ #
    # Inbound delivery
    # ------------------------------------------------------------------ #
    def ingest(
        self,
        session: Session,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        *,
        request_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IngestResult:
        """Handle one delivery end to end.

        Raises WebhookSignatureError (401 at the boundary) or
        ConfigurationError (500) after the audit row is stored. Everything
        else is recorded on the event and reported through the result.
        """
        now = self.clock.now()
        signature = extract_signature(provider, headers)
        payload = _parse_json(body)
        event_type, external_id = describe_envelope(provider, payload or {})

        event = WebhookEvent(
            webhook_id=str(uuid.uuid4()),
            provider_name=provider,
            event_type=event_type,
            external_event_id=external_id,
            signature=signature,
            signature_valid=False,
            status=WebhookStatus.RECEIVED,
            max_retries=self.max_retries,
            raw_payload=body.decode("utf-8", errors="replace"),
            payload=payload,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
            received_at=now,
            expires_at=now + timedelta(days=self.retention_days),
        )
        session.add(event)
        session.commit()
        logger.info(
            "Webhook received",
            webhook_id=event.webhook_id,
            provider=provider,
            event_type=event_type,
            external_event_id=external_id,
            request_id=request_id,
        )

        try:
            self._check_signature(provider, body, signature)
        except (WebhookSignatureError, ConfigurationError) as e:
            self._reject(session, event, str(e))
            raise
        event.signature_valid = True
        session.commit()

        if payload is None:
            self._fail(session, event, "malformed payload: body is not a JSON object", permanent=True)
            return IngestResult(event.webhook_id, WebhookStatus.FAILED, "rejected: malformed payload")

        claimed = session.execute(
            update(WebhookEvent)
            .where(WebhookEvent.id == event.id, WebhookEvent.status == WebhookStatus.RECEIVED)
            .values(status=WebhookStatus.PROCESSING, processing_started_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount
        session.commit()
        if claimed != 1:  # pragma: no cover
            session.refresh(event)
            return IngestResult(event.webhook_id, WebhookStatus(event.status), "already handled")
        session.refresh(event)
        return self.process_event(session, event)

    def _check_signature(self, provider: str, body: bytes, signature: str | None) -> None:
        if not signature:
            raise WebhookSignatureError("missing signature")
        secret = self.secrets.get(provider)
        if provider not in SUPPORTED_PROVIDERS or not secret:
            raise ConfigurationError(f"No webhook secret configured for provider '{provider}'")
        verify_signature(provider, body, signature, secret, tolerance_seconds=self.tolerance_seconds)

    def _reject(self, session: Session, event: WebhookEvent, reason: str) -> None:
        event.status = WebhookStatus.FAILED
        event.error_message = reason
        event.next_retry_at = None
        session.commit()
        logger.warning(
            "Webhook rejected",
            webhook_id=event.webhook_id,
            provider=event.provider_name,
            reason=reason,
            request_id=event.request_id,
        )

    # ------------------------------------------------------------------ #
    # Processing (shared by first delivery and the retry worker)
    # ------------------------------------------------------------------ #
    def process_event(self, session: Session, event: WebhookEvent) -> IngestResult:
        """Apply a claimed (``processing``) event to the payment ledger."""
        started = time.time()
        webhook_id = event.webhook_id
        provider = event.provider_name

        prior = self._find_processed(session, event)
        if prior is not None:
            return self._mark_duplicate(session, event, prior)

        try:
            normalized = normalize(provider, event.payload or {})
            update_ = payment_ledger.find_or_create(
                session,
                provider,
                normalized.provider_payment_id,
                normalized.target_status,
                normalized.initial_fields(idempotency_key=webhook_id),
                now=self.clock.now(),
            )
            now = self.clock.now()
            event.status = WebhookStatus.PROCESSED
            event.payment_record_id = update_.record.id
            event.processed_at = now
            event.processing_duration_ms = self._duration_ms(event, now)
            event.error_message = None
            event.next_retry_at = None
            session.commit()
        except IntegrityError as e:
            session.rollback()
            # a concurrent delivery of the same event committed processed first
            prior = self._find_processed(session, event)
            if prior is not None:
                return self._mark_duplicate(session, event, prior)
            return self._schedule_retry(session, event, e)
        except (PermanentProcessingError, InvalidTransitionError) as e:
            session.rollback()
            self._fail(session, event, str(e), permanent=True)
            return IngestResult(webhook_id, WebhookStatus.FAILED, f"rejected: {e}")
        except Exception as e:
            session.rollback()
            return self._schedule_retry(session, event, e)

        log_performance(
            "webhook_processing",
            (time.time() - started) * 1000,
            {"provider": provider, "event_type": event.event_type},
        )
        log_business_event(
            "webhook_processed",
            {
                "webhook_id": webhook_id,
                "provider": provider,
                "webhook_event_type": event.event_type,
                "payment_record_id": update_.record.id,
                "created": update_.created,
                "changed": update_.changed,
            },
            request_id=event.request_id,
        )
        return IngestResult(webhook_id, WebhookStatus.PROCESSED, "processed", update_.record.id)

    def _mark_duplicate(self, session: Session, event: WebhookEvent, prior: WebhookEvent) -> IngestResult:
        now = self.clock.now()
        event.status = WebhookStatus.DUPLICATE
        event.payment_record_id = prior.payment_record_id
        event.processed_at = now
        event.processing_duration_ms = self._duration_ms(event, now)
        event.next_retry_at = None
        session.commit()
        logger.info(
            "Duplicate webhook delivery",
            webhook_id=event.webhook_id,
            provider=event.provider_name,
            external_event_id=event.external_event_id,
            original_webhook_id=prior.webhook_id,
        )
        return IngestResult(event.webhook_id, WebhookStatus.DUPLICATE, "duplicate", prior.payment_record_id)

    def _schedule_retry(self, session: Session, event: WebhookEvent, error: Exception) -> IngestResult:
        logger.error(
            "Webhook processing error",
            webhook_id=event.webhook_id,
            provider=event.provider_name,
            error=str(error),
            error_type=type(error).__name__,
            exc_info=True,
        )
        scheduled = self._fail(session, event, f"{type(error).__name__}: {error}", permanent=False)
        message = "accepted for retry" if scheduled else "failed: retries exhausted"
        return IngestResult(event.webhook_id, WebhookStatus.FAILED, message, retry_scheduled=scheduled)

    def _find_processed(self, session: Session, event: WebhookEvent) -> WebhookEvent | None:
        if not event.external_event_id:
            return None
        stmt = (
            select(WebhookEvent)
            .where(
                WebhookEvent.provider_name == event.provider_name,
                WebhookEvent.external_event_id == event.external_event_id,
                WebhookEvent.status == WebhookStatus.PROCESSED,
                WebhookEvent.id != event.id,
            )
            .order_by(WebhookEvent.id)
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def _fail(self, session: Session, event: WebhookEvent, reason: str, *, permanent: bool) -> bool:
        """Mark the event failed; returns True when a retry was scheduled."""
        now = self.clock.now()
        event.status = WebhookStatus.FAILED
        event.error_message = reason[:2000]
        event.processed_at = now
        event.processing_duration_ms = self._duration_ms(event, now)
        scheduled = False
        if not permanent and event.retry_count < event.max_retries:
            event.retry_count += 1
            delay = compute_backoff_seconds(event.retry_count, rng=self.rng)
            event.next_retry_at = now + timedelta(seconds=delay)
            scheduled = True
        else:
            event.next_retry_at = None
        session.commit()
        if scheduled:
            logger.warning(
                "Webhook processing failed; retry scheduled",
                webhook_id=event.webhook_id,
                provider=event.provider_name,
                retry_count=event.retry_count,
                next_retry_at=event.next_retry_at.isoformat() if event.next_retry_at else None,
                error=reason,
            )
        else:
            logger.error(
                "Webhook processing failed permanently",
                webhook_id=event.webhook_id,
                provider=event.provider_name,
                retry_count=event.retry_count,
                permanent=permanent,
                error=reason,
            )
        return scheduled

    @staticmethod
    def _duration_ms(event: WebhookEvent, now: datetime) -> int:
        received = ensure_utc(event.received_at)
        if received is None:
            return 0
        return max(int((ensure_utc(now) - received).total_seconds() * 1000), 0)  # type: ignore[operator]

    # ------------------------------------------------------------------ #
    # Background maintenance
    # ------------------------------------------------------------------ #
    def retry_failed_events(self, session_factory: Callable[[], Session], *, limit: int | None = None) -> dict[str, int]:
        """Re-process failed events whose retry time has come.

        Each event is claimed failed -> processing with a conditional update
        so concurrent workers never process the same delivery twice. Events
        stuck in ``processing`` past the stale window are picked up as well.
        """
        limit = int(limit or WEBHOOK_SETTINGS["retry_batch_size"])
        now = self.clock.now()
        stale_cutoff = now - timedelta(seconds=float(WEBHOOK_SETTINGS["stale_after_seconds"]))
        stats = {"selected": 0, "processed": 0, "duplicate": 0, "failed": 0, "skipped": 0}

        session = session_factory()
        try:
            due = list(session.execute(
                select(WebhookEvent.id, WebhookEvent.status)
                .where(
                    (
                        (WebhookEvent.status == WebhookStatus.FAILED)
                        & (WebhookEvent.next_retry_at.is_not(None))
                        & (WebhookEvent.next_retry_at <= now)
                    )
                    | (
                        (WebhookEvent.status == WebhookStatus.PROCESSING)
                        & (WebhookEvent.processing_started_at < stale_cutoff)
                    )
                )
                .order_by(WebhookEvent.id)
                .limit(limit)
            ))
        finally:
            session.close()
        stats["selected"] = len(due)

        for event_id, current_status in due:
            session = session_factory()
            try:
                claimed = session.execute(
                    update(WebhookEvent)
                    .where(WebhookEvent.id == event_id, WebhookEvent.status == current_status)
                    .values(status=WebhookStatus.PROCESSING, processing_started_at=now, next_retry_at=None)
                    .execution_options(synchronize_session=False)
                ).rowcount
                session.commit()
                if claimed != 1:
                    stats["skipped"] += 1
                    continue
                event = session.get(WebhookEvent, event_id)
                logger.info(
                    "Retrying webhook event",
                    webhook_id=event.webhook_id,
                    provider=event.provider_name,
                    retry_count=event.retry_count,
                )
                result = self.process_event(session, event)
                stats[result.status.value] = stats.get(result.status.value, 0) + 1
            except Exception as e:
                session.rollback()
                stats["failed"] += 1
                logger.error("Webhook retry crashed", event_id=event_id, error=str(e), exc_info=True)
            finally:
                session.close()
        if stats["selected"]:
            logger.info("Webhook retry pass finished", **stats)
        return stats

    def purge_expired(self, session: Session) -> int:
        """Delete audit rows past their retention window."""
        now = self.clock.now()
        result = session.execute(
            delete(WebhookEvent)
            .where(WebhookEvent.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        if result.rowcount:
            logger.info("Purged expired webhook events", count=result.rowcount)
        return result.rowcount


def get_event_status(session: Session, webhook_id: str) -> dict[str, Any] | None:
    event = session.execute(select(WebhookEvent).where(WebhookEvent.webhook_id == webhook_id)).scalar_one_or_none()
    if event is None:
        return None
    return {
        "webhook_id": event.webhook_id,
        "status": WebhookStatus(event.status).value,
        "provider": event.provider_name,
        "event_type": event.event_type,
        "external_event_id": event.external_event_id,
        "received_at": ensure_utc(event.received_at),
        "processing_duration_ms": event.processing_duration_ms,
        "error_message": event.error_message,
        "retry_count": event.retry_count,
        "next_retry_at": ensure_utc(event.next_retry_at),
        "payment_record_id": event.payment_record_id,
    }


def _parse_json(body: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(body.decode("utf-8") or "null")
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


__all__ = ["IngestResult", "WebhookIngress", "resolve_provider", "get_event_status", "DEFAULT_PROVIDER"]
