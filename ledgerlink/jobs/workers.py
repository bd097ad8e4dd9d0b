"""Factories wiring services into PeriodicWorkers for the application lifespan."""
from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from ledgerlink.config import OUTBOX_SETTINGS, RECONCILIATION_SETTINGS, WEBHOOK_SETTINGS
from ledgerlink.integrations.feeds.base import ProviderFeed
from ledgerlink.jobs.periodic import PeriodicWorker
from ledgerlink.services.alerting import Notifier
from ledgerlink.services.dispatcher import OutboxDispatcher
from ledgerlink.services.reconciliation_engine import run_reconciliation
from ledgerlink.services.webhook_ingress import WebhookIngress
from ledgerlink.utils.time import Clock

SessionFactory = Callable[[], Session]


def outbox_worker(dispatcher: OutboxDispatcher) -> PeriodicWorker:
    return PeriodicWorker(
        "outbox-dispatcher",
        float(OUTBOX_SETTINGS["poll_interval_seconds"]),
        lambda: dispatcher.run_once().as_dict(),
    )


def webhook_retry_worker(ingress: WebhookIngress, session_factory: SessionFactory) -> PeriodicWorker:
    return PeriodicWorker(
        "webhook-retry",
        float(WEBHOOK_SETTINGS["retry_poll_interval_seconds"]),
        lambda: ingress.retry_failed_events(session_factory),
    )


def webhook_purge_worker(ingress: WebhookIngress, session_factory: SessionFactory) -> PeriodicWorker:
    def tick() -> int:
        session = session_factory()
        try:
            return ingress.purge_expired(session)
        finally:
            session.close()

    return PeriodicWorker("webhook-purge", float(WEBHOOK_SETTINGS["purge_interval_seconds"]), tick)


def reconciliation_worker(
    feed: ProviderFeed,
    session_factory: SessionFactory,
    *,
    clock: Clock | None = None,
    notifier: Notifier | None = None,
) -> PeriodicWorker:
    def tick() -> dict:
        session = session_factory()
        try:
            run = run_reconciliation(session, feed, clock=clock, notifier=notifier)
            return {"run_id": run.id, "status": run.status.value, "summary": dict(run.summary or {})}
        finally:
            session.close()

    # The first run waits a full interval so startup does not hit provider APIs.
    return PeriodicWorker(
        f"reconciliation-{feed.name}",
        float(RECONCILIATION_SETTINGS["interval_seconds"]),
        tick,
        run_immediately=False,
    )


__all__ = ["outbox_worker", "webhook_retry_worker", "webhook_purge_worker", "reconciliation_worker"]
