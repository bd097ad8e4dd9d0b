import os
import sys
import threading
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Keep the app quiet and self-contained before anything from ledgerlink is imported.
os.environ.setdefault("ENABLE_WORKERS", "false")
os.environ.setdefault("LOG_FILE", "")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///./test_ledgerlink.db")

# Ensure project root on sys.path so 'ledgerlink' resolves without an editable install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from ledgerlink.main import app  # type: ignore  # noqa: E402
from ledgerlink.database import Base  # type: ignore  # noqa: E402
from ledgerlink.api import deps  # type: ignore  # noqa: E402
"""Pytest fixtures and fakes.

Every test gets its own file-backed SQLite database (file, not in-memory, so
threads and separate sessions see the same data), a FrozenClock, a fake
ledger and fake provider feeds. Nothing talks to the network.
"""
from ledgerlink.config import SUPPORTED_PROVIDERS  # noqa: E402
from ledgerlink.integrations.feeds.base import FeedEntry, FeedPage  # noqa: E402
from ledgerlink.integrations.ledger import AnchorReceipt  # noqa: E402
from ledgerlink.models.db import PaymentRecord, PaymentStatus  # noqa: E402
from ledgerlink.services.alerting import LoggingNotifier  # noqa: E402
from ledgerlink.services.dispatcher import LedgerAnchorHandler, OutboxDispatcher  # noqa: E402
from ledgerlink.services.webhook_ingress import WebhookIngress  # noqa: E402
from ledgerlink.utils.circuit_breaker import CircuitBreaker  # noqa: E402
from ledgerlink.utils.time import FrozenClock  # noqa: E402

START = datetime(2025, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
WEBHOOK_SECRETS = {name: f"whsec_{name}_test" for name in SUPPORTED_PROVIDERS}


def no_jitter(low: float, high: float) -> float:
    return 0.0


# ---------- Fakes ----------

class FakeLedger:
    """In-memory ledger; remembers every anchored memo like Horizon would."""

    def __init__(self) -> None:
        self.transactions: dict[str, str] = {}
        self.submissions = 0
        self.fail_submissions = 0
        self.delay_seconds = 0.0
        self._lock = threading.Lock()

    def submit_anchor(self, memo_hex: str) -> AnchorReceipt:
        if self.delay_seconds:
            threading.Event().wait(self.delay_seconds)
        with self._lock:
            if self.fail_submissions > 0:
                self.fail_submissions -= 1
                raise ConnectionError("ledger unavailable")
            self.submissions += 1
            tx_hash = f"{self.submissions:064x}"
            self.transactions[tx_hash] = memo_hex
            return AnchorReceipt(tx_hash=tx_hash, memo=memo_hex, ledger=1000 + self.submissions)

    def find_transaction_by_memo(self, memo_hex: str) -> Optional[AnchorReceipt]:
        with self._lock:
            for tx_hash, memo in self.transactions.items():
                if memo == memo_hex:
                    return AnchorReceipt(tx_hash=tx_hash, memo=memo)
        return None

    def fetch_memo(self, tx_hash: str) -> Optional[str]:
        return self.transactions.get(tx_hash)


class FakeFeed:
    """Paged provider feed. ``pages`` maps a cursor to (entries, next_cursor)."""

    def __init__(self, name: str, pages: dict, *, fail_on: tuple = ()) -> None:
        self.name = name
        self.pages = pages
        self.fail_on = set(fail_on)
        self.calls: list = []

    def fetch_page(self, cursor, limit):
        self.calls.append(cursor)
        if cursor in self.fail_on:
            raise ConnectionError(f"feed unavailable at cursor {cursor}")
        entries, next_cursor = self.pages[cursor]
        return FeedPage(entries=list(entries), next_cursor=next_cursor, has_more=next_cursor is not None)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.batches: list = []

    def notify(self, run, items) -> None:
        if self.fail:
            raise RuntimeError("pager down")
        self.batches.append([(i.external_id, i.mismatch_type) for i in items])


def feed_entry(external_id: str, amount: str = "20.00", currency: str = "USD", status: str = "completed", refunded: bool = False) -> FeedEntry:
    return FeedEntry(
        external_id=external_id,
        amount=Decimal(amount),
        currency=currency,
        status="refunded" if refunded else status,
        refunded=refunded,
    )


# ---------- Database ----------

@pytest.fixture()
def engine(tmp_path):
    eng = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'ledgerlink_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session", autouse=True)
def _cleanup_default_db():
    yield
    try:
        os.remove("test_ledgerlink.db")
    except OSError:
        pass


# ---------- Services ----------

@pytest.fixture()
def clock():
    return FrozenClock(START)


@pytest.fixture()
def fake_ledger():
    return FakeLedger()


@pytest.fixture()
def ingress(clock):
    return WebhookIngress(dict(WEBHOOK_SECRETS), clock=clock, rng=no_jitter)


@pytest.fixture()
def breaker(clock):
    return CircuitBreaker(failure_threshold=2, open_cooldown_seconds=60, half_open_probe_count=1, clock=clock)


@pytest.fixture()
def dispatcher(session_factory, clock, fake_ledger, breaker):
    return OutboxDispatcher(
        session_factory,
        [LedgerAnchorHandler(fake_ledger)],
        clock=clock,
        breaker=breaker,
        max_attempts=3,
        call_timeout_seconds=5,
        rng=no_jitter,
    )


@pytest.fixture()
def payment_factory(db_session, clock):
    def _create(payment_id: str, *, provider: str = "stripe", amount: str = "20.00", currency: str = "USD",
                status: PaymentStatus = PaymentStatus.COMPLETED):
        record = PaymentRecord(
            provider_name=provider,
            provider_payment_id=payment_id,
            amount=Decimal(amount),
            currency_code=currency,
            status=status,
            created_at=clock.now(),
        )
        db_session.add(record)
        db_session.commit()
        db_session.refresh(record)
        return record
    return _create


# ---------- HTTP ----------

@pytest.fixture()
def client(session_factory, ingress, clock, fake_ledger, dispatcher):
    def _override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = _override_get_db
    app.state.webhook_ingress = ingress
    app.state.clock = clock
    app.state.notifier = LoggingNotifier()
    app.state.reconciliation_feeds = {}
    app.state.dispatcher = dispatcher
    app.state.ledger = fake_ledger
    app.state.workers = []
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        for attr in ("webhook_ingress", "clock", "notifier", "reconciliation_feeds", "dispatcher", "ledger", "workers"):
            if hasattr(app.state, attr):
                delattr(app.state, attr)
