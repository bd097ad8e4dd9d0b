from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from ledgerlink.integrations.feeds.stripe_feed import StripeChargeFeed
from ledgerlink.services.reconciliation_engine import list_items, run_reconciliation


def charge(charge_id, status="succeeded", payment_intent="pi_1", amount=2000, refunded=False):
    return SimpleNamespace(
        id=charge_id,
        status=status,
        payment_intent=payment_intent,
        amount=amount,
        currency="usd",
        refunded=refunded,
        amount_refunded=amount if refunded else 0,
    )


@pytest.fixture()
def charge_pages(monkeypatch):
    """Serves ``pages[starting_after]`` from a patched ``stripe.Charge.list``."""
    pages = {}
    calls = []

    def fake_list(**params):
        cursor = params.get("starting_after")
        calls.append(cursor)
        data, has_more = pages[cursor]
        return SimpleNamespace(data=data, has_more=has_more)

    monkeypatch.setattr(stripe, "default_http_client", None)
    monkeypatch.setattr(stripe.Charge, "list", staticmethod(fake_list))
    return pages


def test_entries_are_keyed_by_payment_intent(charge_pages):
    charge_pages[None] = ([charge("ch_1"), charge("ch_2", payment_intent=None, amount=500)], False)
    page = StripeChargeFeed("sk_test").fetch_page(None, 50)
    assert [e.external_id for e in page.entries] == ["pi_1", "ch_2"]
    assert page.entries[0].amount == Decimal("20.00")
    assert page.entries[0].status == "completed"
    assert page.entries[0].raw["charge_id"] == "ch_1"
    assert page.has_more is False and page.next_cursor is None


def test_failed_attempt_of_succeeded_intent_is_dropped(charge_pages):
    charge_pages[None] = ([charge("ch_ok"), charge("ch_declined", status="failed")], False)
    page = StripeChargeFeed("sk_test").fetch_page(None, 50)
    assert [(e.external_id, e.status) for e in page.entries] == [("pi_1", "completed")]


def test_failed_attempt_on_a_later_page_is_dropped(charge_pages):
    charge_pages[None] = ([charge("ch_ok")], True)
    charge_pages["ch_ok"] = ([charge("ch_declined", status="failed"), charge("ch_x", status="failed", payment_intent="pi_2")], False)
    feed = StripeChargeFeed("sk_test")
    first = feed.fetch_page(None, 1)
    assert first.next_cursor == "ch_ok"
    second = feed.fetch_page(first.next_cursor, 50)
    # only the intent that never succeeded is still reported as failed
    assert [(e.external_id, e.status) for e in second.entries] == [("pi_2", "failed")]


def test_retried_intent_reconciles_cleanly(charge_pages, db_session, payment_factory, clock):
    payment_factory("pi_1", amount="20.00")
    charge_pages[None] = ([charge("ch_ok"), charge("ch_declined", status="failed")], False)

    run = run_reconciliation(db_session, StripeChargeFeed("sk_test"), clock=clock)
    assert run.summary["entries"] == 1
    assert run.summary["mismatches"] == 0
    assert list_items(db_session, run.id) == []
