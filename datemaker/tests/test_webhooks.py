"""
Stripe webhook reconciliation.

Events are signed for real with the test webhook secret; only the
subscription lookups against Stripe are canned.
"""
import time
from datetime import datetime, timezone

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import select

from datemaker.core.database import get_db_session, webhook_events
from datemaker.core.errors import ProviderUnavailableError, StoreUnavailableError
from datemaker.core.metrics import webhook_events_total
from datemaker.features.billing.provider import (
    BillingProviderError,
    BillingRequestError,
    BillingWebhookError,
)
from datemaker.features.billing.stripe_provider import StripeProvider, provider_error
from datemaker.features.billing.webhooks import (
    APPLIED,
    DROPPED,
    DUPLICATE,
    FAILED,
    IGNORED,
    WebhookProcessor,
    invoice_subscription_id,
    period_end,
)
from datemaker.features.ledger.models import Platform, SubscriptionStatus
from datemaker.tests.mocks import (
    WEBHOOK_SECRET,
    FakeStripeProvider,
    build_test_app,
    make_event,
    make_settings,
    sign_payload,
)

TRIAL_END = 1767225600  # 2026-01-01T00:00:00Z
PERIOD_END = 1769904000  # 2026-02-01T00:00:00Z


def _trialing_subscription(sub_id="sub_1", customer="cus_1"):
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": "trialing",
        "trial_end": TRIAL_END,
        "current_period_end": PERIOD_END,
        "cancel_at_period_end": False,
    }


@pytest.fixture
def provider():
    return FakeStripeProvider(subscriptions={"sub_1": _trialing_subscription()})


@pytest.fixture
def processor(provider, ledger):
    return WebhookProcessor(provider, ledger)


def _deliver(processor, event_id, event_type, obj):
    payload = make_event(event_id, event_type, obj)
    return processor.process(payload, sign_payload(payload))


def _journal_row(event_id):
    with get_db_session() as session:
        return session.execute(
            select(webhook_events).where(webhook_events.c.event_id == event_id)
        ).mappings().first()


def _linked_user(ledger, user_id, customer_id, **patch):
    ledger.ensure_user(user_id)
    ledger.mutate_entitlement(user_id, {"payment_provider_customer_id": customer_id, **patch})


def test_checkout_completed_starts_trial(processor, ledger):
    ledger.ensure_user("u1")

    result = _deliver(
        processor,
        "evt_1",
        "checkout.session.completed",
        {"id": "cs_1", "client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"},
    )

    assert result.outcome == APPLIED
    assert result.user_id == "u1"
    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.TRIAL
    assert record.subscription_platform is Platform.WEB
    assert record.payment_provider_customer_id == "cus_1"
    assert record.payment_provider_subscription_id == "sub_1"
    assert record.trial_ends_at == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert record.current_period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)


def test_replayed_event_is_acknowledged_without_reapplying(processor, provider, ledger):
    ledger.ensure_user("u1")
    obj = {"id": "cs_1", "client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"}
    _deliver(processor, "evt_1", "checkout.session.completed", obj)
    first = ledger.get_entitlement("u1")

    replay = _deliver(processor, "evt_1", "checkout.session.completed", obj)

    assert replay.outcome == DUPLICATE
    assert provider.retrieve_calls == ["sub_1"]
    assert ledger.get_entitlement("u1").updated_at == first.updated_at
    assert webhook_events_total.value(
        labels={"event_type": "checkout.session.completed", "outcome": DUPLICATE}
    ) == 1


def test_checkout_without_client_reference_is_dropped(processor, provider):
    result = _deliver(processor, "evt_2", "checkout.session.completed", {"id": "cs_2", "subscription": "sub_1"})

    assert result.outcome == DROPPED
    assert provider.retrieve_calls == []
    assert _journal_row("evt_2")["outcome"] == DROPPED


def test_checkout_does_not_write_malformed_timestamps(processor, provider, ledger):
    provider.subscriptions["sub_1"] = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "trial_end": None,
        "current_period_end": "not-a-timestamp",
    }
    _linked_user(ledger, "u1", "cus_1", current_period_end=datetime(2025, 6, 1, tzinfo=timezone.utc))

    _deliver(
        processor,
        "evt_3",
        "checkout.session.completed",
        {"client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"},
    )

    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.PREMIUM
    assert record.trial_ends_at is None
    assert record.current_period_end == datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_subscription_deleted_downgrades(processor, ledger):
    _linked_user(
        ledger,
        "u2",
        "cus_2",
        subscription_status=SubscriptionStatus.PREMIUM,
        payment_provider_subscription_id="sub_2",
        subscription_will_cancel_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
    )

    result = _deliver(processor, "evt_4", "customer.subscription.deleted", {"id": "sub_2", "customer": "cus_2"})

    assert result.outcome == APPLIED
    record = ledger.get_entitlement("u2")
    assert record.subscription_status is SubscriptionStatus.FREE
    assert record.payment_provider_subscription_id is None
    assert record.subscription_will_cancel_at is None
    assert record.payment_provider_customer_id == "cus_2"


def test_subscription_created_clears_trial_when_absent(processor, ledger):
    _linked_user(ledger, "u1", "cus_1", trial_ends_at=datetime(2025, 1, 1, tzinfo=timezone.utc))

    _deliver(
        processor,
        "evt_5",
        "customer.subscription.created",
        {"id": "sub_9", "customer": "cus_1", "status": "active", "current_period_end": PERIOD_END},
    )

    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.PREMIUM
    assert record.payment_provider_subscription_id == "sub_9"
    assert record.trial_ends_at is None


def test_subscription_updated_transient_status_keeps_entitlement(processor, ledger):
    _linked_user(ledger, "u1", "cus_1", subscription_status=SubscriptionStatus.PREMIUM)

    _deliver(
        processor,
        "evt_6",
        "customer.subscription.updated",
        {"id": "sub_1", "customer": "cus_1", "status": "past_due", "current_period_end": PERIOD_END},
    )

    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.PREMIUM
    assert record.current_period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)


def test_subscription_updated_tracks_pending_cancellation(processor, ledger):
    _linked_user(ledger, "u1", "cus_1", subscription_status=SubscriptionStatus.PREMIUM)
    obj = {
        "id": "sub_1",
        "customer": "cus_1",
        "status": "active",
        "cancel_at_period_end": True,
        "items": {"data": [{"current_period_end": PERIOD_END}]},
    }

    _deliver(processor, "evt_7", "customer.subscription.updated", obj)
    assert ledger.get_entitlement("u1").subscription_will_cancel_at == datetime(2026, 2, 1, tzinfo=timezone.utc)

    _deliver(processor, "evt_8", "customer.subscription.updated", {**obj, "cancel_at_period_end": False})
    assert ledger.get_entitlement("u1").subscription_will_cancel_at is None


def test_subscription_updated_canceled_is_free(processor, ledger):
    _linked_user(
        ledger,
        "u1",
        "cus_1",
        subscription_status=SubscriptionStatus.PREMIUM,
        payment_provider_subscription_id="sub_1",
    )

    _deliver(processor, "evt_9", "customer.subscription.updated", {"id": "sub_1", "customer": "cus_1", "status": "canceled"})

    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.FREE
    assert record.payment_provider_subscription_id is None


def test_payment_failed_flags_without_downgrade(processor, provider, ledger):
    provider.subscriptions["sub_1"]["status"] = "past_due"
    _linked_user(ledger, "u1", "cus_1", subscription_status=SubscriptionStatus.PREMIUM)

    _deliver(processor, "evt_10", "invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"})

    record = ledger.get_entitlement("u1")
    assert record.payment_failed is True
    assert record.payment_failed_at is not None
    assert record.subscription_status is SubscriptionStatus.PREMIUM


def test_payment_succeeded_restores_premium(processor, ledger):
    _linked_user(ledger, "u1", "cus_1", subscription_status=SubscriptionStatus.TRIAL, payment_failed=True)

    _deliver(
        processor,
        "evt_11",
        "invoice.payment_succeeded",
        {"id": "in_2", "parent": {"subscription_details": {"subscription": "sub_1"}}},
    )

    record = ledger.get_entitlement("u1")
    assert record.subscription_status is SubscriptionStatus.PREMIUM
    assert record.payment_failed is False
    assert record.current_period_end == datetime(2026, 2, 1, tzinfo=timezone.utc)


def test_invoice_without_subscription_is_ignored(processor, provider):
    result = _deliver(processor, "evt_12", "invoice.payment_succeeded", {"id": "in_3"})
    assert result.outcome == IGNORED
    assert provider.retrieve_calls == []


def test_unknown_customer_is_dropped_and_acknowledged(processor):
    result = _deliver(processor, "evt_13", "customer.subscription.deleted", {"id": "sub_x", "customer": "cus_unknown"})

    assert result.outcome == DROPPED
    row = _journal_row("evt_13")
    assert row["processed_at"] is not None
    assert "cus_unknown" in row["error"]


def test_unhandled_event_type_is_ignored(processor):
    result = _deliver(processor, "evt_14", "charge.refunded", {"id": "ch_1"})
    assert result.outcome == IGNORED
    assert _journal_row("evt_14")["outcome"] == IGNORED


def test_invalid_signature_leaves_ledger_untouched(processor, ledger):
    ledger.ensure_user("u1")
    payload = make_event(
        "evt_15",
        "checkout.session.completed",
        {"client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"},
    )

    with pytest.raises(BillingWebhookError):
        processor.process(payload, sign_payload(payload, secret="whsec_wrong"))
    with pytest.raises(BillingWebhookError):
        processor.process(payload, None)

    assert ledger.get_entitlement("u1").subscription_status is SubscriptionStatus.FREE
    assert _journal_row("evt_15") is None


def test_tampered_payload_fails_verification(processor):
    payload = make_event("evt_16", "charge.refunded", {"id": "ch_1"})
    header = sign_payload(payload)

    with pytest.raises(BillingWebhookError):
        processor.process(payload.replace(b"ch_1", b"ch_2"), header)


def test_provider_outage_propagates_and_redelivery_applies(processor, provider, ledger):
    ledger.ensure_user("u1")
    obj = {"client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"}

    provider.fail = True
    with pytest.raises(ProviderUnavailableError):
        _deliver(processor, "evt_17", "checkout.session.completed", obj)

    row = _journal_row("evt_17")
    assert row["processed_at"] is None
    assert row["error"]
    assert ledger.get_entitlement("u1").subscription_status is SubscriptionStatus.FREE

    provider.fail = False
    result = _deliver(processor, "evt_17", "checkout.session.completed", obj)

    assert result.outcome == APPLIED
    assert ledger.get_entitlement("u1").subscription_status is SubscriptionStatus.TRIAL


def test_period_end_helpers():
    assert period_end({"current_period_end": PERIOD_END}) == datetime(2026, 2, 1, tzinfo=timezone.utc)
    assert period_end({"items": {"data": [{"current_period_end": PERIOD_END}]}}) == datetime(
        2026, 2, 1, tzinfo=timezone.utc
    )
    assert period_end({}) is None
    assert invoice_subscription_id({"subscription": {"id": "sub_1"}}) == "sub_1"
    assert invoice_subscription_id({}) is None


# ---- route ---------------------------------------------------------------


def test_webhook_route_acknowledges_signed_event(provider, ledger):
    ledger.ensure_user("u1")
    client = TestClient(build_test_app(provider=provider))
    payload = make_event(
        "evt_20",
        "checkout.session.completed",
        {"client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_1"},
    )

    resp = client.post(
        "/api/webhook",
        content=payload,
        headers={"Stripe-Signature": sign_payload(payload), "Content-Type": "application/json"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "eventId": "evt_20", "outcome": APPLIED}
    assert ledger.get_entitlement("u1").subscription_status is SubscriptionStatus.TRIAL


def test_webhook_route_rejects_bad_signature(provider):
    client = TestClient(build_test_app(provider=provider))
    payload = make_event("evt_21", "charge.refunded", {})

    resp = client.post("/api/webhook", content=payload, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_signature"


def test_webhook_route_returns_503_when_store_unavailable(provider, monkeypatch):
    app = build_test_app(provider=provider)

    def unavailable(*args, **kwargs):
        raise StoreUnavailableError("Record store write failed: OperationalError")

    monkeypatch.setattr(app.state.services.ledger, "find_user_id_by_customer", unavailable)
    client = TestClient(app)
    payload = make_event("evt_22", "customer.subscription.deleted", {"id": "sub_1", "customer": "cus_1"})

    resp = client.post("/api/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "store_unavailable"
    assert _journal_row("evt_22")["processed_at"] is None


def test_webhook_route_when_billing_disabled():
    app = build_test_app(cfg=make_settings(STRIPE_SECRET_KEY=None))
    client = TestClient(app)

    resp = client.post("/api/webhook", content=b"{}", headers={"Stripe-Signature": "t=1,v1=x"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_stale_signature_timestamp_is_rejected(processor):
    payload = make_event("evt_30", "charge.refunded", {"id": "ch_1"})
    header = sign_payload(payload, timestamp=time.time() - 30 * 24 * 60 * 60)

    with pytest.raises(BillingWebhookError):
        processor.process(payload, header)
    assert _journal_row("evt_30") is None


@pytest.mark.parametrize(
    "error, expected",
    [
        (stripe.APIConnectionError("Connection reset by peer"), BillingProviderError),
        (stripe.RateLimitError("Too many requests", http_status=429), BillingProviderError),
        (stripe.APIError("Internal error", http_status=500), BillingProviderError),
        (stripe.InvalidRequestError("No such subscription: 'sub_gone'", "id", http_status=404), BillingRequestError),
        (stripe.AuthenticationError("Invalid API Key provided", http_status=401), BillingRequestError),
    ],
)
def test_stripe_errors_split_into_transient_and_rejected(error, expected):
    mapped = provider_error("subscription retrieval", error)

    assert type(mapped) is expected
    assert isinstance(mapped, ProviderUnavailableError) is (expected is BillingProviderError)


def test_webhook_route_acknowledges_rejected_subscription_lookup(ledger, monkeypatch):
    ledger.ensure_user("u1")

    def no_such_subscription(subscription_id, **kwargs):
        raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id", http_status=404)

    monkeypatch.setattr(stripe.Subscription, "retrieve", no_such_subscription)
    client = TestClient(build_test_app(provider=StripeProvider("sk_test_datemaker", WEBHOOK_SECRET)))
    payload = make_event(
        "evt_31",
        "checkout.session.completed",
        {"client_reference_id": "u1", "customer": "cus_1", "subscription": "sub_gone"},
    )

    first = client.post("/api/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})
    second = client.post("/api/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})

    assert first.status_code == 200
    assert first.json()["outcome"] == FAILED
    assert second.status_code == 200
    assert second.json()["outcome"] == DUPLICATE
    row = _journal_row("evt_31")
    assert row["processed_at"] is not None
    assert row["outcome"] == FAILED
    assert "InvalidRequestError" in row["error"]
    assert ledger.get_entitlement("u1").subscription_status is SubscriptionStatus.FREE
