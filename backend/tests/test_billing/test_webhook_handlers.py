"""Tests for Stripe webhook handlers, with mocked events and signed HTTP deliveries."""

import hashlib
import hmac
import json
import time
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.billing.dependencies import get_billing_provider
from app.billing.errors import InvalidWebhookSignature, ProviderRejected, ProviderUnavailable
from app.billing.webhooks import (
    OUTCOME_HELD,
    OUTCOME_IGNORED,
    OUTCOME_PROCESSED,
    handle_checkout_session_completed,
    handle_provider_webhook,
    handle_subscription_deleted,
    handle_subscription_updated,
)
from app.main import app
from app.models.subscription import Subscription
from conftest import (
    PRICE_ESSENTIAL_MONTHLY,
    PRICE_PREMIUM_MONTHLY,
    WEBHOOK_SECRET,
    StripeObj,
    make_checkout_session,
    make_event,
    make_stripe_sub,
    to_ts,
    utcnow,
)


def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _subscription_event_payload(event_type: str, price_id: str, status: str = "active") -> bytes:
    now = utcnow()
    return json.dumps(
        {
            "id": "evt_signed_1",
            "object": "event",
            "type": event_type,
            "created": to_ts(now),
            "data": {
                "object": {
                    "id": "sub_test_123",
                    "object": "subscription",
                    "status": status,
                    "customer": "cus_test_123",
                    "cancel_at": None,
                    "cancel_at_period_end": False,
                    "canceled_at": None,
                    "start_date": to_ts(now - timedelta(days=1)),
                    "metadata": {},
                    "items": {
                        "object": "list",
                        "data": [
                            {
                                "id": "si_test_123",
                                "object": "subscription_item",
                                "price": {"id": price_id, "object": "price"},
                                "current_period_start": to_ts(now - timedelta(days=1)),
                                "current_period_end": to_ts(now + timedelta(days=29)),
                            }
                        ],
                    },
                }
            },
        }
    ).encode()


async def _count_for(db_session, stripe_subscription_id: str) -> int:
    result = await db_session.execute(
        select(func.count())
        .select_from(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
    )
    return result.scalar_one()


# ---------------------------------------------------------------------------
# checkout.session.completed
# ---------------------------------------------------------------------------


class TestCheckoutSessionCompleted:
    async def test_records_subscription(self, db_session, plans, test_user, fake_provider):
        event = make_event("checkout.session.completed", make_checkout_session(test_user.id))

        outcome = await handle_checkout_session_completed(db_session, fake_provider, event)

        assert outcome == OUTCOME_PROCESSED
        fake_provider.retrieve_subscription.assert_awaited_once_with("sub_test_123")
        await db_session.refresh(test_user)
        assert test_user.active_subscription_id is not None

    async def test_replay_yields_one_row(self, db_session, plans, test_user, fake_provider):
        """The same delivery twice (or out of order with updated) leaves one row."""
        event = make_event("checkout.session.completed", make_checkout_session(test_user.id))

        await handle_checkout_session_completed(db_session, fake_provider, event)
        await handle_checkout_session_completed(db_session, fake_provider, event)

        assert await _count_for(db_session, "sub_test_123") == 1

    async def test_one_time_payment_is_ignored(self, db_session, plans, test_user, fake_provider):
        session = make_checkout_session(test_user.id)
        session.mode = "payment"
        outcome = await handle_checkout_session_completed(db_session, fake_provider, make_event("checkout.session.completed", session))

        assert outcome == OUTCOME_IGNORED
        fake_provider.retrieve_subscription.assert_not_awaited()

    async def test_falls_back_to_stripe_customer(self, db_session, plans, test_user, fake_provider):
        session = make_checkout_session(test_user.id)
        session.metadata = StripeObj()

        outcome = await handle_checkout_session_completed(db_session, fake_provider, make_event("checkout.session.completed", session))

        assert outcome == OUTCOME_PROCESSED
        await db_session.refresh(test_user)
        assert test_user.active_subscription_id is not None

    async def test_unknown_user_is_ignored(self, db_session, plans, fake_provider):
        session = make_checkout_session(uuid.uuid4(), customer="cus_nobody")
        outcome = await handle_checkout_session_completed(db_session, fake_provider, make_event("checkout.session.completed", session))

        assert outcome == OUTCOME_IGNORED


# ---------------------------------------------------------------------------
# customer.subscription.updated / deleted
# ---------------------------------------------------------------------------


class TestSubscriptionUpdated:
    async def test_syncs_plan_and_period(self, db_session, plans, test_user, fake_provider, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        end = (utcnow() + timedelta(days=60)).replace(microsecond=0)
        event = make_event("customer.subscription.updated", make_stripe_sub(price_id=PRICE_PREMIUM_MONTHLY, period_end=end))

        outcome = await handle_subscription_updated(db_session, fake_provider, event)

        assert outcome == OUTCOME_PROCESSED
        await db_session.refresh(sub)
        assert sub.plan_id == plans["premium"].id
        assert sub.current_period_end == end

    async def test_scheduled_cancel_becomes_pending(self, db_session, plans, test_user, fake_provider, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        cancel_at = (utcnow() + timedelta(days=20)).replace(microsecond=0)
        event = make_event(
            "customer.subscription.updated", make_stripe_sub(cancel_at=cancel_at, cancel_at_period_end=True)
        )

        await handle_subscription_updated(db_session, fake_provider, event)

        await db_session.refresh(sub)
        assert sub.status == "pending_cancellation"
        assert sub.cancellation_effective_date == cancel_at
        await db_session.refresh(test_user)
        assert test_user.active_subscription_id == sub.id

    async def test_unknown_subscription_is_ignored(self, db_session, plans, fake_provider):
        event = make_event("customer.subscription.updated", make_stripe_sub(sub_id="sub_unknown"))
        assert await handle_subscription_updated(db_session, fake_provider, event) == OUTCOME_IGNORED


class TestSubscriptionDeleted:
    async def test_cancels_and_clears_pointer(self, db_session, plans, test_user, fake_provider, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        event = make_event("customer.subscription.deleted", make_stripe_sub(status="canceled"))

        outcome = await handle_subscription_deleted(db_session, fake_provider, event)

        assert outcome == OUTCOME_PROCESSED
        await db_session.refresh(sub)
        assert sub.status == "cancelled"
        await db_session.refresh(test_user)
        assert test_user.active_subscription_id is None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestHandleProviderWebhook:
    async def test_invalid_signature_raises_before_any_work(self, db_session, real_provider):
        with pytest.raises(InvalidWebhookSignature):
            await handle_provider_webhook(db_session, real_provider, b"{}", "t=1,v1=deadbeef")

    async def test_missing_signature_raises(self, db_session, real_provider):
        with pytest.raises(InvalidWebhookSignature):
            await handle_provider_webhook(db_session, real_provider, b"{}", "")

    async def test_unknown_event_type_is_ignored(self, db_session, fake_provider):
        fake_provider.construct_event.return_value = make_event("invoice.created", StripeObj(id="in_123"))
        assert await handle_provider_webhook(db_session, fake_provider, b"{}", "sig") == OUTCOME_IGNORED

    async def test_ambiguous_plan_is_held(self, db_session, plans, test_user, fake_provider, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        fake_provider.construct_event.return_value = make_event(
            "customer.subscription.updated", make_stripe_sub(price_id="price_orphan")
        )

        assert await handle_provider_webhook(db_session, fake_provider, b"{}", "sig") == OUTCOME_HELD

        await db_session.refresh(sub)
        assert sub.plan_id == plans["essential"].id

    async def test_provider_outage_propagates(self, db_session, plans, test_user, fake_provider):
        fake_provider.construct_event.return_value = make_event(
            "checkout.session.completed", make_checkout_session(test_user.id)
        )
        fake_provider.retrieve_subscription.side_effect = ProviderUnavailable("timeout")

        with pytest.raises(ProviderUnavailable):
            await handle_provider_webhook(db_session, fake_provider, b"{}", "sig")

    async def test_rejected_stripe_read_is_held(self, db_session, plans, test_user, fake_provider):
        fake_provider.construct_event.return_value = make_event(
            "checkout.session.completed", make_checkout_session(test_user.id)
        )
        fake_provider.retrieve_subscription.side_effect = ProviderRejected("gone", code="resource_missing")

        assert await handle_provider_webhook(db_session, fake_provider, b"{}", "sig") == OUTCOME_HELD

        assert await _count_for(db_session, "sub_test_123") == 0
        await db_session.refresh(test_user)
        assert test_user.active_subscription_id is None


# ---------------------------------------------------------------------------
# HTTP endpoint with real signature verification
# ---------------------------------------------------------------------------


class TestStripeWebhookEndpoint:
    @pytest.fixture(autouse=True)
    def _use_real_provider(self, client, real_provider):
        app.dependency_overrides[get_billing_provider] = lambda: real_provider

    async def test_signed_update_is_processed(self, client, db_session, plans, test_user, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        payload = _subscription_event_payload("customer.subscription.updated", PRICE_PREMIUM_MONTHLY)

        response = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": _sign(payload)}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}
        await db_session.refresh(sub)
        assert sub.plan_id == plans["premium"].id

    async def test_signed_delete_cancels(self, client, db_session, plans, test_user, make_subscription):
        sub = await make_subscription(
            test_user, plans["essential"], stripe_subscription_id="sub_test_123", stripe_price_id=PRICE_ESSENTIAL_MONTHLY
        )
        payload = _subscription_event_payload("customer.subscription.deleted", PRICE_ESSENTIAL_MONTHLY, status="canceled")

        response = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": _sign(payload)}
        )

        assert response.status_code == 200
        await db_session.refresh(sub)
        assert sub.status == "cancelled"

    async def test_bad_signature_is_400(self, client):
        payload = _subscription_event_payload("customer.subscription.updated", PRICE_PREMIUM_MONTHLY)

        response = await client.post(
            "/api/v1/webhooks/stripe",
            content=payload,
            headers={"stripe-signature": _sign(payload, secret="whsec_wrong")},
        )

        assert response.status_code == 400

    async def test_missing_signature_is_400(self, client):
        response = await client.post("/api/v1/webhooks/stripe", content=b"{}")
        assert response.status_code == 400

    async def test_unknown_type_is_acknowledged(self, client):
        payload = json.dumps(
            {"id": "evt_2", "object": "event", "type": "invoice.created", "data": {"object": {"id": "in_1", "object": "invoice"}}}
        ).encode()

        response = await client.post(
            "/api/v1/webhooks/stripe", content=payload, headers={"stripe-signature": _sign(payload)}
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    async def test_provider_outage_is_503(self, client, fake_provider, plans, test_user):
        fake_provider.construct_event.return_value = make_event(
            "checkout.session.completed", make_checkout_session(test_user.id)
        )
        fake_provider.retrieve_subscription.side_effect = ProviderUnavailable("timeout")
        app.dependency_overrides[get_billing_provider] = lambda: fake_provider

        response = await client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})

        assert response.status_code == 503

    async def test_rejected_stripe_read_is_acknowledged(self, client, fake_provider, plans, test_user):
        fake_provider.construct_event.return_value = make_event(
            "checkout.session.completed", make_checkout_session(test_user.id)
        )
        fake_provider.retrieve_subscription.side_effect = ProviderRejected("gone", code="resource_missing")
        app.dependency_overrides[get_billing_provider] = lambda: fake_provider

        response = await client.post("/api/v1/webhooks/stripe", content=b"{}", headers={"stripe-signature": "sig"})

        assert response.status_code == 200
        assert response.json() == {"status": "held"}
