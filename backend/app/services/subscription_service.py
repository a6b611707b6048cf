"""Subscription service: user-facing subscription operations.

These are the synchronous entry points behind the billing and subscription
routes. Anything that calls Stripe applies the same transitions the webhook
path uses, straight away, so the caller never reads a state older than the
one it just created.
"""

import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import store, transitions
from app.billing.errors import (
    CancellationDateMissing,
    InvalidSubscriptionState,
    NotFound,
    PaymentNotCompleted,
    ProviderRejected,
    Unauthorized,
)
from app.billing.plans import get_plan, get_purchasable_price
from app.billing.reconciliation import backfill_from_provider, needs_backfill
from app.billing.stripe_client import BillingProvider
from app.config import settings
from app.models.subscription import STATUS_ACTIVE, Subscription
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    """Outcome of start_checkout: a Stripe Checkout to open, or an in-place change."""

    action: str  # "checkout", "upgraded" or "unchanged"
    subscription: Subscription | None = None
    session_id: str | None = None
    checkout_url: str | None = None


def _ensure_owner(actor: User, subscription: Subscription) -> None:
    if not actor.is_admin and subscription.user_id != actor.id:
        raise Unauthorized("Not authorized to access this subscription")


async def _get_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await store.get_user(db, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found")
    return user


async def get_current_subscription(
    db: AsyncSession, provider: BillingProvider, user_id: uuid.UUID
) -> Subscription | None:
    """Return the subscription the user is entitled by, or None.

    A pointer to a record that is no longer entitled is repaired on the
    spot. Stripe-managed records with missing or lapsed dates are refreshed
    from Stripe before the answer is returned.
    """
    user = await _get_user(db, user_id)
    subscription = None
    if user.active_subscription_id is not None:
        subscription = await store.get_subscription(db, user.active_subscription_id)

    if subscription is None or not subscription.is_entitled:
        await store.persist_then_repoint(db, user_id)
        subscription = await store.latest_entitled(db, user_id)
        if subscription is None:
            return None

    if needs_backfill(subscription):
        subscription = await backfill_from_provider(db, provider, subscription)
        if not subscription.is_entitled:
            await store.persist_then_repoint(db, user_id)
            return await store.latest_entitled(db, user_id)
    return subscription


async def ensure_stripe_customer(db: AsyncSession, provider: BillingProvider, user: User) -> str:
    """Ensure the user has a Stripe customer ID. Create one if missing."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer = await provider.create_customer(
        email=user.email,
        name=user.name or user.email,
        user_id=str(user.id),
    )
    user.stripe_customer_id = customer.id
    # Keep the customer even if the checkout call that follows fails.
    await db.commit()
    logger.info("Linked Stripe customer %s to user %s", customer.id, user.id)
    return customer.id


async def start_checkout(
    db: AsyncSession,
    provider: BillingProvider,
    user: User,
    plan_id: uuid.UUID,
    billing_cycle: str | None = None,
    success_url: str | None = None,
    cancel_url: str | None = None,
) -> CheckoutResult:
    """Open a Stripe Checkout, or swap the price of the user's live subscription.

    When the user already has an entitled Stripe subscription the price is
    changed in place (with proration) and the new plan is written locally
    before returning.
    """
    plan, cycle, price_id = await get_purchasable_price(db, plan_id, billing_cycle)

    current = await get_current_subscription(db, provider, user.id)
    if current is not None and current.is_provider_managed:
        if current.stripe_price_id == price_id:
            return CheckoutResult(action="unchanged", subscription=current)
        try:
            stripe_sub = await provider.update_subscription(current.stripe_subscription_id, price_id=price_id)
        except ProviderRejected as e:
            if not e.resource_missing:
                raise
            logger.warning(
                "Stripe no longer knows %s; cancelling locally and opening a new checkout",
                current.stripe_subscription_id,
            )
            await transitions.mark_cancelled(db, current)
        else:
            upgraded = await transitions.apply_upgrade(db, current, plan, price_id, cycle, stripe_sub)
            return CheckoutResult(action="upgraded", subscription=upgraded)

    customer_id = await ensure_stripe_customer(db, provider, user)
    session = await provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url
        or f"{settings.frontend_url}/dashboard/subscription?payment_success=true&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{settings.frontend_url}/dashboard/subscription?payment_canceled=true",
        metadata={"user_id": str(user.id), "plan_id": str(plan.id)},
    )
    logger.info("Checkout session %s opened for user %s, plan %s (%s)", session.id, user.id, plan.name, cycle)
    return CheckoutResult(action="checkout", session_id=session.id, checkout_url=session.url)


async def request_cancellation(db: AsyncSession, provider: BillingProvider, user: User) -> Subscription:
    """Ask Stripe to cancel at period end and record pending_cancellation.

    If Stripe says the subscription no longer exists, the local record is
    cancelled immediately instead.
    """
    current = await get_current_subscription(db, provider, user.id)
    if current is None or current.status != STATUS_ACTIVE:
        raise NotFound("No active subscription to cancel")
    if not current.is_provider_managed:
        raise NotFound("Subscription is not billed through Stripe; use the immediate cancel endpoint")

    try:
        stripe_sub = await provider.update_subscription(current.stripe_subscription_id, cancel_at_period_end=True)
    except ProviderRejected as e:
        if not e.resource_missing:
            raise
        logger.warning("Stripe no longer knows %s; cancelling locally", current.stripe_subscription_id)
        return await transitions.mark_cancelled(db, current)

    cancel_at = transitions.ts_to_naive(getattr(stripe_sub, "cancel_at", None))
    if cancel_at is None:
        logger.error("Stripe accepted cancellation of %s without a cancel_at date", current.stripe_subscription_id)
        raise CancellationDateMissing("Billing provider did not report when the cancellation takes effect")
    return await transitions.apply_pending_cancellation(db, current, cancel_at)


def _session_subscription_id(session) -> str | None:
    value = getattr(session, "subscription", None)
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


async def verify_payment(
    db: AsyncSession, provider: BillingProvider, user: User, session_id: str
) -> Subscription:
    """Confirm a finished Checkout and make sure its subscription is recorded.

    Calling this again for the same session returns the same record.
    """
    try:
        session = await provider.retrieve_checkout_session(session_id)
    except ProviderRejected as e:
        if e.resource_missing:
            raise NotFound(f"Checkout session {session_id} not found") from e
        raise

    metadata = getattr(session, "metadata", None)
    owner = getattr(metadata, "user_id", None) if metadata is not None else None
    if owner != str(user.id):
        raise Unauthorized("Checkout session belongs to another user")

    if getattr(session, "payment_status", None) != "paid":
        raise PaymentNotCompleted("Payment for this checkout session has not completed")

    stripe_subscription_id = _session_subscription_id(session)
    if not stripe_subscription_id:
        raise InvalidSubscriptionState("Checkout session did not create a subscription")

    existing = await store.get_by_provider_id(db, stripe_subscription_id)
    if existing is not None:
        logger.info("Session %s already recorded as subscription %s", session_id, existing.id)
        return existing

    stripe_sub = await provider.retrieve_subscription(stripe_subscription_id)
    snapshot = transitions.snapshot_from_stripe(stripe_sub)
    return await transitions.apply_checkout_completed(db, user.id, snapshot)


async def get_subscription_for_actor(
    db: AsyncSession, actor: User, subscription_id: uuid.UUID
) -> Subscription:
    subscription = await store.get_subscription(db, subscription_id)
    if subscription is None:
        raise NotFound(f"Subscription {subscription_id} not found")
    _ensure_owner(actor, subscription)
    return subscription


async def renew_subscription(db: AsyncSession, actor: User, subscription_id: uuid.UUID) -> Subscription:
    """Reactivate an expired or cancelled local subscription for a new period."""
    subscription = await get_subscription_for_actor(db, actor, subscription_id)
    if subscription.is_provider_managed:
        raise InvalidSubscriptionState(
            "Stripe-billed subscriptions cannot be renewed in place; start a new checkout at /api/v1/billing/checkout"
        )

    other = await store.latest_entitled(db, subscription.user_id)
    if other is not None and other.id != subscription.id:
        raise InvalidSubscriptionState("User already has an active subscription")
    return await transitions.renew(db, subscription)


async def create_direct_subscription(
    db: AsyncSession,
    user: User,
    plan_id: uuid.UUID,
    payment_method: str,
    payment_id: str | None = None,
    billing_cycle: str | None = None,
) -> Subscription:
    """Legacy path: create an active subscription with no Stripe record."""
    plan = await get_plan(db, plan_id)
    if await store.latest_entitled(db, user.id) is not None:
        raise InvalidSubscriptionState("You already have an active subscription")
    return await transitions.create_local_subscription(
        db,
        user.id,
        plan,
        billing_cycle or plan.billing_cycle,
        payment_method=payment_method,
        payment_id=payment_id,
    )


async def cancel_subscription_now(db: AsyncSession, actor: User, subscription_id: uuid.UUID) -> Subscription:
    """Legacy path: cancel a non-Stripe subscription immediately."""
    subscription = await get_subscription_for_actor(db, actor, subscription_id)
    if subscription.is_provider_managed:
        raise InvalidSubscriptionState("Stripe-billed subscriptions are cancelled at period end")
    if not subscription.is_entitled:
        raise InvalidSubscriptionState(f"Subscription is already {subscription.status}")
    return await transitions.mark_cancelled(db, subscription)


async def list_subscriptions(db: AsyncSession, skip: int = 0, limit: int = 10) -> tuple[list[Subscription], int]:
    """Newest-first page of all subscriptions, plus the total count."""
    total = (await db.execute(select(func.count()).select_from(Subscription))).scalar_one()
    result = await db.execute(
        select(Subscription).order_by(Subscription.created_at.desc()).offset(skip).limit(limit)
    )
    return list(result.scalars().all()), total


async def delete_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> None:
    """Administrative removal. Stripe is not contacted."""
    if not await store.delete_subscription(db, subscription_id):
        raise NotFound(f"Subscription {subscription_id} not found")
    logger.info("Deleted subscription %s", subscription_id)
