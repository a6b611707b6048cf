"""Stripe webhook event handlers: process subscription lifecycle events.

Redelivery is safe because every handler ends in an upsert or overwrite
keyed by the Stripe subscription id; event ids are not tracked.
"""

import logging
import uuid

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import transitions
from app.billing.errors import ActivePointerUpdateFailed, PlanResolutionAmbiguous, ProviderRejected
from app.billing.stripe_client import BillingProvider
from app.models.user import User

logger = logging.getLogger(__name__)

OUTCOME_PROCESSED = "processed"
OUTCOME_IGNORED = "ignored"
OUTCOME_HELD = "held"


async def _resolve_user_id(db: AsyncSession, metadata_user_id: str | None, customer_id: str | None) -> uuid.UUID | None:
    """Find the local user from checkout metadata, falling back to the Stripe customer."""
    if metadata_user_id:
        try:
            user_id = uuid.UUID(metadata_user_id)
        except ValueError:
            logger.warning("Ignoring malformed user_id metadata %r", metadata_user_id)
        else:
            if await db.get(User, user_id) is not None:
                return user_id
    if customer_id:
        result = await db.execute(select(User.id).where(User.stripe_customer_id == customer_id))
        return result.scalar_one_or_none()
    return None


async def handle_checkout_session_completed(
    db: AsyncSession, provider: BillingProvider, event: stripe.Event
) -> str:
    """Handle checkout.session.completed: record the new subscription."""
    session = event.data.object
    subscription_id = getattr(session, "subscription", None)

    if getattr(session, "mode", None) != "subscription" or not subscription_id:
        logger.info("Checkout session %s has no subscription (one-time?), skipping", session.id)
        return OUTCOME_IGNORED

    metadata = getattr(session, "metadata", None)
    user_id = await _resolve_user_id(
        db,
        getattr(metadata, "user_id", None) if metadata is not None else None,
        getattr(session, "customer", None),
    )
    if user_id is None:
        logger.warning(
            "No local user for checkout %s (customer %s)",
            session.id,
            getattr(session, "customer", None),
        )
        return OUTCOME_IGNORED

    # Fetch the full subscription so a replayed event records Stripe's latest state
    stripe_sub = await provider.retrieve_subscription(subscription_id)
    snapshot = transitions.snapshot_from_stripe(stripe_sub)
    subscription = await transitions.apply_checkout_completed(db, user_id, snapshot)
    logger.info("Checkout completed: Stripe %s recorded as %s", subscription_id, subscription.id)
    return OUTCOME_PROCESSED


async def handle_subscription_updated(
    db: AsyncSession, provider: BillingProvider, event: stripe.Event
) -> str:
    """Handle customer.subscription.updated: sync plan, status, and period."""
    snapshot = transitions.snapshot_from_stripe(event.data.object)
    subscription = await transitions.apply_provider_update(
        db,
        snapshot,
        event_created=transitions.ts_to_naive(getattr(event, "created", None)),
    )
    if subscription is None:
        return OUTCOME_IGNORED
    logger.info(
        "Subscription updated: %s -> status=%s (Stripe %s)",
        snapshot.stripe_subscription_id,
        subscription.status,
        snapshot.stripe_status,
    )
    return OUTCOME_PROCESSED


async def handle_subscription_deleted(
    db: AsyncSession, provider: BillingProvider, event: stripe.Event
) -> str:
    """Handle customer.subscription.deleted: the subscription is cancelled."""
    snapshot = transitions.snapshot_from_stripe(event.data.object)
    subscription = await transitions.apply_provider_update(
        db,
        snapshot,
        deleted=True,
        event_created=transitions.ts_to_naive(getattr(event, "created", None)),
    )
    if subscription is None:
        return OUTCOME_IGNORED
    logger.info("Subscription deleted: %s cancelled locally", snapshot.stripe_subscription_id)
    return OUTCOME_PROCESSED


# Map event types to handler functions
EVENT_HANDLERS = {
    "checkout.session.completed": handle_checkout_session_completed,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
}


async def handle_provider_webhook(
    db: AsyncSession, provider: BillingProvider, payload: bytes, sig_header: str
) -> str:
    """Verify, parse and dispatch one webhook delivery.

    Raises InvalidWebhookSignature before touching any state. Returns the
    outcome to acknowledge. Failures that happen once the subscription row
    is recorded are acknowledged too: Stripe redelivering would not help,
    and the sweep finishes the work. Events that need a Stripe read Stripe
    refuses are held, since redelivery would fail the same way.
    """
    event = provider.construct_event(payload, sig_header)

    handler = EVENT_HANDLERS.get(event.type)
    if handler is None:
        logger.debug("Unhandled webhook event type: %s", event.type)
        return OUTCOME_IGNORED

    logger.info("Processing webhook event: %s (id=%s)", event.type, event.id)
    try:
        return await handler(db, provider, event)
    except PlanResolutionAmbiguous as e:
        await db.rollback()
        logger.error(
            "Webhook event %s held for manual follow-up: price %s matched %d plans",
            event.id,
            e.price_id,
            e.matches,
        )
        return OUTCOME_HELD
    except ProviderRejected as e:
        await db.rollback()
        logger.error("Webhook event %s held for manual follow-up: Stripe rejected a read: %s", event.id, e.message)
        return OUTCOME_HELD
    except ActivePointerUpdateFailed as e:
        await db.rollback()
        logger.warning("Webhook event %s recorded; pointer fix-up deferred to the sweep: %s", event.id, e.message)
        return OUTCOME_PROCESSED
