"""Subscription state machine.

States: ``active``, ``pending_cancellation``, ``cancelled``, ``expired``
(plus "absent" before the first write for a Stripe id). Every change to
``Subscription.status`` goes through one of the functions below, whichever
actor triggered it: a user request, a Stripe webhook, or the sweep.

Stripe is authoritative for provider-managed records: a status it reports
overwrites the local one even when that looks like a step backwards. The one
deliberate exception is the plan swap in :func:`apply_upgrade`, which is
written locally before Stripe's webhook confirms it; webhook plan data older
than that write is ignored.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.billing import store
from app.billing.errors import InvalidSubscriptionState, NotFound
from app.billing.plans import compute_period_end, cycle_for_price_id, get_plan, resolve_plan_by_price_id
from app.billing.stripe_client import first_item
from app.models.plan import SubscriptionPlan
from app.models.subscription import (
    ENTITLED_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    STATUS_PENDING_CANCELLATION,
    Subscription,
)

logger = logging.getLogger(__name__)

_STRIPE_LIVE_STATUSES = {"active", "trialing", "past_due"}
_STRIPE_TERMINAL_STATUSES = {"canceled", "unpaid", "incomplete_expired"}


def utcnow() -> datetime:
    """Current time as naive UTC, matching the DB columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


@dataclass(frozen=True)
class ProviderSnapshot:
    """The fields of a Stripe subscription the reconciler cares about."""

    stripe_subscription_id: str
    stripe_status: str | None
    status: str | None  # mapped local status; None when Stripe's is not actionable
    price_id: str | None
    start_date: datetime | None
    current_period_end: datetime | None
    cancellation_effective_date: datetime | None
    cancelled_at: datetime | None
    customer_id: str | None
    metadata_user_id: str | None


def map_provider_status(
    stripe_status: str | None,
    cancel_at: datetime | None,
    cancel_at_period_end: bool,
    current_period_end: datetime | None,
) -> tuple[str | None, datetime | None]:
    """Map a Stripe status onto (local status, cancellation effective date).

    A live subscription scheduled to cancel becomes ``pending_cancellation``
    only when Stripe tells us the date; otherwise it stays ``active``.
    """
    if stripe_status in _STRIPE_LIVE_STATUSES:
        effective = cancel_at or (current_period_end if cancel_at_period_end else None)
        if effective is not None:
            return STATUS_PENDING_CANCELLATION, effective
        if cancel_at_period_end:
            logger.warning("Stripe reports cancel_at_period_end without any date; keeping active")
        return STATUS_ACTIVE, None
    if stripe_status in _STRIPE_TERMINAL_STATUSES:
        return STATUS_CANCELLED, None
    return None, None


def snapshot_from_stripe(stripe_sub) -> ProviderSnapshot:
    """Extract a ProviderSnapshot from a Stripe Subscription object.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved from the
    subscription to the subscription item; both places are checked.
    """
    item = first_item(stripe_sub)
    price = getattr(item, "price", None) if item is not None else None
    price_id = getattr(price, "id", None)

    period_end = getattr(item, "current_period_end", None) if item is not None else None
    if period_end is None:
        period_end = getattr(stripe_sub, "current_period_end", None)
    start = getattr(stripe_sub, "start_date", None)
    if start is None and item is not None:
        start = getattr(item, "current_period_start", None)

    current_period_end = ts_to_naive(period_end)
    stripe_status = getattr(stripe_sub, "status", None)
    status, effective = map_provider_status(
        stripe_status,
        ts_to_naive(getattr(stripe_sub, "cancel_at", None)),
        bool(getattr(stripe_sub, "cancel_at_period_end", False)),
        current_period_end,
    )
    metadata = getattr(stripe_sub, "metadata", None)
    return ProviderSnapshot(
        stripe_subscription_id=stripe_sub.id,
        stripe_status=stripe_status,
        status=status,
        price_id=price_id,
        start_date=ts_to_naive(start),
        current_period_end=current_period_end,
        cancellation_effective_date=effective,
        cancelled_at=ts_to_naive(getattr(stripe_sub, "canceled_at", None)),
        customer_id=getattr(stripe_sub, "customer", None),
        metadata_user_id=getattr(metadata, "user_id", None) if metadata is not None else None,
    )


def _status_fields(status: str, effective: datetime | None, cancelled_at: datetime | None, now: datetime) -> dict[str, Any]:
    """Columns that move together with a status."""
    if status == STATUS_ACTIVE:
        return {
            "status": STATUS_ACTIVE,
            "cancellation_effective_date": None,
            "cancelled_at": None,
            "renewal_enabled": True,
            "auto_renew": True,
        }
    if status == STATUS_PENDING_CANCELLATION:
        return {
            "status": STATUS_PENDING_CANCELLATION,
            "cancellation_effective_date": effective,
            "cancelled_at": cancelled_at or now,
            "renewal_enabled": False,
            "auto_renew": False,
        }
    return {
        "status": status,
        "cancelled_at": cancelled_at or now,
        "renewal_enabled": False,
        "auto_renew": False,
    }


async def _reload(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription:
    subscription = await store.get_subscription(db, subscription_id)
    if subscription is None:
        raise NotFound(f"Subscription {subscription_id} not found")
    return subscription


async def apply_checkout_completed(
    db: AsyncSession,
    user_id: uuid.UUID,
    snapshot: ProviderSnapshot,
) -> Subscription:
    """absent -> active: record a paid Stripe subscription for the user.

    Replays for the same Stripe id update that one row in place. Any other
    entitled subscription of the user is deactivated and the user's pointer
    is moved to this record.
    """
    plan = await resolve_plan_by_price_id(db, snapshot.price_id)
    now = utcnow()

    on_conflict: dict[str, Any] = {
        "plan_id": plan.id,
        "stripe_price_id": snapshot.price_id,
        "billing_cycle": cycle_for_price_id(plan, snapshot.price_id),
        "provider_synced_at": now,
    }
    if snapshot.status is not None:
        on_conflict.update(
            _status_fields(snapshot.status, snapshot.cancellation_effective_date, snapshot.cancelled_at, now)
        )
    if snapshot.start_date is not None:
        on_conflict["start_date"] = snapshot.start_date
    if snapshot.current_period_end is not None:
        on_conflict["current_period_end"] = snapshot.current_period_end

    on_insert: dict[str, Any] = {
        "user_id": user_id,
        "status": STATUS_ACTIVE,
        "start_date": now,
        "payment_method": "stripe",
        "renewal_enabled": True,
        "auto_renew": True,
    }
    subscription = await store.upsert_by_provider_id(
        db, snapshot.stripe_subscription_id, on_insert=on_insert, on_conflict=on_conflict
    )
    if subscription.is_entitled:
        await store.deactivate_other_entitled(db, subscription.user_id, keep_id=subscription.id, now=now)

    await store.persist_then_repoint(db, subscription.user_id)
    logger.info(
        "Checkout recorded: subscription %s (Stripe %s) on plan %s, status=%s",
        subscription.id,
        snapshot.stripe_subscription_id,
        plan.name,
        subscription.status,
    )
    return await _reload(db, subscription.id)


async def apply_provider_update(
    db: AsyncSession,
    snapshot: ProviderSnapshot,
    *,
    deleted: bool = False,
    event_created: datetime | None = None,
) -> Subscription | None:
    """Overwrite the local record with what Stripe reports.

    Returns None when no local record exists yet for the Stripe id; the
    checkout path creates it and reads Stripe's latest state when it does.
    Raises PlanResolutionAmbiguous (and writes nothing) when the reported
    price cannot be mapped to exactly one plan.
    """
    existing = await store.get_by_provider_id(db, snapshot.stripe_subscription_id)
    if existing is None:
        logger.warning("No local subscription for Stripe subscription %s", snapshot.stripe_subscription_id)
        return None

    now = utcnow()
    values: dict[str, Any] = {"provider_synced_at": now}

    if deleted:
        values.update(_status_fields(STATUS_CANCELLED, None, snapshot.cancelled_at, now))
    elif snapshot.status is not None:
        values.update(
            _status_fields(snapshot.status, snapshot.cancellation_effective_date, snapshot.cancelled_at, now)
        )
    else:
        logger.warning(
            "Stripe status %r for %s is not actionable; status left as %s",
            snapshot.stripe_status,
            snapshot.stripe_subscription_id,
            existing.status,
        )

    if snapshot.price_id and snapshot.price_id != existing.stripe_price_id:
        written_ahead = (
            existing.plan_changed_at is not None
            and event_created is not None
            and event_created < existing.plan_changed_at
        )
        if written_ahead:
            logger.info(
                "Ignoring price %s for %s: older than local plan change at %s",
                snapshot.price_id,
                existing.id,
                existing.plan_changed_at,
            )
        else:
            plan = await resolve_plan_by_price_id(db, snapshot.price_id)
            values["plan_id"] = plan.id
            values["stripe_price_id"] = snapshot.price_id
            values["billing_cycle"] = cycle_for_price_id(plan, snapshot.price_id)

    if snapshot.start_date is not None:
        values["start_date"] = snapshot.start_date
    if snapshot.current_period_end is not None:
        values["current_period_end"] = snapshot.current_period_end

    updated = await store.update_by_provider_id(db, snapshot.stripe_subscription_id, **values)
    if updated is None:
        logger.warning("Subscription %s disappeared during update", snapshot.stripe_subscription_id)
        return None

    if updated.status != existing.status:
        logger.info("Subscription %s: %s -> %s (provider)", updated.id, existing.status, updated.status)
    await store.persist_then_repoint(db, updated.user_id)
    return await _reload(db, updated.id)


async def apply_upgrade(
    db: AsyncSession,
    subscription: Subscription,
    plan: SubscriptionPlan,
    price_id: str,
    billing_cycle: str,
    stripe_sub=None,
) -> Subscription:
    """active -> active on a new plan, written ahead of Stripe's webhook.

    Called right after Stripe accepted the price swap, in the same request,
    so the next read already sees the new plan.
    """
    now = utcnow()
    values: dict[str, Any] = {
        "plan_id": plan.id,
        "stripe_price_id": price_id,
        "billing_cycle": billing_cycle,
        "plan_changed_at": now,
    }
    if stripe_sub is not None:
        values["provider_synced_at"] = now
        snapshot = snapshot_from_stripe(stripe_sub)
        if snapshot.current_period_end is not None:
            values["current_period_end"] = snapshot.current_period_end

    applied = await store.compare_and_set(db, subscription.id, ENTITLED_STATUSES, **values)
    await db.commit()
    if not applied:
        logger.warning("Subscription %s left the entitled states before the plan swap was recorded", subscription.id)
    else:
        logger.info("Subscription %s upgraded to plan %s (%s)", subscription.id, plan.name, price_id)
    return await _reload(db, subscription.id)


async def apply_pending_cancellation(
    db: AsyncSession,
    subscription: Subscription,
    effective_date: datetime,
) -> Subscription:
    """active -> pending_cancellation with Stripe's cancel_at as the effective date."""
    now = utcnow()
    applied = await store.compare_and_set(
        db,
        subscription.id,
        (STATUS_ACTIVE,),
        **_status_fields(STATUS_PENDING_CANCELLATION, effective_date, now, now),
        provider_synced_at=now,
    )
    await db.commit()
    if applied:
        logger.info("Subscription %s: active -> pending_cancellation (effective %s)", subscription.id, effective_date)
    else:
        logger.warning("Subscription %s was no longer active when cancellation was recorded", subscription.id)
    return await _reload(db, subscription.id)


async def mark_cancelled(db: AsyncSession, subscription: Subscription) -> Subscription:
    """active/pending_cancellation -> cancelled, clearing the user's pointer."""
    now = utcnow()
    applied = await store.compare_and_set(
        db,
        subscription.id,
        ENTITLED_STATUSES,
        **_status_fields(STATUS_CANCELLED, None, now, now),
    )
    if applied:
        logger.info("Subscription %s: %s -> cancelled", subscription.id, subscription.status)
    await store.persist_then_repoint(db, subscription.user_id)
    return await _reload(db, subscription.id)


async def expire(db: AsyncSession, subscription: Subscription) -> bool:
    """active -> expired once the period has lapsed. Local-only transition.

    The precondition (still active, period end in the past) is part of the
    UPDATE, so a concurrent backfill that extended the period wins and this
    returns False.
    """
    if not await store.expire_if_lapsed(db, subscription.id, utcnow()):
        return False
    logger.info("Subscription %s: active -> expired", subscription.id)
    await store.persist_then_repoint(db, subscription.user_id)
    return True


async def roll_over(db: AsyncSession, subscription: Subscription) -> Subscription | None:
    """Expire a lapsed local subscription and open the next period as a new row.

    Returns the new record, or None when the old one was no longer lapsed.
    """
    if not await store.expire_if_lapsed(db, subscription.id, utcnow()):
        return None
    logger.info("Subscription %s: active -> expired (rolling over)", subscription.id)
    return await create_local_subscription(
        db,
        subscription.user_id,
        await get_plan(db, subscription.plan_id),
        subscription.billing_cycle,
        payment_method=subscription.payment_method,
        payment_id=subscription.payment_id,
        renewal_enabled=True,
    )


async def renew(db: AsyncSession, subscription: Subscription) -> Subscription:
    """expired/cancelled -> active for a fresh period starting now."""
    if subscription.status not in (STATUS_EXPIRED, STATUS_CANCELLED):
        raise InvalidSubscriptionState("Only expired or cancelled subscriptions can be renewed")

    now = utcnow()
    applied = await store.compare_and_set(
        db,
        subscription.id,
        (STATUS_EXPIRED, STATUS_CANCELLED),
        start_date=now,
        current_period_end=compute_period_end(now, subscription.billing_cycle),
        **_status_fields(STATUS_ACTIVE, None, None, now),
    )
    if not applied:
        raise InvalidSubscriptionState(f"Subscription {subscription.id} changed state during renewal")
    logger.info("Subscription %s: %s -> active (renewed)", subscription.id, subscription.status)
    await store.persist_then_repoint(db, subscription.user_id)
    return await _reload(db, subscription.id)


async def create_local_subscription(
    db: AsyncSession,
    user_id: uuid.UUID,
    plan: SubscriptionPlan,
    billing_cycle: str,
    *,
    payment_method: str | None,
    payment_id: str | None = None,
    renewal_enabled: bool = True,
) -> Subscription:
    """Create an active record with no Stripe id (legacy and sweep renewals)."""
    now = utcnow()
    subscription = Subscription(
        user_id=user_id,
        plan_id=plan.id,
        status=STATUS_ACTIVE,
        billing_cycle=billing_cycle,
        start_date=now,
        current_period_end=compute_period_end(now, billing_cycle),
        renewal_enabled=renewal_enabled,
        auto_renew=renewal_enabled,
        payment_method=payment_method,
        payment_id=payment_id,
    )
    db.add(subscription)
    await db.flush()
    logger.info("Created local subscription %s for user %s on plan %s", subscription.id, user_id, plan.name)
    await store.persist_then_repoint(db, user_id)
    return await _reload(db, subscription.id)
