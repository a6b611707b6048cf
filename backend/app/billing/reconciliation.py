"""Reconciliation: backfill-on-read, the expiry sweep, and pointer repair.

The sweep treats every subscription independently. A failure on one record
is logged and counted, and the pass moves on; the next scheduled run starts
from scratch, so an interrupted sweep needs no cleanup.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta

from sqlalchemy import and_, exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.billing import store, transitions
from app.billing.errors import (
    PlanResolutionAmbiguous,
    ProviderRejected,
    ProviderUnavailable,
)
from app.billing.stripe_client import BillingProvider
from app.config import settings
from app.models.subscription import (
    ENTITLED_STATUSES,
    STATUS_ACTIVE,
    STATUS_PENDING_CANCELLATION,
    Subscription,
)
from app.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    """Counters for one pass of the sweep."""

    expired: int = 0
    renewed: int = 0
    reconciled: int = 0
    pointers_repaired: int = 0
    skipped: int = 0
    failed: list[uuid.UUID] = field(default_factory=list)


def needs_backfill(subscription: Subscription) -> bool:
    """Stripe-managed record with missing dates, a lapsed period, or a stale sync."""
    if not subscription.is_provider_managed:
        return False
    if subscription.start_date is None or subscription.current_period_end is None:
        return True
    now = transitions.utcnow()
    if subscription.current_period_end < now:
        return True
    recheck_after = timedelta(seconds=settings.subscription_status_recheck_seconds)
    return subscription.provider_synced_at is None or subscription.provider_synced_at < now - recheck_after


async def backfill_from_provider(
    db: AsyncSession, provider: BillingProvider, subscription: Subscription
) -> Subscription:
    """Patch a Stripe-managed record from a fresh Stripe read, once.

    Outages never reach the caller: the stale local record is returned and
    the discrepancy is logged. A subscription Stripe no longer knows is
    cancelled locally.
    """
    try:
        stripe_sub = await provider.retrieve_subscription(subscription.stripe_subscription_id)
    except ProviderRejected as e:
        if e.resource_missing:
            logger.warning("Stripe no longer knows %s; cancelling locally", subscription.stripe_subscription_id)
            return await transitions.mark_cancelled(db, subscription)
        logger.warning("Backfill of subscription %s skipped, Stripe rejected the read: %s", subscription.id, e.message)
        return subscription
    except ProviderUnavailable as e:
        logger.warning(
            "Backfill of subscription %s skipped, Stripe read failed: %s", subscription.id, e.message
        )
        return subscription

    snapshot = transitions.snapshot_from_stripe(stripe_sub)
    if snapshot.status is not None and snapshot.status != subscription.status:
        logger.info(
            "Subscription %s is %s locally but %s at Stripe; syncing",
            subscription.id,
            subscription.status,
            snapshot.status,
        )
    try:
        updated = await transitions.apply_provider_update(db, snapshot)
    except PlanResolutionAmbiguous:
        logger.error("Backfill of subscription %s held: price %s unresolved", subscription.id, snapshot.price_id)
        await db.rollback()
        # rollback expired the instance; reload it rather than lazy-load in async
        return await store.get_subscription(db, subscription.id) or subscription
    return updated or subscription


async def _sweep_provider_managed(
    db: AsyncSession, provider: BillingProvider, subscription: Subscription, report: SweepReport
) -> None:
    """Converge a lapsed or undated Stripe-managed record toward Stripe's view."""
    try:
        stripe_sub = await provider.retrieve_subscription(subscription.stripe_subscription_id)
    except ProviderRejected as e:
        if e.resource_missing:
            logger.warning("Stripe no longer knows %s; cancelling locally", subscription.stripe_subscription_id)
            await transitions.mark_cancelled(db, subscription)
            report.reconciled += 1
            return
        raise
    except ProviderUnavailable:
        logger.warning("Sweep skipped subscription %s: Stripe unavailable", subscription.id)
        report.skipped += 1
        return

    await transitions.apply_provider_update(db, transitions.snapshot_from_stripe(stripe_sub))
    report.reconciled += 1


async def _sweep_one(
    db: AsyncSession, provider: BillingProvider, subscription: Subscription, report: SweepReport
) -> None:
    if subscription.is_provider_managed:
        await _sweep_provider_managed(db, provider, subscription, report)
    elif subscription.renewal_enabled:
        if await transitions.roll_over(db, subscription) is not None:
            report.renewed += 1
    elif await transitions.expire(db, subscription):
        report.expired += 1


async def _sweep_candidate_ids(db: AsyncSession) -> list[uuid.UUID]:
    """Lapsed records, pending cancellations past their date, and Stripe records missing dates."""
    now = transitions.utcnow()
    result = await db.execute(
        select(Subscription.id).where(
            or_(
                and_(
                    Subscription.status == STATUS_ACTIVE,
                    Subscription.current_period_end < now,
                ),
                and_(
                    Subscription.status == STATUS_PENDING_CANCELLATION,
                    Subscription.stripe_subscription_id.is_not(None),
                    Subscription.cancellation_effective_date < now,
                ),
                and_(
                    Subscription.status.in_(ENTITLED_STATUSES),
                    Subscription.stripe_subscription_id.is_not(None),
                    or_(Subscription.start_date.is_(None), Subscription.current_period_end.is_(None)),
                ),
            )
        )
    )
    return list(result.scalars().all())


async def _users_needing_pointer_check(db: AsyncSession) -> list[uuid.UUID]:
    entitled = exists().where(
        Subscription.user_id == User.id,
        Subscription.status.in_(ENTITLED_STATUSES),
    )
    result = await db.execute(
        select(User.id).where(or_(User.active_subscription_id.is_not(None), entitled))
    )
    return list(result.scalars().all())


async def repair_pointers(session_factory: async_sessionmaker, report: SweepReport) -> None:
    """Fix any User.active_subscription_id left inconsistent by a partial failure."""
    async with session_factory() as db:
        user_ids = await _users_needing_pointer_check(db)

    for user_id in user_ids:
        try:
            async with session_factory() as db:
                user = await store.get_user(db, user_id)
                expected = await store.latest_entitled(db, user_id)
                expected_id = expected.id if expected is not None else None
                if user is None or user.active_subscription_id == expected_id:
                    continue
                logger.info(
                    "Repairing active subscription of user %s: %s -> %s",
                    user_id,
                    user.active_subscription_id,
                    expected_id,
                )
                await store.persist_then_repoint(db, user_id)
                report.pointers_repaired += 1
        except Exception:
            logger.exception("Pointer repair failed for user %s", user_id)


async def run_sweep(session_factory: async_sessionmaker, provider: BillingProvider) -> SweepReport:
    """One full pass: expire/roll over lapsed records, then repair pointers."""
    report = SweepReport()
    async with session_factory() as db:
        candidate_ids = await _sweep_candidate_ids(db)
    logger.info("Sweep found %d subscription(s) to reconcile", len(candidate_ids))

    for subscription_id in candidate_ids:
        try:
            async with session_factory() as db:
                subscription = await store.get_subscription(db, subscription_id)
                if subscription is None:
                    continue
                await _sweep_one(db, provider, subscription, report)
                await db.commit()
        except Exception:
            logger.exception("Sweep failed for subscription %s", subscription_id)
            report.failed.append(subscription_id)

    await repair_pointers(session_factory, report)
    logger.info(
        "Sweep done: expired=%d renewed=%d reconciled=%d pointers=%d skipped=%d failed=%d",
        report.expired,
        report.renewed,
        report.reconciled,
        report.pointers_repaired,
        report.skipped,
        len(report.failed),
    )
    return report
