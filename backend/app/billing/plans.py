"""Plan catalog lookups and billing-cycle arithmetic.

The reconciler only reads the catalog: it maps a local plan to the Stripe
price for a cycle, and maps an inbound Stripe price back to exactly one plan.
"""

import calendar
import logging
import uuid
from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import NotFound, PlanNotPurchasable, PlanResolutionAmbiguous
from app.models.plan import BILLING_CYCLES, SubscriptionPlan

logger = logging.getLogger(__name__)

_CYCLE_MONTHS = {"monthly": 1, "quarterly": 3, "yearly": 12}


def _add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of the target month."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def compute_period_end(start: datetime, billing_cycle: str) -> datetime:
    """End of a billing period starting at ``start``. Unknown cycles count as monthly."""
    return _add_months(start, _CYCLE_MONTHS.get(billing_cycle, 1))


def price_id_for_cycle(plan: SubscriptionPlan, billing_cycle: str) -> str | None:
    """Stripe price id configured for the given cycle, if any."""
    return {
        "monthly": plan.stripe_price_monthly_id,
        "quarterly": plan.stripe_price_quarterly_id,
        "yearly": plan.stripe_price_yearly_id,
    }.get(billing_cycle)


def cycle_for_price_id(plan: SubscriptionPlan, price_id: str) -> str:
    for cycle in BILLING_CYCLES:
        if price_id_for_cycle(plan, cycle) == price_id:
            return cycle
    return plan.billing_cycle


async def list_active_plans(db: AsyncSession) -> list[SubscriptionPlan]:
    result = await db.execute(
        select(SubscriptionPlan)
        .where(SubscriptionPlan.is_active.is_(True))
        .order_by(SubscriptionPlan.price_monthly_cents)
    )
    return list(result.scalars().all())


async def get_plan(db: AsyncSession, plan_id: uuid.UUID) -> SubscriptionPlan:
    """Fetch a plan by id or raise NotFound."""
    plan = await db.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFound(f"Subscription plan {plan_id} not found")
    return plan


async def get_purchasable_price(
    db: AsyncSession, plan_id: uuid.UUID, billing_cycle: str | None = None
) -> tuple[SubscriptionPlan, str, str]:
    """Return (plan, cycle, price_id) for a checkout, validating the mapping."""
    plan = await get_plan(db, plan_id)
    if not plan.is_active:
        raise PlanNotPurchasable(f"Plan {plan.name} is not available")

    cycle = billing_cycle or plan.billing_cycle
    if cycle not in BILLING_CYCLES:
        raise PlanNotPurchasable(f"Unknown billing cycle {cycle!r}")

    price_id = price_id_for_cycle(plan, cycle)
    if not price_id:
        raise PlanNotPurchasable(f"Plan {plan.name} has no Stripe price for the {cycle} cycle")
    return plan, cycle, price_id


async def resolve_plan_by_price_id(db: AsyncSession, price_id: str | None) -> SubscriptionPlan:
    """Reverse lookup: Stripe price id -> the single plan that owns it.

    Raises PlanResolutionAmbiguous when zero or more than one plan matches;
    the caller must not guess.
    """
    if not price_id:
        raise PlanResolutionAmbiguous(price_id, 0)

    result = await db.execute(
        select(SubscriptionPlan).where(
            or_(
                SubscriptionPlan.stripe_price_monthly_id == price_id,
                SubscriptionPlan.stripe_price_quarterly_id == price_id,
                SubscriptionPlan.stripe_price_yearly_id == price_id,
            )
        )
    )
    matches = list(result.scalars().all())
    if len(matches) != 1:
        logger.error("Price %s resolved to %d plans", price_id, len(matches))
        raise PlanResolutionAmbiguous(price_id, len(matches))
    return matches[0]
