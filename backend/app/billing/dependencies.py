"""Billing dependencies: Stripe provider injection and entitlement gating."""

import logging
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import get_current_active_user
from app.billing.stripe_client import BillingProvider
from app.config import settings
from app.database import get_db
from app.models.subscription import Subscription
from app.models.user import User
from app.services.subscription_service import get_current_subscription

logger = logging.getLogger(__name__)


@lru_cache
def _build_provider() -> BillingProvider:
    logger.info("Initialising Stripe provider (timeout=%ss)", settings.stripe_timeout_seconds)
    return BillingProvider(
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout_seconds,
        max_network_retries=settings.stripe_max_network_retries,
        webhook_tolerance=settings.stripe_webhook_tolerance_seconds,
    )


def get_billing_provider() -> BillingProvider:
    """FastAPI dependency returning the shared Stripe provider.

    Tests override this with a fake via ``app.dependency_overrides``.
    """
    return _build_provider()


async def require_active_subscription(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
    provider: BillingProvider = Depends(get_billing_provider),
) -> Subscription:
    """Return the user's entitling subscription, or raise 402."""
    subscription = await get_current_subscription(db, provider, user.id)
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "An active subscription is required.",
                "upgrade_url": "/api/v1/billing/checkout",
            },
        )
    return subscription
