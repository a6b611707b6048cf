"""Billing API endpoints: plans, Stripe Checkout, payment verification, and cancellation."""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_provider, get_current_active_user, get_db, require_active_subscription
from app.billing.plans import list_active_plans
from app.billing.stripe_client import BillingProvider
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    CurrentSubscriptionResponse,
    PlanResponse,
    PlansListResponse,
    SubscriptionResponse,
    VerifyPaymentRequest,
)
from app.services import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans(db: AsyncSession = Depends(get_db)) -> PlansListResponse:
    """List purchasable plans (public, no auth required)."""
    plans = await list_active_plans(db)
    return PlansListResponse(plans=[PlanResponse.model_validate(p) for p in plans])


@router.get("/subscription", response_model=CurrentSubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    provider: BillingProvider = Depends(get_billing_provider),
) -> CurrentSubscriptionResponse:
    """Get the subscription the current user is entitled by, if any."""
    subscription = await subscription_service.get_current_subscription(db, provider, current_user.id)
    if subscription is None:
        return CurrentSubscriptionResponse(subscription=None)
    return CurrentSubscriptionResponse(subscription=SubscriptionResponse.model_validate(subscription))


@router.get("/entitlement", response_model=SubscriptionResponse)
async def check_entitlement(
    subscription: Subscription = Depends(require_active_subscription),
) -> SubscriptionResponse:
    """200 with the entitling subscription, 402 when the user has none."""
    return SubscriptionResponse.model_validate(subscription)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    provider: BillingProvider = Depends(get_billing_provider),
) -> CheckoutResponse:
    """Create a Stripe Checkout session, or change plan when already subscribed."""
    result = await subscription_service.start_checkout(
        db,
        provider,
        current_user,
        body.plan_id,
        billing_cycle=body.billing_cycle,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    return CheckoutResponse(
        action=result.action,
        checkout_url=result.checkout_url,
        session_id=result.session_id,
        subscription=(
            SubscriptionResponse.model_validate(result.subscription) if result.subscription is not None else None
        ),
    )


@router.post("/verify-payment", response_model=SubscriptionResponse)
async def verify_payment(
    body: VerifyPaymentRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    provider: BillingProvider = Depends(get_billing_provider),
) -> SubscriptionResponse:
    """Confirm a completed Checkout after the browser returns from Stripe."""
    subscription = await subscription_service.verify_payment(db, provider, current_user, body.session_id)
    return SubscriptionResponse.model_validate(subscription)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
    provider: BillingProvider = Depends(get_billing_provider),
) -> SubscriptionResponse:
    """Cancel the current subscription at the end of its paid period."""
    subscription = await subscription_service.request_cancellation(db, provider, current_user)
    return SubscriptionResponse.model_validate(subscription)
