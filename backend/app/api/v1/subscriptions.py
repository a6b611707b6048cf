"""Subscription resource endpoints, including the legacy non-Stripe paths."""

import uuid

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_active_user, get_db
from app.models.user import User
from app.schemas.billing import DirectSubscriptionCreate, SubscriptionResponse
from app.services import subscription_service

router = APIRouter(prefix="/api/v1/subscriptions", tags=["subscriptions"])


@router.post("/", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
async def create_subscription(
    body: DirectSubscriptionCreate,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Create a subscription paid outside Stripe."""
    subscription = await subscription_service.create_direct_subscription(
        db,
        current_user,
        body.plan_id,
        payment_method=body.payment_method,
        payment_id=body.payment_id,
        billing_cycle=body.billing_cycle,
    )
    return SubscriptionResponse.model_validate(subscription)


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
async def get_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    subscription = await subscription_service.get_subscription_for_actor(db, current_user, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.put("/{subscription_id}/cancel", response_model=SubscriptionResponse)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Cancel a non-Stripe subscription immediately."""
    subscription = await subscription_service.cancel_subscription_now(db, current_user, subscription_id)
    return SubscriptionResponse.model_validate(subscription)


@router.put("/{subscription_id}/renew", response_model=SubscriptionResponse)
async def renew_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Start a new period for an expired or cancelled non-Stripe subscription."""
    subscription = await subscription_service.renew_subscription(db, current_user, subscription_id)
    return SubscriptionResponse.model_validate(subscription)
