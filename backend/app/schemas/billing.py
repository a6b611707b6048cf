"""Pydantic v2 request/response schemas for billing and subscription endpoints."""

import uuid
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

BillingCycle = Literal["monthly", "quarterly", "yearly"]

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Start a Stripe Checkout, or change plan in place when already subscribed."""

    plan_id: uuid.UUID
    billing_cycle: BillingCycle | None = None  # defaults to the plan's cycle
    success_url: str | None = None
    cancel_url: str | None = None


class VerifyPaymentRequest(BaseModel):
    session_id: str = Field(min_length=1)


class DirectSubscriptionCreate(BaseModel):
    """Legacy subscription created without Stripe (e.g. invoiced schools)."""

    plan_id: uuid.UUID
    payment_method: str = Field(min_length=1, max_length=50)
    payment_id: str | None = None
    billing_cycle: BillingCycle | None = None


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    display_name: str
    description: str
    billing_cycle: str
    price_monthly_cents: int
    price_quarterly_cents: int | None
    price_yearly_cents: int
    currency: str
    features: list[str]
    download_limit: int


class PlansListResponse(BaseModel):
    """All available plans."""

    plans: list[PlanResponse]


class SubscriptionResponse(BaseModel):
    """Projection of a subscription: status, plan and period dates."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    user_id: uuid.UUID
    status: str
    plan: PlanResponse
    billing_cycle: str
    stripe_subscription_id: str | None
    start_date: datetime | None
    current_period_end: datetime | None
    cancelled_at: datetime | None
    cancellation_effective_date: datetime | None
    renewal_enabled: bool
    auto_renew: bool
    payment_method: str | None


class CurrentSubscriptionResponse(BaseModel):
    """The user's entitling subscription, or null when there is none."""

    subscription: SubscriptionResponse | None


class CheckoutResponse(BaseModel):
    """Either a Checkout to redirect to, or the subscription changed in place."""

    action: Literal["checkout", "upgraded", "unchanged"]
    checkout_url: str | None = None
    session_id: str | None = None
    subscription: SubscriptionResponse | None = None


class SubscriptionListResponse(BaseModel):
    items: list[SubscriptionResponse]
    total: int
    skip: int
    limit: int


class SweepResponse(BaseModel):
    expired: int
    renewed: int
    reconciled: int
    pointers_repaired: int
    skipped: int
    failed: list[uuid.UUID]


class WebhookResponse(BaseModel):
    status: str
