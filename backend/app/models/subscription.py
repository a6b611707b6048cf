"""Subscription model: local projection of a user's billing state."""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

STATUS_ACTIVE = "active"
STATUS_PENDING_CANCELLATION = "pending_cancellation"
STATUS_CANCELLED = "cancelled"
STATUS_EXPIRED = "expired"

SUBSCRIPTION_STATUSES: tuple[str, ...] = (
    STATUS_ACTIVE,
    STATUS_PENDING_CANCELLATION,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
)

# Statuses that entitle the owner and may be named by User.active_subscription_id
ENTITLED_STATUSES: tuple[str, ...] = (STATUS_ACTIVE, STATUS_PENDING_CANCELLATION)


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One billing lifecycle of a user on a plan.

    A user accumulates many rows over time (cancelled, expired); at most one
    of them is referenced by ``User.active_subscription_id``.
    """

    __tablename__ = "subscriptions"

    user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # Idempotency key: one local row per Stripe subscription
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    status: Mapped[str] = mapped_column(String(50), nullable=False, default=STATUS_ACTIVE, index=True)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")

    # Billing period
    start_date: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True, index=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_effective_date: Mapped[datetime | None] = mapped_column(nullable=True)

    # Last local write-ahead plan change; older provider events do not override it
    plan_changed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Last time the row was written from a Stripe read; reads re-check Stripe once it is stale
    provider_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    renewal_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Opaque references for records not managed by Stripe
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Relationships
    plan: Mapped["SubscriptionPlan"] = relationship(lazy="selectin")  # type: ignore[name-defined]  # noqa: F821
    user: Mapped["User"] = relationship(  # type: ignore[name-defined]  # noqa: F821
        foreign_keys=[user_id], back_populates="subscriptions", lazy="selectin"
    )

    @property
    def is_entitled(self) -> bool:
        return self.status in ENTITLED_STATUSES

    @property
    def is_provider_managed(self) -> bool:
        return self.stripe_subscription_id is not None

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, status={self.status})>"
        )
