"""Subscription plan model: the read-only plan catalog."""

from sqlalchemy import JSON, Boolean, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin

BILLING_CYCLES: tuple[str, ...] = ("monthly", "quarterly", "yearly")


class SubscriptionPlan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A purchasable plan with one Stripe price per billing cycle."""

    __tablename__ = "subscription_plans"

    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # Default cycle used when a checkout does not ask for a specific one
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False, default="monthly")

    # Prices in cents
    price_monthly_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    price_quarterly_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    price_yearly_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Stripe price identifiers, one per cycle
    stripe_price_monthly_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_price_quarterly_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    stripe_price_yearly_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    features: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    download_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 0 = unlimited
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<SubscriptionPlan(id={self.id}, name={self.name!r}, cycle={self.billing_cycle})>"
