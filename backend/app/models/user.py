"""User model: the subset of the account consumed by billing."""

import uuid

from sqlalchemy import Boolean, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Worksheet Hub account (student, parent, teacher or admin)."""

    __tablename__ = "users"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="user", nullable=False)

    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)

    # Back-reference to the one subscription the user is currently entitled by.
    # users <-> subscriptions is a cycle, so this FK is added after both tables exist.
    active_subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey(
            "subscriptions.id",
            use_alter=True,
            name="fk_users_active_subscription_id",
            ondelete="SET NULL",
        ),
        nullable=True,
    )

    # Relationships
    subscriptions: Mapped[list["Subscription"]] = relationship(  # type: ignore[name-defined]  # noqa: F821
        "Subscription",
        foreign_keys="Subscription.user_id",
        back_populates="user",
        lazy="selectin",
    )

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email!r} role={self.role!r}>"
