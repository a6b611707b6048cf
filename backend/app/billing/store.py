"""Subscription store primitives: atomic upsert, conditional updates, pointer repair.

Nothing in here reads a row and then writes it back. Every mutation is a
single statement whose WHERE clause carries the precondition, so webhook
delivery, user actions and the sweep can race on the same record without a
lock.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.billing.errors import ActivePointerUpdateFailed
from app.models.subscription import (
    ENTITLED_STATUSES,
    STATUS_ACTIVE,
    STATUS_CANCELLED,
    STATUS_EXPIRED,
    Subscription,
)
from app.models.user import User

logger = logging.getLogger(__name__)


def _dialect_insert(db: AsyncSession):
    """Return the dialect's INSERT construct that supports ON CONFLICT."""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upsert is not implemented for the {dialect} dialect")
    return insert


async def get_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> Subscription | None:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_provider_id(db: AsyncSession, stripe_subscription_id: str) -> Subscription | None:
    """Look up a subscription by its Stripe id (the idempotency key)."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user(db: AsyncSession, user_id: uuid.UUID) -> User | None:
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_by_provider_id(
    db: AsyncSession,
    stripe_subscription_id: str,
    *,
    on_insert: dict[str, Any],
    on_conflict: dict[str, Any],
) -> Subscription:
    """Create or update the one row keyed by ``stripe_subscription_id``.

    ``on_insert`` holds the columns only written when the row is new (owner,
    legacy fields); ``on_conflict`` is applied in both cases. A single
    INSERT ... ON CONFLICT DO UPDATE statement backed by the unique index on
    ``stripe_subscription_id`` guarantees at most one row per key.
    """
    insert = _dialect_insert(db)
    values = {**on_insert, **on_conflict, "stripe_subscription_id": stripe_subscription_id}
    stmt = insert(Subscription).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.stripe_subscription_id],
        set_={**on_conflict, "updated_at": func.now()},
    )
    await db.execute(stmt)

    subscription = await get_by_provider_id(db, stripe_subscription_id)
    if subscription is None:  # pragma: no cover - the statement above guarantees a row
        raise RuntimeError(f"Subscription {stripe_subscription_id} missing after upsert")
    logger.info("Upserted subscription %s for Stripe id %s", subscription.id, stripe_subscription_id)
    return subscription


async def compare_and_set(
    db: AsyncSession,
    subscription_id: uuid.UUID,
    expected_statuses: tuple[str, ...],
    **values: Any,
) -> bool:
    """Apply ``values`` only if the row is still in one of ``expected_statuses``.

    Returns False when another writer moved the record first.
    """
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status.in_(expected_statuses),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def expire_if_lapsed(db: AsyncSession, subscription_id: uuid.UUID, now: datetime) -> bool:
    """Mark an active subscription expired only if its period has really ended."""
    result = await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.status == STATUS_ACTIVE,
            Subscription.current_period_end < now,
        )
        .values(status=STATUS_EXPIRED)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def update_by_provider_id(
    db: AsyncSession, stripe_subscription_id: str, **values: Any
) -> Subscription | None:
    """Unconditionally overwrite fields of the row with this Stripe id."""
    result = await db.execute(
        update(Subscription)
        .where(Subscription.stripe_subscription_id == stripe_subscription_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return None
    return await get_by_provider_id(db, stripe_subscription_id)


async def deactivate_other_entitled(
    db: AsyncSession,
    user_id: uuid.UUID,
    keep_id: uuid.UUID | None,
    now: datetime,
) -> int:
    """Cancel every entitled subscription of the user except ``keep_id``."""
    stmt = update(Subscription).where(
        Subscription.user_id == user_id,
        Subscription.status.in_(ENTITLED_STATUSES),
    )
    if keep_id is not None:
        stmt = stmt.where(Subscription.id != keep_id)
    result = await db.execute(
        stmt.values(
            status=STATUS_CANCELLED,
            cancelled_at=now,
            renewal_enabled=False,
            auto_renew=False,
        ).execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info("Deactivated %d prior subscription(s) of user %s", result.rowcount, user_id)
    return result.rowcount


async def latest_entitled(db: AsyncSession, user_id: uuid.UUID) -> Subscription | None:
    """Most recently created active/pending-cancellation subscription of a user."""
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status.in_(ENTITLED_STATUSES),
        )
        .order_by(Subscription.created_at.desc(), Subscription.start_date.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def repair_active_pointer(db: AsyncSession, user_id: uuid.UUID) -> uuid.UUID | None:
    """Point ``User.active_subscription_id`` at the right record (or clear it).

    Safe to call any number of times. Raises ActivePointerUpdateFailed when
    the user row cannot be updated, so the caller can retry.
    """
    target = await latest_entitled(db, user_id)
    target_id = target.id if target is not None else None
    try:
        result = await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(active_subscription_id=target_id)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as e:
        raise ActivePointerUpdateFailed(
            f"Could not update active subscription of user {user_id}", subscription_id=target_id
        ) from e
    if result.rowcount != 1:
        raise ActivePointerUpdateFailed(
            f"User {user_id} not found while updating active subscription", subscription_id=target_id
        )
    logger.info("User %s active subscription -> %s", user_id, target_id)
    return target_id


async def persist_then_repoint(db: AsyncSession, user_id: uuid.UUID) -> uuid.UUID | None:
    """Commit pending subscription writes, then fix the owner's pointer.

    The subscription row is durable before the pointer moves; if the pointer
    update fails the error propagates and a retry (or the sweep) finishes it.
    """
    await db.commit()
    pointer = await repair_active_pointer(db, user_id)
    await db.commit()
    return pointer


async def clear_pointers_to(db: AsyncSession, subscription_id: uuid.UUID) -> None:
    await db.execute(
        update(User)
        .where(User.active_subscription_id == subscription_id)
        .values(active_subscription_id=None)
        .execution_options(synchronize_session=False)
    )


async def delete_subscription(db: AsyncSession, subscription_id: uuid.UUID) -> bool:
    """Plain removal of a row. Never touches Stripe."""
    await clear_pointers_to(db, subscription_id)
    result = await db.execute(
        delete(Subscription)
        .where(Subscription.id == subscription_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
