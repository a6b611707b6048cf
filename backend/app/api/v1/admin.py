"""Admin endpoints: subscription listing, removal, and on-demand reconciliation."""

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_billing_provider, get_db, get_session_factory, require_admin
from app.billing.reconciliation import run_sweep
from app.billing.stripe_client import BillingProvider
from app.models.user import User
from app.schemas.billing import SubscriptionListResponse, SubscriptionResponse, SweepResponse
from app.services import subscription_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin/subscriptions", tags=["admin"])


@router.get("/", response_model=SubscriptionListResponse)
async def list_subscriptions(
    skip: int = Query(0, ge=0),
    limit: int = Query(10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> SubscriptionListResponse:
    """Paginated list of all subscriptions, newest first."""
    items, total = await subscription_service.list_subscriptions(db, skip=skip, limit=limit)
    return SubscriptionListResponse(
        items=[SubscriptionResponse.model_validate(s) for s in items],
        total=total,
        skip=skip,
        limit=limit,
    )


@router.get("/recent", response_model=list[SubscriptionResponse])
async def recent_subscriptions(
    limit: int = Query(5, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    _admin: User = Depends(require_admin),
) -> list[SubscriptionResponse]:
    items, _ = await subscription_service.list_subscriptions(db, skip=0, limit=limit)
    return [SubscriptionResponse.model_validate(s) for s in items]


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_subscription(
    subscription_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: User = Depends(require_admin),
) -> Response:
    await subscription_service.delete_subscription(db, subscription_id)
    logger.info("Admin %s deleted subscription %s", admin.id, subscription_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/sweep", response_model=SweepResponse)
async def trigger_sweep(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider: BillingProvider = Depends(get_billing_provider),
    admin: User = Depends(require_admin),
) -> SweepResponse:
    """Run one reconciliation sweep now instead of waiting for the worker."""
    logger.info("Admin %s triggered a subscription sweep", admin.id)
    report = await run_sweep(session_factory, provider)
    return SweepResponse(
        expired=report.expired,
        renewed=report.renewed,
        reconciled=report.reconciled,
        pointers_repaired=report.pointers_repaired,
        skipped=report.skipped,
        failed=report.failed,
    )
