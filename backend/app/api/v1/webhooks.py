"""Stripe webhook endpoint: receives and processes Stripe events."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_billing_provider, get_db
from app.billing.errors import InvalidWebhookSignature, ProviderUnavailable
from app.billing.stripe_client import BillingProvider
from app.billing.webhooks import handle_provider_webhook
from app.schemas.billing import WebhookResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    provider: BillingProvider = Depends(get_billing_provider),
) -> WebhookResponse:
    """Receive and process Stripe webhook events.

    A non-2xx response makes Stripe redeliver, so only failures a retry
    could fix are reported as errors.
    """
    # Raw bytes: the signature covers the exact payload
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        outcome = await handle_provider_webhook(db, provider, payload, sig_header)
    except InvalidWebhookSignature as e:
        logger.warning("Webhook rejected: %s", e.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.message) from e
    except ProviderUnavailable as e:
        logger.warning("Webhook deferred, Stripe unavailable: %s", e.message)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message) from e
    except Exception as e:
        logger.exception("Error processing webhook")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from e

    return WebhookResponse(status=outcome)
