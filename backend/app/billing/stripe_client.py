"""Async Stripe API wrapper for Worksheet Hub billing.

``BillingProvider`` is constructed explicitly with its credentials and
timeouts and injected wherever Stripe is needed (see
``app.billing.dependencies.get_billing_provider``). It is the only module
that imports Stripe's exception types: every failure leaves here as one of
the errors in ``app.billing.errors``.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import stripe
from stripe import StripeClient

from app.billing.errors import (
    InvalidWebhookSignature,
    ProviderRejected,
    ProviderUnavailable,
)

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(operation: str) -> Iterator[None]:
    """Map Stripe SDK exceptions onto the billing error taxonomy."""
    try:
        yield
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        logger.warning("Stripe %s unavailable: %s", operation, e)
        raise ProviderUnavailable(f"Billing provider unavailable during {operation}") from e
    except stripe.StripeError as e:
        http_status = getattr(e, "http_status", None)
        if http_status is None or http_status >= 500:
            logger.warning("Stripe %s failed with status %s: %s", operation, http_status, e)
            raise ProviderUnavailable(f"Billing provider error during {operation}") from e
        logger.info("Stripe rejected %s (%s): %s", operation, http_status, e)
        raise ProviderRejected(
            str(getattr(e, "user_message", None) or e),
            code=getattr(e, "code", None),
            http_status=http_status,
        ) from e


class BillingProvider:
    """Thin async facade over the Stripe objects the reconciler consumes."""

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        timeout: float = 20.0,
        max_network_retries: int = 2,
        webhook_tolerance: int = 300,
    ) -> None:
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._client = StripeClient(
            secret_key,
            http_client=stripe.HTTPXClient(timeout=timeout),
            max_network_retries=max_network_retries,
        )

    async def create_customer(self, email: str, name: str, user_id: str) -> stripe.Customer:
        """Create a Stripe customer linked to a Worksheet Hub user."""
        logger.info("Creating Stripe customer for user %s (%s)", user_id, email)
        with _translate_errors("customer creation"):
            customer = await self._client.v1.customers.create_async(
                params={
                    "email": email,
                    "name": name,
                    "metadata": {"worksheethub_user_id": user_id},
                }
            )
        logger.info("Created Stripe customer %s for user %s", customer.id, user_id)
        return customer

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> stripe.checkout.Session:
        """Create a subscription-mode Checkout Session.

        The metadata is copied onto the resulting subscription as well, so
        later ``customer.subscription.*`` events can be traced to the user.
        """
        logger.info("Creating checkout session for customer %s, price %s", customer_id, price_id)
        with _translate_errors("checkout session creation"):
            return await self._client.v1.checkout.sessions.create_async(
                params={
                    "mode": "subscription",
                    "customer": customer_id,
                    "line_items": [{"price": price_id, "quantity": 1}],
                    "success_url": success_url,
                    "cancel_url": cancel_url,
                    "metadata": metadata,
                    "subscription_data": {"metadata": metadata},
                }
            )

    async def retrieve_checkout_session(self, session_id: str) -> stripe.checkout.Session:
        with _translate_errors("checkout session retrieval"):
            return await self._client.v1.checkout.sessions.retrieve_async(session_id)

    async def retrieve_subscription(self, subscription_id: str) -> stripe.Subscription:
        with _translate_errors("subscription retrieval"):
            return await self._client.v1.subscriptions.retrieve_async(subscription_id)

    async def update_subscription(
        self,
        subscription_id: str,
        price_id: str | None = None,
        cancel_at_period_end: bool | None = None,
    ) -> stripe.Subscription:
        """Swap the price (with proration) and/or schedule cancellation."""
        params: dict = {}
        if price_id is not None:
            current = await self.retrieve_subscription(subscription_id)
            item = first_item(current)
            if item is None:
                raise ProviderRejected(f"Subscription {subscription_id} has no items to update")
            params["items"] = [{"id": item.id, "price": price_id}]
            params["proration_behavior"] = "create_prorations"
        if cancel_at_period_end is not None:
            params["cancel_at_period_end"] = cancel_at_period_end

        logger.info("Updating Stripe subscription %s: %s", subscription_id, sorted(params))
        with _translate_errors("subscription update"):
            return await self._client.v1.subscriptions.update_async(subscription_id, params=params)

    def construct_event(self, payload: bytes, sig_header: str) -> stripe.Event:
        """Verify the signature and parse a webhook event (no network I/O)."""
        if not sig_header:
            raise InvalidWebhookSignature("Missing Stripe-Signature header")
        try:
            return self._client.construct_event(
                payload,
                sig_header,
                self._webhook_secret,
                tolerance=self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidWebhookSignature("Invalid signature") from e
        except ValueError as e:
            raise InvalidWebhookSignature("Invalid payload") from e


def first_item(stripe_sub):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    try:
        sub_items = stripe_sub["items"]
    except (KeyError, AttributeError, TypeError):
        return None
    data = getattr(sub_items, "data", None) if sub_items else None
    if data:
        return data[0]
    return None
