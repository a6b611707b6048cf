"""Typed billing errors.

Every error raised by the reconciliation engine derives from
:class:`BillingError`. Stripe SDK exceptions are translated into these in
``app.billing.stripe_client`` and never leak past it.
"""

from fastapi import status


class BillingError(Exception):
    """Base class for billing failures surfaced to callers."""

    status_code: int = status.HTTP_400_BAD_REQUEST
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(BillingError):
    status_code = status.HTTP_404_NOT_FOUND


class Unauthorized(BillingError):
    """The actor does not own the subscription being read or mutated."""

    status_code = status.HTTP_403_FORBIDDEN


class ProviderUnavailable(BillingError):
    """Timeout, connection failure, rate limit or 5xx from Stripe."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class ProviderRejected(BillingError):
    """Stripe refused the request permanently (4xx)."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str, code: str | None = None, http_status: int | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status

    @property
    def resource_missing(self) -> bool:
        """True when Stripe no longer knows the referenced object."""
        return self.code == "resource_missing" or self.http_status == 404


class InvalidWebhookSignature(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST


class PlanResolutionAmbiguous(BillingError):
    """Zero or several plans own the given Stripe price id."""

    status_code = status.HTTP_422_UNPROCESSABLE_CONTENT

    def __init__(self, price_id: str | None, matches: int) -> None:
        super().__init__(f"Price {price_id!r} matches {matches} plans; expected exactly one")
        self.price_id = price_id
        self.matches = matches


class CancellationDateMissing(BillingError):
    """Stripe accepted a cancellation but did not report when it takes effect."""

    status_code = status.HTTP_502_BAD_GATEWAY


class InvalidSubscriptionState(BillingError):
    status_code = status.HTTP_409_CONFLICT


class PlanNotPurchasable(BillingError):
    status_code = status.HTTP_400_BAD_REQUEST


class PaymentNotCompleted(BillingError):
    status_code = status.HTTP_402_PAYMENT_REQUIRED


class ActivePointerUpdateFailed(BillingError):
    """The subscription row was saved but the user's active pointer was not."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable = True

    def __init__(self, message: str, subscription_id=None) -> None:
        super().__init__(message)
        self.subscription_id = subscription_id
