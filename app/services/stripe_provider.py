"""
Stripe Payment Provider Implementation.

NO DICTIONARIES - All data uses strongly typed models.
"""

import threading
from collections.abc import Callable
from typing import TypeVar
from uuid import UUID

import stripe
from structlog import get_logger

from app.config import settings
from app.exceptions import PaymentProviderError, WebhookVerificationError
from app.models.events import USER_ID_METADATA_KEY, parse_stripe_event
from app.services.payment_provider import (
    InvoiceItemRequest,
    InvoiceRequest,
    InvoiceResult,
    VerifiedWebhook,
    call_with_retry,
)

logger = get_logger(__name__)

T = TypeVar("T")


def _provider_error(message: str, exc: stripe.StripeError) -> PaymentProviderError:
    """Wrap a Stripe error, keeping its HTTP status for retry decisions."""
    return PaymentProviderError(f"{message}: {exc}", status_code=exc.http_status)


class StripeProvider:
    """
    Stripe payment provider implementation.

    Implements the PaymentProvider protocol for Stripe.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        timeout_seconds: float = 10.0,
        retry_max_attempts: int = 3,
        retry_base_delay_seconds: float = 0.5,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            api_key: Stripe secret API key
            webhook_secret: Stripe webhook signing secret
            timeout_seconds: Per-request network timeout
            retry_max_attempts: Attempts for request-path calls
            retry_base_delay_seconds: First backoff delay for request-path calls
        """
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay_seconds = retry_base_delay_seconds

        stripe.api_key = api_key
        # Retries are decided here, not inside the SDK
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    async def _with_retry(self, operation: str, call: Callable[[], T]) -> T:
        async def attempt() -> T:
            return call()

        return await call_with_retry(
            operation,
            attempt,
            max_attempts=self.retry_max_attempts,
            base_delay_seconds=self.retry_base_delay_seconds,
        )

    # ========================================================================
    # Invoicing (batch path - single attempt)
    # ========================================================================

    async def create_invoice_item(self, request: InvoiceItemRequest) -> str:
        """
        Create a pending Stripe invoice item for the customer.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_invoice_item",
                customer_id=request.customer_id,
                amount_cents=request.amount_cents,
                idempotency_key=request.idempotency_key,
            )

            invoice_item = stripe.InvoiceItem.create(
                customer=request.customer_id,
                amount=request.amount_cents,
                currency=request.currency,
                description=request.description,
                metadata={"billingCycleId": str(request.billing_cycle_id), "type": "overage"},
                idempotency_key=request.idempotency_key,
            )

            logger.info("stripe_invoice_item_created", invoice_item_id=invoice_item.id)

            invoice_item_id: str = invoice_item.id
            return invoice_item_id

        except stripe.StripeError as exc:
            logger.error(
                "stripe_invoice_item_failed",
                customer_id=request.customer_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise _provider_error("Stripe invoice item failed", exc) from exc

    async def find_pending_invoice_item(
        self, customer_id: str, billing_cycle_id: UUID
    ) -> str | None:
        """
        Find a pending invoice item left by an earlier run for this cycle.

        Idempotency keys expire after 24 hours; items are matched on their
        billingCycleId metadata instead.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            items = stripe.InvoiceItem.list(customer=customer_id, pending=True, limit=100)
            for item in items.auto_paging_iter():
                metadata = item.get("metadata") or {}
                if metadata.get("billingCycleId") == str(billing_cycle_id):
                    logger.info(
                        "stripe_pending_invoice_item_found",
                        invoice_item_id=item["id"],
                        billing_cycle_id=str(billing_cycle_id),
                    )
                    item_id: str = item["id"]
                    return item_id
            return None

        except stripe.StripeError as exc:
            logger.error(
                "stripe_invoice_item_lookup_failed",
                customer_id=customer_id,
                billing_cycle_id=str(billing_cycle_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise _provider_error("Stripe invoice item lookup failed", exc) from exc

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        """
        Create an invoice that picks up pending items and charges automatically.

        Raises:
            PaymentProviderError: If Stripe API call fails
        """
        try:
            logger.info(
                "creating_stripe_invoice",
                customer_id=request.customer_id,
                billing_cycle_id=str(request.billing_cycle_id),
            )

            invoice = stripe.Invoice.create(
                customer=request.customer_id,
                collection_method="charge_automatically",
                auto_advance=True,
                pending_invoice_items_behavior="include",
                metadata={
                    "billingCycleId": str(request.billing_cycle_id),
                    "type": request.invoice_type,
                },
                idempotency_key=request.idempotency_key,
            )

            logger.info(
                "stripe_invoice_created",
                invoice_id=invoice.id,
                status=invoice.status,
            )

            return InvoiceResult(invoice_id=invoice.id, status=invoice.status)

        except stripe.StripeError as exc:
            logger.error(
                "stripe_invoice_failed",
                customer_id=request.customer_id,
                billing_cycle_id=str(request.billing_cycle_id),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise _provider_error("Stripe invoice failed", exc) from exc

    # ========================================================================
    # Request path (retried with backoff)
    # ========================================================================

    async def retrieve_customer_user_id(self, customer_id: str) -> str | None:
        """
        Look up the owning user ID stored on the Stripe customer.

        Returns None for deleted customers or customers without the metadata.

        Raises:
            PaymentProviderError: If Stripe keeps failing after retries
        """

        def retrieve() -> str | None:
            try:
                customer = stripe.Customer.retrieve(customer_id)
            except stripe.StripeError as exc:
                raise _provider_error("Failed to retrieve customer", exc) from exc
            if customer.get("deleted"):
                return None
            metadata = customer.get("metadata") or {}
            user_id: str | None = metadata.get(USER_ID_METADATA_KEY) or None
            return user_id

        return await self._with_retry("retrieve_customer", retrieve)

    async def cancel_subscription(self, subscription_id: str) -> str:
        """
        Cancel a Stripe subscription immediately.

        Raises:
            PaymentProviderError: If cancellation fails
        """

        def cancel() -> str:
            try:
                subscription = stripe.Subscription.cancel(subscription_id)
            except stripe.StripeError as exc:
                raise _provider_error("Stripe subscription cancel failed", exc) from exc
            status: str = subscription.status
            return status

        status = await self._with_retry("cancel_subscription", cancel)
        logger.info("stripe_subscription_canceled", subscription_id=subscription_id, status=status)
        return status

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Create a Stripe billing portal session.

        Raises:
            PaymentProviderError: If session creation fails
        """

        def create() -> str:
            try:
                session = stripe.billing_portal.Session.create(
                    customer=customer_id,
                    return_url=return_url,
                )
            except stripe.StripeError as exc:
                raise _provider_error("Stripe portal session failed", exc) from exc
            url: str = session.url
            return url

        return await self._with_retry("create_billing_portal_session", create)

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedWebhook:
        """
        Verify and parse Stripe webhook event.

        Args:
            payload: Raw webhook payload
            signature: Stripe-Signature header value

        Returns:
            Verified event mapped onto the internal event schema

        Raises:
            WebhookVerificationError: If signature verification fails
            InvalidEventError: If a handled event carries a malformed object
        """
        try:
            event = stripe.Webhook.construct_event(  # type: ignore[no-untyped-call]
                payload, signature, self.webhook_secret
            )
        except stripe.SignatureVerificationError as exc:
            logger.error("stripe_webhook_verification_failed", error=str(exc))
            raise WebhookVerificationError("Invalid Stripe webhook signature") from exc
        except ValueError as exc:
            logger.error("stripe_webhook_parsing_failed", error=str(exc))
            raise WebhookVerificationError(f"Failed to parse Stripe webhook: {exc}") from exc

        logger.info("stripe_webhook_verified", event_id=event.id, event_type=event.type)

        return VerifiedWebhook(
            event_id=event.id,
            event_type=event.type,
            event=parse_stripe_event(event.id, event.type, event.data.object),
        )


_provider: StripeProvider | None = None
_provider_lock = threading.Lock()


def get_stripe_provider() -> StripeProvider:
    """
    Get the process-wide Stripe provider, constructing it on first use.

    Configuration is read from settings at construction time.

    Raises:
        PaymentProviderError: If Stripe is not configured
    """
    global _provider
    if _provider is not None:
        return _provider

    with _provider_lock:
        if _provider is None:
            if not settings.stripe_api_key:
                raise PaymentProviderError("STRIPE_API_KEY is not configured")
            _provider = StripeProvider(
                api_key=settings.stripe_api_key,
                webhook_secret=settings.stripe_webhook_secret,
                timeout_seconds=settings.stripe_timeout_seconds,
                retry_max_attempts=settings.payment_retry_max_attempts,
                retry_base_delay_seconds=settings.payment_retry_base_delay_seconds,
            )
            logger.info("stripe_provider_initialized")
        return _provider


def reset_stripe_provider() -> None:
    """Drop the cached provider (tests and key rotation)."""
    global _provider
    with _provider_lock:
        _provider = None
