"""
Payment Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar
from uuid import UUID

from structlog import get_logger
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.exceptions import PaymentProviderError
from app.models.events import BillingEvent
from app.observability.metrics import metrics

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class InvoiceItemRequest:
    """A one-off charge to attach to the customer's next invoice."""

    customer_id: str
    billing_cycle_id: UUID
    amount_cents: int
    currency: str
    description: str
    idempotency_key: str

    def __post_init__(self) -> None:
        """Validate invoice item constraints."""
        if self.amount_cents <= 0:
            raise ValueError(f"Invoice item amount must be positive: {self.amount_cents}")
        if not self.customer_id:
            raise ValueError("customer_id cannot be empty")


@dataclass(frozen=True)
class InvoiceRequest:
    """An auto-finalized, auto-charged invoice for an overage."""

    customer_id: str
    billing_cycle_id: UUID
    idempotency_key: str
    invoice_type: str = "overage"


@dataclass(frozen=True)
class InvoiceResult:
    """Provider-agnostic invoice result."""

    invoice_id: str
    status: str | None


@dataclass(frozen=True)
class VerifiedWebhook:
    """
    Signature-verified provider event.

    event is None for event types the billing core doesn't act on.
    """

    event_id: str
    event_type: str
    event: BillingEvent | None


class PaymentProvider(Protocol):
    """
    Payment provider protocol.

    Invoicing calls are made once per batch item (the next scheduled run
    is the retry); the remaining calls sit on the request path and retry
    transient failures with backoff.
    """

    async def create_invoice_item(self, request: InvoiceItemRequest) -> str:
        """Create a pending invoice item; returns the provider's item ID."""
        ...

    async def find_pending_invoice_item(
        self, customer_id: str, billing_cycle_id: UUID
    ) -> str | None:
        """Return the ID of a not-yet-invoiced item tagged with this cycle, if any."""
        ...

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceResult:
        """Create and auto-advance an invoice that sweeps pending items."""
        ...

    async def retrieve_customer_user_id(self, customer_id: str) -> str | None:
        """Read the owning user ID from the customer's metadata."""
        ...

    async def cancel_subscription(self, subscription_id: str) -> str:
        """Cancel a subscription immediately; returns the resulting status."""
        ...

    async def create_billing_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a self-service billing portal session; returns its URL."""
        ...

    async def verify_webhook(self, payload: bytes, signature: str) -> VerifiedWebhook:
        """Verify the signature and map the event onto the internal schema."""
        ...


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, PaymentProviderError) and exc.retryable


def _log_retry(operation: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "payment_provider_call_retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            max_attempts=max_attempts,
            delay_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=getattr(exc, "message", str(exc)),
        )
        metrics.provider_retries_total.labels(operation=operation).inc()

    return before_sleep


async def call_with_retry(
    operation: str,
    call: Callable[[], Awaitable[T]],
    max_attempts: int,
    base_delay_seconds: float,
) -> T:
    """
    Run a provider call, retrying transient failures with exponential backoff.

    Delay before retry n (1-based) is base_delay_seconds * 2 ** (n - 1).
    Permanent failures (4xx) are raised immediately.

    Raises:
        PaymentProviderError: The last failure once attempts are exhausted
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=base_delay_seconds, min=0),
        retry=retry_if_exception(_is_transient),
        before_sleep=_log_retry(operation, max_attempts),
        sleep=asyncio.sleep,
        reraise=True,
    )
    try:
        return await retrying(call)
    except PaymentProviderError as exc:
        logger.error(
            "payment_provider_call_failed",
            operation=operation,
            attempts=retrying.statistics.get("attempt_number"),
            status_code=exc.status_code,
            retryable=exc.retryable,
            error=exc.message,
        )
        raise
