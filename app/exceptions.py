"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class BillingError(Exception):
    """Base exception for all billing errors."""

    pass


class SubscriptionNotFoundError(BillingError):
    """Raised when no (billable) subscription exists for a lookup."""

    def __init__(self, reference: str) -> None:
        self.reference = reference
        super().__init__(f"Subscription not found: {reference}")


class SubscriptionInactiveError(BillingError):
    """Raised when an operation needs a live subscription but it is canceled."""

    def __init__(self, subscription_id: UUID, status: str) -> None:
        self.subscription_id = subscription_id
        self.status = status
        super().__init__(f"Subscription {subscription_id} is {status}")


class BillingCycleNotFoundError(BillingError):
    """Raised when a billing cycle doesn't exist."""

    def __init__(self, billing_cycle_id: UUID) -> None:
        self.billing_cycle_id = billing_cycle_id
        super().__init__(f"Billing cycle not found: {billing_cycle_id}")


class DataIntegrityError(BillingError):
    """Raised when data integrity constraint violated."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Data integrity error: {message}")


class ConcurrencyError(BillingError):
    """Raised when concurrent modification detected."""

    def __init__(self, resource: str) -> None:
        self.resource = resource
        super().__init__(f"Concurrent modification detected for {resource}")


class PaymentProviderError(BillingError):
    """
    Raised when payment provider operation fails.

    status_code carries the provider's HTTP status when one was returned.
    4xx responses are permanent and must not be retried.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        self.status_code = status_code
        super().__init__(f"Payment provider error: {message}")

    @property
    def retryable(self) -> bool:
        """Transient failures (network, timeout, 5xx) may be retried."""
        if self.status_code is None:
            return True
        return not 400 <= self.status_code < 500


class WebhookVerificationError(BillingError):
    """Raised when webhook verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Webhook verification error: {message}")


class InvalidEventError(BillingError):
    """Raised when a provider event payload doesn't match the expected schema."""

    def __init__(self, event_type: str, message: str) -> None:
        self.event_type = event_type
        self.message = message
        super().__init__(f"Invalid {event_type} event: {message}")


class AuthenticationError(BillingError):
    """Raised when authentication fails (invalid API key)."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")
