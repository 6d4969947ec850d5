"""
Provider Event Models - Internal schema for payment provider events.

Raw Stripe objects are validated with pydantic at the boundary and mapped
onto frozen dataclasses, one per event kind. Malformed payloads are rejected
with InvalidEventError instead of being passed through untyped.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from app.exceptions import InvalidEventError
from app.models.api import SubscriptionStatus

# Metadata key the checkout flow stamps on subscriptions and customers
USER_ID_METADATA_KEY = "clerkUserId"


def _epoch_to_datetime(seconds: int) -> datetime:
    """Convert Stripe epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=UTC)


def _object_id(value: Any) -> Any:
    """Collapse an expanded Stripe object to its id."""
    if isinstance(value, Mapping):
        return value.get("id")
    return value


# ============================================================================
# Boundary validation (pydantic)
# ============================================================================


class _SubscriptionPayload(BaseModel):
    """Fields we rely on from a Stripe Subscription object."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    customer: str = Field(..., min_length=1)
    status: SubscriptionStatus
    current_period_start: int = Field(..., ge=0)
    current_period_end: int = Field(..., ge=0)
    metadata: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def lift_item_period(cls, data: Any) -> Any:
        """Newer API versions only carry the period on subscription items."""
        if not isinstance(data, Mapping):
            return data
        if data.get("current_period_start") is not None:
            return data
        items = (data.get("items") or {}).get("data") or []
        if not items:
            return data
        lifted = dict(data)
        lifted["current_period_start"] = items[0].get("current_period_start")
        lifted["current_period_end"] = items[0].get("current_period_end")
        return lifted

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_customer(cls, value: Any) -> Any:
        return _object_id(value)

    @model_validator(mode="after")
    def validate_period(self) -> "_SubscriptionPayload":
        if self.current_period_end < self.current_period_start:
            raise ValueError("current_period_end precedes current_period_start")
        return self


class _InvoicePayload(BaseModel):
    """Fields we rely on from a Stripe Invoice object."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1)
    subscription: str | None = None

    @model_validator(mode="before")
    @classmethod
    def lift_parent_subscription(cls, data: Any) -> Any:
        """Newer API versions move the subscription under parent.subscription_details."""
        if not isinstance(data, Mapping):
            return data
        lifted = dict(data)
        subscription = _object_id(data.get("subscription"))
        if subscription is None:
            details = (data.get("parent") or {}).get("subscription_details") or {}
            subscription = _object_id(details.get("subscription"))
        lifted["subscription"] = subscription
        return lifted


# ============================================================================
# Internal event schema (tagged union)
# ============================================================================


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Provider-agnostic view of a subscription at event time."""

    stripe_subscription_id: str
    stripe_customer_id: str
    status: SubscriptionStatus
    current_period_start: datetime
    current_period_end: datetime
    user_id: str | None


@dataclass(frozen=True)
class SubscriptionCreated:
    kind: ClassVar[str] = "subscription.created"

    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionUpdated:
    kind: ClassVar[str] = "subscription.updated"

    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class SubscriptionDeleted:
    kind: ClassVar[str] = "subscription.deleted"

    event_id: str
    subscription: SubscriptionSnapshot


@dataclass(frozen=True)
class InvoicePaymentSucceeded:
    kind: ClassVar[str] = "invoice.payment_succeeded"

    event_id: str
    invoice_id: str
    stripe_subscription_id: str | None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    kind: ClassVar[str] = "invoice.payment_failed"

    event_id: str
    invoice_id: str
    stripe_subscription_id: str | None


BillingEvent = (
    SubscriptionCreated
    | SubscriptionUpdated
    | SubscriptionDeleted
    | InvoicePaymentSucceeded
    | InvoicePaymentFailed
)

_SubscriptionEventType = type[SubscriptionCreated | SubscriptionUpdated | SubscriptionDeleted]

_SUBSCRIPTION_EVENTS: dict[str, _SubscriptionEventType] = {
    "customer.subscription.created": SubscriptionCreated,
    "customer.subscription.updated": SubscriptionUpdated,
    "customer.subscription.deleted": SubscriptionDeleted,
}

_INVOICE_EVENTS: dict[str, type[InvoicePaymentSucceeded | InvoicePaymentFailed]] = {
    "invoice.payment_succeeded": InvoicePaymentSucceeded,
    "invoice.payment_failed": InvoicePaymentFailed,
}

HANDLED_EVENT_TYPES = frozenset(_SUBSCRIPTION_EVENTS) | frozenset(_INVOICE_EVENTS)


def parse_stripe_event(
    event_id: str, event_type: str, data_object: Mapping[str, Any]
) -> BillingEvent | None:
    """
    Map a raw Stripe event onto the internal event schema.

    Returns None for event types this service doesn't act on.

    Raises:
        InvalidEventError: If a handled event's payload is malformed
    """
    if event_type in _SUBSCRIPTION_EVENTS:
        try:
            payload = _SubscriptionPayload.model_validate(data_object)
        except ValidationError as exc:
            raise InvalidEventError(event_type, str(exc)) from exc

        snapshot = SubscriptionSnapshot(
            stripe_subscription_id=payload.id,
            stripe_customer_id=payload.customer,
            status=payload.status,
            current_period_start=_epoch_to_datetime(payload.current_period_start),
            current_period_end=_epoch_to_datetime(payload.current_period_end),
            user_id=payload.metadata.get(USER_ID_METADATA_KEY) or None,
        )
        return _SUBSCRIPTION_EVENTS[event_type](event_id=event_id, subscription=snapshot)

    if event_type in _INVOICE_EVENTS:
        try:
            invoice = _InvoicePayload.model_validate(data_object)
        except ValidationError as exc:
            raise InvalidEventError(event_type, str(exc)) from exc

        return _INVOICE_EVENTS[event_type](
            event_id=event_id,
            invoice_id=invoice.id,
            stripe_subscription_id=invoice.subscription,
        )

    return None
