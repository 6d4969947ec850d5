"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from app.models.api import BillingCycleStatus, UsageTier


@dataclass(frozen=True)
class RequestContext:
    """
    Per-request correlation data, passed explicitly into service operations.

    started_at is a monotonic clock reading used for duration logging.
    """

    correlation_id: str = field(default_factory=lambda: str(uuid4()))
    started_at: float = field(default_factory=time.monotonic)

    def elapsed_ms(self) -> float:
        """Milliseconds since the context was created."""
        return round((time.monotonic() - self.started_at) * 1000, 2)


@dataclass(frozen=True)
class UsageIntent:
    """One completed chat turn, as reported by the conversation subsystem."""

    user_id: str
    conversation_id: str
    node_id: str
    model: str
    tokens_used: int
    token_cost: Decimal

    def __post_init__(self) -> None:
        """Validate usage constraints."""
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if not self.conversation_id:
            raise ValueError("conversation_id cannot be empty")
        if not self.node_id:
            raise ValueError("node_id cannot be empty")
        if self.tokens_used < 0:
            raise ValueError(f"tokens_used cannot be negative: {self.tokens_used}")
        if self.token_cost < 0:
            raise ValueError(f"token_cost cannot be negative: {self.token_cost}")


@dataclass(frozen=True)
class UsageRecordData:
    """Immutable usage record after persistence."""

    usage_record_id: UUID
    user_id: str
    conversation_id: str
    node_id: str
    model: str
    tokens_used: int
    token_cost: Decimal
    billing_cycle_id: UUID | None
    tier: UsageTier
    created_at: datetime


@dataclass(frozen=True)
class BillingCycleData:
    """Immutable billing cycle snapshot."""

    billing_cycle_id: UUID
    user_id: str
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    tokens_used: int
    token_cost: Decimal
    included_credit: Decimal
    overage_amount: Decimal
    status: BillingCycleStatus
    stripe_invoice_id: str | None


@dataclass(frozen=True)
class ExpiredCycle:
    """An active cycle whose period has ended, with what invoicing needs."""

    billing_cycle_id: UUID
    user_id: str
    period_start: datetime
    period_end: datetime
    overage_amount: Decimal
    stripe_customer_id: str


@dataclass(frozen=True)
class WebhookOutcome:
    """Result of applying one provider event."""

    event_id: str
    handled: bool
    credit_reset_subscription_id: UUID | None = None


def compute_overage(token_cost: Decimal, included_credit: Decimal) -> Decimal:
    """Overage is whatever the cycle's cost exceeds its included credit by."""
    return max(Decimal("0"), token_cost - included_credit)
