"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration (mirrors Stripe)."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    TRIALING = "trialing"
    PAUSED = "paused"


class BillingCycleStatus(str, Enum):
    """Billing cycle status enumeration."""

    ACTIVE = "active"
    COMPLETED = "completed"


class UsageTier(str, Enum):
    """Which allowance a user's usage is metered against."""

    FREE = "free"
    PAID = "paid"


class LimitReason(str, Enum):
    """Typed denial reasons surfaced to the caller (mapped to upgrade prompts)."""

    CREDIT_EXCEEDED = "credit_exceeded"
    FREE_TIER_LIMIT_EXCEEDED = "free_tier_limit_exceeded"
    FREE_TIER_CONVERSATION_LIMIT = "free_tier_conversation_limit"


# ============================================================================
# Usage Models
# ============================================================================


class RecordUsageRequest(BaseModel):
    """POST /v1/usage/record request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    conversation_id: str = Field(..., min_length=1, max_length=255)
    node_id: str = Field(..., min_length=1, max_length=255)
    model: str = Field(..., min_length=1, max_length=255)
    input_tokens: int = Field(0, ge=0)
    output_tokens: int = Field(0, ge=0)
    thinking_tokens: int = Field(0, ge=0)
    token_cost: Decimal | None = Field(
        None, ge=0, description="Cost in USD; computed from the pricing table when omitted"
    )

    @property
    def tokens_used(self) -> int:
        """Total tokens for the turn."""
        return self.input_tokens + self.output_tokens + self.thinking_tokens


class RecordUsageResponse(BaseModel):
    """POST /v1/usage/record response."""

    success: bool = True
    usage_record_id: UUID
    billing_cycle_id: UUID | None = None
    tier: UsageTier
    tokens_used: int
    token_cost: Decimal


class UsageRecordResponse(BaseModel):
    """Single usage record."""

    id: UUID
    user_id: str
    conversation_id: str
    node_id: str
    model: str
    tokens_used: int
    token_cost: Decimal
    billing_cycle_id: UUID | None = None
    created_at: datetime


class UsageRecordListResponse(BaseModel):
    """GET /v1/usage/{user_id}/records response."""

    records: list[UsageRecordResponse]


class ConversationUsageResponse(BaseModel):
    """GET /v1/usage/conversations/{conversation_id} response."""

    conversation_id: str
    records: list[UsageRecordResponse]
    total_tokens: int
    total_cost: Decimal


class ModelUsageBreakdown(BaseModel):
    """Per-model totals inside a cycle aggregate."""

    model: str
    tokens: int
    cost: Decimal


class CycleAggregateResponse(BaseModel):
    """GET /v1/billing/cycles/{cycle_id}/aggregate response."""

    billing_cycle_id: UUID
    total_tokens: int
    total_cost: Decimal
    by_model: list[ModelUsageBreakdown]
    record_count: int


class BillingCycleResponse(BaseModel):
    """Billing cycle snapshot."""

    id: UUID
    user_id: str
    subscription_id: UUID
    period_start: datetime
    period_end: datetime
    tokens_used: int
    token_cost: Decimal
    included_credit: Decimal
    overage_amount: Decimal
    status: BillingCycleStatus
    stripe_invoice_id: str | None = None


class CurrentCycleUsageResponse(BaseModel):
    """GET /v1/usage/{user_id}/cycle response."""

    billing_cycle: BillingCycleResponse | None = None
    records: list[UsageRecordResponse] = Field(default_factory=list)


# ============================================================================
# Limit Models
# ============================================================================


class TokenLimitCheckRequest(BaseModel):
    """POST /v1/limits/tokens/check request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    requested_tokens: int = Field(0, ge=0)


class TokenLimitCheckResponse(BaseModel):
    """POST /v1/limits/tokens/check response."""

    allowed: bool
    tier: UsageTier
    reason: LimitReason | None = None
    remaining_credit: Decimal | None = None
    estimated_cost: Decimal | None = None
    tokens_used: int | None = None
    max_tokens: int | None = None


class ConversationAllowanceRequest(BaseModel):
    """POST /v1/limits/conversations/check request body."""

    user_id: str = Field(..., min_length=1, max_length=255)


class ConversationAllowanceResponse(BaseModel):
    """POST /v1/limits/conversations/check response."""

    allowed: bool
    tier: UsageTier
    reason: LimitReason | None = None
    conversations_used: int | None = None
    max_conversations: int | None = None


class UsageStatsResponse(BaseModel):
    """GET /v1/usage/{user_id}/stats response."""

    tier: UsageTier
    tokens_used: int
    # Paid tier
    token_cost: Decimal | None = None
    remaining_credit: Decimal | None = None
    included_credit: Decimal | None = None
    overage_amount: Decimal | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    # Free tier
    max_tokens: int | None = None
    conversations_used: int | None = None
    max_conversations: int | None = None


# ============================================================================
# Overage Billing Models
# ============================================================================


class OverageBillingResult(BaseModel):
    """Aggregate counts for one invoicing batch run."""

    processed: int = 0
    invoiced: int = 0
    errors: int = 0

    @model_validator(mode="after")
    def validate_counts(self) -> "OverageBillingResult":
        """Invoiced and errored cycles are subsets of the processed batch."""
        if self.invoiced + self.errors > self.processed:
            raise ValueError("invoiced + errors cannot exceed processed")
        return self


# ============================================================================
# Subscription / Provider Models
# ============================================================================


class CancelSubscriptionResponse(BaseModel):
    """POST /v1/billing/subscriptions/{user_id}/cancel response."""

    stripe_subscription_id: str
    status: SubscriptionStatus


class BillingPortalRequest(BaseModel):
    """POST /v1/billing/portal request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    return_url: str | None = Field(None, max_length=2048)


class BillingPortalResponse(BaseModel):
    """POST /v1/billing/portal response."""

    url: str


class WebhookResponse(BaseModel):
    """POST /v1/billing/webhooks/stripe response."""

    status: Literal["success", "ignored"]
    event_id: str


# ============================================================================
# Health Models
# ============================================================================


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
