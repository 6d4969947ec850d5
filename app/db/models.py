"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    text,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# USD amounts: twelve decimal places holds single-token costs of every priced model
Money = Numeric(24, 12)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class Subscription(Base):
    """
    ORM model for subscriptions table.

    Local mirror of the Stripe subscription. Written only by the
    subscription lifecycle handler; read-only to billing logic.
    """

    __tablename__ = "subscriptions"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Owner
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Stripe references
    stripe_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    stripe_subscription_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)

    # Status (active, past_due, canceled, unpaid, incomplete, trialing)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    # Current period (mirrors Stripe)
    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Included token credit in USD
    included_token_credit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    plan_type: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'unpaid', 'incomplete', "
            "'incomplete_expired', 'trialing', 'paused')",
            name="ck_subscriptions_status",
        ),
        CheckConstraint("included_token_credit >= 0", name="ck_included_credit_non_negative"),
        Index("idx_subscriptions_user_id", "user_id"),
        Index("idx_subscriptions_stripe_customer_id", "stripe_customer_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"stripe_subscription_id={self.stripe_subscription_id}, status={self.status})>"
        )


class BillingCycle(Base):
    """
    ORM model for billing_cycles table.

    Per-user usage aggregate for one subscription period. At most one
    active cycle per user (partial unique index).
    """

    __tablename__ = "billing_cycles"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # Ownership
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Period (snapshot of the subscription's period at creation)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Aggregates
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    token_cost: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))
    included_credit: Mapped[Decimal] = mapped_column(Money, nullable=False)
    overage_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("0"))

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    stripe_invoice_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("status IN ('active', 'completed')", name="ck_billing_cycles_status"),
        CheckConstraint("tokens_used >= 0", name="ck_cycle_tokens_non_negative"),
        CheckConstraint("token_cost >= 0", name="ck_cycle_cost_non_negative"),
        CheckConstraint("overage_amount >= 0", name="ck_cycle_overage_non_negative"),
        CheckConstraint("period_end >= period_start", name="ck_cycle_period_order"),
        Index(
            "uq_billing_cycles_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
        Index("idx_billing_cycles_user_id", "user_id"),
        Index("idx_billing_cycles_subscription_id", "subscription_id"),
        Index("idx_billing_cycles_status_period_end", "status", "period_end"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<BillingCycle(id={self.id}, user_id={self.user_id}, status={self.status}, "
            f"token_cost={self.token_cost}, overage={self.overage_amount})>"
        )


class UsageRecord(Base):
    """
    ORM model for usage_records table.

    Immutable ledger of completed chat turns. Only removed by the
    retention sweep.
    """

    __tablename__ = "usage_records"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    # References into the conversation subsystem
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(255), nullable=False)
    node_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Usage
    model: Mapped[str] = mapped_column(String(255), nullable=False)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    token_cost: Mapped[Decimal] = mapped_column(Money, nullable=False)

    # Owning cycle (NULL for free tier)
    billing_cycle_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("billing_cycles.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_usage_tokens_non_negative"),
        CheckConstraint("token_cost >= 0", name="ck_usage_cost_non_negative"),
        Index("idx_usage_records_user_id_created_at", "user_id", "created_at"),
        Index("idx_usage_records_conversation_id", "conversation_id"),
        Index("idx_usage_records_created_at", "created_at"),
        Index(
            "idx_usage_records_billing_cycle_id",
            "billing_cycle_id",
            postgresql_where=(billing_cycle_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<UsageRecord(id={self.id}, user_id={self.user_id}, model={self.model}, "
            f"tokens={self.tokens_used}, cost={self.token_cost})>"
        )


class FreeTierUsage(Base):
    """
    ORM model for free_tier_usage table.

    Lifetime token total per free-tier conversation. Rows are locked and
    never deleted.
    """

    __tablename__ = "free_tier_usage"

    # Primary Key
    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    conversation_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Audit timestamp
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_free_tier_tokens_non_negative"),
        CheckConstraint("is_locked", name="ck_free_tier_locked"),
        Index("idx_free_tier_usage_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<FreeTierUsage(id={self.id}, user_id={self.user_id}, "
            f"conversation_id={self.conversation_id}, tokens={self.tokens_used})>"
        )
