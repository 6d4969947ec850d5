"""
Billing Cycle Service - Per-user cycle lifecycle with row-level serialization.

NO DICTIONARIES - All operations use strongly typed domain models.

Writers that touch a user's active cycle lock the user's subscription row
(SELECT ... FOR UPDATE) first. The partial unique index on
billing_cycles(user_id) WHERE status = 'active' backs this up: a second
active cycle is rejected by the database and surfaces as ConcurrencyError.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import Select, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.db.models import BillingCycle, Subscription, utc_now
from app.exceptions import (
    BillingCycleNotFoundError,
    ConcurrencyError,
    SubscriptionInactiveError,
    SubscriptionNotFoundError,
)
from app.models.api import BillingCycleStatus, SubscriptionStatus
from app.models.domain import BillingCycleData, ExpiredCycle, RequestContext
from app.observability.logging import log_context
from app.observability.metrics import metrics

logger = get_logger(__name__)

# Usage keeps accruing while a renewal payment is being retried
BILLABLE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAST_DUE.value)


def billable_subscription_query(user_id: str) -> Select[tuple[Subscription]]:
    """Newest billable subscription for a user."""
    return (
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .where(Subscription.status.in_(BILLABLE_STATUSES))
        .order_by(Subscription.created_at.desc())
        .limit(1)
    )


def active_cycle_query(user_id: str) -> Select[tuple[BillingCycle]]:
    """The user's active cycle (at most one row)."""
    return (
        select(BillingCycle)
        .where(BillingCycle.user_id == user_id)
        .where(BillingCycle.status == BillingCycleStatus.ACTIVE.value)
    )


def cycle_is_stale(cycle: BillingCycle, subscription: Subscription) -> bool:
    """True when the cycle no longer falls inside the subscription's current period."""
    return (
        cycle.subscription_id != subscription.id
        or cycle.period_start < subscription.current_period_start
        or cycle.period_end > subscription.current_period_end
    )


def cycle_to_data(cycle: BillingCycle) -> BillingCycleData:
    """Convert ORM cycle to immutable snapshot."""
    return BillingCycleData(
        billing_cycle_id=cycle.id,
        user_id=cycle.user_id,
        subscription_id=cycle.subscription_id,
        period_start=cycle.period_start,
        period_end=cycle.period_end,
        tokens_used=cycle.tokens_used,
        token_cost=cycle.token_cost,
        included_credit=cycle.included_credit,
        overage_amount=cycle.overage_amount,
        status=BillingCycleStatus(cycle.status),
        stripe_invoice_id=cycle.stripe_invoice_id,
    )


class BillingCycleService:
    """
    Billing cycle manager.

    Cycles are opened lazily (first usage in a period) or eagerly (credit
    reset on renewal), and closed by rollover, reset or overage invoicing.
    A completed cycle never reopens.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize billing cycle service with database session."""
        self.session = session

    async def get_or_create_active_cycle(
        self, user_id: str, context: RequestContext | None = None
    ) -> UUID:
        """
        Resolve the user's active cycle, rolling it over if the period moved on.

        Raises:
            SubscriptionNotFoundError: If the user has no billable subscription
            ConcurrencyError: If another writer opened a cycle concurrently
        """
        with log_context.for_request(context, user_id=user_id):
            subscription = await self.find_billable_subscription(user_id, lock=True)
            if subscription is None:
                raise SubscriptionNotFoundError(user_id)

            try:
                cycle = await self.resolve_active_cycle(subscription, operation="lazy")
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

            return cycle.id

    async def reset_token_credit(
        self, subscription_id: UUID, context: RequestContext | None = None
    ) -> UUID:
        """
        Start a fresh cycle for the subscription's current period.

        The previous active cycle is closed without invoicing; credit does
        not carry over. A reset for a period that already has its cycle
        returns that cycle unchanged.

        Raises:
            SubscriptionNotFoundError: If the subscription doesn't exist
            SubscriptionInactiveError: If the subscription is canceled
            ConcurrencyError: If another writer opened a cycle concurrently
        """
        with log_context.for_request(context, subscription_id=str(subscription_id)):
            subscription = await self._find_subscription(subscription_id, lock=True)
            if subscription is None:
                raise SubscriptionNotFoundError(str(subscription_id))
            if subscription.status == SubscriptionStatus.CANCELED.value:
                raise SubscriptionInactiveError(subscription.id, subscription.status)

            try:
                current = await self.find_active_cycle(subscription.user_id)
                if current is not None and self._spans_current_period(current, subscription):
                    await self.session.commit()
                    logger.info(
                        "credit_reset_already_applied",
                        user_id=subscription.user_id,
                        billing_cycle_id=str(current.id),
                    )
                    return current.id

                if current is not None:
                    await self._close_cycle(current, operation="reset")

                cycle = await self._open_cycle(subscription, operation="reset")
                await self.session.commit()
            except Exception:
                await self.session.rollback()
                raise

            logger.info(
                "token_credit_reset",
                user_id=subscription.user_id,
                billing_cycle_id=str(cycle.id),
                included_credit=str(cycle.included_credit),
                duration_ms=context.elapsed_ms() if context else None,
            )
            return cycle.id

    async def complete_billing_cycle(
        self, billing_cycle_id: UUID, stripe_invoice_id: str | None = None
    ) -> bool:
        """
        Transition a cycle from active to completed.

        Conditional on the cycle still being active, so a cycle is completed
        exactly once. Returns False when it was already completed; the
        invoice id is attached then only if the cycle has none.

        Raises:
            BillingCycleNotFoundError: If the cycle doesn't exist
        """
        now = utc_now()
        stmt = (
            update(BillingCycle)
            .where(BillingCycle.id == billing_cycle_id)
            .where(BillingCycle.status == BillingCycleStatus.ACTIVE.value)
            .values(
                status=BillingCycleStatus.COMPLETED.value,
                completed_at=now,
                updated_at=now,
            )
        )
        if stripe_invoice_id is not None:
            stmt = stmt.values(stripe_invoice_id=stripe_invoice_id)

        try:
            result = await self.session.execute(stmt)

            if result.rowcount == 1:
                await self.session.commit()
                metrics.billing_cycles_completed_total.labels(operation="overage").inc()
                logger.info(
                    "billing_cycle_completed",
                    billing_cycle_id=str(billing_cycle_id),
                    stripe_invoice_id=stripe_invoice_id,
                )
                return True

            cycle = await self._find_cycle(billing_cycle_id)
            if cycle is None:
                raise BillingCycleNotFoundError(billing_cycle_id)

            if stripe_invoice_id is not None and cycle.stripe_invoice_id is None:
                cycle.stripe_invoice_id = stripe_invoice_id
                await self.session.flush()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            "billing_cycle_already_completed",
            billing_cycle_id=str(billing_cycle_id),
            stripe_invoice_id=cycle.stripe_invoice_id,
        )
        return False

    async def get_expired_active_cycles(self, now: datetime | None = None) -> list[ExpiredCycle]:
        """Active cycles whose period ended before now, oldest first."""
        cutoff = now or utc_now()
        stmt = (
            select(BillingCycle, Subscription.stripe_customer_id)
            .join(Subscription, BillingCycle.subscription_id == Subscription.id)
            .where(BillingCycle.status == BillingCycleStatus.ACTIVE.value)
            .where(BillingCycle.period_end < cutoff)
            .order_by(BillingCycle.period_end)
        )
        result = await self.session.execute(stmt)

        return [
            ExpiredCycle(
                billing_cycle_id=cycle.id,
                user_id=cycle.user_id,
                period_start=cycle.period_start,
                period_end=cycle.period_end,
                overage_amount=cycle.overage_amount,
                stripe_customer_id=stripe_customer_id,
            )
            for cycle, stripe_customer_id in result.all()
        ]

    async def get_cycle(self, billing_cycle_id: UUID) -> BillingCycleData:
        """
        Get a cycle snapshot.

        Raises:
            BillingCycleNotFoundError: If the cycle doesn't exist
        """
        cycle = await self._find_cycle(billing_cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(billing_cycle_id)
        return cycle_to_data(cycle)

    # ========================================================================
    # Shared with the usage recorder (caller owns the transaction)
    # ========================================================================

    async def find_billable_subscription(
        self, user_id: str, lock: bool = False
    ) -> Subscription | None:
        """Find the user's billable subscription, optionally locking the row."""
        stmt = billable_subscription_query(user_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_active_cycle(self, user_id: str) -> BillingCycle | None:
        """Find the user's active cycle."""
        result = await self.session.execute(active_cycle_query(user_id))
        return result.scalar_one_or_none()

    async def resolve_active_cycle(
        self, subscription: Subscription, operation: str = "usage"
    ) -> BillingCycle:
        """
        Return the active cycle for the subscription's current period.

        A stale active cycle is completed and replaced. Must be called with
        the subscription row locked; does not commit.
        """
        cycle = await self.find_active_cycle(subscription.user_id)
        if cycle is not None and not cycle_is_stale(cycle, subscription):
            return cycle

        if cycle is not None:
            await self._close_cycle(cycle, operation="rollover")

        return await self._open_cycle(subscription, operation=operation)

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _open_cycle(self, subscription: Subscription, operation: str) -> BillingCycle:
        cycle = BillingCycle(
            id=uuid4(),
            user_id=subscription.user_id,
            subscription_id=subscription.id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            tokens_used=0,
            token_cost=Decimal("0"),
            included_credit=subscription.included_token_credit,
            overage_amount=Decimal("0"),
            status=BillingCycleStatus.ACTIVE.value,
        )
        self.session.add(cycle)

        try:
            await self.session.flush()
        except IntegrityError as exc:
            logger.error(
                "billing_cycle_create_conflict",
                user_id=subscription.user_id,
                error=str(exc),
            )
            raise ConcurrencyError(f"active billing cycle for user {subscription.user_id}") from exc

        metrics.billing_cycles_created_total.labels(operation=operation).inc()
        logger.info(
            "billing_cycle_created",
            user_id=subscription.user_id,
            billing_cycle_id=str(cycle.id),
            period_start=cycle.period_start.isoformat(),
            period_end=cycle.period_end.isoformat(),
            operation=operation,
        )
        return cycle

    async def _close_cycle(self, cycle: BillingCycle, operation: str) -> None:
        # Flushed before a replacement is inserted so the partial unique index holds
        cycle.status = BillingCycleStatus.COMPLETED.value
        cycle.completed_at = utc_now()
        await self.session.flush()

        metrics.billing_cycles_completed_total.labels(operation=operation).inc()
        logger.info(
            "billing_cycle_closed",
            user_id=cycle.user_id,
            billing_cycle_id=str(cycle.id),
            token_cost=str(cycle.token_cost),
            overage_amount=str(cycle.overage_amount),
            operation=operation,
        )

    @staticmethod
    def _spans_current_period(cycle: BillingCycle, subscription: Subscription) -> bool:
        return (
            cycle.subscription_id == subscription.id
            and cycle.period_start == subscription.current_period_start
            and cycle.period_end == subscription.current_period_end
        )

    async def _find_subscription(
        self, subscription_id: UUID, lock: bool = False
    ) -> Subscription | None:
        stmt = select(Subscription).where(Subscription.id == subscription_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _find_cycle(self, billing_cycle_id: UUID) -> BillingCycle | None:
        result = await self.session.execute(
            select(BillingCycle).where(BillingCycle.id == billing_cycle_id)
        )
        return result.scalar_one_or_none()
