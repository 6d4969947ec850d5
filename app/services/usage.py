"""
Usage Service - Append-only metering of completed chat turns.

NO DICTIONARIES - All operations use strongly typed domain models.
"""

from datetime import timedelta
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import BillingCycle, FreeTierUsage, UsageRecord, utc_now
from app.exceptions import BillingCycleNotFoundError, ConcurrencyError, DataIntegrityError
from app.models.api import (
    BillingCycleResponse,
    ConversationUsageResponse,
    CurrentCycleUsageResponse,
    CycleAggregateResponse,
    ModelUsageBreakdown,
    UsageRecordResponse,
    UsageTier,
)
from app.models.domain import RequestContext, UsageIntent, UsageRecordData, compute_overage
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.services.billing_cycles import BillingCycleService

logger = get_logger(__name__)


def _record_to_response(record: UsageRecord) -> UsageRecordResponse:
    return UsageRecordResponse(
        id=record.id,
        user_id=record.user_id,
        conversation_id=record.conversation_id,
        node_id=record.node_id,
        model=record.model,
        tokens_used=record.tokens_used,
        token_cost=record.token_cost,
        billing_cycle_id=record.billing_cycle_id,
        created_at=record.created_at,
    )


def _cycle_to_response(cycle: BillingCycle) -> BillingCycleResponse:
    return BillingCycleResponse(
        id=cycle.id,
        user_id=cycle.user_id,
        subscription_id=cycle.subscription_id,
        period_start=cycle.period_start,
        period_end=cycle.period_end,
        tokens_used=cycle.tokens_used,
        token_cost=cycle.token_cost,
        included_credit=cycle.included_credit,
        overage_amount=cycle.overage_amount,
        status=cycle.status,
        stripe_invoice_id=cycle.stripe_invoice_id,
    )


class UsageService:
    """
    Usage recorder.

    Paid usage is added to the user's active billing cycle (rolled over when
    the subscription period has moved on); free usage accumulates on the
    conversation's free-tier row. Either way one immutable usage record is
    appended. Everything happens in one transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        """Initialize usage service with database session."""
        self.session = session

    async def record_usage(
        self, intent: UsageIntent, context: RequestContext | None = None
    ) -> UsageRecordData:
        """
        Record one completed chat turn.

        Raises:
            ConcurrencyError: If a concurrent writer opened a billing cycle
            DataIntegrityError: If the cycle aggregates fail verification
        """
        with log_context.for_request(
            context, user_id=intent.user_id, conversation_id=intent.conversation_id
        ):
            cycles = BillingCycleService(self.session)
            try:
                subscription = await cycles.find_billable_subscription(intent.user_id, lock=True)

                billing_cycle_id: UUID | None = None
                if subscription is not None:
                    tier = UsageTier.PAID
                    cycle = await cycles.resolve_active_cycle(subscription)
                    cycle.tokens_used += intent.tokens_used
                    cycle.token_cost += intent.token_cost
                    cycle.overage_amount = compute_overage(cycle.token_cost, cycle.included_credit)
                    billing_cycle_id = cycle.id
                else:
                    tier = UsageTier.FREE
                    await self._increment_free_tier_usage(intent)

                record = UsageRecord(
                    id=uuid4(),
                    user_id=intent.user_id,
                    conversation_id=intent.conversation_id,
                    node_id=intent.node_id,
                    model=intent.model,
                    tokens_used=intent.tokens_used,
                    token_cost=intent.token_cost,
                    billing_cycle_id=billing_cycle_id,
                    created_at=utc_now(),
                )
                self.session.add(record)
                await self.session.flush()

                if subscription is not None:
                    self._verify_cycle_aggregates(cycle)

                await self.session.commit()
            except IntegrityError as exc:
                await self.session.rollback()
                logger.error("usage_record_integrity_error", error=str(exc))
                raise ConcurrencyError(f"usage for user {intent.user_id}") from exc
            except Exception:
                await self.session.rollback()
                raise

            metrics.record_usage(tier.value, intent.tokens_used, float(intent.token_cost))
            logger.info(
                "usage_recorded",
                usage_record_id=str(record.id),
                billing_cycle_id=str(billing_cycle_id) if billing_cycle_id else None,
                tier=tier.value,
                model=intent.model,
                tokens_used=intent.tokens_used,
                token_cost=str(intent.token_cost),
                duration_ms=context.elapsed_ms() if context else None,
            )

            return UsageRecordData(
                usage_record_id=record.id,
                user_id=record.user_id,
                conversation_id=record.conversation_id,
                node_id=record.node_id,
                model=record.model,
                tokens_used=record.tokens_used,
                token_cost=record.token_cost,
                billing_cycle_id=record.billing_cycle_id,
                tier=tier,
                created_at=record.created_at,
            )

    async def get_user_usage_records(
        self, user_id: str, limit: int = 100
    ) -> list[UsageRecordResponse]:
        """Most recent usage records for a user, newest first."""
        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.created_at.desc())
            .limit(limit)
        )
        return [_record_to_response(record) for record in result.scalars().all()]

    async def get_conversation_usage(self, conversation_id: str) -> ConversationUsageResponse:
        """All usage records of a conversation with their totals."""
        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.conversation_id == conversation_id)
            .order_by(UsageRecord.created_at)
        )
        records = list(result.scalars().all())

        return ConversationUsageResponse(
            conversation_id=conversation_id,
            records=[_record_to_response(record) for record in records],
            total_tokens=sum(record.tokens_used for record in records),
            total_cost=sum((record.token_cost for record in records), Decimal("0")),
        )

    async def get_current_cycle_usage(self, user_id: str) -> CurrentCycleUsageResponse | None:
        """The user's active cycle with its usage records, or None."""
        cycles = BillingCycleService(self.session)
        cycle = await cycles.find_active_cycle(user_id)
        if cycle is None:
            return None

        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.billing_cycle_id == cycle.id)
            .order_by(UsageRecord.created_at.desc())
        )

        return CurrentCycleUsageResponse(
            billing_cycle=_cycle_to_response(cycle),
            records=[_record_to_response(record) for record in result.scalars().all()],
        )

    async def aggregate_usage_by_cycle(self, billing_cycle_id: UUID) -> CycleAggregateResponse:
        """
        Totals and per-model breakdown of a cycle's usage records.

        Raises:
            BillingCycleNotFoundError: If the cycle doesn't exist
        """
        cycle = await self.session.get(BillingCycle, billing_cycle_id)
        if cycle is None:
            raise BillingCycleNotFoundError(billing_cycle_id)

        result = await self.session.execute(
            select(
                UsageRecord.model,
                func.coalesce(func.sum(UsageRecord.tokens_used), 0),
                func.coalesce(func.sum(UsageRecord.token_cost), 0),
                func.count(UsageRecord.id),
            )
            .where(UsageRecord.billing_cycle_id == billing_cycle_id)
            .group_by(UsageRecord.model)
            .order_by(UsageRecord.model)
        )

        by_model: list[ModelUsageBreakdown] = []
        record_count = 0
        for model, tokens, cost, count in result.all():
            by_model.append(
                ModelUsageBreakdown(model=model, tokens=int(tokens), cost=Decimal(cost))
            )
            record_count += int(count)

        return CycleAggregateResponse(
            billing_cycle_id=billing_cycle_id,
            total_tokens=sum(entry.tokens for entry in by_model),
            total_cost=sum((entry.cost for entry in by_model), Decimal("0")),
            by_model=by_model,
            record_count=record_count,
        )

    async def get_conversation_token_total(self, conversation_id: str) -> int:
        """Tokens used in a conversation (free-tier row, else summed records)."""
        result = await self.session.execute(
            select(FreeTierUsage.tokens_used).where(
                FreeTierUsage.conversation_id == conversation_id
            )
        )
        free_tier_tokens = result.scalar_one_or_none()
        if free_tier_tokens is not None:
            return int(free_tier_tokens)

        result = await self.session.execute(
            select(func.coalesce(func.sum(UsageRecord.tokens_used), 0)).where(
                UsageRecord.conversation_id == conversation_id
            )
        )
        return int(result.scalar_one())

    async def cleanup_old_usage_records(self, retention_days: int | None = None) -> int:
        """
        Delete usage records older than the retention window.

        Returns the number of records deleted.
        """
        days = retention_days if retention_days is not None else settings.usage_retention_days
        if days < 0:
            raise ValueError(f"retention_days cannot be negative: {days}")
        cutoff = utc_now() - timedelta(days=days)

        try:
            result = await self.session.execute(
                delete(UsageRecord).where(UsageRecord.created_at < cutoff)
            )
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

        deleted = int(result.rowcount or 0)
        logger.info(
            "usage_records_cleaned_up",
            deleted=deleted,
            retention_days=days,
            cutoff=cutoff.isoformat(),
        )
        return deleted

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _increment_free_tier_usage(self, intent: UsageIntent) -> None:
        stmt = pg_insert(FreeTierUsage).values(
            id=uuid4(),
            user_id=intent.user_id,
            conversation_id=intent.conversation_id,
            tokens_used=intent.tokens_used,
            is_locked=True,
            created_at=utc_now(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[FreeTierUsage.conversation_id],
            set_={"tokens_used": FreeTierUsage.tokens_used + stmt.excluded.tokens_used},
        )
        await self.session.execute(stmt)

    @staticmethod
    def _verify_cycle_aggregates(cycle: BillingCycle) -> None:
        if cycle.tokens_used < 0 or cycle.token_cost < 0:
            raise DataIntegrityError(f"Billing cycle {cycle.id} aggregates went negative")
        if cycle.overage_amount != compute_overage(cycle.token_cost, cycle.included_credit):
            raise DataIntegrityError(f"Billing cycle {cycle.id} overage is out of sync")
