"""
Limit Service - Advisory admission checks against credit and free-tier quota.

NO DICTIONARIES - All operations use strongly typed domain models.

Checks are read-only and never block usage recording; the overage invoicing
batch is the backstop for anything admitted past the limit.
"""

from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import BillingCycle, FreeTierUsage, Subscription
from app.models.api import (
    ConversationAllowanceResponse,
    LimitReason,
    TokenLimitCheckResponse,
    UsageStatsResponse,
    UsageTier,
)
from app.observability.metrics import metrics
from app.services.billing_cycles import (
    active_cycle_query,
    billable_subscription_query,
    cycle_is_stale,
)

logger = get_logger(__name__)

_ONE_THOUSAND = Decimal("1000")
_ZERO = Decimal("0")


def estimate_cost(requested_tokens: int) -> Decimal:
    """Flat pre-request cost estimate in USD."""
    return Decimal(requested_tokens) / _ONE_THOUSAND * settings.credit_estimate_per_1k_tokens


class LimitService:
    """Rate/credit limiter for paid and free-tier users."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize limit service with (read) database session."""
        self.session = session

    async def check_token_limit(
        self, user_id: str, requested_tokens: int = 0
    ) -> TokenLimitCheckResponse:
        """
        Decide whether a request for requested_tokens may proceed.

        Paid users are checked against remaining cycle credit (a zero-token
        request is always admitted); free users against the lifetime token quota.
        """
        if requested_tokens < 0:
            raise ValueError(f"requested_tokens cannot be negative: {requested_tokens}")

        subscription = await self._find_subscription(user_id)

        if subscription is not None:
            remaining = await self._remaining_credit(subscription)
            estimated = estimate_cost(requested_tokens)
            allowed = requested_tokens == 0 or remaining - estimated >= _ZERO

            response = TokenLimitCheckResponse(
                allowed=allowed,
                tier=UsageTier.PAID,
                reason=None if allowed else LimitReason.CREDIT_EXCEEDED,
                remaining_credit=remaining,
                estimated_cost=estimated,
            )
        else:
            used = await self._sum_free_tier_tokens(user_id)
            max_tokens = settings.free_tier_max_tokens
            allowed = used + requested_tokens <= max_tokens

            response = TokenLimitCheckResponse(
                allowed=allowed,
                tier=UsageTier.FREE,
                reason=None if allowed else LimitReason.FREE_TIER_LIMIT_EXCEEDED,
                tokens_used=used,
                max_tokens=max_tokens,
            )

        reason = response.reason.value if response.reason else None
        metrics.record_limit_check(response.allowed, reason)
        if not response.allowed:
            logger.info(
                "token_limit_denied",
                user_id=user_id,
                tier=response.tier.value,
                reason=reason,
                requested_tokens=requested_tokens,
            )
        return response

    async def check_conversation_allowance(self, user_id: str) -> ConversationAllowanceResponse:
        """Paid users may always start conversations; free users get a fixed number."""
        if await self._find_subscription(user_id) is not None:
            response = ConversationAllowanceResponse(allowed=True, tier=UsageTier.PAID)
        else:
            used = await self._count_free_tier_conversations(user_id)
            max_conversations = settings.free_tier_max_conversations
            allowed = used < max_conversations
            response = ConversationAllowanceResponse(
                allowed=allowed,
                tier=UsageTier.FREE,
                reason=None if allowed else LimitReason.FREE_TIER_CONVERSATION_LIMIT,
                conversations_used=used,
                max_conversations=max_conversations,
            )

        reason = response.reason.value if response.reason else None
        metrics.record_limit_check(response.allowed, reason)
        return response

    async def get_usage_stats(self, user_id: str) -> UsageStatsResponse:
        """Tier summary for display."""
        subscription = await self._find_subscription(user_id)

        if subscription is None:
            return UsageStatsResponse(
                tier=UsageTier.FREE,
                tokens_used=await self._sum_free_tier_tokens(user_id),
                max_tokens=settings.free_tier_max_tokens,
                conversations_used=await self._count_free_tier_conversations(user_id),
                max_conversations=settings.free_tier_max_conversations,
            )

        cycle = await self._find_current_cycle(subscription)
        if cycle is None:
            return UsageStatsResponse(
                tier=UsageTier.PAID,
                tokens_used=0,
                token_cost=_ZERO,
                remaining_credit=subscription.included_token_credit,
                included_credit=subscription.included_token_credit,
                overage_amount=_ZERO,
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
            )

        return UsageStatsResponse(
            tier=UsageTier.PAID,
            tokens_used=cycle.tokens_used,
            token_cost=cycle.token_cost,
            remaining_credit=max(_ZERO, cycle.included_credit - cycle.token_cost),
            included_credit=cycle.included_credit,
            overage_amount=cycle.overage_amount,
            period_start=cycle.period_start,
            period_end=cycle.period_end,
        )

    async def is_free_tier(self, user_id: str) -> bool:
        """True when the user has no billable subscription."""
        return await self._find_subscription(user_id) is None

    # ========================================================================
    # Private helpers
    # ========================================================================

    async def _remaining_credit(self, subscription: Subscription) -> Decimal:
        # Not clamped: a negative value reports how far past the credit the cycle is
        cycle = await self._find_current_cycle(subscription)
        if cycle is None:
            return subscription.included_token_credit
        return cycle.included_credit - cycle.token_cost

    async def _find_current_cycle(self, subscription: Subscription) -> BillingCycle | None:
        # A cycle from an earlier period is rolled over on the next usage write
        result = await self.session.execute(active_cycle_query(subscription.user_id))
        cycle = result.scalar_one_or_none()
        if cycle is None or cycle_is_stale(cycle, subscription):
            return None
        return cycle

    async def _find_subscription(self, user_id: str) -> Subscription | None:
        result = await self.session.execute(billable_subscription_query(user_id))
        return result.scalar_one_or_none()

    async def _sum_free_tier_tokens(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(FreeTierUsage.tokens_used), 0)).where(
                FreeTierUsage.user_id == user_id
            )
        )
        return int(result.scalar_one())

    async def _count_free_tier_conversations(self, user_id: str) -> int:
        result = await self.session.execute(
            select(func.count(FreeTierUsage.id)).where(FreeTierUsage.user_id == user_id)
        )
        return int(result.scalar_one())
