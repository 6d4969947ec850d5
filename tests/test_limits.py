"""
Tests for the rate/credit limiter.
"""

from decimal import Decimal

import pytest

from app.models.api import LimitReason, UsageTier
from app.services.limits import LimitService, estimate_cost
from tests.conftest import create_mock_cycle, make_result


class TestEstimateCost:
    def test_flat_rate_per_1k(self):
        assert estimate_cost(1000) == Decimal("0.02")
        assert estimate_cost(0) == Decimal("0")
        assert estimate_cost(500) == Decimal("0.01")


class TestCheckTokenLimitPaid:
    """Paid users are checked against remaining cycle credit."""

    async def test_within_credit(self, db_session, active_subscription, current_cycle):
        current_cycle.token_cost = Decimal("4.2")
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=current_cycle),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("user_123", requested_tokens=1000)

        assert result.allowed is True
        assert result.tier == UsageTier.PAID
        assert result.reason is None
        assert result.remaining_credit == Decimal("5.8")
        assert result.estimated_cost == Decimal("0.02")

    async def test_zero_token_request_allowed_past_credit(self, db_session, active_subscription):
        """Cycle at $12.50 of $10: a zero-token request still passes."""
        cycle = create_mock_cycle(
            subscription_id=active_subscription.id, token_cost=Decimal("12.5")
        )
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=cycle),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("user_123", requested_tokens=0)

        assert result.allowed is True
        assert result.remaining_credit == Decimal("-2.5")

    async def test_denied_past_credit(self, db_session, active_subscription):
        cycle = create_mock_cycle(
            subscription_id=active_subscription.id, token_cost=Decimal("12.5")
        )
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=cycle),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("user_123", requested_tokens=1000)

        assert result.allowed is False
        assert result.reason == LimitReason.CREDIT_EXCEEDED
        assert result.remaining_credit == Decimal("-2.5")

    async def test_denied_when_estimate_exceeds_remaining(self, db_session, active_subscription):
        cycle = create_mock_cycle(
            subscription_id=active_subscription.id, token_cost=Decimal("9.99")
        )
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=cycle),
        ]
        service = LimitService(db_session)

        # Estimate 0.02 > remaining 0.01
        result = await service.check_token_limit("user_123", requested_tokens=1000)

        assert result.allowed is False

    async def test_no_cycle_uses_subscription_credit(self, db_session, active_subscription):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=None),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("user_123", requested_tokens=1000)

        assert result.allowed is True
        assert result.remaining_credit == Decimal("10")

    async def test_stale_cycle_treated_as_fresh_period(
        self, db_session, active_subscription, stale_cycle
    ):
        """Before rollover the previous period's spend does not count."""
        stale_cycle.token_cost = Decimal("50")
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=stale_cycle),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("user_123", requested_tokens=1000)

        assert result.allowed is True
        assert result.remaining_credit == Decimal("10")

    async def test_negative_request_rejected(self, db_session):
        service = LimitService(db_session)

        with pytest.raises(ValueError, match="requested_tokens"):
            await service.check_token_limit("user_123", requested_tokens=-5)


class TestCheckTokenLimitFree:
    """Free users are checked against the lifetime token quota."""

    async def test_request_crossing_quota_denied(self, db_session):
        """19,500 used + 1,000 requested > 20,000."""
        db_session.execute.side_effect = [
            make_result(scalar=None),
            make_result(scalar_one=19_500),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("free_user", requested_tokens=1000)

        assert result.allowed is False
        assert result.tier == UsageTier.FREE
        assert result.reason == LimitReason.FREE_TIER_LIMIT_EXCEEDED
        assert result.tokens_used == 19_500
        assert result.max_tokens == 20_000

    async def test_request_reaching_quota_exactly_allowed(self, db_session):
        db_session.execute.side_effect = [
            make_result(scalar=None),
            make_result(scalar_one=19_000),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("free_user", requested_tokens=1000)

        assert result.allowed is True

    async def test_new_free_user(self, db_session):
        db_session.execute.side_effect = [
            make_result(scalar=None),
            make_result(scalar_one=0),
        ]
        service = LimitService(db_session)

        result = await service.check_token_limit("new_user", requested_tokens=5000)

        assert result.allowed is True
        assert result.tokens_used == 0


class TestConversationAllowance:
    async def test_paid_always_allowed(self, db_session, active_subscription):
        db_session.execute.return_value = make_result(scalar=active_subscription)
        service = LimitService(db_session)

        result = await service.check_conversation_allowance("user_123")

        assert result.allowed is True
        assert result.tier == UsageTier.PAID

    async def test_free_first_conversation_allowed(self, db_session):
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar_one=0)]
        service = LimitService(db_session)

        result = await service.check_conversation_allowance("free_user")

        assert result.allowed is True
        assert result.max_conversations == 1

    async def test_free_second_conversation_denied(self, db_session):
        db_session.execute.side_effect = [make_result(scalar=None), make_result(scalar_one=1)]
        service = LimitService(db_session)

        result = await service.check_conversation_allowance("free_user")

        assert result.allowed is False
        assert result.reason == LimitReason.FREE_TIER_CONVERSATION_LIMIT
        assert result.conversations_used == 1


class TestUsageStats:
    async def test_paid_stats_clamp_remaining(self, db_session, active_subscription):
        cycle = create_mock_cycle(
            subscription_id=active_subscription.id,
            tokens_used=80_000,
            token_cost=Decimal("12.5"),
        )
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=cycle),
        ]
        service = LimitService(db_session)

        stats = await service.get_usage_stats("user_123")

        assert stats.tier == UsageTier.PAID
        assert stats.tokens_used == 80_000
        assert stats.remaining_credit == Decimal("0")
        assert stats.overage_amount == Decimal("2.5")

    async def test_paid_stats_without_cycle(self, db_session, active_subscription):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=None),
        ]
        service = LimitService(db_session)

        stats = await service.get_usage_stats("user_123")

        assert stats.tokens_used == 0
        assert stats.remaining_credit == Decimal("10")
        assert stats.period_start == active_subscription.current_period_start

    async def test_free_stats(self, db_session):
        db_session.execute.side_effect = [
            make_result(scalar=None),
            make_result(scalar_one=1234),
            make_result(scalar_one=1),
        ]
        service = LimitService(db_session)

        stats = await service.get_usage_stats("free_user")

        assert stats.tier == UsageTier.FREE
        assert stats.tokens_used == 1234
        assert stats.conversations_used == 1
        assert stats.max_tokens == 20_000

    async def test_is_free_tier(self, db_session):
        service = LimitService(db_session)
        assert await service.is_free_tier("nobody") is True
