"""
Tests for the billing cycle manager.

Covers lazy cycle creation and rollover, credit resets, completion and
the expired-cycle query used by overage invoicing.
"""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError

from app.db.models import BillingCycle
from app.exceptions import (
    BillingCycleNotFoundError,
    ConcurrencyError,
    SubscriptionInactiveError,
    SubscriptionNotFoundError,
)
from app.models.api import BillingCycleStatus
from app.services.billing_cycles import BillingCycleService, cycle_is_stale
from tests.conftest import (
    PERIOD_END,
    PERIOD_START,
    create_mock_cycle,
    create_mock_subscription,
    make_result,
)


def added_cycles(db_session) -> list[BillingCycle]:
    return [
        call.args[0]
        for call in db_session.add.call_args_list
        if isinstance(call.args[0], BillingCycle)
    ]


class TestCycleIsStale:
    """Tests for cycle_is_stale."""

    def test_current_cycle_is_not_stale(self, active_subscription, current_cycle):
        assert cycle_is_stale(current_cycle, active_subscription) is False

    def test_previous_period_is_stale(self, active_subscription, stale_cycle):
        assert cycle_is_stale(stale_cycle, active_subscription) is True

    def test_other_subscription_is_stale(self, active_subscription):
        cycle = create_mock_cycle(subscription_id=uuid4())
        assert cycle_is_stale(cycle, active_subscription) is True


class TestGetOrCreateActiveCycle:
    """Tests for lazy cycle resolution."""

    async def test_no_subscription_raises(self, db_session):
        service = BillingCycleService(db_session)

        with patch.object(
            service, "find_billable_subscription", new_callable=AsyncMock
        ) as mock_find:
            mock_find.return_value = None

            with pytest.raises(SubscriptionNotFoundError):
                await service.get_or_create_active_cycle("user_404")

        db_session.commit.assert_not_called()

    async def test_returns_existing_current_cycle(
        self, db_session, active_subscription, current_cycle
    ):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=current_cycle),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.get_or_create_active_cycle("user_123")

        assert cycle_id == current_cycle.id
        db_session.add.assert_not_called()
        db_session.commit.assert_awaited_once()

    async def test_creates_cycle_for_first_usage(self, db_session, active_subscription):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=None),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.get_or_create_active_cycle("user_123")

        [created] = added_cycles(db_session)
        assert created.id == cycle_id
        assert created.subscription_id == active_subscription.id
        assert created.period_start == PERIOD_START
        assert created.period_end == PERIOD_END
        assert created.tokens_used == 0
        assert created.token_cost == Decimal("0")
        assert created.included_credit == Decimal("10")
        assert created.overage_amount == Decimal("0")
        assert created.status == BillingCycleStatus.ACTIVE.value

    async def test_rolls_over_stale_cycle(self, db_session, active_subscription, stale_cycle):
        """Renewal without a reset: first usage closes the old cycle and opens a new one."""
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=stale_cycle),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.get_or_create_active_cycle("user_123")

        assert stale_cycle.status == BillingCycleStatus.COMPLETED.value
        assert stale_cycle.completed_at is not None
        # Old aggregates are untouched
        assert stale_cycle.tokens_used == 50_000
        assert stale_cycle.token_cost == Decimal("4.2")

        [created] = added_cycles(db_session)
        assert created.id == cycle_id
        assert created.period_start == PERIOD_START
        assert created.tokens_used == 0

    async def test_concurrent_create_raises_concurrency_error(
        self, db_session, active_subscription
    ):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=None),
        ]
        db_session.flush.side_effect = IntegrityError(
            "INSERT", {}, Exception("uq_billing_cycles_one_active_per_user")
        )
        service = BillingCycleService(db_session)

        with pytest.raises(ConcurrencyError):
            await service.get_or_create_active_cycle("user_123")

        db_session.rollback.assert_awaited_once()


class TestResetTokenCredit:
    """Tests for reset_token_credit."""

    async def test_reset_closes_old_and_opens_new(
        self, db_session, active_subscription, stale_cycle
    ):
        """Stale cycle with $4.20 used: closed without overage, new cycle at zero."""
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=stale_cycle),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.reset_token_credit(active_subscription.id)

        assert stale_cycle.status == BillingCycleStatus.COMPLETED.value
        assert stale_cycle.overage_amount == Decimal("0")

        [created] = added_cycles(db_session)
        assert created.id == cycle_id
        assert created.token_cost == Decimal("0")
        assert created.included_credit == active_subscription.included_token_credit
        assert created.period_start == active_subscription.current_period_start
        assert created.period_end == active_subscription.current_period_end
        db_session.commit.assert_awaited_once()

    async def test_reset_with_no_existing_cycle(self, db_session, active_subscription):
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=None),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.reset_token_credit(active_subscription.id)

        [created] = added_cycles(db_session)
        assert created.id == cycle_id

    async def test_reset_is_idempotent_for_current_period(
        self, db_session, active_subscription, current_cycle
    ):
        """A duplicate reset for the same period leaves the cycle alone."""
        current_cycle.token_cost = Decimal("1.5")
        db_session.execute.side_effect = [
            make_result(scalar=active_subscription),
            make_result(scalar=current_cycle),
        ]
        service = BillingCycleService(db_session)

        cycle_id = await service.reset_token_credit(active_subscription.id)

        assert cycle_id == current_cycle.id
        assert current_cycle.status == BillingCycleStatus.ACTIVE.value
        assert current_cycle.token_cost == Decimal("1.5")
        db_session.add.assert_not_called()

    async def test_reset_unknown_subscription(self, db_session):
        db_session.execute.return_value = make_result(scalar=None)
        service = BillingCycleService(db_session)

        with pytest.raises(SubscriptionNotFoundError):
            await service.reset_token_credit(uuid4())

    async def test_reset_canceled_subscription(self, db_session):
        subscription = create_mock_subscription(status="canceled")
        db_session.execute.return_value = make_result(scalar=subscription)
        service = BillingCycleService(db_session)

        with pytest.raises(SubscriptionInactiveError) as exc_info:
            await service.reset_token_credit(subscription.id)

        assert exc_info.value.status == "canceled"
        db_session.add.assert_not_called()

    async def test_reset_past_due_subscription_allowed(self, db_session):
        subscription = create_mock_subscription(status="past_due")
        db_session.execute.side_effect = [
            make_result(scalar=subscription),
            make_result(scalar=None),
        ]
        service = BillingCycleService(db_session)

        await service.reset_token_credit(subscription.id)

        assert len(added_cycles(db_session)) == 1


class TestCompleteBillingCycle:
    """Tests for complete_billing_cycle."""

    async def test_completes_active_cycle(self, db_session):
        db_session.execute.return_value = make_result(rowcount=1)
        service = BillingCycleService(db_session)

        assert await service.complete_billing_cycle(uuid4(), "in_123") is True
        db_session.commit.assert_awaited_once()

    async def test_already_completed_returns_false(self, db_session):
        cycle = create_mock_cycle(status="completed", stripe_invoice_id="in_first")
        db_session.execute.side_effect = [
            make_result(rowcount=0),
            make_result(scalar=cycle),
        ]
        service = BillingCycleService(db_session)

        assert await service.complete_billing_cycle(cycle.id, "in_second") is False
        # Existing invoice id is kept
        assert cycle.stripe_invoice_id == "in_first"

    async def test_attaches_invoice_when_missing(self, db_session):
        cycle = create_mock_cycle(status="completed")
        db_session.execute.side_effect = [
            make_result(rowcount=0),
            make_result(scalar=cycle),
        ]
        service = BillingCycleService(db_session)

        assert await service.complete_billing_cycle(cycle.id, "in_late") is False
        assert cycle.stripe_invoice_id == "in_late"
        db_session.flush.assert_awaited_once()

    async def test_unknown_cycle_raises(self, db_session):
        db_session.execute.side_effect = [
            make_result(rowcount=0),
            make_result(scalar=None),
        ]
        service = BillingCycleService(db_session)

        with pytest.raises(BillingCycleNotFoundError):
            await service.complete_billing_cycle(uuid4())

        db_session.rollback.assert_awaited_once()


class TestExpiredCycles:
    """Tests for get_expired_active_cycles and get_cycle."""

    async def test_returns_expired_cycles_with_customer(self, db_session):
        cycle = create_mock_cycle(token_cost=Decimal("12.5"))
        db_session.execute.return_value = make_result(rows=[(cycle, "cus_abc")])
        service = BillingCycleService(db_session)

        expired = await service.get_expired_active_cycles(PERIOD_END + timedelta(hours=1))

        assert len(expired) == 1
        assert expired[0].billing_cycle_id == cycle.id
        assert expired[0].overage_amount == Decimal("2.5")
        assert expired[0].stripe_customer_id == "cus_abc"

    async def test_no_expired_cycles(self, db_session):
        service = BillingCycleService(db_session)

        assert await service.get_expired_active_cycles(datetime.now(UTC)) == []

    async def test_get_cycle(self, db_session, current_cycle):
        db_session.execute.return_value = make_result(scalar=current_cycle)
        service = BillingCycleService(db_session)

        data = await service.get_cycle(current_cycle.id)

        assert data.billing_cycle_id == current_cycle.id
        assert data.status == BillingCycleStatus.ACTIVE

    async def test_get_cycle_not_found(self, db_session):
        service = BillingCycleService(db_session)

        with pytest.raises(BillingCycleNotFoundError):
            await service.get_cycle(uuid4())
