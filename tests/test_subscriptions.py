"""
Tests for the subscription lifecycle handler.
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import IntegrityError

from app.db.models import Subscription
from app.exceptions import PaymentProviderError, SubscriptionNotFoundError
from app.models.api import SubscriptionStatus
from app.models.events import (
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
)
from app.services.billing_cycles import BillingCycleService
from app.services.subscriptions import SubscriptionLifecycleService
from tests.conftest import PERIOD_END, PERIOD_START, create_mock_cycle, make_result


def make_snapshot(**overrides) -> SubscriptionSnapshot:
    values = {
        "stripe_subscription_id": "sub_test123",
        "stripe_customer_id": "cus_test123",
        "status": SubscriptionStatus.ACTIVE,
        "current_period_start": PERIOD_START,
        "current_period_end": PERIOD_END,
        "user_id": "user_123",
    }
    values.update(overrides)
    return SubscriptionSnapshot(**values)


@pytest.fixture
def service(db_session, mock_provider):
    return SubscriptionLifecycleService(db_session, mock_provider)


class TestSubscriptionCreated:
    """Tests for customer.subscription.created."""

    async def test_inserts_subscription_and_requests_reset(self, service, db_session):
        outcome = await service.handle_event(
            SubscriptionCreated(event_id="evt_1", subscription=make_snapshot())
        )

        created = db_session.add.call_args.args[0]
        assert isinstance(created, Subscription)
        assert created.user_id == "user_123"
        assert created.stripe_subscription_id == "sub_test123"
        assert created.status == "active"
        assert created.included_token_credit == Decimal("10")
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id == created.id
        db_session.commit.assert_awaited_once()

    async def test_user_resolved_from_customer(self, service, db_session, mock_provider):
        mock_provider.retrieve_customer_user_id.return_value = "user_from_customer"

        outcome = await service.handle_event(
            SubscriptionCreated(event_id="evt_2", subscription=make_snapshot(user_id=None))
        )

        mock_provider.retrieve_customer_user_id.assert_awaited_once_with("cus_test123")
        assert db_session.add.call_args.args[0].user_id == "user_from_customer"
        assert outcome.handled is True

    async def test_unresolved_user_is_ignored(self, service, db_session, mock_provider):
        mock_provider.retrieve_customer_user_id.return_value = None

        outcome = await service.handle_event(
            SubscriptionCreated(event_id="evt_3", subscription=make_snapshot(user_id=None))
        )

        assert outcome.handled is False
        assert outcome.credit_reset_subscription_id is None
        db_session.add.assert_not_called()

    async def test_replay_refreshes_existing(self, service, db_session, active_subscription):
        """A replayed created event does not insert a second row."""
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            SubscriptionCreated(event_id="evt_1", subscription=make_snapshot())
        )

        db_session.add.assert_not_called()
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id == active_subscription.id

    async def test_concurrent_insert_is_tolerated(self, service, db_session):
        db_session.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate"))

        outcome = await service.handle_event(
            SubscriptionCreated(event_id="evt_4", subscription=make_snapshot())
        )

        db_session.rollback.assert_awaited_once()
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id is None


class TestSubscriptionUpdated:
    """Tests for customer.subscription.updated."""

    async def test_renewal_requests_reset(self, service, db_session, active_subscription):
        next_start = PERIOD_END
        next_end = PERIOD_END + timedelta(days=31)
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            SubscriptionUpdated(
                event_id="evt_5",
                subscription=make_snapshot(
                    current_period_start=next_start, current_period_end=next_end
                ),
            )
        )

        assert active_subscription.current_period_start == next_start
        assert active_subscription.current_period_end == next_end
        assert outcome.credit_reset_subscription_id == active_subscription.id

    async def test_replayed_renewal_applies_once(self, service, db_session, active_subscription):
        next_start = PERIOD_END
        next_end = PERIOD_END + timedelta(days=31)
        db_session.execute.return_value = make_result(scalar=active_subscription)
        event = SubscriptionUpdated(
            event_id="evt_5",
            subscription=make_snapshot(
                current_period_start=next_start, current_period_end=next_end
            ),
        )

        first = await service.handle_event(event)
        second = await service.handle_event(event)

        assert first.credit_reset_subscription_id == active_subscription.id
        assert second.handled is True
        assert second.credit_reset_subscription_id is None
        assert active_subscription.current_period_start == next_start
        assert active_subscription.current_period_end == next_end
        assert active_subscription.status == "active"

    async def test_pause_recorded(self, service, db_session, active_subscription):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            SubscriptionUpdated(
                event_id="evt_8",
                subscription=make_snapshot(status=SubscriptionStatus.PAUSED),
            )
        )

        assert active_subscription.status == "paused"
        assert outcome.credit_reset_subscription_id is None

    async def test_status_change_without_new_period(
        self, service, db_session, active_subscription
    ):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            SubscriptionUpdated(
                event_id="evt_6",
                subscription=make_snapshot(status=SubscriptionStatus.PAST_DUE),
            )
        )

        assert active_subscription.status == "past_due"
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id is None

    async def test_unknown_subscription_ignored(self, service, db_session):
        outcome = await service.handle_event(
            SubscriptionUpdated(event_id="evt_7", subscription=make_snapshot())
        )

        assert outcome.handled is False
        db_session.commit.assert_not_called()


class TestSubscriptionDeleted:
    async def test_marks_canceled(self, service, db_session, active_subscription):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            SubscriptionDeleted(
                event_id="evt_8",
                subscription=make_snapshot(status=SubscriptionStatus.CANCELED),
            )
        )

        assert active_subscription.status == "canceled"
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id is None


class TestInvoiceEvents:
    async def test_payment_succeeded_attaches_invoice(
        self, service, db_session, active_subscription
    ):
        cycle = create_mock_cycle(subscription_id=active_subscription.id)
        db_session.execute.return_value = make_result(scalar=active_subscription)

        with patch.object(
            BillingCycleService, "find_active_cycle", new_callable=AsyncMock
        ) as mock_find:
            mock_find.return_value = cycle

            outcome = await service.handle_event(
                InvoicePaymentSucceeded(
                    event_id="evt_9", invoice_id="in_renewal", stripe_subscription_id="sub_test123"
                )
            )

        assert cycle.stripe_invoice_id == "in_renewal"
        assert outcome.credit_reset_subscription_id == active_subscription.id

    async def test_payment_succeeded_keeps_existing_invoice(
        self, service, db_session, active_subscription
    ):
        cycle = create_mock_cycle(
            subscription_id=active_subscription.id, stripe_invoice_id="in_first"
        )
        db_session.execute.return_value = make_result(scalar=active_subscription)

        with patch.object(
            BillingCycleService, "find_active_cycle", new_callable=AsyncMock
        ) as mock_find:
            mock_find.return_value = cycle
            await service.handle_event(
                InvoicePaymentSucceeded(
                    event_id="evt_10", invoice_id="in_second", stripe_subscription_id="sub_test123"
                )
            )

        assert cycle.stripe_invoice_id == "in_first"

    async def test_payment_succeeded_without_subscription(self, service, db_session):
        outcome = await service.handle_event(
            InvoicePaymentSucceeded(
                event_id="evt_11", invoice_id="in_oneoff", stripe_subscription_id=None
            )
        )

        assert outcome.handled is False
        db_session.execute.assert_not_called()

    async def test_payment_failed_sets_past_due(self, service, db_session, active_subscription):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        outcome = await service.handle_event(
            InvoicePaymentFailed(
                event_id="evt_12", invoice_id="in_failed", stripe_subscription_id="sub_test123"
            )
        )

        assert active_subscription.status == "past_due"
        assert outcome.handled is True
        assert outcome.credit_reset_subscription_id is None

    async def test_handler_error_rolls_back(self, service, db_session):
        db_session.execute.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError):
            await service.handle_event(
                InvoicePaymentFailed(
                    event_id="evt_13", invoice_id="in_x", stripe_subscription_id="sub_test123"
                )
            )

        db_session.rollback.assert_awaited_once()


class TestUserActions:
    """Cancel and billing portal."""

    async def test_cancel_user_subscription(
        self, service, db_session, mock_provider, active_subscription
    ):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        subscription_id, status = await service.cancel_user_subscription("user_123")

        mock_provider.cancel_subscription.assert_awaited_once_with("sub_test123")
        assert subscription_id == "sub_test123"
        assert status == "canceled"
        assert active_subscription.status == "canceled"
        db_session.commit.assert_awaited_once()

    async def test_cancel_without_subscription(self, service, mock_provider):
        with pytest.raises(SubscriptionNotFoundError):
            await service.cancel_user_subscription("user_404")
        mock_provider.cancel_subscription.assert_not_called()

    async def test_cancel_provider_failure_leaves_status(
        self, service, db_session, mock_provider, active_subscription
    ):
        db_session.execute.return_value = make_result(scalar=active_subscription)
        mock_provider.cancel_subscription.side_effect = PaymentProviderError("down", 503)

        with pytest.raises(PaymentProviderError):
            await service.cancel_user_subscription("user_123")

        assert active_subscription.status == "active"

    async def test_portal_session(self, service, db_session, mock_provider, active_subscription):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        url = await service.create_portal_session("user_123")

        assert url == "https://billing.stripe.com/session/test"
        mock_provider.create_billing_portal_session.assert_awaited_once_with(
            "cus_test123", "http://localhost:3000/billing"
        )

    async def test_portal_session_custom_return_url(
        self, service, db_session, mock_provider, active_subscription
    ):
        db_session.execute.return_value = make_result(scalar=active_subscription)

        await service.create_portal_session("user_123", "https://app.example.com/settings")

        mock_provider.create_billing_portal_session.assert_awaited_once_with(
            "cus_test123", "https://app.example.com/settings"
        )

    async def test_portal_without_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.create_portal_session("user_404")
