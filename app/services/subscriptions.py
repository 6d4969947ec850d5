"""
Subscription Lifecycle Service - Applies payment provider events locally.

NO DICTIONARIES - All operations use strongly typed domain models.

Every handler is idempotent: providers deliver at least once and may replay.
Handlers never reset credit themselves; they report which subscription needs
a reset and the caller runs it after acknowledging the event.
"""

from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import Subscription
from app.exceptions import SubscriptionNotFoundError
from app.models.api import SubscriptionStatus
from app.models.domain import RequestContext, WebhookOutcome
from app.models.events import (
    BillingEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionCreated,
    SubscriptionDeleted,
    SubscriptionSnapshot,
    SubscriptionUpdated,
)
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.services.billing_cycles import BillingCycleService, billable_subscription_query
from app.services.payment_provider import PaymentProvider

logger = get_logger(__name__)


class SubscriptionLifecycleService:
    """Subscription lifecycle handler."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize with a write session and a payment provider."""
        self.session = session
        self.provider = provider

    async def handle_event(
        self, event: BillingEvent, context: RequestContext | None = None
    ) -> WebhookOutcome:
        """
        Apply one provider event.

        Returns whether the event was acted on and, if so, which subscription
        should have its token credit reset.
        """
        with log_context.for_request(context, event_id=event.event_id, event_type=event.kind):
            try:
                if isinstance(event, SubscriptionCreated):
                    outcome = await self.handle_subscription_created(event)
                elif isinstance(event, SubscriptionUpdated):
                    outcome = await self.handle_subscription_updated(event)
                elif isinstance(event, SubscriptionDeleted):
                    outcome = await self.handle_subscription_deleted(event)
                elif isinstance(event, InvoicePaymentSucceeded):
                    outcome = await self.handle_payment_succeeded(event)
                else:
                    outcome = await self.handle_payment_failed(event)
            except Exception:
                await self.session.rollback()
                metrics.webhook_events_total.labels(event_type=event.kind, outcome="error").inc()
                raise

            metrics.webhook_events_total.labels(
                event_type=event.kind, outcome="handled" if outcome.handled else "ignored"
            ).inc()
            return outcome

    async def handle_subscription_created(self, event: SubscriptionCreated) -> WebhookOutcome:
        """Insert (or refresh) the local subscription; a new one gets its first cycle."""
        snapshot = event.subscription

        user_id = snapshot.user_id
        if user_id is None:
            user_id = await self.provider.retrieve_customer_user_id(snapshot.stripe_customer_id)
        if user_id is None:
            logger.warning(
                "subscription_user_unresolved",
                stripe_subscription_id=snapshot.stripe_subscription_id,
                stripe_customer_id=snapshot.stripe_customer_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=False)

        existing = await self._find_by_stripe_id(snapshot.stripe_subscription_id, lock=True)
        if existing is not None:
            period_changed = self._apply_snapshot(existing, snapshot)
            await self.session.commit()
            logger.info(
                "subscription_refreshed",
                subscription_id=str(existing.id),
                period_changed=period_changed,
            )
            return self._outcome(event.event_id, existing, reset=True)

        subscription = Subscription(
            id=uuid4(),
            user_id=user_id,
            stripe_customer_id=snapshot.stripe_customer_id,
            stripe_subscription_id=snapshot.stripe_subscription_id,
            status=snapshot.status.value,
            current_period_start=snapshot.current_period_start,
            current_period_end=snapshot.current_period_end,
            included_token_credit=settings.default_included_credit_usd,
            plan_type="paid",
        )
        self.session.add(subscription)

        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError:
            # Concurrent delivery of the same event inserted it first
            await self.session.rollback()
            logger.info(
                "subscription_create_duplicate",
                stripe_subscription_id=snapshot.stripe_subscription_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=True)

        logger.info(
            "subscription_created",
            subscription_id=str(subscription.id),
            user_id=user_id,
            stripe_subscription_id=snapshot.stripe_subscription_id,
            status=subscription.status,
        )
        return self._outcome(event.event_id, subscription, reset=True)

    async def handle_subscription_updated(self, event: SubscriptionUpdated) -> WebhookOutcome:
        """Mirror status and period; a new period resets credit."""
        snapshot = event.subscription
        subscription = await self._find_by_stripe_id(snapshot.stripe_subscription_id, lock=True)
        if subscription is None:
            logger.warning(
                "subscription_update_unknown",
                stripe_subscription_id=snapshot.stripe_subscription_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=False)

        period_changed = self._apply_snapshot(subscription, snapshot)
        await self.session.commit()

        logger.info(
            "subscription_updated",
            subscription_id=str(subscription.id),
            status=subscription.status,
            period_changed=period_changed,
        )
        return self._outcome(event.event_id, subscription, reset=period_changed)

    async def handle_subscription_deleted(self, event: SubscriptionDeleted) -> WebhookOutcome:
        """Mark canceled. Existing cycles are left for the invoicing batch."""
        snapshot = event.subscription
        subscription = await self._find_by_stripe_id(snapshot.stripe_subscription_id, lock=True)
        if subscription is None:
            logger.warning(
                "subscription_delete_unknown",
                stripe_subscription_id=snapshot.stripe_subscription_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=False)

        subscription.status = SubscriptionStatus.CANCELED.value
        await self.session.commit()

        logger.info("subscription_canceled", subscription_id=str(subscription.id))
        return WebhookOutcome(event_id=event.event_id, handled=True)

    async def handle_payment_succeeded(self, event: InvoicePaymentSucceeded) -> WebhookOutcome:
        """Record the paid invoice on the active cycle and reset credit."""
        if event.stripe_subscription_id is None:
            logger.info("invoice_without_subscription_ignored", invoice_id=event.invoice_id)
            return WebhookOutcome(event_id=event.event_id, handled=False)

        subscription = await self._find_by_stripe_id(event.stripe_subscription_id, lock=True)
        if subscription is None:
            logger.warning(
                "invoice_subscription_unknown",
                invoice_id=event.invoice_id,
                stripe_subscription_id=event.stripe_subscription_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=False)

        cycle = await BillingCycleService(self.session).find_active_cycle(subscription.user_id)
        if (
            cycle is not None
            and cycle.subscription_id == subscription.id
            and cycle.stripe_invoice_id is None
        ):
            cycle.stripe_invoice_id = event.invoice_id
            await self.session.flush()
        await self.session.commit()

        logger.info(
            "invoice_payment_succeeded",
            subscription_id=str(subscription.id),
            invoice_id=event.invoice_id,
        )
        return self._outcome(event.event_id, subscription, reset=True)

    async def handle_payment_failed(self, event: InvoicePaymentFailed) -> WebhookOutcome:
        """Mark the subscription past due."""
        if event.stripe_subscription_id is None:
            return WebhookOutcome(event_id=event.event_id, handled=False)

        subscription = await self._find_by_stripe_id(event.stripe_subscription_id, lock=True)
        if subscription is None:
            logger.warning(
                "invoice_subscription_unknown",
                invoice_id=event.invoice_id,
                stripe_subscription_id=event.stripe_subscription_id,
            )
            return WebhookOutcome(event_id=event.event_id, handled=False)

        subscription.status = SubscriptionStatus.PAST_DUE.value
        await self.session.commit()

        logger.warning(
            "invoice_payment_failed",
            subscription_id=str(subscription.id),
            invoice_id=event.invoice_id,
        )
        return WebhookOutcome(event_id=event.event_id, handled=True)

    async def cancel_user_subscription(self, user_id: str) -> tuple[str, str]:
        """
        Cancel the user's billable subscription at the provider.

        The local mirror is updated by the resulting subscription.deleted
        event; the status is also written here so the user is treated as
        free tier immediately.

        Returns:
            (stripe_subscription_id, provider status)

        Raises:
            SubscriptionNotFoundError: If the user has no billable subscription
            PaymentProviderError: If the provider keeps failing
        """
        result = await self.session.execute(billable_subscription_query(user_id))
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)

        status = await self.provider.cancel_subscription(subscription.stripe_subscription_id)
        if status == SubscriptionStatus.CANCELED.value:
            subscription.status = status
            await self.session.commit()

        logger.info(
            "subscription_cancel_requested",
            user_id=user_id,
            stripe_subscription_id=subscription.stripe_subscription_id,
            status=status,
        )
        return subscription.stripe_subscription_id, status

    async def create_portal_session(self, user_id: str, return_url: str | None = None) -> str:
        """
        Create a billing portal session for the user's Stripe customer.

        Raises:
            SubscriptionNotFoundError: If the user has never subscribed
            PaymentProviderError: If the provider keeps failing
        """
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        subscription = result.scalar_one_or_none()
        if subscription is None:
            raise SubscriptionNotFoundError(user_id)

        return await self.provider.create_billing_portal_session(
            subscription.stripe_customer_id,
            return_url or settings.billing_portal_return_url,
        )

    # ========================================================================
    # Private helpers
    # ========================================================================

    @staticmethod
    def _apply_snapshot(subscription: Subscription, snapshot: SubscriptionSnapshot) -> bool:
        """Copy status and period from the event; True if the period start moved."""
        period_changed = subscription.current_period_start != snapshot.current_period_start
        subscription.status = snapshot.status.value
        subscription.current_period_start = snapshot.current_period_start
        subscription.current_period_end = snapshot.current_period_end
        return period_changed

    @staticmethod
    def _outcome(event_id: str, subscription: Subscription, reset: bool) -> WebhookOutcome:
        needs_reset = reset and subscription.status != SubscriptionStatus.CANCELED.value
        return WebhookOutcome(
            event_id=event_id,
            handled=True,
            credit_reset_subscription_id=subscription.id if needs_reset else None,
        )

    async def _find_by_stripe_id(
        self, stripe_subscription_id: str, lock: bool = False
    ) -> Subscription | None:
        stmt = select(Subscription).where(
            Subscription.stripe_subscription_id == stripe_subscription_id
        )
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()
