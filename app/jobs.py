"""
Scheduled Jobs - Entry points for cron and background tasks.

Each job opens its own write session and request context, so it can run
outside an HTTP request (cron, CLI, FastAPI background task).
"""

from datetime import datetime
from uuid import UUID

from structlog import get_logger

from app.db.session import get_write_session
from app.exceptions import SubscriptionInactiveError, SubscriptionNotFoundError
from app.models.api import OverageBillingResult
from app.models.domain import ExpiredCycle, RequestContext
from app.services.billing_cycles import BillingCycleService
from app.services.overage import OverageBillingService
from app.services.payment_provider import PaymentProvider
from app.services.stripe_provider import get_stripe_provider
from app.services.usage import UsageService

logger = get_logger(__name__)


async def run_overage_billing_job(
    provider: PaymentProvider | None = None, now: datetime | None = None
) -> OverageBillingResult:
    """Run one overage invoicing batch (hourly)."""
    context = RequestContext()
    async with get_write_session() as session:
        service = OverageBillingService(session, provider or get_stripe_provider())
        return await service.process_overage_billing(now=now, context=context)


async def list_expired_cycles(now: datetime | None = None) -> list[ExpiredCycle]:
    """Expired active cycles the next overage batch would settle."""
    async with get_write_session() as session:
        return await BillingCycleService(session).get_expired_active_cycles(now)


async def run_usage_retention_job(retention_days: int | None = None) -> int:
    """Delete usage records past the retention window (weekly)."""
    async with get_write_session() as session:
        return await UsageService(session).cleanup_old_usage_records(retention_days)


async def run_credit_reset(subscription_id: UUID, context: RequestContext | None = None) -> None:
    """
    Reset token credit for a subscription, scheduled after a webhook.

    Subscriptions canceled or removed since the event was handled are
    skipped.
    """
    async with get_write_session() as session:
        try:
            billing_cycle_id = await BillingCycleService(session).reset_token_credit(
                subscription_id, context
            )
        except (SubscriptionNotFoundError, SubscriptionInactiveError) as exc:
            logger.info(
                "credit_reset_skipped",
                subscription_id=str(subscription_id),
                reason=str(exc),
            )
            return

    logger.info(
        "credit_reset_completed",
        subscription_id=str(subscription_id),
        billing_cycle_id=str(billing_cycle_id),
    )
