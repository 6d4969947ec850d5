"""
Overage Billing Service - Hourly batch that closes expired cycles.

NO DICTIONARIES - All operations use strongly typed domain models.

Each expired cycle is settled independently: a failure is logged and
counted, the cycle stays active, and the next run picks it up again.
Provider calls are made once per run; idempotency keys derived from the
cycle id, plus a lookup of pending items tagged with the cycle, keep a
re-run from billing the same overage twice.
"""

import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.models import utc_now
from app.models.api import OverageBillingResult
from app.models.domain import ExpiredCycle, RequestContext
from app.observability.logging import log_context
from app.observability.metrics import metrics
from app.observability.tracing import trace_operation
from app.services.billing_cycles import BillingCycleService
from app.services.payment_provider import InvoiceItemRequest, InvoiceRequest, PaymentProvider

logger = get_logger(__name__)

OVERAGE_CURRENCY = "usd"


def overage_cents(amount: Decimal) -> int:
    """USD to whole cents, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def should_invoice(amount: Decimal, threshold: Decimal | None = None) -> bool:
    """Only overage strictly above the minimum is worth an invoice."""
    minimum = settings.min_overage_invoice_usd if threshold is None else threshold
    return amount > minimum


def overage_description(cycle: ExpiredCycle) -> str:
    """Invoice line description for a cycle's overage."""
    return (
        "Synapse token usage overage - billing period "
        f"{cycle.period_start.date().isoformat()} to {cycle.period_end.date().isoformat()}"
    )


class OverageBillingService:
    """Overage invoicing engine."""

    def __init__(self, session: AsyncSession, provider: PaymentProvider) -> None:
        """Initialize with a write session and a payment provider."""
        self.session = session
        self.provider = provider
        self.cycles = BillingCycleService(session)

    async def process_overage_billing(
        self, now: datetime | None = None, context: RequestContext | None = None
    ) -> OverageBillingResult:
        """
        Settle every active cycle whose period has ended.

        Returns counts of processed, invoiced and failed cycles. Never raises
        for a single cycle's failure.
        """
        cutoff = now or utc_now()
        started = time.perf_counter()

        with log_context.for_request(context, operation="overage_billing"):
            with trace_operation("overage_billing_batch") as span:
                expired = await self.cycles.get_expired_active_cycles(cutoff)
                logger.info("overage_billing_started", expired_cycles=len(expired))

                invoiced = 0
                errors = 0
                for cycle in expired:
                    try:
                        if await self._settle_cycle(cycle):
                            invoiced += 1
                    except Exception as exc:
                        errors += 1
                        await self.session.rollback()
                        metrics.record_overage_cycle("error")
                        metrics.record_error(type(exc).__name__, "overage_billing")
                        logger.error(
                            "overage_cycle_failed",
                            billing_cycle_id=str(cycle.billing_cycle_id),
                            user_id=cycle.user_id,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )

                result = OverageBillingResult(
                    processed=len(expired), invoiced=invoiced, errors=errors
                )
                span.set_attribute("overage.processed", result.processed)
                span.set_attribute("overage.invoiced", result.invoiced)
                span.set_attribute("overage.errors", result.errors)

            metrics.overage_batch_duration_seconds.observe(time.perf_counter() - started)
            logger.info(
                "overage_billing_finished",
                processed=result.processed,
                invoiced=result.invoiced,
                errors=result.errors,
                duration_ms=context.elapsed_ms() if context else None,
            )
            return result

    async def _settle_cycle(self, cycle: ExpiredCycle) -> bool:
        """Close one expired cycle, invoicing its overage if above the minimum."""
        amount_cents = overage_cents(cycle.overage_amount)
        if not should_invoice(cycle.overage_amount) or amount_cents == 0:
            await self.cycles.complete_billing_cycle(cycle.billing_cycle_id)
            metrics.record_overage_cycle("closed")
            logger.info(
                "overage_below_minimum",
                billing_cycle_id=str(cycle.billing_cycle_id),
                overage_amount=str(cycle.overage_amount),
            )
            return False

        cycle_key = str(cycle.billing_cycle_id)

        pending_item_id = await self.provider.find_pending_invoice_item(
            cycle.stripe_customer_id, cycle.billing_cycle_id
        )
        if pending_item_id is None:
            await self.provider.create_invoice_item(
                InvoiceItemRequest(
                    customer_id=cycle.stripe_customer_id,
                    billing_cycle_id=cycle.billing_cycle_id,
                    amount_cents=amount_cents,
                    currency=OVERAGE_CURRENCY,
                    description=overage_description(cycle),
                    idempotency_key=f"overage-item-{cycle_key}",
                )
            )
        else:
            logger.info(
                "overage_invoice_item_reused",
                billing_cycle_id=cycle_key,
                invoice_item_id=pending_item_id,
            )
        invoice = await self.provider.create_invoice(
            InvoiceRequest(
                customer_id=cycle.stripe_customer_id,
                billing_cycle_id=cycle.billing_cycle_id,
                idempotency_key=f"overage-invoice-{cycle_key}",
            )
        )
        await self.cycles.complete_billing_cycle(cycle.billing_cycle_id, invoice.invoice_id)

        metrics.record_overage_cycle("invoiced", amount_cents)
        logger.info(
            "overage_invoiced",
            billing_cycle_id=cycle_key,
            user_id=cycle.user_id,
            amount_cents=amount_cents,
            stripe_invoice_id=invoice.invoice_id,
        )
        return True
