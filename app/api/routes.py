"""
API Routes - FastAPI endpoints for usage metering and billing operations.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from datetime import UTC, datetime
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.api.dependencies import (
    get_limit_service,
    get_payment_provider,
    get_request_context,
    get_usage_service,
    verify_api_key,
)
from app.db.session import get_read_db, get_write_db
from app.exceptions import (
    BillingCycleNotFoundError,
    ConcurrencyError,
    DataIntegrityError,
    InvalidEventError,
    PaymentProviderError,
    SubscriptionNotFoundError,
    WebhookVerificationError,
)
from app.jobs import run_credit_reset
from app.models.api import (
    BillingPortalRequest,
    BillingPortalResponse,
    CancelSubscriptionResponse,
    ConversationAllowanceRequest,
    ConversationAllowanceResponse,
    ConversationUsageResponse,
    CurrentCycleUsageResponse,
    CycleAggregateResponse,
    HealthResponse,
    OverageBillingResult,
    RecordUsageRequest,
    RecordUsageResponse,
    SubscriptionStatus,
    TokenLimitCheckRequest,
    TokenLimitCheckResponse,
    UsageRecordListResponse,
    UsageStatsResponse,
    WebhookResponse,
)
from app.models.domain import RequestContext, UsageIntent
from app.services.limits import LimitService
from app.services.overage import OverageBillingService
from app.services.payment_provider import PaymentProvider
from app.services.pricing import calculate_token_cost
from app.services.subscriptions import SubscriptionLifecycleService
from app.services.usage import UsageService

logger = get_logger(__name__)

router = APIRouter()


# =============================================================================
# Usage Endpoints
# =============================================================================


@router.post(
    "/v1/usage/record",
    response_model=RecordUsageResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(verify_api_key)],
)
async def record_usage(
    request: RecordUsageRequest,
    service: UsageService = Depends(get_usage_service),
    context: RequestContext = Depends(get_request_context),
) -> RecordUsageResponse:
    """
    Record one completed chat turn.

    Cost is computed from the pricing table when the caller doesn't supply it.
    Write operation - requires primary database.
    """
    token_cost = request.token_cost
    if token_cost is None:
        token_cost = calculate_token_cost(
            request.model,
            request.input_tokens,
            request.output_tokens,
            request.thinking_tokens,
        )

    try:
        intent = UsageIntent(
            user_id=request.user_id,
            conversation_id=request.conversation_id,
            node_id=request.node_id,
            model=request.model,
            tokens_used=request.tokens_used,
            token_cost=token_cost,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc

    try:
        usage = await service.record_usage(intent, context)
    except ConcurrencyError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Concurrent billing cycle update, retry the request",
        ) from exc
    except DataIntegrityError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Database integrity error",
        ) from exc

    return RecordUsageResponse(
        usage_record_id=usage.usage_record_id,
        billing_cycle_id=usage.billing_cycle_id,
        tier=usage.tier,
        tokens_used=usage.tokens_used,
        token_cost=usage.token_cost,
    )


@router.get(
    "/v1/usage/conversations/{conversation_id}",
    response_model=ConversationUsageResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_conversation_usage(
    conversation_id: str,
    db: AsyncSession = Depends(get_read_db),
) -> ConversationUsageResponse:
    """Usage records and totals for one conversation."""
    return await UsageService(db).get_conversation_usage(conversation_id)


@router.get(
    "/v1/usage/{user_id}/stats",
    response_model=UsageStatsResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_usage_stats(
    user_id: str,
    service: LimitService = Depends(get_limit_service),
) -> UsageStatsResponse:
    """Tier summary for a user."""
    return await service.get_usage_stats(user_id)


@router.get(
    "/v1/usage/{user_id}/records",
    response_model=UsageRecordListResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_usage_records(
    user_id: str,
    limit: int = Query(100, ge=1, le=1000),
    db: AsyncSession = Depends(get_read_db),
) -> UsageRecordListResponse:
    """Most recent usage records for a user."""
    records = await UsageService(db).get_user_usage_records(user_id, limit=limit)
    return UsageRecordListResponse(records=records)


@router.get(
    "/v1/usage/{user_id}/cycle",
    response_model=CurrentCycleUsageResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_current_cycle_usage(
    user_id: str,
    db: AsyncSession = Depends(get_read_db),
) -> CurrentCycleUsageResponse:
    """The user's active billing cycle and its usage records."""
    usage = await UsageService(db).get_current_cycle_usage(user_id)
    return usage or CurrentCycleUsageResponse()


# =============================================================================
# Limit Endpoints
# =============================================================================


@router.post(
    "/v1/limits/tokens/check",
    response_model=TokenLimitCheckResponse,
    dependencies=[Depends(verify_api_key)],
)
async def check_token_limit(
    request: TokenLimitCheckRequest,
    service: LimitService = Depends(get_limit_service),
) -> TokenLimitCheckResponse:
    """
    Advisory admission check before a chat request.

    Read operation - uses the replica when configured.
    """
    return await service.check_token_limit(request.user_id, request.requested_tokens)


@router.post(
    "/v1/limits/conversations/check",
    response_model=ConversationAllowanceResponse,
    dependencies=[Depends(verify_api_key)],
)
async def check_conversation_allowance(
    request: ConversationAllowanceRequest,
    service: LimitService = Depends(get_limit_service),
) -> ConversationAllowanceResponse:
    """Whether the user may start another conversation."""
    return await service.check_conversation_allowance(request.user_id)


# =============================================================================
# Billing Endpoints
# =============================================================================


@router.get(
    "/v1/billing/cycles/{billing_cycle_id}/aggregate",
    response_model=CycleAggregateResponse,
    dependencies=[Depends(verify_api_key)],
)
async def get_cycle_aggregate(
    billing_cycle_id: UUID,
    db: AsyncSession = Depends(get_read_db),
) -> CycleAggregateResponse:
    """Totals and per-model breakdown for a billing cycle."""
    try:
        return await UsageService(db).aggregate_usage_by_cycle(billing_cycle_id)
    except BillingCycleNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Billing cycle not found",
        ) from exc


@router.post(
    "/v1/billing/overage/run",
    response_model=OverageBillingResult,
    dependencies=[Depends(verify_api_key)],
)
async def run_overage_billing(
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    context: RequestContext = Depends(get_request_context),
) -> OverageBillingResult:
    """
    Run the overage invoicing batch once.

    Same operation as the hourly job; per-cycle failures are reported in
    the error count, not as an HTTP error.
    """
    return await OverageBillingService(db, provider).process_overage_billing(context=context)


@router.post(
    "/v1/billing/subscriptions/{user_id}/cancel",
    response_model=CancelSubscriptionResponse,
    dependencies=[Depends(verify_api_key)],
)
async def cancel_subscription(
    user_id: str,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> CancelSubscriptionResponse:
    """Cancel the user's subscription immediately."""
    service = SubscriptionLifecycleService(db, provider)
    try:
        stripe_subscription_id, provider_status = await service.cancel_user_subscription(user_id)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active subscription",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment provider error: {exc.message}",
        ) from exc

    return CancelSubscriptionResponse(
        stripe_subscription_id=stripe_subscription_id,
        status=SubscriptionStatus(provider_status),
    )


@router.post(
    "/v1/billing/portal",
    response_model=BillingPortalResponse,
    dependencies=[Depends(verify_api_key)],
)
async def create_billing_portal_session(
    request: BillingPortalRequest,
    db: AsyncSession = Depends(get_read_db),
    provider: PaymentProvider = Depends(get_payment_provider),
) -> BillingPortalResponse:
    """Create a self-service billing portal session."""
    service = SubscriptionLifecycleService(db, provider)
    try:
        url = await service.create_portal_session(request.user_id, request.return_url)
    except SubscriptionNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No billing customer for user",
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Payment provider error: {exc.message}",
        ) from exc

    return BillingPortalResponse(url=url)


@router.post("/v1/billing/webhooks/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_write_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    context: RequestContext = Depends(get_request_context),
) -> WebhookResponse:
    """
    Handle Stripe webhook events.

    Authenticated by the Stripe signature, not the API key. Credit resets
    triggered by an event run after the response is sent.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        webhook = await provider.verify_webhook(payload, signature)

        if webhook.event is None:
            logger.info(
                "stripe_webhook_ignored",
                event_type=webhook.event_type,
                event_id=webhook.event_id,
            )
            return WebhookResponse(status="ignored", event_id=webhook.event_id)

        service = SubscriptionLifecycleService(db, provider)
        outcome = await service.handle_event(webhook.event, context)

    except WebhookVerificationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook signature",
        ) from exc

    except InvalidEventError as exc:
        logger.error("stripe_webhook_invalid_event", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid event payload: {exc.message}",
        ) from exc

    except PaymentProviderError as exc:
        # Not acknowledged, so the provider redelivers
        logger.error("stripe_webhook_provider_error", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc

    if outcome.credit_reset_subscription_id is not None:
        background_tasks.add_task(run_credit_reset, outcome.credit_reset_subscription_id, context)

    return WebhookResponse(
        status="success" if outcome.handled else "ignored",
        event_id=outcome.event_id,
    )


# =============================================================================
# Health
# =============================================================================


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        await db.execute(text("SELECT 1"))

        return HealthResponse(
            status="healthy",
            database="connected",
            timestamp=datetime.now(UTC).isoformat(),
        )

    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": datetime.now(UTC).isoformat(),
            },
        ) from exc
