"""
FastAPI Dependencies - Service authentication and request context.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from app.config import settings
from app.db.session import get_read_db, get_write_db
from app.exceptions import PaymentProviderError
from app.models.domain import RequestContext
from app.services.limits import LimitService
from app.services.payment_provider import PaymentProvider
from app.services.stripe_provider import get_stripe_provider
from app.services.usage import UsageService

logger = get_logger(__name__)

REQUEST_CONTEXT_STATE_KEY = "request_context"


async def verify_api_key(
    x_api_key: str | None = Header(None, description="Service API key"),
) -> None:
    """
    FastAPI dependency to validate the service-to-service key.

    Accepts: X-API-Key: {api_key}
    Rejects with 401 when the header is missing or wrong, and with 503
    when no key is configured.
    """
    if not settings.api_key:
        logger.error("api_key_not_configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API authentication is not configured",
        )

    if x_api_key is None or not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("api_key_rejected", has_api_key=x_api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )


def get_request_context(request: Request) -> RequestContext:
    """Request context created by the request middleware (or a fresh one)."""
    context = getattr(request.state, REQUEST_CONTEXT_STATE_KEY, None)
    if isinstance(context, RequestContext):
        return context
    return RequestContext()


def get_payment_provider() -> PaymentProvider:
    """
    Process-wide payment provider.

    Raises 503 when the provider isn't configured.
    """
    try:
        return get_stripe_provider()
    except PaymentProviderError as exc:
        logger.error("payment_provider_unavailable", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider is not configured",
        ) from exc


def get_usage_service(db: AsyncSession = Depends(get_write_db)) -> UsageService:
    """Usage service on the primary database."""
    return UsageService(db)


def get_limit_service(db: AsyncSession = Depends(get_read_db)) -> LimitService:
    """Limit service on the read replica (falls back to primary)."""
    return LimitService(db)
