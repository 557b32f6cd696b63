"""
FastAPI Dependencies - Authentication, services and rate limiting.

NO DICTIONARIES - All dependencies return typed objects.
"""

import secrets

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.db.session import get_write_db, get_write_session_factory
from metering.exceptions import AuthenticationError
from metering.observability.logging import get_logger
from metering.services.entitlements import EntitlementService
from metering.services.rate_limiter import check_rate_limit, rate_limiter
from metering.services.stripe_provider import StripeProvider
from metering.services.usage_journal import UsageJournal

logger = get_logger(__name__)

# ============================================================================
# API Key Authentication (for the application's request handlers)
# ============================================================================


def validate_api_key(api_key: str | None) -> None:
    """
    Compare a presented key with the configured internal key in constant time.

    Raises:
        AuthenticationError: key missing, not configured, or wrong
    """
    if not settings.internal_api_key:
        raise AuthenticationError("Internal API key not configured")
    if not api_key:
        raise AuthenticationError("Missing API key")
    if not secrets.compare_digest(api_key.encode(), settings.internal_api_key.encode()):
        raise AuthenticationError("Invalid API key")


async def require_api_key(
    x_api_key: str | None = Header(None, description="Internal API key"),
) -> None:
    """
    FastAPI dependency to validate the X-API-Key header.

    Raises:
        HTTPException 401 if invalid
    """
    try:
        validate_api_key(x_api_key)
    except AuthenticationError as exc:
        logger.warning("api_key_rejected", reason=exc.message)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "ApiKey"},
        ) from exc


# ============================================================================
# Services
# ============================================================================


def get_usage_journal() -> UsageJournal:
    """Journal writing through its own sessions from the primary database."""
    return UsageJournal(get_write_session_factory())


def get_entitlement_service(
    db: AsyncSession = Depends(get_write_db),
    journal: UsageJournal = Depends(get_usage_journal),
) -> EntitlementService:
    return EntitlementService(db, journal=journal)


def get_payment_provider() -> StripeProvider:
    """
    Stripe provider built from settings.

    Raises:
        HTTPException 503 if Stripe is not configured
    """
    if not settings.stripe_api_key or not settings.stripe_webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return StripeProvider.from_settings()


# ============================================================================
# Rate limiting for this service's own user-initiated endpoints
# ============================================================================


def client_ip(request: Request) -> str | None:
    """First hop of X-Forwarded-For, else the socket peer."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


async def enforce_rate_limit(
    request: Request,
    user_id: str | None,
    service: EntitlementService,
) -> None:
    """
    Count the request against the caller's bucket.

    Raises:
        HTTPException 429 with Retry-After when the window is exhausted
    """
    decision = await check_rate_limit(
        rate_limiter,
        user_id=user_id,
        client_ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        loader=service.get_rate_limit,
    )
    if not decision.allowed:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(decision.retry_after_seconds or 1)},
        )
