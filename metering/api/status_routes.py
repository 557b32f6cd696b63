"""
Status API routes - Liveness for load balancers and a dependency report for status pages.

Both endpoints are public.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum

import httpx
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.db.session import get_read_db, get_write_session
from metering.models.api import HealthResponse
from metering.observability.logging import get_logger

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms
STRIPE_API_URL = "https://api.stripe.com/v1"
STATUS_CACHE_TTL = 10.0  # seconds


class StatusLevel(str, Enum):
    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"


_SEVERITY = {StatusLevel.OPERATIONAL: 0, StatusLevel.DEGRADED: 1, StatusLevel.OUTAGE: 2}


class ProviderStatus(BaseModel):
    """Outcome of one dependency check."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """GET /v1/status response."""

    service: str = "metering"
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


# Monotonic time of the last report, keyed by endpoint
_status_cache: dict[str, tuple[float, ServiceStatusResponse]] = {}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


async def _check_dependency(dependency: str, call: Callable[[], Awaitable[str | None]]) -> ProviderStatus:
    """
    Time `call` and grade the dependency.

    `call` returns a problem description when the dependency answered but
    looked wrong, and raises when it could not be reached at all.
    """
    checked_at = _now_iso()
    started = time.perf_counter()

    try:
        problem = await asyncio.wait_for(call(), timeout=CHECK_TIMEOUT)
    except (TimeoutError, httpx.TimeoutException):
        return ProviderStatus(
            status=StatusLevel.OUTAGE,
            latency_ms=int(CHECK_TIMEOUT * 1000),
            last_check=checked_at,
            message="Timeout",
        )
    except Exception as e:
        logger.warning("dependency_check_failed", dependency=dependency, error=str(e))
        return ProviderStatus(
            status=StatusLevel.OUTAGE, last_check=checked_at, message="Connection failed"
        )

    latency_ms = int((time.perf_counter() - started) * 1000)
    if problem is None and latency_ms > DEGRADED_LATENCY_THRESHOLD:
        problem = "High latency"
    return ProviderStatus(
        status=StatusLevel.DEGRADED if problem else StatusLevel.OPERATIONAL,
        latency_ms=latency_ms,
        last_check=checked_at,
        message=problem,
    )


async def _select_one() -> str | None:
    async with get_write_session() as db:
        await db.execute(text("SELECT 1"))
    return None


async def _reach_stripe() -> str | None:
    async with httpx.AsyncClient(timeout=CHECK_TIMEOUT) as client:
        # Sent without credentials; a 401 still proves the API is up
        response = await client.get(STRIPE_API_URL)
    if response.status_code in (200, 401):
        return None
    return f"Unexpected status: {response.status_code}"


async def check_postgresql() -> ProviderStatus:
    return await _check_dependency("postgresql", _select_one)


async def check_stripe() -> ProviderStatus:
    if not settings.stripe_api_key:
        return ProviderStatus(
            status=StatusLevel.OPERATIONAL,
            latency_ms=0,
            last_check=_now_iso(),
            message="Not configured",
        )
    return await _check_dependency("stripe", _reach_stripe)


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """The worst provider status."""
    return max(
        (p.status for p in providers.values()),
        key=_SEVERITY.__getitem__,
        default=StatusLevel.OPERATIONAL,
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(db: AsyncSession = Depends(get_read_db)) -> HealthResponse:
    """Liveness: 200 while the database answers, 503 otherwise."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
                "timestamp": _now_iso(),
            },
        ) from exc

    return HealthResponse(status="healthy", database="connected", timestamp=_now_iso())


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status() -> ServiceStatusResponse:
    """
    Dependency report for status pages.

    PostgreSQL and Stripe are checked concurrently; the report is reused for
    `STATUS_CACHE_TTL` seconds.
    """
    cached = _status_cache.get("status")
    if cached is not None and time.monotonic() - cached[0] < STATUS_CACHE_TTL:
        return cached[1]

    postgresql, stripe_status = await asyncio.gather(check_postgresql(), check_stripe())
    providers = {"postgresql": postgresql, "stripe": stripe_status}

    report = ServiceStatusResponse(
        status=calculate_overall_status(providers),
        timestamp=_now_iso(),
        version=settings.api_version,
        providers=providers,
    )
    _status_cache["status"] = (time.monotonic(), report)
    logger.debug("status_report_refreshed", status=report.status)
    return report
