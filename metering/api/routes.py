"""
API Routes - FastAPI endpoints for metering decisions, quotas and billing events.

NO DICTIONARIES - All requests/responses use Pydantic models.

Decisions are always HTTP 200 with a typed body; the calling handler maps
denial reasons to 401/402/429 for its own clients.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from metering.api.dependencies import (
    client_ip,
    enforce_rate_limit,
    get_entitlement_service,
    get_payment_provider,
    get_usage_journal,
    require_api_key,
)
from metering.config import settings
from metering.db.session import get_read_db, get_write_db
from metering.exceptions import (
    BillingEventRetryableError,
    DuplicateArtifactError,
    PaymentProviderError,
    UnknownCreditPackError,
    WebhookVerificationError,
)
from metering.models.api import (
    ArtifactQuotaResponse,
    CreateArtifactQuotaRequest,
    CreditPackResponse,
    DecisionRequest,
    DecisionResponse,
    DenialReason,
    DownloadDecisionResponse,
    DownloadRequest,
    EntitlementSummaryResponse,
    FeaturesResponse,
    PurchaseHistoryItem,
    PurchaseHistoryResponse,
    PurchaseRequest,
    PurchaseResponse,
    RateLimitRequest,
    RateLimitResponse,
    RecordUsageRequest,
    RemainingCredits,
    UsageAcceptedResponse,
    UsageBreakdownResponse,
    WebhookAckResponse,
)
from metering.models.domain import Decision, DownloadQuotaData, Features, PurchaseData
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics
from metering.services.billing_events import BillingEventProcessor
from metering.services.download_quota import DownloadQuotaService
from metering.services.entitlements import EntitlementService
from metering.services.period import PeriodResolver
from metering.services.plans import CREDIT_PACKS
from metering.services.purchases import CreditPurchaseService
from metering.services.rate_limiter import check_rate_limit, rate_limiter
from metering.services.stripe_provider import StripeProvider
from metering.services.usage_journal import UsageJournal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/metering", tags=["metering"])


def _decision_response(decision: Decision) -> DecisionResponse:
    remaining = None
    if decision.remaining is not None:
        remaining = RemainingCredits(
            free=decision.remaining.free, purchased=decision.remaining.purchased
        )
    return DecisionResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        remaining=remaining,
        plan=decision.plan,
        monthly_usage=decision.monthly_usage,
        monthly_limit=decision.monthly_limit,
        daily_usage=decision.daily_usage,
        daily_limit=decision.daily_limit,
    )


def _features_response(features: Features) -> FeaturesResponse:
    return FeaturesResponse(
        docx_export=features.docx_export,
        premium_analysis=features.premium_analysis,
        cover_letter=features.cover_letter,
        max_requests_per_minute=features.max_requests_per_minute,
    )


def _quota_response(quota: DownloadQuotaData) -> ArtifactQuotaResponse:
    return ArtifactQuotaResponse(
        artifact_id=quota.artifact_id,
        owner_id=quota.owner_id,
        downloads_remaining=quota.downloads_remaining,
        created_at=quota.created_at.isoformat(),
    )


def _purchase_item(purchase: PurchaseData) -> PurchaseHistoryItem:
    return PurchaseHistoryItem(
        purchase_id=str(purchase.purchase_id),
        external_payment_id=purchase.external_payment_id,
        credits_granted=purchase.credits_granted,
        amount_paid_minor=purchase.amount_paid_minor,
        status=purchase.status,
        created_at=purchase.created_at.isoformat(),
        processed_at=purchase.processed_at.isoformat() if purchase.processed_at else None,
    )


# ============================================================================
# Decisions
# ============================================================================


@router.post(
    "/decisions/check",
    response_model=DecisionResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_availability(
    request: DecisionRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> DecisionResponse:
    """
    Report whether an action would be allowed, consuming nothing.

    Storage failures read as a denial with StorageUnavailable.
    """
    if not request.user_id:
        return DecisionResponse(allowed=False, reason=DenialReason.AUTHENTICATION_REQUIRED)

    try:
        decision = await service.check_availability(request.user_id, request.action)
    except Exception as exc:
        logger.error(
            "check_availability_failed",
            user_id=request.user_id,
            action=request.action.value,
            error=str(exc),
        )
        metrics.record_error(type(exc).__name__, "check_availability")
        return DecisionResponse(allowed=False, reason=DenialReason.STORAGE_UNAVAILABLE)

    return _decision_response(decision)


@router.post(
    "/decisions/consume",
    response_model=DecisionResponse,
    dependencies=[Depends(require_api_key)],
)
async def check_and_consume(
    request: DecisionRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> DecisionResponse:
    """
    Check and, for billable actions, atomically consume one credit.

    The reads before the decrement are bounded by `decision_timeout_seconds`;
    running out of time denies the action without consuming anything.
    """
    decision = await service.check_and_consume(
        request.user_id, request.action, deadline=settings.decision_timeout_seconds
    )
    return _decision_response(decision)


# ============================================================================
# Rate Limiting
# ============================================================================


@router.post(
    "/rate-limit",
    response_model=RateLimitResponse,
    dependencies=[Depends(require_api_key)],
)
async def rate_limit(
    request: RateLimitRequest,
    service: EntitlementService = Depends(get_entitlement_service),
) -> RateLimitResponse:
    """Count one request for the caller and report the fixed-window state."""
    decision = await check_rate_limit(
        rate_limiter,
        user_id=request.user_id,
        client_ip=request.client_ip,
        user_agent=request.user_agent,
        loader=service.get_rate_limit,
    )
    return RateLimitResponse(
        allowed=decision.allowed,
        reason=decision.reason,
        limit=decision.limit,
        remaining=decision.remaining,
        retry_after_seconds=decision.retry_after_seconds,
    )


# ============================================================================
# Usage Journal
# ============================================================================


@router.post(
    "/usage",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=UsageAcceptedResponse,
    dependencies=[Depends(require_api_key)],
)
async def record_usage(
    request: RecordUsageRequest,
    background_tasks: BackgroundTasks,
    journal: UsageJournal = Depends(get_usage_journal),
) -> UsageAcceptedResponse:
    """Append a usage record after the response is sent. Never fails the caller."""
    background_tasks.add_task(journal.record, request.user_id, request.action)
    return UsageAcceptedResponse()


@router.get(
    "/usage/{user_id}",
    response_model=UsageBreakdownResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_usage(
    user_id: str,
    journal: UsageJournal = Depends(get_usage_journal),
) -> UsageBreakdownResponse:
    """Per-action usage in the current calendar month."""
    period_start = PeriodResolver().current_period_start()
    try:
        usage = await journal.usage_breakdown(user_id, period_start)
    except Exception as exc:
        logger.error("usage_breakdown_failed", user_id=user_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Usage data unavailable",
        ) from exc

    return UsageBreakdownResponse(
        user_id=user_id, period_start=period_start.isoformat(), usage=usage
    )


# ============================================================================
# Download Quotas
# ============================================================================


@router.post(
    "/artifacts",
    response_model=ArtifactQuotaResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_artifact_quota(
    request: CreateArtifactQuotaRequest,
    db: AsyncSession = Depends(get_write_db),
) -> ArtifactQuotaResponse:
    """Attach a fresh download quota to a newly generated artifact."""
    service = DownloadQuotaService(db)
    try:
        quota = await service.create_quota(
            request.artifact_id, request.owner_id, request.initial_downloads
        )
    except DuplicateArtifactError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc

    return _quota_response(quota)


@router.get(
    "/artifacts/{artifact_id}",
    response_model=ArtifactQuotaResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_artifact_quota(
    artifact_id: str,
    owner_id: str,
    db: AsyncSession = Depends(get_read_db),
) -> ArtifactQuotaResponse:
    """Remaining downloads of an artifact, visible to its owner only."""
    quota = await DownloadQuotaService(db).get_status(artifact_id, owner_id)
    if quota is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Artifact not found",
        )
    return _quota_response(quota)


@router.post(
    "/artifacts/{artifact_id}/downloads",
    response_model=DownloadDecisionResponse,
    dependencies=[Depends(require_api_key)],
)
async def consume_download(
    artifact_id: str,
    request: DownloadRequest,
    db: AsyncSession = Depends(get_write_db),
) -> DownloadDecisionResponse:
    """Take one download from the artifact's quota."""
    if not request.requester_id:
        return DownloadDecisionResponse(
            allowed=False, reason=DenialReason.AUTHENTICATION_REQUIRED
        )

    decision = await DownloadQuotaService(db).consume_download(artifact_id, request.requester_id)
    return DownloadDecisionResponse(
        allowed=decision.allowed, reason=decision.reason, remaining=decision.remaining
    )


# ============================================================================
# Entitlements
# ============================================================================


@router.get(
    "/entitlements/{user_id}",
    response_model=EntitlementSummaryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_entitlement_summary(
    user_id: str,
    db: AsyncSession = Depends(get_read_db),
    journal: UsageJournal = Depends(get_usage_journal),
) -> EntitlementSummaryResponse:
    """Read-only entitlement status for display and support diagnostics."""
    summary = await EntitlementService(db, journal=journal).get_summary(user_id)

    return EntitlementSummaryResponse(
        user_id=summary.user_id,
        plan=summary.plan,
        stored_plan=summary.stored_plan,
        status=summary.status,
        periodic_allowance=summary.balances.free,
        periodic_allowance_cap=summary.periodic_allowance_cap,
        credit_balance=summary.balances.purchased,
        total_credits=summary.balances.total,
        next_reset_at=summary.next_reset_at.isoformat(),
        expires_at=summary.expires_at.isoformat() if summary.expires_at else None,
        features=_features_response(summary.features),
        monthly_generations=summary.monthly_generations,
        monthly_generation_cap=summary.monthly_generation_cap,
        monthly_downloads=summary.monthly_downloads,
        monthly_download_cap=summary.monthly_download_cap,
        daily_generations=summary.daily_generations,
        daily_generation_cap=summary.daily_generation_cap,
    )


# ============================================================================
# Credit Packs and Purchases
# ============================================================================


@router.get("/credit-packs", response_model=list[CreditPackResponse])
async def list_credit_packs() -> list[CreditPackResponse]:
    """Public catalog of purchasable credit packs."""
    return [
        CreditPackResponse(
            pack_id=pack.pack_id,
            name=pack.name,
            credits=pack.credits,
            price_minor=pack.price_minor,
            currency=settings.stripe_currency.upper(),
            description=pack.description,
            popular=pack.popular,
        )
        for pack in CREDIT_PACKS
    ]


@router.post(
    "/purchases",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_api_key)],
)
async def create_purchase(
    request: PurchaseRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_write_db),
    service: EntitlementService = Depends(get_entitlement_service),
    provider: StripeProvider = Depends(get_payment_provider),
) -> PurchaseResponse:
    """
    Start a hosted checkout for a credit pack.

    Rate limited per user; credits are granted when the payment webhook
    arrives, not here.
    """
    await enforce_rate_limit(http_request, request.user_id, service)

    purchases = CreditPurchaseService(db, provider)
    try:
        purchase, checkout_url = await purchases.start_checkout(
            request.user_id, request.pack_id, request.customer_email
        )
    except UnknownCreditPackError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except PaymentProviderError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider unavailable",
        ) from exc

    logger.info(
        "credit_checkout_started",
        user_id=request.user_id,
        pack_id=request.pack_id,
        purchase_id=str(purchase.purchase_id),
        client_ip=request.client_ip or client_ip(http_request),
    )

    return PurchaseResponse(
        purchase_id=str(purchase.purchase_id),
        external_payment_id=purchase.external_payment_id,
        checkout_url=checkout_url,
        credits=purchase.credits_granted,
        amount_minor=purchase.amount_paid_minor,
        status=purchase.status,
    )


@router.get(
    "/purchases/{user_id}",
    response_model=PurchaseHistoryResponse,
    dependencies=[Depends(require_api_key)],
)
async def get_purchase_history(
    user_id: str,
    limit: int = 10,
    db: AsyncSession = Depends(get_read_db),
) -> PurchaseHistoryResponse:
    """Most recent credit purchases of a user."""
    purchases = await CreditPurchaseService(db).history(user_id, limit=max(1, min(limit, 100)))
    return PurchaseHistoryResponse(
        user_id=user_id, purchases=[_purchase_item(p) for p in purchases]
    )


# ============================================================================
# Billing Webhooks
# ============================================================================


@router.post("/webhooks/stripe", response_model=WebhookAckResponse)
async def stripe_webhook(
    request: Request,
    db: AsyncSession = Depends(get_write_db),
    provider: StripeProvider = Depends(get_payment_provider),
) -> WebhookAckResponse:
    """
    Handle Stripe webhook events.

    400 on a bad signature (nothing is touched), 500 when the event must be
    redelivered, 200 for everything else including duplicates.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature", "")

    try:
        event = await provider.verify_webhook(payload, signature)
    except WebhookVerificationError as exc:
        metrics.record_billing_event("unverified", "rejected")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=DenialReason.WEBHOOK_SIGNATURE_INVALID.value,
        ) from exc

    processor = BillingEventProcessor(db)
    try:
        result = await processor.process(event)
    except BillingEventRetryableError as exc:
        logger.warning("stripe_webhook_retry_requested", event_id=event.event_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing deferred",
        ) from exc
    except Exception as exc:
        logger.error("stripe_webhook_processing_failed", event_id=event.event_id, error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc

    return WebhookAckResponse(
        status=result.outcome.value, event_id=result.event_id, reason=result.reason
    )
