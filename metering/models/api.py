"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class Plan(str, Enum):
    """Canonical plan enumeration."""

    METERED = "metered"
    UNLIMITED_MONTHLY = "unlimited_monthly"
    UNLIMITED_ANNUAL = "unlimited_annual"
    # Legacy time-boxed pass; only read from existing rows, never granted
    DAY_PASS = "day_pass"


class EntitlementStatus(str, Enum):
    """Entitlement status enumeration."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    INACTIVE = "inactive"


class ActionType(str, Enum):
    """Billable action enumeration."""

    GENERATION = "generation"
    PDF_DOWNLOAD = "pdf_download"
    DOCX_DOWNLOAD = "docx_download"
    PREMIUM_ANALYSIS = "premium_analysis"

    @property
    def is_download(self) -> bool:
        return self in (ActionType.PDF_DOWNLOAD, ActionType.DOCX_DOWNLOAD)


class DenialReason(str, Enum):
    """Reason kinds carried by decisions and webhook outcomes."""

    AUTHENTICATION_REQUIRED = "AuthenticationRequired"
    INSUFFICIENT_CREDITS = "InsufficientCredits"
    RATE_LIMITED = "RateLimited"
    DOWNLOAD_LIMIT_REACHED = "DownloadLimitReached"
    PLAN_INACTIVE = "PlanInactive"
    MONTHLY_CAP_EXCEEDED = "MonthlyCapExceeded"
    DAILY_CAP_EXCEEDED = "DailyCapExceeded"
    UPGRADE_REQUIRED = "UpgradeRequired"
    WEBHOOK_SIGNATURE_INVALID = "WebhookSignatureInvalid"
    DUPLICATE_EVENT = "DuplicateEvent"
    PURCHASE_NOT_FOUND_OR_ALREADY_PROCESSED = "PurchaseNotFoundOrAlreadyProcessed"
    ARTIFACT_NOT_FOUND = "ArtifactNotFound"
    STORAGE_UNAVAILABLE = "StorageUnavailable"


class PurchaseStatus(str, Enum):
    """Credit purchase status enumeration."""

    PENDING = "pending"
    COMPLETED = "completed"


# ============================================================================
# Decision Models
# ============================================================================


class RemainingCredits(BaseModel):
    """Balances left after a decision."""

    free: int
    purchased: int


class DecisionRequest(BaseModel):
    """POST /v1/metering/decisions/* request body."""

    user_id: str | None = Field(None, min_length=1, max_length=255)
    action: ActionType


class DecisionResponse(BaseModel):
    """Result of an availability check or consumption."""

    allowed: bool
    reason: DenialReason | None = None
    remaining: RemainingCredits | None = None
    plan: Plan | None = None
    monthly_usage: int | None = None
    monthly_limit: int | None = None
    daily_usage: int | None = None
    daily_limit: int | None = None


class RateLimitRequest(BaseModel):
    """POST /v1/metering/rate-limit request body."""

    user_id: str | None = Field(None, min_length=1, max_length=255)
    client_ip: str | None = Field(None, max_length=64)
    user_agent: str | None = Field(None, max_length=1024)


class RateLimitResponse(BaseModel):
    """Result of a rate limit check."""

    allowed: bool
    reason: DenialReason | None = None
    limit: int
    remaining: int
    retry_after_seconds: int | None = None


# ============================================================================
# Download Quota Models
# ============================================================================


class CreateArtifactQuotaRequest(BaseModel):
    """POST /v1/metering/artifacts request body."""

    artifact_id: str = Field(..., min_length=1, max_length=255)
    owner_id: str = Field(..., min_length=1, max_length=255)
    initial_downloads: int | None = Field(None, ge=0, le=10_000)


class ArtifactQuotaResponse(BaseModel):
    """Download quota of one artifact."""

    artifact_id: str
    owner_id: str
    downloads_remaining: int
    created_at: str


class DownloadRequest(BaseModel):
    """POST /v1/metering/artifacts/{artifact_id}/downloads request body."""

    requester_id: str | None = Field(None, min_length=1, max_length=255)


class DownloadDecisionResponse(BaseModel):
    """Result of a download attempt."""

    allowed: bool
    reason: DenialReason | None = None
    remaining: int | None = None


# ============================================================================
# Usage Models
# ============================================================================


class RecordUsageRequest(BaseModel):
    """POST /v1/metering/usage request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    action: ActionType


class UsageAcceptedResponse(BaseModel):
    """POST /v1/metering/usage response; the write happens after the response."""

    status: Literal["accepted"] = "accepted"


class UsageBreakdownResponse(BaseModel):
    """Per-action usage within the current calendar month."""

    user_id: str
    period_start: str
    usage: dict[ActionType, int]


# ============================================================================
# Entitlement Summary Models
# ============================================================================


class FeaturesResponse(BaseModel):
    """Capability flags of an entitlement."""

    docx_export: bool
    premium_analysis: bool
    cover_letter: bool
    max_requests_per_minute: int


class EntitlementSummaryResponse(BaseModel):
    """GET /v1/metering/entitlements/{user_id} response."""

    user_id: str
    plan: Plan
    stored_plan: str
    status: EntitlementStatus
    periodic_allowance: int
    periodic_allowance_cap: int
    credit_balance: int
    total_credits: int
    next_reset_at: str
    expires_at: str | None = None
    features: FeaturesResponse
    monthly_generations: int | None = None
    monthly_generation_cap: int | None = None
    monthly_downloads: int | None = None
    monthly_download_cap: int | None = None
    daily_generations: int | None = None
    daily_generation_cap: int | None = None


# ============================================================================
# Purchase Models
# ============================================================================


class CreditPackResponse(BaseModel):
    """One credit pack of the catalog."""

    pack_id: str
    name: str
    credits: int
    price_minor: int
    currency: str
    description: str
    popular: bool


class PurchaseRequest(BaseModel):
    """POST /v1/metering/purchases request body."""

    user_id: str = Field(..., min_length=1, max_length=255)
    pack_id: str = Field(..., min_length=1, max_length=50)
    customer_email: str | None = Field(None, min_length=3, max_length=255)
    client_ip: str | None = Field(None, max_length=64)
    user_agent: str | None = Field(None, max_length=1024)

    @field_validator("pack_id")
    @classmethod
    def normalize_pack_id(cls, v: str) -> str:
        return v.strip().lower()


class PurchaseResponse(BaseModel):
    """Checkout session created for a credit pack."""

    purchase_id: str
    external_payment_id: str
    checkout_url: str
    credits: int
    amount_minor: int
    status: PurchaseStatus


class PurchaseHistoryItem(BaseModel):
    """One credit purchase of a user."""

    purchase_id: str
    external_payment_id: str
    credits_granted: int
    amount_paid_minor: int
    status: PurchaseStatus
    created_at: str
    processed_at: str | None = None


class PurchaseHistoryResponse(BaseModel):
    """GET /v1/metering/purchases/{user_id} response."""

    user_id: str
    purchases: list[PurchaseHistoryItem]


# ============================================================================
# Webhook / Health Models
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the payment processor."""

    status: Literal["processed", "duplicate", "stale", "ignored", "acknowledged"]
    event_id: str
    reason: DenialReason | None = None


class HealthResponse(BaseModel):
    """GET /health response."""

    status: Literal["healthy", "unhealthy"]
    database: Literal["connected", "disconnected"]
    timestamp: str
