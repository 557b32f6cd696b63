"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from metering.models.api import (
    DenialReason,
    EntitlementStatus,
    Plan,
    PurchaseStatus,
)


@dataclass(frozen=True)
class Features:
    """Capability flags plus the per-minute request limit."""

    docx_export: bool
    premium_analysis: bool
    cover_letter: bool
    max_requests_per_minute: int

    def __post_init__(self) -> None:
        """Validate the request limit."""
        if self.max_requests_per_minute <= 0:
            raise ValueError(
                f"max_requests_per_minute must be positive: {self.max_requests_per_minute}"
            )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the JSON column."""
        return {
            "docx_export": self.docx_export,
            "premium_analysis": self.premium_analysis,
            "cover_letter": self.cover_letter,
            "max_requests_per_minute": self.max_requests_per_minute,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, default: "Features") -> "Features":
        """
        Deserialize from the JSON column.

        Rows written before the flags were renamed use `docx` and
        `max_req_per_min`; both spellings are accepted. Missing keys take the
        value from `default`.
        """
        if not data:
            return default
        rpm = data.get("max_requests_per_minute", data.get("max_req_per_min"))
        return cls(
            docx_export=bool(data.get("docx_export", data.get("docx", default.docx_export))),
            premium_analysis=bool(data.get("premium_analysis", default.premium_analysis)),
            cover_letter=bool(data.get("cover_letter", default.cover_letter)),
            max_requests_per_minute=int(rpm) if rpm else default.max_requests_per_minute,
        )


@dataclass(frozen=True)
class CreditBalances:
    """Free (periodic) and purchased balances."""

    free: int
    purchased: int

    def __post_init__(self) -> None:
        """Balances can never be negative."""
        if self.free < 0 or self.purchased < 0:
            raise ValueError(f"Balances cannot be negative: {self.free}/{self.purchased}")

    @property
    def total(self) -> int:
        return self.free + self.purchased


@dataclass(frozen=True)
class Decision:
    """Outcome of an availability check or consumption."""

    allowed: bool
    reason: DenialReason | None = None
    remaining: CreditBalances | None = None
    plan: Plan | None = None
    monthly_usage: int | None = None
    monthly_limit: int | None = None
    daily_usage: int | None = None
    daily_limit: int | None = None

    @classmethod
    def allow(cls, **kwargs: Any) -> "Decision":
        return cls(allowed=True, **kwargs)

    @classmethod
    def deny(cls, reason: DenialReason, **kwargs: Any) -> "Decision":
        return cls(allowed=False, reason=reason, **kwargs)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate limit check."""

    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int | None = None

    @property
    def reason(self) -> DenialReason | None:
        return None if self.allowed else DenialReason.RATE_LIMITED


@dataclass(frozen=True)
class DownloadDecision:
    """Outcome of a download attempt against an artifact quota."""

    allowed: bool
    reason: DenialReason | None = None
    remaining: int | None = None


@dataclass(frozen=True)
class EntitlementData:
    """Immutable entitlement snapshot as stored."""

    entitlement_id: UUID
    user_id: str
    plan: str
    status: EntitlementStatus
    credit_balance: int
    periodic_allowance: int
    last_period_reset: datetime | None
    features: Features
    expires_at: datetime | None
    plan_event_at: datetime | None
    external_customer_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class EffectiveEntitlement:
    """Entitlement as it reads after aliasing, expiry and status downgrade."""

    plan: Plan
    status: EntitlementStatus
    features: Features
    expired: bool

    @property
    def is_active(self) -> bool:
        return self.status == EntitlementStatus.ACTIVE

    @property
    def is_unlimited(self) -> bool:
        return self.plan in (Plan.UNLIMITED_MONTHLY, Plan.UNLIMITED_ANNUAL)

    @property
    def is_metered(self) -> bool:
        """Billable actions take credits; unlimited plans and live passes do not."""
        return self.plan == Plan.METERED


@dataclass(frozen=True)
class EntitlementSummary:
    """Read-only status used for display and support diagnostics."""

    user_id: str
    plan: Plan
    stored_plan: str
    status: EntitlementStatus
    balances: CreditBalances
    periodic_allowance_cap: int
    next_reset_at: datetime
    expires_at: datetime | None
    features: Features
    monthly_generations: int | None = None
    monthly_generation_cap: int | None = None
    monthly_downloads: int | None = None
    monthly_download_cap: int | None = None
    daily_generations: int | None = None
    daily_generation_cap: int | None = None


@dataclass(frozen=True)
class DownloadQuotaData:
    """Immutable download quota snapshot."""

    artifact_id: str
    owner_id: str
    downloads_remaining: int
    created_at: datetime


@dataclass(frozen=True)
class CreditPack:
    """A purchasable bundle of credits."""

    pack_id: str
    name: str
    credits: int
    price_minor: int
    description: str
    popular: bool = False

    def __post_init__(self) -> None:
        """Validate pack constraints."""
        if self.credits <= 0:
            raise ValueError(f"Pack credits must be positive: {self.credits}")
        if self.price_minor <= 0:
            raise ValueError(f"Pack price must be positive: {self.price_minor}")


@dataclass(frozen=True)
class PurchaseData:
    """Immutable credit purchase snapshot."""

    purchase_id: UUID
    user_id: str
    external_payment_id: str
    credits_granted: int
    amount_paid_minor: int
    status: PurchaseStatus
    created_at: datetime
    processed_at: datetime | None
