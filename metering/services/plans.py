"""
Plan Catalog - Plans, feature presets, action rules and credit packs.

Pure functions only; nothing here touches storage. The entitlement service
feeds stored rows through `effective_view` and `evaluate_action` to reach a
decision.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from metering.config import settings
from metering.exceptions import UnknownCreditPackError
from metering.models.api import ActionType, DenialReason, EntitlementStatus, Plan
from metering.models.domain import (
    CreditBalances,
    CreditPack,
    Decision,
    EffectiveEntitlement,
    EntitlementData,
    Features,
)
from metering.services.period import as_utc, utc_now

# Labels written by earlier releases, folded into canonical plans on read
LEGACY_PLAN_ALIASES: dict[str, Plan] = {
    "free": Plan.METERED,
    "standard": Plan.METERED,
    "pro_monthly": Plan.UNLIMITED_MONTHLY,
    "pro_annual": Plan.UNLIMITED_ANNUAL,
}

# Stored labels that never consume credits while unexpired
NON_METERED_PLAN_LABELS: tuple[str, ...] = (
    "unlimited_monthly",
    "unlimited_annual",
    "pro_monthly",
    "pro_annual",
    "day_pass",
)

UNLIMITED_PLANS: tuple[Plan, ...] = (Plan.UNLIMITED_MONTHLY, Plan.UNLIMITED_ANNUAL)


def normalize_plan(label: str | None) -> Plan:
    """Map a stored plan label to its canonical plan; unknown labels are metered."""
    if not label:
        return Plan.METERED
    try:
        return Plan(label)
    except ValueError:
        return LEGACY_PLAN_ALIASES.get(label, Plan.METERED)


# ============================================================================
# Feature presets
# ============================================================================


def metered_features() -> Features:
    """Standard metered plan."""
    return Features(
        docx_export=False,
        premium_analysis=False,
        cover_letter=True,
        max_requests_per_minute=settings.metered_rate_limit,
    )


def full_features() -> Features:
    """Unlimited plans: every flag on."""
    return Features(
        docx_export=True,
        premium_analysis=True,
        cover_letter=True,
        max_requests_per_minute=settings.unlimited_rate_limit,
    )


def downgraded_features() -> Features:
    """Free-tier defaults used for inactive, past-due and expired entitlements."""
    return Features(
        docx_export=False,
        premium_analysis=False,
        cover_letter=True,
        max_requests_per_minute=settings.anonymous_rate_limit,
    )


def default_features(plan: Plan) -> Features:
    if plan != Plan.METERED:
        return full_features()
    return metered_features()


# ============================================================================
# Plan limits and action rules
# ============================================================================


@dataclass(frozen=True)
class PlanLimits:
    """Usage limits attached to a plan."""

    monthly_generation_cap: int | None
    monthly_download_cap: int | None
    downloads_cost_credits: bool
    daily_generation_cap: int | None = None


def plan_limits(plan: Plan) -> PlanLimits:
    if plan in UNLIMITED_PLANS:
        return PlanLimits(
            monthly_generation_cap=settings.unlimited_monthly_generation_cap,
            monthly_download_cap=settings.unlimited_monthly_download_cap,
            downloads_cost_credits=False,
        )
    if plan == Plan.DAY_PASS:
        return PlanLimits(
            monthly_generation_cap=None,
            monthly_download_cap=None,
            downloads_cost_credits=False,
            daily_generation_cap=settings.day_pass_daily_generation_cap,
        )
    return PlanLimits(
        monthly_generation_cap=None,
        monthly_download_cap=None,
        downloads_cost_credits=False,
    )


@dataclass(frozen=True)
class ActionRule:
    """
    How an action is gated.

    billable: costs one credit on metered plans and requires an active status.
    required_feature: name of the Features flag that must be on, if any.
    """

    billable: bool
    required_feature: str | None = None

    @property
    def is_free(self) -> bool:
        return not self.billable


ACTION_RULES: dict[ActionType, ActionRule] = {
    ActionType.GENERATION: ActionRule(billable=True),
    ActionType.PREMIUM_ANALYSIS: ActionRule(billable=True, required_feature="premium_analysis"),
    ActionType.PDF_DOWNLOAD: ActionRule(billable=False),
    ActionType.DOCX_DOWNLOAD: ActionRule(billable=False, required_feature="docx_export"),
}

GENERATION_ACTIONS: tuple[ActionType, ...] = (ActionType.GENERATION, ActionType.PREMIUM_ANALYSIS)
DOWNLOAD_ACTIONS: tuple[ActionType, ...] = (ActionType.PDF_DOWNLOAD, ActionType.DOCX_DOWNLOAD)


def usage_class(action: ActionType) -> tuple[ActionType, ...]:
    """Actions counted together against the same soft cap."""
    return DOWNLOAD_ACTIONS if action.is_download else GENERATION_ACTIONS


class CapWindow(str, Enum):
    DAY = "day"
    MONTH = "month"


@dataclass(frozen=True)
class UsageCap:
    """Soft cap on journaled usage, counted from the start of `window`."""

    limit: int
    window: CapWindow


def usage_cap(plan: Plan, action: ActionType) -> UsageCap | None:
    """Soft cap applying to `action` on `plan`, if any. Metered plans have none."""
    limits = plan_limits(plan)
    if action.is_download:
        monthly = limits.monthly_download_cap
    else:
        if limits.daily_generation_cap is not None:
            return UsageCap(limits.daily_generation_cap, CapWindow.DAY)
        monthly = limits.monthly_generation_cap
    return UsageCap(monthly, CapWindow.MONTH) if monthly is not None else None


def with_usage(decision: Decision, cap: UsageCap | None, usage: int | None) -> Decision:
    """Attach usage and limit to the decision fields matching the cap window."""
    if cap is None:
        return decision
    if cap.window == CapWindow.DAY:
        return replace(decision, daily_usage=usage, daily_limit=cap.limit)
    return replace(decision, monthly_usage=usage, monthly_limit=cap.limit)


def requires_credit(view: EffectiveEntitlement, action: ActionType) -> bool:
    """True when allowing the action must decrement a balance."""
    rule = ACTION_RULES[action]
    if not view.is_metered:
        return False
    if action.is_download:
        return rule.billable or plan_limits(view.plan).downloads_cost_credits
    return rule.billable


# ============================================================================
# Effective view and evaluation
# ============================================================================


def effective_view(entitlement: EntitlementData, now: datetime | None = None) -> EffectiveEntitlement:
    """
    Read an entitlement the way decisions see it.

    Legacy labels are aliased; an expired time-boxed grant reads as metered with
    downgraded features; any status other than active reads with downgraded
    features while keeping the plan.
    """
    now = now or utc_now()
    plan = normalize_plan(entitlement.plan)
    status = entitlement.status
    expires_at = as_utc(entitlement.expires_at)
    expired = expires_at is not None and expires_at <= now

    if expired:
        return EffectiveEntitlement(
            plan=Plan.METERED, status=status, features=downgraded_features(), expired=True
        )
    if status != EntitlementStatus.ACTIVE:
        return EffectiveEntitlement(
            plan=plan, status=status, features=downgraded_features(), expired=False
        )
    return EffectiveEntitlement(
        plan=plan, status=status, features=entitlement.features, expired=False
    )


def evaluate_action(
    view: EffectiveEntitlement,
    action: ActionType,
    balances: CreditBalances,
    capped_usage: int | None = None,
) -> Decision:
    """
    Decide whether `action` is allowed without consuming anything.

    Order: inactive status (billable actions only), missing feature flag,
    soft cap of a non-metered plan, then metered balance. `capped_usage` is the
    journal count for the window of `usage_cap(view.plan, action)`.
    """
    rule = ACTION_RULES[action]

    if rule.billable and not view.is_active:
        return Decision.deny(DenialReason.PLAN_INACTIVE, remaining=balances, plan=view.plan)

    if rule.required_feature and not getattr(view.features, rule.required_feature):
        return Decision.deny(DenialReason.UPGRADE_REQUIRED, remaining=balances, plan=view.plan)

    if not view.is_metered:
        cap = usage_cap(view.plan, action)
        if cap is not None and capped_usage is not None and capped_usage >= cap.limit:
            reason = (
                DenialReason.DAILY_CAP_EXCEEDED
                if cap.window == CapWindow.DAY
                else DenialReason.MONTHLY_CAP_EXCEEDED
            )
            denied = Decision.deny(reason, remaining=balances, plan=view.plan)
            return with_usage(denied, cap, capped_usage)
        allowed = Decision.allow(remaining=balances, plan=view.plan)
        return with_usage(allowed, cap, capped_usage)

    if requires_credit(view, action) and balances.total <= 0:
        return Decision.deny(
            DenialReason.INSUFFICIENT_CREDITS, remaining=balances, plan=view.plan
        )

    return Decision.allow(remaining=balances, plan=view.plan)


# ============================================================================
# Credit packs
# ============================================================================

CREDIT_PACKS: tuple[CreditPack, ...] = (
    CreditPack(
        pack_id="starter",
        name="Starter Pack",
        credits=6,
        price_minor=500,
        description="Perfect for trying out the service",
    ),
    CreditPack(
        pack_id="standard",
        name="Standard Pack",
        credits=20,
        price_minor=1500,
        description="Great for regular job searching",
        popular=True,
    ),
    CreditPack(
        pack_id="professional",
        name="Professional Pack",
        credits=60,
        price_minor=3500,
        description="Best value for active job seekers",
    ),
    CreditPack(
        pack_id="bulk",
        name="Bulk Pack",
        credits=150,
        price_minor=7500,
        description="For career coaches and agencies",
    ),
)


def get_credit_pack(pack_id: str) -> CreditPack:
    """Look up a pack by id, raising UnknownCreditPackError when absent."""
    for pack in CREDIT_PACKS:
        if pack.pack_id == pack_id:
            return pack
    raise UnknownCreditPackError(pack_id)
