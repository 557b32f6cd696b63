"""
Entitlement Service - Per-user plan, balances and consumption.

NO DICTIONARIES - All operations use strongly typed domain models.

Balances are never read, modified in Python and written back. Every mutation
is a single conditional UPDATE (or INSERT ... ON CONFLICT) whose WHERE clause
carries the precondition, so concurrent callers either apply exactly once or
are no-ops. The statement builders are module-level so they can be executed
directly against any SQLAlchemy connection.
"""

import asyncio
import time
from dataclasses import replace
from datetime import datetime
from uuid import uuid4

from sqlalchemy import ColumnElement, Insert, Update, and_, case, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from metering.config import settings
from metering.db.models import CreditGrant, Entitlement
from metering.exceptions import StorageUnavailableError
from metering.models.api import ActionType, DenialReason, EntitlementStatus, Plan
from metering.models.domain import (
    CreditBalances,
    Decision,
    EffectiveEntitlement,
    EntitlementData,
    EntitlementSummary,
    Features,
)
from metering.observability.logging import get_logger
from metering.observability.metrics import metrics
from metering.observability.tracing import set_span_attributes, trace_operation
from metering.services.period import PeriodResolver, as_utc, utc_now
from metering.services.plans import (
    DOWNLOAD_ACTIONS,
    GENERATION_ACTIONS,
    NON_METERED_PLAN_LABELS,
    CapWindow,
    default_features,
    effective_view,
    evaluate_action,
    metered_features,
    normalize_plan,
    plan_limits,
    requires_credit,
    usage_cap,
    usage_class,
    with_usage,
)
from metering.services.usage_journal import UsageJournal

logger = get_logger(__name__)


# ============================================================================
# Statement builders
# ============================================================================


def _is_metered_clause(now: datetime) -> ColumnElement[bool]:
    """Row consumes credits: a metered label, or an expired time-boxed grant."""
    return or_(
        Entitlement.plan.notin_(NON_METERED_PLAN_LABELS),
        and_(Entitlement.expires_at.isnot(None), Entitlement.expires_at <= now),
    )


def create_entitlement_statement(
    user_id: str, period_start: datetime, cap: int, now: datetime
) -> Insert:
    """INSERT a fresh metered entitlement, doing nothing if the user already has one."""
    return (
        pg_insert(Entitlement)
        .values(
            id=uuid4(),
            user_id=user_id,
            plan=Plan.METERED.value,
            status=EntitlementStatus.ACTIVE.value,
            credit_balance=0,
            periodic_allowance=cap,
            last_period_reset=period_start,
            features=metered_features().to_dict(),
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["user_id"])
    )


def period_reset_statement(user_id: str, boundary: datetime, cap: int) -> Update:
    """Refill the periodic allowance once per period boundary."""
    return (
        update(Entitlement)
        .where(
            Entitlement.user_id == user_id,
            or_(
                Entitlement.last_period_reset.is_(None),
                Entitlement.last_period_reset < boundary,
            ),
        )
        .values(periodic_allowance=cap, last_period_reset=boundary, updated_at=utc_now())
        .returning(Entitlement.periodic_allowance, Entitlement.credit_balance)
    )


def consume_statement(user_id: str, now: datetime) -> Update:
    """
    Decrement one credit: periodic allowance first, purchased balance second.

    Gated on a positive combined balance, an active status and a metered plan,
    so the balance can never go negative and exactly one credit is taken.
    """
    allowance = Entitlement.periodic_allowance
    balance = Entitlement.credit_balance
    return (
        update(Entitlement)
        .where(
            Entitlement.user_id == user_id,
            Entitlement.status == EntitlementStatus.ACTIVE.value,
            allowance + balance > 0,
            _is_metered_clause(now),
        )
        .values(
            periodic_allowance=case((allowance > 0, allowance - 1), else_=allowance),
            credit_balance=case((allowance > 0, balance), else_=balance - 1),
            updated_at=now,
        )
        .returning(Entitlement.periodic_allowance, Entitlement.credit_balance)
    )


def credit_grant_statement(user_id: str, amount: int, idempotency_key: str) -> Insert:
    """Ledger row for a grant; yields no row when the key was already used."""
    return (
        pg_insert(CreditGrant)
        .values(
            id=uuid4(),
            user_id=user_id,
            amount=amount,
            idempotency_key=idempotency_key,
            created_at=utc_now(),
        )
        .on_conflict_do_nothing(index_elements=["idempotency_key"])
        .returning(CreditGrant.id)
    )


def credit_increment_statement(user_id: str, amount: int, now: datetime) -> Update:
    """
    Add purchased credits.

    A canceled or inactive metered entitlement is reactivated so the credits
    just paid for are usable.
    """
    reactivate = and_(
        Entitlement.status.in_(
            (EntitlementStatus.CANCELED.value, EntitlementStatus.INACTIVE.value)
        ),
        _is_metered_clause(now),
    )
    return (
        update(Entitlement)
        .where(Entitlement.user_id == user_id)
        .values(
            credit_balance=Entitlement.credit_balance + amount,
            status=case(
                (reactivate, EntitlementStatus.ACTIVE.value), else_=Entitlement.status
            ),
            updated_at=now,
        )
        .returning(Entitlement.periodic_allowance, Entitlement.credit_balance)
    )


def plan_transition_statement(
    user_id: str,
    plan: Plan,
    status: EntitlementStatus,
    features: Features,
    effective_at: datetime | None = None,
    external_customer_id: str | None = None,
    expires_at: datetime | None = None,
) -> Update:
    """
    Absolute write of plan, status and features.

    With `effective_at`, the write only applies when no newer billing event
    has been applied already.
    """
    values: dict[str, object] = {
        "plan": plan.value,
        "status": status.value,
        "features": features.to_dict(),
        "expires_at": expires_at,
        "updated_at": utc_now(),
    }
    stmt = update(Entitlement).where(Entitlement.user_id == user_id)
    if effective_at is not None:
        values["plan_event_at"] = effective_at
        stmt = stmt.where(
            or_(
                Entitlement.plan_event_at.is_(None),
                Entitlement.plan_event_at <= effective_at,
            )
        )
    if external_customer_id is not None:
        values["external_customer_id"] = external_customer_id
    return stmt.values(**values).returning(Entitlement.id)


# ============================================================================
# Service
# ============================================================================


class EntitlementService:
    """
    Entitlement store operations.

    Methods that mutate commit by default; pass commit=False to compose them
    inside a caller-owned transaction (the billing event processor does).
    """

    def __init__(
        self,
        session: AsyncSession,
        journal: UsageJournal | None = None,
        resolver: PeriodResolver | None = None,
    ) -> None:
        """Initialize entitlement service with database session."""
        self.session = session
        self.journal = journal
        self.resolver = resolver or PeriodResolver()

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def get_or_create(self, user_id: str, commit: bool = True) -> EntitlementData:
        """
        Return the user's entitlement, creating a metered one on first access.

        Concurrent first access resolves to a single row via ON CONFLICT.
        """
        row = await self._find_entitlement(user_id)
        if row is not None:
            return self._entitlement_to_domain(row)

        now = utc_now()
        await self.session.execute(
            create_entitlement_statement(
                user_id,
                self.resolver.current_period_start(now),
                settings.periodic_allowance_cap,
                now,
            )
        )
        if commit:
            await self.session.commit()

        row = await self._find_entitlement(user_id)
        if row is None:
            raise StorageUnavailableError("get_or_create", f"entitlement for {user_id} not found")

        logger.info("entitlement_created", user_id=user_id, plan=row.plan)
        return self._entitlement_to_domain(row)

    async def resolve_period(
        self, entitlement: EntitlementData, now: datetime | None = None
    ) -> EntitlementData:
        """
        Refill the periodic allowance if a period boundary has passed.

        One conditional UPDATE; among racing callers exactly one applies the
        refill and the others re-read the already refilled row.
        """
        now = now or utc_now()
        if not self.resolver.needs_reset(entitlement.last_period_reset, now):
            return entitlement

        boundary = self.resolver.current_period_start(now)
        result = await self.session.execute(
            period_reset_statement(entitlement.user_id, boundary, settings.periodic_allowance_cap)
        )
        applied = result.first() is not None
        await self.session.commit()

        if applied:
            metrics.period_resets_total.inc()
            logger.info(
                "periodic_allowance_reset",
                user_id=entitlement.user_id,
                period_start=boundary.isoformat(),
                allowance=settings.periodic_allowance_cap,
            )

        row = await self._find_entitlement(entitlement.user_id)
        if row is None:
            raise StorageUnavailableError(
                "resolve_period", f"entitlement for {entitlement.user_id} not found"
            )
        return self._entitlement_to_domain(row)

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    async def check_availability(self, user_id: str, action: ActionType) -> Decision:
        """Decide whether `action` would be allowed, consuming nothing."""
        now = utc_now()
        entitlement = await self.resolve_period(await self.get_or_create(user_id), now)
        view = effective_view(entitlement, now)
        balances = CreditBalances(entitlement.periodic_allowance, entitlement.credit_balance)
        capped_usage = await self._capped_usage(user_id, view, action, now)
        return evaluate_action(view, action, balances, capped_usage)

    async def consume(self, user_id: str, action: ActionType) -> Decision:
        """
        Atomically take one credit for `action`.

        Allowed decisions carry the balances after the decrement. When the
        conditional update matches nothing the row is re-read to pick the
        reason.
        """
        now = utc_now()
        result = await self.session.execute(consume_statement(user_id, now))
        row = result.first()
        await self.session.commit()

        if row is not None:
            remaining = CreditBalances(free=row[0], purchased=row[1])
            logger.info(
                "credit_consumed",
                user_id=user_id,
                action=action.value,
                free_remaining=remaining.free,
                purchased_remaining=remaining.purchased,
            )
            return Decision.allow(remaining=remaining, plan=Plan.METERED)

        current = await self._find_entitlement(user_id)
        if current is None:
            return Decision.deny(DenialReason.INSUFFICIENT_CREDITS)
        data = self._entitlement_to_domain(current)
        balances = CreditBalances(data.periodic_allowance, data.credit_balance)
        if data.status != EntitlementStatus.ACTIVE:
            return Decision.deny(
                DenialReason.PLAN_INACTIVE, remaining=balances, plan=normalize_plan(data.plan)
            )
        return Decision.deny(
            DenialReason.INSUFFICIENT_CREDITS, remaining=balances, plan=normalize_plan(data.plan)
        )

    async def check_and_consume(
        self, user_id: str | None, action: ActionType, deadline: float | None = None
    ) -> Decision:
        """
        Request-handler entry point: check, consume when billable, journal.

        Storage failures deny with StorageUnavailable; nothing is ever allowed
        without a successful decrement. `deadline` (seconds) bounds the reads
        that precede the decrement; running out of time denies with
        StorageUnavailable. Once the decrement is issued it runs to completion
        so a taken credit is always reported as allowed. The journal write is
        scheduled in the background after the decision.
        """
        start = time.perf_counter()

        if not user_id:
            decision = Decision.deny(DenialReason.AUTHENTICATION_REQUIRED)
            self._record_decision(action, decision, False, start)
            return decision

        consumed = False
        try:
            with trace_operation("check_and_consume", user_id=user_id, action=action) as span:
                decision, consumed = await self._check_and_consume(user_id, action, deadline)
                set_span_attributes(
                    span, allowed=decision.allowed, reason=decision.reason, consumed=consumed
                )
        except (SQLAlchemyError, OSError, StorageUnavailableError, TimeoutError) as e:
            logger.error(
                "decision_storage_unavailable",
                user_id=user_id,
                action=action.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            metrics.record_error(type(e).__name__, "check_and_consume")
            await self._rollback_quietly()
            decision = Decision.deny(DenialReason.STORAGE_UNAVAILABLE)

        if decision.allowed and self.journal is not None:
            self.journal.record_in_background(user_id, action)

        self._record_decision(action, decision, consumed, start)
        return decision

    async def _check_and_consume(
        self, user_id: str, action: ActionType, deadline: float | None
    ) -> tuple[Decision, bool]:
        now = utc_now()
        async with asyncio.timeout(deadline):
            entitlement = await self.resolve_period(await self.get_or_create(user_id), now)
            view = effective_view(entitlement, now)
            balances = CreditBalances(entitlement.periodic_allowance, entitlement.credit_balance)
            capped_usage = await self._capped_usage(user_id, view, action, now)

        decision = evaluate_action(view, action, balances, capped_usage)
        if not decision.allowed:
            logger.info(
                "action_denied",
                user_id=user_id,
                action=action.value,
                reason=decision.reason.value if decision.reason else None,
                plan=view.plan.value,
            )
            return decision, False

        consumed = False
        if requires_credit(view, action):
            decision = await self.consume(user_id, action)
            if not decision.allowed:
                return decision, False
            consumed = True
        elif capped_usage is not None:
            decision = with_usage(decision, usage_cap(view.plan, action), capped_usage + 1)

        return decision, consumed

    async def _capped_usage(
        self,
        user_id: str,
        view: EffectiveEntitlement,
        action: ActionType,
        now: datetime,
    ) -> int | None:
        """Journal count in the soft cap's window; None when no cap applies."""
        if view.is_metered or self.journal is None:
            return None
        cap = usage_cap(view.plan, action)
        if cap is None:
            return None
        return await self.journal.count_in_period(
            user_id, usage_class(action), self._window_start(cap.window, now)
        )

    def _window_start(self, window: CapWindow, now: datetime) -> datetime:
        if window == CapWindow.DAY:
            return self.resolver.current_day_start(now)
        return self.resolver.current_period_start(now)

    # ------------------------------------------------------------------
    # Billing-driven writes
    # ------------------------------------------------------------------

    async def grant_credits(
        self, user_id: str, amount: int, idempotency_key: str, commit: bool = True
    ) -> bool:
        """
        Add purchased credits once per idempotency key.

        Returns False, changing nothing, when the key was already granted.
        """
        if amount <= 0:
            raise ValueError(f"Grant amount must be positive: {amount}")

        await self.get_or_create(user_id, commit=commit)

        ledger = await self.session.execute(
            credit_grant_statement(user_id, amount, idempotency_key)
        )
        if ledger.first() is None:
            logger.info(
                "credit_grant_duplicate", user_id=user_id, idempotency_key=idempotency_key
            )
            return False

        result = await self.session.execute(
            credit_increment_statement(user_id, amount, utc_now())
        )
        row = result.first()
        if commit:
            await self.session.commit()

        metrics.credits_granted_total.inc(amount)
        logger.info(
            "credits_granted",
            user_id=user_id,
            amount=amount,
            idempotency_key=idempotency_key,
            purchased_balance=row[1] if row is not None else None,
        )
        return True

    async def apply_plan_transition(
        self,
        user_id: str,
        plan: Plan,
        status: EntitlementStatus,
        features: Features,
        effective_at: datetime | None = None,
        external_customer_id: str | None = None,
        expires_at: datetime | None = None,
        commit: bool = True,
    ) -> bool:
        """
        Set plan, status and features absolutely.

        Applying the same transition twice yields the same state. Returns False
        when `effective_at` is older than the last applied billing event.
        """
        await self.get_or_create(user_id, commit=commit)

        result = await self.session.execute(
            plan_transition_statement(
                user_id,
                plan,
                status,
                features,
                effective_at=effective_at,
                external_customer_id=external_customer_id,
                expires_at=expires_at,
            )
        )
        applied = result.first() is not None
        if commit:
            await self.session.commit()

        if applied:
            logger.info(
                "plan_transition_applied",
                user_id=user_id,
                plan=plan.value,
                status=status.value,
                effective_at=effective_at.isoformat() if effective_at else None,
            )
        else:
            logger.warning(
                "plan_transition_stale",
                user_id=user_id,
                plan=plan.value,
                status=status.value,
                effective_at=effective_at.isoformat() if effective_at else None,
            )
        return applied

    async def find_user_by_customer(self, customer_id: str) -> str | None:
        """Map a payment processor customer id to a user id."""
        stmt = select(Entitlement.user_id).where(Entitlement.external_customer_id == customer_id)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_summary(self, user_id: str) -> EntitlementSummary:
        """
        Read-only status for display and support diagnostics.

        Balances read as they would after a pending period reset; nothing is
        created or written.
        """
        now = utc_now()
        row = await self._find_entitlement(user_id)
        if row is None:
            entitlement = self._fresh_entitlement(user_id, now)
        else:
            entitlement = self._entitlement_to_domain(row)

        free = entitlement.periodic_allowance
        if self.resolver.needs_reset(entitlement.last_period_reset, now):
            free = settings.periodic_allowance_cap

        view = effective_view(entitlement, now)
        summary = EntitlementSummary(
            user_id=user_id,
            plan=view.plan,
            stored_plan=entitlement.plan,
            status=entitlement.status,
            balances=CreditBalances(free=free, purchased=entitlement.credit_balance),
            periodic_allowance_cap=settings.periodic_allowance_cap,
            next_reset_at=self.resolver.next_period_start(now),
            expires_at=as_utc(entitlement.expires_at),
            features=view.features,
        )

        if view.is_unlimited and self.journal is not None:
            period_start = self.resolver.current_period_start(now)
            limits = plan_limits(view.plan)
            summary = replace(
                summary,
                monthly_generations=await self.journal.count_in_period(
                    user_id, GENERATION_ACTIONS, period_start
                ),
                monthly_generation_cap=limits.monthly_generation_cap,
                monthly_downloads=await self.journal.count_in_period(
                    user_id, DOWNLOAD_ACTIONS, period_start
                ),
                monthly_download_cap=limits.monthly_download_cap,
            )
        elif view.plan == Plan.DAY_PASS and self.journal is not None:
            limits = plan_limits(view.plan)
            summary = replace(
                summary,
                daily_generations=await self.journal.count_in_period(
                    user_id, GENERATION_ACTIONS, self.resolver.current_day_start(now)
                ),
                daily_generation_cap=limits.daily_generation_cap,
            )
        return summary

    async def get_rate_limit(self, user_id: str) -> int:
        """Per-minute request limit of the user's effective features."""
        row = await self._find_entitlement(user_id)
        if row is None:
            return metered_features().max_requests_per_minute
        return effective_view(self._entitlement_to_domain(row)).features.max_requests_per_minute

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _find_entitlement(self, user_id: str) -> Entitlement | None:
        stmt = (
            select(Entitlement)
            .where(Entitlement.user_id == user_id)
            .execution_options(populate_existing=True)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def _rollback_quietly(self) -> None:
        try:
            await self.session.rollback()
        except (SQLAlchemyError, OSError) as e:
            logger.warning("session_rollback_failed", error=str(e))

    def _record_decision(
        self, action: ActionType, decision: Decision, consumed: bool, start: float
    ) -> None:
        metrics.record_decision(
            action=action.value,
            allowed=decision.allowed,
            reason=decision.reason.value if decision.reason else None,
            consumed=consumed,
            duration=time.perf_counter() - start,
        )

    def _fresh_entitlement(self, user_id: str, now: datetime) -> EntitlementData:
        """Entitlement a first access would create, without persisting it."""
        return EntitlementData(
            entitlement_id=uuid4(),
            user_id=user_id,
            plan=Plan.METERED.value,
            status=EntitlementStatus.ACTIVE,
            credit_balance=0,
            periodic_allowance=settings.periodic_allowance_cap,
            last_period_reset=self.resolver.current_period_start(now),
            features=metered_features(),
            expires_at=None,
            plan_event_at=None,
            external_customer_id=None,
            created_at=now,
            updated_at=now,
        )

    def _entitlement_to_domain(self, row: Entitlement) -> EntitlementData:
        """Convert ORM entitlement to domain model."""
        return EntitlementData(
            entitlement_id=row.id,
            user_id=row.user_id,
            plan=row.plan,
            status=EntitlementStatus(row.status),
            credit_balance=row.credit_balance,
            periodic_allowance=row.periodic_allowance,
            last_period_reset=as_utc(row.last_period_reset),
            features=Features.from_dict(row.features, default_features(normalize_plan(row.plan))),
            expires_at=as_utc(row.expires_at),
            plan_event_at=as_utc(row.plan_event_at),
            external_customer_id=row.external_customer_id,
            created_at=as_utc(row.created_at) or utc_now(),
            updated_at=as_utc(row.updated_at) or utc_now(),
        )
